"""Health report returned by ``StatesetHttpClient.health_check()``.

The report pairs the outcome of a lightweight ``GET /health`` with the
client's circuit breaker state, so a caller can tell "API down" from
"we stopped calling it".
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthDetails(BaseModel):
    """Breaker state plus either the probe response or its error."""

    circuit_breaker_state: Literal["CLOSED", "OPEN", "HALF_OPEN"]
    response: Any = None
    error: str | None = None
    latency_ms: float | None = None


class HealthStatus(BaseModel):
    """Health envelope.

    Fields
    ──────
    status    : ``ok`` | ``error``
    timestamp : ISO-8601 UTC
    details   : breaker state and probe outcome
    """

    status: Literal["ok", "error"]
    timestamp: str = Field(default_factory=_now_iso)
    details: HealthDetails | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


__all__ = ["HealthDetails", "HealthStatus"]
