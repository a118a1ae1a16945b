"""Client settings for the Stateset request core.

Every tunable of the orchestrator (timeouts, cache, retry, breaker) can be set
via ``STATESET_*`` environment variables or a ``.env`` file, and validated at
construction time.

Features:
    - **ClientSettings:** base URL, timeout, cache, retry and breaker knobs
    - **env_prefix:** ``STATESET_`` (e.g. ``STATESET_CACHE_TTL=120``)
    - **retry_policy():** Builds the client-level default ``RetryPolicy``

Examples:
    >>> from stateset.core.settings import ClientSettings
    >>> settings = ClientSettings(retry_max_attempts=5, cache_enabled=False)
    >>> settings.retry_policy().max_attempts
    5
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stateset.execution.retry import RetryPolicy


class ClientSettings(BaseSettings):
    """Settings consumed by :class:`~stateset.http.client.StatesetHttpClient`.

    Fields
    ──────
    base_url                  : API root every request path is joined to
    timeout                   : Per-attempt timeout in seconds
    cache_*                   : Response cache switches and bounds
    retry_*                   : Client-level default retry policy
    breaker_*                 : Circuit breaker tunables
    health_path               : Path probed by ``health_check()``
    performance_enabled       : Record per-request timings
    slow_request_threshold    : Seconds before a call is logged as slow
    metrics_max_samples       : Recent timings kept for stats
    log_level / log_json      : structlog configuration
    """

    model_config = SettingsConfigDict(
        env_prefix="STATESET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Transport ────────────────────────────────────────────────
    base_url: str = "https://api.stateset.com/v1"
    timeout: float = Field(default=60.0, gt=0)
    user_agent: str = "stateset-python-client/1.0.0"

    # ── Cache ────────────────────────────────────────────────────
    cache_enabled: bool = True
    cache_ttl: float = Field(default=300.0, gt=0)
    cache_max_size: int = Field(default=1000, ge=1)
    cache_check_interval: float = Field(default=60.0, gt=0)

    # ── Retry ────────────────────────────────────────────────────
    retry_max_attempts: int = 3
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    retry_jitter: bool = True

    # ── Circuit breaker ──────────────────────────────────────────
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout: float = Field(default=60.0, ge=0)

    # ── Health / observability ───────────────────────────────────
    health_path: str = "/health"
    performance_enabled: bool = True
    slow_request_threshold: float = Field(default=5.0, gt=0)
    metrics_max_samples: int = Field(default=1000, ge=1)
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator("retry_max_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        return max(1, value)

    def retry_policy(self) -> RetryPolicy:
        """Build the client-level default retry policy."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
            jitter=self.retry_jitter,
        ).normalized()
