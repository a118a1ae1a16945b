"""
Shared pytest fixtures for the stateset test suite.

This module provides:
- Client settings with zero-delay retries for fast tests
- A client factory around ``FakeTransport`` (see ``tests/_support/transport.py``)
"""

import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure stateset package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stateset.core.settings import ClientSettings
from stateset.execution.retry import RetryPolicy
from stateset.http.client import StatesetHttpClient
from tests._support.transport import FakeTransport


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(
        base_url="https://api.test/v1",
        timeout=5.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=False,
        breaker_failure_threshold=5,
        breaker_reset_timeout=60.0,
    )


@pytest.fixture
def make_client(settings):
    """Factory building clients around a FakeTransport.

    Use as ``async with make_client(transport) as client:`` so the cache
    sweep task is stopped before the event loop closes.
    """

    def factory(transport: FakeTransport, **kwargs: Any) -> StatesetHttpClient:
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay=0.0, jitter=False))
        return StatesetHttpClient(transport, **kwargs)

    return factory
