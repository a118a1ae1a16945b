"""Stateset HTTP - request orchestrator, interceptors and transports."""

from .client import ABORTED, StatesetHttpClient
from .interceptors import InterceptorPipeline, to_api_error
from .models import (
    CacheDirective,
    CacheOptions,
    RequestConfig,
    RequestFailure,
    RequestOptions,
    TransportError,
    TransportResponse,
)
from .transport import HttpxTransport, Transport

__all__ = [
    "ABORTED",
    "StatesetHttpClient",
    "InterceptorPipeline",
    "to_api_error",
    "CacheDirective",
    "CacheOptions",
    "RequestConfig",
    "RequestFailure",
    "RequestOptions",
    "TransportError",
    "TransportResponse",
    "HttpxTransport",
    "Transport",
]
