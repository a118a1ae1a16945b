"""Ordered request/response/error interceptors and taxonomy mapping.

Each direction is an ordered list; interceptors run in registration order and
each one sees the output of the previous one. Any interceptor may be a plain
function or a coroutine function.

Error interceptors run *before* a failure is mapped to an ``ApiError``
subtype, so rewriting ``failure.response`` changes the type produced::

    def remap_legacy_missing(failure: RequestFailure) -> RequestFailure | None:
        if failure.status_code == 500 and failure.response.body == {"gone": True}:
            failure.response.status_code = 404
        return failure

    client.add_error_interceptor(remap_legacy_missing)
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar, Union

from stateset.core import errors
from stateset.http.models import RequestConfig, RequestFailure, TransportResponse

T = TypeVar("T")

RequestInterceptor = Callable[[RequestConfig], Union[RequestConfig, Awaitable[RequestConfig]]]
ResponseInterceptor = Callable[
    [TransportResponse], Union[TransportResponse, Awaitable[TransportResponse]]
]
ErrorInterceptor = Callable[
    [RequestFailure], Union[RequestFailure, None, Awaitable[Union[RequestFailure, None]]]
]


async def _resolve(value: T | Awaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


class InterceptorPipeline:
    """Holds the three ordered interceptor lists of one client."""

    def __init__(self) -> None:
        self.request_interceptors: list[RequestInterceptor] = []
        self.response_interceptors: list[ResponseInterceptor] = []
        self.error_interceptors: list[ErrorInterceptor] = []

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        self.request_interceptors.append(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> None:
        self.response_interceptors.append(interceptor)

    def add_error_interceptor(self, interceptor: ErrorInterceptor) -> None:
        self.error_interceptors.append(interceptor)

    async def apply_request(self, config: RequestConfig) -> RequestConfig:
        for interceptor in self.request_interceptors:
            config = await _resolve(interceptor(config))
        return config

    async def apply_response(self, response: TransportResponse) -> TransportResponse:
        for interceptor in self.response_interceptors:
            response = await _resolve(interceptor(response))
        return response

    async def apply_error(self, failure: RequestFailure) -> RequestFailure:
        """Run error interceptors; returning ``None`` keeps the current failure."""
        for interceptor in self.error_interceptors:
            result = await _resolve(interceptor(failure))
            if result is not None:
                failure = result
        return failure

    def clear(self) -> None:
        self.request_interceptors.clear()
        self.response_interceptors.clear()
        self.error_interceptors.clear()


def to_api_error(failure: RequestFailure) -> errors.ApiError:
    """Map a (post-interceptor) failure to exactly one taxonomy subtype.

    A pure function of the final status code; no response at all yields a
    ``ConnectionError`` (``TimeoutError`` when the attempt timed out).
    """
    request = failure.request
    if failure.response is None:
        return errors.connection_error(
            failure.message,
            code=failure.code,
            timed_out=failure.timed_out,
            path=request.path,
            request_id=request.request_id,
            cause=failure.cause,
        )

    response = failure.response
    return errors.error_from_status(
        response.status_code,
        failure.message,
        body=response.body,
        headers=response.headers,
        path=request.path,
        request_id=request.request_id,
        code=failure.code,
        cause=failure.cause,
    )


__all__ = [
    "RequestInterceptor",
    "ResponseInterceptor",
    "ErrorInterceptor",
    "InterceptorPipeline",
    "to_api_error",
]
