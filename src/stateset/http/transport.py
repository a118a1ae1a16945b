"""Transports: one HTTP attempt per call.

A transport is any async callable ``(RequestConfig) -> TransportResponse``
that raises :class:`~stateset.http.models.TransportError` when no response was
received. Non-2xx responses are *returned*, not raised; the orchestrator
decides what counts as a failure.

``HttpxTransport`` is the production implementation over
``httpx.AsyncClient``::

    transport = HttpxTransport("https://api.stateset.com/v1", timeout=30.0)
    response = await transport(RequestConfig(method="GET", path="/orders"))
    await transport.aclose()
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from stateset.http.models import RequestConfig, TransportError, TransportResponse


class Transport(Protocol):
    async def __call__(self, request: RequestConfig) -> TransportResponse: ...


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def _error_code(exc: httpx.TransportError) -> str:
    if isinstance(exc, httpx.ConnectTimeout):
        return "ECONNABORTED"
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.ConnectError):
        return "ECONNREFUSED"
    if isinstance(exc, httpx.RemoteProtocolError):
        return "ECONNRESET"
    return type(exc).__name__


class HttpxTransport:
    """Transport backed by a pooled ``httpx.AsyncClient``.

    Attributes:
        base_url: Root URL request paths are joined to
        timeout: Default per-attempt timeout (seconds)
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        max_connections: int = 10,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=5),
        )

    async def __call__(self, request: RequestConfig) -> TransportResponse:
        json_body = None
        content = None
        if isinstance(request.body, (bytes, str)):
            content = request.body
        elif request.body is not None:
            json_body = request.body

        try:
            response = await self._client.request(
                request.method,
                request.path,
                params=request.params,
                headers=request.headers,
                json=json_body,
                content=content,
                timeout=request.timeout if request.timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(
                str(exc) or "Request timeout", code=_error_code(exc), timed_out=True
            ) from exc
        except httpx.TransportError as exc:
            raise TransportError(str(exc) or type(exc).__name__, code=_error_code(exc)) from exc

        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=_decode_body(response),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["Transport", "HttpxTransport"]
