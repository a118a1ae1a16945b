"""
Request orchestrator: the one entry point every resource wrapper calls.

``StatesetHttpClient.request`` composes the four engines into one policy::

    normalize path
      → GET + cache enabled? cache hit → return (no network, no interceptors)
      → build request (headers, Idempotency-Key, signal) → request interceptors
      → with_retry(                              ← outer attempt loop
            breaker.execute(                     ← per-attempt guard
                transport → response interceptors
                          | error interceptors → ApiError subtype))
      → mutation? invalidate own path + requested extra paths
      → cacheable GET? store result + index its path
      → return body

Manifesto:
    - **Client-scoped state:** cache, key index and breaker belong to one
      client instance; two clients never share them
    - **Fail fast wide:** one breaker per client, so a failure burst on one
      endpoint opens it for all traffic through that client
    - **Cache never breaks a call:** lookup/store failures degrade to a miss
    - **Closed error surface:** ApiError subtypes, ``RetryExhaustedError``
      wrapping one, or ``CircuitOpenError``

Examples:
    >>> client = StatesetHttpClient.from_settings(ClientSettings(base_url="https://api.example.com"))
    >>> orders = await client.request("GET", "/orders", options=RequestOptions(params={"limit": 10}))
    >>> await client.request("POST", "/orders", {"sku": "A1"}, RequestOptions(idempotency_key="k-1"))

Guardrails:
    ❌ DON'T: Expect concurrent identical GETs to be de-duplicated
    ✅ DO: Treat last-writer-wins cache population as the contract

    ❌ DON'T: Expect an abort signal to cut a retry backoff short
    ✅ DO: Lower ``max_attempts`` for calls that must give up quickly

Tags:
    http-client, orchestration, retry, circuit-breaker, cache, interceptors
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import replace
from typing import Any, TypeVar

from stateset.core.cache import (
    CacheKeyIndex,
    ResponseCache,
    build_cache_key,
    normalize_path,
)
from stateset.core.health import HealthDetails, HealthStatus
from stateset.core.logging import LogContext, configure_logging, get_logger, sanitize_headers
from stateset.core.metrics import RequestMetrics
from stateset.core.settings import ClientSettings
from stateset.execution.circuit_breaker import CircuitBreaker, CircuitOpenError
from stateset.execution.retry import RetryAttempt, RetryPolicy, with_retry
from stateset.http.interceptors import (
    ErrorInterceptor,
    InterceptorPipeline,
    RequestInterceptor,
    ResponseInterceptor,
    to_api_error,
)
from stateset.http.models import (
    CacheDirective,
    CacheOptions,
    RequestConfig,
    RequestFailure,
    RequestOptions,
    TransportError,
    TransportResponse,
)
from stateset.http.transport import HttpxTransport, Transport

T = TypeVar("T")

logger = get_logger(__name__)

ABORTED = "ABORTED"
_MISSING: Any = object()


def _is_breaker_failure(error: BaseException) -> bool:
    # Caller aborts say nothing about downstream health.
    return getattr(error, "code", None) != ABORTED


def _clamped(overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    """Retry overrides with ``max_attempts`` raised to at least one."""
    changes = dict(overrides or {})
    if changes.get("max_attempts") is not None:
        changes["max_attempts"] = max(1, int(changes["max_attempts"]))
    return changes


def _as_list(paths: str | Sequence[str] | None) -> list[str]:
    if not paths:
        return []
    if isinstance(paths, str):
        return [paths]
    return list(paths)


class StatesetHttpClient:
    """Resilient request execution core shared by all resource wrappers.

    Args:
        transport: Performs one HTTP attempt (see :mod:`stateset.http.transport`)
        settings: Client configuration (default: ``ClientSettings()`` from env)
        retry_policy: Client-level default retry policy
            (default: ``settings.retry_policy()``)
        breaker: Circuit breaker instance (default: built from settings). A
            caller-supplied breaker is used as is; aborted attempts are kept
            out of its failure count without touching its ``is_failure``
        cache: Response cache instance (default: built from settings)
        default_headers: Headers sent with every request
    """

    def __init__(
        self,
        transport: Transport | Callable[[RequestConfig], Awaitable[TransportResponse]],
        *,
        settings: ClientSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        cache: ResponseCache[Any] | None = None,
        default_headers: Mapping[str, str] | None = None,
    ):
        self.settings = settings or ClientSettings()
        self._transport = transport
        policy = retry_policy if retry_policy is not None else self.settings.retry_policy()
        self._retry_policy = policy.normalized()
        self._breaker = (
            breaker
            if breaker is not None
            else CircuitBreaker(
                name="stateset",
                failure_threshold=self.settings.breaker_failure_threshold,
                reset_timeout=self.settings.breaker_reset_timeout,
            )
        )
        self._cache: ResponseCache[Any] = (
            cache
            if cache is not None
            else ResponseCache(
                max_size=self.settings.cache_max_size,
                default_ttl=self.settings.cache_ttl,
                check_interval=self.settings.cache_check_interval,
            )
        )
        self._cache_index = CacheKeyIndex()
        self._cache.add_sweep_listener(self._prune_cache_index)
        self._cache_enabled = self.settings.cache_enabled
        self._metrics = RequestMetrics(
            max_samples=self.settings.metrics_max_samples,
            slow_threshold=self.settings.slow_request_threshold,
            enabled=self.settings.performance_enabled,
        )
        self._interceptors = InterceptorPipeline()
        self._default_headers: dict[str, str] = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": self.settings.user_agent,
        }
        self._default_headers.update(default_headers or {})

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings | None = None,
        *,
        headers: Mapping[str, str] | None = None,
        setup_logging: bool = False,
    ) -> StatesetHttpClient:
        """Build a client with an ``HttpxTransport`` pointed at ``settings.base_url``.

        With ``setup_logging`` the process-wide structlog configuration is
        (re)applied from ``settings.log_level`` and ``settings.log_json``.
        """
        settings = settings or ClientSettings()
        if setup_logging:
            configure_logging(level=settings.log_level, json_format=settings.log_json)
        transport = HttpxTransport(settings.base_url, timeout=settings.timeout)
        return cls(transport, settings=settings, default_headers=headers)

    async def __aenter__(self) -> StatesetHttpClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------ #
    # Orchestrated call
    # ------------------------------------------------------------------ #

    async def request(
        self,
        method: str,
        path: str,
        data: Any = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """Issue one logical call and return the response body.

        Raises:
            ApiError: A subtype for the failed attempt (not retried)
            RetryExhaustedError: Every attempt failed; see ``.last_error``
            CircuitOpenError: The breaker rejected the call
        """
        options = options or RequestOptions()
        method = method.upper()
        normalized_path = normalize_path(path)

        async with LogContext(method=method, path=normalized_path):
            with self._metrics.timer(f"client.request.{method}.{normalized_path}") as timer:
                result = await self._orchestrate(method, path, normalized_path, data, options)
                timer.success = True
            return result

    async def _orchestrate(
        self,
        method: str,
        path: str,
        normalized_path: str,
        data: Any,
        options: RequestOptions,
    ) -> Any:
        directive = self._resolve_cache_directive(method, path, options)
        if directive is not None:
            cached = self._cache_lookup(directive.key)
            if cached is not _MISSING:
                logger.debug("request_served_from_cache", cache_key=directive.key)
                return cached

        config = await self._interceptors.apply_request(
            self._build_request(method, path, data, options)
        )
        policy = self._effective_retry_policy(options)
        logger.debug(
            "request_started",
            headers=sanitize_headers(config.headers),
            max_attempts=policy.max_attempts,
        )

        try:
            response = await self._execute(config, policy)
        except Exception as exc:
            logger.error("request_failed", error=str(exc), error_type=type(exc).__name__)
            raise

        result = response.body

        if self._cache_enabled:
            targets = self._invalidation_targets(method, normalized_path, options)
            if directive is not None:
                targets.discard(normalized_path)
            for target in sorted(targets):
                self._cache_index.invalidate(target, self._cache)

        if directive is not None:
            self._cache_store(directive, result, normalized_path)

        return result

    def _counts_against_breaker(self, error: BaseException) -> bool:
        if not _is_breaker_failure(error):
            return False
        predicate = self._breaker.is_failure
        return predicate is None or predicate(error)

    async def _execute(self, config: RequestConfig, policy: RetryPolicy) -> TransportResponse:
        async def guarded() -> TransportResponse:
            return await self._breaker.execute(
                lambda: self._attempt(config), is_failure=self._counts_against_breaker
            )

        if policy.max_attempts <= 1:
            return await guarded()
        return await with_retry(guarded, policy)

    async def _attempt(self, config: RequestConfig) -> TransportResponse:
        """One transport attempt with per-attempt request id and error mapping."""
        request_id = str(uuid.uuid4())
        attempt_config = replace(config, headers={**config.headers, "X-Request-ID": request_id})
        started = time.monotonic()

        try:
            response = await self._dispatch(attempt_config)
        except TransportError as exc:
            failure = RequestFailure(
                request=attempt_config,
                message=exc.message,
                code=exc.code,
                timed_out=exc.timed_out,
                cause=exc,
            )
        except Exception as exc:
            failure = RequestFailure(
                request=attempt_config,
                message=str(exc) or type(exc).__name__,
                code=type(exc).__name__,
                cause=exc,
            )
        else:
            elapsed_ms = round((time.monotonic() - started) * 1000, 1)
            if response.is_success:
                logger.info(
                    "http_response_received",
                    request_id=request_id,
                    status_code=response.status_code,
                    response_time_ms=elapsed_ms,
                )
                return await self._interceptors.apply_response(response)
            failure = RequestFailure(
                request=attempt_config,
                message=f"Request failed with status code {response.status_code}",
                response=response,
            )

        logger.warning(
            "http_request_failed",
            request_id=request_id,
            status_code=failure.status_code,
            code=failure.code,
            response_time_ms=round((time.monotonic() - started) * 1000, 1),
            error=failure.message,
        )
        failure = await self._interceptors.apply_error(failure)
        error = to_api_error(failure)
        if failure.cause is not None:
            raise error from failure.cause
        raise error

    async def _dispatch(self, config: RequestConfig) -> TransportResponse:
        """Call the transport under the attempt timeout, racing the abort signal."""
        signal = config.signal
        if signal is not None and signal.is_set():
            raise TransportError("Request aborted", code=ABORTED)

        call = asyncio.ensure_future(self._timed_call(config))
        if signal is None:
            return await call

        aborted = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait({call, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not call.done():
                call.cancel()

        if call in done:
            return call.result()
        with contextlib.suppress(asyncio.CancelledError):
            await call
        raise TransportError("Request aborted", code=ABORTED)

    async def _timed_call(self, config: RequestConfig) -> TransportResponse:
        try:
            return await asyncio.wait_for(self._transport(config), timeout=config.timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"timeout of {config.timeout}s exceeded", code="ETIMEDOUT", timed_out=True
            ) from exc

    # ------------------------------------------------------------------ #
    # Request building
    # ------------------------------------------------------------------ #

    def _build_request(
        self, method: str, path: str, data: Any, options: RequestOptions
    ) -> RequestConfig:
        headers = dict(self._default_headers)
        headers.update(options.headers or {})
        if options.idempotency_key:
            headers["Idempotency-Key"] = options.idempotency_key

        return RequestConfig(
            method=method,
            path=path,
            headers=headers,
            params=dict(options.params) if options.params else None,
            body=data,
            timeout=options.timeout if options.timeout is not None else self.settings.timeout,
            signal=options.signal,
        )

    def _effective_retry_policy(self, options: RequestOptions) -> RetryPolicy:
        policy = self._retry_policy.merged(**_clamped(options.retry_options)).normalized()
        condition = policy.retry_condition
        observers = [cb for cb in (policy.on_attempt, options.on_retry_attempt) if cb is not None]

        async def on_attempt(attempt: RetryAttempt) -> None:
            for observer in observers:
                result = observer(attempt)
                if inspect.isawaitable(result):
                    await result

        return replace(
            policy,
            # Breaker fast-fails and caller aborts are never retried.
            retry_condition=lambda exc: (
                not isinstance(exc, CircuitOpenError)
                and _is_breaker_failure(exc)
                and condition(exc)
            ),
            on_attempt=on_attempt if observers else None,
        )

    # ------------------------------------------------------------------ #
    # Cache directives and invalidation
    # ------------------------------------------------------------------ #

    def _resolve_cache_directive(
        self, method: str, path: str, options: RequestOptions
    ) -> CacheDirective | None:
        if method != "GET" or not self._cache_enabled or options.cache is False:
            return None

        cache_option = options.cache if isinstance(options.cache, CacheOptions) else None
        key = (
            options.cache_key
            or (cache_option.key if cache_option else None)
            or build_cache_key(path, options.params)
        )
        ttl = options.cache_ttl
        if ttl is None and cache_option is not None:
            ttl = cache_option.ttl
        return CacheDirective(key=key, ttl=ttl)

    def _invalidation_targets(
        self, method: str, normalized_path: str, options: RequestOptions
    ) -> set[str]:
        targets: set[str] = set()
        if method != "GET" and normalized_path:
            targets.add(normalized_path)

        extra = _as_list(options.invalidate_cache_paths)
        if isinstance(options.cache, CacheOptions):
            extra.extend(_as_list(options.cache.invalidate))
        targets.update(p for p in (normalize_path(raw) for raw in extra) if p)
        return targets

    def _cache_lookup(self, key: str) -> Any:
        try:
            return self._cache.get(key, _MISSING)
        except Exception:
            logger.warning("cache_lookup_failed", cache_key=key, exc_info=True)
            return _MISSING

    def _cache_store(self, directive: CacheDirective, value: Any, normalized_path: str) -> None:
        try:
            self._cache.set(directive.key, value, directive.ttl)
            self._cache_index.add(normalized_path, directive.key)
            # Every live indexed path holds a live key, so after a prune the
            # index is no larger than the cache.
            if len(self._cache_index) > self._cache.max_size:
                self._prune_cache_index()
        except Exception:
            logger.warning("cache_store_failed", cache_key=directive.key, exc_info=True)

    def _prune_cache_index(self) -> None:
        dropped = self._cache_index.prune(self._cache)
        if dropped:
            logger.debug("cache_index_pruned", dropped_keys=dropped, indexed_paths=len(self._cache_index))

    # ------------------------------------------------------------------ #
    # Public management surface
    # ------------------------------------------------------------------ #

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        self._interceptors.add_request_interceptor(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> None:
        self._interceptors.add_response_interceptor(interceptor)

    def add_error_interceptor(self, interceptor: ErrorInterceptor) -> None:
        self._interceptors.add_error_interceptor(interceptor)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def cache(self) -> ResponseCache[Any]:
        return self._cache

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def get_circuit_breaker_state(self) -> str:
        return self._breaker.state.value

    def reset_circuit_breaker(self) -> None:
        self._breaker.reset()

    def get_cache_stats(self) -> dict[str, Any]:
        stats = self._cache.stats()
        stats["enabled"] = self._cache_enabled
        stats["indexed_paths"] = len(self._cache_index)
        return stats

    def clear_cache(self) -> None:
        self._cache.clear()
        self._cache_index.clear()
        logger.info("cache_cleared_manually")

    def set_cache_enabled(self, enabled: bool) -> None:
        self._cache_enabled = enabled
        if not enabled:
            self._cache.clear()
            self._cache_index.clear()
        logger.info("cache_toggled", enabled=enabled)

    def get_performance_stats(self, operation: str | None = None) -> dict[str, Any]:
        """Timing summary of recent calls (seconds), optionally for one operation.

        Operations are named ``client.request.<METHOD>.<normalized path>``.
        """
        stats = self._metrics.stats(operation)
        stats["enabled"] = self._metrics.enabled
        return stats

    def set_performance_monitoring_enabled(self, enabled: bool) -> None:
        self._metrics.enabled = enabled
        logger.info("performance_monitoring_toggled", enabled=enabled)

    def clear_performance_stats(self) -> None:
        self._metrics.clear()

    def update_retry_policy(self, **overrides: Any) -> RetryPolicy:
        """Merge ``overrides`` into the client-level default retry policy."""
        self._retry_policy = self._retry_policy.merged(**_clamped(overrides)).normalized()
        return self._retry_policy

    def update_headers(self, headers: Mapping[str, str]) -> None:
        self._default_headers.update(headers)

    async def health_check(self) -> HealthStatus:
        """Probe ``settings.health_path`` once, bypassing cache and retries."""
        started = time.monotonic()
        try:
            body = await self.request(
                "GET",
                self.settings.health_path,
                options=RequestOptions(cache=False, retry_options={"max_attempts": 1}),
            )
        except Exception as exc:
            return HealthStatus(
                status="error",
                details=HealthDetails(
                    circuit_breaker_state=self.get_circuit_breaker_state(),
                    error=str(exc),
                ),
            )
        return HealthStatus(
            status="ok",
            details=HealthDetails(
                circuit_breaker_state=self.get_circuit_breaker_state(),
                response=body,
                latency_ms=round((time.monotonic() - started) * 1000, 1),
            ),
        )

    async def bulk(
        self,
        operations: Sequence[Callable[[], Awaitable[T]]],
        concurrency: int = 5,
    ) -> list[T]:
        """Run operations in sequential batches of ``concurrency``, preserving order."""
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        results: list[T] = []
        for start in range(0, len(operations), concurrency):
            batch = operations[start : start + concurrency]
            results.extend(await asyncio.gather(*(op() for op in batch)))
        return results

    async def close(self) -> None:
        """Stop the cache sweep, drop interceptors, reset the breaker, close the transport."""
        await self._cache.close()
        self._cache_index.clear()
        self._interceptors.clear()
        self._breaker.reset()
        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("client_closed")


__all__ = ["StatesetHttpClient", "ABORTED"]
