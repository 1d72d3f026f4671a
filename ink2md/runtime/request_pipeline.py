from __future__ import annotations

import asyncio
import copy
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ink2md.core.cancellation import CancellationToken
from ink2md.core.constants import (
    DEFAULT_CACHE_MAX_BYTES,
    DEFAULT_CACHE_MAX_ENTRIES,
    HTTP_RETRY_BACKOFF_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
    UNSIZED_CACHE_ENTRY_BYTES,
)
from ink2md.core.errors import ConversionCancelled, ProviderError, is_retryable_status
from ink2md.core.logging_config import get_logger
from ink2md.runtime.rate_limiter import RateLimiter


logger = get_logger(__name__)

SECRET_HEADERS = {"authorization", "api-key"}

SendFn = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class ProviderRequest:
    provider: str
    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "POST"

    def serialized_body(self) -> str:
        return json.dumps(self.body, sort_keys=True, ensure_ascii=False)


@dataclass
class RequestPolicy:
    max_attempts: int = 2
    rate_limiter: RateLimiter | None = None
    use_cache: bool = False
    cache_ttl_seconds: float = 0.0
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS
    backoff_seconds: float = HTTP_RETRY_BACKOFF_SECONDS


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float
    approx_bytes: int


def redact_header_value(name: str, value: str) -> str:
    if name.lower() in SECRET_HEADERS:
        return f"<redacted:{len(value)}>"
    return value


def build_request_key(request: ProviderRequest) -> str:
    canonical_headers = "|".join(
        f"{name}:{redact_header_value(name, request.headers[name])}" for name in sorted(request.headers)
    )
    return "|".join(
        (
            request.provider,
            request.method.upper(),
            request.url,
            canonical_headers,
            request.serialized_body(),
        )
    )


def approximate_size(value: Any) -> int:
    try:
        return len(json.dumps(value)) * 2
    except (TypeError, ValueError):
        return UNSIZED_CACHE_ENTRY_BYTES


class ResponseCache:
    """TTL cache of provider responses bounded by entry count and approximate bytes.

    Entries are evicted oldest-first; a hit moves the entry to the newest position.
    Values go in and come out as deep copies so callers never share state.
    """

    MISSING = object()

    def __init__(
        self,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        max_bytes: int = DEFAULT_CACHE_MAX_BYTES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._clock = clock
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._bytes_in_use = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def bytes_in_use(self) -> int:
        return self._bytes_in_use

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return self.MISSING
        if entry.expires_at <= self._clock():
            self._remove(key)
            return self.MISSING

        self._entries.move_to_end(key)
        return copy.deepcopy(entry.value)

    def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        stored = copy.deepcopy(value)
        approx_bytes = approximate_size(stored)

        if key in self._entries:
            self._remove(key)

        self._entries[key] = _CacheEntry(
            value=stored,
            expires_at=self._clock() + ttl_seconds,
            approx_bytes=approx_bytes,
        )
        self._bytes_in_use += approx_bytes

        while self._entries and (len(self._entries) > self.max_entries or self._bytes_in_use > self.max_bytes):
            oldest_key = next(iter(self._entries))
            self._remove(oldest_key)

    def clear(self) -> None:
        self._entries.clear()
        self._bytes_in_use = 0

    def _remove(self, key: str) -> None:
        removed = self._entries.pop(key, None)
        if removed is not None:
            self._bytes_in_use -= removed.approx_bytes


class RequestPipeline:
    """Outbound provider calls with caching, in-flight coalescing, rate limiting,
    bounded retries and per-attempt timeouts.

    Callers describe the call with a ``ProviderRequest`` (used only to derive the
    cache/coalescing key) and hand over ``send``, a zero-argument coroutine factory
    that performs one attempt and raises ``ProviderError`` on failure. Any other
    exception from ``send`` counts as a network failure and is retried like one.
    """

    def __init__(self, cache: ResponseCache | None = None):
        self.cache = cache if cache is not None else ResponseCache()
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def clear_cache(self) -> None:
        self.cache.clear()

    async def call(
        self,
        request: ProviderRequest,
        send: SendFn,
        token: CancellationToken,
        policy: RequestPolicy,
    ) -> Any:
        key = build_request_key(request)
        use_cache = policy.use_cache and policy.cache_ttl_seconds > 0

        if use_cache:
            cached = self.cache.get(key)
            if cached is not ResponseCache.MISSING:
                logger.debug("Response cache hit for %s %s", request.provider, request.url)
                return cached

        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug("Coalescing duplicate in-flight request to %s", request.url)
            return copy.deepcopy(await asyncio.shield(existing))

        task = asyncio.ensure_future(self._execute_and_store(key, request, send, token, policy, use_cache))
        self._in_flight[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return copy.deepcopy(await asyncio.shield(task))

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            self._in_flight.pop(key, None)
        if not task.cancelled():
            task.exception()

    async def _execute_and_store(
        self,
        key: str,
        request: ProviderRequest,
        send: SendFn,
        token: CancellationToken,
        policy: RequestPolicy,
        use_cache: bool,
    ) -> Any:
        value = await self._execute_with_retry(request, send, token, policy)
        if use_cache:
            self.cache.put(key, value, policy.cache_ttl_seconds)
        return value

    async def _execute_with_retry(
        self,
        request: ProviderRequest,
        send: SendFn,
        token: CancellationToken,
        policy: RequestPolicy,
    ) -> Any:
        attempts = max(1, policy.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                if policy.rate_limiter is not None:
                    await policy.rate_limiter.wait_turn()
                return await self._send_once(request, send, token, policy.timeout_seconds)
            except ProviderError as exc:
                token.raise_if_cancelled()
                if not is_retryable_status(exc.status) or attempt == attempts:
                    raise
                logger.debug(
                    "Retrying %s request (attempt %s/%s): %s",
                    request.provider,
                    attempt,
                    attempts,
                    exc,
                )
                await asyncio.sleep(attempt * policy.backoff_seconds)

        raise RuntimeError("Provider request failed without a concrete error")

    async def _send_once(
        self,
        request: ProviderRequest,
        send: SendFn,
        token: CancellationToken,
        timeout_seconds: float,
    ) -> Any:
        token.raise_if_cancelled()
        attempt = asyncio.ensure_future(send())
        token.register(attempt)
        try:
            return await asyncio.wait_for(attempt, timeout=timeout_seconds)
        except TimeoutError:
            raise ProviderError(request.provider, "Request timed out.") from None
        except asyncio.CancelledError:
            if token.cancelled:
                raise ConversionCancelled() from None
            raise
        except (ProviderError, ConversionCancelled):
            raise
        except Exception as exc:
            logger.debug("Unexpected %s failure treated as a network error: %r", request.provider, exc)
            raise ProviderError(request.provider, "Network error while contacting provider.") from exc
        finally:
            token.unregister(attempt)
