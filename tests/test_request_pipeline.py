import asyncio

import pytest

from ink2md.core.cancellation import CancellationToken
from ink2md.core.errors import ConversionCancelled, ProviderError
from ink2md.runtime.request_pipeline import (
    ProviderRequest,
    RequestPipeline,
    RequestPolicy,
    ResponseCache,
    build_request_key,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _request(body: dict | None = None, api_key: str = "sk-secret") -> ProviderRequest:
    return ProviderRequest(
        provider="openai",
        url="https://api.openai.com/v1/responses",
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        body=body or {"model": "gpt", "input": "ping"},
    )


def test_request_key_redacts_secret_headers() -> None:
    key = build_request_key(_request())
    assert "sk-secret" not in key
    assert "Authorization:<redacted:16>" in key
    assert key.startswith("openai|POST|https://api.openai.com/v1/responses|")
    assert key.endswith('{"input": "ping", "model": "gpt"}')


def test_request_key_ignores_secret_value_but_not_body() -> None:
    assert build_request_key(_request(api_key="sk-aaaaaa")) == build_request_key(_request(api_key="sk-bbbbbb"))
    assert build_request_key(_request({"input": "a"})) != build_request_key(_request({"input": "b"}))


def test_cache_returns_deep_copies_until_ttl_expires() -> None:
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    value = {"output_text": "Buy milk", "meta": {"n": 1}}

    cache.put("k", value, ttl_seconds=10)
    value["meta"]["n"] = 2

    first = cache.get("k")
    assert first == {"output_text": "Buy milk", "meta": {"n": 1}}
    first["meta"]["n"] = 3
    second = cache.get("k")
    assert second == {"output_text": "Buy milk", "meta": {"n": 1}}
    assert second is not first

    clock.now += 10
    assert cache.get("k") is ResponseCache.MISSING
    assert len(cache) == 0
    assert cache.bytes_in_use == 0


def test_cache_evicts_oldest_and_hits_refresh_recency() -> None:
    cache = ResponseCache(max_entries=2, clock=FakeClock())
    cache.put("a", 1, ttl_seconds=60)
    cache.put("b", 2, ttl_seconds=60)
    assert cache.get("a") == 1
    cache.put("c", 3, ttl_seconds=60)

    assert cache.get("b") is ResponseCache.MISSING
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_cache_respects_byte_budget() -> None:
    cache = ResponseCache(max_entries=100, max_bytes=100, clock=FakeClock())
    cache.put("a", "x" * 20, ttl_seconds=60)
    cache.put("b", "y" * 20, ttl_seconds=60)
    cache.put("c", "z" * 20, ttl_seconds=60)

    assert cache.bytes_in_use <= 100
    assert cache.get("a") is ResponseCache.MISSING
    assert cache.get("c") == "z" * 20


@pytest.mark.asyncio
async def test_cached_response_skips_send() -> None:
    pipeline = RequestPipeline()
    policy = RequestPolicy(use_cache=True, cache_ttl_seconds=60)
    calls = 0

    async def send():
        nonlocal calls
        calls += 1
        return {"output_text": "Buy milk"}

    first = await pipeline.call(_request(), send, CancellationToken(), policy)
    second = await pipeline.call(_request(), send, CancellationToken(), policy)

    assert first == second == {"output_text": "Buy milk"}
    assert first is not second
    assert calls == 1


@pytest.mark.asyncio
async def test_identical_in_flight_requests_share_one_send() -> None:
    pipeline = RequestPipeline()
    release = asyncio.Event()
    calls = 0

    async def send():
        nonlocal calls
        calls += 1
        await release.wait()
        return {"output_text": "Buy milk"}

    token = CancellationToken()
    first = asyncio.ensure_future(pipeline.call(_request(), send, token, RequestPolicy()))
    second = asyncio.ensure_future(pipeline.call(_request(), send, token, RequestPolicy()))
    await asyncio.sleep(0)
    assert pipeline.in_flight_count == 1

    release.set()
    results = await asyncio.gather(first, second)

    assert calls == 1
    assert results[0] == results[1]
    assert results[0] is not results[1]
    assert pipeline.in_flight_count == 0


@pytest.mark.asyncio
async def test_retryable_status_is_retried() -> None:
    pipeline = RequestPipeline()
    attempts = 0

    async def send():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise ProviderError("openai", "rate limited", status=429)
        return {"output_text": "ok"}

    policy = RequestPolicy(max_attempts=2, backoff_seconds=0)
    assert await pipeline.call(_request(), send, CancellationToken(), policy) == {"output_text": "ok"}
    assert attempts == 2


@pytest.mark.asyncio
async def test_client_error_fails_without_retry() -> None:
    pipeline = RequestPipeline()
    attempts = 0

    async def send():
        nonlocal attempts
        attempts += 1
        raise ProviderError("openai", "bad request", status=400)

    with pytest.raises(ProviderError, match="bad request"):
        await pipeline.call(_request(), send, CancellationToken(), RequestPolicy(max_attempts=3, backoff_seconds=0))
    assert attempts == 1


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts() -> None:
    pipeline = RequestPipeline()
    attempts = 0

    async def send():
        nonlocal attempts
        attempts += 1
        raise ProviderError("openai", "unavailable", status=503)

    with pytest.raises(ProviderError) as excinfo:
        await pipeline.call(_request(), send, CancellationToken(), RequestPolicy(max_attempts=3, backoff_seconds=0))
    assert excinfo.value.status == 503
    assert attempts == 3


@pytest.mark.asyncio
async def test_attempt_timeout_becomes_provider_error() -> None:
    pipeline = RequestPipeline()

    async def send():
        await asyncio.sleep(1)
        return {}

    policy = RequestPolicy(max_attempts=1, timeout_seconds=0.01)
    with pytest.raises(ProviderError, match="Request timed out."):
        await pipeline.call(_request(), send, CancellationToken(), policy)


@pytest.mark.asyncio
async def test_cancelling_token_aborts_in_flight_attempt() -> None:
    pipeline = RequestPipeline()
    token = CancellationToken()
    started = asyncio.Event()

    async def send():
        started.set()
        await asyncio.sleep(10)
        return {}

    call = asyncio.ensure_future(pipeline.call(_request(), send, token, RequestPolicy()))
    await started.wait()
    token.cancel()

    with pytest.raises(ConversionCancelled):
        await call


@pytest.mark.asyncio
async def test_pre_cancelled_token_never_sends() -> None:
    pipeline = RequestPipeline()
    token = CancellationToken()
    token.cancel()
    calls = 0

    async def send():
        nonlocal calls
        calls += 1
        return {}

    with pytest.raises(ConversionCancelled):
        await pipeline.call(_request(), send, token, RequestPolicy())
    assert calls == 0


@pytest.mark.asyncio
async def test_unexpected_send_failure_is_retried_as_network_error() -> None:
    pipeline = RequestPipeline()
    attempts = 0

    async def send():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise ValueError("malformed response body")
        return {"output_text": "ok"}

    policy = RequestPolicy(max_attempts=2, backoff_seconds=0)
    assert await pipeline.call(_request(), send, CancellationToken(), policy) == {"output_text": "ok"}
    assert attempts == 2


@pytest.mark.asyncio
async def test_unexpected_send_failure_surfaces_as_provider_error() -> None:
    pipeline = RequestPipeline()

    async def send():
        raise ValueError("malformed response body")

    with pytest.raises(ProviderError, match="Network error") as excinfo:
        await pipeline.call(_request(), send, CancellationToken(), RequestPolicy(max_attempts=1))
    assert excinfo.value.status is None
    assert isinstance(excinfo.value.__cause__, ValueError)
