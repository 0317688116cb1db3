# tests/test_connection_pool.py
import asyncio

import httpx
import pytest

from core.exceptions import (
    ConnectionPoolOverflowError,
    JobCancelledError,
    PoolClosedError,
    UpstreamError,
)
from services.http.connection_pool import DEFAULT_USER_AGENT, ConnectionPool, FetchRequest
from services.queue.cancellation import CancellationToken


def make_pool(handler, **kwargs) -> ConnectionPool:
    kwargs.setdefault("backoff_base", 0.0)
    return ConnectionPool(transport=httpx.MockTransport(handler), **kwargs)


async def test_fetch_returns_body_and_records_stats():
    pool = make_pool(lambda request: httpx.Response(200, text="<html>ok</html>"))

    assert await pool.fetch("https://example.com/") == "<html>ok</html>"
    stats = pool.stats()
    assert stats.completed_requests == 1
    assert stats.failed_requests == 0
    assert stats.active_requests == 0
    assert stats.avg_response_time >= 0
    await pool.shutdown()


async def test_request_headers_override_defaults():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, text="")

    pool = make_pool(handler)
    await pool.fetch(FetchRequest(url="https://example.com/", headers={"Accept-Language": "de-DE"}))

    assert seen["accept-language"] == "de-DE"
    assert seen["user-agent"] == DEFAULT_USER_AGENT
    await pool.shutdown()


async def test_transient_failure_is_retried():
    calls = []

    def handler(request):
        calls.append(request.url)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, text="recovered")

    pool = make_pool(handler, retries=3)
    assert await pool.fetch("https://example.com/") == "recovered"
    assert len(calls) == 3
    assert pool.stats().completed_requests == 1
    await pool.shutdown()


async def test_exhausted_retries_raise_upstream_error():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(404)

    pool = make_pool(handler, retries=2)
    with pytest.raises(UpstreamError) as excinfo:
        await pool.fetch("https://example.com/missing")

    assert excinfo.value.upstream_status == 404
    assert "HTTP 404" in excinfo.value.message
    assert len(calls) == 2
    assert pool.stats().failed_requests == 1
    await pool.shutdown()


async def test_per_request_retry_budget():
    calls = []

    def handler(request):
        calls.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    pool = make_pool(handler, retries=5)
    with pytest.raises(UpstreamError):
        await pool.fetch(FetchRequest(url="https://example.com/", retries=1))
    assert calls == [1]
    await pool.shutdown()


async def test_concurrency_is_bounded():
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, text="ok")

    pool = make_pool(handler, max_concurrent=2)
    await asyncio.gather(*(pool.fetch(f"https://example.com/{i}") for i in range(6)))
    assert peak == 2
    assert pool.stats().completed_requests == 6
    await pool.shutdown()


async def test_full_admission_queue_rejects():
    release = asyncio.Event()

    async def handler(request):
        await release.wait()
        return httpx.Response(200, text="ok")

    pool = make_pool(handler, max_concurrent=1, max_queue_size=1)
    first = asyncio.create_task(pool.fetch("https://example.com/1"))
    second = asyncio.create_task(pool.fetch("https://example.com/2"))
    await asyncio.sleep(0.01)
    assert pool.stats().queue_size == 1

    with pytest.raises(ConnectionPoolOverflowError):
        await pool.fetch("https://example.com/3")

    release.set()
    assert await asyncio.gather(first, second) == ["ok", "ok"]
    await pool.shutdown()


async def test_cancel_token_aborts_in_flight_request():
    async def handler(request):
        await asyncio.sleep(30)
        return httpx.Response(200)

    pool = make_pool(handler)
    token = CancellationToken()
    task = asyncio.create_task(pool.fetch("https://example.com/", cancel_token=token))
    await asyncio.sleep(0.01)
    assert pool.stats().active_requests == 1

    token.cancel("user cancelled")
    with pytest.raises(JobCancelledError):
        await task
    assert pool.stats().active_requests == 0
    await pool.shutdown()


async def test_reset_stats_keeps_live_counters():
    pool = make_pool(lambda request: httpx.Response(200, text="ok"))
    await pool.fetch("https://example.com/")
    pool.reset_stats()
    assert pool.stats().completed_requests == 0
    assert pool.stats().avg_response_time == 0
    await pool.shutdown()


async def test_fetch_after_shutdown_is_rejected():
    pool = make_pool(lambda request: httpx.Response(200))
    await pool.shutdown()
    with pytest.raises(PoolClosedError):
        await pool.fetch("https://example.com/")


async def test_shutdown_drains_in_flight_requests_before_closing():
    release = asyncio.Event()

    async def handler(request):
        await release.wait()
        return httpx.Response(200, text="ok")

    pool = make_pool(handler)
    in_flight = asyncio.create_task(pool.fetch("https://example.com/slow"))
    await asyncio.sleep(0.01)

    closing = asyncio.create_task(pool.shutdown(drain_timeout=1))
    await asyncio.sleep(0.01)
    assert not closing.done()
    assert not pool._client.is_closed
    with pytest.raises(PoolClosedError):
        await pool.fetch("https://example.com/late")

    release.set()
    assert await in_flight == "ok"
    await asyncio.wait_for(closing, timeout=1)
    assert pool._client.is_closed
    assert pool.stats().completed_requests == 1
