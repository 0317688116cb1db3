# services/http/connection_pool.py
"""
Bounded‑concurrency outbound HTTP fetcher.

One shared keep‑alive ``httpx.AsyncClient`` serves every request. At most
``max_concurrent`` requests are on the wire at once; the rest wait on the
semaphore in arrival order. Each request is retried with exponential backoff
(0.5s, 1s, 2s, …) until its attempt budget is spent.
"""

import asyncio
import time
from typing import Dict, Optional, Union

import httpx
from loguru import logger
from prometheus_client import Counter, Gauge, Histogram
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.exceptions import (
    ConnectionPoolOverflowError,
    PoolClosedError,
    UpstreamError,
)
from models.telemetry import ConnectionPoolStats
from services.queue.cancellation import CancellationToken

HTTP_POOL_REQUESTS = Counter(
    "http_pool_requests_total", "Outbound requests by outcome", ["outcome"]
)
HTTP_POOL_RETRIES = Counter("http_pool_retries_total", "Outbound request retries")
HTTP_POOL_DURATION = Histogram(
    "http_pool_request_seconds", "Outbound request duration including retries"
)
HTTP_POOL_ACTIVE = Gauge("http_pool_active_requests", "Requests currently on the wire")
HTTP_POOL_QUEUED = Gauge("http_pool_queued_requests", "Requests waiting for a slot")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS: Dict[str, str] = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
    "Cache-Control": "max-age=0",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
}


class FetchRequest(BaseModel):
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)     # seconds
    retries: Optional[int] = Field(default=None, ge=1)      # total attempts


class ConnectionPool:
    """Process‑wide HTTP pool; build once, share, ``shutdown()`` on exit."""

    def __init__(
        self,
        max_concurrent: int = 100,
        *,
        max_queue_size: int = 0,
        timeout: float = 30.0,
        retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 2.0,
        keepalive_connections: int = 10,
        keepalive_expiry: float = 4.0,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self.timeout = timeout
        self.retries = retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self._default_headers = dict(DEFAULT_HEADERS)
        if user_agent:
            self._default_headers["User-Agent"] = user_agent

        self._client = httpx.AsyncClient(
            limits=httpx.Limits(
                max_connections=max_concurrent,
                max_keepalive_connections=keepalive_connections,
                keepalive_expiry=keepalive_expiry,
            ),
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._closed = False

        self._active = 0
        self._queued = 0
        self._completed = 0
        self._failed = 0
        self._total_response_time = 0.0

        logger.info(f"HTTP connection pool initialized with max {max_concurrent} concurrent requests")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def fetch(
        self,
        request: Union[FetchRequest, str],
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Return the response body of a GET, waiting for a slot if needed."""
        if isinstance(request, str):
            request = FetchRequest(url=request)
        if self._closed:
            raise PoolClosedError("HTTP connection pool is shut down")
        if (
            self.max_queue_size
            and self._semaphore.locked()
            and self._queued >= self.max_queue_size
        ):
            HTTP_POOL_REQUESTS.labels(outcome="rejected").inc()
            raise ConnectionPoolOverflowError(
                f"HTTP admission queue is full ({self._queued} waiting)",
                {"queue_size": self._queued},
            )

        if cancel_token is not None:
            return await cancel_token.run(self._admit_and_fetch(request))
        return await self._admit_and_fetch(request)

    def stats(self) -> ConnectionPoolStats:
        avg = self._total_response_time / self._completed if self._completed else 0.0
        return ConnectionPoolStats(
            active_requests=self._active,
            completed_requests=self._completed,
            failed_requests=self._failed,
            avg_response_time=round(avg, 2),
            queue_size=self._queued,
        )

    def reset_stats(self) -> None:
        self._completed = 0
        self._failed = 0
        self._total_response_time = 0.0

    async def shutdown(self, drain_timeout: float = 30.0) -> None:
        """Stop admitting work, let in‑flight requests drain, close the transport."""
        self._closed = True
        logger.info(
            f"Shutting down HTTP pool ({self._active} active, {self._queued} queued)"
        )
        deadline = time.monotonic() + drain_timeout
        while self._active > 0 and time.monotonic() < deadline:
            await asyncio.sleep(0.1)
        if self._active:
            logger.warning(f"HTTP pool drain timed out with {self._active} request(s) in flight")
        await self._client.aclose()
        logger.info("HTTP pool shutdown complete")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _admit_and_fetch(self, request: FetchRequest) -> str:
        self._queued += 1
        HTTP_POOL_QUEUED.set(self._queued)
        try:
            await self._semaphore.acquire()
        finally:
            self._queued -= 1
            HTTP_POOL_QUEUED.set(self._queued)

        self._active += 1
        HTTP_POOL_ACTIVE.set(self._active)
        started = time.perf_counter()
        try:
            body = await self._execute(request)
        except asyncio.CancelledError:
            HTTP_POOL_REQUESTS.labels(outcome="aborted").inc()
            raise
        except Exception:
            self._failed += 1
            HTTP_POOL_REQUESTS.labels(outcome="failed").inc()
            raise
        else:
            elapsed = time.perf_counter() - started
            self._completed += 1
            self._total_response_time += elapsed * 1000
            HTTP_POOL_DURATION.observe(elapsed)
            HTTP_POOL_REQUESTS.labels(outcome="completed").inc()
            return body
        finally:
            self._active -= 1
            HTTP_POOL_ACTIVE.set(self._active)
            self._semaphore.release()

    async def _execute(self, request: FetchRequest) -> str:
        headers = {**self._default_headers, **request.headers}
        timeout = request.timeout or self.timeout
        attempts = request.retries or self.retries

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(httpx.HTTPError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.get(request.url, headers=headers, timeout=timeout)
                    response.raise_for_status()
                    return response.text
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise UpstreamError(
                f"HTTP {status}: {exc.response.reason_phrase}",
                upstream_status=status,
                details={"url": request.url},
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"Request to {request.url} failed: {exc.__class__.__name__}: {exc}",
                details={"url": request.url},
            ) from exc
        raise UpstreamError(f"Failed to fetch {request.url} after {attempts} attempts")

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        HTTP_POOL_RETRIES.inc()
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(f"HTTP attempt {retry_state.attempt_number} failed: {exc}")
