# services/queue/job_queue.py
"""
Priority job queue with bounded concurrency, retry and per‑user cancellation.

Jobs are kept in a list ordered by descending priority; insertion is stable so
equal priorities are served in arrival order. Dispatch runs on the next loop
iteration after a submission or completion, so a burst of submissions is
ordered before any of it starts. Dispatch only *starts* jobs; each one runs
in its own task.

Only failures whose ``retryable`` flag is true (or that carry no flag) are
retried. A retried job loses one priority step (floor 1) and goes to the
front of its new priority band, not the head of the whole queue, so a retry
never overtakes work of higher priority. A job that keeps failing behind a
steady stream of fresher, higher‑priority work can therefore wait
indefinitely.
"""

import asyncio
import bisect
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger
from prometheus_client import Counter, Gauge

from core.exceptions import BrowserLaunchError, JobCancelledError, ScraperException
from models.jobs import PAYLOAD_TYPES, JobPayload, JobState, JobType
from models.telemetry import QueueStats
from services.queue.cancellation import CancellationToken

JOBS_SUBMITTED = Counter("job_queue_submitted_total", "Jobs submitted", ["type"])
JOBS_COMPLETED = Counter("job_queue_completed_total", "Jobs resolved successfully", ["type"])
JOBS_FAILED = Counter("job_queue_failed_total", "Jobs rejected after exhausting retries", ["type"])
JOBS_RETRIED = Counter("job_queue_retried_total", "Job retry attempts", ["type"])
JOBS_CANCELLED = Counter("job_queue_cancelled_total", "Jobs cancelled", ["type"])
QUEUE_DEPTH = Gauge("job_queue_depth", "Jobs waiting for a slot")
QUEUE_ACTIVE = Gauge("job_queue_active", "Jobs currently executing")

RETRY_PRIORITY_FLOOR = 1

JobHandler = Callable[[Any, CancellationToken], Awaitable[Any]]


def _new_job_id(job_type: JobType) -> str:
    return f"{job_type.value}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


@dataclass(eq=False)
class QueueJob:
    type: JobType
    payload: JobPayload
    priority: int
    max_retries: int
    user_id: str
    future: asyncio.Future
    id: str = ""
    retries: int = 0
    created_at: float = field(default_factory=time.time)
    state: JobState = JobState.QUEUED
    cancel_token: CancellationToken = field(default_factory=CancellationToken)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = _new_job_id(self.type)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    @property
    def settled(self) -> bool:
        return self.state is JobState.SETTLED

    def settle_result(self, result: Any) -> bool:
        """Resolve the job. Returns False if it was already settled."""
        if self.settled:
            return False
        self.state = JobState.SETTLED
        if not self.future.done():
            self.future.set_result(result)
        return True

    def settle_error(self, error: BaseException) -> bool:
        """Reject the job. Returns False if it was already settled."""
        if self.settled:
            return False
        self.state = JobState.SETTLED
        if not self.future.done():
            self.future.set_exception(error)
        return True


class JobQueue:
    """In‑process priority queue feeding registered job handlers."""

    def __init__(self, concurrency: int = 2):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self._queue: List[QueueJob] = []
        self._active: Dict[asyncio.Task, QueueJob] = {}
        self._handlers: Dict[JobType, JobHandler] = {}
        self._closed = False
        self._dispatch_pending = False
        logger.info(f"Job queue initialized with concurrency: {concurrency}")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def enqueue(
        self,
        job_type: JobType,
        payload: JobPayload,
        priority: int = 1,
        max_retries: int = 2,
        user_id: Optional[str] = None,
    ) -> QueueJob:
        """Queue a job and return it without waiting for the result."""
        if self._closed:
            raise ScraperException("Job queue is closed")
        expected = PAYLOAD_TYPES[job_type]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{job_type.value} jobs take {expected.__name__}, got {type(payload).__name__}"
            )

        loop = asyncio.get_running_loop()
        job = QueueJob(
            type=job_type,
            payload=payload,
            priority=priority,
            max_retries=max_retries,
            user_id=user_id or "anonymous",
            future=loop.create_future(),
        )
        job.future.add_done_callback(lambda fut, job=job: self._on_future_done(job, fut))

        self._insert(job)
        JOBS_SUBMITTED.labels(type=job_type.value).inc()
        logger.debug(
            f"Job added to queue: {job.id} ({len(self._queue)} in queue, {len(self._active)} active)"
        )
        self._schedule_dispatch()
        return job

    async def submit(
        self,
        job_type: JobType,
        payload: JobPayload,
        priority: int = 1,
        max_retries: int = 2,
        user_id: Optional[str] = None,
    ) -> Any:
        """Queue a job and wait until it settles."""
        job = self.enqueue(job_type, payload, priority, max_retries, user_id)
        return await job.future

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------
    def _insert(self, job: QueueJob) -> None:
        # List is sorted by -priority ascending; bisect_right keeps arrival order.
        index = bisect.bisect_right(self._queue, -job.priority, key=lambda j: -j.priority)
        self._queue.insert(index, job)
        QUEUE_DEPTH.set(len(self._queue))

    def _requeue_front(self, job: QueueJob) -> None:
        index = bisect.bisect_left(self._queue, -job.priority, key=lambda j: -j.priority)
        self._queue.insert(index, job)
        QUEUE_DEPTH.set(len(self._queue))

    # ------------------------------------------------------------------
    # Dispatch & execution
    # ------------------------------------------------------------------
    def _schedule_dispatch(self) -> None:
        if not self._dispatch_pending:
            self._dispatch_pending = True
            asyncio.get_running_loop().call_soon(self._dispatch)

    def _dispatch(self) -> None:
        self._dispatch_pending = False
        if self._closed:
            return
        while self._queue and len(self._active) < self.concurrency:
            job = self._queue.pop(0)
            job.state = JobState.ACTIVE
            logger.debug(f"Processing job: {job.id} ({len(self._active)}/{self.concurrency} active)")
            task = asyncio.create_task(self._run(job), name=f"job:{job.id}")
            self._active[task] = job
            task.add_done_callback(lambda t, job=job: self._on_task_done(job, t))
        QUEUE_DEPTH.set(len(self._queue))
        QUEUE_ACTIVE.set(len(self._active))

    def _on_task_done(self, job: QueueJob, task: asyncio.Task) -> None:
        self._active.pop(task, None)
        if task.cancelled():
            job.settle_error(JobCancelledError("Job runner was cancelled"))
        elif task.exception() is not None:
            # _run never raises; anything here is a bug in the queue itself.
            logger.opt(exception=task.exception()).error(f"Job runner crashed: {job.id}")
            job.settle_error(task.exception())
        if not self._closed:
            self._schedule_dispatch()
        QUEUE_ACTIVE.set(len(self._active))

    def _on_future_done(self, job: QueueJob, fut: asyncio.Future) -> None:
        # The awaiting caller went away; stop the work it was waiting for.
        if fut.cancelled() and not job.cancelled:
            job.cancel_token.cancel("Caller stopped waiting for the job")
            job.state = JobState.SETTLED
            if job in self._queue:
                self._queue.remove(job)
                QUEUE_DEPTH.set(len(self._queue))

    async def _run(self, job: QueueJob) -> None:
        label = job.type.value
        if job.cancelled:
            logger.info(f"Job was cancelled before start: {job.id}")
            job.settle_error(JobCancelledError(job.cancel_token.reason or "Job was cancelled"))
            return

        handler = self._handlers.get(job.type)
        if handler is None:
            job.settle_error(ScraperException(f"Unknown job type: {job.type.value}"))
            JOBS_FAILED.labels(type=label).inc()
            return

        try:
            result = await job.cancel_token.run(handler(job.payload, job.cancel_token))
        except JobCancelledError as exc:
            logger.info(f"Job cancelled during processing: {job.id}")
            if job.settle_error(exc):
                JOBS_CANCELLED.labels(type=label).inc()
            return
        except BrowserLaunchError as exc:
            logger.critical(f"Job {job.id} hit a fatal browser launch error: {exc}")
            job.settle_error(exc)
            JOBS_FAILED.labels(type=label).inc()
            return
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning(f"Job failed: {job.id}: {exc}")
            if job.cancelled:
                job.settle_error(JobCancelledError(job.cancel_token.reason or "Job was cancelled"))
                return
            retryable = getattr(exc, "retryable", True)
            if retryable and job.retries < job.max_retries and not self._closed:
                job.retries += 1
                if job.priority > RETRY_PRIORITY_FLOOR:
                    job.priority -= 1
                job.state = JobState.QUEUED
                self._requeue_front(job)
                JOBS_RETRIED.labels(type=label).inc()
                logger.info(f"Retrying job: {job.id} (attempt {job.retries}/{job.max_retries})")
                return
            job.settle_error(exc)
            JOBS_FAILED.labels(type=label).inc()
            return

        if job.cancelled:
            logger.info(f"Job was cancelled during processing, discarding result: {job.id}")
            job.settle_error(JobCancelledError(job.cancel_token.reason or "Job was cancelled"))
            return

        if job.settle_result(result):
            JOBS_COMPLETED.labels(type=label).inc()
            logger.debug(f"Job completed: {job.id}")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel_for_user(self, user_id: str, reason: str = "Job cancelled due to new request") -> int:
        """
        Cancel every queued or running job owned by ``user_id``.

        Running jobs have their token fired (aborting in‑flight requests) and
        are rejected immediately; queued ones are dropped from the queue.
        Returns the number of jobs cancelled.
        """
        cancelled = 0
        before = len(self._queue)
        for job in list(self._queue) + list(self._active.values()):
            if job.user_id != user_id or job.cancelled or job.settled:
                continue
            job.cancel_token.cancel(reason)
            job.settle_error(JobCancelledError(reason, {"job_id": job.id}))
            JOBS_CANCELLED.labels(type=job.type.value).inc()
            cancelled += 1

        self._queue = [job for job in self._queue if job.user_id != user_id]
        QUEUE_DEPTH.set(len(self._queue))
        logger.info(
            f"Cancelled {cancelled} job(s) for user {user_id} "
            f"(queue {before} -> {len(self._queue)}, {len(self._active)} active)"
        )
        return cancelled

    def pending_for_user(self, user_id: str) -> int:
        return sum(1 for job in self._queue if job.user_id == user_id and not job.cancelled)

    def clear(self) -> int:
        """Reject every queued job. Running jobs are left alone."""
        pending, self._queue = self._queue, []
        for job in pending:
            job.cancel_token.cancel("Queue cleared")
            job.settle_error(JobCancelledError("Queue cleared", {"job_id": job.id}))
        QUEUE_DEPTH.set(0)
        logger.info(f"Queue cleared ({len(pending)} job(s) rejected)")
        return len(pending)

    async def close(self, timeout: float = 30.0) -> None:
        """Reject queued jobs, abort running ones and wait for their tasks."""
        self._closed = True
        self.clear()
        for job in list(self._active.values()):
            job.cancel_token.cancel("Job queue shutting down")
        if self._active:
            await asyncio.wait(set(self._active), timeout=timeout)
        logger.info("Job queue closed")

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------
    def stats(self) -> QueueStats:
        return QueueStats(
            queued=len(self._queue),
            active=len(self._active),
            concurrency_limit=self.concurrency,
        )

    @property
    def queued_jobs(self) -> List[QueueJob]:
        return list(self._queue)

    @property
    def active_jobs(self) -> List[QueueJob]:
        return list(self._active.values())
