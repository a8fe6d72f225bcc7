"""
Dispatcher — drives one TaskQueue against one delivery capability.

Drain-on-signal:

  enqueue ──▶ "item available" ──▶ drain()
                                      │  admit_next() until the gate closes
                                      ▼
                               _execute(job)  (own asyncio task)
                                      │  deliver(job), success or failure
                                      ▼
                               end_execution() ──▶ drain()

Draining again on completion is what keeps jobs that arrived while the
queue was saturated from waiting for another arrival.

Failures stop at the job boundary: they are logged and counted, never
raised back to the producer. With the default RetryConfig a failed job
is dropped after one attempt; otherwise retryable failures are
re-enqueued as a fresh job after exponential backoff.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Optional, Protocol, runtime_checkable

from config.settings import RetryConfig
from job_queue.task_queue import QueueFullError, TaskQueue
from models.schemas import DeliveryJob, DeliveryReceipt

logger = structlog.get_logger()


@runtime_checkable
class DeliveryCapability(Protocol):
    """
    The one operation a dispatcher needs from a channel.

    Returns a receipt on success and raises on failure. An exception with
    a false `retryable` attribute is never retried.
    """

    async def deliver(self, job: DeliveryJob) -> DeliveryReceipt:
        ...


class Dispatcher:
    """
    Keeps at most `queue.concurrency` deliveries in flight for one channel.

    Usage:
        dispatcher = Dispatcher(queue, EmailAdapter())
        dispatcher.start()          # inside the running event loop
        queue.enqueue(job)          # delivery starts immediately if a slot is free
        await dispatcher.wait_idle()
    """

    def __init__(
        self,
        queue: TaskQueue,
        capability: DeliveryCapability,
        retry: Optional[RetryConfig] = None,
    ):
        self.queue = queue
        self.capability = capability
        self.retry = retry or RetryConfig()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._in_flight: set[asyncio.Task] = set()
        self._retry_handles: set[asyncio.TimerHandle] = set()

        self._dispatched = 0
        self._succeeded = 0
        self._failed = 0
        self._retried = 0
        self._dropped = 0

        self._attached = False
        self._stopping = False

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def started(self) -> bool:
        return self._loop is not None and not self._stopping

    def start(self) -> None:
        """Bind to the running loop, attach to the queue and drain its backlog."""
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        if not self._attached:
            self.queue.add_listener(self._on_item_available)
            self._attached = True
        logger.info("dispatcher_started",
                    queue=self.queue.name,
                    concurrency=self.queue.concurrency,
                    pending=self.queue.pending)
        self.drain()

    async def wait_idle(self) -> None:
        """Wait until nothing is in flight and no retry is scheduled."""
        while self._in_flight or self._retry_handles:
            if self._in_flight:
                await asyncio.gather(*list(self._in_flight), return_exceptions=True)
            else:
                await asyncio.sleep(0.01)

    async def shutdown(self) -> None:
        """
        Cooperative stop: cancel pending retries and let in-flight
        deliveries finish. Jobs still pending stay in the queue and are
        picked up by the next start().
        """
        self._stopping = True
        for handle in list(self._retry_handles):
            handle.cancel()
        self._retry_handles.clear()
        if self._attached:
            self.queue.remove_listener(self._on_item_available)
            self._attached = False
        await self.wait_idle()
        logger.info("dispatcher_stopped",
                    queue=self.queue.name,
                    left_pending=self.queue.pending,
                    **self.stats())

    # ── Signals ───────────────────────────────────────────────

    def _on_item_available(self) -> None:
        if self._loop is None:
            return  # picked up by start()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self.drain()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.drain)

    def drain(self) -> int:
        """Start as many pending jobs as capacity allows. Returns how many."""
        if self._loop is None or self._stopping or self._loop.is_closed():
            return 0
        started = 0
        while True:
            job = self.queue.admit_next()
            if job is None:
                break
            task = self._loop.create_task(self._execute(job), name=f"deliver-{job.job_id}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            self._dispatched += 1
            started += 1
        return started

    # ── Execution ─────────────────────────────────────────────

    async def _execute(self, job: DeliveryJob) -> None:
        start = time.monotonic()
        logger.info("delivery_started",
                    queue=self.queue.name,
                    job_id=job.job_id,
                    attempt=job.attempt)
        try:
            receipt = await self.capability.deliver(job)
        except Exception as e:
            self._failed += 1
            logger.error("delivery_failed",
                         queue=self.queue.name,
                         job_id=job.job_id,
                         attempt=job.attempt,
                         error=str(e),
                         error_type=type(e).__name__)
            self._maybe_retry(job, e)
        else:
            self._succeeded += 1
            logger.info("delivery_succeeded",
                        queue=self.queue.name,
                        job_id=job.job_id,
                        status=receipt.status,
                        provider_message_id=receipt.provider_message_id,
                        duration_ms=round((time.monotonic() - start) * 1000, 1))
        finally:
            self.queue.end_execution()
            self.drain()

    # ── Retry ─────────────────────────────────────────────────

    def _backoff(self, attempt: int) -> float:
        delay = self.retry.backoff_seconds * (2 ** (attempt - 1))
        return min(delay, self.retry.max_backoff_seconds)

    def _maybe_retry(self, job: DeliveryJob, error: Exception) -> None:
        if job.attempt >= self.retry.max_attempts:
            if self.retry.max_attempts > 1:
                logger.warning("delivery_attempts_exhausted",
                               queue=self.queue.name,
                               job_id=job.job_id,
                               attempts=job.attempt)
            return
        if not getattr(error, "retryable", True):
            logger.info("delivery_not_retryable",
                        queue=self.queue.name,
                        job_id=job.job_id)
            return
        if self._stopping:
            logger.info("delivery_retry_cancelled",
                        queue=self.queue.name,
                        job_id=job.job_id)
            return

        retry_job = job.next_attempt()
        delay = self._backoff(job.attempt)
        handle: Optional[asyncio.TimerHandle] = None

        def requeue():
            self._retry_handles.discard(handle)
            try:
                self.queue.enqueue(retry_job)
                self._retried += 1
            except QueueFullError:
                self._dropped += 1
                logger.warning("delivery_retry_dropped",
                               queue=self.queue.name,
                               job_id=retry_job.job_id)

        handle = self._loop.call_later(delay, requeue)
        self._retry_handles.add(handle)
        logger.info("delivery_retry_scheduled",
                    queue=self.queue.name,
                    job_id=job.job_id,
                    next_attempt=retry_job.attempt,
                    delay_seconds=delay)

    # ── Stats ─────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "dispatched": self._dispatched,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "retried": self._retried,
            "retry_dropped": self._dropped,
            "in_flight": len(self._in_flight),
            "retries_scheduled": len(self._retry_handles),
        }
