"""
Task Queue — FIFO holding area plus a concurrency admission gate.

One TaskQueue per delivery channel. The queue owns two pieces of shared
state, the pending sequence and the in-flight count (`active`), and every
read or write of them goes through the methods below under a single lock:

  enqueue(job)        append to tail, notify listeners ("item available")
  dequeue()           pop head or None, never blocks
  can_admit()         active < concurrency
  begin_execution()   active += 1
  end_execution()     active -= 1, floored at 0
  admit_next()        can_admit + dequeue + begin_execution as one step

The bound applies to concurrent execution. Queue depth is bounded
separately by `max_pending` with an overflow policy; `None` leaves it
unbounded.
"""
from __future__ import annotations

import threading
import structlog
from collections import deque
from typing import Any, Callable, Optional

from models.schemas import DeliveryJob, OverflowPolicy

logger = structlog.get_logger()

Listener = Callable[[], None]


class QueueFullError(Exception):
    """Raised by enqueue() when the queue is full and the policy is REJECT."""

    def __init__(self, name: str, max_pending: int):
        self.name = name
        self.max_pending = max_pending
        super().__init__(f"Queue {name!r} is full ({max_pending} pending)")


class TaskQueue:
    """
    Bounded-concurrency FIFO queue with an "item available" notification.

    Listeners are called synchronously, outside the lock, once per
    successful enqueue. They take no arguments: a listener re-queries the
    queue through admit_next()/dequeue() rather than receiving the job.
    """

    def __init__(
        self,
        name: str,
        concurrency: int = 5,
        max_pending: Optional[int] = None,
        overflow_policy: OverflowPolicy = OverflowPolicy.REJECT,
    ):
        if not isinstance(concurrency, int) or concurrency < 1:
            raise ValueError(f"concurrency must be a positive integer, got {concurrency!r}")
        if max_pending is not None and max_pending < 1:
            raise ValueError(f"max_pending must be positive or None, got {max_pending!r}")

        self.name = name
        self._concurrency = concurrency
        self._max_pending = max_pending
        self._overflow_policy = OverflowPolicy(overflow_policy)
        self._pending: deque[DeliveryJob] = deque()
        self._active = 0
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

        self._enqueued_total = 0
        self._dropped_total = 0
        self._rejected_total = 0
        self._double_completions = 0

    # ── Properties ────────────────────────────────────────────

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def max_pending(self) -> Optional[int]:
        return self._max_pending

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def __len__(self) -> int:
        return self.pending

    # ── Listeners ─────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    # ── Producer side ─────────────────────────────────────────

    def enqueue(self, job: DeliveryJob) -> None:
        """Append job to the tail and signal listeners."""
        dropped: Optional[DeliveryJob] = None
        with self._lock:
            if self._max_pending is not None and len(self._pending) >= self._max_pending:
                if self._overflow_policy == OverflowPolicy.REJECT:
                    self._rejected_total += 1
                    logger.warning("queue_full_rejected",
                                   queue=self.name,
                                   job_id=job.job_id,
                                   max_pending=self._max_pending)
                    raise QueueFullError(self.name, self._max_pending)
                if self._overflow_policy == OverflowPolicy.DROP_NEWEST:
                    self._dropped_total += 1
                    logger.warning("queue_full_dropped_newest",
                                   queue=self.name,
                                   job_id=job.job_id)
                    return
                dropped = self._pending.popleft()
                self._dropped_total += 1

            self._pending.append(job)
            self._enqueued_total += 1
            depth = len(self._pending)

        if dropped is not None:
            logger.warning("queue_full_dropped_oldest",
                           queue=self.name,
                           dropped_job_id=dropped.job_id,
                           job_id=job.job_id)
        logger.debug("job_enqueued", queue=self.name, job_id=job.job_id, pending=depth)
        self._notify()

    # ── Consumer side ─────────────────────────────────────────

    def dequeue(self) -> Optional[DeliveryJob]:
        with self._lock:
            return self._pending.popleft() if self._pending else None

    def can_admit(self) -> bool:
        with self._lock:
            return self._active < self._concurrency

    def begin_execution(self) -> None:
        with self._lock:
            self._active += 1

    def end_execution(self) -> None:
        with self._lock:
            if self._active == 0:
                self._double_completions += 1
                floored = True
            else:
                self._active -= 1
                floored = False
        if floored:
            logger.warning("queue_double_completion", queue=self.name)

    def admit_next(self) -> Optional[DeliveryJob]:
        """
        Reserve a slot and take the head job in one step.

        Returns None when the gate is closed or nothing is pending; in
        both cases no state changes.
        """
        with self._lock:
            if self._active >= self._concurrency or not self._pending:
                return None
            job = self._pending.popleft()
            self._active += 1
            return job

    # ── Introspection ─────────────────────────────────────────

    def snapshot(self) -> list[DeliveryJob]:
        """Pending jobs in dequeue order, without removing them."""
        with self._lock:
            return list(self._pending)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "queue": self.name,
                "concurrency": self._concurrency,
                "active": self._active,
                "pending": len(self._pending),
                "max_pending": self._max_pending,
                "overflow_policy": self._overflow_policy.value,
                "enqueued_total": self._enqueued_total,
                "dropped_total": self._dropped_total,
                "rejected_total": self._rejected_total,
                "double_completions": self._double_completions,
            }
