"""Shared test fixtures for the OTP delivery service."""
import asyncio
import pytest
from typing import Callable

from channels.base import DeliveryError
from models.schemas import ChannelType, DeliveryJob, DeliveryReceipt


def make_job(n: int = 0, channel: ChannelType = ChannelType.EMAIL, **kwargs) -> DeliveryJob:
    destination = f"user{n}@example.com" if channel == ChannelType.EMAIL else f"+1415555{n:04d}"
    return DeliveryJob(
        job_id=kwargs.pop("job_id", f"job-{channel.value}-{n}"),
        channel=channel,
        destination=destination,
        content=kwargs.pop("content", f"Your OTP is {100000 + n}"),
        **kwargs,
    )


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0):
    """Yield to the loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0)


class GatedCapability:
    """
    Delivery capability whose sends block until released.

    Records every started job so tests can observe admission order and
    concurrency; release(job_id) lets that delivery finish.
    """

    def __init__(self, fail_with: Exception = None):
        self.fail_with = fail_with
        self.started: list[DeliveryJob] = []
        self.finished: list[str] = []
        self.running = 0
        self.max_running = 0
        self._gates: dict[str, asyncio.Event] = {}

    def _gate(self, job_id: str) -> asyncio.Event:
        return self._gates.setdefault(job_id, asyncio.Event())

    def release(self, job_id: str):
        self._gate(job_id).set()

    def release_all(self):
        for job in self.started:
            self.release(job.job_id)

    @property
    def started_ids(self) -> list[str]:
        return [j.job_id for j in self.started]

    async def deliver(self, job: DeliveryJob) -> DeliveryReceipt:
        self.started.append(job)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await self._gate(job.job_id).wait()
            if self.fail_with is not None:
                raise self.fail_with
            return DeliveryReceipt(job_id=job.job_id, channel=job.channel, destination=job.destination)
        finally:
            self.running -= 1
            self.finished.append(job.job_id)


class ScriptedCapability:
    """Fails the first `failures` calls, then succeeds. No blocking."""

    def __init__(self, failures: int = 0, retryable: bool = True):
        self.failures = failures
        self.retryable = retryable
        self.calls: list[DeliveryJob] = []

    async def deliver(self, job: DeliveryJob) -> DeliveryReceipt:
        self.calls.append(job)
        if len(self.calls) <= self.failures:
            raise DeliveryError("provider unavailable", job.channel.value, retryable=self.retryable)
        return DeliveryReceipt(job_id=job.job_id, channel=job.channel, destination=job.destination)


@pytest.fixture
def gated() -> GatedCapability:
    return GatedCapability()


async def release_until_finished(cap: GatedCapability, total: int, timeout: float = 2.0):
    """Keep releasing started deliveries until `total` have finished."""
    deadline = asyncio.get_running_loop().time() + timeout
    while len(cap.finished) < total:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"only {len(cap.finished)}/{total} deliveries finished")
        cap.release_all()
        await asyncio.sleep(0)
