"""
Tests for Dispatcher: drain on arrival and on completion, concurrency
ceiling, failure isolation, retry policy and lane independence.
"""
import asyncio
import threading
import pytest

from channels.base import DeliveryError
from config.settings import RetryConfig
from job_queue.dispatcher import DeliveryCapability, Dispatcher
from job_queue.task_queue import TaskQueue
from models.schemas import ChannelType, OverflowPolicy
from tests.conftest import (
    GatedCapability, ScriptedCapability, eventually, make_job, release_until_finished,
)


def _lane(concurrency: int, capability, **kwargs) -> tuple[TaskQueue, Dispatcher]:
    queue = TaskQueue("email", concurrency=concurrency)
    dispatcher = Dispatcher(queue, capability, **kwargs)
    dispatcher.start()
    return queue, dispatcher


class TestDrain:
    @pytest.mark.asyncio
    async def test_burst_admits_up_to_limit(self, gated):
        queue, _ = _lane(3, gated)
        for i in range(5):
            queue.enqueue(make_job(i))

        # Admission happens synchronously inside enqueue()
        assert queue.active == 3
        assert queue.pending == 2

        await eventually(lambda: len(gated.started) == 3)
        assert gated.started_ids == ["job-email-0", "job-email-1", "job-email-2"]
        await release_until_finished(gated, 5)

    @pytest.mark.asyncio
    async def test_completion_starts_next_job(self, gated):
        queue, _ = _lane(3, gated)
        for i in range(5):
            queue.enqueue(make_job(i))
        await eventually(lambda: len(gated.started) == 3)

        gated.release("job-email-1")
        await eventually(lambda: len(gated.started) == 4)
        assert gated.started_ids[3] == "job-email-3"
        assert queue.active == 3
        assert queue.pending == 1
        await release_until_finished(gated, 5)

    @pytest.mark.asyncio
    async def test_jobs_queued_during_saturation_are_not_stranded(self, gated):
        queue, dispatcher = _lane(2, gated)
        for i in range(3):
            queue.enqueue(make_job(i))
        await eventually(lambda: len(gated.started) == 2)
        assert queue.pending == 1

        # No further arrivals: only completions can move the third job
        gated.release("job-email-0")
        await eventually(lambda: len(gated.started) == 3)
        gated.release_all()
        await dispatcher.wait_idle()

        assert sorted(gated.finished) == ["job-email-0", "job-email-1", "job-email-2"]
        assert queue.active == 0
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_concurrency_ceiling_holds_under_load(self):
        cap = GatedCapability()
        queue, dispatcher = _lane(4, cap)
        for i in range(50):
            queue.enqueue(make_job(i))

        deadline = asyncio.get_running_loop().time() + 2.0
        while len(cap.finished) < 50:
            assert asyncio.get_running_loop().time() < deadline
            assert queue.active <= 4
            cap.release_all()
            await asyncio.sleep(0)

        await dispatcher.wait_idle()
        assert cap.max_running == 4
        assert cap.started_ids == [f"job-email-{i}" for i in range(50)]
        assert queue.active == 0

    @pytest.mark.asyncio
    async def test_no_jobs_no_deliveries(self, gated):
        queue, dispatcher = _lane(3, gated)
        await asyncio.sleep(0)
        await dispatcher.wait_idle()
        assert gated.started == []
        assert queue.active == 0
        assert dispatcher.stats()["dispatched"] == 0

    @pytest.mark.asyncio
    async def test_start_drains_backlog(self, gated):
        queue = TaskQueue("email", concurrency=2)
        dispatcher = Dispatcher(queue, gated)
        for i in range(3):
            queue.enqueue(make_job(i))
        assert queue.active == 0  # not started, nothing admitted

        dispatcher.start()
        assert queue.active == 2
        assert queue.pending == 1
        await release_until_finished(gated, 3)
        await dispatcher.wait_idle()
        assert gated.started_ids == ["job-email-0", "job-email-1", "job-email-2"]

    @pytest.mark.asyncio
    async def test_enqueue_from_another_thread(self):
        cap = ScriptedCapability()
        queue, dispatcher = _lane(2, cap)

        def produce():
            for i in range(10):
                queue.enqueue(make_job(i))

        t = threading.Thread(target=produce)
        t.start()
        t.join()

        await eventually(lambda: len(cap.calls) == 10)
        await dispatcher.wait_idle()
        assert [j.job_id for j in cap.calls] == [f"job-email-{i}" for i in range(10)]
        assert queue.active == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_attempted_once_and_slot_freed(self):
        cap = GatedCapability(fail_with=DeliveryError("smtp down", "email", retryable=True))
        queue, dispatcher = _lane(3, cap)
        before = queue.active

        queue.enqueue(make_job(1))
        await eventually(lambda: len(cap.started) == 1)
        cap.release_all()
        await dispatcher.wait_idle()

        assert len(cap.started) == 1
        assert queue.active == before
        assert queue.pending == 0
        stats = dispatcher.stats()
        assert stats["failed"] == 1
        assert stats["retried"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_does_not_stop_dispatcher(self):
        cap = GatedCapability(fail_with=RuntimeError("boom"))
        queue, dispatcher = _lane(1, cap)
        queue.enqueue(make_job(1))
        queue.enqueue(make_job(2))
        await eventually(lambda: len(cap.started) == 1)
        cap.release_all()
        await eventually(lambda: len(cap.started) == 2)
        cap.release_all()
        await dispatcher.wait_idle()
        assert dispatcher.stats()["failed"] == 2
        assert queue.active == 0

    @pytest.mark.asyncio
    async def test_failure_does_not_reach_producer(self):
        cap = ScriptedCapability(failures=1)
        queue, dispatcher = _lane(1, cap)
        queue.enqueue(make_job(1))  # must not raise
        await dispatcher.wait_idle()
        assert len(cap.calls) == 1


class TestRetry:
    @pytest.mark.asyncio
    async def test_retryable_failure_is_requeued(self):
        cap = ScriptedCapability(failures=2)
        retry = RetryConfig(max_attempts=3, backoff_seconds=0.001)
        queue, dispatcher = _lane(1, cap, retry=retry)

        queue.enqueue(make_job(1))
        await eventually(lambda: len(cap.calls) == 3)
        await dispatcher.wait_idle()

        assert [j.attempt for j in cap.calls] == [1, 2, 3]
        assert {j.job_id for j in cap.calls} == {"job-email-1"}
        stats = dispatcher.stats()
        assert stats["failed"] == 2
        assert stats["retried"] == 2
        assert stats["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_stops_after_max_attempts(self):
        cap = ScriptedCapability(failures=10)
        queue, dispatcher = _lane(1, cap, retry=RetryConfig(max_attempts=2, backoff_seconds=0.001))
        queue.enqueue(make_job(1))
        await eventually(lambda: len(cap.calls) == 2)
        await dispatcher.wait_idle()
        await asyncio.sleep(0.01)
        assert len(cap.calls) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_not_requeued(self):
        cap = ScriptedCapability(failures=1, retryable=False)
        queue, dispatcher = _lane(1, cap, retry=RetryConfig(max_attempts=3, backoff_seconds=0.001))
        queue.enqueue(make_job(1))
        await dispatcher.wait_idle()
        assert len(cap.calls) == 1
        assert dispatcher.stats()["retried"] == 0

    @pytest.mark.asyncio
    async def test_retry_goes_to_tail(self):
        cap = ScriptedCapability(failures=1)
        queue, dispatcher = _lane(1, cap, retry=RetryConfig(max_attempts=2, backoff_seconds=0.001))
        queue.enqueue(make_job(1))
        queue.enqueue(make_job(2))
        await eventually(lambda: len(cap.calls) == 3)
        await dispatcher.wait_idle()
        assert [(j.job_id, j.attempt) for j in cap.calls] == [
            ("job-email-1", 1), ("job-email-2", 1), ("job-email-1", 2),
        ]

    @pytest.mark.asyncio
    async def test_retry_dropped_when_queue_full(self, gated):
        queue = TaskQueue("email", concurrency=1, max_pending=1, overflow_policy=OverflowPolicy.REJECT)
        failing = ScriptedCapability(failures=1)
        dispatcher = Dispatcher(queue, failing, retry=RetryConfig(max_attempts=2, backoff_seconds=0.05))
        dispatcher.start()

        queue.enqueue(make_job(1))
        await eventually(lambda: len(failing.calls) == 1)
        # Occupy the single pending slot before the retry fires
        dispatcher.capability = gated
        queue.enqueue(make_job(2))
        queue.enqueue(make_job(3))
        await eventually(lambda: dispatcher.stats()["retry_dropped"] == 1, timeout=2.0)
        gated.release_all()
        await eventually(lambda: len(gated.started) == 2)
        gated.release_all()
        await dispatcher.wait_idle()

    def test_backoff_is_exponential_and_capped(self):
        d = Dispatcher(TaskQueue("email"), ScriptedCapability(),
                       retry=RetryConfig(max_attempts=5, backoff_seconds=1.0, max_backoff_seconds=3.0))
        assert [d._backoff(a) for a in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]

    def test_job_metadata_is_read_only(self):
        job = make_job(1, metadata={"signup_id": "s-1"})
        with pytest.raises(TypeError):
            job.metadata["signup_id"] = "other"
        assert job.model_dump()["metadata"] == {"signup_id": "s-1"}

    def test_next_attempt_leaves_original_metadata_alone(self):
        job = make_job(1, metadata={"signup_id": "s-1"})
        retry = job.next_attempt()
        assert dict(job.metadata) == {"signup_id": "s-1"}
        assert retry.metadata["signup_id"] == "s-1"
        assert "last_failure_at" in retry.metadata
        with pytest.raises(TypeError):
            retry.metadata["attempt_note"] = "x"


class TestLanes:
    @pytest.mark.asyncio
    async def test_saturated_email_does_not_block_sms(self):
        email_cap = GatedCapability()
        sms_cap = ScriptedCapability()
        email_q = TaskQueue("email", concurrency=1)
        sms_q = TaskQueue("sms", concurrency=2)
        email_d = Dispatcher(email_q, email_cap)
        sms_d = Dispatcher(sms_q, sms_cap)
        email_d.start()
        sms_d.start()

        for i in range(5):
            email_q.enqueue(make_job(i))
        assert not email_q.can_admit()

        sms_q.enqueue(make_job(1, channel=ChannelType.SMS))
        await sms_d.wait_idle()
        assert len(sms_cap.calls) == 1
        assert email_q.pending == 4

        await release_until_finished(email_cap, 5)
        await email_d.wait_idle()
        assert len(email_cap.finished) == 5


class TestLifecycle:
    def test_capability_protocol(self):
        assert isinstance(ScriptedCapability(), DeliveryCapability)

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight(self, gated):
        queue, dispatcher = _lane(2, gated)
        queue.enqueue(make_job(1))
        await eventually(lambda: len(gated.started) == 1)

        stopper = asyncio.create_task(dispatcher.shutdown())
        await asyncio.sleep(0.01)
        assert not stopper.done()
        gated.release_all()
        await stopper
        assert gated.finished == ["job-email-1"]

        # Detached from the queue after shutdown
        queue.enqueue(make_job(2))
        await asyncio.sleep(0)
        assert len(gated.started) == 1

    @pytest.mark.asyncio
    async def test_restart_reattaches_to_queue(self):
        cap = ScriptedCapability()
        queue, dispatcher = _lane(2, cap)
        await dispatcher.shutdown()
        assert not dispatcher.started

        dispatcher.start()
        queue.enqueue(make_job(1))
        await eventually(lambda: len(cap.calls) == 1)
        await dispatcher.wait_idle()
        assert dispatcher.stats()["succeeded"] == 1
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_restart_twice_registers_one_listener(self):
        cap = ScriptedCapability()
        queue, dispatcher = _lane(1, cap)
        dispatcher.start()
        await dispatcher.shutdown()
        dispatcher.start()
        queue.enqueue(make_job(1))
        await eventually(lambda: len(cap.calls) == 1)
        await dispatcher.wait_idle()
        assert dispatcher.stats()["dispatched"] == 1

    @pytest.mark.asyncio
    async def test_shutdown_leaves_backlog_pending(self, gated):
        queue, dispatcher = _lane(1, gated)
        for i in range(3):
            queue.enqueue(make_job(i))
        await eventually(lambda: len(gated.started) == 1)

        stopper = asyncio.create_task(dispatcher.shutdown())
        await asyncio.sleep(0)
        gated.release_all()
        await stopper

        # The completion did not pull the next job in
        assert gated.finished == ["job-email-0"]
        assert queue.pending == 2
        assert queue.active == 0

        dispatcher.start()
        await release_until_finished(gated, 3)
        assert gated.finished == ["job-email-0", "job-email-1", "job-email-2"]
