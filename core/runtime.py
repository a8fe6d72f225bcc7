"""
Delivery Runtime — one TaskQueue + Dispatcher lane per channel.

  SignupService ──enqueue──▶ email TaskQueue ──▶ Dispatcher ──▶ EmailAdapter
                └─enqueue──▶ sms TaskQueue   ──▶ Dispatcher ──▶ SMSAdapter

Lanes are independent: each has its own concurrency limit, pending bound
and retry policy, so saturating one channel never blocks the other.

Queues live in this process's memory. A forked child that calls
get_runtime() gets a fresh, empty runtime of its own (with a warning),
never the parent's. Serve the API with one worker process; several
workers would each hold separate queues.
"""
from __future__ import annotations

import os
import structlog
from dataclasses import dataclass
from typing import Any, Optional

from config.settings import Settings, get_settings
from channels.base import ChannelAdapter, ChannelRegistry
from channels.email_adapter import EmailAdapter
from channels.sms_adapter import SMSAdapter
from job_queue.dispatcher import Dispatcher
from job_queue.task_queue import TaskQueue
from models.schemas import ChannelType, DeliveryJob

logger = structlog.get_logger()


@dataclass
class DeliveryLane:
    channel: ChannelType
    queue: TaskQueue
    dispatcher: Dispatcher
    adapter: ChannelAdapter


class DeliveryRuntime:
    """Owns the per-channel lanes and their lifecycle."""

    def __init__(self, lanes: dict[ChannelType, DeliveryLane], settings: Optional[Settings] = None):
        self.lanes = lanes
        self.settings = settings or Settings()
        self.registry = ChannelRegistry()
        for lane in lanes.values():
            self.registry.register(lane.adapter)
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        adapters: Optional[dict[ChannelType, ChannelAdapter]] = None,
    ) -> DeliveryRuntime:
        settings = settings or get_settings()
        adapters = dict(adapters or {})
        adapters.setdefault(ChannelType.EMAIL, EmailAdapter())
        adapters.setdefault(ChannelType.SMS, SMSAdapter())

        lanes: dict[ChannelType, DeliveryLane] = {}
        for channel, adapter in adapters.items():
            if not settings.channel_for(channel).enabled:
                logger.info("channel_disabled", channel=channel.value)
                continue
            q_cfg = settings.queue_for(channel)
            queue = TaskQueue(
                name=channel.value,
                concurrency=q_cfg.concurrency,
                max_pending=q_cfg.max_pending,
                overflow_policy=q_cfg.overflow_policy,
            )
            lanes[channel] = DeliveryLane(
                channel=channel,
                queue=queue,
                dispatcher=Dispatcher(queue, adapter, retry=q_cfg.retry),
                adapter=adapter,
            )
        return cls(lanes, settings)

    # ── Access ────────────────────────────────────────────────

    def queue(self, channel: ChannelType) -> TaskQueue:
        lane = self.lanes.get(channel)
        if lane is None:
            raise KeyError(f"No delivery lane for channel {channel.value!r}")
        return lane.queue

    def enqueue(self, job: DeliveryJob) -> None:
        self.queue(job.channel).enqueue(job)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Initialize adapters and bind dispatchers to the running loop."""
        if self._started:
            return
        await self.registry.initialize_all(self.settings.channels)
        for lane in self.lanes.values():
            lane.dispatcher.start()
        self._started = True
        logger.info("delivery_runtime_started",
                    pid=os.getpid(),
                    lanes=[ch.value for ch in self.lanes])

    async def stop(self) -> None:
        """Let in-flight deliveries finish, then release adapters."""
        for lane in self.lanes.values():
            await lane.dispatcher.shutdown()
        await self.registry.shutdown_all()
        self._started = False
        logger.info("delivery_runtime_stopped", pid=os.getpid())

    async def wait_idle(self) -> None:
        for lane in self.lanes.values():
            await lane.dispatcher.wait_idle()

    async def health(self) -> dict[str, Any]:
        channels = await self.registry.health_check_all()
        return {
            ch.value: {
                "queue": lane.queue.stats(),
                "dispatcher": lane.dispatcher.stats(),
                "channel": channels.get(ch.value, {}),
            }
            for ch, lane in self.lanes.items()
        }


# ──────────────────────────────────────────────────────────────
#  Process-local singleton
# ──────────────────────────────────────────────────────────────

_instance: Optional[DeliveryRuntime] = None
_owner_pid: Optional[int] = None


def get_runtime() -> DeliveryRuntime:
    """Return this process's runtime, building it on first use."""
    global _instance, _owner_pid
    pid = os.getpid()
    if _instance is not None and _owner_pid != pid:
        logger.warning("delivery_runtime_forked",
                       parent_pid=_owner_pid,
                       pid=pid,
                       detail="queues are per-process; starting an empty runtime")
        _instance = None
    if _instance is None:
        _instance = DeliveryRuntime.from_settings()
        _owner_pid = pid
    return _instance


def reset_runtime() -> None:
    global _instance, _owner_pid
    _instance = None
    _owner_pid = None
