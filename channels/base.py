"""
Channel Adapters — shared infrastructure for delivery channels.

Provides:
- DeliveryError: structured failure with a retryable flag
- CircuitBreaker: stops hammering a provider after consecutive failures
- DeliveryStats: per-channel outcome counters and recent latency
- ChannelAdapter: abstract delivery capability wrapping every send
- ChannelRegistry: adapter lookup, initialization and health
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from collections import deque
from typing import Any, Callable, Mapping, Optional

from config.settings import ChannelConfig
from models.schemas import ChannelType, DeliveryJob, DeliveryReceipt

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class DeliveryError(Exception):
    """A send that did not reach the provider, or that the provider refused."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        super().__init__(message)
        self.channel = channel
        self.retryable = retryable


class InvalidDestinationError(DeliveryError):
    def __init__(self, destination: str, channel: str = ""):
        super().__init__(f"Invalid destination {destination!r}", channel)


class CircuitOpenError(DeliveryError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel} provider paused after repeated failures",
                         channel, retryable=True)


def configured(value: Any) -> str:
    """Credential value, or "" when missing or an unresolved ${VAR}."""
    if isinstance(value, str) and value and not value.startswith("${"):
        return value
    return ""


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Counts consecutive provider failures for one channel.

    After `threshold` failures in a row, sends are refused for `cooldown`
    seconds. After the cooldown exactly one send is let through as a
    trial; others are refused until it reports back. Success closes the
    breaker, failure starts a new cooldown.
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._consecutive = 0
        self._open_until: Optional[float] = None
        self._trial_in_flight = False
        self.trips = 0

    @property
    def state(self) -> str:
        if self._open_until is None:
            return "closed"
        return "open" if self._clock() < self._open_until else "half_open"

    def allow(self) -> bool:
        state = self.state
        if state == "closed":
            return True
        if state == "open" or self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def release(self) -> None:
        """End a trial that said nothing about provider health."""
        self._trial_in_flight = False

    def failure(self) -> None:
        self._trial_in_flight = False
        self._consecutive += 1
        if self.state == "half_open" or self._consecutive >= self.threshold:
            self._open_until = self._clock() + self.cooldown
            self.trips += 1
            logger.warning("circuit_opened",
                           consecutive_failures=self._consecutive,
                           cooldown_seconds=self.cooldown)

    def success(self) -> None:
        self._trial_in_flight = False
        if self._open_until is not None:
            logger.info("circuit_closed", after_failures=self._consecutive)
        self._consecutive = 0
        self._open_until = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "consecutive_failures": self._consecutive,
            "trips": self.trips,
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY STATS
# ══════════════════════════════════════════════════════════════

class DeliveryStats:
    """Outcome counters for one channel, with a bounded latency window."""

    def __init__(self, window: int = 200):
        self.sent = 0
        self.simulated = 0
        self.failed = 0
        self.failures_by_type: dict[str, int] = {}
        self.last_error = ""
        self._latencies: deque[float] = deque(maxlen=window)

    def record(self, status: str, latency_ms: float) -> None:
        if status == "simulated":
            self.simulated += 1
        else:
            self.sent += 1
        self._latencies.append(latency_ms)

    def record_error(self, error: Exception) -> None:
        self.failed += 1
        kind = type(error).__name__
        self.failures_by_type[kind] = self.failures_by_type.get(kind, 0) + 1
        self.last_error = str(error)[:200]

    def as_dict(self) -> dict[str, Any]:
        recent = sorted(self._latencies)
        return {
            "sent": self.sent,
            "simulated": self.simulated,
            "failed": self.failed,
            "failures_by_type": dict(self.failures_by_type),
            "median_latency_ms": round(recent[len(recent) // 2], 1) if recent else 0.0,
            "last_error": self.last_error,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for delivery channels; satisfies DeliveryCapability.

    Subclasses implement _do_send. deliver() consults the breaker, times
    the send, records the outcome, and turns any stray exception into a
    retryable DeliveryError so the dispatcher only sees one error type.
    """

    channel_type: ChannelType

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._stats = DeliveryStats()

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def _do_send(self, job: DeliveryJob) -> dict[str, Any]:
        """Send one job. Returns {"provider_message_id", "status", ...}."""
        ...

    # ── Public delivery ───────────────────────────────────────

    async def deliver(self, job: DeliveryJob) -> DeliveryReceipt:
        channel = self.channel_type.value
        if not self._breaker.allow():
            error = CircuitOpenError(channel)
            self._stats.record_error(error)
            raise error

        start = time.monotonic()
        try:
            result = dict(await self._do_send(job))
        except asyncio.CancelledError:
            self._breaker.release()
            raise
        except DeliveryError as e:
            self._on_failure(e)
            raise
        except Exception as e:
            self._on_failure(e)
            raise DeliveryError(str(e) or type(e).__name__, channel, retryable=True) from e

        latency = round((time.monotonic() - start) * 1000, 1)
        status = result.pop("status", "sent")
        self._breaker.success()
        self._stats.record(status, latency)
        return DeliveryReceipt(
            job_id=job.job_id,
            channel=self.channel_type,
            destination=job.destination,
            provider_message_id=result.pop("provider_message_id", ""),
            status=status,
            latency_ms=latency,
            detail=result,
        )

    def _on_failure(self, error: Exception) -> None:
        # Bad addresses and opt-outs say nothing about provider health
        if getattr(error, "retryable", True):
            self._breaker.failure()
        else:
            self._breaker.release()
        self._stats.record_error(error)

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "circuit": self._breaker.snapshot(),
            "stats": self._stats.as_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    """One adapter per channel type."""

    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter) -> None:
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters)

    async def initialize_all(self, configs: Mapping[str, ChannelConfig]) -> None:
        for channel, adapter in self._adapters.items():
            cfg = configs.get(channel.value)
            await adapter.initialize(dict(cfg.credentials) if cfg else {})

    async def health_check_all(self) -> dict[str, Any]:
        return {
            channel.value: await adapter.health_check()
            for channel, adapter in self._adapters.items()
        }

    async def shutdown_all(self) -> None:
        for channel, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.error("channel_shutdown_failed", channel=channel.value, error=str(e))
