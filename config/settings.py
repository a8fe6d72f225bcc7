"""
Configuration loader for the OTP delivery service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from models.schemas import ChannelType, OverflowPolicy


class ConfigError(ValueError):
    """Raised when a configuration value is out of range."""


@dataclass
class RetryConfig:
    max_attempts: int = 1               # 1 = no retry, a failed job is dropped
    backoff_seconds: float = 2.0        # base for exponential backoff
    max_backoff_seconds: float = 60.0


@dataclass
class QueueConfig:
    concurrency: int = 5                # max concurrent deliveries for this channel
    max_pending: Optional[int] = 1000   # None = unbounded
    overflow_policy: OverflowPolicy = OverflowPolicy.REJECT
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self):
        if not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ConfigError(f"concurrency must be a positive integer, got {self.concurrency!r}")
        if self.max_pending is not None and self.max_pending < 1:
            raise ConfigError(f"max_pending must be positive or null, got {self.max_pending!r}")
        if self.retry.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")


@dataclass
class ChannelConfig:
    enabled: bool = True
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class OtpConfig:
    length: int = 6
    ttl_minutes: int = 10

    def __post_init__(self):
        # verify endpoints accept 4-10 character codes
        if not 4 <= self.length <= 10:
            raise ConfigError(f"otp.length must be between 4 and 10, got {self.length!r}")
        if self.ttl_minutes < 1:
            raise ConfigError("otp.ttl_minutes must be at least 1")


@dataclass
class Settings:
    app_name: str = "OtpDeliveryService"
    debug: bool = False
    otp: OtpConfig = field(default_factory=OtpConfig)
    queues: dict[str, QueueConfig] = field(default_factory=lambda: {
        ChannelType.EMAIL.value: QueueConfig(),
        ChannelType.SMS.value: QueueConfig(),
    })
    channels: dict[str, ChannelConfig] = field(default_factory=dict)

    def queue_for(self, channel: ChannelType) -> QueueConfig:
        return self.queues.get(channel.value) or QueueConfig()

    def channel_for(self, channel: ChannelType) -> ChannelConfig:
        return self.channels.get(channel.value) or ChannelConfig()


_settings: Optional[Settings] = None


_ENV_REF = re.compile(r"\$\{(\w+)\}")


def _expand_env(obj: Any) -> Any:
    """Resolve ${NAME} references in every string; unknown names stay as written."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {key: _expand_env(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(item) for item in obj]
    return obj


def _parse_queue(raw: dict[str, Any]) -> QueueConfig:
    retry_raw = raw.get("retry") or {}
    try:
        policy = OverflowPolicy(raw.get("overflow_policy", OverflowPolicy.REJECT.value))
    except ValueError as e:
        raise ConfigError(f"unknown overflow_policy {raw.get('overflow_policy')!r}") from e
    return QueueConfig(
        concurrency=raw.get("concurrency", 5),
        max_pending=raw.get("max_pending", 1000),
        overflow_policy=policy,
        retry=RetryConfig(
            max_attempts=retry_raw.get("max_attempts", 1),
            backoff_seconds=float(retry_raw.get("backoff_seconds", 2.0)),
            max_backoff_seconds=float(retry_raw.get("max_backoff_seconds", 60.0)),
        ),
    )


def parse_settings(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-loaded mapping."""
    raw = _expand_env(raw)
    settings = Settings()

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = raw.get("debug", settings.debug)

    if "otp" in raw:
        o = raw["otp"] or {}
        settings.otp = OtpConfig(
            length=o.get("length", 6),
            ttl_minutes=o.get("ttl_minutes", 10),
        )

    if "queues" in raw:
        for ch_name, q_data in (raw["queues"] or {}).items():
            settings.queues[ch_name] = _parse_queue(q_data or {})

    if "channels" in raw:
        for ch_name, ch_data in (raw["channels"] or {}).items():
            ch_data = ch_data or {}
            settings.channels[ch_name] = ChannelConfig(
                enabled=ch_data.get("enabled", True),
                credentials=ch_data.get("credentials", {}),
            )

    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "OTP_SERVICE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _settings = parse_settings(raw)
    return _settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
