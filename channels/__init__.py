"""Delivery channel adapters."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    DeliveryError,
    InvalidDestinationError,
    CircuitOpenError,
    CircuitBreaker,
    DeliveryStats,
)
from channels.email_adapter import EmailAdapter
from channels.sms_adapter import SMSAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry",
    "DeliveryError", "InvalidDestinationError", "CircuitOpenError",
    "CircuitBreaker", "DeliveryStats",
    "EmailAdapter", "SMSAdapter",
]
