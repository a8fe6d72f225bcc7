"""
Core data models for the OTP delivery service.
These are the types shared by the queue, the channels and the API.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class OverflowPolicy(str, Enum):
    REJECT = "reject"
    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"


class OtpKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


# ──────────────────────────────────────────────────────────────
#  Delivery jobs
# ──────────────────────────────────────────────────────────────

class DeliveryJob(BaseModel):
    """One unit of delivery work. Immutable once enqueued."""
    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    channel: ChannelType
    destination: str                          # email address or E.164 number
    content: str
    subject: str = ""                         # email only
    attempt: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)

    @field_validator("metadata")
    @classmethod
    def _freeze_metadata(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(value))

    @field_serializer("metadata")
    def _dump_metadata(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return dict(value)

    def next_attempt(self) -> DeliveryJob:
        """Fresh copy for a retry; keeps job_id for tracing."""
        return self.model_copy(update={
            "attempt": self.attempt + 1,
            "metadata": MappingProxyType(
                {**self.metadata, "last_failure_at": _utcnow().isoformat()}),
        })


class DeliveryReceipt(BaseModel):
    """What a channel hands back after a successful send."""
    job_id: str
    channel: ChannelType
    destination: str
    provider_message_id: str = ""
    status: str = "sent"                      # sent | simulated
    latency_ms: float = 0.0
    detail: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Signup / verification
# ──────────────────────────────────────────────────────────────

class SignupRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    company_name: str
    email: str
    phone_number: str
    employee_size: Optional[int] = None
    is_email_verified: bool = False
    is_phone_verified: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class OtpRecord(BaseModel):
    subject_id: str                           # SignupRecord.id
    kind: OtpKind
    code: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) > self.expires_at


# ──────────────────────────────────────────────────────────────
#  API bodies
# ──────────────────────────────────────────────────────────────

class SignupRequest(BaseModel):
    company_name: str = Field(min_length=1, max_length=200)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone_number: str = Field(pattern=r"^\+?[0-9][0-9\s\-]{6,18}$")
    employee_size: Optional[int] = Field(default=None, ge=1)


class VerifyEmailRequest(BaseModel):
    email: str
    otp: str = Field(min_length=4, max_length=10, pattern=r"^[0-9]+$")


class VerifyPhoneRequest(BaseModel):
    phone_number: str
    otp: str = Field(min_length=4, max_length=10, pattern=r"^[0-9]+$")


class ResendOtpRequest(BaseModel):
    kind: OtpKind
    address: str
