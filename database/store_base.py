"""
Abstract Signup Store — Interface for signup and OTP storage backends.

Implementations:
  - InMemorySignupStore (dict-based, single-process, no persistence)

A durable backend only needs to implement these methods; the signup
service never touches storage any other way.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import OtpKind, OtpRecord, SignupRecord


class SignupConflictError(Exception):
    """Raised when an email or phone number is already registered."""


class BaseSignupStore(ABC):
    """Interface that all signup store backends must implement."""

    # ── Signups ───────────────────────────────────────────────

    @abstractmethod
    async def get_signup(self, signup_id: str) -> Optional[SignupRecord]:
        ...

    @abstractmethod
    async def find_by_email(self, email: str) -> Optional[SignupRecord]:
        ...

    @abstractmethod
    async def find_by_phone(self, phone_number: str) -> Optional[SignupRecord]:
        ...

    @abstractmethod
    async def create_signup(self, record: SignupRecord, otps: list[OtpRecord]) -> SignupRecord:
        """Store the record and its OTPs together, or neither."""
        ...

    @abstractmethod
    async def update_signup(self, record: SignupRecord) -> None:
        ...

    # ── OTPs ──────────────────────────────────────────────────

    @abstractmethod
    async def get_otp(self, subject_id: str, kind: OtpKind) -> Optional[OtpRecord]:
        ...

    @abstractmethod
    async def save_otp(self, otp: OtpRecord) -> None:
        """Insert or replace the OTP for (subject_id, kind)."""
        ...

    @abstractmethod
    async def delete_otp(self, subject_id: str, kind: OtpKind) -> None:
        ...
