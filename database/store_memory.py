"""
InMemorySignupStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Same interface as any BaseSignupStore backend
  - Single asyncio event loop; an asyncio.Lock makes create_signup atomic
  - All data lost on process restart
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from database.store_base import BaseSignupStore, SignupConflictError
from models.schemas import OtpKind, OtpRecord, SignupRecord

logger = structlog.get_logger()


def _phone_key(phone_number: str) -> str:
    return "".join(c for c in phone_number if c.isdigit())


class InMemorySignupStore(BaseSignupStore):

    def __init__(self):
        self._signups: dict[str, SignupRecord] = {}         # id → record
        self._otps: dict[tuple[str, OtpKind], OtpRecord] = {}

        # Indexes
        self._email_index: dict[str, str] = {}              # lower(email) → id
        self._phone_index: dict[str, str] = {}              # digits → id
        self._lock = asyncio.Lock()

    # ── Signups ───────────────────────────────────────────

    async def get_signup(self, signup_id: str) -> Optional[SignupRecord]:
        return self._signups.get(signup_id)

    async def find_by_email(self, email: str) -> Optional[SignupRecord]:
        sid = self._email_index.get(email.strip().lower())
        return self._signups.get(sid) if sid else None

    async def find_by_phone(self, phone_number: str) -> Optional[SignupRecord]:
        sid = self._phone_index.get(_phone_key(phone_number))
        return self._signups.get(sid) if sid else None

    async def create_signup(self, record: SignupRecord, otps: list[OtpRecord]) -> SignupRecord:
        email_key = record.email.strip().lower()
        phone_key = _phone_key(record.phone_number)
        async with self._lock:
            if email_key in self._email_index:
                raise SignupConflictError("Email is already in use")
            if phone_key in self._phone_index:
                raise SignupConflictError("Phone number is already in use")
            self._signups[record.id] = record
            self._email_index[email_key] = record.id
            self._phone_index[phone_key] = record.id
            for otp in otps:
                self._otps[(otp.subject_id, otp.kind)] = otp
        logger.debug("signup_stored", signup_id=record.id, otps=len(otps))
        return record

    async def update_signup(self, record: SignupRecord) -> None:
        if record.id not in self._signups:
            raise KeyError(record.id)
        self._signups[record.id] = record

    # ── OTPs ──────────────────────────────────────────────

    async def get_otp(self, subject_id: str, kind: OtpKind) -> Optional[OtpRecord]:
        return self._otps.get((subject_id, kind))

    async def save_otp(self, otp: OtpRecord) -> None:
        self._otps[(otp.subject_id, otp.kind)] = otp

    async def delete_otp(self, subject_id: str, kind: OtpKind) -> None:
        self._otps.pop((subject_id, kind), None)
