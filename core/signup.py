"""
Signup Service — the producer side of the delivery queues.

signup() stores the record with one email OTP and one phone OTP, then
enqueues one delivery job per channel and returns. It never waits for a
delivery: a failed send is only visible in the dispatcher logs, and the
user recovers with resend_otp().
"""
from __future__ import annotations

import secrets
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from config.settings import OtpConfig
from core.runtime import DeliveryRuntime
from database.store_base import BaseSignupStore, SignupConflictError
from models.schemas import (
    ChannelType, DeliveryJob, OtpKind, OtpRecord, SignupRecord, SignupRequest,
)

logger = structlog.get_logger()


def _codes_match(expected: str, given: str) -> bool:
    # compare_digest only accepts ASCII str, bytes work for any input
    return secrets.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


class VerificationError(Exception):
    """Raised when an OTP cannot be verified."""


class SignupService:
    def __init__(
        self,
        store: BaseSignupStore,
        runtime: DeliveryRuntime,
        otp_config: Optional[OtpConfig] = None,
    ):
        self.store = store
        self.runtime = runtime
        self.otp_config = otp_config or OtpConfig()

    # ── OTP helpers ───────────────────────────────────────────

    def _generate_code(self) -> str:
        length = self.otp_config.length
        return str(secrets.randbelow(9 * 10 ** (length - 1)) + 10 ** (length - 1))

    def _new_otp(self, subject_id: str, kind: OtpKind) -> OtpRecord:
        return OtpRecord(
            subject_id=subject_id,
            kind=kind,
            code=self._generate_code(),
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=self.otp_config.ttl_minutes),
        )

    def _job_for(self, record: SignupRecord, otp: OtpRecord) -> DeliveryJob:
        ttl = self.otp_config.ttl_minutes
        if otp.kind == OtpKind.EMAIL:
            return DeliveryJob(
                channel=ChannelType.EMAIL,
                destination=record.email,
                subject="Verify Your Email",
                content=(f"Your OTP for email verification is: {otp.code}. "
                         f"This OTP is valid for {ttl} minutes."),
                metadata={"signup_id": record.id, "otp_kind": otp.kind.value},
            )
        return DeliveryJob(
            channel=ChannelType.SMS,
            destination=record.phone_number,
            content=(f"Your OTP for phone verification is: {otp.code}. "
                     f"This OTP is valid for {ttl} minutes."),
            metadata={"signup_id": record.id, "otp_kind": otp.kind.value},
        )

    def _dispatch(self, job: DeliveryJob) -> None:
        if job.channel not in self.runtime.lanes:
            logger.warning("otp_delivery_skipped",
                           channel=job.channel.value,
                           reason="channel_disabled",
                           signup_id=job.metadata.get("signup_id"))
            return
        self.runtime.enqueue(job)

    # ── Signup ────────────────────────────────────────────────

    async def signup(self, request: SignupRequest) -> dict[str, Any]:
        """
        Register a company and queue both verification messages.

        Raises SignupConflictError for a known email or phone number and
        QueueFullError if a delivery queue refuses the job; in the latter
        case the signup is kept and resend_otp() can be used later.
        """
        if await self.store.find_by_email(request.email):
            raise SignupConflictError("Email is already in use")

        record = SignupRecord(
            company_name=request.company_name,
            email=request.email.strip().lower(),
            phone_number=request.phone_number.strip(),
            employee_size=request.employee_size,
        )
        email_otp = self._new_otp(record.id, OtpKind.EMAIL)
        phone_otp = self._new_otp(record.id, OtpKind.PHONE)
        await self.store.create_signup(record, [email_otp, phone_otp])

        for otp in (email_otp, phone_otp):
            self._dispatch(self._job_for(record, otp))

        logger.info("signup_created", signup_id=record.id, email=record.email)
        return {
            "id": record.id,
            "message": "Signup successful, please verify your email and phone "
                       "with the OTPs sent to you.",
        }

    async def resend_otp(self, kind: OtpKind, address: str) -> dict[str, Any]:
        """Replace the OTP of the given kind and queue a new message."""
        record = await self._find(kind, address)
        if kind == OtpKind.EMAIL and record.is_email_verified:
            raise VerificationError("Email is already verified")
        if kind == OtpKind.PHONE and record.is_phone_verified:
            raise VerificationError("Phone number is already verified")

        otp = self._new_otp(record.id, kind)
        job = self._job_for(record, otp)
        if job.channel not in self.runtime.lanes:
            raise VerificationError(f"{job.channel.value} delivery is disabled")
        await self.store.save_otp(otp)
        self.runtime.enqueue(job)
        logger.info("otp_resent", signup_id=record.id, kind=kind.value)
        return {"message": f"A new {kind.value} OTP has been sent."}

    # ── Verification ──────────────────────────────────────────

    async def _find(self, kind: OtpKind, address: str) -> SignupRecord:
        if kind == OtpKind.EMAIL:
            record = await self.store.find_by_email(address)
        else:
            record = await self.store.find_by_phone(address)
        if record is None:
            raise VerificationError("Company not found")
        return record

    async def _verify(self, kind: OtpKind, address: str, code: str) -> SignupRecord:
        record = await self._find(kind, address)
        otp = await self.store.get_otp(record.id, kind)
        if otp is None or otp.is_expired() or not _codes_match(otp.code, code):
            logger.info("otp_rejected", signup_id=record.id, kind=kind.value)
            raise VerificationError("Invalid or expired OTP")
        await self.store.delete_otp(record.id, kind)
        return record

    async def verify_email(self, email: str, code: str) -> dict[str, Any]:
        record = await self._verify(OtpKind.EMAIL, email, code)
        await self.store.update_signup(record.model_copy(update={"is_email_verified": True}))
        logger.info("email_verified", signup_id=record.id)
        return {"message": "Email verified successfully"}

    async def verify_phone(self, phone_number: str, code: str) -> dict[str, Any]:
        record = await self._verify(OtpKind.PHONE, phone_number, code)
        await self.store.update_signup(record.model_copy(update={"is_phone_verified": True}))
        logger.info("phone_verified", signup_id=record.id)
        return {"message": "Phone number verified successfully"}
