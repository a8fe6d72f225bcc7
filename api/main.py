"""
FastAPI Application — signup, OTP verification and queue health.

Provides:
- Company signup that queues email and SMS OTP deliveries
- Email and phone verification against the stored OTPs
- OTP resend for users whose message never arrived
- Per-channel queue and dispatcher health
- SendGrid event and Twilio inbound webhooks feeding suppression and opt-out

Delivery queues live in process memory, so run a single worker:
    uvicorn api.main:app --workers 1
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from config.settings import get_settings
from core.runtime import DeliveryRuntime, get_runtime
from core.signup import SignupService, VerificationError
from database.store_base import BaseSignupStore, SignupConflictError
from database.store_memory import InMemorySignupStore
from job_queue.task_queue import QueueFullError
from models.schemas import (
    ChannelType, ResendOtpRequest, SignupRequest, VerifyEmailRequest, VerifyPhoneRequest,
)

logger = structlog.get_logger()


def create_app(
    runtime: Optional[DeliveryRuntime] = None,
    store: Optional[BaseSignupStore] = None,
) -> FastAPI:
    settings = get_settings()
    runtime = runtime or get_runtime()
    store = store or InMemorySignupStore()
    signup_service = SignupService(store, runtime, otp_config=settings.otp)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        logger.info("otp_service_started", app=settings.app_name)
        yield
        await runtime.stop()
        logger.info("otp_service_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Company signup with queued email and SMS verification",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.signup_service = signup_service

    # ── Error mapping ─────────────────────────────────────────

    @app.exception_handler(SignupConflictError)
    async def on_conflict(request: Request, exc: SignupConflictError):
        return JSONResponse(status_code=409, content={"message": f"Signup failed: {exc}"})

    @app.exception_handler(VerificationError)
    async def on_verification_error(request: Request, exc: VerificationError):
        return JSONResponse(status_code=400, content={"message": f"Verification failed: {exc}"})

    @app.exception_handler(QueueFullError)
    async def on_queue_full(request: Request, exc: QueueFullError):
        logger.warning("request_rejected_queue_full", queue=exc.name, path=request.url.path)
        return JSONResponse(
            status_code=503,
            content={"message": "Delivery is busy, please request a new OTP shortly."},
            headers={"Retry-After": "30"},
        )

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "channels": [c.value for c in runtime.registry.get_available()],
        }

    @app.get("/health/queues")
    async def queue_health():
        return await runtime.health()

    # ── Companies ─────────────────────────────────────────────

    @app.post("/api/companies/signup", status_code=201)
    async def signup(req: SignupRequest):
        return await signup_service.signup(req)

    @app.post("/api/companies/verify-email")
    async def verify_email(req: VerifyEmailRequest):
        return await signup_service.verify_email(req.email, req.otp)

    @app.post("/api/companies/verify-phone")
    async def verify_phone(req: VerifyPhoneRequest):
        return await signup_service.verify_phone(req.phone_number, req.otp)

    @app.post("/api/companies/resend-otp", status_code=202)
    async def resend_otp(req: ResendOtpRequest):
        return await signup_service.resend_otp(req.kind, req.address)

    # ── Provider webhooks ─────────────────────────────────────

    def _adapter(channel: ChannelType):
        adapter = runtime.registry.get(channel)
        if adapter is None:
            raise HTTPException(404, f"{channel.value} channel is disabled")
        return adapter

    @app.post("/webhooks/email/events")
    async def email_events(request: Request):
        """SendGrid event webhook: bounces, spam reports and unsubscribes."""
        adapter = _adapter(ChannelType.EMAIL)
        body = await request.json()
        events = body if isinstance(body, list) else [body]
        suppressed = adapter.handle_events(e for e in events if isinstance(e, dict))
        return {"status": "processed", "suppressed": suppressed}

    @app.post("/webhooks/sms/inbound")
    async def sms_inbound(request: Request):
        """Twilio inbound message: STOP/START keywords update the opt-out list."""
        adapter = _adapter(ChannelType.SMS)
        form = dict(await request.form())
        parsed = await adapter.handle_inbound(form)
        if parsed:
            logger.info("sms_inbound_ignored", sender=parsed["from"], message_sid=parsed["message_sid"])
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, workers=1)
