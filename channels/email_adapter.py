"""
Email Channel Adapter — verification email delivery over SendGrid.

Addresses are validated and checked against a suppression list before
the provider is called. Suppressions come from SendGrid's event webhook
(bounces, spam reports, unsubscribes). Without an API key every send is
simulated: logged with a generated message id, never delivered.
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Iterable, Optional

from models.schemas import ChannelType, DeliveryJob
from channels.base import ChannelAdapter, DeliveryError, InvalidDestinationError, configured
from channels.providers.sendgrid_client import SendGridClient

logger = structlog.get_logger()

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# SendGrid event type → suppression reason
_SUPPRESSING_EVENTS = {
    "bounce": "bounced",
    "spamreport": "spam_report",
    "unsubscribe": "unsubscribed",
    "group_unsubscribe": "unsubscribed",
}

DEFAULT_SUBJECT = "Verify your email"


class EmailAdapter(ChannelAdapter):
    channel_type = ChannelType.EMAIL

    def __init__(self, client: Optional[SendGridClient] = None):
        super().__init__()
        self._client = client
        self._sender = "no-reply@example.com"
        self._suppressed: dict[str, str] = {}      # address → reason

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._sender = configured(config.get("from_email")) or self._sender
        api_key = configured(config.get("api_key"))
        if self._client is None and api_key:
            self._client = SendGridClient(api_key, self._sender, config.get("from_name", ""))
        self._initialized = True
        logger.info("email_channel_initialized",
                    mode="simulated" if self.simulated else "sendgrid",
                    sender=self._sender)

    @property
    def simulated(self) -> bool:
        return self._client is None

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, job: DeliveryJob) -> dict[str, Any]:
        to = job.destination.strip().lower()
        if not _EMAIL_RE.match(to):
            raise InvalidDestinationError(job.destination, self.channel_type.value)
        reason = self._suppressed.get(to)
        if reason:
            raise DeliveryError(f"{to} is suppressed ({reason})", self.channel_type.value)

        subject = job.subject or DEFAULT_SUBJECT
        if self.simulated:
            domain = self._sender.rsplit("@", 1)[-1]
            message_id = f"<{uuid.uuid4().hex}@{domain}>"
            logger.info("email_simulated", to=to, subject=subject,
                        message_id=message_id, body=job.content)
            return {"status": "simulated", "provider_message_id": message_id, "subject": subject}

        result = await self._client.send_email(to, subject, job.content)
        logger.info("email_sent", to=to, subject=subject, message_id=result["message_id"])
        return {"status": "sent", "provider_message_id": result["message_id"], "subject": subject}

    # ── Suppression ───────────────────────────────────────────

    def is_suppressed(self, email: str) -> bool:
        return email.strip().lower() in self._suppressed

    def suppress(self, email: str, reason: str) -> None:
        self._suppressed[email.strip().lower()] = reason
        logger.warning("email_suppressed", email=email, reason=reason)

    def handle_events(self, events: Iterable[dict[str, Any]]) -> int:
        """
        Apply a batch from SendGrid's event webhook. Returns how many
        addresses were newly suppressed.

        Hard bounces, spam reports and unsubscribes suppress the address;
        "blocked" bounces and deferrals are transient and only logged.
        """
        added = 0
        for event in events:
            email = event.get("email", "")
            kind = event.get("event", "")
            reason = _SUPPRESSING_EVENTS.get(kind)
            if kind == "bounce" and event.get("type") == "blocked":
                reason = None
            if not email or reason is None:
                logger.debug("email_event_ignored", email=email, event_type=kind)
                continue
            if not self.is_suppressed(email):
                added += 1
            self.suppress(email, reason)
        return added

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.close()
