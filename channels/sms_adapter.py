"""
SMS Channel Adapter — OTP text messages over Twilio.

Provides:
- Number normalization and length check before any provider call
- GSM-7 / UCS-2 aware segment counting and truncation to `max_segments`
- STOP/START keyword handling for carrier opt-out compliance
- Simulated sends (logged only) when no Twilio credentials are configured
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Optional

from models.schemas import ChannelType, DeliveryJob
from channels.base import ChannelAdapter, DeliveryError, InvalidDestinationError, configured
from channels.providers.twilio_sms import TwilioSMSClient

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ENCODING & SEGMENTS
# ══════════════════════════════════════════════════════════════

# GSM 03.38 default alphabet; one septet per character
_GSM7_BASIC = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
# Escape table; two septets per character
_GSM7_ESCAPED = frozenset("^{}[]~|\\€\f")

# (single-message capacity, per-part capacity once the UDH is added)
_CAPACITY = {"gsm7": (160, 153), "ucs2": (70, 67)}

_STOP_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
_START_KEYWORDS = frozenset({"START", "UNSTOP", "YES"})


def _encoding(text: str) -> str:
    if all(c in _GSM7_BASIC or c in _GSM7_ESCAPED for c in text):
        return "gsm7"
    return "ucs2"


def _is_gsm7(text: str) -> bool:
    return _encoding(text) == "gsm7"


def _units(text: str, encoding: str) -> list[int]:
    if encoding == "gsm7":
        return [2 if c in _GSM7_ESCAPED else 1 for c in text]
    # UCS-2 code units; astral characters need a surrogate pair
    return [2 if ord(c) > 0xFFFF else 1 for c in text]


def _segment_count(text: str) -> int:
    """Number of billed message parts for `text`."""
    if not text:
        return 0
    encoding = _encoding(text)
    single, per_part = _CAPACITY[encoding]
    total = sum(_units(text, encoding))
    if total <= single:
        return 1
    return -(-total // per_part)


def _truncate(text: str, max_segments: int, marker: str = "...") -> str:
    """Cut `text` so that it fits in `max_segments` parts, marker included."""
    if _segment_count(text) <= max_segments:
        return text
    encoding = _encoding(text)
    single, per_part = _CAPACITY[encoding]
    budget = (single if max_segments == 1 else per_part * max_segments) - len(marker)
    used = 0
    for i, size in enumerate(_units(text, encoding)):
        if used + size > budget:
            return text[:i] + marker
        used += size
    return text


def _normalize_number(phone: str) -> str:
    return re.sub(r"\D", "", phone)


# ══════════════════════════════════════════════════════════════
#  SMS ADAPTER
# ══════════════════════════════════════════════════════════════

class SMSAdapter(ChannelAdapter):
    """
    SMS delivery with opt-out compliance.

    Numbers that texted a STOP keyword are refused with a non-retryable
    DeliveryError until they text START again.
    """

    channel_type = ChannelType.SMS

    def __init__(self, client: Optional[TwilioSMSClient] = None):
        super().__init__()
        self._client = client
        self._from_number = ""
        self._max_segments = 3
        self._opted_out: set[str] = set()

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._from_number = configured(config.get("from_number"))
        self._max_segments = max(1, int(config.get("max_segments", 3)))
        sid = configured(config.get("account_sid"))
        token = configured(config.get("auth_token"))
        if self._client is None and sid and token and self._from_number:
            self._client = TwilioSMSClient(
                sid, token, self._from_number,
                status_callback_url=configured(config.get("status_callback_url")),
            )
        self._initialized = True
        logger.info("sms_channel_initialized",
                    mode="simulated" if self.simulated else "twilio",
                    max_segments=self._max_segments)

    @property
    def simulated(self) -> bool:
        return self._client is None

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, job: DeliveryJob) -> dict[str, Any]:
        to = job.destination.strip()
        digits = _normalize_number(to)
        if not 7 <= len(digits) <= 15:
            raise InvalidDestinationError(job.destination, self.channel_type.value)
        if digits in self._opted_out:
            raise DeliveryError(f"{to} has opted out of SMS", self.channel_type.value)

        body = _truncate(job.content, self._max_segments)
        if body != job.content:
            logger.warning("sms_truncated", job_id=job.job_id, max_segments=self._max_segments)

        if self.simulated:
            sid = f"SM{uuid.uuid4().hex}"
            logger.info("sms_simulated", to=to, msg_sid=sid, body=body)
            return {"status": "simulated", "provider_message_id": sid,
                    "segments": _segment_count(body)}

        result = await self._client.send_sms(to, body)
        logger.info("sms_sent", to=to, msg_sid=result["sid"], segments=result["segments"])
        return {
            "status": "sent",
            "provider_message_id": result["sid"],
            "segments": result["segments"],
            "provider_status": result["status"],
        }

    # ── Opt-out ───────────────────────────────────────────────

    def is_opted_out(self, phone: str) -> bool:
        return _normalize_number(phone) in self._opted_out

    async def handle_inbound(self, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        Process a Twilio inbound-message webhook.

        Returns None for STOP/START keywords, which only change the opt-out
        list; any other text comes back as {"from", "body", "message_sid"}.
        """
        sender = payload.get("From", "")
        if not sender:
            return None
        body = payload.get("Body", "").strip()
        keyword = body.upper()

        if keyword in _STOP_KEYWORDS:
            self._opted_out.add(_normalize_number(sender))
            logger.info("sms_opted_out", phone=sender, keyword=keyword)
            return None
        if keyword in _START_KEYWORDS:
            self._opted_out.discard(_normalize_number(sender))
            logger.info("sms_opted_in", phone=sender, keyword=keyword)
            return None
        return {"from": sender, "body": body, "message_sid": payload.get("MessageSid", "")}

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.close()
