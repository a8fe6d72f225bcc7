"""
SendGrid Client — transactional email over the v3 Mail Send API.

POST /v3/mail/send answers 202 with an empty body; the provider message
id comes back in the X-Message-Id header.

API Docs: https://www.twilio.com/docs/sendgrid/api-reference/mail-send/mail-send
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryError

logger = structlog.get_logger()


class SendGridClient:
    """SendGrid v3 client for outbound email."""

    BASE_URL = "https://api.sendgrid.com/v3"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.BASE_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(30.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        resp = await client.post(path, json=payload)
        if resp.status_code >= 400:
            logger.error(
                "sendgrid_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            retryable = resp.status_code == 429 or resp.status_code >= 500
            raise DeliveryError(
                f"SendGrid returned {resp.status_code}: {resp.text[:200]}",
                channel="email",
                retryable=retryable,
            )
        return resp

    async def send_email(self, to: str, subject: str, text: str, html: str = "") -> dict[str, Any]:
        """Send one email. Returns {"message_id", "status"}."""
        sender: dict[str, str] = {"email": self.from_email}
        if self.from_name:
            sender["name"] = self.from_name
        content = [{"type": "text/plain", "value": text}]
        if html:
            content.append({"type": "text/html", "value": html})

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": sender,
            "subject": subject,
            "content": content,
        }
        resp = await self._post("/mail/send", payload)
        return {
            "message_id": resp.headers.get("X-Message-Id", ""),
            "status": "accepted",
        }

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
