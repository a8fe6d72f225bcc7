"""
Twilio SMS Client — Programmable Messaging over the REST API.

Send flow:
1. send_sms() → POST /Messages.json (form-encoded)
2. Twilio answers with the message SID and an initial status ("queued")
3. Delivery status arrives later on the status callback, if configured

API Docs: https://www.twilio.com/docs/messaging/api/message-resource
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryError

logger = structlog.get_logger()


class TwilioSMSClient:
    """Twilio REST API client for outbound SMS."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        status_callback_url: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.status_callback_url = status_callback_url
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
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
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}.json"
        resp = await client.request(method, url, **kwargs)
        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            # 429 and 5xx are worth another attempt, other 4xx are not
            retryable = resp.status_code == 429 or resp.status_code >= 500
            raise DeliveryError(
                f"Twilio returned {resp.status_code}: {resp.text[:200]}",
                channel="sms",
                retryable=retryable,
            )
        return resp.json()

    async def send_sms(self, to: str, body: str) -> dict[str, Any]:
        """Send one SMS. Returns {"sid", "status", "segments"}."""
        payload = {
            "From": self.from_number,
            "To": to,
            "Body": body,
        }
        if self.status_callback_url:
            payload["StatusCallback"] = self.status_callback_url

        result = await self._request("POST", "/Messages", data=payload)
        return {
            "sid": result.get("sid", ""),
            "status": result.get("status", "queued"),
            "segments": int(result.get("num_segments") or 1),
        }

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
