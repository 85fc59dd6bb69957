"""
WhatsApp Dispatcher — delivers replies through the WhatsApp Cloud API.

Configuration (environment variables):
  WHATSAPP_ACCESS_TOKEN       — Graph API bearer token
  WHATSAPP_BUSINESS_PHONE_ID  — sending phone-number id
  WHATSAPP_API_BASE           — defaults to https://graph.facebook.com/v20.0

Without credentials the dispatcher runs in stub mode: sends are logged
and reported as successful, media lookups return None.

Each send is a single attempt.  Failures come back as
DeliveryResult(success=False) and are never retried here.
"""

from __future__ import annotations

import base64
import logging
import os
from typing import Any

import httpx

from medora.triage.channels import (
    ChannelDispatcher,
    DeliveryResult,
    OutboundReply,
    ReplyButton,
)

logger = logging.getLogger("triage.dispatchers.whatsapp")

DEFAULT_API_BASE = "https://graph.facebook.com/v20.0"
MAX_BODY_CHARS = 4096
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20


class WhatsAppDispatcher(ChannelDispatcher):
    """Text, reply-button and template sends plus media download."""

    channel_name = "whatsapp"

    def __init__(
        self,
        access_token: str | None = None,
        phone_id: str | None = None,
        api_base: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = access_token if access_token is not None else os.getenv("WHATSAPP_ACCESS_TOKEN", "")
        self._phone_id = phone_id if phone_id is not None else os.getenv("WHATSAPP_BUSINESS_PHONE_ID", "")
        self._api_base = (api_base or os.getenv("WHATSAPP_API_BASE", DEFAULT_API_BASE)).rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport
        if not self.configured:
            logger.warning("WhatsApp credentials not set — dispatcher in stub mode")

    @property
    def configured(self) -> bool:
        return bool(self._token and self._phone_id)

    @property
    def messages_url(self) -> str:
        return f"{self._api_base}/{self._phone_id}/messages"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"}

    # ── Payloads ──

    @staticmethod
    def text_payload(to: str, body: str) -> dict[str, Any]:
        if len(body) > MAX_BODY_CHARS:
            body = body[: MAX_BODY_CHARS - 3] + "..."
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }

    @staticmethod
    def buttons_payload(to: str, body: str, buttons: list[ReplyButton]) -> dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": body[:1024]},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": b.id, "title": b.title[:MAX_BUTTON_TITLE]}}
                        for b in buttons[:MAX_BUTTONS]
                    ]
                },
            },
        }

    @staticmethod
    def template_payload(to: str, name: str, language_code: str = "en_US") -> dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "template",
            "template": {"name": name, "language": {"code": language_code}},
        }

    # ── Sends ──

    async def send(self, reply: OutboundReply) -> DeliveryResult:
        template = reply.metadata.get("template")
        if template:
            payload = self.template_payload(
                reply.recipient, template, reply.metadata.get("language", "en_US"),
            )
        elif reply.buttons:
            payload = self.buttons_payload(reply.recipient, reply.message, reply.buttons)
        else:
            payload = self.text_payload(reply.recipient, reply.message)
        return await self._post(reply.recipient, payload)

    async def send_text(self, to: str, body: str) -> DeliveryResult:
        return await self._post(to, self.text_payload(to, body))

    async def send_buttons(self, to: str, body: str, buttons: list[ReplyButton]) -> DeliveryResult:
        return await self._post(to, self.buttons_payload(to, body, buttons))

    async def send_template(self, to: str, name: str, language_code: str = "en_US") -> DeliveryResult:
        return await self._post(to, self.template_payload(to, name, language_code))

    async def _post(self, to: str, payload: dict[str, Any]) -> DeliveryResult:
        if not self.configured:
            logger.info("WhatsApp stub: %s → %s", payload.get("type"), to)
            return DeliveryResult(
                success=True, channel=self.channel_name, recipient=to, error="stub_mode",
            )

        try:
            async with self._client() as client:
                response = await client.post(self.messages_url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("WhatsApp send error to %s: %s", to, exc)
            return DeliveryResult(
                success=False, channel=self.channel_name, recipient=to, error=str(exc),
            )

        if response.is_success:
            logger.info("WhatsApp %s sent → %s (%d)", payload.get("type"), to, response.status_code)
            return DeliveryResult(
                success=True, channel=self.channel_name, recipient=to,
                status_code=response.status_code,
            )

        logger.error("WhatsApp send error %d → %s: %s", response.status_code, to, response.text[:300])
        return DeliveryResult(
            success=False,
            channel=self.channel_name,
            recipient=to,
            status_code=response.status_code,
            error=response.text[:500],
        )

    # ── Media ──

    async def get_media_url(self, media_id: str) -> str | None:
        if not self._token:
            return None
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self._api_base}/{media_id}",
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.HTTPError as exc:
            logger.error("Get media URL error for %s: %s", media_id, exc)
            return None
        if not response.is_success:
            logger.error("Get media URL error %d: %s", response.status_code, response.text[:300])
            return None
        return response.json().get("url") or None

    async def download_media(self, url: str) -> str | None:
        """Download a media URL and return its bytes base64-encoded."""
        if not self._token:
            return None
        try:
            async with self._client() as client:
                response = await client.get(url, headers={"Authorization": f"Bearer {self._token}"})
        except httpx.HTTPError as exc:
            logger.error("Download media error: %s", exc)
            return None
        if not response.is_success:
            logger.error("Download media error %d: %s", response.status_code, response.text[:300])
            return None
        return base64.b64encode(response.content).decode("ascii")

    async def fetch_media_base64(self, media_id: str) -> str | None:
        url = await self.get_media_url(media_id)
        if not url:
            return None
        return await self.download_media(url)
