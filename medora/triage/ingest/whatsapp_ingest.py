"""
WhatsApp Ingest — converts Cloud API webhook bodies into InboundMessages.

Meta POSTs one JSON document per delivery; it may batch several messages
and also carries delivery statuses we only log.

Expected webhook body (trimmed):
{
  "object": "whatsapp_business_account",
  "entry": [{
    "changes": [{
      "value": {
        "messages": [{
          "from": "447700900123",
          "id": "wamid.HBgL...",
          "type": "text",
          "text": {"body": "I have a headache"}
        }],
        "statuses": [...]
      }
    }]
  }]
}
"""

from __future__ import annotations

import json
import logging
from typing import Any

from medora.triage.events import InboundMessage, MessageType

logger = logging.getLogger("triage.ingest.whatsapp")

MEDIA_TYPES = ("image", "document")


def extract_incoming_text(message: dict[str, Any]) -> str:
    """Best-effort text for text, legacy button and interactive messages."""
    msg_type = message.get("type")
    if msg_type == "text":
        return (message.get("text") or {}).get("body", "") or ""
    if msg_type == "button":
        return (message.get("button") or {}).get("text", "") or ""
    if msg_type == "interactive":
        interactive = message.get("interactive") or {}
        nfm = (interactive.get("nfm_reply") or {}).get("response_json")
        if nfm:
            return nfm if isinstance(nfm, str) else json.dumps(nfm)
        return (
            (interactive.get("list_reply") or {}).get("title")
            or (interactive.get("button_reply") or {}).get("title")
            or ""
        )
    return ""


def extract_option_id(message: dict[str, Any]) -> str | None:
    interactive = message.get("interactive") or {}
    return (
        (interactive.get("button_reply") or {}).get("id")
        or (interactive.get("list_reply") or {}).get("id")
        or None
    )


class WhatsAppIngest:
    """Stateless parser for WhatsApp Cloud API webhook bodies."""

    channel_name = "whatsapp"

    def parse(self, body: dict[str, Any] | None) -> list[InboundMessage]:
        messages: list[InboundMessage] = []
        if not isinstance(body, dict):
            logger.warning("Webhook body is not a JSON object — ignored")
            return messages

        for entry in body.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                raw_messages = value.get("messages") or []
                if not raw_messages:
                    logger.debug("No messages on change.value, keys: %s", list(value.keys()))
                for raw in raw_messages:
                    parsed = self.parse_message(raw)
                    if parsed is not None:
                        messages.append(parsed)
                if value.get("statuses"):
                    logger.info("Statuses: %s", json.dumps(value["statuses"])[:500])

        if not messages:
            logger.info("No inbound messages parsed in this webhook payload")
        return messages

    def parse_message(self, raw: dict[str, Any]) -> InboundMessage | None:
        user_id = raw.get("from")
        if not user_id:
            logger.warning("Message without sender skipped: %s", raw.get("id"))
            return None

        msg_type = raw.get("type", "")
        base = {
            "message_id": raw.get("id", ""),
            "user_id": user_id,
            "raw_type": msg_type,
        }

        if msg_type in MEDIA_TYPES:
            media = raw.get(msg_type) or {}
            return InboundMessage(
                type=MessageType.MEDIA,
                media_id=media.get("id"),
                mime_type=media.get("mime_type") or "application/octet-stream",
                text=media.get("caption", "") or "",
                **base,
            )

        if msg_type == "interactive":
            option_id = extract_option_id(raw)
            text = extract_incoming_text(raw)
            if option_id:
                return InboundMessage(
                    type=MessageType.INTERACTIVE, option_id=option_id, text=text, **base,
                )
            if text:
                return InboundMessage(type=MessageType.TEXT, text=text, **base)
            return InboundMessage(type=MessageType.UNSUPPORTED, **base)

        text = extract_incoming_text(raw)
        if text:
            return InboundMessage(type=MessageType.TEXT, text=text, **base)

        return InboundMessage(type=MessageType.UNSUPPORTED, **base)
