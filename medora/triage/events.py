"""
Inbound Message — channel-neutral form of one WhatsApp message.

The ingest layer turns webhook JSON into InboundMessage objects; the
orchestrator only ever sees these, never raw channel payloads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from medora.triage.session import Stage


class MessageType(str, Enum):
    TEXT = "text"                # plain text, legacy button text, list/flow titles
    INTERACTIVE = "interactive"  # reply carrying an option id
    MEDIA = "media"              # image or document
    UNSUPPORTED = "unsupported"  # location, sticker, reaction, …


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InboundMessage(BaseModel):
    message_id: str = ""
    user_id: str
    type: MessageType
    text: str = ""
    option_id: Optional[str] = None
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    raw_type: str = ""
    received_at: datetime = Field(default_factory=_now)

    @classmethod
    def text_message(cls, user_id: str, text: str, message_id: str = "") -> InboundMessage:
        return cls(message_id=message_id, user_id=user_id, type=MessageType.TEXT, text=text, raw_type="text")


class TurnReply(BaseModel):
    """What the orchestrator produced for one processed message."""

    user_id: str
    text: str
    stage: Stage
    confirmed: bool = False
