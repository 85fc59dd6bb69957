"""
Channel Abstractions — outbound dispatch.

The queue processor never talks to WhatsApp directly: it hands an
OutboundReply to the DispatcherRegistry, which routes it by channel name.
Sends are attempted once.  A failed send is reported in the
DeliveryResult and logged, never retried.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("triage.channels")


class ReplyButton(BaseModel):
    id: str
    title: str


class OutboundReply(BaseModel):
    """A message to deliver to one user on one channel."""

    recipient: str          # WhatsApp user id (phone number)
    channel: str            # Must match a registered ChannelDispatcher.channel_name
    message: str = ""
    buttons: list[ReplyButton] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    """Outcome of a single delivery attempt."""

    success: bool
    channel: str
    recipient: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ChannelDispatcher(ABC):
    """Abstract outbound channel."""

    channel_name: str = ""  # overridden by subclasses

    @abstractmethod
    async def send(self, reply: OutboundReply) -> DeliveryResult:
        """Deliver a single reply. Must not raise — return DeliveryResult."""


class DispatcherRegistry:
    """Registry of active ChannelDispatchers, keyed by channel name."""

    def __init__(self) -> None:
        self._dispatchers: dict[str, ChannelDispatcher] = {}

    def register(self, dispatcher: ChannelDispatcher) -> None:
        name = dispatcher.channel_name
        self._dispatchers[name] = dispatcher
        logger.info("Registered channel dispatcher: %s", name)

    def get(self, channel_name: str) -> ChannelDispatcher | None:
        return self._dispatchers.get(channel_name)

    @property
    def registered_channels(self) -> list[str]:
        return list(self._dispatchers.keys())

    async def dispatch(self, reply: OutboundReply) -> DeliveryResult:
        dispatcher = self.get(reply.channel)
        if dispatcher is None:
            logger.warning("No dispatcher for channel '%s' — reply dropped", reply.channel)
            return DeliveryResult(
                success=False,
                channel=reply.channel,
                recipient=reply.recipient,
                error=f"No dispatcher registered for channel '{reply.channel}'",
            )
        try:
            result = await dispatcher.send(reply)
        except Exception as exc:
            logger.error("Dispatcher '%s' raised: %s", reply.channel, exc)
            return DeliveryResult(
                success=False,
                channel=reply.channel,
                recipient=reply.recipient,
                error=str(exc),
            )
        if not result.success:
            logger.warning(
                "Delivery to %s on %s failed: %s",
                reply.recipient, reply.channel, result.error,
            )
        return result
