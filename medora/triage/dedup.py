"""
Inbound Deduplicator — absorbs redelivered WhatsApp messages.

The Cloud API delivers at least once, so the same message id can arrive
several times.  Each id is remembered with the time it was first
processed.  Within the TTL a repeat is a duplicate; after the TTL it is
treated as a fresh message.  Expiry is lazy (checked on lookup) and the
table is swept only when it grows past ``max_entries``.

Guarantee: no duplicate user-visible effect within the TTL window.
Not a permanent exactly-once guarantee.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger("triage.dedup")


class InboundDeduplicator:
    """Memoized message-id → timestamp table with TTL."""

    def __init__(
        self,
        ttl_seconds: float = 600,  # 10 minutes
        max_entries: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._seen: dict[str, float] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def now(self) -> float:
        return self._clock()

    def is_fresh(self, timestamp: float | None) -> bool:
        """True if a timestamp taken from this clock is still inside the TTL."""
        if timestamp is None:
            return False
        return self._clock() - timestamp < self._ttl

    def seen(self, message_id: str) -> bool:
        """Lookup with lazy expiry.  Expired entries are dropped and report unseen."""
        ts = self._seen.get(message_id)
        if ts is None:
            return False
        if self.is_fresh(ts):
            return True
        del self._seen[message_id]
        return False

    def mark(self, message_id: str) -> None:
        self._seen[message_id] = self._clock()
        if len(self._seen) > self._max_entries:
            self.sweep()

    def processed(self, message_id: str) -> bool:
        """Check-and-mark.  Returns True if the id is a duplicate."""
        if self.seen(message_id):
            logger.info("Duplicate message %s ignored", message_id)
            return True
        self.mark(message_id)
        return False

    def sweep(self) -> int:
        """Drop every expired entry.  Returns how many were removed."""
        now = self._clock()
        expired = [mid for mid, ts in self._seen.items() if now - ts >= self._ttl]
        for mid in expired:
            del self._seen[mid]
        if expired:
            logger.debug("Dedup sweep removed %d expired ids", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._seen)
