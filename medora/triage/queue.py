"""
Per-User Message Queue — serialises inbound messages for each WhatsApp user.

One asyncio.Queue per active user.  Messages are processed FIFO, one at
a time.  Different users' queues run in parallel.

The webhook only enqueues and returns; all pipeline work happens in the
workers.  Idle queues are cleaned up after a configurable timeout; a
queue is unregistered before its worker is cancelled, so a message that
arrives during teardown starts a fresh queue instead of being lost.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from medora.triage.events import InboundMessage

logger = logging.getLogger("triage.queue")

MessageProcessor = Callable[[InboundMessage], Awaitable[Any]]


class UserQueueManager:
    """
    Manages one asyncio.Queue per user_id.

    Usage:
        mgr = UserQueueManager(processor=process_inbound)
        await mgr.start()
        await mgr.enqueue(message)

    A worker task is spawned for each user on first message and torn
    down after idle_timeout_seconds without activity.
    """

    def __init__(
        self,
        processor: MessageProcessor,
        idle_timeout_seconds: int = 1800,
        cleanup_interval_seconds: float = 60.0,
        on_sweep: Callable[[], Any] | None = None,
    ) -> None:
        self._processor = processor
        self._idle_timeout = idle_timeout_seconds
        self._cleanup_interval = cleanup_interval_seconds
        self._on_sweep = on_sweep

        self._queues: dict[str, asyncio.Queue[InboundMessage]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._last_activity: dict[str, datetime] = {}
        self._busy: set[str] = set()
        self._cleanup_task: asyncio.Task | None = None

    # ── Public API ──

    async def start(self) -> None:
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("UserQueueManager started (idle timeout=%ds)", self._idle_timeout)

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Stop the cleanup loop, let pending messages finish, then stop every worker."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None

        try:
            await asyncio.wait_for(self.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            pending = sum(q.qsize() for q in self._queues.values())
            logger.warning("Queue drain timed out after %.1fs (%d messages pending)", drain_timeout, pending)

        for uid in list(self._queues.keys()):
            await self._destroy_queue(uid)

        logger.info("UserQueueManager stopped")

    async def enqueue(self, message: InboundMessage) -> None:
        uid = message.user_id
        q = self._queues.get(uid)
        if q is None:
            q = self._create_queue(uid)

        self._last_activity[uid] = datetime.now(timezone.utc)
        q.put_nowait(message)
        logger.debug(
            "Enqueued %s message %s for %s (depth=%d)",
            message.type.value, message.message_id, uid, q.qsize(),
        )

    async def join(self, user_id: str | None = None) -> None:
        """Wait until the given user's queue (or every queue) is drained."""
        if user_id is not None:
            q = self._queues.get(user_id)
            if q is not None:
                await q.join()
            return
        for q in list(self._queues.values()):
            await q.join()

    @property
    def active_users(self) -> list[str]:
        return list(self._queues.keys())

    @property
    def active_count(self) -> int:
        return len(self._queues)

    def queue_depth(self, user_id: str) -> int:
        """Pending messages for a user.  0 if no queue."""
        q = self._queues.get(user_id)
        return q.qsize() if q is not None else 0

    # ── Internal ──

    def _create_queue(self, user_id: str) -> asyncio.Queue[InboundMessage]:
        q: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._queues[user_id] = q
        self._last_activity[user_id] = datetime.now(timezone.utc)
        self._workers[user_id] = asyncio.create_task(self._worker_loop(user_id, q))
        logger.debug("Created queue + worker for user %s", user_id)
        return q

    async def _worker_loop(self, user_id: str, q: asyncio.Queue[InboundMessage]) -> None:
        """Run one user's turns in arrival order until cancelled."""
        while True:
            message = await q.get()
            self._busy.add(user_id)
            started = time.monotonic()
            try:
                await self._processor(message)
            except Exception as exc:
                logger.error(
                    "Turn for %s message %s from %s failed: %s",
                    message.type.value, message.message_id, user_id, exc,
                    exc_info=True,
                )
            else:
                elapsed = time.monotonic() - started
                logger.info(
                    "Turn for %s finished in %.2fs (%d waiting)", user_id, elapsed, q.qsize(),
                )
                if elapsed > 30:
                    logger.warning("Slow turn for %s: %.1fs", user_id, elapsed)
            finally:
                self._busy.discard(user_id)
                if self._queues.get(user_id) is q:
                    self._last_activity[user_id] = datetime.now(timezone.utc)
                q.task_done()

    async def _destroy_queue(self, user_id: str) -> None:
        # Unregister first so a message arriving from here on gets a new queue
        q = self._queues.pop(user_id, None)
        worker = self._workers.pop(user_id, None)
        self._last_activity.pop(user_id, None)

        if q is not None and not q.empty():
            logger.warning("Dropping %d unprocessed messages for %s", q.qsize(), user_id)
        if worker and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        logger.debug("Destroyed queue for user %s", user_id)

    def _is_idle(self, user_id: str, now: datetime) -> bool:
        last = self._last_activity.get(user_id)
        if last is None or user_id in self._busy:
            return False
        q = self._queues.get(user_id)
        if q is not None and not q.empty():
            return False
        return (now - last).total_seconds() > self._idle_timeout

    async def _cleanup_loop(self) -> None:
        """Periodically destroy idle queues and run the sweep hook."""
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.cleanup_idle()
                if self._on_sweep is not None:
                    self._on_sweep()
            except Exception as exc:
                logger.error("Queue cleanup error: %s", exc)

    async def cleanup_idle(self) -> list[str]:
        now = datetime.now(timezone.utc)
        candidates = [uid for uid in list(self._last_activity) if self._is_idle(uid, now)]

        removed = []
        for uid in candidates:
            # Destroying an earlier queue yields; re-check before tearing this one down
            if not self._is_idle(uid, datetime.now(timezone.utc)):
                continue
            logger.info("Cleaning up idle queue for user %s", uid)
            await self._destroy_queue(uid)
            removed.append(uid)
        return removed
