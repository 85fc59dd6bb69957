"""
Tests for the per-user message queue.

Covers:
  - FIFO processing within one user
  - Independent users are processed in parallel
  - A failing message does not stop the worker
  - Idle queue cleanup, including messages that arrive during teardown
  - Graceful stop and the periodic sweep hook
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from medora.triage.events import InboundMessage
from medora.triage.queue import UserQueueManager


def _msg(user_id: str, text: str) -> InboundMessage:
    return InboundMessage.text_message(user_id, text, message_id=f"{user_id}-{text}")


class TestUserQueueManager:

    @pytest.mark.asyncio
    async def test_messages_processed_in_order(self):
        seen: list[str] = []

        async def processor(message):
            await asyncio.sleep(0)
            seen.append(message.text)

        mgr = UserQueueManager(processor=processor)
        await mgr.start()
        try:
            for text in ("one", "two", "three"):
                await mgr.enqueue(_msg("u1", text))
            await mgr.join("u1")
            assert seen == ["one", "two", "three"]
            assert mgr.queue_depth("u1") == 0
        finally:
            await mgr.stop()

    @pytest.mark.asyncio
    async def test_users_run_in_parallel(self):
        release = asyncio.Event()
        done: list[str] = []

        async def processor(message):
            if message.user_id == "slow":
                await release.wait()
            done.append(message.user_id)

        mgr = UserQueueManager(processor=processor)
        await mgr.start()
        try:
            await mgr.enqueue(_msg("slow", "a"))
            await mgr.enqueue(_msg("fast", "b"))
            await asyncio.wait_for(mgr.join("fast"), timeout=2)
            assert done == ["fast"]

            release.set()
            await asyncio.wait_for(mgr.join(), timeout=2)
            assert done == ["fast", "slow"]
            assert sorted(mgr.active_users) == ["fast", "slow"]
        finally:
            await mgr.stop()

    @pytest.mark.asyncio
    async def test_error_does_not_kill_worker(self):
        seen: list[str] = []

        async def processor(message):
            if message.text == "boom":
                raise RuntimeError("processor failed")
            seen.append(message.text)

        mgr = UserQueueManager(processor=processor)
        await mgr.start()
        try:
            await mgr.enqueue(_msg("u1", "boom"))
            await mgr.enqueue(_msg("u1", "after"))
            await asyncio.wait_for(mgr.join("u1"), timeout=2)
            assert seen == ["after"]
        finally:
            await mgr.stop()

    @pytest.mark.asyncio
    async def test_cleanup_idle_removes_old_queues(self):
        async def processor(message):
            return None

        mgr = UserQueueManager(processor=processor, idle_timeout_seconds=60)
        await mgr.start()
        try:
            await mgr.enqueue(_msg("old", "x"))
            await mgr.enqueue(_msg("recent", "y"))
            await mgr.join()
            mgr._last_activity["old"] = datetime.now(timezone.utc) - timedelta(minutes=5)

            removed = await mgr.cleanup_idle()
            assert removed == ["old"]
            assert mgr.active_users == ["recent"]
            assert mgr.active_count == 1
        finally:
            await mgr.stop()

    @pytest.mark.asyncio
    async def test_stop_tears_down_workers(self):
        async def processor(message):
            return None

        mgr = UserQueueManager(processor=processor)
        await mgr.start()
        await mgr.enqueue(_msg("u1", "x"))
        await mgr.join()
        await mgr.stop()
        assert mgr.active_count == 0
        assert mgr.queue_depth("u1") == 0


class TestQueueTeardown:

    @pytest.mark.asyncio
    async def test_message_arriving_during_destroy_gets_fresh_queue(self):
        seen: list[str] = []

        async def processor(message):
            seen.append(message.text)

        mgr = UserQueueManager(processor=processor)
        await mgr.start()
        try:
            await mgr.enqueue(_msg("u1", "first"))
            await mgr.join("u1")

            await asyncio.gather(mgr._destroy_queue("u1"), mgr.enqueue(_msg("u1", "second")))
            await asyncio.wait_for(mgr.join("u1"), timeout=2)
            assert seen == ["first", "second"]
            assert mgr.active_users == ["u1"]
        finally:
            await mgr.stop()

    @pytest.mark.asyncio
    async def test_activity_during_cleanup_keeps_queue(self):
        seen: list[str] = []

        async def processor(message):
            seen.append(message.text)

        mgr = UserQueueManager(processor=processor, idle_timeout_seconds=60)
        await mgr.start()
        try:
            await mgr.enqueue(_msg("first", "x"))
            await mgr.enqueue(_msg("second", "y"))
            await mgr.join()
            stale = datetime.now(timezone.utc) - timedelta(minutes=5)
            mgr._last_activity["first"] = stale
            mgr._last_activity["second"] = stale

            destroy = mgr._destroy_queue

            async def destroy_while_second_writes(user_id):
                if user_id == "first":
                    await mgr.enqueue(_msg("second", "late"))
                await destroy(user_id)

            mgr._destroy_queue = destroy_while_second_writes
            assert await mgr.cleanup_idle() == ["first"]

            await asyncio.wait_for(mgr.join("second"), timeout=2)
            assert seen == ["x", "y", "late"]
            assert mgr.active_users == ["second"]
        finally:
            await mgr.stop()

    @pytest.mark.asyncio
    async def test_busy_worker_is_not_cleaned_up(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def processor(message):
            started.set()
            await release.wait()

        mgr = UserQueueManager(processor=processor, idle_timeout_seconds=60)
        await mgr.start()
        try:
            await mgr.enqueue(_msg("u1", "slow"))
            await asyncio.wait_for(started.wait(), timeout=2)
            mgr._last_activity["u1"] = datetime.now(timezone.utc) - timedelta(minutes=5)

            assert await mgr.cleanup_idle() == []
            release.set()
            await asyncio.wait_for(mgr.join("u1"), timeout=2)
        finally:
            await mgr.stop()

    @pytest.mark.asyncio
    async def test_stop_drains_pending_messages(self):
        seen: list[str] = []

        async def processor(message):
            await asyncio.sleep(0.01)
            seen.append(message.text)

        mgr = UserQueueManager(processor=processor)
        await mgr.start()
        for text in ("one", "two", "three"):
            await mgr.enqueue(_msg("u1", text))
        await mgr.stop()
        assert seen == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_cleanup_loop_runs_sweep_hook(self):
        sweeps: list[int] = []

        async def processor(message):
            return None

        mgr = UserQueueManager(
            processor=processor,
            cleanup_interval_seconds=0.01,
            on_sweep=lambda: sweeps.append(1),
        )
        await mgr.start()
        await asyncio.sleep(0.1)
        await mgr.stop()
        assert sweeps
