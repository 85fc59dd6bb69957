"""
Triage Setup — initializes and wires together all triage components.

Called once during app startup.  Every component is a module-level
singleton reachable through the getters below; routers never build
their own.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Awaitable, Callable

from medora import settings
from medora.triage.booking import BookingStateMachine
from medora.triage.channels import DispatcherRegistry, OutboundReply, ReplyButton
from medora.triage.dedup import InboundDeduplicator
from medora.triage.dispatchers.whatsapp_dispatcher import WhatsAppDispatcher
from medora.triage.events import InboundMessage
from medora.triage.oracle import GeminiOracle, NullOracle, TriageOracle
from medora.triage.orchestrator import TriageOrchestrator
from medora.triage.queue import UserQueueManager
from medora.triage.questions import QuestionSelector
from medora.triage.session import InMemorySessionStore, Session, SessionStore, Stage

logger = logging.getLogger("triage.setup")

# Module-level singletons (set during initialize)
_orchestrator: TriageOrchestrator | None = None
_queue_manager: UserQueueManager | None = None
_dispatcher_registry: DispatcherRegistry | None = None
_whatsapp_dispatcher: WhatsAppDispatcher | None = None
_session_store: SessionStore | None = None
_oracle: TriageOracle | None = None

MODE_BUTTONS = [
    ReplyButton(id="book_tele", title="Teleconsultation"),
    ReplyButton(id="book_inperson", title="In-person visit"),
]
CONFIRM_BUTTONS = [
    ReplyButton(id="confirm_yes", title="Yes, book it"),
    ReplyButton(id="confirm_no", title="No, start over"),
]


def buttons_for_stage(stage: Stage) -> list[ReplyButton]:
    """Reply buttons attached to a turn that ends in the given stage."""
    if stage in (Stage.BOOKING_CONSULTATION_TYPE, Stage.BOOKING_MODE):
        return list(MODE_BUTTONS)
    if stage in (Stage.BOOKING_CONFIRMATION, Stage.BOOKING_CONFIRM):
        return list(CONFIRM_BUTTONS)
    return []


def build_processor(
    orchestrator: TriageOrchestrator,
    registry: DispatcherRegistry,
    channel: str = "whatsapp",
) -> Callable[[InboundMessage], Awaitable[None]]:
    """The queue worker callback: run one turn, then deliver the reply."""

    async def process_inbound(message: InboundMessage) -> None:
        reply = await orchestrator.process_message(message)
        if reply is None:
            return
        result = await registry.dispatch(
            OutboundReply(
                recipient=reply.user_id,
                channel=channel,
                message=reply.text,
                buttons=buttons_for_stage(reply.stage),
                metadata={"message_id": message.message_id, "stage": reply.stage.value},
            )
        )
        if not result.success:
            logger.warning(
                "Reply to %s for %s not delivered: %s",
                reply.user_id, message.message_id, result.error,
            )

    return process_inbound


def _build_oracle() -> TriageOracle:
    if not settings.GEMINI_API_KEY:
        logger.warning("GEMINI_API_KEY not set — triage runs on heuristics only")
        return NullOracle()
    return GeminiOracle(
        api_key=settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
        timeout_seconds=settings.ORACLE_TIMEOUT_SECONDS,
    )


async def initialize_triage() -> TriageOrchestrator:
    """
    Wire together all triage components and start background tasks.

    Returns the fully initialized orchestrator.
    """
    global _orchestrator, _queue_manager, _dispatcher_registry
    global _whatsapp_dispatcher, _session_store, _oracle

    logger.info("Initializing MEDORA triage...")

    # 1. Oracle (Gemini, or heuristics only)
    _oracle = _build_oracle()

    # 2. Outbound channel
    _whatsapp_dispatcher = WhatsAppDispatcher(
        access_token=settings.WHATSAPP_ACCESS_TOKEN,
        phone_id=settings.WHATSAPP_BUSINESS_PHONE_ID,
        api_base=settings.WHATSAPP_API_BASE,
    )
    _dispatcher_registry = DispatcherRegistry()
    _dispatcher_registry.register(_whatsapp_dispatcher)

    # 3. Orchestrator over an in-memory store
    Session.MAX_CHAT_HISTORY = settings.MAX_CHAT_HISTORY
    _session_store = InMemorySessionStore()
    _orchestrator = TriageOrchestrator(
        store=_session_store,
        oracle=_oracle,
        dedup=InboundDeduplicator(
            ttl_seconds=settings.DEDUP_TTL_SECONDS,
            max_entries=settings.DEDUP_MAX_ENTRIES,
        ),
        booking=BookingStateMachine(flow=settings.BOOKING_FLOW),
        questions=QuestionSelector(max_asked_keys=settings.MAX_ASKED_KEYS),
        risk_min_fields=settings.RISK_MIN_FIELDS,
        completed_policy=settings.COMPLETED_STAGE_POLICY,
        media_loader=_whatsapp_dispatcher.fetch_media_base64 if settings.ENABLE_MEDIA else None,
    )

    # 4. Per-user queue
    _queue_manager = UserQueueManager(
        processor=build_processor(_orchestrator, _dispatcher_registry),
        idle_timeout_seconds=settings.QUEUE_IDLE_TIMEOUT_SECONDS,
        on_sweep=partial(_session_store.evict_idle, settings.SESSION_IDLE_TIMEOUT_SECONDS),
    )
    await _queue_manager.start()

    logger.info(
        "Triage initialized: oracle=%s, channels=%s, booking_flow=%s, completed_policy=%s",
        type(_oracle).__name__,
        _dispatcher_registry.registered_channels,
        settings.BOOKING_FLOW,
        _orchestrator.completed_policy,
    )
    return _orchestrator


async def shutdown_triage() -> None:
    """Gracefully stop background tasks."""
    if _queue_manager:
        await _queue_manager.stop()
    if _orchestrator:
        await _orchestrator.drain_background_tasks()
    logger.info("Triage shutdown complete")


def get_orchestrator() -> TriageOrchestrator | None:
    return _orchestrator


def get_queue_manager() -> UserQueueManager | None:
    return _queue_manager


def get_dispatcher_registry() -> DispatcherRegistry | None:
    return _dispatcher_registry


def get_session_store() -> SessionStore | None:
    return _session_store


def get_oracle() -> TriageOracle | None:
    return _oracle
