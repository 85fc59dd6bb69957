"""
Triage Orchestrator — one inbound message in, at most one reply out.

Per message, under the user's session lock:

  1. Dedup       — a redelivered message id (within TTL) is a silent no-op
  2. Session     — fetched or created, turn counted, patient text recorded
  3. Red flags   — raw text checked first; a match replies with the
                   emergency advisory and records an Emergency verdict
  4. Terminal    — completed sessions follow COMPLETED_STAGE_POLICY
  5. Booking     — booking stages go straight to the state machine
  6. Intake      — extract, attribute, merge, then either ask the next
                   OLDCARTS question or classify risk and start booking

Every reply is recorded as a clinician chat entry.  A booking that flips
to confirmed schedules exactly one background handoff-summary task.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, Optional

from medora.triage.booking import BookingStateMachine
from medora.triage.dedup import InboundDeduplicator
from medora.triage.events import InboundMessage, MessageType, TurnReply
from medora.triage.handoff import generate_handoff
from medora.triage.oldcarts import (
    FieldExtractor,
    is_non_answer,
    merge,
    missing_keys,
    populated_count,
    summarize_fields,
)
from medora.triage.oracle import NullOracle, TriageOracle
from medora.triage.questions import QuestionSelector, question_for
from medora.triage.risk_classifier import RiskClassifier, detect_red_flags, emergency_result
from medora.triage.session import (
    ChatRole,
    InMemorySessionStore,
    RiskBand,
    Session,
    SessionStore,
    Stage,
)

logger = logging.getLogger("triage.orchestrator")

MediaLoader = Callable[[str], Awaitable[Optional[str]]]

COMPLETED_POLICIES = ("closed", "restart")

# ── Fixed replies ──
EMERGENCY_ADVISORY = (
    "⚠️ Your symptoms could be a medical emergency. Please call 112 or go to the "
    "nearest emergency department right away. Do not wait for an appointment."
)
FALLBACK_REPLY = "I understand. Could you tell me more about what's concerning you today?"
INTERACTIVE_FALLBACK = (
    "I understand. Is there anything else I can help you with regarding your health concern?"
)
CLOSED_REPLY = (
    "Your booking is already confirmed. You'll receive appointment details within "
    "2 hours. If you feel worse, please call 112 or visit the nearest emergency department."
)
SELF_CARE_REPLY = (
    "Based on what you've told me, this sounds like something you can manage at home "
    "with rest, fluids and simple pain relief if needed. If it gets worse, lasts longer "
    "than a few days or new symptoms appear, just message me and I can book you a doctor."
)
URGENT_PREFIX = "Your symptoms need prompt medical attention. "

BOOKING_INTENT = re.compile(r"\bbook\b|appointment|see\s+a\s+doctor", re.I)


class TriageOrchestrator:
    """
    Composes the triage pipeline around an injected SessionStore.

    Usage:
        orchestrator = TriageOrchestrator(store=InMemorySessionStore(), oracle=GeminiOracle())
        reply = await orchestrator.handle_inbound_text("447700900123", "I have a headache", "wamid.1")
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        oracle: TriageOracle | None = None,
        dedup: InboundDeduplicator | None = None,
        booking: BookingStateMachine | None = None,
        questions: QuestionSelector | None = None,
        risk_min_fields: int = 3,
        completed_policy: str = "closed",
        media_loader: MediaLoader | None = None,
    ) -> None:
        self._store = store if store is not None else InMemorySessionStore()
        self._oracle = oracle if oracle is not None else NullOracle()
        self._dedup = dedup if dedup is not None else InboundDeduplicator()
        self._booking = booking if booking is not None else BookingStateMachine()
        self._questions = questions if questions is not None else QuestionSelector()
        self._extractor = FieldExtractor(self._oracle)
        self._risk = RiskClassifier(self._oracle)
        self._risk_min_fields = risk_min_fields
        if completed_policy not in COMPLETED_POLICIES:
            logger.warning("Unknown completed-stage policy '%s' — using 'closed'", completed_policy)
            completed_policy = "closed"
        self._completed_policy = completed_policy
        self._media_loader = media_loader
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def completed_policy(self) -> str:
        return self._completed_policy

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  Public surface
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def handle_inbound_text(
        self, user_id: str, text: str, message_id: str | None = None
    ) -> str | None:
        reply = await self._turn(
            user_id, message_id, text, lambda s: self._text_step(s, text),
        )
        return reply.text if reply else None

    async def handle_interactive_option(
        self, user_id: str, option_id: str, message_id: str | None = None, text: str = ""
    ) -> str | None:
        reply = await self._turn(
            user_id, message_id, text or f"[selected: {option_id}]",
            lambda s: self._option_step(s, option_id),
        )
        return reply.text if reply else None

    async def handle_document(
        self, user_id: str, base64_data: str, mime_type: str, message_id: str | None = None
    ) -> str | None:
        reply = await self._turn(
            user_id, message_id, f"[shared a document: {mime_type}]",
            lambda s: self._document_step(s, base64_data, mime_type),
        )
        return reply.text if reply else None

    async def process_message(self, message: InboundMessage) -> TurnReply | None:
        """Route a parsed channel message to the matching handler."""
        message_id = message.message_id or None

        if message.type == MessageType.TEXT:
            if not message.text.strip():
                logger.info("Empty text message %s from %s skipped", message_id, message.user_id)
                return None
            return await self._turn(
                message.user_id, message_id, message.text,
                lambda s: self._text_step(s, message.text),
            )

        if message.type == MessageType.INTERACTIVE and message.option_id:
            return await self._turn(
                message.user_id, message_id, message.text or f"[selected: {message.option_id}]",
                lambda s: self._option_step(s, message.option_id),
            )

        if message.type == MessageType.MEDIA:
            return await self._process_media(message)

        logger.info(
            "Unsupported message type '%s' (%s) from %s skipped",
            message.raw_type or message.type.value, message_id, message.user_id,
        )
        return None

    async def drain_background_tasks(self) -> None:
        """Wait for every pending handoff-summary task."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    @property
    def pending_background_tasks(self) -> int:
        return len(self._background_tasks)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  Turn boundary
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def _is_duplicate(self, user_id: str, message_id: str | None) -> bool:
        if not message_id:
            return False
        session = self._store.get(user_id)
        if (
            session is not None
            and session.last_message_id == message_id
            and self._dedup.is_fresh(session.last_message_at)
        ):
            logger.info("Duplicate message %s from %s ignored (session marker)", message_id, user_id)
            return True
        # check-and-mark
        return self._dedup.processed(message_id)

    async def _turn(
        self,
        user_id: str,
        message_id: str | None,
        patient_text: str,
        step: Callable[[Session], Awaitable[str | None]],
    ) -> TurnReply | None:
        async with self._store.lock(user_id):
            if self._is_duplicate(user_id, message_id):
                return None

            session = self._store.get_or_create(user_id)
            if message_id:
                session.last_message_id = message_id
                session.last_message_at = self._dedup.now()

            session.turn_count += 1
            session.add_chat(ChatRole.PATIENT, patient_text)
            was_confirmed = session.booking_confirmed

            try:
                reply = await step(session)
            except Exception as exc:
                logger.error(
                    "Turn failed for %s (stage=%s): %s",
                    user_id, session.stage.value, exc, exc_info=True,
                )
                reply = FALLBACK_REPLY

            session.touch()
            if reply is None:
                return None

            session.add_chat(ChatRole.CLINICIAN, reply)
            confirmed = session.booking_confirmed and not was_confirmed
            if confirmed:
                self._schedule_handoff(session)

            logger.info(
                "Turn %d for %s → stage=%s", session.turn_count, user_id, session.stage.value,
            )
            return TurnReply(
                user_id=user_id, text=reply, stage=session.stage, confirmed=confirmed,
            )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  Steps
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _text_step(self, session: Session, text: str) -> str:
        flags = detect_red_flags(text)
        if flags:
            result = emergency_result(text, flags)
            session.risk_assessment = result.assessment
            logger.warning(
                "RED FLAG for %s: %s — emergency advisory sent (stage=%s)",
                session.user_id, flags, session.stage.value,
            )
            return EMERGENCY_ADVISORY

        if session.stage == Stage.COMPLETED:
            if self._completed_policy == "closed":
                return CLOSED_REPLY
            logger.info("Completed session %s restarted by new message", session.user_id)
            session.reset_for_new_consultation()

        if session.in_booking:
            return self._booking.handle(session, text).reply

        if (
            session.risk_assessment is not None
            and session.risk_assessment.risk_band == RiskBand.SELF_CARE
        ):
            return await self._after_self_care(session, text)

        return await self._collect(session, text)

    async def _option_step(self, session: Session, option_id: str) -> str:
        if session.stage == Stage.COMPLETED:
            if self._completed_policy == "closed":
                return CLOSED_REPLY
            session.reset_for_new_consultation()

        turn = self._booking.handle_option(session, option_id)
        if turn is None:
            logger.info(
                "Option '%s' not applicable for %s at stage %s",
                option_id, session.user_id, session.stage.value,
            )
            return INTERACTIVE_FALLBACK
        return turn.reply

    async def _document_step(self, session: Session, base64_data: str, mime_type: str) -> str | None:
        try:
            result = await self._oracle.document_analyze(base64_data, mime_type)
        except Exception as exc:
            logger.warning("Document analysis failed for %s: %s", session.user_id, exc)
            result = None
        if not result:
            logger.info("Document from %s skipped: no analysis available", session.user_id)
            return None
        session.attachments.append({"mime_type": mime_type, "analysis": result})
        return f"I analyzed the report. Key points: {json.dumps(result, default=str)[:900]}"

    async def _process_media(self, message: InboundMessage) -> TurnReply | None:
        if self._media_loader is None:
            logger.info("Media message %s from %s skipped (media disabled)", message.message_id, message.user_id)
            return None
        if not message.media_id:
            logger.info("Media message %s from %s has no media id", message.message_id, message.user_id)
            return None
        if message.message_id and self._dedup.seen(message.message_id):
            logger.info("Duplicate media message %s ignored", message.message_id)
            return None
        try:
            data = await self._media_loader(message.media_id)
        except Exception as exc:
            logger.warning("Media download failed for %s: %s", message.media_id, exc)
            data = None
        if not data:
            logger.info("Media message %s skipped: download failed", message.message_id)
            return None

        mime_type = message.mime_type or "application/octet-stream"
        return await self._turn(
            message.user_id, message.message_id or None, f"[shared a document: {mime_type}]",
            lambda s: self._document_step(s, data, mime_type),
        )

    # ── Intake ──

    async def _collect(self, session: Session, text: str) -> str:
        extraction = await self._extractor.extract(
            text, session.oldcarts, narrative=session.patient_narrative(),
        )
        incoming = dict(extraction.fields)

        # Answer attribution: a reply nobody could parse still answers the question asked
        key = session.last_asked_key
        if (
            key
            and not is_non_answer(text)
            and key in missing_keys(session.oldcarts)
            and key in missing_keys(incoming)
        ):
            incoming[key] = text.strip()

        session.oldcarts = merge(session.oldcarts, incoming)
        logger.info(
            "OLDCARTS for %s: %d/7 populated (extraction=%s) %s",
            session.user_id, populated_count(session.oldcarts), extraction.outcome.value,
            summarize_fields(session.oldcarts),
        )

        if (
            populated_count(session.oldcarts) >= self._risk_min_fields
            or self._questions.collection_exhausted(session.asked_keys)
        ):
            return await self._classify(session)

        missing = missing_keys(session.oldcarts)
        next_key = self._questions.next_key(missing, session.last_asked_key, session.asked_keys)
        if next_key is None:
            return await self._classify(session)

        if next_key not in session.asked_keys:
            session.asked_keys.append(next_key)
        session.last_asked_key = next_key
        return await self._question(session, next_key)

    async def _question(self, session: Session, key: str) -> str:
        context = {
            "known": {k: v for k, v in session.oldcarts.items() if v},
            "last_message": session.chat_history[-1].text if session.chat_history else "",
        }
        try:
            phrased = await self._oracle.natural_follow_up([key], context)
        except Exception as exc:
            logger.warning("Oracle follow-up failed: %s — using question table", exc)
            phrased = None
        return phrased or question_for(key)

    async def _classify(self, session: Session) -> str:
        result = await self._risk.classify(session.oldcarts, session.patient_narrative())
        assessment = result.assessment
        session.risk_assessment = assessment
        session.asked_keys = []
        session.last_asked_key = None
        logger.info(
            "Risk for %s: %s / %s via %s (%s)",
            session.user_id, assessment.risk_band.value, assessment.specialty,
            result.method, result.outcome.value,
        )

        if assessment.risk_band == RiskBand.SELF_CARE:
            return SELF_CARE_REPLY

        reply = self._booking.start(session, assessment.primary_specialty)
        if assessment.risk_band in (RiskBand.EMERGENCY, RiskBand.URGENT):
            return URGENT_PREFIX + reply
        return reply

    async def _after_self_care(self, session: Session, text: str) -> str:
        if BOOKING_INTENT.search(text):
            return self._booking.start(session, session.risk_assessment.primary_specialty)
        history = [{"role": e.role.value, "text": e.text} for e in session.chat_history[:-1]]
        try:
            reply = await self._oracle.freeform_turn(history, text)
        except Exception as exc:
            logger.warning("Oracle freeform turn failed: %s", exc)
            reply = None
        return reply or FALLBACK_REPLY

    # ── Handoff ──

    def _schedule_handoff(self, session: Session) -> None:
        task = asyncio.create_task(self._run_handoff(session))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        logger.info("Handoff summary scheduled for %s", session.user_id)

    async def _run_handoff(self, session: Session) -> None:
        try:
            summary = await generate_handoff(session, self._oracle)
        except Exception as exc:
            logger.error("Handoff summary failed for %s: %s", session.user_id, exc)
            return
        session.handoff_summary = summary
        logger.info("=== CLINICIAN HANDOFF SUMMARY (%s) ===\n%s", session.user_id, summary)
