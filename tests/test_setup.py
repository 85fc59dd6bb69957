"""
Tests for triage wiring: reply buttons, the queue processor,
startup wiring and the clinician handoff summary.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import HEADACHE, make_orchestrator
from medora import settings
from medora.triage import setup
from medora.triage.channels import ChannelDispatcher, DeliveryResult, DispatcherRegistry
from medora.triage.events import InboundMessage, MessageType
from medora.triage.handoff import build_clinician_summary, build_narrative, render_summary
from medora.triage.session import Stage
from medora.triage.setup import CONFIRM_BUTTONS, MODE_BUTTONS, build_processor, buttons_for_stage


class RecordingDispatcher(ChannelDispatcher):
    channel_name = "whatsapp"

    def __init__(self, success: bool = True):
        self.sent = []
        self._success = success

    async def send(self, reply):
        self.sent.append(reply)
        return DeliveryResult(
            success=self._success, channel=self.channel_name, recipient=reply.recipient,
            error=None if self._success else "HTTP 500",
        )


def _registry(dispatcher: ChannelDispatcher) -> DispatcherRegistry:
    registry = DispatcherRegistry()
    registry.register(dispatcher)
    return registry


class TestButtonsForStage:

    def test_mode_buttons(self):
        assert buttons_for_stage(Stage.BOOKING_CONSULTATION_TYPE) == MODE_BUTTONS
        assert buttons_for_stage(Stage.BOOKING_MODE) == MODE_BUTTONS

    def test_confirm_buttons(self):
        assert buttons_for_stage(Stage.BOOKING_CONFIRMATION) == CONFIRM_BUTTONS
        assert buttons_for_stage(Stage.BOOKING_CONFIRM) == CONFIRM_BUTTONS

    def test_no_buttons_elsewhere(self):
        assert buttons_for_stage(Stage.INTAKE) == []
        assert buttons_for_stage(Stage.COMPLETED) == []


class TestProcessor:

    @pytest.mark.asyncio
    async def test_reply_dispatched_with_buttons(self):
        dispatcher = RecordingDispatcher()
        orch = make_orchestrator()
        process = build_processor(orch, _registry(dispatcher))

        await process(InboundMessage.text_message("447700900123", HEADACHE, "m1"))
        await process(InboundMessage.text_message("447700900123", "Hubli", "m2"))

        first, second = dispatcher.sent
        assert first.recipient == "447700900123"
        assert "Neurology" in first.message
        assert first.buttons == []
        assert first.metadata == {"message_id": "m1", "stage": "booking_region"}
        assert [b.id for b in second.buttons] == ["book_tele", "book_inperson"]

    @pytest.mark.asyncio
    async def test_no_reply_nothing_sent(self):
        dispatcher = RecordingDispatcher()
        process = build_processor(make_orchestrator(), _registry(dispatcher))
        await process(InboundMessage(
            message_id="s1", user_id="447700900123", type=MessageType.UNSUPPORTED, raw_type="sticker",
        ))
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_failed_delivery_is_not_retried(self):
        dispatcher = RecordingDispatcher(success=False)
        process = build_processor(make_orchestrator(), _registry(dispatcher))
        await process(InboundMessage.text_message("447700900123", "I feel unwell", "m1"))
        assert len(dispatcher.sent) == 1


class TestHandoffSummary:

    FIELDS = {
        "onset": "this morning",
        "location": "head",
        "duration": None,
        "character": "throbbing",
        "aggrav_relieve": "worse with light",
        "related": ["nausea", "dizziness"],
        "severity_impact": None,
    }

    def test_narrative(self):
        assert build_narrative(self.FIELDS) == (
            "Onset this morning; at head; throbbing; triggers/relief: worse with light; "
            "associated: nausea, dizziness"
        )

    def test_rendered_summary(self):
        summary = build_clinician_summary(
            HEADACHE, self.FIELDS,
            risk={"risk_band": "Routine", "specialty": ["Neurology"]},
        )
        text = render_summary(summary)
        assert text.splitlines() == [
            f"Chief complaint: {HEADACHE}",
            "History: " + build_narrative(self.FIELDS),
            "Risk band: Routine",
            "Specialty: Neurology",
        ]

    def test_booking_specialty_used_without_risk(self):
        summary = build_clinician_summary("rash", {}, specialty="Dermatology")
        assert summary["specialty"] == "Dermatology"
        assert "Risk band: not assessed" in render_summary(summary)

    def test_attachments_listed(self):
        summary = build_clinician_summary(
            "report", {}, attachments=[{"mime_type": "application/pdf", "analysis": {"hb": "low"}}],
        )
        assert render_summary(summary).splitlines()[-1].startswith("Attachments: ")


class TestInitialize:

    @pytest.fixture
    def fresh_singletons(self, monkeypatch):
        for name in (
            "_orchestrator", "_queue_manager", "_dispatcher_registry",
            "_whatsapp_dispatcher", "_session_store", "_oracle",
        ):
            monkeypatch.setattr(setup, name, None)
        monkeypatch.setattr(settings, "GEMINI_API_KEY", "")
        monkeypatch.setattr(settings, "SESSION_IDLE_TIMEOUT_SECONDS", 3600)

    @pytest.mark.asyncio
    async def test_queue_sweep_evicts_idle_sessions(self, fresh_singletons):
        await setup.initialize_triage()
        try:
            store = setup.get_session_store()
            store.get_or_create("stale").last_updated = datetime.now(timezone.utc) - timedelta(hours=2)
            store.get_or_create("fresh")

            setup.get_queue_manager()._on_sweep()
            assert store.get("stale") is None
            assert store.get("fresh") is not None
        finally:
            await setup.shutdown_triage()
