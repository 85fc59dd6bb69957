"""
Shared fixtures for the MEDORA test suite.

The oracle is always faked: FakeOracle returns canned answers (or raises
them, when the canned answer is an exception) and counts every call, so
tests can assert which path ran without touching Gemini.
"""

from collections import defaultdict
from typing import Any

import pytest

from medora.triage.booking import BookingStateMachine
from medora.triage.dedup import InboundDeduplicator
from medora.triage.oracle import TriageOracle
from medora.triage.orchestrator import TriageOrchestrator
from medora.triage.session import InMemorySessionStore

HEADACHE = "I've had a throbbing headache since this morning, worse in light"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeOracle(TriageOracle):
    """Canned-answer oracle.  Unset methods return None."""

    def __init__(self, **responses: Any) -> None:
        self.responses = responses
        self.calls: dict[str, int] = defaultdict(int)
        self.last_args: dict[str, tuple] = {}

    def _answer(self, name: str, *args):
        self.calls[name] += 1
        self.last_args[name] = args
        value = self.responses.get(name)
        if isinstance(value, Exception):
            raise value
        return value

    async def structured_extract(self, narrative, existing_fields):
        return self._answer("structured_extract", narrative, existing_fields)

    async def natural_follow_up(self, missing_keys, context):
        return self._answer("natural_follow_up", missing_keys, context)

    async def risk_classify(self, fields, narrative):
        return self._answer("risk_classify", fields, narrative)

    async def freeform_turn(self, history, text):
        return self._answer("freeform_turn", history, text)

    async def document_analyze(self, base64_data, mime_type):
        return self._answer("document_analyze", base64_data, mime_type)

    async def handoff_summary(self, history, risk, attachments):
        return self._answer("handoff_summary", history, risk, attachments)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def fake_oracle():
    return FakeOracle()


def make_orchestrator(
    oracle: TriageOracle | None = None,
    store: InMemorySessionStore | None = None,
    clock: FakeClock | None = None,
    flow: str = "detailed",
    **kwargs: Any,
) -> TriageOrchestrator:
    dedup = InboundDeduplicator(clock=clock) if clock else InboundDeduplicator()
    return TriageOrchestrator(
        store=store or InMemorySessionStore(),
        oracle=oracle,
        dedup=dedup,
        booking=BookingStateMachine(flow=flow),
        **kwargs,
    )


@pytest.fixture
def orchestrator(store, clock):
    return make_orchestrator(store=store, clock=clock)


@pytest.fixture
def test_client():
    """FastAPI TestClient without lifespan: triage singletons stay unset."""
    from fastapi.testclient import TestClient

    from medora.app import app

    return TestClient(app)
