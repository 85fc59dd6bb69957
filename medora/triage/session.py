"""
Triage Session — per-user conversation state.

One Session per WhatsApp user id, owned by a SessionStore.  The
orchestrator reads the session under the user's lock, mutates it for
exactly one inbound message and releases the lock.

Nothing here is durable: InMemorySessionStore lives for the process
lifetime.  A persistent backend only has to implement SessionStore.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, ClassVar, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("triage.session")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Stage(str, Enum):
    INTAKE = "intake"
    # Detailed booking flow
    BOOKING_REGION = "booking_region"
    BOOKING_CONSULTATION_TYPE = "booking_consultation_type"
    BOOKING_PATIENT_DETAILS = "booking_patient_details"
    BOOKING_CONFIRMATION = "booking_confirmation"
    # Slot booking flow
    BOOKING_MODE = "booking_mode"
    BOOKING_DATETIME = "booking_datetime"
    BOOKING_CONFIRM = "booking_confirm"
    COMPLETED = "completed"


class ChatRole(str, Enum):
    PATIENT = "patient"
    CLINICIAN = "clinician"


# OLDCARTS keys in canonical order
OLDCARTS_KEYS: tuple[str, ...] = (
    "onset",
    "location",
    "duration",
    "character",
    "aggrav_relieve",
    "related",
    "severity_impact",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def empty_fields() -> dict[str, Any]:
    return {key: None for key in OLDCARTS_KEYS}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Sub-models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ChatEntry(BaseModel):
    role: ChatRole
    text: str
    timestamp: datetime = Field(default_factory=_now)


class RiskBand(str, Enum):
    EMERGENCY = "Emergency"
    URGENT = "Urgent"
    SOON = "Soon"
    ROUTINE = "Routine"
    SELF_CARE = "Self-care"


class RiskAssessment(BaseModel):
    """Structured urgency verdict, from the oracle or the heuristic."""

    risk_band: RiskBand
    specialty: list[str] = Field(default_factory=lambda: ["General Practice"])
    care_mode: Optional[str] = None
    rationale: str = ""

    @field_validator("specialty", mode="before")
    @classmethod
    def _coerce_specialty(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return ["General Practice"]
        if isinstance(value, str):
            return [value]
        cleaned = [str(v).strip() for v in value if str(v).strip()]
        return cleaned or ["General Practice"]

    @property
    def primary_specialty(self) -> str:
        return self.specialty[0]


class PatientDetails(BaseModel):
    name: Optional[str] = None
    age: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    # Collection order for the patient-details sub-stage
    ORDER: ClassVar[tuple[str, ...]] = ("name", "age", "phone", "email")

    def next_missing(self) -> str | None:
        for name in self.ORDER:
            if not getattr(self, name):
                return name
        return None


class BookingData(BaseModel):
    region: Optional[str] = None
    specialty: Optional[str] = None
    doctor_name: Optional[str] = None
    consultation_type: Optional[str] = None
    patient_details: PatientDetails = Field(default_factory=PatientDetails)
    # Slot flow
    slots_offered: list[dict[str, str]] = Field(default_factory=list)
    selected_slot: Optional[dict[str, str]] = None

    def reset_keeping_specialty(self) -> None:
        """Decline path: forget everything except the resolved specialty."""
        self.region = None
        self.doctor_name = None
        self.consultation_type = None
        self.patient_details = PatientDetails()
        self.slots_offered = []
        self.selected_slot = None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Top-level Session Model
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Session(BaseModel):
    user_id: str
    chat_history: list[ChatEntry] = Field(default_factory=list)
    turn_count: int = 0
    stage: Stage = Stage.INTAKE
    oldcarts: dict[str, Any] = Field(default_factory=empty_fields)
    asked_keys: list[str] = Field(default_factory=list)
    last_asked_key: Optional[str] = None
    risk_assessment: Optional[RiskAssessment] = None
    booking_data: BookingData = Field(default_factory=BookingData)
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    booking_confirmed: bool = False
    handoff_summary: Optional[str] = None
    last_message_id: Optional[str] = None
    last_message_at: Optional[float] = None
    created: datetime = Field(default_factory=_now)
    last_updated: datetime = Field(default_factory=_now)

    MAX_CHAT_HISTORY: ClassVar[int] = 20

    @field_validator("oldcarts", mode="before")
    @classmethod
    def _only_oldcarts_keys(cls, value: Any) -> dict[str, Any]:
        value = value or {}
        return {key: value.get(key) for key in OLDCARTS_KEYS}

    def add_chat(self, role: ChatRole, text: str) -> None:
        self.chat_history.append(ChatEntry(role=role, text=text))
        if len(self.chat_history) > self.MAX_CHAT_HISTORY:
            self.chat_history = self.chat_history[-self.MAX_CHAT_HISTORY:]

    def patient_narrative(self) -> str:
        """All patient utterances still in the window, oldest first."""
        return " ".join(
            e.text for e in self.chat_history if e.role == ChatRole.PATIENT
        )

    @property
    def in_booking(self) -> bool:
        return self.stage.value.startswith("booking_")

    def reset_for_new_consultation(self) -> None:
        """Clear clinical and booking state; history and dedup markers stay."""
        self.stage = Stage.INTAKE
        self.oldcarts = empty_fields()
        self.asked_keys = []
        self.last_asked_key = None
        self.risk_assessment = None
        self.booking_data = BookingData()
        self.booking_confirmed = False
        self.handoff_summary = None

    def touch(self) -> None:
        self.last_updated = datetime.now(timezone.utc)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Session Store
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SessionStore(ABC):
    """
    Storage contract for sessions.

    The store only stores.  Ordering between concurrent messages for the
    same user is the caller's job: hold ``lock(user_id)`` for the whole
    read-mutate cycle.
    """

    @abstractmethod
    def get(self, user_id: str) -> Session | None:
        """Return the session if it exists."""

    @abstractmethod
    def get_or_create(self, user_id: str) -> Session:
        """Return the session, creating an empty one on first contact."""

    @abstractmethod
    def lock(self, user_id: str):
        """Async context manager giving exclusive access to one user's session."""

    def evict_idle(self, max_idle_seconds: float) -> list[str]:
        """Drop sessions idle longer than the threshold.  Default: no eviction."""
        return []


class InMemorySessionStore(SessionStore):
    """Process-lifetime dict of sessions with one asyncio.Lock per user."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, user_id: str) -> Session | None:
        return self._sessions.get(user_id)

    def get_or_create(self, user_id: str) -> Session:
        session = self._sessions.get(user_id)
        if session is None:
            session = Session(user_id=user_id)
            self._sessions[user_id] = session
            logger.info("Created new session for user %s", user_id)
        return session

    @asynccontextmanager
    async def lock(self, user_id: str) -> AsyncIterator[None]:
        user_lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with user_lock:
            yield

    def evict_idle(self, max_idle_seconds: float) -> list[str]:
        now = datetime.now(timezone.utc)
        evicted = []
        for user_id, session in list(self._sessions.items()):
            user_lock = self._locks.get(user_id)
            if user_lock is not None and user_lock.locked():
                continue
            if (now - session.last_updated).total_seconds() > max_idle_seconds:
                self._sessions.pop(user_id, None)
                self._locks.pop(user_id, None)
                evicted.append(user_id)
        orphaned = [u for u, lock in self._locks.items() if u not in self._sessions and not lock.locked()]
        for user_id in orphaned:
            del self._locks[user_id]
        if evicted:
            logger.info("Evicted %d idle sessions", len(evicted))
        return evicted

    @property
    def active_count(self) -> int:
        return len(self._sessions)
