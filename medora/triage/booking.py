"""
Booking State Machine — from a triage verdict to a confirmed appointment.

Detailed flow (default):
    booking_region → booking_consultation_type → booking_patient_details
    → booking_confirmation → completed

Slot flow (BOOKING_FLOW=slots):
    booking_mode → booking_datetime → booking_confirm → completed

The suggested doctor is looked up once, when the region is first given,
and stays pinned on the session until a decline resets the flow.  The
specialty survives a decline; nothing else in booking_data does.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from medora.triage.session import Session, Stage

logger = logging.getLogger("triage.booking")

DEFAULT_SPECIALTY = "General Practice"
UNKNOWN_DOCTOR = "Available Specialist"

# specialty → region → doctor (names carry no "Dr." prefix)
DOCTORS: dict[str, dict[str, str]] = {
    "Cardiology": {"Belgaum": "Vikram Joshi", "Hubli": "Priya Desai", "Dharwad": "Rajesh Patil"},
    "Gastroenterology": {"Belgaum": "Sunita Kulkarni", "Hubli": "Ravi Shetty", "Dharwad": "Priya Gowda"},
    "Neurology": {"Belgaum": "Anil Patil", "Hubli": "Meera Joshi", "Dharwad": "Suresh Kulkarni"},
    "Dermatology": {"Belgaum": "Kavita Patil", "Hubli": "Rajesh Shetty", "Dharwad": "Sunita Gowda"},
    "Orthopedics": {"Belgaum": "Suresh Patil", "Hubli": "Priya Joshi", "Dharwad": "Rajesh Kulkarni"},
    "Psychiatry": {"Belgaum": "Anitha Patil", "Hubli": "Vikram Shetty", "Dharwad": "Meera Gowda"},
    "Pulmonology": {"Belgaum": "Sunil Patil", "Hubli": "Kavita Joshi", "Dharwad": "Rajesh Shetty"},
    "Endocrinology": {"Belgaum": "Priya Patil", "Hubli": "Suresh Joshi", "Dharwad": "Anitha Kulkarni"},
    "Urology": {"Belgaum": "Vikram Patil", "Hubli": "Sunita Shetty", "Dharwad": "Rajesh Gowda"},
    "Ophthalmology": {"Belgaum": "Kavita Patil", "Hubli": "Suresh Joshi", "Dharwad": "Priya Shetty"},
    "General Practice": {"Belgaum": "Anil Patil", "Hubli": "Sunita Joshi", "Dharwad": "Rajesh Kulkarni"},
}

MOCK_SLOTS: list[dict[str, str]] = [
    {"id": "slot-1", "mode": "tele", "when": "today 6:00 PM"},
    {"id": "slot-2", "mode": "in-person", "when": "tomorrow 9:30 AM"},
    {"id": "slot-3", "mode": "tele", "when": "tomorrow 7:00 PM"},
]

AFFIRMATIVE_WORDS = ("yes", "confirm", "book")
TELE_WORDS = ("tele", "video", "online")

# ── Fixed replies ──
CONFIRMED_REPLY = "✅ Booking confirmed! You'll receive appointment details within 2 hours."
RESTART_REPLY = "No problem. Let's start over. Which city or region are you located in?"
REGION_PROMPT = "Which city or region are you located in?"
MODE_PROMPT = "Would you prefer a teleconsultation or an in-person visit?"
CONFIRM_PROMPT = 'Please confirm by typing "Yes" to book your appointment.'

DETAIL_PROMPTS: dict[str, str] = {
    "age": "Thank you, {name}. What's your age?",
    "phone": "Got it. What's your phone number?",
    "email": "And your email address?",
}


# ── Pure helpers ──


def is_affirmative(text: str) -> bool:
    lowered = (text or "").lower()
    return any(word in lowered for word in AFFIRMATIVE_WORDS)


def wants_teleconsultation(text: str) -> bool:
    lowered = (text or "").lower()
    return any(word in lowered for word in TELE_WORDS)


def mode_label(mode: str) -> str:
    return "Teleconsultation" if mode == "tele" else "In-person"


def get_suggested_slots(preferred_mode: str | None = None) -> list[dict[str, str]]:
    """Slots in the preferred mode, then one slot of the other mode."""
    if not preferred_mode:
        return [dict(s) for s in MOCK_SLOTS]
    preferred = [dict(s) for s in MOCK_SLOTS if s["mode"] == preferred_mode]
    others = [dict(s) for s in MOCK_SLOTS if s["mode"] != preferred_mode]
    return preferred + others[:1]


def format_slot_options(slots: list[dict[str, str]]) -> str:
    return " | ".join(f"{mode_label(s['mode'])}: {s['when']}" for s in slots)


def format_booking_summary(session: Session) -> str:
    data = session.booking_data
    return (
        "📋 *Booking Summary:*\n\n"
        f"👨‍⚕️ *Doctor:* Dr. {data.doctor_name}\n"
        f"🏥 *Specialty:* {data.specialty}\n"
        f"📍 *Location:* {data.region}\n"
        f"💻 *Type:* {data.consultation_type}\n\n"
        f"{CONFIRM_PROMPT}"
    )


class DoctorDirectory:
    """Fixed specialty × region directory with fuzzy region matching."""

    def __init__(self, doctors: dict[str, dict[str, str]] | None = None) -> None:
        self._doctors = doctors if doctors is not None else DOCTORS

    def suggest(self, specialty: str | None, region: str) -> str:
        wanted = (region or "").strip().lower()
        by_region = self._doctors.get(specialty or "") or self._doctors.get(DEFAULT_SPECIALTY, {})
        region_key = None
        if wanted:
            for key in by_region:
                if wanted in key.lower() or key.lower() in wanted:
                    region_key = key
                    break
        if region_key is None:
            return UNKNOWN_DOCTOR
        name = (
            self._doctors.get(specialty or "", {}).get(region_key)
            or self._doctors.get(DEFAULT_SPECIALTY, {}).get(region_key)
        )
        return name or UNKNOWN_DOCTOR


@dataclass
class BookingTurn:
    reply: str
    confirmed: bool = False


class BookingStateMachine:
    """
    Drives one booking conversation per session.

    ``start`` moves an intake session into the first booking stage.
    ``handle`` consumes one patient message while the session is in a
    booking stage.  ``handle_option`` maps interactive button ids onto
    the same transitions and returns None for ids that do not apply.
    """

    def __init__(self, directory: DoctorDirectory | None = None, flow: str = "detailed") -> None:
        self._directory = directory or DoctorDirectory()
        self._flow = flow if flow in ("detailed", "slots") else "detailed"

    @property
    def flow(self) -> str:
        return self._flow

    @property
    def confirmation_stages(self) -> tuple[Stage, ...]:
        return (Stage.BOOKING_CONFIRMATION, Stage.BOOKING_CONFIRM)

    @property
    def mode_stages(self) -> tuple[Stage, ...]:
        return (Stage.BOOKING_CONSULTATION_TYPE, Stage.BOOKING_MODE)

    def start(self, session: Session, specialty: str | None = None) -> str:
        specialty = specialty or DEFAULT_SPECIALTY
        session.booking_data.specialty = specialty
        intro = f"Based on your symptoms, I recommend consulting with a {specialty} specialist."
        if self._flow == "slots":
            session.stage = Stage.BOOKING_MODE
            logger.info("Booking started for %s (slots, %s)", session.user_id, specialty)
            return f"{intro} {MODE_PROMPT}"
        session.stage = Stage.BOOKING_REGION
        logger.info("Booking started for %s (detailed, %s)", session.user_id, specialty)
        return f"{intro} To help you find the right doctor, which city or region are you located in?"

    def handle(self, session: Session, text: str) -> BookingTurn:
        text = (text or "").strip()
        handlers = {
            Stage.BOOKING_REGION: self._on_region,
            Stage.BOOKING_CONSULTATION_TYPE: self._on_consultation_type,
            Stage.BOOKING_PATIENT_DETAILS: self._on_patient_details,
            Stage.BOOKING_CONFIRMATION: self._on_confirmation,
            Stage.BOOKING_MODE: self._on_mode,
            Stage.BOOKING_DATETIME: self._on_datetime,
            Stage.BOOKING_CONFIRM: self._on_slot_confirm,
        }
        handler = handlers.get(session.stage)
        if handler is None:
            logger.warning("Booking handle called outside booking (stage=%s)", session.stage.value)
            return BookingTurn(reply="I understand. Could you please provide the information I asked for?")
        return handler(session, text)

    def handle_option(self, session: Session, option_id: str) -> BookingTurn | None:
        if option_id in ("book_tele", "book_inperson"):
            if session.stage in self.mode_stages:
                mode_text = "teleconsultation" if option_id == "book_tele" else "in-person"
                return self.handle(session, mode_text)
            if session.stage == Stage.INTAKE:
                specialty = (
                    session.risk_assessment.primary_specialty
                    if session.risk_assessment else DEFAULT_SPECIALTY
                )
                return BookingTurn(reply=self.start(session, specialty))
            return None
        if option_id in ("confirm_yes", "confirm_no"):
            if session.stage in self.confirmation_stages:
                return self.handle(session, "yes" if option_id == "confirm_yes" else "no")
            return None
        return None

    # ── Detailed flow ──

    def _on_region(self, session: Session, text: str) -> BookingTurn:
        if not text:
            return BookingTurn(reply=REGION_PROMPT)
        data = session.booking_data
        data.region = text
        if data.doctor_name is None:
            data.doctor_name = self._directory.suggest(data.specialty, text)
            logger.info(
                "Doctor pinned for %s: %s (%s, %s)",
                session.user_id, data.doctor_name, data.specialty, text,
            )
        session.stage = Stage.BOOKING_CONSULTATION_TYPE
        return BookingTurn(
            reply=(
                f"Great! I found Dr. {data.doctor_name}, a {data.specialty} specialist "
                f"in {data.region}. {MODE_PROMPT}"
            )
        )

    def _on_consultation_type(self, session: Session, text: str) -> BookingTurn:
        consultation = "teleconsultation" if wants_teleconsultation(text) else "in-person"
        session.booking_data.consultation_type = consultation
        session.stage = Stage.BOOKING_PATIENT_DETAILS
        return BookingTurn(
            reply=(
                f"Perfect! You've chosen {consultation}. Now I need some details to "
                "complete your booking. What's your full name?"
            )
        )

    def _on_patient_details(self, session: Session, text: str) -> BookingTurn:
        details = session.booking_data.patient_details
        field_name = details.next_missing()
        if field_name is None:
            session.stage = Stage.BOOKING_CONFIRMATION
            return BookingTurn(reply=format_booking_summary(session))
        if not text:
            return BookingTurn(reply="I understand. Could you please provide the information I asked for?")

        setattr(details, field_name, text)
        upcoming = details.next_missing()
        if upcoming is None:
            session.stage = Stage.BOOKING_CONFIRMATION
            return BookingTurn(reply=format_booking_summary(session))
        return BookingTurn(reply=DETAIL_PROMPTS[upcoming].format(name=details.name))

    def _on_confirmation(self, session: Session, text: str) -> BookingTurn:
        if is_affirmative(text):
            return self._confirm(session)
        session.booking_data.reset_keeping_specialty()
        session.stage = Stage.BOOKING_REGION
        logger.info("Booking declined by %s — restarting at region", session.user_id)
        return BookingTurn(reply=RESTART_REPLY)

    # ── Slot flow ──

    def _slot_menu(self, slots: list[dict[str, str]]) -> str:
        lines = [
            f"{i}. {mode_label(s['mode'])}: {s['when']}" for i, s in enumerate(slots, start=1)
        ]
        return "Here are the next available slots:\n" + "\n".join(lines) + (
            "\nReply with the number of the slot you prefer."
        )

    def _on_mode(self, session: Session, text: str) -> BookingTurn:
        mode = "tele" if wants_teleconsultation(text) else "in-person"
        data = session.booking_data
        data.consultation_type = "teleconsultation" if mode == "tele" else "in-person"
        data.slots_offered = get_suggested_slots(mode)
        session.stage = Stage.BOOKING_DATETIME
        logger.info(
            "Slots offered to %s: %s", session.user_id, format_slot_options(data.slots_offered),
        )
        return BookingTurn(reply=self._slot_menu(data.slots_offered))

    def _pick_slot(self, slots: list[dict[str, str]], text: str) -> dict[str, str] | None:
        lowered = text.lower()
        number = re.search(r"\b(\d+)\b", lowered)
        if number:
            index = int(number.group(1)) - 1
            if 0 <= index < len(slots):
                return slots[index]
        for slot in slots:
            if slot["id"] in lowered or slot["when"].lower() in lowered:
                return slot
        return None

    def _on_datetime(self, session: Session, text: str) -> BookingTurn:
        data = session.booking_data
        if not data.slots_offered:
            data.slots_offered = get_suggested_slots(None)
        slot = self._pick_slot(data.slots_offered, text)
        if slot is None:
            return BookingTurn(
                reply="Sorry, I didn't catch which slot you'd like. " + self._slot_menu(data.slots_offered)
            )
        data.selected_slot = slot
        session.stage = Stage.BOOKING_CONFIRM
        return BookingTurn(
            reply=(
                f"You've picked {mode_label(slot['mode'])}: {slot['when']} with a "
                f"{data.specialty} specialist. {CONFIRM_PROMPT}"
            )
        )

    def _on_slot_confirm(self, session: Session, text: str) -> BookingTurn:
        if is_affirmative(text):
            return self._confirm(session)
        session.booking_data.reset_keeping_specialty()
        session.stage = Stage.BOOKING_MODE
        logger.info("Slot booking declined by %s — back to mode choice", session.user_id)
        return BookingTurn(reply=f"No problem. Let's start over. {MODE_PROMPT}")

    # ── Shared ──

    def _confirm(self, session: Session) -> BookingTurn:
        session.booking_confirmed = True
        session.stage = Stage.COMPLETED
        logger.info(
            "Booking confirmed for %s (%s, %s)",
            session.user_id, session.booking_data.specialty, session.booking_data.consultation_type,
        )
        return BookingTurn(reply=CONFIRMED_REPLY, confirmed=True)
