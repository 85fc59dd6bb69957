"""
Clinician handoff summary.

Generated once, when a booking is confirmed.  The oracle writes the prose
summary when it can; otherwise build_clinician_summary assembles a
deterministic one from the session's structured state.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from medora.triage.oracle import TriageOracle
from medora.triage.session import ChatRole, Session

logger = logging.getLogger("triage.handoff")


def build_narrative(oldcarts: dict[str, Any]) -> str:
    parts = []
    if oldcarts.get("onset"):
        parts.append(f"Onset {oldcarts['onset']}")
    if oldcarts.get("location"):
        parts.append(f"at {oldcarts['location']}")
    if oldcarts.get("character"):
        parts.append(str(oldcarts["character"]))
    if oldcarts.get("duration"):
        parts.append(f"duration {oldcarts['duration']}")
    if oldcarts.get("aggrav_relieve"):
        parts.append(f"triggers/relief: {oldcarts['aggrav_relieve']}")
    related = oldcarts.get("related")
    if related:
        if isinstance(related, list):
            related = ", ".join(str(r) for r in related)
        parts.append(f"associated: {related}")
    if oldcarts.get("severity_impact"):
        parts.append(f"impact: {oldcarts['severity_impact']}")
    return "; ".join(parts)


def build_clinician_summary(
    chief_complaint: str,
    oldcarts: dict[str, Any],
    risk: dict[str, Any] | None = None,
    specialty: str | None = None,
    attachments: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Structured handoff record, no oracle involved."""
    risk = risk or {}
    return {
        "chief_complaint": chief_complaint,
        "oldcarts": oldcarts,
        "risk_band": risk.get("risk_band"),
        "specialty": risk.get("specialty") or specialty,
        "attachments": attachments or [],
        "narrative": build_narrative(oldcarts),
    }


def chief_complaint(session: Session) -> str:
    for entry in session.chat_history:
        if entry.role == ChatRole.PATIENT:
            return entry.text
    return ""


def render_summary(summary: dict[str, Any]) -> str:
    specialty = summary.get("specialty")
    if isinstance(specialty, list):
        specialty = ", ".join(specialty)
    lines = [
        f"Chief complaint: {summary.get('chief_complaint') or 'not recorded'}",
        f"History: {summary.get('narrative') or 'not recorded'}",
        f"Risk band: {summary.get('risk_band') or 'not assessed'}",
        f"Specialty: {specialty or 'General Practice'}",
    ]
    if summary.get("attachments"):
        lines.append(f"Attachments: {json.dumps(summary['attachments'], default=str)[:900]}")
    return "\n".join(lines)


async def generate_handoff(session: Session, oracle: TriageOracle | None) -> str:
    """
    Produce the handoff text for a confirmed booking.

    Never raises: oracle failures fall back to the deterministic summary.
    """
    risk = session.risk_assessment.model_dump(mode="json") if session.risk_assessment else None
    if oracle is not None:
        history = [
            {"role": e.role.value, "text": e.text} for e in session.chat_history
        ]
        try:
            text = await oracle.handoff_summary(history, risk, session.attachments)
        except Exception as exc:
            logger.warning("Oracle handoff summary failed for %s: %s", session.user_id, exc)
            text = None
        if text:
            return text.strip()

    summary = build_clinician_summary(
        chief_complaint(session),
        session.oldcarts,
        risk=risk,
        specialty=session.booking_data.specialty,
        attachments=session.attachments,
    )
    return render_summary(summary)
