"""
Risk Classifier — urgency band and specialty for a triage narrative.

Scoring order:
  1. Red-flag pre-scan of the raw inbound text (emergency short-circuit,
     done by the orchestrator before any OLDCARTS work)
  2. Oracle classification, validated into a RiskAssessment
  3. If the oracle is unavailable or returns junk → deterministic heuristic
  4. Red flags in the narrative always lift a non-urgent oracle verdict to Urgent

Specialty selection in the heuristic is NOT multi-label scoring.  It is an
ordered rule list where every matching rule overwrites the previous
result: the LAST matching rule wins, default General Practice.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from medora.triage.oracle import OracleOutcome, TriageOracle
from medora.triage.session import RiskAssessment, RiskBand

logger = logging.getLogger("triage.risk_classifier")

DEFAULT_SPECIALTY = "General Practice"

# ── Red flags: (pattern, description), checked in order ──
RED_FLAGS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"worst\s+headache|thunderclap", re.I), "Thunderclap / worst-ever headache"),
    (re.compile(r"chest\s*pain|pressure\s+in\s+(?:my\s+)?chest|(?:tightness|tight)\s+in\s+(?:my\s+)?chest|chest\s+(?:pressure|tightness)", re.I), "Chest pain or pressure"),
    (re.compile(r"short(?:ness)?\s*of\s*breath|breathless|difficulty\s*breathing|can'?t\s+breathe|cannot\s+breathe|wheez", re.I), "Breathlessness"),
    (re.compile(r"one\s*side(?:d)?\s*weak(?:ness)?|face\s*droop|slurred\s*speech|speech\s*slur", re.I), "Stroke signs"),
    (re.compile(r"confusion|confused|faint(?:ed)?|black(?:ed)?\s*out|syncope", re.I), "Confusion or collapse"),
    (re.compile(r"high\s*fever\s*with\s*(?:chills|rigors)|rigors|rash\s*with\s*(?:a\s+)?fever", re.I), "High fever with rigors or rash"),
    (re.compile(r"hives|swelling\s*of\s*(?:the\s+|my\s+)?(?:face|lips|tongue)|throat\s*(?:is\s+)?(?:tight|closing)", re.I), "Anaphylaxis signs"),
    (re.compile(r"pregnan(?:t|cy).*(?:bleed|severe\s+pain)|severe\s*lower\s*abdominal\s*pain", re.I), "Pregnancy with bleeding or severe pain"),
]

# Any bleeding lifts the heuristic verdict to Urgent
BLEEDING = re.compile(
    r"bleed|vomit(?:ing|ed)?\s+blood|black\s+tarry\s+stool|blood\s+in\s+(?:my\s+)?(?:stool|poo|urine)|"
    r"bloody\s+(?:stool|urine)|haematemesis|hematemesis|melaena|melena",
    re.I,
)

# ── Specialty rules: applied in this order, last match wins ──
SPECIALTY_RULES: list[tuple[str, re.Pattern[str]]] = [
    ("Neurology", re.compile(r"headache|migraine|dizzy|seizure|vertigo", re.I)),
    ("Cardiology", re.compile(r"chest\s*(?:pain|pressure|tight(?:ness)?)|palpitation|exertional\s*breath(?:lessness)?", re.I)),
    ("Orthopedics", re.compile(r"(?:back|neck)\s*pain|joint|knee|shoulder|sprain|fracture|injury", re.I)),
    ("Gastroenterology", re.compile(r"(?:abdominal|stomach|belly|gastric)\s*pain|nausea|vomit|diarrh(?:o)?ea|acid(?:ity)?|reflux", re.I)),
    ("Urology", re.compile(r"burning\s*urination|pain\s*on\s*urination|frequent\s*urination|\buti\b|urine\s*infection", re.I)),
    ("Dermatology", re.compile(r"rash|itch|hives|acne|eczema|psoriasis|skin\s*(?:lesion|infection)", re.I)),
    ("Gynecology", re.compile(r"(?:menstrual|period|vaginal)\s*(?:pain|bleed|discharge)|pregnan(?:t|cy)|pcos|fibroid", re.I)),
    ("ENT", re.compile(r"(?:ear|nose|throat)\s*(?:pain|block|discharge)|sinus|tonsil|sore\s*throat", re.I)),
]

URGENT_BANDS = {RiskBand.EMERGENCY, RiskBand.URGENT}


@dataclass
class RiskResult:
    """Outcome of risk classification."""

    assessment: RiskAssessment
    outcome: OracleOutcome
    method: str  # "oracle", "oracle+red_flag_override", "heuristic: red_flag", "red_flag_short_circuit"
    triggered_rules: list[str] = field(default_factory=list)


def detect_red_flags(text: str) -> list[str]:
    """Descriptions of every red flag present in the text, in list order."""
    return [desc for pattern, desc in RED_FLAGS if pattern.search(text or "")]


def select_specialty(text: str) -> tuple[str, bool]:
    """Run the ordered rule list.  Returns (specialty, matched_any)."""
    specialty = DEFAULT_SPECIALTY
    matched = False
    for name, pattern in SPECIALTY_RULES:
        if pattern.search(text):
            specialty = name
            matched = True
    return specialty, matched


def heuristic_triage(narrative: str, fields: dict[str, Any] | None = None) -> RiskResult:
    """Deterministic fallback used when the oracle cannot answer."""
    text = f"{narrative} {json.dumps(fields or {})}"
    triggered: list[str] = []

    band = RiskBand.ROUTINE
    flags = detect_red_flags(text)
    if flags:
        band = RiskBand.URGENT
        triggered.append(flags[0])
    if BLEEDING.search(text):
        band = RiskBand.URGENT
        triggered.append("Bleeding")

    specialty, matched = select_specialty(text)
    outcome = OracleOutcome.FALLBACK if (triggered or matched) else OracleOutcome.INCONCLUSIVE

    if triggered:
        rationale = f"Heuristic triage: {', '.join(triggered)}."
    else:
        rationale = "Heuristic triage applied due to unavailable AI."

    logger.info(
        "Heuristic triage: %s / %s (triggered: %s)", band.value, specialty, triggered,
    )
    return RiskResult(
        assessment=RiskAssessment(risk_band=band, specialty=[specialty], rationale=rationale),
        outcome=outcome,
        method="heuristic: red_flag" if triggered else "heuristic: specialty_rules",
        triggered_rules=triggered,
    )


def emergency_result(text: str, flags: list[str]) -> RiskResult:
    """Assessment recorded when raw text short-circuits on a red flag."""
    specialty, _ = select_specialty(text)
    return RiskResult(
        assessment=RiskAssessment(
            risk_band=RiskBand.EMERGENCY,
            specialty=[specialty],
            care_mode="in-person",
            rationale=f"Red flag: {flags[0]}",
        ),
        outcome=OracleOutcome.FALLBACK,
        method="red_flag_short_circuit",
        triggered_rules=flags,
    )


class RiskClassifier:
    """
    Oracle-backed classifier with a deterministic safety net.

    Usage:
        classifier = RiskClassifier(oracle)
        result = await classifier.classify(session.oldcarts, narrative)
    """

    def __init__(self, oracle: TriageOracle | None = None) -> None:
        self._oracle = oracle

    async def classify(self, fields: dict[str, Any], narrative: str) -> RiskResult:
        assessment = await self._from_oracle(fields, narrative)
        if assessment is None:
            return heuristic_triage(narrative, fields)

        flags = detect_red_flags(narrative)
        if flags and assessment.risk_band not in URGENT_BANDS:
            logger.warning(
                "Oracle said %s but red flags present (%s) — escalating to Urgent",
                assessment.risk_band.value, flags,
            )
            assessment.risk_band = RiskBand.URGENT
            assessment.rationale = f"{assessment.rationale} (escalated: {flags[0]})".strip()
            return RiskResult(
                assessment=assessment,
                outcome=OracleOutcome.ORACLE,
                method="oracle+red_flag_override",
                triggered_rules=flags,
            )

        return RiskResult(assessment=assessment, outcome=OracleOutcome.ORACLE, method="oracle")

    async def _from_oracle(self, fields: dict[str, Any], narrative: str) -> RiskAssessment | None:
        if self._oracle is None:
            return None
        try:
            raw = await self._oracle.risk_classify(fields, narrative)
        except Exception as exc:
            logger.warning("Oracle risk classification failed: %s — using heuristic", exc)
            return None
        if not raw:
            return None
        try:
            return RiskAssessment.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Malformed oracle risk output discarded: %s", exc)
            return None
