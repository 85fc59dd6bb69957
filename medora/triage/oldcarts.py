"""
OLDCARTS field extraction and merge.

Two extractors feed the merge, in fixed precedence:
  1. The oracle's structured extractor (fallible, may return nothing)
  2. A deterministic rule-based extractor over the lower-cased text

The rule-based result is used whenever the oracle fails, times out or
returns an empty map.  Oracle errors never reach the patient.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from medora.triage.oracle import OracleOutcome, TriageOracle
from medora.triage.session import OLDCARTS_KEYS

logger = logging.getLogger("triage.oldcarts")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def merge(existing: dict[str, Any] | None, incoming: dict[str, Any] | None) -> dict[str, Any]:
    """Per key: take incoming when non-empty, else keep existing.  Always 7 keys."""
    base = existing or {}
    new = incoming or {}
    merged: dict[str, Any] = {}
    for key in OLDCARTS_KEYS:
        value = new.get(key)
        merged[key] = base.get(key) if _is_empty(value) else value
    return merged


def missing_keys(fields: dict[str, Any] | None) -> list[str]:
    """Canonical-order list of keys with no value."""
    fields = fields or {}
    return [key for key in OLDCARTS_KEYS if _is_empty(fields.get(key))]


def populated_count(fields: dict[str, Any] | None) -> int:
    return len(OLDCARTS_KEYS) - len(missing_keys(fields))


# Replies that answer nothing: never attributed to the question asked
NON_ANSWER_PHRASE = (
    r"h+m+|u+m+|u+h+|idk|dunno|no\s+idea|(?:i['’]?m\s+)?(?:not\s+sure|unsure)|maybe|"
    r"(?:i\s+)?(?:don['’]?t|do\s+not)\s+know|(?:i\s+)?can['’]?t\s+(?:say|remember)|\?+"
)
NON_ANSWER = re.compile(rf"^(?:\s*(?:{NON_ANSWER_PHRASE})[\s.,!?]*)+$", re.I)


def is_non_answer(text: str) -> bool:
    return not text.strip() or bool(NON_ANSWER.match(text))


def summarize_fields(fields: dict[str, Any]) -> str:
    """One-line 'Onset: … | Location: …' summary of populated fields."""
    labels = {
        "onset": "Onset",
        "location": "Location",
        "duration": "Duration",
        "character": "Character",
        "aggrav_relieve": "Aggrav/Relieve",
        "related": "Related",
        "severity_impact": "Impact",
    }
    parts = []
    for key in OLDCARTS_KEYS:
        value = fields.get(key)
        if _is_empty(value):
            continue
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        parts.append(f"{labels[key]}: {value}")
    return " | ".join(parts)


# ── Rule-based extraction ──

ONSET_PATTERNS = [
    re.compile(r"since\s+([^.,;]+)"),
    re.compile(r"started\s+(?:on\s+)?([^.,;]+)"),
    re.compile(r"for\s+the\s+past\s+([^.,;]+)"),
]

# (pattern, canonical location), more specific first
LOCATION_RULES: list[tuple[str, str]] = [
    (r"left\s+chest", "left chest"),
    (r"right\s+chest", "right chest"),
    (r"lower\s+back", "lower back"),
    (r"\bhead(?:ache)?s?\b", "head"),
    (r"\bchest\b", "chest"),
    (r"\bback\b", "back"),
    (r"\bstomach\b", "stomach"),
    (r"\babdom(?:en|inal)\b", "abdomen"),
    (r"\bthroat\b", "throat"),
    (r"\bknees?\b", "knee"),
    (r"\bshoulders?\b", "shoulder"),
    (r"\bneck\b", "neck"),
    (r"\bears?\b", "ear"),
]

CHARACTER_WORDS = ["throbbing", "dull", "stabbing", "pressure", "burning", "sharp", "cramping"]

RELATED_RULES: list[tuple[str, str]] = [
    (r"nausea|nauseous", "nausea"),
    (r"vomit", "vomiting"),
    (r"fever", "fever"),
    (r"dizziness|dizzy", "dizziness"),
    (r"sweat", "sweating"),
    (r"blurred\s+vision", "blurred vision"),
]

SEVERITY_WORDS = ["unbearable", "severe", "moderate", "mild"]

IMPACT_RULES: list[tuple[str, str]] = [
    (r"can'?t\s+sleep|cannot\s+sleep|keeps\s+me\s+up", "affecting sleep"),
    (r"can'?t\s+work|cannot\s+work|miss(?:ed)?\s+work", "unable to work"),
    (r"can'?t\s+walk|cannot\s+walk", "unable to walk"),
]


def rule_based_extract(text: str) -> dict[str, Any]:
    """Keyword and regex safety net for when the oracle is unavailable."""
    t = text.lower()
    out: dict[str, Any] = {}

    for pattern in ONSET_PATTERNS:
        m = pattern.search(t)
        if m:
            out["onset"] = m.group(1).strip()
            break

    for pattern, label in LOCATION_RULES:
        if re.search(pattern, t):
            out["location"] = label
            break

    for word in CHARACTER_WORDS:
        if word in t:
            out["character"] = word
            break

    if re.search(r"intermittent|on\s*and\s*off|comes\s+and\s+goes|episodes?", t):
        out["duration"] = "intermittent"
    elif re.search(r"continuous|constant", t):
        out["duration"] = "continuous"

    triggers = []
    if re.search(r"worse\s+(?:with|in)\s+(?:the\s+)?(?:bright\s+)?light|photophobia", t):
        triggers.append("worse with light")
    if re.search(r"better\s+with\s+rest|rest\s+helps", t):
        triggers.append("relief with rest")
    if triggers:
        out["aggrav_relieve"] = "; ".join(triggers)

    related = [label for pattern, label in RELATED_RULES if re.search(pattern, t)]
    if related:
        out["related"] = related

    severity = []
    score = re.search(r"\b(10|[0-9])\s*(?:/|out\s+of)\s*10\b", t)
    if score:
        severity.append(f"{score.group(1)}/10")
    else:
        for word in SEVERITY_WORDS:
            if re.search(rf"\b{word}\b", t):
                severity.append(word)
                break
    severity.extend(label for pattern, label in IMPACT_RULES if re.search(pattern, t))
    if severity:
        out["severity_impact"] = ", ".join(severity)

    return out


# ── Combined extractor ──


@dataclass
class ExtractionResult:
    fields: dict[str, Any] = field(default_factory=dict)
    outcome: OracleOutcome = OracleOutcome.INCONCLUSIVE


class FieldExtractor:
    """Oracle-first extraction with the rule-based extractor as fallback."""

    def __init__(self, oracle: TriageOracle | None = None) -> None:
        self._oracle = oracle

    async def extract(
        self, text: str, existing: dict[str, Any], narrative: str = ""
    ) -> ExtractionResult:
        oracle_fields = await self._from_oracle(narrative or text, existing)
        if oracle_fields:
            return ExtractionResult(fields=oracle_fields, outcome=OracleOutcome.ORACLE)

        fallback = rule_based_extract(text)
        if fallback:
            return ExtractionResult(fields=fallback, outcome=OracleOutcome.FALLBACK)
        return ExtractionResult(fields={}, outcome=OracleOutcome.INCONCLUSIVE)

    async def _from_oracle(self, narrative: str, existing: dict[str, Any]) -> dict[str, Any]:
        if self._oracle is None:
            return {}
        try:
            raw = await self._oracle.structured_extract(narrative, existing)
        except Exception as exc:
            logger.warning("Oracle extraction failed: %s — using rule-based fallback", exc)
            return {}
        if not isinstance(raw, dict):
            return {}
        # Some model outputs nest the fields under an "oldcarts" key
        if isinstance(raw.get("oldcarts"), dict):
            raw = raw["oldcarts"]
        return {k: v for k, v in raw.items() if k in OLDCARTS_KEYS and not _is_empty(v)}
