"""
Triage Oracle — the generative-text backend behind the pipeline.

The pipeline never depends on the oracle being right, or being there at
all.  Every method may return None; callers treat None as "use the
deterministic fallback" and never surface it to the patient.

GeminiOracle talks to Gemini through google-genai.  NullOracle is the
unconfigured case (no API key) and always returns None.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from medora.triage.llm_utils import is_response_complete, llm_generate, parse_json_object

logger = logging.getLogger("triage.oracle")


class OracleOutcome(str, Enum):
    """Which path produced a result."""

    ORACLE = "oracle"              # oracle succeeded
    FALLBACK = "fallback"          # oracle failed, deterministic fallback used
    INCONCLUSIVE = "inconclusive"  # fallback ran but found nothing


# ── Prompts ──

EXTRACT_INSTRUCTION = (
    "Extract OLDCARTS (Onset, Location, Duration, Character, Aggravating/Relieving, "
    "Related, Severity/Impact) from the patient narrative as a flat JSON object with "
    "exactly these keys: onset, location, duration, character, aggrav_relieve, "
    "related (array of strings), severity_impact. Use null for unknown. "
    "Keep values already known unless the patient corrects them."
)

FOLLOW_UP_INSTRUCTION = (
    "You are a warm clinician chatting on WhatsApp. Ask ONE short, natural follow-up "
    "question about ONLY the missing OLDCARTS field provided. Avoid lists. "
    "Do not give a diagnosis."
)

TRIAGE_INSTRUCTION = (
    "Given OLDCARTS + narrative, return JSON with risk_band "
    "(Emergency|Urgent|Soon|Routine|Self-care), specialty array, optional care_mode "
    "(tele|in-person), and a brief rationale."
)

FREEFORM_INSTRUCTION = (
    "You are MEDORA, a friendly triage assistant on WhatsApp. Reply in 1-3 short "
    "sentences. Never diagnose. If symptoms sound serious, advise seeing a doctor."
)

DOCUMENT_INSTRUCTION = (
    "Extract key findings and entities suitable for a clinician from this report or "
    "image as JSON."
)

HANDOFF_INSTRUCTION = (
    "Write a concise clinician handoff summary (max 200 words) from this triage chat: "
    "chief complaint, OLDCARTS findings, risk band with rationale, recommended "
    "specialty, and any attached report findings. Plain prose, no markdown."
)


class TriageOracle(ABC):
    """Interface to the external generative-text service."""

    @abstractmethod
    async def structured_extract(
        self, narrative: str, existing_fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Partial OLDCARTS map, or None."""

    @abstractmethod
    async def natural_follow_up(
        self, missing_keys: list[str], context: dict[str, Any]
    ) -> str | None:
        """A conversational question for the missing keys, or None."""

    @abstractmethod
    async def risk_classify(
        self, fields: dict[str, Any], narrative: str
    ) -> dict[str, Any] | None:
        """Raw {risk_band, specialty[], care_mode?, rationale}, or None."""

    @abstractmethod
    async def freeform_turn(
        self, history: list[dict[str, str]], text: str
    ) -> str | None:
        """A free conversational reply, or None."""

    @abstractmethod
    async def document_analyze(self, base64_data: str, mime_type: str) -> dict[str, Any] | None:
        """Structured findings from a report or image, or None."""

    @abstractmethod
    async def handoff_summary(
        self,
        history: list[dict[str, str]],
        risk: dict[str, Any] | None,
        attachments: list[dict[str, Any]],
    ) -> str | None:
        """Clinician handoff text, or None."""


class NullOracle(TriageOracle):
    """Unconfigured oracle — every call falls through to the heuristics."""

    async def structured_extract(self, narrative, existing_fields):
        return None

    async def natural_follow_up(self, missing_keys, context):
        return None

    async def risk_classify(self, fields, narrative):
        return None

    async def freeform_turn(self, history, text):
        return None

    async def document_analyze(self, base64_data, mime_type):
        return None

    async def handoff_summary(self, history, risk, attachments):
        return None


class GeminiOracle(TriageOracle):
    """google-genai backed oracle.  Missing credentials mean silent fallback."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float = 20.0,
        llm_client=None,
    ) -> None:
        self._api_key = api_key if api_key is not None else (
            os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", "")
        )
        self._model_name = model or os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
        self._timeout = timeout_seconds
        self._client = llm_client

    @property
    def client(self):
        if self._client is None and self._api_key:
            try:
                from google import genai
                self._client = genai.Client(api_key=self._api_key)
            except Exception as exc:
                logger.error("Failed to create Gemini client: %s", exc)
        return self._client

    def _config(self, system_instruction: str, json_output: bool = False):
        from google.genai import types as genai_types

        return genai_types.GenerateContentConfig(
            system_instruction=system_instruction,
            response_mime_type="application/json" if json_output else None,
        )

    async def _text(
        self, instruction: str, contents: Any, critical: bool = False
    ) -> str | None:
        if self.client is None:
            return None
        try:
            return await llm_generate(
                self.client,
                self._model_name,
                contents,
                config=self._config(instruction),
                critical=critical,
                timeout=self._timeout,
            )
        except Exception as exc:
            logger.warning("Oracle text call failed: %s", exc)
            return None

    async def _json(
        self, instruction: str, contents: Any, critical: bool = False
    ) -> dict[str, Any] | None:
        if self.client is None:
            return None
        try:
            raw = await llm_generate(
                self.client,
                self._model_name,
                contents,
                config=self._config(instruction, json_output=True),
                critical=critical,
                timeout=self._timeout,
            )
        except Exception as exc:
            logger.warning("Oracle JSON call failed: %s", exc)
            return None
        return parse_json_object(raw)

    # ── TriageOracle ──

    async def structured_extract(self, narrative, existing_fields):
        contents = (
            f"Known so far: {json.dumps(existing_fields)}\n"
            f"Patient narrative: {narrative}"
        )
        return await self._json(EXTRACT_INSTRUCTION, contents)

    async def natural_follow_up(self, missing_keys, context):
        contents = f"Missing: {', '.join(missing_keys)}\nContext: {json.dumps(context, default=str)}"
        text = await self._text(FOLLOW_UP_INSTRUCTION, contents)
        if text and is_response_complete(text):
            return text.strip()
        if text:
            logger.warning("Follow-up question appears truncated — using fallback")
        return None

    async def risk_classify(self, fields, narrative):
        contents = f"OLDCARTS: {json.dumps(fields)}\nNarrative: {narrative}"
        return await self._json(TRIAGE_INSTRUCTION, contents, critical=True)

    async def freeform_turn(self, history, text):
        transcript = "\n".join(f"{h['role']}: {h['text']}" for h in history)
        contents = f"Conversation so far:\n{transcript}\n\nPatient: {text}"
        reply = await self._text(FREEFORM_INSTRUCTION, contents)
        if reply and is_response_complete(reply):
            return reply.strip()
        return None

    async def document_analyze(self, base64_data, mime_type):
        if self.client is None:
            return None
        import base64

        from google.genai import types as genai_types

        try:
            part = genai_types.Part.from_bytes(
                data=base64.b64decode(base64_data), mime_type=mime_type
            )
            raw = await llm_generate(
                self.client,
                self._model_name,
                [part, DOCUMENT_INSTRUCTION],
                timeout=self._timeout,
            )
        except Exception as exc:
            logger.warning("Document analysis failed: %s", exc)
            return None
        if raw is None:
            return None
        parsed = parse_json_object(raw)
        return parsed if parsed is not None else {"summary": raw.strip()}

    async def handoff_summary(self, history, risk, attachments):
        transcript = "\n".join(f"{h['role']}: {h['text']}" for h in history)
        contents = (
            f"Transcript:\n{transcript}\n\n"
            f"Risk: {json.dumps(risk, default=str)}\n"
            f"Attachments: {json.dumps(attachments, default=str)[:4000]}"
        )
        return await self._text(HANDOFF_INSTRUCTION, contents)
