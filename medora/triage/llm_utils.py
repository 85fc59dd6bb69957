"""
LLM utility functions — retry wrapper, truncation check and JSON cleanup.

Shared by every GeminiOracle call.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

logger = logging.getLogger("triage.llm_utils")


def is_response_complete(text: str) -> bool:
    """
    Heuristic truncation check for generated text.

    Empty text is incomplete.  Long text trailing off in an ellipsis, or
    ending in a letter after a long unpunctuated run, is treated as cut off.
    """
    if not text or not text.strip():
        return False

    stripped = text.strip()
    if len(stripped) < 10:
        return True  # too short to judge

    if any(stripped.endswith(ind) for ind in ("...", "…")) and len(stripped) > 50:
        return False

    if stripped[-1].isalpha() and len(stripped) > 100:
        last_sentence = stripped.split(".")[-1].strip()
        if len(last_sentence) > 60:
            return False

    return True


def clean_json_response(text: str) -> str:
    """Strip markdown code fences and surrounding whitespace from JSON-like text."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        if first_newline != -1:
            cleaned = cleaned[first_newline + 1:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_json_object(text: str | None) -> dict[str, Any] | None:
    """Parse a model response into a dict.  Anything else is None."""
    if not text:
        return None
    try:
        parsed = json.loads(clean_json_response(text))
    except (json.JSONDecodeError, TypeError) as exc:
        logger.warning("Discarding non-JSON model output: %s", exc)
        return None
    if not isinstance(parsed, dict):
        logger.warning("Discarding model output: expected object, got %s", type(parsed).__name__)
        return None
    return parsed


async def llm_generate(
    client: Any,
    model: str,
    contents: Any,
    config: Any = None,
    max_retries: int = 2,
    critical: bool = False,
    timeout: float | None = None,
) -> str | None:
    """
    generate_content with per-attempt timeout, retry and exponential backoff.

    critical=True raises the retry floor to 3 and doubles the base backoff;
    risk classification is the only caller that sets it.  Exhaustion is
    logged and returns None, which every oracle method maps to its
    deterministic fallback.
    """
    effective_retries = max_retries if not critical else max(max_retries, 3)
    base_backoff = 1.0 if critical else 0.5

    for attempt in range(effective_retries + 1):
        try:
            call = client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
            response = await asyncio.wait_for(call, timeout) if timeout else await call
            text = response.text
            if isinstance(text, str) and text.strip():
                return text
            logger.warning("Gemini returned no text (attempt %d)", attempt + 1)
        except asyncio.TimeoutError:
            logger.warning(
                "Gemini call timed out after %.1fs (attempt %d/%d)",
                timeout, attempt + 1, effective_retries + 1,
            )
        except Exception as exc:
            logger.warning(
                "Gemini call failed (attempt %d/%d): %s",
                attempt + 1, effective_retries + 1, exc,
            )

        if attempt < effective_retries:
            await asyncio.sleep(base_backoff * (2 ** attempt))

    if effective_retries > 0:
        logger.error(
            "Gemini gave no usable answer after %d attempts",
            effective_retries + 1,
        )
    return None
