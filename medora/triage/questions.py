"""
Question Selector — which OLDCARTS field to ask about next.

Anti-repeat policy: prefer the first missing key that is neither the
key we just asked nor one already asked in this collection pass.  If
every missing key has been tried, fall back to the first missing key,
so a stubborn field can be re-asked but never starves the others.

Collection is capped: once MAX_ASKED_KEYS distinct keys have been asked,
the pipeline moves on to risk classification with whatever it has.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("triage.questions")

MAX_ASKED_KEYS = 4

QUESTIONS: dict[str, str] = {
    "onset": "When did this first start?",
    "location": "Where exactly do you feel it?",
    "duration": "Is it there all the time, or does it come and go? How long does each episode last?",
    "character": "How would you describe it: sharp, dull, throbbing, burning or like pressure?",
    "aggrav_relieve": "Does anything make it better or worse, like rest, food, movement or light?",
    "related": "Have you noticed anything else alongside it, such as nausea, fever or dizziness?",
    "severity_impact": "On a scale of 1 to 10, how bad is it, and is it stopping you from doing your usual activities?",
}

GENERIC_QUESTION = "Could you tell me a little more about how you're feeling?"


def choose_next_key(
    missing: list[str],
    last_asked_key: str | None,
    asked_keys: list[str],
) -> str | None:
    if not missing:
        return None
    for key in missing:
        if key != last_asked_key and key not in asked_keys:
            return key
    return missing[0]


def question_for(key: str | None) -> str:
    if key is None:
        return GENERIC_QUESTION
    return QUESTIONS.get(key, GENERIC_QUESTION)


class QuestionSelector:
    """Stateless policy object; the asked-key state lives on the Session."""

    def __init__(self, max_asked_keys: int = MAX_ASKED_KEYS) -> None:
        self._max_asked = max_asked_keys

    @property
    def max_asked_keys(self) -> int:
        return self._max_asked

    def collection_exhausted(self, asked_keys: list[str]) -> bool:
        return len(asked_keys) >= self._max_asked

    def next_key(
        self, missing: list[str], last_asked_key: str | None, asked_keys: list[str]
    ) -> str | None:
        key = choose_next_key(missing, last_asked_key, asked_keys)
        logger.debug("Next question key: %s (asked=%s)", key, asked_keys)
        return key
