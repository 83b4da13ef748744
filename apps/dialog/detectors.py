"""Signal detectors over runtime transcripts (escalation markers, survey ratings)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from apps.runtime.transcript import TranscriptTurn

# Markers the agent emits when it needs a human. First match wins.
ESCALATION_PATTERNS = (
    re.compile(r"\[ESCALAR:\s*(.+?)\]", re.IGNORECASE),
    re.compile(r"\[ESCALAÇÃO:\s*(.+?)\]", re.IGNORECASE),
    re.compile(r"\[TRANSFERIR:\s*(.+?)\]", re.IGNORECASE),
    re.compile(r"\[HUMAN_NEEDED:\s*(.+?)\]", re.IGNORECASE),
    re.compile(r"\[ATENDENTE:\s*(.+?)\]", re.IGNORECASE),
)

ASCII_DIGIT = re.compile(r"[0-9]")
MIN_RATING = 1
MAX_RATING = 5


@dataclass(frozen=True, slots=True)
class EscalationSignal:
    detected: bool
    reason: str


def _last_turn(turns: Sequence[TranscriptTurn], role: str) -> TranscriptTurn | None:
    for item in reversed(turns):
        if item.role == role:
            return item
    return None


def detect_escalation(turns: Sequence[TranscriptTurn]) -> EscalationSignal | None:
    """Return the escalation requested by the most recent assistant turn.

    Older assistant turns are never considered: a marker has to be restated in
    the latest reply to count.
    """
    last = _last_turn(turns, "assistant")
    if last is None:
        return None
    text = last.text
    for pattern in ESCALATION_PATTERNS:
        match = pattern.search(text)
        if match:
            return EscalationSignal(detected=True, reason=match.group(1).strip())
    return None


def detect_survey_response(turns: Sequence[TranscriptTurn]) -> int | None:
    """Return the 1-5 rating in the most recent user turn, if unambiguous.

    The turn must contain exactly one digit overall; phone numbers, dates and
    other incidental digits disqualify it.
    """
    last = _last_turn(turns, "user")
    if last is None:
        return None
    digits = ASCII_DIGIT.findall(last.text.strip())
    if len(digits) != 1:
        return None
    rating = int(digits[0])
    if MIN_RATING <= rating <= MAX_RATING:
        return rating
    return None
