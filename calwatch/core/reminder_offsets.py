# calwatch/core/reminder_offsets.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

# Ordered: a shorter pattern must never shadow a longer one ("1 minute" vs "15 minutes").
OFFSET_TABLE: Tuple[Tuple[str, int], ...] = (
    ("15 minutes", 15),
    ("30 minutes", 30),
    ("5 minutes", 5),
    ("2 minutes", 2),
    ("1 minute", 1),
    ("1 hour", 60),
    ("1 day", 1440),
)

_CANONICAL_LABELS = {
    15: "15 minutes before",
    30: "30 minutes before",
    5: "5 minutes before",
    2: "2 minutes before",
    1: "1 minute before",
    60: "1 hour before",
    1440: "1 day before",
}


@dataclass(frozen=True)
class ParsedReminder:
    label: str
    offset_minutes: int


def parse_offset(label: object) -> Optional[int]:
    """
    Free-text reminder label -> minutes before the event, or None.
    Unknown labels are a normal outcome, not an error.
    """
    if not isinstance(label, str) or not label:
        return None
    for pattern, minutes in OFFSET_TABLE:
        if pattern in label:
            return minutes
    return None


def parse_reminders(labels: Iterable[str] | None) -> List[ParsedReminder]:
    """Keep only the labels the offset table recognizes, in their original order."""
    parsed: List[ParsedReminder] = []
    for label in labels or ():
        minutes = parse_offset(label)
        if minutes is not None:
            parsed.append(ParsedReminder(label=label, offset_minutes=minutes))
    return parsed


def label_for_offset(minutes: int) -> Optional[str]:
    """Canonical label for a known offset (e.g. from an iCal VALARM), else None."""
    return _CANONICAL_LABELS.get(minutes)


__all__ = [
    "OFFSET_TABLE",
    "ParsedReminder",
    "parse_offset",
    "parse_reminders",
    "label_for_offset",
]
