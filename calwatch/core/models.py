# calwatch/core/models.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple


@dataclass(frozen=True)
class Event:
    """A calendar event. `id` is assigned by the store; drafts carry None."""

    title: str
    start_time: datetime
    reminders: Tuple[str, ...] = ()
    id: Optional[int] = None
    end_time: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    category: str = "personal"
    is_all_day: bool = False
    source_calendar: Optional[str] = None  # CalendarSource.name for imported events
    external_id: Optional[str] = None  # iCal UID


@dataclass(frozen=True)
class CalendarSource:
    """An external calendar feed (iCal / webcal / Google public link)."""

    name: str
    url: str
    id: Optional[int] = None
    is_active: bool = True
    last_synced: Optional[datetime] = None


__all__ = ["Event", "CalendarSource"]
