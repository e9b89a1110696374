# calwatch/adapters/ics_feed.py
"""
Calendar feed fetching (httpx) and iCal parsing (icalendar).

Feeds are plain iCal documents; Google "embed" links and webcal:// URLs are
rewritten to their https iCal equivalents before fetching.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Any, List, Optional
from urllib.parse import parse_qs, quote, urlparse
from zoneinfo import ZoneInfo

import httpx
from icalendar import Calendar

from calwatch.core.errors import FeedFetchError, FeedParseError
from calwatch.core.logging_utils import kv
from calwatch.core.models import Event
from calwatch.core.reminder_offsets import label_for_offset

log = logging.getLogger("calwatch.feed")

GOOGLE_ICAL_TEMPLATE = "https://calendar.google.com/calendar/ical/{src}/public/basic.ics"

_CATEGORY_RULES = (
    ("work", re.compile(r"\b(meeting|conference|work|office|project|client|deadline|standup|scrum)\b")),
    ("health", re.compile(r"\b(doctor|appointment|medical|dentist|checkup|therapy|gym|workout)\b")),
    ("sports", re.compile(r"\b(game|match|practice|training|soccer|football|basketball|tennis|golf)\b")),
    ("family", re.compile(r"\b(family|birthday|anniversary|reunion|wedding|graduation|school)\b")),
)


def convert_to_ical_url(url: str) -> str:
    """Rewrite Google embed and webcal:// links to fetchable iCal URLs."""
    if "calendar.google.com/calendar/embed" in url:
        src = parse_qs(urlparse(url).query).get("src")
        if src:
            return GOOGLE_ICAL_TEMPLATE.format(src=quote(src[0], safe=""))
    if url.startswith("webcal://"):
        return "https://" + url[len("webcal://"):]
    return url


def determine_category(title: str, description: Optional[str] = None) -> str:
    text = f"{title} {description or ''}".lower()
    for category, rx in _CATEGORY_RULES:
        if rx.search(text):
            return category
    return "personal"


class FeedFetcher:
    """Downloads raw iCal text. Owns its httpx client unless one is injected."""

    def __init__(
        self, client: Optional[httpx.AsyncClient] = None, *, timeout: float = 30.0
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"Accept": "text/calendar, text/plain;q=0.9, */*;q=0.5"},
            )
        return self._client

    async def fetch(self, url: str) -> str:
        ical_url = convert_to_ical_url(url)
        log.debug("feed.fetch " + kv(url=url, ical_url=ical_url))
        try:
            response = await self._get_client().get(ical_url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise FeedFetchError(f"Failed to fetch calendar: {e}") from e

        if not response.is_success:
            raise FeedFetchError(
                f"Failed to fetch calendar: {response.status_code} {response.reason_phrase}"
            )

        text = response.text
        log.debug("feed.fetched " + kv(url=ical_url, chars=len(text)))
        if "BEGIN:VCALENDAR" not in text:
            log.debug("feed.not_ical " + kv(head=text[:200]))
            raise FeedFetchError(
                "The URL does not return valid iCal data. "
                'Use the "Public address in iCal format" from the calendar settings.'
            )
        return text

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def parse_feed(text: str, source_calendar: str, tz: ZoneInfo) -> List[Event]:
    """
    iCal text -> event drafts (no ids). Broken individual VEVENTs are skipped;
    a document that cannot be parsed at all raises FeedParseError.
    """
    try:
        cal = Calendar.from_ical(text)
    except Exception as e:
        log.error("feed.parse.error " + kv(calendar=source_calendar, err=str(e)))
        raise FeedParseError("Failed to parse calendar data") from e

    events: List[Event] = []
    for component in cal.walk("VEVENT"):
        try:
            ev = _to_event(component, source_calendar, tz)
        except Exception as e:
            log.warning("feed.event.skip " + kv(calendar=source_calendar, err=str(e)))
            continue
        if ev is not None:
            events.append(ev)
    return events


def _to_event(component: Any, source_calendar: str, tz: ZoneInfo) -> Optional[Event]:
    summary = component.get("SUMMARY")
    dtstart = component.get("DTSTART")
    if not summary or dtstart is None:
        log.warning(
            "feed.event.skip "
            + kv(calendar=source_calendar, reason="missing SUMMARY or DTSTART")
        )
        return None

    title = str(summary)
    description = _text(component.get("DESCRIPTION"))
    start_raw = dtstart.dt
    is_all_day = isinstance(start_raw, date) and not isinstance(start_raw, datetime)
    start_time = _as_datetime(start_raw, tz)

    end_time: Optional[datetime] = None
    if is_all_day:
        end_time = start_time.replace(hour=23, minute=59, second=59)
    elif component.get("DTEND") is not None:
        end_time = _as_datetime(component.get("DTEND").dt, tz)

    return Event(
        title=title,
        start_time=start_time,
        end_time=end_time,
        description=description,
        location=_text(component.get("LOCATION")),
        category=determine_category(title, description),
        is_all_day=is_all_day,
        reminders=_alarm_labels(component),
        source_calendar=source_calendar,
        external_id=_text(component.get("UID")),
    )


def _alarm_labels(component: Any) -> tuple:
    labels: List[str] = []
    for alarm in component.walk("VALARM"):
        trigger = alarm.get("TRIGGER")
        if trigger is None or not isinstance(trigger.dt, timedelta):
            continue
        if trigger.dt > timedelta(0):
            continue
        label = label_for_offset(int(-trigger.dt.total_seconds() // 60))
        if label and label not in labels:
            labels.append(label)
    return tuple(labels)


def _as_datetime(value: Any, tz: ZoneInfo) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=tz)
    raise ValueError(f"unsupported date value: {value!r}")


def _text(value: Any) -> Optional[str]:
    return str(value) if value else None


__all__ = [
    "FeedFetcher",
    "parse_feed",
    "convert_to_ical_url",
    "determine_category",
]
