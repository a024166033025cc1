from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, tzinfo

from studiosync.aggregate import CalendarOccurrence
from studiosync.ics_parser import parse_ics
from studiosync.recurrence import expand_recurrence

logger = logging.getLogger(__name__)

BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _string_hash(text: str) -> int:
    # 32-bit h = h * 31 + c over UTF-16 code units, kept compatible with ids already stored.
    encoded = text.encode("utf-16-le")
    value = 0
    for index in range(0, len(encoded), 2):
        unit = encoded[index] | (encoded[index + 1] << 8)
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def stable_occurrence_id(
    title: str,
    day: date,
    start_time: str,
    end_time: str = "",
    location: str | None = None,
) -> str:
    key = "-".join([title or "", day.isoformat(), start_time or "", end_time or "", location or ""])
    return f"cal-{_base36(abs(_string_hash(key)))}"


def assign_identity(occurrence: CalendarOccurrence) -> CalendarOccurrence:
    return replace(
        occurrence,
        id=stable_occurrence_id(
            occurrence.title,
            occurrence.date,
            occurrence.start_time,
            occurrence.end_time,
            occurrence.location,
        ),
    )


def build_occurrences(
    text: str,
    window: tuple[date, date],
    tz: tzinfo | None = None,
) -> list[CalendarOccurrence]:
    window_start, window_end = window
    occurrences: list[CalendarOccurrence] = []
    seen: set[str] = set()
    components = parse_ics(text, tz)
    for component in components:
        for skeleton in expand_recurrence(component, window_start, window_end, tz):
            occurrence = assign_identity(skeleton)
            if occurrence.id in seen:
                continue
            seen.add(occurrence.id)
            occurrences.append(occurrence)
    logger.debug("Built %d occurrences from %d components", len(occurrences), len(components))
    return occurrences
