from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any

from icalendar import vText
from icalendar.parser import Contentlines

logger = logging.getLogger(__name__)

DATE_ONLY_PATTERN = re.compile(r"^\d{8}$")
KIND_DATE = "date"
KIND_FLOATING = "floating"
KIND_UTC = "utc"


@dataclass(frozen=True)
class ResolvedDateTime:
    date: date | None
    time: str = "00:00"
    kind: str = KIND_FLOATING

    @property
    def local_datetime(self) -> datetime | None:
        if self.date is None:
            return None
        hour, minute = (int(part) for part in self.time.split(":"))
        return datetime.combine(self.date, time(hour, minute))


@dataclass
class RawComponent:
    summary: str = ""
    start: ResolvedDateTime | None = None
    end: ResolvedDateTime | None = None
    rrule: str | None = None
    exdates: set[date] = field(default_factory=set)
    location: str | None = None
    description: str | None = None

    def is_complete(self) -> bool:
        return bool(self.summary) and self.start is not None and self.start.date is not None


def _parse_day(text: str) -> date | None:
    try:
        return date(int(text[0:4]), int(text[4:6]), int(text[6:8]))
    except ValueError:
        return None


def resolve_datetime_value(params: Any, value: str, tz: tzinfo | None = None) -> ResolvedDateTime:
    """Turn a DTSTART/DTEND/EXDATE value into a local calendar date and ``HH:MM`` time.

    ``VALUE=DATE`` or a bare ``YYYYMMDD`` is all-day. A trailing ``Z`` is a UTC
    instant projected into ``tz``. Anything else is floating local time; TZID
    parameters are not applied. Malformed input yields ``date=None``.
    """
    text = str(value or "").strip()
    value_type = str((params or {}).get("VALUE", "")).upper()
    if value_type == "DATE" or DATE_ONLY_PATTERN.match(text):
        return ResolvedDateTime(_parse_day(text[:8]), "00:00", KIND_DATE)

    try:
        parsed = datetime(
            int(text[0:4]),
            int(text[4:6]),
            int(text[6:8]),
            int(text[9:11]),
            int(text[11:13]),
        )
    except ValueError:
        return ResolvedDateTime(None, "00:00", KIND_FLOATING)

    if text.endswith("Z"):
        local = parsed.replace(tzinfo=timezone.utc).astimezone(tz or timezone.utc)
        return ResolvedDateTime(local.date(), local.strftime("%H:%M"), KIND_UTC)
    return ResolvedDateTime(parsed.date(), parsed.strftime("%H:%M"), KIND_FLOATING)


def _unescape(value: str) -> str:
    return str(vText.from_ical(value))


def _apply_property(
    component: RawComponent,
    name: str,
    params: Any,
    value: str,
    tz: tzinfo | None,
) -> None:
    if name == "SUMMARY":
        component.summary = _unescape(value).strip()
    elif name == "DTSTART":
        component.start = resolve_datetime_value(params, value, tz)
    elif name == "DTEND":
        component.end = resolve_datetime_value(params, value, tz)
    elif name == "RRULE":
        component.rrule = value.strip()
    elif name == "EXDATE":
        for part in value.split(","):
            resolved = resolve_datetime_value(params, part, tz)
            if resolved.date is not None:
                component.exdates.add(resolved.date)
    elif name == "LOCATION":
        component.location = _unescape(value)
    elif name == "DESCRIPTION":
        component.description = _unescape(value)


def parse_ics(text: str, tz: tzinfo | None = None) -> list[RawComponent]:
    try:
        lines = Contentlines.from_ical(text or "")
    except ValueError as exc:
        logger.warning("Unreadable calendar payload: %s", exc)
        return []

    components: list[RawComponent] = []
    current: RawComponent | None = None
    # Properties of nested blocks (VALARM) must not leak into the event.
    nested_depth = 0
    skipped = 0
    for line in lines:
        if not line.strip():
            continue
        try:
            raw_name, params, value = line.parts()
        except ValueError:
            skipped += 1
            continue
        name = str(raw_name).upper()
        marker = str(value).strip().upper()

        if name == "BEGIN":
            if marker == "VEVENT" and nested_depth == 0:
                # An unterminated event is discarded when the next one opens.
                current = RawComponent()
            elif current is not None:
                nested_depth += 1
            continue
        if name == "END":
            if current is None:
                continue
            if nested_depth:
                nested_depth -= 1
            elif marker == "VEVENT":
                if current.is_complete():
                    components.append(current)
                current = None
            continue
        if current is None or nested_depth:
            continue
        try:
            _apply_property(current, name, params, str(value), tz)
        except ValueError:
            skipped += 1

    if skipped:
        logger.debug("Skipped %d unparseable calendar lines", skipped)
    return components
