from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Iterator

from icalendar import vRecur

from studiosync.aggregate import CalendarOccurrence
from studiosync.ics_parser import RawComponent

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 1000
WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
SUPPORTED_FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
BYDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")


@dataclass
class RecurrenceRule:
    freq: str
    interval: int = 1
    count: int | None = None
    until: date | datetime | None = None
    by_day: list[tuple[int | None, int]] = field(default_factory=list)
    by_set_pos: list[int] = field(default_factory=list)


def _first(recur: Any, key: str) -> Any:
    values = recur.get(key)
    if isinstance(values, list):
        return values[0] if values else None
    return values


def _parse_by_day(values: Any) -> list[tuple[int | None, int]]:
    if values is None:
        return []
    if not isinstance(values, list):
        values = [values]
    parsed: list[tuple[int | None, int]] = []
    for raw in values:
        match = BYDAY_PATTERN.match(str(raw).strip().upper())
        if not match:
            raise ValueError(f"Unsupported BYDAY value: {raw}")
        ordinal = int(match.group(1)) if match.group(1) else None
        if ordinal == 0:
            raise ValueError(f"Unsupported BYDAY value: {raw}")
        parsed.append((ordinal, WEEKDAY_CODES.index(match.group(2))))
    return parsed


def parse_rule(text: str | None, tz: tzinfo | None = None) -> RecurrenceRule | None:
    """Parse an RRULE value; ``None`` means the rule must produce nothing."""
    if not text:
        return None
    try:
        recur = vRecur.from_ical(text)
        freq = str(_first(recur, "FREQ") or "").upper()
        if freq not in SUPPORTED_FREQUENCIES:
            raise ValueError(f"Unsupported FREQ: {freq or '<missing>'}")
        interval = int(_first(recur, "INTERVAL") or 1)
        if interval < 1:
            raise ValueError(f"Invalid INTERVAL: {interval}")
        raw_count = _first(recur, "COUNT")
        count = int(raw_count) if raw_count is not None else None
        by_day = _parse_by_day(recur.get("BYDAY"))
        raw_set_pos = recur.get("BYSETPOS") or []
        if not isinstance(raw_set_pos, list):
            raw_set_pos = [raw_set_pos]
        by_set_pos = [int(value) for value in raw_set_pos if int(value) != 0]
    except ValueError as exc:
        logger.debug("Ignoring recurrence rule %r: %s", text, exc)
        return None

    until = _first(recur, "UNTIL")
    if isinstance(until, datetime):
        if until.tzinfo is not None:
            until = until.astimezone(tz or timezone.utc).replace(tzinfo=None)
    elif not isinstance(until, date):
        until = None
    return RecurrenceRule(
        freq=freq,
        interval=interval,
        count=count,
        until=until,
        by_day=by_day,
        by_set_pos=by_set_pos,
    )


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _month_days_for_weekday(year: int, month: int, weekday: int, ordinal: int | None) -> list[date]:
    days_in_month = calendar.monthrange(year, month)[1]
    matches = [
        date(year, month, day)
        for day in range(1, days_in_month + 1)
        if date(year, month, day).weekday() == weekday
    ]
    if ordinal is None:
        return matches
    position = ordinal - 1 if ordinal > 0 else len(matches) + ordinal
    if 0 <= position < len(matches):
        return [matches[position]]
    return []


def _monthly_by_day(rule: RecurrenceRule, year: int, month: int) -> list[date]:
    candidates: set[date] = set()
    for ordinal, weekday in rule.by_day:
        candidates.update(_month_days_for_weekday(year, month, weekday, ordinal))
    ordered = sorted(candidates)
    if not rule.by_set_pos:
        return ordered
    selected: set[date] = set()
    for position in rule.by_set_pos:
        index = position - 1 if position > 0 else len(ordered) + position
        if 0 <= index < len(ordered):
            selected.add(ordered[index])
    return sorted(selected)


def _first_period(rule: RecurrenceRule, start: date, window_start: date) -> int:
    # Without COUNT, periods before the window cannot affect what is emitted.
    if rule.count is not None or window_start <= start:
        return 0
    if rule.freq == "DAILY":
        return (window_start - start).days // rule.interval
    if rule.freq == "WEEKLY":
        week_start = start - timedelta(days=start.weekday())
        return (window_start - week_start).days // (7 * rule.interval)
    if rule.freq == "MONTHLY":
        months = (window_start.year - start.year) * 12 + (window_start.month - start.month)
        return months // rule.interval
    return (window_start.year - start.year) // rule.interval


def _period_start(rule: RecurrenceRule, start: date, period: int) -> date:
    step = period * rule.interval
    if rule.freq == "DAILY":
        return start + timedelta(days=step)
    if rule.freq == "WEEKLY":
        return start - timedelta(days=start.weekday()) + timedelta(weeks=step)
    if rule.freq == "MONTHLY":
        year, month = _add_months(start.year, start.month, step)
        return date(year, month, 1)
    return date(start.year + step, 1, 1)


def _period_dates(rule: RecurrenceRule, start: date, period: int) -> list[date]:
    step = period * rule.interval
    if rule.freq == "DAILY":
        return [start + timedelta(days=step)]
    if rule.freq == "WEEKLY":
        week_start = start - timedelta(days=start.weekday()) + timedelta(weeks=step)
        weekdays = sorted({weekday for _, weekday in rule.by_day}) or [start.weekday()]
        return [week_start + timedelta(days=weekday) for weekday in weekdays]
    if rule.freq == "MONTHLY":
        year, month = _add_months(start.year, start.month, step)
        if rule.by_day:
            return _monthly_by_day(rule, year, month)
        if start.day > calendar.monthrange(year, month)[1]:
            return []
        return [date(year, month, start.day)]
    year = start.year + step
    if start.month == 2 and start.day == 29 and not calendar.isleap(year):
        return []
    return [date(year, start.month, start.day)]


def _past_until(rule: RecurrenceRule, day: date, start_dt: datetime) -> bool:
    if rule.until is None:
        return False
    if isinstance(rule.until, datetime):
        return datetime.combine(day, start_dt.time()) > rule.until
    return day > rule.until


def iter_rule_dates(
    rule: RecurrenceRule,
    start_dt: datetime,
    window_start: date,
    window_end: date,
    exdates: set[date] | None = None,
) -> Iterator[date]:
    start = start_dt.date()
    excluded = exdates or set()
    generated = 0
    period = _first_period(rule, start, window_start)
    first_period = period
    while True:
        if rule.count is None and period - first_period >= MAX_ITERATIONS:
            logger.debug("Recurrence expansion hit the iteration ceiling")
            return
        try:
            if _period_start(rule, start, period) > window_end:
                return
            candidates = _period_dates(rule, start, period)
        except (OverflowError, ValueError):
            return
        for day in candidates:
            if day < start:
                continue
            if _past_until(rule, day, start_dt) or day > window_end:
                return
            generated += 1
            if rule.count is not None and generated > rule.count:
                return
            if day >= window_start and day not in excluded:
                yield day
        period += 1


def _skeleton(component: RawComponent, day: date) -> CalendarOccurrence:
    return CalendarOccurrence(
        id="",
        title=component.summary,
        date=day,
        start_time=component.start.time if component.start else "00:00",
        end_time=component.end.time if component.end and component.end.date else "",
        location=component.location,
        description=component.description,
    )


def expand_recurrence(
    component: RawComponent,
    window_start: date,
    window_end: date,
    tz: tzinfo | None = None,
) -> list[CalendarOccurrence]:
    """Expand one parsed component into occurrences inside the inclusive window.

    The returned occurrences carry no ``id`` yet.
    """
    if component.start is None or component.start.date is None:
        return []
    start_dt = component.start.local_datetime
    if not component.rrule:
        if window_start <= component.start.date <= window_end:
            return [_skeleton(component, component.start.date)]
        return []

    rule = parse_rule(component.rrule, tz)
    if rule is None:
        return []
    return [
        _skeleton(component, day)
        for day in iter_rule_dates(rule, start_dt, window_start, window_end, component.exdates)
    ]
