"""Typed view of the user-data document exchanged with the remote store.

The document is JSON with camelCase keys. Each record keeps the keys it does
not model in ``extra`` so that a round-trip never drops data written by a newer
client. Legacy aliases are normalized here, once, on the way in.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from studiosync.models import safe_parse_iso_datetime, serialize_datetime

LEGACY_NOTE_CATEGORIES = {
    "covered": "worked-on",
    "observation": "needs-work",
    "reminder": "next-week",
    "choreography": "ideas",
}


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _optional_dict(value: Any) -> dict[str, Any] | None:
    return copy.deepcopy(value) if isinstance(value, dict) else None


def _dict_items(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _extra(data: dict[str, Any], known: set[str]) -> dict[str, Any]:
    return {key: copy.deepcopy(value) for key, value in data.items() if key not in known}


def normalize_note_category(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return LEGACY_NOTE_CATEGORIES.get(text, text)


def parse_day(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value or "")[:10])
    except ValueError:
        return None


@dataclass
class LiveNote:
    id: str
    timestamp: str = ""
    text: str = ""
    category: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {"id", "timestamp", "text", "category"}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LiveNote":
        return cls(
            id=_text(data.get("id")),
            timestamp=_text(data.get("timestamp")),
            text=_text(data.get("text")),
            category=normalize_note_category(data.get("category")),
            extra=_extra(data, cls._KEYS),
        )

    @property
    def timestamp_dt(self) -> datetime | None:
        return safe_parse_iso_datetime(self.timestamp)

    def to_dict(self) -> dict[str, Any]:
        payload = copy.deepcopy(self.extra)
        payload.update({"id": self.id, "timestamp": self.timestamp, "text": self.text})
        if self.category is not None:
            payload["category"] = self.category
        return payload


@dataclass
class MediaItem:
    id: str
    type: str = "image"
    url: str = ""
    timestamp: str = ""
    name: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {"id", "type", "url", "timestamp", "name"}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MediaItem":
        return cls(
            id=_text(data.get("id")),
            type=_text(data.get("type")) or "image",
            url=_text(data.get("url")),
            timestamp=_text(data.get("timestamp")),
            name=_text(data.get("name")),
            extra=_extra(data, cls._KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = copy.deepcopy(self.extra)
        payload.update(
            {
                "id": self.id,
                "type": self.type,
                "url": self.url,
                "timestamp": self.timestamp,
                "name": self.name,
            }
        )
        return payload


@dataclass
class ClassWeekNotes:
    class_id: str
    plan: str = ""
    live_notes: list[LiveNote] = field(default_factory=list)
    organized_notes: dict[str, Any] | None = None
    is_organized: bool = False
    media: list[MediaItem] = field(default_factory=list)
    attendance: dict[str, Any] | None = None
    week_idea: str | None = None
    next_week_goal: str | None = None
    carry_forward_dismissed: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {
        "classId",
        "plan",
        "liveNotes",
        "organizedNotes",
        "isOrganized",
        "media",
        "attendance",
        "weekIdea",
        "nextWeekGoal",
        "carryForwardDismissed",
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any], class_id: str = "") -> "ClassWeekNotes":
        return cls(
            class_id=_text(data.get("classId")) or class_id,
            plan=_text(data.get("plan")),
            live_notes=[LiveNote.from_dict(item) for item in _dict_items(data.get("liveNotes"))],
            organized_notes=_optional_dict(data.get("organizedNotes")),
            is_organized=bool(data.get("isOrganized", False)),
            media=[MediaItem.from_dict(item) for item in _dict_items(data.get("media"))],
            attendance=_optional_dict(data.get("attendance")),
            week_idea=_optional_text(data.get("weekIdea")),
            next_week_goal=_optional_text(data.get("nextWeekGoal")),
            carry_forward_dismissed=bool(data.get("carryForwardDismissed", False)),
            extra=_extra(data, cls._KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = copy.deepcopy(self.extra)
        payload.update(
            {
                "classId": self.class_id,
                "plan": self.plan,
                "liveNotes": [note.to_dict() for note in self.live_notes],
                "isOrganized": self.is_organized,
            }
        )
        if self.organized_notes is not None:
            payload["organizedNotes"] = copy.deepcopy(self.organized_notes)
        if self.media:
            payload["media"] = [item.to_dict() for item in self.media]
        if self.attendance is not None:
            payload["attendance"] = copy.deepcopy(self.attendance)
        if self.week_idea is not None:
            payload["weekIdea"] = self.week_idea
        if self.next_week_goal is not None:
            payload["nextWeekGoal"] = self.next_week_goal
        if self.carry_forward_dismissed:
            payload["carryForwardDismissed"] = True
        return payload


@dataclass
class WeekNotes:
    week_of: str
    id: str = ""
    class_notes: dict[str, ClassWeekNotes] = field(default_factory=dict)
    reflection: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {"id", "weekOf", "classNotes", "reflection"}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WeekNotes":
        raw_class_notes = data.get("classNotes")
        class_notes: dict[str, ClassWeekNotes] = {}
        if isinstance(raw_class_notes, dict):
            for class_id, value in raw_class_notes.items():
                if isinstance(value, dict):
                    class_notes[str(class_id)] = ClassWeekNotes.from_dict(value, class_id=str(class_id))
        return cls(
            week_of=_text(data.get("weekOf")),
            id=_text(data.get("id")),
            class_notes=class_notes,
            reflection=_optional_dict(data.get("reflection")),
            extra=_extra(data, cls._KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = copy.deepcopy(self.extra)
        payload.update(
            {
                "id": self.id,
                "weekOf": self.week_of,
                "classNotes": {key: value.to_dict() for key, value in self.class_notes.items()},
            }
        )
        if self.reflection is not None:
            payload["reflection"] = copy.deepcopy(self.reflection)
        return payload


@dataclass
class SelfCareData:
    values: dict[str, Any] = field(default_factory=dict)
    modified: datetime | None = None
    field_modified: dict[str, datetime] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SelfCareData":
        data = data if isinstance(data, dict) else {}
        raw_stamps = data.get("selfCareFieldModified")
        stamps: dict[str, datetime] = {}
        if isinstance(raw_stamps, dict):
            for key, value in raw_stamps.items():
                parsed = safe_parse_iso_datetime(value)
                if parsed is not None:
                    stamps[str(key)] = parsed
        values = {
            key: copy.deepcopy(value)
            for key, value in data.items()
            if key not in {"selfCareModified", "selfCareFieldModified"}
        }
        return cls(
            values=values,
            modified=safe_parse_iso_datetime(data.get("selfCareModified")),
            field_modified=stamps,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = copy.deepcopy(self.values)
        if self.modified is not None:
            payload["selfCareModified"] = serialize_datetime(self.modified)
        if self.field_modified:
            payload["selfCareFieldModified"] = {
                key: serialize_datetime(value) for key, value in self.field_modified.items()
            }
        return payload


@dataclass
class CalendarOccurrence:
    id: str
    title: str
    date: date
    start_time: str = "00:00"
    end_time: str = ""
    location: str | None = None
    description: str | None = None
    linked_annotation_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalendarOccurrence | None":
        day = parse_day(data.get("date"))
        if day is None:
            return None
        links = data.get("linkedAnnotationIds")
        if links is None:
            links = data.get("linkedDanceIds")
        return cls(
            id=_text(data.get("id")),
            title=_text(data.get("title")),
            date=day,
            start_time=_text(data.get("startTime")),
            end_time=_text(data.get("endTime")),
            location=_optional_text(data.get("location")),
            description=_optional_text(data.get("description")),
            linked_annotation_ids=[str(item) for item in links] if isinstance(links, list) else [],
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "date": self.date.isoformat(),
            "startTime": self.start_time,
            "endTime": self.end_time,
        }
        if self.location is not None:
            payload["location"] = self.location
        if self.description is not None:
            payload["description"] = self.description
        if self.linked_annotation_ids:
            payload["linkedAnnotationIds"] = list(self.linked_annotation_ids)
        return payload


@dataclass
class AppDataAggregate:
    week_notes: list[WeekNotes] = field(default_factory=list)
    self_care: SelfCareData = field(default_factory=SelfCareData)
    calendar_events: list[CalendarOccurrence] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    launch_plan: dict[str, Any] | None = None
    day_plan: dict[str, Any] | None = None
    ai_check_ins: list[dict[str, Any]] = field(default_factory=list)
    last_modified: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {
        "weekNotes",
        "selfCare",
        "calendarEvents",
        "settings",
        "launchPlan",
        "dayPlan",
        "aiCheckIns",
        "lastModified",
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppDataAggregate":
        data = data if isinstance(data, dict) else {}
        events = [CalendarOccurrence.from_dict(item) for item in _dict_items(data.get("calendarEvents"))]
        settings = data.get("settings")
        return cls(
            week_notes=[WeekNotes.from_dict(item) for item in _dict_items(data.get("weekNotes"))],
            self_care=SelfCareData.from_dict(data.get("selfCare")),
            calendar_events=[event for event in events if event is not None],
            settings=copy.deepcopy(settings) if isinstance(settings, dict) else {},
            launch_plan=_optional_dict(data.get("launchPlan")),
            day_plan=_optional_dict(data.get("dayPlan")),
            ai_check_ins=copy.deepcopy(_dict_items(data.get("aiCheckIns"))),
            last_modified=safe_parse_iso_datetime(data.get("lastModified")),
            extra=_extra(data, cls._KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = copy.deepcopy(self.extra)
        payload.update(
            {
                "weekNotes": [item.to_dict() for item in self.week_notes],
                "selfCare": self.self_care.to_dict(),
                "calendarEvents": [item.to_dict() for item in self.calendar_events],
                "settings": copy.deepcopy(self.settings),
                "aiCheckIns": copy.deepcopy(self.ai_check_ins),
            }
        )
        if self.launch_plan is not None:
            payload["launchPlan"] = copy.deepcopy(self.launch_plan)
        if self.day_plan is not None:
            payload["dayPlan"] = copy.deepcopy(self.day_plan)
        if self.last_modified is not None:
            payload["lastModified"] = serialize_datetime(self.last_modified)
        return payload

    def clone(self) -> "AppDataAggregate":
        return copy.deepcopy(self)

    def week(self, week_of: str) -> WeekNotes | None:
        return next((item for item in self.week_notes if item.week_of == week_of), None)
