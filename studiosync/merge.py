from __future__ import annotations

import copy
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Iterable

from studiosync.aggregate import (
    AppDataAggregate,
    CalendarOccurrence,
    ClassWeekNotes,
    LiveNote,
    MediaItem,
    SelfCareData,
    WeekNotes,
)
from studiosync.models import safe_parse_iso_datetime

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class MergeOutcome:
    aggregate: AppDataAggregate
    base: str
    notes_from_remote: int
    notes_from_local: int


def _stamp(value: datetime | None) -> datetime:
    return value if value is not None else _EPOCH


def _local_wins(local: datetime | None, remote: datetime | None) -> bool:
    return _stamp(local) >= _stamp(remote)


def merge_live_notes(local: list[LiveNote], remote: list[LiveNote]) -> list[LiveNote]:
    merged: list[LiveNote] = [copy.deepcopy(note) for note in remote]
    positions = {note.id: index for index, note in enumerate(merged)}
    for note in local:
        index = positions.get(note.id)
        if index is None:
            positions[note.id] = len(merged)
            merged.append(copy.deepcopy(note))
        elif _local_wins(note.timestamp_dt, merged[index].timestamp_dt):
            merged[index] = copy.deepcopy(note)
    return merged


def _union_media(local: list[MediaItem], remote: list[MediaItem]) -> list[MediaItem]:
    merged = [copy.deepcopy(item) for item in local]
    seen = {item.id for item in merged}
    for item in remote:
        if item.id not in seen:
            seen.add(item.id)
            merged.append(copy.deepcopy(item))
    return merged


def _prefer_local(local: Any, remote: Any) -> Any:
    return copy.deepcopy(local if local else remote)


def merge_class_notes(local: ClassWeekNotes | None, remote: ClassWeekNotes | None) -> ClassWeekNotes:
    if local is None or remote is None:
        return copy.deepcopy(local if local is not None else remote)
    return ClassWeekNotes(
        class_id=local.class_id or remote.class_id,
        plan=local.plan if len(local.plan) >= len(remote.plan) else remote.plan,
        live_notes=merge_live_notes(local.live_notes, remote.live_notes),
        organized_notes=_prefer_local(local.organized_notes, remote.organized_notes),
        is_organized=local.is_organized or remote.is_organized,
        media=_union_media(local.media, remote.media),
        attendance=_prefer_local(local.attendance, remote.attendance),
        week_idea=_prefer_local(local.week_idea, remote.week_idea),
        next_week_goal=_prefer_local(local.next_week_goal, remote.next_week_goal),
        carry_forward_dismissed=local.carry_forward_dismissed or remote.carry_forward_dismissed,
        extra={**copy.deepcopy(remote.extra), **copy.deepcopy(local.extra)},
    )


def _merge_week(local: WeekNotes, remote: WeekNotes) -> WeekNotes:
    class_ids = list(remote.class_notes) + [key for key in local.class_notes if key not in remote.class_notes]
    return WeekNotes(
        week_of=local.week_of,
        id=local.id or remote.id,
        class_notes={
            class_id: merge_class_notes(local.class_notes.get(class_id), remote.class_notes.get(class_id))
            for class_id in class_ids
        },
        reflection=_prefer_local(local.reflection, remote.reflection),
        extra={**copy.deepcopy(remote.extra), **copy.deepcopy(local.extra)},
    )


def merge_week_notes(local: list[WeekNotes], remote: list[WeekNotes]) -> list[WeekNotes]:
    """Union both sides by ``week_of``; remote order first, local-only weeks appended."""
    local_by_week = {week.week_of: week for week in local}
    merged: list[WeekNotes] = []
    seen: set[str] = set()
    for week in remote:
        if week.week_of in seen:
            continue
        seen.add(week.week_of)
        local_week = local_by_week.get(week.week_of)
        merged.append(_merge_week(local_week, week) if local_week else copy.deepcopy(week))
    for week in local:
        if week.week_of not in seen:
            seen.add(week.week_of)
            merged.append(copy.deepcopy(week))
    return merged


def merge_self_care(local: SelfCareData, remote: SelfCareData) -> SelfCareData:
    local_side_wins = _local_wins(local.modified, remote.modified)
    values: dict[str, Any] = {}
    stamps: dict[str, datetime] = {}
    keys = list(local.values) + [key for key in remote.values if key not in local.values]
    for key in keys:
        in_local = key in local.values
        in_remote = key in remote.values
        local_stamp = local.field_modified.get(key)
        remote_stamp = remote.field_modified.get(key)
        if in_local and in_remote:
            if local_stamp is not None and remote_stamp is not None:
                use_local = local_stamp >= remote_stamp
            else:
                use_local = local_side_wins
        else:
            use_local = in_local
        values[key] = copy.deepcopy(local.values[key] if use_local else remote.values[key])
        chosen = local_stamp if use_local else remote_stamp
        if chosen is not None:
            stamps[key] = chosen
    modified = max((item for item in (local.modified, remote.modified) if item is not None), default=None)
    return SelfCareData(values=values, modified=modified, field_modified=stamps)


def merge_lww_document(local: dict[str, Any] | None, remote: dict[str, Any] | None) -> dict[str, Any] | None:
    if local is None or remote is None:
        return copy.deepcopy(local if local is not None else remote)
    local_stamp = safe_parse_iso_datetime(local.get("lastModified"))
    remote_stamp = safe_parse_iso_datetime(remote.get("lastModified"))
    return copy.deepcopy(local if _local_wins(local_stamp, remote_stamp) else remote)


def merge_by_id(local: list[dict[str, Any]], remote: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged = [copy.deepcopy(item) for item in local]
    local_ids = {item.get("id") for item in local if item.get("id") is not None}
    for item in remote:
        item_id = item.get("id")
        if item_id is not None and item_id in local_ids:
            continue
        if item_id is None and item in local:
            continue
        merged.append(copy.deepcopy(item))
    return merged


def integrate_occurrences(
    existing: Iterable[CalendarOccurrence],
    incoming: Iterable[CalendarOccurrence],
) -> list[CalendarOccurrence]:
    """Replace the occurrence set, carrying annotation links forward by id."""
    links = {item.id: list(item.linked_annotation_ids) for item in existing if item.linked_annotation_ids}
    return [
        replace(item, linked_annotation_ids=links.get(item.id, list(item.linked_annotation_ids)))
        for item in incoming
    ]


def _carry_missing_links(
    base: list[CalendarOccurrence],
    other: list[CalendarOccurrence],
) -> list[CalendarOccurrence]:
    links = {item.id: item.linked_annotation_ids for item in other if item.linked_annotation_ids}
    return [
        item if item.linked_annotation_ids or item.id not in links
        else replace(item, linked_annotation_ids=list(links[item.id]))
        for item in base
    ]


def _note_ids(weeks: list[WeekNotes]) -> set[tuple[str, str, str]]:
    return {
        (week.week_of, class_id, note.id)
        for week in weeks
        for class_id, notes in week.class_notes.items()
        for note in notes.live_notes
    }


def merge_aggregates(local: AppDataAggregate, remote: AppDataAggregate) -> MergeOutcome:
    """Merge two copies of the aggregate without dropping user-entered data.

    The side with the newer ``lastModified`` supplies every collection that is
    not merged field by field; ties keep the local copy as the base.
    """
    local_is_base = _local_wins(local.last_modified, remote.last_modified)
    base, other = (local, remote) if local_is_base else (remote, local)

    merged = base.clone()
    merged.week_notes = merge_week_notes(local.week_notes, remote.week_notes)
    merged.self_care = merge_self_care(local.self_care, remote.self_care)
    merged.launch_plan = merge_lww_document(local.launch_plan, remote.launch_plan)
    merged.day_plan = merge_lww_document(local.day_plan, remote.day_plan)
    merged.ai_check_ins = merge_by_id(local.ai_check_ins, remote.ai_check_ins)
    merged.calendar_events = _carry_missing_links(merged.calendar_events, other.calendar_events)
    for key, value in other.extra.items():
        merged.extra.setdefault(key, copy.deepcopy(value))
    merged.last_modified = max(
        (item for item in (local.last_modified, remote.last_modified) if item is not None),
        default=None,
    )

    merged_ids = _note_ids(merged.week_notes)
    return MergeOutcome(
        aggregate=merged,
        base="local" if local_is_base else "remote",
        notes_from_remote=len(merged_ids - _note_ids(local.week_notes)),
        notes_from_local=len(merged_ids - _note_ids(remote.week_notes)),
    )
