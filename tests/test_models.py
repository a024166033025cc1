import unittest
from datetime import date, datetime, timezone

from studiosync.aggregate import AppDataAggregate, CalendarOccurrence, LiveNote
from studiosync.models import AppConfig, SyncConfig, occurrence_window, serialize_datetime


class ModelsTests(unittest.TestCase):
    def test_sync_config_clamps_and_defaults(self) -> None:
        cfg = SyncConfig.from_dict({"data_interval_seconds": 1, "cooldown_seconds": -5, "timezone": ""})
        self.assertEqual(cfg.data_interval_seconds, 30)
        self.assertEqual(cfg.cooldown_seconds, 0.0)
        self.assertEqual(cfg.timezone, "UTC")
        self.assertEqual(cfg.window_days_before, 7)
        self.assertEqual(cfg.window_days_after, 90)

    def test_unknown_timezone_falls_back_to_utc(self) -> None:
        cfg = SyncConfig.from_dict({"timezone": "Mars/Olympus_Mons"})
        self.assertEqual(datetime(2024, 1, 1, tzinfo=cfg.tzinfo).utcoffset().total_seconds(), 0)

    def test_feeds_accept_strings_and_drop_empty(self) -> None:
        cfg = AppConfig.from_dict({"feeds": ["https://a.example.com/x.ics", {"name": "none"}]})
        self.assertEqual(len(cfg.feeds), 1)
        self.assertEqual(cfg.feeds[0].name, "https://a.example.com/x.ics")

    def test_occurrence_window_is_inclusive_range(self) -> None:
        start, end = occurrence_window(date(2024, 1, 10))
        self.assertEqual(start, date(2024, 1, 3))
        self.assertEqual(end, date(2024, 4, 9))

    def test_serialize_datetime_uses_z_suffix(self) -> None:
        value = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        self.assertEqual(serialize_datetime(value), "2024-01-02T03:04:05Z")


class AggregateTests(unittest.TestCase):
    def test_legacy_aliases_are_normalized_once(self) -> None:
        occurrence = CalendarOccurrence.from_dict(
            {"id": "cal-1", "title": "Ballet", "date": "2024-01-02", "startTime": "17:00", "linkedDanceIds": ["d1"]}
        )
        self.assertEqual(occurrence.linked_annotation_ids, ["d1"])
        self.assertNotIn("linkedDanceIds", occurrence.to_dict())
        self.assertEqual(occurrence.to_dict()["linkedAnnotationIds"], ["d1"])

        note = LiveNote.from_dict({"id": "n1", "timestamp": "2024-01-02T10:00:00Z", "category": "covered"})
        self.assertEqual(note.category, "worked-on")

    def test_unknown_keys_survive_round_trip(self) -> None:
        raw = {
            "weekNotes": [
                {
                    "id": "w1",
                    "weekOf": "2024-01-01",
                    "classNotes": {"c1": {"classId": "c1", "plan": "Barre", "liveNotes": [], "custom": 1}},
                }
            ],
            "students": [{"id": "s1"}],
            "selfCare": {"water": 3, "selfCareModified": "2024-01-01T00:00:00Z"},
            "lastModified": "2024-01-02T00:00:00Z",
        }
        aggregate = AppDataAggregate.from_dict(raw)
        self.assertEqual(aggregate.extra["students"], [{"id": "s1"}])
        output = aggregate.to_dict()
        self.assertEqual(output["students"], [{"id": "s1"}])
        self.assertEqual(output["weekNotes"][0]["classNotes"]["c1"]["custom"], 1)
        self.assertEqual(output["selfCare"]["water"], 3)
        self.assertEqual(output["lastModified"], "2024-01-02T00:00:00Z")

    def test_missing_collections_become_empty(self) -> None:
        aggregate = AppDataAggregate.from_dict({"weekNotes": None, "calendarEvents": "bad"})
        self.assertEqual(aggregate.week_notes, [])
        self.assertEqual(aggregate.calendar_events, [])
        self.assertIsNone(aggregate.last_modified)


if __name__ == "__main__":
    unittest.main()
