import unittest
from datetime import date, timedelta, timezone

from studiosync.ics_parser import RawComponent, ResolvedDateTime, parse_ics
from studiosync.recurrence import MAX_ITERATIONS, expand_recurrence, parse_rule


def _component(rrule: str | None, start: date, start_time: str = "17:00", exdates: set[date] | None = None) -> RawComponent:
    return RawComponent(
        summary="Tap",
        start=ResolvedDateTime(start, start_time, "floating"),
        end=ResolvedDateTime(start, "18:00", "floating"),
        rrule=rrule,
        exdates=exdates or set(),
        location="Studio B",
    )


def _dates(component: RawComponent, window_start: date, window_end: date) -> list[date]:
    return [item.date for item in expand_recurrence(component, window_start, window_end, timezone.utc)]


class ExpandRecurrenceTests(unittest.TestCase):
    def test_weekly_tuesday_scenario(self) -> None:
        feed = (
            "BEGIN:VCALENDAR\n"
            "BEGIN:VEVENT\n"
            "SUMMARY:Tap\n"
            "DTSTART:20240102T170000\n"
            "RRULE:FREQ=WEEKLY;BYDAY=TU\n"
            "END:VEVENT\n"
            "END:VCALENDAR\n"
        )
        component = parse_ics(feed, timezone.utc)[0]
        self.assertEqual(
            _dates(component, date(2024, 1, 1), date(2024, 1, 31)),
            [date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16), date(2024, 1, 23), date(2024, 1, 30)],
        )

    def test_weekly_tuesday_scenario_with_exdate(self) -> None:
        component = _component("FREQ=WEEKLY;BYDAY=TU", date(2024, 1, 2), exdates={date(2024, 1, 16)})
        self.assertEqual(
            _dates(component, date(2024, 1, 1), date(2024, 1, 31)),
            [date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 23), date(2024, 1, 30)],
        )

    def test_biweekly_count_matches_window_length(self) -> None:
        start = date(2024, 3, 4)
        for days in (0, 13, 14, 27, 28, 60, 90):
            with self.subTest(days=days):
                dates = _dates(_component("FREQ=WEEKLY;INTERVAL=2", start), start, start + timedelta(days=days))
                self.assertEqual(len(dates), days // 14 + 1)

    def test_biweekly_count_excludes_exdate(self) -> None:
        start = date(2024, 3, 4)
        component = _component("FREQ=WEEKLY;INTERVAL=2", start, exdates={date(2024, 3, 18)})
        self.assertEqual(len(_dates(component, start, start + timedelta(days=42))), 42 // 14 + 1 - 1)

    def test_count_includes_occurrences_before_window(self) -> None:
        component = _component("FREQ=DAILY;COUNT=5", date(2024, 1, 1))
        self.assertEqual(
            _dates(component, date(2024, 1, 4), date(2024, 1, 31)),
            [date(2024, 1, 4), date(2024, 1, 5)],
        )

    def test_until_date_and_utc_timestamp(self) -> None:
        by_date = _component("FREQ=DAILY;UNTIL=20240103", date(2024, 1, 1))
        self.assertEqual(len(_dates(by_date, date(2024, 1, 1), date(2024, 1, 31))), 3)
        by_instant = _component("FREQ=DAILY;UNTIL=20240103T120000Z", date(2024, 1, 1), start_time="17:00")
        self.assertEqual(_dates(by_instant, date(2024, 1, 1), date(2024, 1, 31)), [date(2024, 1, 1), date(2024, 1, 2)])

    def test_monthly_on_31st_skips_short_months(self) -> None:
        component = _component("FREQ=MONTHLY", date(2024, 1, 31))
        self.assertEqual(
            _dates(component, date(2024, 1, 1), date(2024, 6, 30)),
            [date(2024, 1, 31), date(2024, 3, 31), date(2024, 5, 31)],
        )

    def test_monthly_last_friday_and_first_thursday(self) -> None:
        last_friday = _component("FREQ=MONTHLY;BYDAY=-1FR", date(2024, 1, 26))
        self.assertEqual(
            _dates(last_friday, date(2024, 1, 1), date(2024, 3, 31)),
            [date(2024, 1, 26), date(2024, 2, 23), date(2024, 3, 29)],
        )
        first_thursday = _component("FREQ=MONTHLY;BYDAY=TH;BYSETPOS=1", date(2024, 1, 4))
        self.assertEqual(
            _dates(first_thursday, date(2024, 1, 1), date(2024, 3, 31)),
            [date(2024, 1, 4), date(2024, 2, 1), date(2024, 3, 7)],
        )

    def test_yearly_leap_day_skips_common_years(self) -> None:
        component = _component("FREQ=YEARLY", date(2020, 2, 29))
        self.assertEqual(
            _dates(component, date(2020, 1, 1), date(2028, 12, 31)),
            [date(2020, 2, 29), date(2024, 2, 29), date(2028, 2, 29)],
        )

    def test_long_running_daily_series_reaches_window(self) -> None:
        start = date(2015, 1, 1)
        window_start = start + timedelta(days=MAX_ITERATIONS * 3)
        dates = _dates(_component("FREQ=DAILY", start), window_start, window_start + timedelta(days=2))
        self.assertEqual(len(dates), 3)

    def test_malformed_or_unknown_rules_emit_nothing(self) -> None:
        for rule in ("FREQ=HOURLY", "FREQ=SOMETIMES", "INTERVAL=2", "garbage", "FREQ=WEEKLY;BYDAY=XX"):
            with self.subTest(rule=rule):
                self.assertIsNone(parse_rule(rule))
                self.assertEqual(_dates(_component(rule, date(2024, 1, 2)), date(2024, 1, 1), date(2024, 1, 31)), [])

    def test_single_occurrence_is_filtered_by_window(self) -> None:
        component = _component(None, date(2024, 1, 31))
        self.assertEqual(_dates(component, date(2024, 1, 1), date(2024, 1, 31)), [date(2024, 1, 31)])
        self.assertEqual(_dates(component, date(2024, 2, 1), date(2024, 2, 28)), [])

    def test_skeletons_carry_parent_fields_without_id(self) -> None:
        items = expand_recurrence(_component("FREQ=DAILY;COUNT=2", date(2024, 1, 1)), date(2024, 1, 1), date(2024, 1, 31))
        self.assertEqual([item.id for item in items], ["", ""])
        self.assertEqual({(item.title, item.start_time, item.end_time, item.location) for item in items}, {("Tap", "17:00", "18:00", "Studio B")})


if __name__ == "__main__":
    unittest.main()
