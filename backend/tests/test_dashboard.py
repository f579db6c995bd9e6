import unittest
from datetime import date, datetime
from types import SimpleNamespace

from curesync.core.dashboard import adherence_rate, build_timeline, slot_times_for_day, summarize
from curesync.core.recurrence import DailyRule, IntervalRule, WeeklyRule, parse_rule

from fakes import DAILY_TWICE, WEEKLY_MWF

MONDAY = date(2026, 10, 12)
SUNDAY = date(2026, 10, 18)
TUESDAY_NOON = datetime(2026, 10, 13, 12, 0)

WEEKLY_TUE_THU = '{"type":"weekly","times":["09:00"],"daysOfWeek":[2,4]}'


def med(id, name, frequency, dosage=None):
    return SimpleNamespace(id=id, name=name, dosage=dosage, color="#4f46e5", frequency=frequency)


def dose(med_id, status, hour):
    return SimpleNamespace(med_id=med_id, status=status, taken_at=TUESDAY_NOON.replace(hour=hour))


class TestSlotTimes(unittest.TestCase):
    def test_daily(self):
        self.assertEqual(slot_times_for_day(DailyRule(times=("08:00", "20:00")), MONDAY), ["08:00", "20:00"])

    def test_weekly_only_on_its_days(self):
        rule = WeeklyRule(times=("09:00",), days_of_week=(1, 3))  # Mon, Wed
        self.assertEqual(slot_times_for_day(rule, MONDAY), ["09:00"])
        self.assertEqual(slot_times_for_day(rule, date(2026, 10, 13)), [])

    def test_weekly_days_count_from_sunday(self):
        rule = parse_rule(WEEKLY_MWF)
        self.assertEqual(slot_times_for_day(rule, SUNDAY), [])
        self.assertEqual(slot_times_for_day(rule, MONDAY), ["09:00"])
        self.assertEqual(slot_times_for_day(rule, date(2026, 10, 16)), ["09:00"])  # Friday
        self.assertEqual(slot_times_for_day(rule, date(2026, 10, 17)), [])  # Saturday

    def test_interval_fills_the_rest_of_the_day(self):
        rule = IntervalRule(times=("06:00",), every_hours=8)
        self.assertEqual(slot_times_for_day(rule, MONDAY), ["06:00", "14:00", "22:00"])


class TestTimeline(unittest.TestCase):
    def test_sorted_with_statuses(self):
        meds = [
            med(1, "Metformin", DAILY_TWICE, "500mg"),
            med(2, "Vitamin D", WEEKLY_TUE_THU),
            med(3, "Legacy", None),
        ]
        records = [dose(1, "taken", 8), dose(3, "skipped", 9)]

        timeline = build_timeline(meds, records, now=TUESDAY_NOON)

        self.assertEqual(
            [(s.time, s.name) for s in timeline],
            [
                ("08:00", "Metformin"),
                ("08:00", "Legacy"),
                ("09:00", "Vitamin D"),
                ("14:00", "Legacy"),
                ("20:00", "Metformin"),
                ("20:00", "Legacy"),
            ],
        )
        self.assertEqual(timeline[0].status, "taken")
        self.assertEqual(timeline[1].status, "skipped")
        self.assertIsNone(timeline[2].status)
        self.assertTrue(timeline[2].is_past)
        self.assertFalse(timeline[3].is_past)
        self.assertEqual(timeline[0].id, "1-08:00")

    def test_summary(self):
        timeline = build_timeline(
            [med(1, "Metformin", DAILY_TWICE)],
            [dose(1, "taken", 8)],
            now=TUESDAY_NOON,
        )
        summary = summarize(timeline)

        self.assertEqual((summary.total, summary.taken, summary.skipped), (2, 1, 0))
        self.assertEqual(summary.progress, 0.5)
        self.assertEqual(summary.next.time, "20:00")

    def test_empty_summary(self):
        summary = summarize([])
        self.assertEqual(summary.progress, 0.0)
        self.assertIsNone(summary.next)

    def test_adherence_rate(self):
        self.assertEqual(adherence_rate(0, 0), 0)
        self.assertEqual(adherence_rate(2, 1), 67)
        self.assertEqual(adherence_rate(5, 0), 100)


if __name__ == "__main__":
    unittest.main()
