import random
import unittest
from datetime import timedelta, timezone

from scheduling import (
    Appointment,
    AppointmentStatus,
    ResourceCalendar,
    ResourceKey,
    TimeInterval,
    ValidationError,
)
from support import NOW, at, span

DOCTOR = ResourceKey.doctor("clinic-1", "doctor-1")
ROOM = ResourceKey.room("clinic-1", "room-1")


class ResourceCalendarTests(unittest.TestCase):
    def setUp(self) -> None:
        self.calendar = ResourceCalendar()

    def test_half_open_overlap(self) -> None:
        self.calendar.insert(DOCTOR, span((10, 0), (10, 30)), "a1")

        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((10, 15), (10, 45))), {"a1"})
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((10, 30), (11, 0))), frozenset())
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((9, 30), (10, 0))), frozenset())
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((9, 0), (12, 0))), {"a1"})

    def test_resources_are_independent(self) -> None:
        self.calendar.insert(DOCTOR, span((10, 0), (10, 30)), "a1")

        self.assertEqual(self.calendar.query_overlap(ROOM, span((10, 0), (10, 30))), frozenset())
        other_clinic = ResourceKey.doctor("clinic-2", "doctor-1")
        self.assertEqual(self.calendar.query_overlap(other_clinic, span((10, 0), (10, 30))), frozenset())

    def test_exclude_ignores_own_interval(self) -> None:
        self.calendar.insert(DOCTOR, span((10, 0), (10, 30)), "a1")

        result = self.calendar.query_overlap(DOCTOR, span((10, 15), (10, 45)), exclude="a1")
        self.assertEqual(result, frozenset())

    def test_long_interval_found_from_later_query(self) -> None:
        self.calendar.insert(DOCTOR, span((8, 0), (12, 0)), "long")
        self.calendar.insert(DOCTOR, span((12, 0), (12, 15)), "short")

        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((11, 50), (11, 55))), {"long"})
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((11, 55), (12, 5))), {"long", "short"})

    def test_remove(self) -> None:
        self.calendar.insert(DOCTOR, span((10, 0), (10, 30)), "a1")

        self.assertTrue(self.calendar.remove(DOCTOR, "a1"))
        self.assertFalse(self.calendar.remove(DOCTOR, "a1"))
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((10, 0), (10, 30))), frozenset())

    def test_entries_are_ordered_by_start(self) -> None:
        self.calendar.insert(DOCTOR, span((14, 0), (14, 30)), "late")
        self.calendar.insert(DOCTOR, span((9, 0), (9, 30)), "early")
        self.calendar.insert(DOCTOR, span((11, 0), (11, 30)), "middle")

        entries = self.calendar.entries(DOCTOR, span((0, 0), (23, 59)))
        self.assertEqual([entry.appointment_id for entry in entries], ["early", "middle", "late"])

    def test_rebuild_skips_cancelled_and_foreign_rows(self) -> None:
        self.calendar.insert(DOCTOR, span((15, 0), (15, 30)), "stale")
        rows = [
            Appointment("a1", "clinic-1", "patient-1", span((10, 0), (10, 30)), doctor_id="doctor-1", room_id="room-1"),
            Appointment(
                "a2",
                "clinic-1",
                "patient-1",
                span((11, 0), (11, 30)),
                status=AppointmentStatus.CANCELLED,
                doctor_id="doctor-1",
            ),
            Appointment("a3", "clinic-2", "patient-9", span((10, 0), (10, 30)), doctor_id="doctor-9"),
            Appointment("a4", "clinic-1", "patient-2", span((12, 0), (12, 30))),
        ]

        count = self.calendar.rebuild("clinic-1", rows)

        self.assertEqual(count, 2)
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((10, 0), (10, 30))), {"a1"})
        self.assertEqual(self.calendar.query_overlap(ROOM, span((10, 0), (10, 30))), {"a1"})
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((11, 0), (11, 30))), frozenset())
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((15, 0), (15, 30))), frozenset())

    def test_retired_resource_refuses_insert_but_allows_restore(self) -> None:
        self.calendar.retire(DOCTOR)

        with self.assertRaises(ValidationError):
            self.calendar.insert(DOCTOR, span((10, 0), (10, 30)), "a1")

        self.calendar.restore(DOCTOR, span((10, 0), (10, 30)), "a1")
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((10, 0), (10, 30))), {"a1"})
        self.assertTrue(self.calendar.is_retired(DOCTOR))
        self.assertFalse(self.calendar.is_retired(ROOM))

    def test_retired_clinic_covers_all_resources(self) -> None:
        self.calendar.retire_clinic("clinic-1")

        self.assertTrue(self.calendar.is_retired(ROOM))
        self.assertTrue(self.calendar.is_clinic_retired("clinic-1"))
        with self.assertRaises(ValidationError):
            self.calendar.insert(ROOM, span((10, 0), (10, 30)), "a1")

    def test_scan_stays_narrow_after_long_entry_is_removed(self) -> None:
        self.calendar.insert(DOCTOR, span((8, 0), (16, 0)), "all-day")
        self.calendar.remove(DOCTOR, "all-day")
        for index in range(20):
            start = at(8) + timedelta(minutes=15 * index)
            self.calendar.insert(DOCTOR, TimeInterval.of(start, timedelta(minutes=10)), f"a{index}")

        gap = TimeInterval(at(10, 40), at(10, 45))
        lo, hi = self.calendar._lanes[DOCTOR].bounds(gap)

        self.assertLessEqual(hi - lo, 1)
        self.assertEqual(self.calendar.query_overlap(DOCTOR, gap), frozenset())

    def test_overlapping_lane_recomputes_longest_on_remove(self) -> None:
        self.calendar.insert(DOCTOR, span((8, 0), (16, 0)), "all-day")
        self.calendar.insert(DOCTOR, span((9, 0), (9, 20)), "short")
        self.calendar.insert(DOCTOR, span((9, 10), (9, 30)), "overlapping")
        self.assertFalse(self.calendar._lanes[DOCTOR].disjoint)

        self.calendar.remove(DOCTOR, "all-day")

        lane = self.calendar._lanes[DOCTOR]
        self.assertEqual(lane.longest, timedelta(minutes=20))
        self.assertEqual(self.calendar.query_overlap(DOCTOR, span((9, 25), (9, 40))), {"overlapping"})

    def test_aware_and_naive_intervals_do_not_mix(self) -> None:
        self.calendar.insert(DOCTOR, span((10, 0), (10, 30)), "a1")
        aware = TimeInterval(at(10).replace(tzinfo=timezone.utc), at(11).replace(tzinfo=timezone.utc))

        self.assertFalse(self.calendar.accepts(DOCTOR, aware))
        self.assertTrue(self.calendar.accepts(ROOM, aware))
        with self.assertRaises(ValidationError):
            self.calendar.query_overlap(DOCTOR, aware)
        with self.assertRaises(ValidationError):
            self.calendar.insert(DOCTOR, aware, "a2")

    def test_rebuild_rejects_mixed_timezone_rows(self) -> None:
        aware = TimeInterval(at(12).replace(tzinfo=timezone.utc), at(13).replace(tzinfo=timezone.utc))
        rows = [
            Appointment("a1", "clinic-1", "patient-1", span((10, 0), (10, 30)), doctor_id="doctor-1"),
            Appointment("a2", "clinic-1", "patient-2", aware, doctor_id="doctor-1"),
        ]

        with self.assertRaises(ValidationError):
            self.calendar.rebuild("clinic-1", rows)

    def test_overlap_matches_brute_force(self) -> None:
        rng = random.Random(20300107)
        stored = {}
        for index in range(300):
            start = NOW + timedelta(minutes=5 * rng.randrange(0, 400))
            interval = TimeInterval.of(start, timedelta(minutes=5 * rng.randrange(1, 40)))
            stored[f"a{index}"] = interval
            self.calendar.insert(DOCTOR, interval, f"a{index}")
        for index in range(0, 300, 3):
            self.calendar.remove(DOCTOR, f"a{index}")
            del stored[f"a{index}"]

        for _ in range(300):
            start = NOW + timedelta(minutes=rng.randrange(0, 2000))
            window = TimeInterval.of(start, timedelta(minutes=rng.randrange(1, 180)))
            expected = {key for key, interval in stored.items() if interval.overlaps(window)}
            self.assertEqual(self.calendar.query_overlap(DOCTOR, window), expected)


class TimeIntervalTests(unittest.TestCase):
    def test_start_must_precede_end(self) -> None:
        with self.assertRaises(ValidationError):
            TimeInterval(at(10), at(10))
        with self.assertRaises(ValidationError):
            TimeInterval(at(11), at(10))

    def test_mixed_timezones_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            TimeInterval(at(10).replace(tzinfo=timezone.utc), at(11))

    def test_overlap_is_half_open(self) -> None:
        self.assertFalse(span((10, 0), (10, 30)).overlaps(span((10, 30), (11, 0))))
        self.assertTrue(span((10, 0), (10, 31)).overlaps(span((10, 30), (11, 0))))


if __name__ == "__main__":
    unittest.main()
