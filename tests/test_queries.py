import unittest
from datetime import timedelta

from scheduling import ResourceKey, ScheduleQueries, TimeInterval, ValidationError
from support import NOW, at, build_manager, request, span

DOCTOR = ResourceKey.doctor("clinic-1", "doctor-1")


class ScheduleQueriesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.manager, self.store, _, self.sink = build_manager()
        self.queries = ScheduleQueries(self.manager)

    def test_doctor_schedule_is_ordered_and_excludes_cancelled(self) -> None:
        late = self.manager.book(request(at(15), at(15, 30)))
        early = self.manager.book(request(at(9), at(9, 30), room_id="room-1"))
        dropped = self.manager.book(request(at(12), at(12, 30)))
        self.manager.cancel(dropped.appointment_id)
        self.manager.book(request(at(9, days=1), at(9, 30, days=1)))
        self.manager.book(request(at(9), at(9, 30), doctor_id="doctor-2"))

        schedule = self.queries.doctor_schedule("clinic-1", "doctor-1", NOW.date())

        self.assertEqual([a.appointment_id for a in schedule], [early.appointment_id, late.appointment_id])

    def test_room_schedule(self) -> None:
        booked = self.manager.book(request(at(9), at(9, 30), room_id="room-1"))

        self.assertEqual(self.queries.room_schedule("clinic-1", "room-1", NOW.date()), [booked])
        self.assertEqual(self.queries.room_schedule("clinic-1", "room-2", NOW.date()), [])

    def test_schedule_reads_existing_storage(self) -> None:
        from connector import InMemoryAppointmentStore
        from scheduling import Appointment

        store = InMemoryAppointmentStore()
        stored = Appointment("legacy-1", "clinic-1", "patient-1", span((13, 0), (13, 45)), doctor_id="doctor-1")
        store.persist_appointment(stored)
        manager, _, _, _ = build_manager(store=store)

        schedule = ScheduleQueries(manager).doctor_schedule("clinic-1", "doctor-1", NOW.date())

        self.assertEqual(schedule, [stored])

    def test_clinic_agenda_includes_resourceless_appointments(self) -> None:
        phone = self.manager.book(request(at(11), at(11, 15), doctor_id=None))
        visit = self.manager.book(request(at(10), at(10, 30), room_id="room-1"))
        self.manager.book(request(at(10, days=2), at(10, 30, days=2)))

        agenda = self.queries.clinic_agenda("clinic-1", NOW.date())

        self.assertEqual([a.appointment_id for a in agenda], [visit.appointment_id, phone.appointment_id])

    def test_available_slots_skip_booked_time(self) -> None:
        self.manager.book(request(at(9, 30), at(10, 15)))
        window = span((9, 0), (11, 0))

        slots = self.queries.available_slots(DOCTOR, window, timedelta(minutes=30))

        self.assertEqual(slots, [span((9, 0), (9, 30)), span((10, 30), (11, 0))])

    def test_available_slots_with_finer_step(self) -> None:
        self.manager.book(request(at(9, 30), at(10, 15)))
        window = span((9, 0), (11, 0))

        slots = self.queries.available_slots(DOCTOR, window, timedelta(minutes=30), step=timedelta(minutes=15))

        self.assertEqual(
            slots,
            [span((9, 0), (9, 30)), span((10, 15), (10, 45)), span((10, 30), (11, 0))],
        )

    def test_available_slots_validates_arguments(self) -> None:
        window = TimeInterval(at(9), at(10))
        with self.assertRaises(ValidationError):
            self.queries.available_slots(DOCTOR, window, timedelta(0))
        with self.assertRaises(ValidationError):
            self.queries.available_slots(DOCTOR, window, timedelta(minutes=15), step=timedelta(minutes=-5))

    def test_subscribe_receives_changes(self) -> None:
        received = []
        unsubscribe = self.queries.subscribe(received.append)

        booked = self.manager.book(request(at(9), at(9, 30)))
        unsubscribe()
        self.manager.cancel(booked.appointment_id)

        self.assertEqual([event.event_type.value for event in received], ["created"])
        self.assertEqual(self.sink.types(), ["created", "cancelled"])


if __name__ == "__main__":
    unittest.main()
