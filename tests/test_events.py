import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from connector import JsonFileEventSink
from scheduling import Appointment, ChangeEvent, EventPublisher, EventType
from support import RecordingSink, span


def make_event(event_type: EventType = EventType.CREATED, **details) -> ChangeEvent:
    appointment = Appointment("appt-1", "clinic-1", "patient-1", span((10, 0), (10, 30)), doctor_id="doctor-1")
    return ChangeEvent.for_appointment(
        event_type,
        appointment,
        actor_id="staff-1",
        timestamp=datetime(2030, 1, 7, 7, 0, tzinfo=timezone.utc),
        **details,
    )


class FlakySink:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.received = []

    def handle(self, event: ChangeEvent) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("sink unavailable")
        self.received.append(event)


class EventPublisherTests(unittest.TestCase):
    def test_publish_reaches_objects_and_callables(self) -> None:
        publisher = EventPublisher()
        recorder = RecordingSink()
        seen = []
        publisher.subscribe(recorder)
        publisher.subscribe(seen.append)

        event = make_event()
        publisher.publish(event)

        self.assertEqual(recorder.events, [event])
        self.assertEqual(seen, [event])

    def test_transient_failure_is_retried(self) -> None:
        publisher = EventPublisher(delivery_attempts=3)
        sink = FlakySink(failures=2)
        publisher.subscribe(sink)

        publisher.publish(make_event())

        self.assertEqual(sink.calls, 3)
        self.assertEqual(len(sink.received), 1)
        self.assertEqual(publisher.dead_letters, [])

    def test_exhausted_delivery_becomes_dead_letter(self) -> None:
        publisher = EventPublisher(delivery_attempts=2)
        sink = FlakySink(failures=3)
        healthy = RecordingSink()
        publisher.subscribe(sink)
        publisher.subscribe(healthy)

        event = make_event()
        publisher.publish(event)

        self.assertEqual(sink.calls, 2)
        self.assertEqual(publisher.dead_letters, [event])
        self.assertEqual(healthy.events, [event])

        self.assertEqual(publisher.redeliver(), 0)
        self.assertEqual(sink.received, [event])
        self.assertEqual(healthy.events, [event])

    def test_unsubscribe(self) -> None:
        publisher = EventPublisher()
        recorder = RecordingSink()
        unsubscribe = publisher.subscribe(recorder)

        unsubscribe()
        unsubscribe()
        publisher.publish(make_event())

        self.assertEqual(recorder.events, [])

    def test_dead_letters_keep_only_the_newest(self) -> None:
        publisher = EventPublisher(delivery_attempts=1, dead_letter_limit=2)
        sink = FlakySink(failures=10)
        publisher.subscribe(sink)
        events = [make_event() for _ in range(3)]

        with self.assertLogs("scheduling.events", level="ERROR") as logs:
            for event in events:
                publisher.publish(event)

        self.assertEqual([e.event_id for e in publisher.dead_letters], [e.event_id for e in events[1:]])
        self.assertIn(events[0].event_id, logs.output[-1])
        self.assertEqual(publisher.redeliver(), 2)
        self.assertEqual(len(publisher.dead_letters), 2)

    def test_invalid_attempts(self) -> None:
        with self.assertRaises(ValueError):
            EventPublisher(delivery_attempts=0)
        with self.assertRaises(ValueError):
            EventPublisher(dead_letter_limit=0)

    def test_event_serialization(self) -> None:
        event = make_event(EventType.RESCHEDULED, start="2030-01-07T10:15:00")

        payload = event.to_dict()

        self.assertEqual(payload["event_type"], "rescheduled")
        self.assertEqual(payload["appointment_id"], "appt-1")
        self.assertEqual(payload["details"], {"start": "2030-01-07T10:15:00"})
        self.assertEqual(payload["timestamp"], "2030-01-07T07:00:00+00:00")
        self.assertEqual(len(payload["event_id"]), 32)


class JsonFileEventSinkTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.log_path = Path(self._tmp.name) / "audit" / "appointments.json"
        self.sink = JsonFileEventSink(self.log_path)

    def test_writes_audit_shaped_entries(self) -> None:
        self.sink.handle(make_event(EventType.CANCELLED, previous_status="scheduled"))

        entries = json.loads(self.log_path.read_text(encoding="utf-8"))
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertEqual(entry["action"], "appointment_cancelled")
        self.assertEqual(entry["target_table"], "appointments")
        self.assertEqual(entry["target_id"], "appt-1")
        self.assertEqual(entry["user_id"], "staff-1")
        self.assertEqual(entry["details"], {"previous_status": "scheduled"})
        self.assertEqual(entry["created_at"], "2030-01-07T07:00:00Z")

    def test_redelivered_event_is_recorded_once(self) -> None:
        event = make_event()

        self.sink.handle(event)
        self.sink.handle(event)
        self.sink.handle(make_event())

        self.assertEqual(len(self.sink.entries()), 2)

    def test_corrupted_log_is_reported(self) -> None:
        self.log_path.write_text("{not json", encoding="utf-8")

        with self.assertRaises(ValueError):
            self.sink.handle(make_event())


if __name__ == "__main__":
    unittest.main()
