"""Read-only schedule projections and change subscriptions."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional

from .calendar import ResourceCalendar
from .errors import UnknownAppointmentError, ValidationError
from .events import ChangeEvent, EventPublisher
from .models import Appointment, ResourceKey, TimeInterval
from .transactions import BookingManager

__all__ = ["ScheduleQueries"]


def day_window(day: date, tzinfo=None) -> TimeInterval:
    start = datetime.combine(day, time.min, tzinfo=tzinfo)
    return TimeInterval(start, start + timedelta(days=1))


class ScheduleQueries:
    """Views computed from the calendar plus the manager's appointment records."""

    def __init__(self, manager: BookingManager) -> None:
        self._manager = manager

    @property
    def _calendar(self) -> ResourceCalendar:
        return self._manager.calendar

    def resource_schedule(self, resource: ResourceKey, window: TimeInterval) -> List[Appointment]:
        """Active appointments on ``resource`` intersecting ``window``, by start."""

        self._manager.load_clinic(resource.clinic_id)
        appointments: List[Appointment] = []
        for entry in self._calendar.entries(resource, window):
            try:
                appointments.append(self._manager.get_appointment(entry.appointment_id))
            except UnknownAppointmentError:
                continue
        return appointments

    def doctor_schedule(self, clinic_id: str, doctor_id: str, day: date, tzinfo=None) -> List[Appointment]:
        return self.resource_schedule(ResourceKey.doctor(clinic_id, doctor_id), day_window(day, tzinfo))

    def room_schedule(self, clinic_id: str, room_id: str, day: date, tzinfo=None) -> List[Appointment]:
        return self.resource_schedule(ResourceKey.room(clinic_id, room_id), day_window(day, tzinfo))

    def clinic_agenda(self, clinic_id: str, day: date, tzinfo=None) -> List[Appointment]:
        """Every non-cancelled appointment of the clinic on ``day``, including ones without resources."""

        self._manager.load_clinic(clinic_id)
        window = day_window(day, tzinfo)
        return [
            appointment
            for appointment in self._manager.cached_appointments(clinic_id)
            if appointment.is_active and appointment.interval.overlaps(window)
        ]

    def available_slots(
        self,
        resource: ResourceKey,
        window: TimeInterval,
        duration: timedelta,
        *,
        step: Optional[timedelta] = None,
    ) -> List[TimeInterval]:
        """Free slots of ``duration`` inside ``window``, aligned to ``step`` from its start."""

        if duration <= timedelta(0):
            raise ValidationError("duration must be positive")
        step = step or duration
        if step <= timedelta(0):
            raise ValidationError("step must be positive")

        self._manager.load_clinic(resource.clinic_id)
        busy = [entry.interval for entry in self._calendar.entries(resource, window)]
        slots: List[TimeInterval] = []
        cursor = window.start
        index = 0
        while cursor + duration <= window.end:
            candidate = TimeInterval(cursor, cursor + duration)
            while index < len(busy) and busy[index].end <= candidate.start:
                index += 1
            if not self._blocked(busy, index, candidate):
                slots.append(candidate)
            cursor += step
        return slots

    @staticmethod
    def _blocked(busy: List[TimeInterval], index: int, candidate: TimeInterval) -> bool:
        for interval in busy[index:]:
            if interval.start >= candidate.end:
                return False
            if interval.overlaps(candidate):
                return True
        return False

    def subscribe(self, sink: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        return self._publisher.subscribe(sink)

    @property
    def _publisher(self) -> EventPublisher:
        return self._manager.publisher
