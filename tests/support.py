"""Shared fixtures for the booking core tests."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from connector import InMemoryAppointmentStore, InMemoryCatalog
from scheduling import (
    BookingManager,
    BookingRequest,
    ChangeEvent,
    SchedulingSettings,
    TimeInterval,
)

NOW = datetime(2030, 1, 7, 8, 0)


def at(hour: int, minute: int = 0, *, days: int = 0) -> datetime:
    return NOW.replace(hour=hour, minute=minute) + timedelta(days=days)


def span(start: Tuple[int, int], end: Tuple[int, int], *, days: int = 0) -> TimeInterval:
    return TimeInterval(at(*start, days=days), at(*end, days=days))


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[ChangeEvent] = []

    def handle(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


def build_catalog() -> InMemoryCatalog:
    catalog = InMemoryCatalog()
    catalog.register_clinic("clinic-1", "Downtown Clinic", city="Nairobi")
    catalog.register_clinic("clinic-2", "Uptown Clinic", city="Mombasa")
    catalog.register_doctor("doctor-1", "clinic-1", specialty="General Practice")
    catalog.register_doctor("doctor-2", "clinic-1", specialty="Dermatology")
    catalog.register_doctor("doctor-9", "clinic-2")
    catalog.register_room("room-1", "clinic-1", name="Exam 1")
    catalog.register_room("room-2", "clinic-1", name="Exam 2")
    catalog.register_room("room-9", "clinic-2", name="Exam 9")
    catalog.register_service("consult", "CONS", name="Consultation", default_duration_minutes=20)
    catalog.register_service("xray", "XRAY", name="X-Ray", default_duration_minutes=15)
    catalog.register_service("vaccine", "VAC", name="Vaccination")
    catalog.offer_service("doctor-1", "consult", duration_minutes=45)
    catalog.offer_service("doctor-2", "consult")
    catalog.register_patient("patient-1", "clinic-1")
    catalog.register_patient("patient-2", "clinic-1")
    catalog.register_patient("patient-9", "clinic-2")
    return catalog


def build_manager(
    *,
    store=None,
    catalog: Optional[InMemoryCatalog] = None,
    settings: Optional[SchedulingSettings] = None,
    clock: Optional[FixedClock] = None,
) -> Tuple[BookingManager, InMemoryAppointmentStore, InMemoryCatalog, RecordingSink]:
    store = store if store is not None else InMemoryAppointmentStore()
    catalog = catalog or build_catalog()
    manager = BookingManager(
        store,
        catalog,
        settings=settings or SchedulingSettings(lock_timeout_seconds=2.0, backoff_factor=0.0),
        clock=clock or FixedClock(),
        sleep=lambda seconds: None,
    )
    sink = RecordingSink()
    manager.publisher.subscribe(sink)
    return manager, store, catalog, sink


def request(
    start: datetime,
    end: Optional[datetime] = None,
    *,
    doctor_id: Optional[str] = "doctor-1",
    room_id: Optional[str] = None,
    service_id: Optional[str] = None,
    patient_id: str = "patient-1",
    clinic_id: str = "clinic-1",
    **extra,
) -> BookingRequest:
    return BookingRequest(
        clinic_id=clinic_id,
        patient_id=patient_id,
        start=start,
        end=end,
        doctor_id=doctor_id,
        room_id=room_id,
        service_id=service_id,
        **extra,
    )
