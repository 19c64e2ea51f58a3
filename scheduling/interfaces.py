"""Protocols for the collaborators the booking core depends on."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, Sequence

from .models import (
    Appointment,
    AppointmentStatus,
    Clinic,
    Doctor,
    DoctorService,
    Patient,
    Room,
    Service,
    TimeInterval,
)

if TYPE_CHECKING:  # pragma: no cover
    from .events import ChangeEvent

__all__ = ["AppointmentStore", "CatalogReader", "EventSink"]


class AppointmentStore(Protocol):
    """Transactional appointment persistence. Each call is atomic on its own."""

    def load_active_appointments(self, clinic_id: str) -> Sequence[Appointment]:
        """Return the clinic's non-cancelled appointments, ideally ordered by start."""

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        """Return the stored appointment or ``None``."""

    def persist_appointment(self, appointment: Appointment) -> None:
        """Insert or replace the appointment row keyed by its identifier."""

    def update_status(self, appointment_id: str, status: AppointmentStatus) -> None:
        """Persist a status change."""

    def update_interval(self, appointment_id: str, interval: TimeInterval) -> None:
        """Persist a reschedule."""


class CatalogReader(Protocol):
    """Read-only lookups keyed by identifier. Unknown identifiers yield ``None``."""

    def get_clinic(self, clinic_id: str) -> Optional[Clinic]:
        ...

    def get_doctor(self, doctor_id: str) -> Optional[Doctor]:
        ...

    def get_room(self, room_id: str) -> Optional[Room]:
        ...

    def get_service(self, service_id: str) -> Optional[Service]:
        ...

    def get_doctor_service(self, doctor_id: str, service_id: str) -> Optional[DoctorService]:
        ...

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        ...


class EventSink(Protocol):
    """Receives appointment change notifications."""

    def handle(self, event: "ChangeEvent") -> None:
        ...
