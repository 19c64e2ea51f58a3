"""Appointment scheduling and conflict-resolution core for multi-clinic booking."""

from .calendar import CalendarEntry, ResourceCalendar
from .config import SchedulingSettings
from .conflicts import ConflictChecker
from .errors import (
    ConflictError,
    InfrastructureError,
    InvalidTransition,
    LockTimeoutError,
    SchedulingError,
    UnknownAppointmentError,
    ValidationError,
)
from .events import ChangeEvent, EventPublisher, EventType
from .locks import ResourceLockArena
from .models import (
    Appointment,
    AppointmentStatus,
    BookingRequest,
    Clinic,
    ConflictReason,
    Doctor,
    DoctorService,
    Patient,
    Rejection,
    ResourceKey,
    ResourceKind,
    Room,
    Service,
    TimeInterval,
)
from .queries import ScheduleQueries
from .transactions import BookingManager

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "BookingManager",
    "BookingRequest",
    "CalendarEntry",
    "ChangeEvent",
    "Clinic",
    "ConflictChecker",
    "ConflictError",
    "ConflictReason",
    "Doctor",
    "DoctorService",
    "EventPublisher",
    "EventType",
    "InfrastructureError",
    "InvalidTransition",
    "LockTimeoutError",
    "Patient",
    "Rejection",
    "ResourceCalendar",
    "ResourceKey",
    "ResourceKind",
    "ResourceLockArena",
    "Room",
    "ScheduleQueries",
    "SchedulingError",
    "SchedulingSettings",
    "Service",
    "TimeInterval",
    "UnknownAppointmentError",
    "ValidationError",
]
