"""Data model shared by the booking core and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .errors import ValidationError

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "BookingRequest",
    "Clinic",
    "ConflictReason",
    "Doctor",
    "DoctorService",
    "Patient",
    "Rejection",
    "ResourceKey",
    "ResourceKind",
    "Room",
    "Service",
    "TimeInterval",
]


class ResourceKind(str, Enum):
    DOCTOR = "doctor"
    ROOM = "room"


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states."""

    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @classmethod
    def parse(cls, value: object) -> "AppointmentStatus":
        """Accept enum members, values (``checked_in``) or labels (``Checked In``)."""

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            cleaned = value.strip().lower().replace(" ", "_").replace("-", "_")
            try:
                return cls(cleaned)
            except ValueError:
                pass
        raise ValidationError(f"Unknown appointment status: {value!r}")


_STATUS_LABELS = {
    AppointmentStatus.SCHEDULED: "Scheduled",
    AppointmentStatus.CHECKED_IN: "Checked In",
    AppointmentStatus.IN_PROGRESS: "In Progress",
    AppointmentStatus.COMPLETED: "Completed",
    AppointmentStatus.CANCELLED: "Cancelled",
}


class ConflictReason(str, Enum):
    """Why the conflict checker refused a request."""

    CLINIC_INACTIVE = "ClinicInactive"
    PATIENT_NOT_IN_CLINIC = "PatientNotInClinic"
    INVALID_INTERVAL = "InvalidInterval"
    RESOURCE_NOT_IN_CLINIC = "ResourceNotInClinic"
    RESOURCE_INACTIVE = "ResourceInactive"
    SERVICE_NOT_OFFERED = "ServiceNotOffered"
    DOCTOR_UNAVAILABLE = "DoctorUnavailable"
    ROOM_UNAVAILABLE = "RoomUnavailable"

    @property
    def is_resource_conflict(self) -> bool:
        return self in (ConflictReason.DOCTOR_UNAVAILABLE, ConflictReason.ROOM_UNAVAILABLE)


@dataclass(frozen=True)
class ResourceKey:
    """A bookable doctor or room, scoped to the clinic that owns it."""

    clinic_id: str
    kind: ResourceKind
    resource_id: str

    @classmethod
    def doctor(cls, clinic_id: str, doctor_id: str) -> "ResourceKey":
        return cls(clinic_id, ResourceKind.DOCTOR, doctor_id)

    @classmethod
    def room(cls, clinic_id: str, room_id: str) -> "ResourceKey":
        return cls(clinic_id, ResourceKind.ROOM, room_id)

    @property
    def section_key(self) -> Tuple[str, str, str]:
        """Plain tuple used to order exclusive sections deterministically."""

        return (self.clinic_id, self.kind.value, self.resource_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.clinic_id}/{self.resource_id}"


@dataclass(frozen=True)
class TimeInterval:
    """Half-open ``[start, end)`` range in clinic-local time."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise ValidationError("Interval bounds must be datetime instances")
        if (self.start.tzinfo is None) != (self.end.tzinfo is None):
            raise ValidationError("Interval bounds must both be naive or both be timezone-aware")
        if not self.start < self.end:
            raise ValidationError(
                f"Interval start {self.start.isoformat()} must precede end {self.end.isoformat()}"
            )

    @classmethod
    def of(cls, start: datetime, duration: timedelta) -> "TimeInterval":
        return cls(start, start + duration)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeInterval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeInterval") -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True)
class Clinic:
    clinic_id: str
    name: str
    address: str = ""
    city: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class Doctor:
    doctor_id: str
    clinic_id: str
    license_number: str = ""
    specialty: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class Room:
    room_id: str
    clinic_id: str
    name: str = ""
    capacity: int = 1
    is_active: bool = True


@dataclass(frozen=True)
class Service:
    service_id: str
    code: str
    name: str = ""
    default_duration_minutes: Optional[int] = None


@dataclass(frozen=True)
class DoctorService:
    doctor_id: str
    service_id: str
    duration_minutes: int = 30


@dataclass(frozen=True)
class Patient:
    patient_id: str
    clinic_id: str


@dataclass(frozen=True)
class BookingRequest:
    """Input to :meth:`BookingManager.book`.

    ``end`` may be omitted, in which case the length is derived from the
    doctor's duration for the service, the service default, or the configured
    default. ``backdated`` allows recording an appointment that already
    happened.
    """

    clinic_id: str
    patient_id: str
    start: datetime
    end: Optional[datetime] = None
    doctor_id: Optional[str] = None
    room_id: Optional[str] = None
    service_id: Optional[str] = None
    created_by: Optional[str] = None
    notes: Optional[str] = None
    backdated: bool = False

    def resources(self) -> List[ResourceKey]:
        return _resource_keys(self.clinic_id, self.doctor_id, self.room_id)


@dataclass(frozen=True)
class Rejection:
    """Typed outcome of a failed conflict check."""

    reason: ConflictReason
    detail: str
    conflicting_ids: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Appointment:
    """A persisted booking."""

    appointment_id: str
    clinic_id: str
    patient_id: str
    interval: TimeInterval
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    doctor_id: Optional[str] = None
    room_id: Optional[str] = None
    service_id: Optional[str] = None
    created_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is not AppointmentStatus.CANCELLED

    def resources(self) -> List[ResourceKey]:
        return _resource_keys(self.clinic_id, self.doctor_id, self.room_id)

    def with_status(self, status: AppointmentStatus, *, at: datetime) -> "Appointment":
        return replace(self, status=status, updated_at=at)

    def with_interval(self, interval: TimeInterval, *, at: datetime) -> "Appointment":
        return replace(self, interval=interval, updated_at=at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "clinic_id": self.clinic_id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "room_id": self.room_id,
            "service_id": self.service_id,
            "scheduled_start": self.interval.start.isoformat(),
            "scheduled_end": self.interval.end.isoformat(),
            "status": self.status.value,
            "created_by": self.created_by,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Appointment":
        """Build an appointment from a storage row or API payload."""

        if not row:
            raise ValidationError("Appointment row payload is empty")

        start = _coerce_datetime(_extract_first(row, ("scheduled_start", "start")))
        end = _coerce_datetime(_extract_first(row, ("scheduled_end", "end")))
        created_at = _extract_first(row, ("created_at",), allow_missing=True)
        updated_at = _extract_first(row, ("updated_at",), allow_missing=True)
        return cls(
            appointment_id=str(_extract_first(row, ("appointment_id", "id"))),
            clinic_id=str(_extract_first(row, ("clinic_id",))),
            patient_id=str(_extract_first(row, ("patient_id",))),
            interval=TimeInterval(start, end),
            status=AppointmentStatus.parse(
                _extract_first(row, ("status", "status_name"), allow_missing=True) or "scheduled"
            ),
            doctor_id=_optional_str(row.get("doctor_id")),
            room_id=_optional_str(row.get("room_id")),
            service_id=_optional_str(row.get("service_id")),
            created_by=_optional_str(row.get("created_by")),
            notes=row.get("notes"),
            created_at=_coerce_datetime(created_at) if created_at else None,
            updated_at=_coerce_datetime(updated_at) if updated_at else None,
        )


def _extract_first(row: Mapping[str, Any], keys: Sequence[str], *, allow_missing: bool = False) -> Any:
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    if allow_missing:
        return None
    raise ValidationError(f"Expected one of {keys!r} in appointment row but none were present")


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _coerce_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid ISO datetime: {value!r}") from exc
    raise ValidationError(f"Unsupported datetime value: {value!r}")


def _resource_keys(clinic_id: str, doctor_id: Optional[str], room_id: Optional[str]) -> List[ResourceKey]:
    keys: List[ResourceKey] = []
    if doctor_id is not None:
        keys.append(ResourceKey.doctor(clinic_id, doctor_id))
    if room_id is not None:
        keys.append(ResourceKey.room(clinic_id, room_id))
    return keys
