"""Conflict checker for booking requests.

Rules run in a fixed order and the first failure wins:

1. clinic active, patient registered with the clinic
2. interval well formed and within the booking horizon
3. doctor belongs to the clinic, is active and offers the service
4. room belongs to the clinic and is active
5. no overlapping appointment for the doctor
6. no overlapping appointment for the room

Before 5 and 6 the interval must use the same kind of datetime (naive or
timezone-aware) as the resource's existing appointments.

The checker only reads the calendar and the catalog. Catalog failures surface
as :class:`InfrastructureError`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple, TypeVar

from .calendar import ResourceCalendar
from .config import SchedulingSettings
from .errors import ValidationError, collaborator_call
from .interfaces import CatalogReader
from .models import (
    BookingRequest,
    ConflictReason,
    Rejection,
    ResourceKey,
    ResourceKind,
    TimeInterval,
)

__all__ = ["ConflictChecker", "align_clock"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def align_clock(now: datetime, reference: datetime) -> datetime:
    """Make ``now`` comparable with ``reference`` (both naive or both aware)."""

    if reference.tzinfo is not None and now.tzinfo is None:
        return now.astimezone(reference.tzinfo)
    if reference.tzinfo is None and now.tzinfo is not None:
        return now.replace(tzinfo=None)
    return now


class ConflictChecker:
    """Decides whether a booking request can be granted."""

    def __init__(
        self,
        calendar: ResourceCalendar,
        catalog: CatalogReader,
        *,
        settings: Optional[SchedulingSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._calendar = calendar
        self._catalog = catalog
        self._settings = settings or SchedulingSettings()
        self._clock = clock

    def check(self, request: BookingRequest, *, exclude: Optional[str] = None) -> Optional[Rejection]:
        """Return ``None`` when the request can be granted, else the first rejection.

        ``exclude`` names an appointment whose own interval must not count as a
        conflict, which is how a reschedule avoids clashing with itself.
        """

        return self.assess(request, exclude=exclude)[1]

    def assess(
        self, request: BookingRequest, *, exclude: Optional[str] = None
    ) -> Tuple[Optional[TimeInterval], Optional[Rejection]]:
        """Like :meth:`check`, also returning the resolved interval when granted."""

        interval: Optional[TimeInterval] = None
        rejection = self._check_parties(request)
        if rejection is None:
            interval, rejection = self._check_interval(request)
        rejection = rejection or self._check_doctor(request) or self._check_room(request)
        if rejection is None:
            for resource in request.resources():
                rejection = self._check_availability(resource, interval, exclude)
                if rejection is not None:
                    break
        if rejection is not None:
            logger.info(
                "Booking request for clinic %s rejected: %s (%s)",
                request.clinic_id,
                rejection.reason.value,
                rejection.detail,
            )
            return None, rejection
        return interval, None

    def interval_for(self, request: BookingRequest) -> TimeInterval:
        """Resolve the request's interval, deriving the end from service durations."""

        if not isinstance(request.start, datetime):
            raise ValidationError("Booking start must be a datetime instance")
        if request.end is not None:
            return TimeInterval(request.start, request.end)
        return TimeInterval.of(request.start, self.default_duration(request))

    def default_duration(self, request: BookingRequest) -> timedelta:
        if request.service_id is not None:
            if request.doctor_id is not None:
                offered = self._lookup(
                    "doctor service", self._catalog.get_doctor_service, request.doctor_id, request.service_id
                )
                if offered is not None:
                    return timedelta(minutes=offered.duration_minutes)
            service = self._lookup("service", self._catalog.get_service, request.service_id)
            if service is not None and service.default_duration_minutes:
                return timedelta(minutes=service.default_duration_minutes)
        return self._settings.default_duration

    @staticmethod
    def _lookup(what: str, fetch: Callable[..., T], *keys: str) -> T:
        with collaborator_call(f"look up {what} {'/'.join(keys)}"):
            return fetch(*keys)

    def _check_parties(self, request: BookingRequest) -> Optional[Rejection]:
        clinic = self._lookup("clinic", self._catalog.get_clinic, request.clinic_id)
        if clinic is None or not clinic.is_active or self._calendar.is_clinic_retired(request.clinic_id):
            return Rejection(
                ConflictReason.CLINIC_INACTIVE,
                f"Clinic '{request.clinic_id}' is unknown or inactive",
            )
        patient = self._lookup("patient", self._catalog.get_patient, request.patient_id)
        if patient is None or patient.clinic_id != request.clinic_id:
            return Rejection(
                ConflictReason.PATIENT_NOT_IN_CLINIC,
                f"Patient '{request.patient_id}' is not registered with clinic '{request.clinic_id}'",
            )
        return None

    def _check_interval(
        self, request: BookingRequest
    ) -> Tuple[Optional[TimeInterval], Optional[Rejection]]:
        try:
            interval = self.interval_for(request)
        except ValidationError as exc:
            return None, Rejection(ConflictReason.INVALID_INTERVAL, str(exc))

        now = align_clock(self._clock(), interval.start)
        if interval.start < now and not request.backdated:
            return None, Rejection(
                ConflictReason.INVALID_INTERVAL,
                f"Start {interval.start.isoformat()} is in the past",
            )
        if interval.start > now + self._settings.booking_horizon:
            return None, Rejection(
                ConflictReason.INVALID_INTERVAL,
                f"Start {interval.start.isoformat()} is beyond the "
                f"{self._settings.booking_horizon_days}-day booking horizon",
            )
        return interval, None

    def _check_doctor(self, request: BookingRequest) -> Optional[Rejection]:
        if request.doctor_id is None:
            if (
                request.service_id is not None
                and self._lookup("service", self._catalog.get_service, request.service_id) is None
            ):
                return Rejection(
                    ConflictReason.SERVICE_NOT_OFFERED,
                    f"Service '{request.service_id}' does not exist",
                )
            return None

        doctor = self._lookup("doctor", self._catalog.get_doctor, request.doctor_id)
        if doctor is None or doctor.clinic_id != request.clinic_id:
            return Rejection(
                ConflictReason.RESOURCE_NOT_IN_CLINIC,
                f"Doctor '{request.doctor_id}' does not belong to clinic '{request.clinic_id}'",
            )
        resource = ResourceKey.doctor(request.clinic_id, request.doctor_id)
        if not doctor.is_active or self._calendar.is_retired(resource):
            return Rejection(
                ConflictReason.RESOURCE_INACTIVE, f"Doctor '{request.doctor_id}' is not active"
            )
        if request.service_id is not None:
            offered = self._lookup(
                "doctor service", self._catalog.get_doctor_service, request.doctor_id, request.service_id
            )
            if offered is None:
                return Rejection(
                    ConflictReason.SERVICE_NOT_OFFERED,
                    f"Doctor '{request.doctor_id}' does not offer service '{request.service_id}'",
                )
        return None

    def _check_room(self, request: BookingRequest) -> Optional[Rejection]:
        if request.room_id is None:
            return None
        room = self._lookup("room", self._catalog.get_room, request.room_id)
        if room is None or room.clinic_id != request.clinic_id:
            return Rejection(
                ConflictReason.RESOURCE_NOT_IN_CLINIC,
                f"Room '{request.room_id}' does not belong to clinic '{request.clinic_id}'",
            )
        resource = ResourceKey.room(request.clinic_id, request.room_id)
        if not room.is_active or self._calendar.is_retired(resource):
            return Rejection(ConflictReason.RESOURCE_INACTIVE, f"Room '{request.room_id}' is not active")
        return None

    def _check_availability(
        self, resource: ResourceKey, interval: TimeInterval, exclude: Optional[str]
    ) -> Optional[Rejection]:
        if not self._calendar.accepts(resource, interval):
            return Rejection(
                ConflictReason.INVALID_INTERVAL,
                f"{resource} is scheduled in a different kind of datetime "
                "(naive versus timezone-aware) than the request",
            )
        clashing = self._calendar.query_overlap(resource, interval, exclude=exclude)
        if not clashing:
            return None
        reason = (
            ConflictReason.DOCTOR_UNAVAILABLE
            if resource.kind is ResourceKind.DOCTOR
            else ConflictReason.ROOM_UNAVAILABLE
        )
        return Rejection(
            reason,
            f"{resource} is already booked between {interval.start.isoformat()} "
            f"and {interval.end.isoformat()}",
            conflicting_ids=clashing,
        )
