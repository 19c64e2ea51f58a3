"""Booking transaction manager.

Every mutating operation follows the same protocol:

1. acquire the exclusive sections of the resources involved, in sorted order
2. re-run the conflict check (or lifecycle rule) inside the sections
3. apply the calendar change, then the persistence write
4. on any failure undo the calendar change before the sections are released

A change is therefore either fully visible (calendar, stored row and status)
or not at all. Change events are published after the sections are released.
Lock timeouts and storage failures are retried with exponential backoff.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
import zlib
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from .calendar import ResourceCalendar
from .config import SchedulingSettings
from .conflicts import ConflictChecker, align_clock
from .errors import (
    ConflictError,
    InfrastructureError,
    InvalidTransition,
    SchedulingError,
    UnknownAppointmentError,
    ValidationError,
    collaborator_call,
)
from .events import ChangeEvent, EventPublisher, EventType
from .interfaces import AppointmentStore, CatalogReader
from .locks import ResourceLockArena, SectionKey
from .models import (
    Appointment,
    AppointmentStatus,
    BookingRequest,
    Rejection,
    ResourceKey,
    TimeInterval,
)
from .status import transition

__all__ = ["BookingManager"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CANCELLABLE = (AppointmentStatus.SCHEDULED, AppointmentStatus.CHECKED_IN)

# Appointments without a doctor or room share this many sections per clinic.
APPOINTMENT_STRIPES = 64


def _rejection_error(rejection: Rejection) -> SchedulingError:
    if rejection.reason.is_resource_conflict:
        return ConflictError(
            rejection.detail, reason=rejection.reason, conflicting_ids=rejection.conflicting_ids
        )
    return ValidationError(rejection.detail, reason=rejection.reason)


class BookingManager:
    """Reserves doctors and rooms for appointments under concurrent access."""

    def __init__(
        self,
        store: AppointmentStore,
        catalog: CatalogReader,
        *,
        settings: Optional[SchedulingSettings] = None,
        calendar: Optional[ResourceCalendar] = None,
        publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = datetime.now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._settings = settings or SchedulingSettings()
        self._calendar = calendar or ResourceCalendar()
        self._publisher = publisher or EventPublisher(
            delivery_attempts=self._settings.event_delivery_attempts,
            dead_letter_limit=self._settings.dead_letter_limit,
        )
        self._checker = ConflictChecker(self._calendar, catalog, settings=self._settings, clock=clock)
        self._locks = ResourceLockArena(self._settings.lock_timeout_seconds)
        self._clock = clock
        self._id_factory = id_factory
        self._sleep = sleep
        self._appointments: Dict[str, Appointment] = {}
        self._loaded: Set[str] = set()
        self._load_lock = threading.Lock()

    @property
    def calendar(self) -> ResourceCalendar:
        return self._calendar

    @property
    def checker(self) -> ConflictChecker:
        return self._checker

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_clinic(self, clinic_id: str, *, force: bool = False) -> int:
        """Rebuild the clinic's calendars from storage.

        Called lazily on first use of a clinic. ``force`` reloads an already
        loaded clinic and must only be used while no booking is in flight.
        """

        with self._load_lock:
            if clinic_id in self._loaded and not force:
                return 0
            with collaborator_call(f"load appointments for clinic {clinic_id}"):
                rows = list(self._store.load_active_appointments(clinic_id))
            active = [row for row in rows if row.clinic_id == clinic_id and row.is_active]
            for appointment in active:
                self._appointments[appointment.appointment_id] = appointment
            count = self._calendar.rebuild(clinic_id, active)
            self._loaded.add(clinic_id)
        return count

    def _ensure_loaded(self, clinic_id: str) -> None:
        if clinic_id not in self._loaded:
            self.load_clinic(clinic_id)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get_appointment(self, appointment_id: str) -> Appointment:
        return self._resolve(appointment_id)

    def cached_appointments(self, clinic_id: str) -> List[Appointment]:
        """Appointments of ``clinic_id`` known to this manager, ordered by start."""

        known = [a for a in list(self._appointments.values()) if a.clinic_id == clinic_id]
        return sorted(known, key=lambda appointment: appointment.interval.start)

    def book(self, request: BookingRequest) -> Appointment:
        """Reserve the requested resources and persist a new appointment.

        Raises :class:`ConflictError` when the doctor or room is busy and
        :class:`ValidationError` when the request cannot be granted as given.
        """

        if not isinstance(request, BookingRequest):
            raise ValidationError("request must be a BookingRequest")
        self._ensure_loaded(request.clinic_id)
        # One id for all attempts so a retried persist overwrites rather than duplicates.
        appointment_id = self._id_factory()
        appointment = self._retrying("book appointment", lambda: self._book_once(request, appointment_id))
        self._publish(
            EventType.CREATED,
            appointment,
            actor_id=request.created_by,
            start=appointment.interval.start.isoformat(),
            end=appointment.interval.end.isoformat(),
            doctor_id=appointment.doctor_id,
            room_id=appointment.room_id,
            service_id=appointment.service_id,
        )
        return appointment

    def reschedule(
        self, appointment_id: str, new_interval: TimeInterval, *, actor_id: Optional[str] = None
    ) -> Appointment:
        """Move a scheduled appointment, ignoring its own current interval."""

        if not isinstance(new_interval, TimeInterval):
            raise ValidationError("new_interval must be a TimeInterval")
        previous, updated = self._retrying(
            "reschedule appointment", lambda: self._reschedule_once(appointment_id, new_interval)
        )
        if updated is not previous:
            self._publish(
                EventType.RESCHEDULED,
                updated,
                actor_id=actor_id,
                previous_start=previous.interval.start.isoformat(),
                previous_end=previous.interval.end.isoformat(),
                start=updated.interval.start.isoformat(),
                end=updated.interval.end.isoformat(),
            )
        return updated

    def cancel(self, appointment_id: str, *, actor_id: Optional[str] = None) -> Appointment:
        """Soft-cancel an appointment. Cancelling a cancelled appointment is a no-op."""

        previous, updated = self._retrying(
            "cancel appointment", lambda: self._cancel_once(appointment_id)
        )
        if updated is not previous:
            self._publish(
                EventType.CANCELLED, updated, actor_id=actor_id, previous_status=previous.status.value
            )
        return updated

    def change_status(
        self,
        appointment_id: str,
        status: AppointmentStatus | str,
        *,
        actor_id: Optional[str] = None,
    ) -> Appointment:
        """Apply an explicit lifecycle transition."""

        target = AppointmentStatus.parse(status)
        if target is AppointmentStatus.CANCELLED:
            return self.cancel(appointment_id, actor_id=actor_id)
        previous, updated = self._retrying(
            "update appointment status", lambda: self._change_status_once(appointment_id, target)
        )
        self._publish(
            EventType.STATUS_CHANGED,
            updated,
            actor_id=actor_id,
            previous_status=previous.status.value,
            status=updated.status.value,
        )
        return updated

    def check_in(self, appointment_id: str, *, actor_id: Optional[str] = None) -> Appointment:
        return self.change_status(appointment_id, AppointmentStatus.CHECKED_IN, actor_id=actor_id)

    def start_visit(self, appointment_id: str, *, actor_id: Optional[str] = None) -> Appointment:
        return self.change_status(appointment_id, AppointmentStatus.IN_PROGRESS, actor_id=actor_id)

    def complete(self, appointment_id: str, *, actor_id: Optional[str] = None) -> Appointment:
        return self.change_status(appointment_id, AppointmentStatus.COMPLETED, actor_id=actor_id)

    def deactivate_doctor(
        self, clinic_id: str, doctor_id: str, *, actor_id: Optional[str] = None
    ) -> List[Appointment]:
        """Cancel the doctor's upcoming appointments and refuse new bookings."""

        resource = ResourceKey.doctor(clinic_id, doctor_id)
        return self._deactivate(clinic_id, lambda a: resource in a.resources(), resource, actor_id)

    def deactivate_room(
        self, clinic_id: str, room_id: str, *, actor_id: Optional[str] = None
    ) -> List[Appointment]:
        """Cancel the room's upcoming appointments and refuse new bookings."""

        resource = ResourceKey.room(clinic_id, room_id)
        return self._deactivate(clinic_id, lambda a: resource in a.resources(), resource, actor_id)

    def deactivate_clinic(self, clinic_id: str, *, actor_id: Optional[str] = None) -> List[Appointment]:
        """Cancel every upcoming appointment of the clinic and refuse new bookings."""

        return self._deactivate(clinic_id, lambda a: True, None, actor_id)

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    def _book_once(self, request: BookingRequest, appointment_id: str) -> Appointment:
        resources = request.resources()
        with self._locks.hold(self._sections(request.clinic_id, resources, appointment_id)):
            interval, rejection = self._checker.assess(request)
            if rejection is not None:
                raise _rejection_error(rejection)

            now = self._clock()
            appointment = Appointment(
                appointment_id=appointment_id,
                clinic_id=request.clinic_id,
                patient_id=request.patient_id,
                interval=interval,
                status=AppointmentStatus.SCHEDULED,
                doctor_id=request.doctor_id,
                room_id=request.room_id,
                service_id=request.service_id,
                created_by=request.created_by,
                notes=request.notes,
                created_at=now,
                updated_at=now,
            )

            inserted: List[ResourceKey] = []
            committed = False
            try:
                for resource in resources:
                    self._calendar.insert(resource, interval, appointment_id)
                    inserted.append(resource)
                with collaborator_call(f"persist appointment {appointment_id}"):
                    self._store.persist_appointment(appointment)
                self._appointments[appointment_id] = appointment
                committed = True
            finally:
                if not committed:
                    for resource in inserted:
                        self._calendar.remove(resource, appointment_id)
                    logger.warning("Booking %s rolled back", appointment_id)

        logger.info(
            "Booked appointment %s for patient %s in clinic %s from %s to %s",
            appointment_id,
            request.patient_id,
            request.clinic_id,
            interval.start.isoformat(),
            interval.end.isoformat(),
        )
        return appointment

    def _reschedule_once(
        self, appointment_id: str, new_interval: TimeInterval
    ) -> Tuple[Appointment, Appointment]:
        known = self._resolve(appointment_id)
        with self._locks.hold(self._sections_of(known)):
            current = self._current(known)
            if current.status is not AppointmentStatus.SCHEDULED:
                raise InvalidTransition(current.status.label, "Rescheduled")
            if current.interval == new_interval:
                return current, current

            request = BookingRequest(
                clinic_id=current.clinic_id,
                patient_id=current.patient_id,
                start=new_interval.start,
                end=new_interval.end,
                doctor_id=current.doctor_id,
                room_id=current.room_id,
                service_id=current.service_id,
                created_by=current.created_by,
            )
            rejection = self._checker.check(request, exclude=appointment_id)
            if rejection is not None:
                raise _rejection_error(rejection)

            updated = current.with_interval(new_interval, at=self._clock())
            removed: List[ResourceKey] = []
            inserted: List[ResourceKey] = []
            committed = False
            try:
                for resource in current.resources():
                    if self._calendar.remove(resource, appointment_id):
                        removed.append(resource)
                    self._calendar.insert(resource, new_interval, appointment_id)
                    inserted.append(resource)
                with collaborator_call(f"update interval of appointment {appointment_id}"):
                    self._store.update_interval(appointment_id, new_interval)
                self._appointments[appointment_id] = updated
                committed = True
            finally:
                if not committed:
                    for resource in inserted:
                        self._calendar.remove(resource, appointment_id)
                    for resource in removed:
                        self._calendar.restore(resource, current.interval, appointment_id)
                    logger.warning("Reschedule of %s rolled back", appointment_id)

        logger.info(
            "Rescheduled appointment %s to %s-%s",
            appointment_id,
            new_interval.start.isoformat(),
            new_interval.end.isoformat(),
        )
        return current, updated

    def _cancel_once(self, appointment_id: str) -> Tuple[Appointment, Appointment]:
        known = self._resolve(appointment_id)
        with self._locks.hold(self._sections_of(known)):
            current = self._current(known)
            return current, self._cancel_locked(current)

    def _cancel_locked(self, current: Appointment) -> Appointment:
        """Cancel ``current``; the caller holds its sections."""

        if current.status is AppointmentStatus.CANCELLED:
            logger.debug("Appointment %s already cancelled", current.appointment_id)
            return current
        transition(current.status, AppointmentStatus.CANCELLED)

        appointment_id = current.appointment_id
        updated = current.with_status(AppointmentStatus.CANCELLED, at=self._clock())
        removed: List[ResourceKey] = []
        committed = False
        try:
            for resource in current.resources():
                if self._calendar.remove(resource, appointment_id):
                    removed.append(resource)
            with collaborator_call(f"cancel appointment {appointment_id}"):
                self._store.update_status(appointment_id, AppointmentStatus.CANCELLED)
            # Cancelled appointments leave the cache; storage keeps the record.
            self._appointments.pop(appointment_id, None)
            committed = True
        finally:
            if not committed:
                for resource in removed:
                    self._calendar.restore(resource, current.interval, appointment_id)
                logger.warning("Cancellation of %s rolled back", appointment_id)

        logger.info("Cancelled appointment %s", appointment_id)
        return updated

    def _change_status_once(
        self, appointment_id: str, target: AppointmentStatus
    ) -> Tuple[Appointment, Appointment]:
        known = self._resolve(appointment_id)
        with self._locks.hold(self._sections_of(known)):
            current = self._current(known)
            transition(current.status, target)
            with collaborator_call(f"update status of appointment {appointment_id}"):
                self._store.update_status(appointment_id, target)
            updated = current.with_status(target, at=self._clock())
            self._appointments[appointment_id] = updated

        logger.info(
            "Appointment %s moved from %s to %s",
            appointment_id,
            current.status.label,
            target.label,
        )
        return current, updated

    def _deactivate(
        self,
        clinic_id: str,
        selects: Callable[[Appointment], bool],
        resource: Optional[ResourceKey],
        actor_id: Optional[str],
    ) -> List[Appointment]:
        self._ensure_loaded(clinic_id)
        # Retire first so no new booking can land while the cleanup runs.
        if resource is None:
            self._calendar.retire_clinic(clinic_id)
        else:
            self._calendar.retire(resource)
        label = f"clinic {clinic_id}" if resource is None else str(resource)
        cancelled = self._retrying(
            f"deactivate {label}", lambda: self._cancel_upcoming(clinic_id, selects, resource)
        )
        for previous, updated in cancelled:
            self._publish(
                EventType.CANCELLED,
                updated,
                actor_id=actor_id,
                previous_status=previous.status.value,
                reason="deactivated",
                deactivated=label,
            )
        logger.info("Deactivated %s; cancelled %d upcoming appointments", label, len(cancelled))
        return [updated for _, updated in cancelled]

    def _cancel_upcoming(
        self,
        clinic_id: str,
        selects: Callable[[Appointment], bool],
        resource: Optional[ResourceKey],
    ) -> List[Tuple[Appointment, Appointment]]:
        while True:
            affected = self._upcoming(clinic_id, selects)
            sections: Set[SectionKey] = {resource.section_key} if resource else set()
            for appointment in affected:
                sections.update(self._sections_of(appointment))
            with self._locks.hold(sections):
                affected = self._upcoming(clinic_id, selects)
                if not all(set(self._sections_of(a)) <= sections for a in affected):
                    # A booking committed on another section meanwhile; widen and retry.
                    continue
                return [(appointment, self._cancel_locked(appointment)) for appointment in affected]

    def _upcoming(self, clinic_id: str, selects: Callable[[Appointment], bool]) -> List[Appointment]:
        upcoming = []
        for appointment in self.cached_appointments(clinic_id):
            if appointment.status not in _CANCELLABLE or not selects(appointment):
                continue
            if appointment.interval.end > align_clock(self._clock(), appointment.interval.end):
                upcoming.append(appointment)
        return upcoming

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve(self, appointment_id: str) -> Appointment:
        if not isinstance(appointment_id, str) or not appointment_id.strip():
            raise ValidationError("appointment_id must be a non-empty string")
        appointment = self._appointments.get(appointment_id)
        if appointment is not None:
            return appointment
        appointment = self._fetch(appointment_id)
        self._ensure_loaded(appointment.clinic_id)
        if not appointment.is_active:
            return appointment
        return self._appointments.setdefault(appointment_id, appointment)

    def _current(self, known: Appointment) -> Appointment:
        """Latest state of ``known``; the caller holds its sections."""

        cached = self._appointments.get(known.appointment_id)
        if cached is not None:
            return cached
        return self._fetch(known.appointment_id)

    def _fetch(self, appointment_id: str) -> Appointment:
        with collaborator_call(f"look up appointment {appointment_id}"):
            appointment = self._store.get_appointment(appointment_id)
        if appointment is None:
            raise UnknownAppointmentError(appointment_id)
        return appointment

    @staticmethod
    def _sections(
        clinic_id: str, resources: Iterable[ResourceKey], appointment_id: str
    ) -> List[SectionKey]:
        keys = [resource.section_key for resource in resources]
        if keys:
            return keys
        # Appointments without a doctor or room still need serialized status changes.
        stripe = zlib.crc32(appointment_id.encode("utf-8")) % APPOINTMENT_STRIPES
        return [(clinic_id, "appointment", f"stripe-{stripe:02d}")]

    def _sections_of(self, appointment: Appointment) -> List[SectionKey]:
        return self._sections(appointment.clinic_id, appointment.resources(), appointment.appointment_id)

    def _retrying(self, action: str, operation: Callable[[], T]) -> T:
        attempts = self._settings.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except InfrastructureError as exc:
                if attempt >= attempts:
                    logger.error("Giving up on %s after %d attempts: %s", action, attempt, exc)
                    raise
                delay = self._settings.backoff_for(attempt)
                logger.warning(
                    "Attempt %d/%d to %s failed (%s); retrying in %.2fs",
                    attempt,
                    attempts,
                    action,
                    exc,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    def _publish(
        self,
        event_type: EventType,
        appointment: Appointment,
        *,
        actor_id: Optional[str] = None,
        **details: object,
    ) -> None:
        event = ChangeEvent.for_appointment(
            event_type, appointment, actor_id=actor_id, **details
        )
        self._publisher.publish(event)
