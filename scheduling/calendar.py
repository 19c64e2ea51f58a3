"""Per-resource interval index.

Each doctor or room owns a *lane*: an immutable, start-ordered tuple of
:class:`CalendarEntry` objects. Mutations build a new lane and swap the
reference, so overlap queries read a consistent snapshot without taking any
lock. Writers are expected to hold the resource's exclusive section (see
:mod:`scheduling.locks`).

An overlap query bisects for the first entry starting at or after the query
end. When the lane's entries are pairwise disjoint, which the conflict checker
guarantees for booked lanes, only the last entry starting at or before the
query start can still be running, so the scan is O(log n + k). Lanes holding
overlapping entries fall back to walking left as far as
``query.start - longest``, where ``longest`` is the longest span currently
held.

A lane keeps either naive or timezone-aware intervals, never both.
"""

from __future__ import annotations

import logging
import threading
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .errors import ValidationError
from .models import Appointment, ResourceKey, TimeInterval

__all__ = ["CalendarEntry", "ResourceCalendar"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarEntry:
    appointment_id: str
    interval: TimeInterval

    @property
    def start(self):
        return self.interval.start

    @property
    def end(self):
        return self.interval.end


def _is_aware(interval: TimeInterval) -> bool:
    return interval.start.tzinfo is not None


@dataclass(frozen=True)
class _Lane:
    entries: Tuple[CalendarEntry, ...] = ()
    longest: timedelta = timedelta(0)
    disjoint: bool = True

    @classmethod
    def of(cls, entries: Tuple[CalendarEntry, ...]) -> "_Lane":
        """Build a lane from start-ordered ``entries``."""

        longest = max((entry.interval.duration for entry in entries), default=timedelta(0))
        disjoint = all(before.end <= after.start for before, after in zip(entries, entries[1:]))
        return cls(entries=entries, longest=longest, disjoint=disjoint)

    @property
    def aware(self) -> Optional[bool]:
        return _is_aware(self.entries[0].interval) if self.entries else None

    def accepts(self, interval: TimeInterval) -> bool:
        return not self.entries or self.aware == _is_aware(interval)

    def bounds(self, interval: TimeInterval) -> Tuple[int, int]:
        """Slice of ``entries`` that may intersect ``interval``."""

        hi = bisect_left(self.entries, interval.end, key=_start_of)
        if self.disjoint:
            lo = max(bisect_right(self.entries, interval.start, key=_start_of) - 1, 0)
        else:
            lo = bisect_right(self.entries, interval.start - self.longest, key=_start_of)
        return lo, max(lo, hi)

    def window(self, interval: TimeInterval) -> Iterable[CalendarEntry]:
        """Yield entries intersecting ``interval`` in start order."""

        if not self.entries:
            return
        lo, hi = self.bounds(interval)
        for entry in self.entries[lo:hi]:
            if entry.end > interval.start:
                yield entry

    def with_entry(self, entry: CalendarEntry) -> "_Lane":
        position = bisect_right(self.entries, entry.start, key=_start_of)
        entries = self.entries[:position] + (entry,) + self.entries[position:]
        disjoint = self.disjoint
        if disjoint and position > 0 and entries[position - 1].end > entry.start:
            disjoint = False
        if disjoint and position + 1 < len(entries) and entry.end > entries[position + 1].start:
            disjoint = False
        return _Lane(
            entries=entries, longest=max(self.longest, entry.interval.duration), disjoint=disjoint
        )

    def without(self, appointment_id: str) -> Optional["_Lane"]:
        remaining = tuple(e for e in self.entries if e.appointment_id != appointment_id)
        if len(remaining) == len(self.entries):
            return None
        if self.disjoint:
            longest = max((entry.interval.duration for entry in remaining), default=timedelta(0))
            return _Lane(entries=remaining, longest=longest, disjoint=True)
        return _Lane.of(remaining)


def _start_of(entry: CalendarEntry):
    return entry.start


def _require_compatible(lane: _Lane, resource: ResourceKey, interval: TimeInterval) -> None:
    if not lane.accepts(interval):
        raise ValidationError(
            f"{resource} is scheduled in {'timezone-aware' if lane.aware else 'naive'} time; "
            "intervals must use the same kind of datetime"
        )


class ResourceCalendar:
    """Active intervals for every doctor and room, keyed by :class:`ResourceKey`."""

    def __init__(self) -> None:
        self._lanes: Dict[ResourceKey, _Lane] = {}
        self._retired: Set[ResourceKey] = set()
        self._retired_clinics: Set[str] = set()
        # Guards the lane mapping itself; per-lane writes are serialized by the caller.
        self._registry_lock = threading.Lock()

    def query_overlap(
        self,
        resource: ResourceKey,
        interval: TimeInterval,
        *,
        exclude: Optional[str] = None,
    ) -> FrozenSet[str]:
        """Return ids of active appointments on ``resource`` intersecting ``interval``."""

        lane = self._lanes.get(resource)
        if lane is None:
            return frozenset()
        _require_compatible(lane, resource, interval)
        return frozenset(
            entry.appointment_id
            for entry in lane.window(interval)
            if entry.appointment_id != exclude
        )

    def entries(self, resource: ResourceKey, window: TimeInterval) -> List[CalendarEntry]:
        lane = self._lanes.get(resource)
        if lane is None:
            return []
        _require_compatible(lane, resource, window)
        return list(lane.window(window))

    def accepts(self, resource: ResourceKey, interval: TimeInterval) -> bool:
        """Whether ``interval`` uses the same naive or aware clock as the resource's entries."""

        lane = self._lanes.get(resource)
        return lane is None or lane.accepts(interval)

    def insert(self, resource: ResourceKey, interval: TimeInterval, appointment_id: str) -> None:
        """Add an interval. Conflicts must already have been ruled out."""

        self._put(resource, interval, appointment_id, allow_retired=False)

    def restore(self, resource: ResourceKey, interval: TimeInterval, appointment_id: str) -> None:
        """Put back an interval removed by an aborted change, even on a retired resource."""

        self._put(resource, interval, appointment_id, allow_retired=True)

    def _put(
        self, resource: ResourceKey, interval: TimeInterval, appointment_id: str, *, allow_retired: bool
    ) -> None:
        entry = CalendarEntry(appointment_id=appointment_id, interval=interval)
        with self._registry_lock:
            if not allow_retired and self.is_retired(resource):
                raise ValidationError(f"Resource {resource} has been deactivated")
            lane = self._lanes.get(resource, _Lane())
            _require_compatible(lane, resource, interval)
            self._lanes[resource] = lane.with_entry(entry)
        logger.debug("Calendar insert %s on %s", appointment_id, resource)

    def remove(self, resource: ResourceKey, appointment_id: str) -> bool:
        """Remove an appointment's interval; returns ``False`` if it was not present."""

        with self._registry_lock:
            lane = self._lanes.get(resource)
            updated = lane.without(appointment_id) if lane else None
            if updated is None:
                return False
            self._lanes[resource] = updated
        logger.debug("Calendar remove %s from %s", appointment_id, resource)
        return True

    def rebuild(self, clinic_id: str, appointments: Iterable[Appointment]) -> int:
        """Replace every lane of ``clinic_id`` with the given active appointments."""

        grouped: Dict[ResourceKey, List[CalendarEntry]] = {}
        for appointment in appointments:
            if appointment.clinic_id != clinic_id or not appointment.is_active:
                continue
            entry = CalendarEntry(appointment.appointment_id, appointment.interval)
            for resource in appointment.resources():
                grouped.setdefault(resource, []).append(entry)

        lanes: Dict[ResourceKey, _Lane] = {}
        count = 0
        for resource, entries in grouped.items():
            # Storage usually returns rows ordered by start, which Timsort handles in O(n).
            if len({_is_aware(entry.interval) for entry in entries}) > 1:
                raise ValidationError(f"Stored appointments for {resource} mix naive and timezone-aware times")
            ordered = tuple(sorted(entries, key=_start_of))
            lanes[resource] = _Lane.of(ordered)
            count += len(ordered)

        with self._registry_lock:
            for resource in [key for key in self._lanes if key.clinic_id == clinic_id]:
                del self._lanes[resource]
            self._lanes.update(lanes)
        logger.info(
            "Calendar rebuilt for clinic %s: %d resources, %d intervals", clinic_id, len(lanes), count
        )
        return count

    def resources(self, clinic_id: str) -> List[ResourceKey]:
        return [key for key in list(self._lanes) if key.clinic_id == clinic_id]

    def retire(self, resource: ResourceKey) -> None:
        """Refuse further inserts for a deactivated resource. Existing entries stay."""

        with self._registry_lock:
            self._retired.add(resource)
        logger.info("Resource %s retired from calendar", resource)

    def retire_clinic(self, clinic_id: str) -> None:
        with self._registry_lock:
            self._retired_clinics.add(clinic_id)
        logger.info("Clinic %s retired from calendar", clinic_id)

    def is_retired(self, resource: ResourceKey) -> bool:
        return resource in self._retired or resource.clinic_id in self._retired_clinics

    def is_clinic_retired(self, clinic_id: str) -> bool:
        return clinic_id in self._retired_clinics
