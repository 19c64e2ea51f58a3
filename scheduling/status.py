"""Appointment lifecycle rules."""

from __future__ import annotations

from typing import Dict, FrozenSet

from .errors import InvalidTransition
from .models import AppointmentStatus

__all__ = ["TERMINAL_STATES", "TRANSITIONS", "can_transition", "is_noop", "transition"]

S = AppointmentStatus

TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    S.SCHEDULED: frozenset({S.CHECKED_IN, S.CANCELLED}),
    S.CHECKED_IN: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)

# Cancelling twice is accepted and changes nothing.
_NOOPS = frozenset({(S.CANCELLED, S.CANCELLED)})


def is_noop(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return (current, target) in _NOOPS


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS[current] or is_noop(current, target)


def transition(current: AppointmentStatus, target: AppointmentStatus) -> AppointmentStatus:
    """Return ``target`` if the lifecycle allows it, otherwise raise."""

    if not can_transition(current, target):
        raise InvalidTransition(current.label, target.label)
    return target
