"""Error taxonomy for the booking core.

Every failure raised by the scheduling package derives from
:class:`SchedulingError`. The ``retryable`` flag tells callers whether the
same call may succeed later (infrastructure trouble) or with different input
(a busy resource), as opposed to requests that are wrong as submitted.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, FrozenSet, Iterable, Iterator, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .models import ConflictReason

__all__ = [
    "ConflictError",
    "InfrastructureError",
    "InvalidTransition",
    "LockTimeoutError",
    "SchedulingError",
    "UnknownAppointmentError",
    "ValidationError",
    "collaborator_call",
]

logger = logging.getLogger(__name__)


class SchedulingError(Exception):
    """Base exception for booking core errors."""

    retryable = False


class ValidationError(SchedulingError, ValueError):
    """Raised when a request is malformed or violates a catalog rule."""

    def __init__(self, message: str, *, reason: Optional["ConflictReason"] = None) -> None:
        super().__init__(message)
        self.reason = reason


class UnknownAppointmentError(ValidationError):
    """Raised when an appointment identifier cannot be resolved."""

    def __init__(self, appointment_id: str) -> None:
        super().__init__(f"Appointment '{appointment_id}' does not exist")
        self.appointment_id = appointment_id


class ConflictError(SchedulingError):
    """Raised when a requested resource is already booked for the interval."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        reason: "ConflictReason",
        conflicting_ids: Iterable[str] = (),
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.conflicting_ids: FrozenSet[str] = frozenset(conflicting_ids)


class InvalidTransition(SchedulingError):
    """Raised when a status change is not allowed by the lifecycle."""

    def __init__(self, current: object, target: object) -> None:
        super().__init__(f"Cannot move appointment from {current} to {target}")
        self.current = current
        self.target = target


class InfrastructureError(SchedulingError):
    """Raised when storage or locking fails; the call can be retried as-is."""

    retryable = True


class LockTimeoutError(InfrastructureError):
    """Raised when a resource section cannot be acquired in time."""


@contextmanager
def collaborator_call(action: str) -> Iterator[None]:
    """Translate failures of a store or catalog call into :class:`InfrastructureError`.

    Only wrap calls into collaborators; errors raised by the booking core itself
    must keep their own type.
    """

    try:
        yield
    except SchedulingError:
        raise
    except Exception as exc:
        logger.exception("Failed to %s", action)
        raise InfrastructureError(f"Failed to {action}: {exc}") from exc
