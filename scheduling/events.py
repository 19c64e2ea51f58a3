"""Change notifications for external collaborators (billing, audit log).

Publishing is fire-and-forget from the booking's point of view: a failing
sink never undoes or fails the committed change. Each sink gets a bounded
number of delivery attempts; events a sink still refuses are kept as dead
letters until :meth:`EventPublisher.redeliver` is called, up to a fixed limit
beyond which the oldest dead letters are dropped. Consumers may see
an event more than once and should key on ``event_id``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from .interfaces import EventSink
from .models import Appointment

__all__ = ["ChangeEvent", "EventPublisher", "EventType"]

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CREATED = "created"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class ChangeEvent:
    """Notification record emitted after a committed change."""

    event_type: EventType
    appointment_id: str
    clinic_id: str
    timestamp: datetime
    actor_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def for_appointment(
        cls,
        event_type: EventType,
        appointment: Appointment,
        *,
        actor_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        **details: Any,
    ) -> "ChangeEvent":
        return cls(
            event_type=event_type,
            appointment_id=appointment.appointment_id,
            clinic_id=appointment.clinic_id,
            timestamp=timestamp or datetime.now(timezone.utc),
            actor_id=actor_id,
            details=details,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "appointment_id": self.appointment_id,
            "clinic_id": self.clinic_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "details": self.details,
        }


SinkLike = Union[EventSink, Callable[[ChangeEvent], None]]


def _deliver(sink: SinkLike, event: ChangeEvent) -> None:
    if hasattr(sink, "handle"):
        sink.handle(event)  # type: ignore[union-attr]
        return
    sink(event)  # type: ignore[operator]


class EventPublisher:
    """Fans out change events to subscribed sinks."""

    def __init__(self, *, delivery_attempts: int = 3, dead_letter_limit: int = 1000) -> None:
        if delivery_attempts < 1:
            raise ValueError("delivery_attempts must be at least 1")
        if dead_letter_limit < 1:
            raise ValueError("dead_letter_limit must be at least 1")
        self._delivery_attempts = delivery_attempts
        self._sinks: List[SinkLike] = []
        self._dead_letters: Deque[Tuple[SinkLike, ChangeEvent]] = deque(maxlen=dead_letter_limit)
        self._lock = threading.Lock()

    def subscribe(self, sink: SinkLike) -> Callable[[], None]:
        """Register ``sink``; returns a callable that unsubscribes it."""

        with self._lock:
            self._sinks.append(sink)

        def unsubscribe() -> None:
            with self._lock:
                if sink in self._sinks:
                    self._sinks.remove(sink)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            sinks = list(self._sinks)
        logger.debug(
            "Publishing %s for appointment %s to %d sinks",
            event.event_type.value,
            event.appointment_id,
            len(sinks),
        )
        for sink in sinks:
            if not self._try_deliver(sink, event):
                self._keep_dead_letter(sink, event)

    def redeliver(self) -> int:
        """Retry dead letters; returns how many are still undelivered."""

        with self._lock:
            pending = list(self._dead_letters)
            self._dead_letters.clear()
        for sink, event in pending:
            if not self._try_deliver(sink, event):
                self._keep_dead_letter(sink, event)
        with self._lock:
            return len(self._dead_letters)

    @property
    def dead_letters(self) -> List[ChangeEvent]:
        with self._lock:
            return [event for _, event in self._dead_letters]

    def _try_deliver(self, sink: SinkLike, event: ChangeEvent) -> bool:
        for attempt in range(1, self._delivery_attempts + 1):
            try:
                _deliver(sink, event)
                return True
            except Exception:  # noqa: BLE001 - a sink failure must not reach the booking caller
                logger.warning(
                    "Delivery of event %s (%s) failed on attempt %d/%d",
                    event.event_id,
                    event.event_type.value,
                    attempt,
                    self._delivery_attempts,
                    exc_info=True,
                )
        logger.error(
            "Event %s for appointment %s kept as dead letter", event.event_id, event.appointment_id
        )
        return False

    def _keep_dead_letter(self, sink: SinkLike, event: ChangeEvent) -> None:
        with self._lock:
            if len(self._dead_letters) == self._dead_letters.maxlen:
                _, dropped = self._dead_letters[0]
                logger.error(
                    "Dead letter queue full; dropping event %s for appointment %s",
                    dropped.event_id,
                    dropped.appointment_id,
                )
            self._dead_letters.append((sink, event))
