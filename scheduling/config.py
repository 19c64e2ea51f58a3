"""Runtime settings for the booking core.

Defaults can be overridden through ``BOOKING_*`` environment variables so the
hosting service controls lock waits, retries and the booking horizon without
code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Mapping, Optional, TypeVar

__all__ = ["SchedulingSettings"]

T = TypeVar("T")


def _read(
    environ: Mapping[str, str],
    name: str,
    parser: Callable[[str], T],
    default: T,
    *,
    minimum: Optional[float] = None,
) -> T:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = parser(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a valid {parser.__name__}, got {raw!r}") from exc
    if minimum is not None and value < minimum:  # type: ignore[operator]
        raise ValueError(f"{name} must be >= {minimum}, got {value!r}")
    return value


@dataclass(frozen=True)
class SchedulingSettings:
    """Tunables for locking, retries and request validation."""

    lock_timeout_seconds: float = 5.0
    max_attempts: int = 3
    backoff_factor: float = 0.05
    booking_horizon_days: int = 365
    default_duration_minutes: int = 30
    event_delivery_attempts: int = 3
    dead_letter_limit: int = 1000

    def __post_init__(self) -> None:
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_factor < 0:
            raise ValueError("backoff_factor must not be negative")
        if self.booking_horizon_days < 1:
            raise ValueError("booking_horizon_days must be at least 1")
        if self.default_duration_minutes < 1:
            raise ValueError("default_duration_minutes must be at least 1")
        if self.event_delivery_attempts < 1:
            raise ValueError("event_delivery_attempts must be at least 1")
        if self.dead_letter_limit < 1:
            raise ValueError("dead_letter_limit must be at least 1")

    @property
    def booking_horizon(self) -> timedelta:
        return timedelta(days=self.booking_horizon_days)

    @property
    def default_duration(self) -> timedelta:
        return timedelta(minutes=self.default_duration_minutes)

    def backoff_for(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""

        return self.backoff_factor * (2 ** (attempt - 1))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SchedulingSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            lock_timeout_seconds=_read(
                env, "BOOKING_LOCK_TIMEOUT_SECONDS", float, defaults.lock_timeout_seconds
            ),
            max_attempts=_read(env, "BOOKING_MAX_ATTEMPTS", int, defaults.max_attempts, minimum=1),
            backoff_factor=_read(
                env, "BOOKING_BACKOFF_FACTOR", float, defaults.backoff_factor, minimum=0
            ),
            booking_horizon_days=_read(
                env, "BOOKING_HORIZON_DAYS", int, defaults.booking_horizon_days, minimum=1
            ),
            default_duration_minutes=_read(
                env,
                "BOOKING_DEFAULT_DURATION_MINUTES",
                int,
                defaults.default_duration_minutes,
                minimum=1,
            ),
            event_delivery_attempts=_read(
                env,
                "BOOKING_EVENT_DELIVERY_ATTEMPTS",
                int,
                defaults.event_delivery_attempts,
                minimum=1,
            ),
            dead_letter_limit=_read(
                env, "BOOKING_DEAD_LETTER_LIMIT", int, defaults.dead_letter_limit, minimum=1
            ),
        )
