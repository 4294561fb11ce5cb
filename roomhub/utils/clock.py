"""Injectable time source shared by the resolver, state machine and sweep."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current instant as an aware UTC datetime."""


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Manually driven clock for deterministic tests and replays."""

    def __init__(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            raise ValueError("FrozenClock requires a timezone-aware instant")
        self._instant = instant.astimezone(timezone.utc)
        self._lock = Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            raise ValueError("FrozenClock requires a timezone-aware instant")
        with self._lock:
            self._instant = instant.astimezone(timezone.utc)

    def advance(self, **delta: float) -> datetime:
        with self._lock:
            self._instant = self._instant + timedelta(**delta)
            return self._instant
