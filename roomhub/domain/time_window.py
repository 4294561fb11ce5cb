"""Half-open ``[start, end)`` interval on the absolute (UTC) timeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from roomhub.domain.errors import ValidationError


def ensure_aware(value: datetime, field_name: str = "datetime") -> datetime:
    """Normalise an aware datetime to UTC; naive values are rejected."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValidationError(
            f"{field_name} must be timezone-aware",
            code="naive_datetime",
        )
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        # Duration is not checked here; the resolver owns that rule.
        object.__setattr__(self, "start", ensure_aware(self.start, "start"))
        object.__setattr__(self, "end", ensure_aware(self.end, "end"))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def duration_minutes(self) -> float:
        return self.duration.total_seconds() / 60.0

    @property
    def is_positive(self) -> bool:
        return self.end > self.start

    def overlaps(self, other: TimeWindow) -> bool:
        """Strict intersection; windows that only touch do not overlap."""
        return self.start < other.end and other.start < self.end

    def contains(self, point: datetime) -> bool:
        instant = ensure_aware(point, "point")
        return self.start <= instant < self.end

    def minutes_until(self, point: datetime) -> float:
        """Minutes from ``point`` until the window starts (negative once started)."""
        instant = ensure_aware(point, "point")
        return (self.start - instant).total_seconds() / 60.0

    def expanded(self, minutes: int) -> TimeWindow:
        delta = timedelta(minutes=minutes)
        return TimeWindow(self.start - delta, self.end + delta)

    def shifted(self, delta: timedelta) -> TimeWindow:
        return TimeWindow(self.start + delta, self.end + delta)


def overlaps(a: TimeWindow, b: TimeWindow) -> bool:
    return a.overlaps(b)
