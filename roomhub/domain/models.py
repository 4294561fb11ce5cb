"""Domain records for rooms, bookings and meeting attendance."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from roomhub.domain.time_window import TimeWindow


WEEKDAYS: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)
MINUTES_PER_DAY = 24 * 60


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


OCCUPYING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class BlackoutType(str, Enum):
    MAINTENANCE = "maintenance"
    CLEANING = "cleaning"
    EVENT = "event"
    HOLIDAY = "holiday"
    REPAIR = "repair"
    OTHER = "other"


class RecurrenceFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class AttendanceStatus(str, Enum):
    NOT_PRESENT = "not_present"
    PRESENT = "present"


class RsvpStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class AttendanceEventKind(str, Enum):
    QR_ISSUED = "qr_issued"
    CODE_SENT = "code_sent"
    VERIFY_SUCCESS = "verify_success"
    VERIFY_FAILED = "verify_failed"


def parse_clock_time(value: str) -> int:
    """Convert ``HH:MM`` into minutes after midnight; ``24:00`` means end of day."""
    parts = value.split(":")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ValueError(f"time {value!r} must follow HH:MM format")
    hours, minutes = (int(part) for part in parts)
    if hours == 24 and minutes == 0:
        return MINUTES_PER_DAY
    if not 0 <= hours <= 23 or not 0 <= minutes <= 59:
        raise ValueError(f"time {value!r} is out of range")
    return hours * 60 + minutes


def format_clock_time(minute_of_day: int) -> str:
    return f"{minute_of_day // 60:02d}:{minute_of_day % 60:02d}"


@dataclass(frozen=True)
class DayHours:
    enabled: bool
    open_minute: int
    close_minute: int

    @classmethod
    def from_strings(cls, enabled: bool, start: str, end: str) -> DayHours:
        return cls(enabled=enabled, open_minute=parse_clock_time(start), close_minute=parse_clock_time(end))

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "start": format_clock_time(self.open_minute),
            "end": format_clock_time(self.close_minute),
        }


@dataclass(frozen=True)
class OperatingHours:
    """Per-weekday opening profile, indexed Monday=0 like ``date.weekday()``."""

    days: tuple[DayHours, ...]

    def for_weekday(self, weekday: int) -> DayHours:
        return self.days[weekday]

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {name: self.days[index].to_dict() for index, name in enumerate(WEEKDAYS)}

    @classmethod
    def from_dict(cls, payload: dict[str, dict[str, Any]]) -> OperatingHours:
        days = []
        for name in WEEKDAYS:
            if name not in payload:
                raise ValueError(f"operating hours for {name} are missing")
            day = payload[name]
            days.append(DayHours.from_strings(bool(day["enabled"]), str(day["start"]), str(day["end"])))
        return cls(days=tuple(days))

    @classmethod
    def default(cls) -> OperatingHours:
        weekday = DayHours.from_strings(True, "08:00", "18:00")
        weekend = DayHours.from_strings(False, "09:00", "17:00")
        return cls(days=(weekday,) * 5 + (weekend,) * 2)


@dataclass(frozen=True)
class Room:
    room_id: str
    name: str
    capacity: int
    timezone: str
    operating_hours: OperatingHours
    buffer_minutes: int
    min_duration_minutes: int
    max_duration_minutes: int
    advance_booking_days: int
    same_day_booking_enabled: bool
    max_bookings_per_user_per_day: Optional[int]
    max_bookings_per_user_per_week: Optional[int]


@dataclass(frozen=True)
class Recurrence:
    frequency: RecurrenceFrequency
    interval: int = 1
    until: Optional[datetime] = None

    @property
    def period(self) -> timedelta:
        days = 1 if self.frequency is RecurrenceFrequency.DAILY else 7
        return timedelta(days=days * self.interval)


@dataclass(frozen=True)
class Blackout:
    blackout_id: str
    room_id: str
    title: str
    window: TimeWindow
    blackout_type: BlackoutType
    is_active: bool
    description: Optional[str] = None
    recurrence: Optional[Recurrence] = None

    def blocks(self, window: TimeWindow) -> bool:
        """True when this blackout (or any of its recurrences) overlaps ``window``."""
        if not self.is_active:
            return False
        if self.recurrence is None:
            return self.window.overlaps(window)

        period = self.recurrence.period
        # Occurrence k covers [start + k*period, end + k*period); only the
        # k values whose shifted window can reach the request are checked.
        first = max(0, (window.start - self.window.end) // period)
        last = (window.end - self.window.start) // period
        for k in range(int(first), int(last) + 1):
            occurrence = self.window.shifted(period * k)
            if self.recurrence.until is not None and occurrence.start > self.recurrence.until:
                break
            if occurrence.overlaps(window):
                return True
        return False


@dataclass(frozen=True)
class Booking:
    booking_id: str
    room_id: str
    user_id: str
    title: str
    window: TimeWindow
    status: BookingStatus
    check_in_required: bool = True
    grace_period_minutes: int = 15
    checked_in_at: Optional[datetime] = None
    checked_in_by: Optional[str] = None
    auto_release_at: Optional[datetime] = None
    auto_released_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    description: Optional[str] = None
    present_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def start_time(self) -> datetime:
        return self.window.start

    @property
    def end_time(self) -> datetime:
        return self.window.end

    @property
    def grace_deadline(self) -> datetime:
        """Latest instant the organizer may check in."""
        if self.auto_release_at is not None:
            return self.auto_release_at
        return self.window.start + timedelta(minutes=self.grace_period_minutes)


@dataclass(frozen=True)
class Invitation:
    invitation_id: str
    booking_id: str
    invitee_email: str
    invitee_name: Optional[str]
    rsvp_status: RsvpStatus
    attendance_status: AttendanceStatus
    attended_at: Optional[datetime] = None
    code_hash: Optional[str] = None
    code_salt: Optional[str] = None
    code_expires_at: Optional[datetime] = None
    code_send_count: int = 0
    code_last_sent_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        if self.invitee_name:
            return self.invitee_name
        return self.invitee_email.split("@", 1)[0]


@dataclass(frozen=True)
class AttendanceEvent:
    kind: AttendanceEventKind
    booking_id: str
    created_at: datetime
    invitation_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    event_id: Optional[int] = None


@dataclass(frozen=True)
class AvailabilityResult:
    bookable: bool
    reason: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls) -> AvailabilityResult:
        return cls(bookable=True)

    @classmethod
    def rejected(cls, reason: str, message: str) -> AvailabilityResult:
        return cls(bookable=False, reason=reason, message=message)


@dataclass(frozen=True)
class SlotOption:
    window: TimeWindow
    available: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class CheckInResult:
    booking_id: str
    checked_in_at: datetime
    already_checked_in: bool


@dataclass(frozen=True)
class CheckInStatus:
    booking_id: str
    is_checked_in: bool
    checked_in_at: Optional[datetime]
    check_in_required: bool
    grace_period_minutes: int
    check_in_opens_at: datetime
    grace_deadline: datetime
    auto_release_scheduled: bool
    can_check_in: bool


@dataclass(frozen=True)
class AutoReleaseResult:
    booking_id: str
    auto_released_at: datetime
    already_released: bool


@dataclass(frozen=True)
class SweepItemResult:
    booking_id: str
    success: bool
    auto_released_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SweepReport:
    started_at: datetime
    processed: int
    released: int
    failed: int
    results: list[SweepItemResult]
    expired: int = 0


@dataclass(frozen=True)
class Occupancy:
    booking_id: str
    present: int
    invited: int
    capacity: int

    @property
    def percentage(self) -> int:
        if self.capacity == 0:
            return 0
        return round(self.present / self.capacity * 100)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    booking_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    booking_id: str
    scope: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedCode:
    invitation_id: str
    code: str
    expires_at: datetime
    send_count: int


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    invitation_id: str
    attended_at: Optional[datetime]
    already_present: bool
    occupancy: Optional[Occupancy] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class AttendeeListItem:
    invitation_id: str
    display_name: str
    attendance_status: AttendanceStatus
