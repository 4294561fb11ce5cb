"""Availability resolver: decides whether a room may be booked for a window.

The resolver loads one read-only snapshot of everything a decision depends on
(room policy, active blackouts, occupying bookings near the window, the
requester's quota counts) and evaluates a pure, fail-fast rule chain over it.
The same rules are re-applied under the write lock when a booking is created.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from roomhub.domain.errors import NotFoundError
from roomhub.domain.lifecycle import is_occupying
from roomhub.domain.models import (
    MINUTES_PER_DAY,
    WEEKDAYS,
    AvailabilityResult,
    Blackout,
    Booking,
    Room,
    SlotOption,
    format_clock_time,
)
from roomhub.domain.time_window import TimeWindow
from roomhub.repository.data_repository import DataRepository, QuotaWindow
from roomhub.utils.clock import Clock, SystemClock
from roomhub.utils.config import Settings, get_settings
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)

DAILY_QUOTA_REASON = "daily_quota_exceeded"
WEEKLY_QUOTA_REASON = "weekly_quota_exceeded"

# Reasons that describe a malformed request rather than an unavailable slot.
VALIDATION_REASONS = frozenset({"invalid_window", "duration_too_short", "duration_too_long"})


@dataclass(frozen=True)
class AvailabilitySnapshot:
    room: Room
    blackouts: tuple[Blackout, ...]
    bookings: tuple[Booking, ...]
    daily_count: int = 0
    weekly_count: int = 0


def _local_minute(value: datetime, *, round_up: bool = False) -> int:
    minutes = value.hour * 60 + value.minute
    if round_up and (value.second or value.microsecond):
        minutes += 1
    return minutes


def local_day_bounds(day: date, tz: ZoneInfo) -> TimeWindow:
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return TimeWindow(start, end)


def quota_windows(room: Room, window: TimeWindow) -> list[QuotaWindow]:
    """Calendar periods (in the room's zone) the per-user caps apply to."""
    tz = ZoneInfo(room.timezone)
    local_day = window.start.astimezone(tz).date()
    quotas: list[QuotaWindow] = []
    if room.max_bookings_per_user_per_day is not None:
        quotas.append(
            QuotaWindow(
                reason=DAILY_QUOTA_REASON,
                window=local_day_bounds(local_day, tz),
                cap=room.max_bookings_per_user_per_day,
            )
        )
    if room.max_bookings_per_user_per_week is not None:
        monday = local_day - timedelta(days=local_day.weekday())
        week = TimeWindow(
            local_day_bounds(monday, tz).start,
            local_day_bounds(monday + timedelta(days=6), tz).end,
        )
        quotas.append(
            QuotaWindow(
                reason=WEEKLY_QUOTA_REASON,
                window=week,
                cap=room.max_bookings_per_user_per_week,
            )
        )
    return quotas


def _check_window(snapshot: AvailabilitySnapshot, window: TimeWindow, now: datetime) -> Optional[AvailabilityResult]:
    room = snapshot.room
    if not window.is_positive:
        return AvailabilityResult.rejected("invalid_window", "end time must be after start time")
    duration = window.duration_minutes
    if duration < room.min_duration_minutes:
        return AvailabilityResult.rejected(
            "duration_too_short",
            f"minimum booking duration is {room.min_duration_minutes} minutes",
        )
    if duration > room.max_duration_minutes:
        return AvailabilityResult.rejected(
            "duration_too_long",
            f"maximum booking duration is {room.max_duration_minutes} minutes",
        )
    if window.end <= now:
        return AvailabilityResult.rejected("window_elapsed", "the requested window has already ended")
    return None


def _check_horizon(snapshot: AvailabilitySnapshot, window: TimeWindow, now: datetime) -> Optional[AvailabilityResult]:
    room = snapshot.room
    tz = ZoneInfo(room.timezone)
    start_day = window.start.astimezone(tz).date()
    today = now.astimezone(tz).date()
    if start_day > today + timedelta(days=room.advance_booking_days):
        return AvailabilityResult.rejected(
            "beyond_advance_window",
            f"bookings can only be made {room.advance_booking_days} days in advance",
        )
    if start_day <= today and not room.same_day_booking_enabled:
        return AvailabilityResult.rejected("same_day_disabled", "same-day bookings are not allowed for this room")
    return None


def _check_operating_hours(
    snapshot: AvailabilitySnapshot,
    window: TimeWindow,
    now: datetime,
) -> Optional[AvailabilityResult]:
    room = snapshot.room
    tz = ZoneInfo(room.timezone)
    local_start = window.start.astimezone(tz)
    local_end = window.end.astimezone(tz)
    first_day = local_start.date()
    last_day = (local_end - timedelta(microseconds=1)).date()

    day = first_day
    while day <= last_day:
        hours = room.operating_hours.for_weekday(day.weekday())
        if not hours.enabled:
            return AvailabilityResult.rejected("room_closed", f"room is closed on {WEEKDAYS[day.weekday()]}")
        segment_start = _local_minute(local_start) if day == first_day else 0
        segment_end = _local_minute(local_end, round_up=True) if day == local_end.date() else MINUTES_PER_DAY
        if segment_start < hours.open_minute or segment_end > hours.close_minute:
            return AvailabilityResult.rejected(
                "outside_operating_hours",
                "booking must be within operating hours "
                f"{format_clock_time(hours.open_minute)}-{format_clock_time(hours.close_minute)}",
            )
        day += timedelta(days=1)
    return None


def _check_blackouts(snapshot: AvailabilitySnapshot, window: TimeWindow, now: datetime) -> Optional[AvailabilityResult]:
    for blackout in snapshot.blackouts:
        if blackout.blocks(window):
            return AvailabilityResult.rejected(
                "blackout",
                f"room is unavailable: {blackout.title} ({blackout.blackout_type.value})",
            )
    return None


def _check_bookings(snapshot: AvailabilitySnapshot, window: TimeWindow, now: datetime) -> Optional[AvailabilityResult]:
    guard = window.expanded(snapshot.room.buffer_minutes)
    for booking in snapshot.bookings:
        if is_occupying(booking, now) and booking.window.overlaps(guard):
            if booking.window.overlaps(window):
                message = "time slot conflicts with an existing booking"
            else:
                message = f"a {snapshot.room.buffer_minutes} minute buffer is required between bookings"
            return AvailabilityResult.rejected("booking_conflict", message)
    return None


def _check_quotas(snapshot: AvailabilitySnapshot, window: TimeWindow, now: datetime) -> Optional[AvailabilityResult]:
    room = snapshot.room
    daily_cap = room.max_bookings_per_user_per_day
    if daily_cap is not None and snapshot.daily_count >= daily_cap:
        return AvailabilityResult.rejected(
            DAILY_QUOTA_REASON,
            f"maximum {daily_cap} booking(s) per day reached",
        )
    weekly_cap = room.max_bookings_per_user_per_week
    if weekly_cap is not None and snapshot.weekly_count >= weekly_cap:
        return AvailabilityResult.rejected(
            WEEKLY_QUOTA_REASON,
            f"maximum {weekly_cap} booking(s) per week reached",
        )
    return None


Rule = Callable[[AvailabilitySnapshot, TimeWindow, datetime], Optional[AvailabilityResult]]

RULES: tuple[Rule, ...] = (
    _check_window,
    _check_horizon,
    _check_operating_hours,
    _check_blackouts,
    _check_bookings,
    _check_quotas,
)


def evaluate(snapshot: AvailabilitySnapshot, window: TimeWindow, now: datetime) -> AvailabilityResult:
    """Run the rule chain, stopping at the first rejection."""
    for rule in RULES:
        verdict = rule(snapshot, window, now)
        if verdict is not None:
            return verdict
    return AvailabilityResult.ok()


class AvailabilityResolver:
    """Loads availability snapshots and evaluates them against the clock."""

    def __init__(
        self,
        repository: DataRepository,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()

    def require_room(self, room_id: str) -> Room:
        room = self._repository.get_room(room_id)
        if room is None:
            raise NotFoundError(f"room {room_id} not found", code="room_not_found")
        return room

    def load_snapshot(
        self,
        room: Room,
        span: TimeWindow,
        user_id: Optional[str],
        now: datetime,
    ) -> AvailabilitySnapshot:
        blackouts = tuple(self._repository.list_active_blackouts(room.room_id))
        bookings: tuple[Booking, ...] = ()
        if span.is_positive:
            bookings = tuple(
                self._repository.list_occupying_bookings(
                    room.room_id,
                    span.expanded(room.buffer_minutes),
                    now,
                )
            )
        daily_count = weekly_count = 0
        if user_id and span.is_positive:
            for quota in quota_windows(room, span):
                held = self._repository.count_user_bookings(room.room_id, user_id, quota.window)
                if quota.reason == DAILY_QUOTA_REASON:
                    daily_count = held
                else:
                    weekly_count = held
        return AvailabilitySnapshot(
            room=room,
            blackouts=blackouts,
            bookings=bookings,
            daily_count=daily_count,
            weekly_count=weekly_count,
        )

    def check_availability(
        self,
        room_id: str,
        window: TimeWindow,
        user_id: Optional[str] = None,
    ) -> AvailabilityResult:
        room = self.require_room(room_id)
        now = self._clock.now()
        snapshot = self.load_snapshot(room, window, user_id, now)
        result = evaluate(snapshot, window, now)
        if not result.bookable:
            logger.info(
                "Window %s - %s on room %s rejected: %s",
                window.start.isoformat(),
                window.end.isoformat(),
                room_id,
                result.reason,
            )
        return result

    def list_slots(
        self,
        room_id: str,
        day: date,
        user_id: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> list[SlotOption]:
        """Enumerate candidate windows across one local day's opening hours."""
        room = self.require_room(room_id)
        hours = room.operating_hours.for_weekday(day.weekday())
        if not hours.enabled:
            return []

        duration = duration_minutes or room.min_duration_minutes
        step = max(1, self._settings.slot_step_minutes)
        tz = ZoneInfo(room.timezone)
        now = self._clock.now()

        candidates: list[TimeWindow] = []
        last_start = hours.close_minute - duration
        for offset in range(hours.open_minute, last_start + 1, step):
            start = datetime.combine(day, time.min, tzinfo=tz) + timedelta(minutes=offset)
            candidates.append(TimeWindow(start, start + timedelta(minutes=duration)))
        if not candidates:
            return []

        # All candidates share one local day and week, so one snapshot covers them.
        span = TimeWindow(candidates[0].start, candidates[-1].end)
        snapshot = self.load_snapshot(room, span, user_id, now)
        return [_slot(snapshot, candidate, now) for candidate in candidates]


def _slot(snapshot: AvailabilitySnapshot, window: TimeWindow, now: datetime) -> SlotOption:
    result = evaluate(snapshot, window, now)
    return SlotOption(window=window, available=result.bookable, reason=result.reason)
