"""Domain-level validation rules for room policies, blackouts and codes."""

from __future__ import annotations

import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from roomhub.domain.errors import ValidationError
from roomhub.domain.models import Blackout, Room
from roomhub.domain.time_window import TimeWindow


def validate_room_policy(room: Room) -> None:
    if not room.name.strip():
        raise ValidationError("room name must be non-empty", code="invalid_room")
    if room.capacity <= 0:
        raise ValidationError("capacity must be > 0", code="invalid_room")
    if not 15 <= room.min_duration_minutes <= 480:
        raise ValidationError(
            "minimum booking duration must be between 15 and 480 minutes",
            code="invalid_policy",
        )
    if not 30 <= room.max_duration_minutes <= 1440:
        raise ValidationError(
            "maximum booking duration must be between 30 and 1440 minutes",
            code="invalid_policy",
        )
    if room.max_duration_minutes < room.min_duration_minutes:
        raise ValidationError(
            "maximum booking duration must be >= minimum booking duration",
            code="invalid_policy",
        )
    if not 0 <= room.buffer_minutes <= 60:
        raise ValidationError("buffer time must be between 0 and 60 minutes", code="invalid_policy")
    if not 1 <= room.advance_booking_days <= 365:
        raise ValidationError("advance booking days must be between 1 and 365", code="invalid_policy")
    for cap_name, cap in (
        ("max_bookings_per_user_per_day", room.max_bookings_per_user_per_day),
        ("max_bookings_per_user_per_week", room.max_bookings_per_user_per_week),
    ):
        if cap is not None and cap < 1:
            raise ValidationError(f"{cap_name} must be >= 1 when set", code="invalid_policy")
    validate_timezone(room.timezone)
    for day in room.operating_hours.days:
        if day.enabled and day.open_minute >= day.close_minute:
            raise ValidationError(
                "operating hours start must be before end on enabled days",
                code="invalid_policy",
            )


def validate_timezone(name: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"unknown timezone {name!r}", code="invalid_policy") from exc


def validate_window(window: TimeWindow) -> None:
    if not window.is_positive:
        raise ValidationError("end time must be after start time", code="invalid_window")


def validate_blackout(blackout: Blackout) -> None:
    if not blackout.title.strip():
        raise ValidationError("blackout title is required", code="invalid_blackout")
    validate_window(blackout.window)
    recurrence = blackout.recurrence
    if recurrence is not None:
        if recurrence.interval < 1:
            raise ValidationError("recurrence interval must be >= 1", code="invalid_blackout")
        if recurrence.until is not None and recurrence.until < blackout.window.start:
            raise ValidationError(
                "recurrence end must not precede the first occurrence",
                code="invalid_blackout",
            )
        if blackout.window.duration >= recurrence.period:
            raise ValidationError(
                "a recurring blackout must be shorter than its recurrence period",
                code="invalid_blackout",
            )


ATTENDANCE_CODE_LENGTH = 4
_CODE_PATTERN = re.compile(rf"^\d{{{ATTENDANCE_CODE_LENGTH}}}$")


def validate_attendance_code(code: str) -> None:
    if not _CODE_PATTERN.fullmatch(code or ""):
        raise ValidationError(
            f"invalid code format, code must be {ATTENDANCE_CODE_LENGTH} digits",
            code="invalid_code_format",
        )
