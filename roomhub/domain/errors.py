"""Typed failures shared by every service.

Each error carries a stable ``code`` so callers (HTTP handlers, the sweep,
kiosk clients) can branch without matching on message text.
"""

from __future__ import annotations

from typing import Optional


class BookingCoreError(Exception):
    """Base failure for the booking core."""

    code = "booking_core_error"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None) -> None:
        if code is not None:
            self.code = code
        super().__init__(message or self.code)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(BookingCoreError, ValueError):
    """Malformed input: inverted window, naive datetime, bad code format."""

    code = "validation_error"


class InvalidAttendanceToken(ValidationError):
    code = "invalid_token"


class ConflictError(BookingCoreError):
    """Requested window is not available (overlap, blackout, quota, policy)."""

    code = "conflict"


class NotFoundError(BookingCoreError):
    code = "not_found"


class UpstreamTimeout(BookingCoreError):
    """The store did not answer within the configured timeout."""

    code = "upstream_timeout"


class GuardViolation(BookingCoreError):
    """A lifecycle precondition does not hold for the booking's current state."""

    code = "guard_violation"


class AlreadyCheckedIn(GuardViolation):
    code = "already_checked_in"


class WindowNotOpenYet(GuardViolation):
    code = "window_not_open_yet"


class WindowExpired(GuardViolation):
    code = "window_expired"


class NotConfirmed(GuardViolation):
    code = "not_confirmed"


class NotPending(GuardViolation):
    code = "not_pending"


class NotCheckedIn(GuardViolation):
    code = "organizer_not_checked_in"


class AutoReleaseNotScheduled(GuardViolation):
    code = "auto_release_not_scheduled"


class AttendanceTokenExpired(GuardViolation):
    code = "token_expired"


class CodeMismatch(GuardViolation):
    code = "code_mismatch"


class TooManyAttempts(GuardViolation):
    code = "too_many_attempts"


class RateLimited(GuardViolation):
    code = "rate_limited"
