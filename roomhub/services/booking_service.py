"""Booking state machine: creation, approval, check-in, release, expiry and cancel.

Every transition is decided twice: once here against the derived
:class:`LifecycleState` (to produce a precise typed rejection), and once by
the repository's conditional write, which is what actually guarantees
correctness under concurrent callers. When the write affects no row the
booking is re-read and the current state explains the rejection.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from roomhub.domain.constraints import validate_window
from roomhub.domain.errors import (
    AutoReleaseNotScheduled,
    ConflictError,
    NotFoundError,
    ValidationError,
    WindowExpired,
    WindowNotOpenYet,
)
from roomhub.domain.lifecycle import LifecycleState, Transition, derive_state, ensure_transition
from roomhub.domain.models import (
    AutoReleaseResult,
    AvailabilityResult,
    Booking,
    BookingStatus,
    CheckInResult,
    CheckInStatus,
)
from roomhub.domain.time_window import TimeWindow
from roomhub.repository.data_repository import DataRepository
from roomhub.services.availability_service import (
    VALIDATION_REASONS,
    AvailabilityResolver,
    evaluate,
    quota_windows,
)
from roomhub.services.notification_service import NotificationDispatcher, dispatch_safely
from roomhub.utils.clock import Clock, SystemClock
from roomhub.utils.config import Settings, get_settings
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)

PENDING_EXPIRED_REASON = "expired_before_approval"


def rejection_error(result: AvailabilityResult) -> Exception:
    """Typed error for a negative availability verdict."""
    reason = result.reason or "unavailable"
    message = result.message or reason
    if reason in VALIDATION_REASONS:
        return ValidationError(message, code=reason)
    return ConflictError(message, code=reason)


class BookingService:
    def __init__(
        self,
        repository: DataRepository,
        resolver: AvailabilityResolver,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self._repository = repository
        self._resolver = resolver
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._dispatcher = dispatcher

    def _require_booking(self, booking_id: str) -> Booking:
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
        return booking

    def _notify(self, event: str, booking: Booking, **extra: Any) -> None:
        payload: dict[str, Any] = {
            "booking_id": booking.booking_id,
            "room_id": booking.room_id,
            "user_id": booking.user_id,
            "title": booking.title,
            "start_time": booking.start_time.isoformat(),
            "end_time": booking.end_time.isoformat(),
        }
        payload.update(extra)
        dispatch_safely(self._dispatcher, event, payload)

    def _raise_current_rejection(self, booking_id: str, transition: Transition, now: datetime) -> None:
        """Explain a conditional write that matched no row."""
        current = self._require_booking(booking_id)
        ensure_transition(derive_state(current, now), transition)
        raise ConflictError(
            f"booking {booking_id} was modified concurrently",
            code="concurrent_update",
        )

    def get_booking(self, booking_id: str) -> Booking:
        return self._require_booking(booking_id)

    def create_booking(
        self,
        room_id: str,
        user_id: str,
        window: TimeWindow,
        title: str,
        description: Optional[str] = None,
        check_in_required: bool = True,
        grace_period_minutes: Optional[int] = None,
    ) -> Booking:
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required", code="invalid_booking")
        if not title or not title.strip():
            raise ValidationError("title is required", code="invalid_booking")
        grace = (
            self._settings.default_grace_period_minutes
            if grace_period_minutes is None
            else grace_period_minutes
        )
        if grace < 0:
            raise ValidationError("grace period must be >= 0 minutes", code="invalid_booking")
        validate_window(window)

        room = self._resolver.require_room(room_id)
        now = self._clock.now()
        snapshot = self._resolver.load_snapshot(room, window, user_id, now)
        verdict = evaluate(snapshot, window, now)
        if not verdict.bookable:
            logger.info("Booking request on room %s rejected: %s", room_id, verdict.reason)
            raise rejection_error(verdict)

        auto_approve = self._settings.auto_approve_bookings
        status = BookingStatus.CONFIRMED if auto_approve else BookingStatus.PENDING
        auto_release_at = None
        if auto_approve and check_in_required:
            auto_release_at = window.start + timedelta(minutes=grace)

        candidate = Booking(
            booking_id=str(uuid4()),
            room_id=room_id,
            user_id=user_id.strip(),
            title=title.strip(),
            description=description,
            window=window,
            status=status,
            check_in_required=check_in_required,
            grace_period_minutes=grace,
            auto_release_at=auto_release_at,
            created_at=now,
            updated_at=now,
        )
        outcome = self._repository.reserve_if_free(
            candidate,
            guard_window=window.expanded(room.buffer_minutes),
            now=now,
            quotas=quota_windows(room, window),
        )
        if not outcome.reserved:
            logger.info(
                "Reservation for room %s lost at commit time: %s",
                room_id,
                outcome.reason,
            )
            raise ConflictError(
                "requested window is no longer available",
                code=outcome.reason or "booking_conflict",
            )

        booking = outcome.booking
        logger.info("Booking %s created on room %s as %s", booking.booking_id, room_id, booking.status.value)
        self._notify("booking_created", booking, status=booking.status.value)
        return booking

    @staticmethod
    def _ensure_not_started(booking: Booking, now: datetime) -> None:
        if booking.status is BookingStatus.PENDING and now >= booking.start_time:
            raise WindowExpired(f"booking {booking.booking_id} started before it was approved")

    def approve_booking(self, booking_id: str) -> Booking:
        booking = self._require_booking(booking_id)
        now = self._clock.now()
        if booking.status is BookingStatus.CONFIRMED:
            return booking
        ensure_transition(derive_state(booking, now), Transition.APPROVE)
        self._ensure_not_started(booking, now)

        auto_release_at = None
        if booking.check_in_required:
            auto_release_at = booking.start_time + timedelta(minutes=booking.grace_period_minutes)
        if not self._repository.confirm_booking(booking_id, auto_release_at, now):
            current = self._require_booking(booking_id)
            if current.status is BookingStatus.CONFIRMED:
                return current
            self._ensure_not_started(current, now)
            self._raise_current_rejection(booking_id, Transition.APPROVE, now)

        confirmed = self._require_booking(booking_id)
        logger.info("Booking %s confirmed; auto-release at %s", booking_id, auto_release_at)
        self._notify("booking_confirmed", confirmed)
        return confirmed

    def reject_booking(self, booking_id: str, reason: Optional[str] = None) -> Booking:
        booking = self._require_booking(booking_id)
        now = self._clock.now()
        ensure_transition(derive_state(booking, now), Transition.REJECT)
        if not self._repository.reject_booking(booking_id, reason, now):
            self._raise_current_rejection(booking_id, Transition.REJECT, now)

        rejected = self._require_booking(booking_id)
        logger.info("Booking %s rejected", booking_id)
        self._notify("booking_rejected", rejected, reason=reason)
        return rejected

    def cancel_booking(self, booking_id: str, reason: Optional[str] = None) -> Booking:
        booking = self._require_booking(booking_id)
        now = self._clock.now()
        if booking.status is BookingStatus.CANCELLED:
            return booking
        if now >= booking.end_time:
            raise WindowExpired(f"booking {booking_id} has already ended")
        ensure_transition(derive_state(booking, now), Transition.CANCEL)

        if not self._repository.cancel_booking(booking_id, reason, now):
            current = self._require_booking(booking_id)
            if current.status is BookingStatus.CANCELLED:
                return current
            if now >= current.end_time:
                raise WindowExpired(f"booking {booking_id} has already ended")
            self._raise_current_rejection(booking_id, Transition.CANCEL, now)

        cancelled = self._require_booking(booking_id)
        logger.info("Booking %s cancelled", booking_id)
        self._notify("booking_cancelled", cancelled, reason=reason)
        return cancelled

    def check_in_opens_at(self, booking: Booking) -> datetime:
        return booking.start_time - timedelta(minutes=self._settings.check_in_open_lead_minutes)

    def _ensure_check_in_window(self, booking: Booking, now: datetime) -> None:
        if now < self.check_in_opens_at(booking):
            raise WindowNotOpenYet(
                f"check-in opens at {self.check_in_opens_at(booking).isoformat()}"
            )
        if now >= booking.grace_deadline:
            raise WindowExpired("check-in window has closed")

    def check_in(self, booking_id: str, acting_user_id: Optional[str] = None) -> CheckInResult:
        """Record organizer check-in; repeating it returns the original timestamp."""
        booking = self._require_booking(booking_id)
        now = self._clock.now()
        state = derive_state(booking, now)
        if state is LifecycleState.CHECKED_IN:
            return CheckInResult(booking_id, booking.checked_in_at, already_checked_in=True)
        if state is LifecycleState.CONFIRMED:
            self._ensure_check_in_window(booking, now)
        ensure_transition(state, Transition.CHECK_IN)

        if not self._repository.mark_checked_in(booking_id, now, acting_user_id):
            current = self._require_booking(booking_id)
            if current.checked_in_at is not None:
                return CheckInResult(booking_id, current.checked_in_at, already_checked_in=True)
            current_state = derive_state(current, now)
            if current_state is LifecycleState.CONFIRMED:
                raise WindowExpired("check-in window has closed")
            self._raise_current_rejection(booking_id, Transition.CHECK_IN, now)

        logger.info("Booking %s checked in by %s", booking_id, acting_user_id or "organizer")
        self._notify("booking_checked_in", booking, checked_in_at=now.isoformat())
        return CheckInResult(booking_id, now, already_checked_in=False)

    def auto_release(self, booking_id: str) -> AutoReleaseResult:
        """Vacate a confirmed booking whose organizer missed the grace period."""
        booking = self._require_booking(booking_id)
        now = self._clock.now()
        if booking.auto_released_at is not None and booking.checked_in_at is None:
            return AutoReleaseResult(booking_id, booking.auto_released_at, already_released=True)

        state = derive_state(booking, now)
        if state is LifecycleState.CONFIRMED:
            if booking.auto_release_at is None:
                raise AutoReleaseNotScheduled(f"booking {booking_id} does not require check-in")
            raise WindowNotOpenYet(
                f"grace period runs until {booking.auto_release_at.isoformat()}"
            )
        ensure_transition(state, Transition.AUTO_RELEASE)

        if not self._repository.mark_auto_released(booking_id, now):
            current = self._require_booking(booking_id)
            if current.auto_released_at is not None and current.checked_in_at is None:
                return AutoReleaseResult(booking_id, current.auto_released_at, already_released=True)
            self._raise_current_rejection(booking_id, Transition.AUTO_RELEASE, now)

        logger.info("Booking %s auto-released; organizer did not check in", booking_id)
        self._notify("booking_auto_released", booking, auto_released_at=now.isoformat())
        return AutoReleaseResult(booking_id, now, already_released=False)

    def expire_pending(self, limit: Optional[int] = None) -> list[Booking]:
        """Cancel pending requests that reached their start time unapproved."""
        now = self._clock.now()
        expired = self._repository.expire_pending_bookings(now, PENDING_EXPIRED_REASON, limit=limit)
        for booking in expired:
            logger.info("Pending booking %s expired at its start time", booking.booking_id)
            self._notify("booking_expired", booking, reason=PENDING_EXPIRED_REASON)
        return expired

    def get_check_in_status(self, booking_id: str) -> CheckInStatus:
        booking = self._require_booking(booking_id)
        now = self._clock.now()
        state = derive_state(booking, now)
        opens_at = self.check_in_opens_at(booking)
        can_check_in = (
            state is LifecycleState.CONFIRMED
            and opens_at <= now < booking.grace_deadline
        )
        return CheckInStatus(
            booking_id=booking_id,
            is_checked_in=booking.checked_in_at is not None,
            checked_in_at=booking.checked_in_at,
            check_in_required=booking.check_in_required,
            grace_period_minutes=booking.grace_period_minutes,
            check_in_opens_at=opens_at,
            grace_deadline=booking.grace_deadline,
            auto_release_scheduled=booking.auto_release_at is not None and booking.checked_in_at is None,
            can_check_in=can_check_in,
        )
