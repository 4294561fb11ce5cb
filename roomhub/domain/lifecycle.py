"""Explicit lifecycle variant over the persisted nullable-field encoding.

Storage keeps ``status`` plus ``checked_in_at`` / ``auto_release_at``; the
services reason about the derived :class:`LifecycleState` instead of field
combinations.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from roomhub.domain.errors import (
    AlreadyCheckedIn,
    AutoReleaseNotScheduled,
    GuardViolation,
    NotConfirmed,
    NotPending,
    WindowExpired,
)
from roomhub.domain.models import Booking, BookingStatus


class LifecycleState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    AUTO_RELEASED = "auto_released"
    CANCELLED = "cancelled"


class Transition(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CHECK_IN = "check_in"
    AUTO_RELEASE = "auto_release"
    CANCEL = "cancel"


TRANSITIONS: dict[LifecycleState, dict[Transition, LifecycleState]] = {
    LifecycleState.PENDING: {
        Transition.APPROVE: LifecycleState.CONFIRMED,
        Transition.REJECT: LifecycleState.CANCELLED,
        Transition.CANCEL: LifecycleState.CANCELLED,
    },
    LifecycleState.CONFIRMED: {
        Transition.CHECK_IN: LifecycleState.CHECKED_IN,
        Transition.CANCEL: LifecycleState.CANCELLED,
    },
    LifecycleState.AUTO_RELEASED: {
        Transition.AUTO_RELEASE: LifecycleState.AUTO_RELEASED,
        Transition.CANCEL: LifecycleState.CANCELLED,
    },
    LifecycleState.CHECKED_IN: {},
    LifecycleState.CANCELLED: {},
}

# Rejection raised when a transition is missing from TRANSITIONS for a state.
_REJECTIONS: dict[LifecycleState, type[GuardViolation]] = {
    LifecycleState.PENDING: NotConfirmed,
    LifecycleState.CONFIRMED: AutoReleaseNotScheduled,
    LifecycleState.CHECKED_IN: AlreadyCheckedIn,
    LifecycleState.AUTO_RELEASED: WindowExpired,
    LifecycleState.CANCELLED: NotConfirmed,
}


def derive_state(booking: Booking, now: datetime) -> LifecycleState:
    if booking.status is BookingStatus.CANCELLED:
        return LifecycleState.CANCELLED
    if booking.status is BookingStatus.PENDING:
        return LifecycleState.PENDING
    if booking.checked_in_at is not None:
        return LifecycleState.CHECKED_IN
    if booking.auto_released_at is not None:
        return LifecycleState.AUTO_RELEASED
    if booking.auto_release_at is not None and booking.auto_release_at <= now:
        return LifecycleState.AUTO_RELEASED
    return LifecycleState.CONFIRMED


def is_occupying(booking: Booking, now: datetime) -> bool:
    """Whether the booking still holds its room slot at ``now``.

    A pending request stops holding the slot once its start passes unapproved.
    """
    state = derive_state(booking, now)
    if state is LifecycleState.PENDING:
        return now < booking.start_time
    return state in (LifecycleState.CONFIRMED, LifecycleState.CHECKED_IN)


def ensure_transition(state: LifecycleState, transition: Transition) -> LifecycleState:
    """Return the target state or raise the typed rejection for ``state``."""
    targets = TRANSITIONS[state]
    if transition in targets:
        return targets[transition]
    if transition is Transition.APPROVE or transition is Transition.REJECT:
        raise NotPending(f"cannot {transition.value} a booking in state {state.value}")
    raise _REJECTIONS[state](f"cannot {transition.value} a booking in state {state.value}")
