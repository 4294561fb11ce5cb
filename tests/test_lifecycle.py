from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import at, window
from roomhub.domain.errors import (
    AlreadyCheckedIn,
    AutoReleaseNotScheduled,
    NotConfirmed,
    NotPending,
    WindowExpired,
)
from roomhub.domain.lifecycle import (
    TRANSITIONS,
    LifecycleState,
    Transition,
    derive_state,
    ensure_transition,
    is_occupying,
)
from roomhub.domain.models import Booking, BookingStatus


def _booking(**overrides) -> Booking:
    defaults = {
        "booking_id": "bk-1",
        "room_id": "r-1",
        "user_id": "alice",
        "title": "Sync",
        "window": window(9, 0, 10, 0),
        "status": BookingStatus.CONFIRMED,
        "auto_release_at": at(9, 15),
    }
    defaults.update(overrides)
    return Booking(**defaults)


def test_every_state_has_a_transition_row() -> None:
    assert set(TRANSITIONS) == set(LifecycleState)


def test_confirmed_booking_inside_grace_is_confirmed() -> None:
    assert derive_state(_booking(), at(9, 10)) is LifecycleState.CONFIRMED


def test_grace_elapsed_without_check_in_reads_as_auto_released() -> None:
    booking = _booking()

    assert derive_state(booking, at(9, 15)) is LifecycleState.AUTO_RELEASED
    assert not is_occupying(booking, at(9, 16))


def test_checked_in_booking_keeps_occupying() -> None:
    booking = _booking(checked_in_at=at(9, 5), auto_release_at=None)

    assert derive_state(booking, at(9, 30)) is LifecycleState.CHECKED_IN
    assert is_occupying(booking, at(9, 30))


def test_pending_and_cancelled_states() -> None:
    assert derive_state(_booking(status=BookingStatus.PENDING, auto_release_at=None), at(9, 0)) is LifecycleState.PENDING
    cancelled = _booking(status=BookingStatus.CANCELLED)
    assert derive_state(cancelled, at(8, 0)) is LifecycleState.CANCELLED
    assert not is_occupying(cancelled, at(8, 0))


def test_pending_request_stops_occupying_at_its_start() -> None:
    pending = _booking(status=BookingStatus.PENDING, auto_release_at=None)

    assert is_occupying(pending, at(8, 59))
    assert not is_occupying(pending, at(9, 0))
    assert derive_state(pending, at(9, 30)) is LifecycleState.PENDING


def test_booking_without_check_in_never_auto_releases() -> None:
    booking = _booking(check_in_required=False, auto_release_at=None)

    assert derive_state(booking, at(9, 0) + timedelta(hours=5)) is LifecycleState.CONFIRMED


@pytest.mark.parametrize(
    ("state", "transition", "error"),
    [
        (LifecycleState.CHECKED_IN, Transition.AUTO_RELEASE, AlreadyCheckedIn),
        (LifecycleState.CHECKED_IN, Transition.CANCEL, AlreadyCheckedIn),
        (LifecycleState.PENDING, Transition.CHECK_IN, NotConfirmed),
        (LifecycleState.CANCELLED, Transition.CHECK_IN, NotConfirmed),
        (LifecycleState.AUTO_RELEASED, Transition.CHECK_IN, WindowExpired),
        (LifecycleState.CONFIRMED, Transition.AUTO_RELEASE, AutoReleaseNotScheduled),
        (LifecycleState.CONFIRMED, Transition.APPROVE, NotPending),
        (LifecycleState.CANCELLED, Transition.REJECT, NotPending),
    ],
)
def test_rejected_transitions_raise_typed_errors(state, transition, error) -> None:
    with pytest.raises(error):
        ensure_transition(state, transition)


def test_allowed_transitions_return_target_state() -> None:
    assert ensure_transition(LifecycleState.PENDING, Transition.APPROVE) is LifecycleState.CONFIRMED
    assert ensure_transition(LifecycleState.CONFIRMED, Transition.CHECK_IN) is LifecycleState.CHECKED_IN
    assert ensure_transition(LifecycleState.AUTO_RELEASED, Transition.CANCEL) is LifecycleState.CANCELLED
