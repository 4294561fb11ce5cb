from __future__ import annotations

import time
from dataclasses import replace

from conftest import at, window
from roomhub.domain.errors import UpstreamTimeout
from roomhub.domain.models import BookingStatus
from roomhub.services.release_scheduler import AutoReleaseScheduler


class FlakyReleases:
    """Wraps a BookingService and fails selected auto_release calls."""

    def __init__(self, inner, timeouts: int = 0, broken_ids=()) -> None:
        self._inner = inner
        self._timeouts = timeouts
        self._broken_ids = set(broken_ids)
        self.calls = 0

    def auto_release(self, booking_id: str):
        self.calls += 1
        if booking_id in self._broken_ids:
            raise RuntimeError("disk on fire")
        if self._timeouts > 0:
            self._timeouts -= 1
            raise UpstreamTimeout("store did not answer")
        return self._inner.auto_release(booking_id)

    def expire_pending(self, limit=None):
        return self._inner.expire_pending(limit=limit)


def _scheduler(repository, service, settings, clock, sleeps):
    return AutoReleaseScheduler(
        repository=repository,
        booking_service=service,
        settings=settings,
        clock=clock,
        sleep=sleeps.append,
    )


def test_sweep_releases_only_overdue_bookings(scheduler, bookings, clock, confirmed_booking) -> None:
    overdue = confirmed_booking(window(9, 0, 10, 0))
    confirmed_booking(window(11, 0, 12, 0))
    clock.set(at(9, 20))

    report = scheduler.run_sweep()

    assert (report.processed, report.released, report.failed) == (1, 1, 0)
    assert report.results[0].booking_id == overdue.booking_id
    assert report.results[0].auto_released_at == at(9, 20)
    assert scheduler.run_sweep().processed == 0


def test_sweep_expires_stale_pending_requests(scheduler, bookings, clock, room) -> None:
    stale = bookings.create_booking(room.room_id, "alice", window(9, 0, 10, 0), "Planning")
    clock.set(at(9, 20))

    report = scheduler.run_sweep()

    assert report.expired == 1
    assert report.processed == 0
    assert bookings.get_booking(stale.booking_id).status is BookingStatus.CANCELLED
    assert scheduler.run_sweep().expired == 0


def test_sweep_skips_checked_in_bookings(scheduler, bookings, clock, confirmed_booking) -> None:
    booking = confirmed_booking(window(9, 0, 10, 0))
    clock.set(at(9, 5))
    bookings.check_in(booking.booking_id)
    clock.set(at(9, 30))

    assert scheduler.run_sweep().processed == 0


def test_sweep_respects_limit(scheduler, clock, confirmed_booking) -> None:
    confirmed_booking(window(9, 0, 10, 0))
    confirmed_booking(window(11, 0, 12, 0))
    clock.set(at(11, 30))

    assert scheduler.run_sweep(limit=1).processed == 1
    assert scheduler.run_sweep().processed == 1


def test_store_timeouts_are_retried_with_backoff(repository, bookings, settings, clock, confirmed_booking) -> None:
    confirmed_booking(window(9, 0, 10, 0))
    clock.set(at(9, 20))
    sleeps: list[float] = []
    flaky = FlakyReleases(bookings, timeouts=2)

    report = _scheduler(repository, flaky, settings, clock, sleeps).run_sweep()

    assert report.released == 1
    assert flaky.calls == 3
    assert sleeps == [0.2, 0.4]


def test_exhausted_retries_are_reported(repository, bookings, settings, clock, confirmed_booking) -> None:
    confirmed_booking(window(9, 0, 10, 0))
    clock.set(at(9, 20))
    sleeps: list[float] = []

    report = _scheduler(repository, FlakyReleases(bookings, timeouts=10), settings, clock, sleeps).run_sweep()

    assert report.failed == 1
    assert report.results[0].error_code == "upstream_timeout"
    assert sleeps == [0.2, 0.4]


def test_one_broken_item_does_not_abort_the_batch(repository, bookings, settings, clock, confirmed_booking) -> None:
    broken = confirmed_booking(window(9, 0, 10, 0))
    healthy = confirmed_booking(window(11, 0, 12, 0))
    clock.set(at(11, 30))
    service = FlakyReleases(bookings, broken_ids={broken.booking_id})

    report = _scheduler(repository, service, settings, clock, []).run_sweep()

    outcome = {item.booking_id: item for item in report.results}
    assert outcome[broken.booking_id].error_code == "unexpected_error"
    assert outcome[healthy.booking_id].success
    assert (report.released, report.failed) == (1, 1)


def test_background_thread_sweeps_and_stops(repository, bookings, settings, clock, confirmed_booking) -> None:
    booking = confirmed_booking(window(9, 0, 10, 0))
    clock.set(at(9, 20))
    scheduler = _scheduler(
        repository,
        bookings,
        replace(settings, auto_release_interval_seconds=3600),
        clock,
        [],
    )

    scheduler.start()
    try:
        assert scheduler.is_running
        deadline = time.monotonic() + 5
        while bookings.get_booking(booking.booking_id).auto_released_at is None:
            assert time.monotonic() < deadline
            time.sleep(0.05)
    finally:
        scheduler.stop()

    assert not scheduler.is_running
