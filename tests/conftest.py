from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import pytest

from roomhub.domain.models import Booking
from roomhub.domain.time_window import TimeWindow
from roomhub.repository.data_repository import DataRepository
from roomhub.services.attendance_service import AttendanceService
from roomhub.services.availability_service import AvailabilityResolver
from roomhub.services.booking_service import BookingService
from roomhub.services.facility_service import FacilityService
from roomhub.services.release_scheduler import AutoReleaseScheduler
from roomhub.services.token_service import AttendanceTokenSigner
from roomhub.utils.clock import FrozenClock
from roomhub.utils.config import get_settings


# 2030-01-07 is a Monday; the default room is open 08:00-18:00 UTC on weekdays.
MONDAY = datetime(2030, 1, 7, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: int = 0) -> datetime:
    return MONDAY + timedelta(days=day, hours=hour, minutes=minute)


def window(start_hour: int, start_minute: int, end_hour: int, end_minute: int, day: int = 0) -> TimeWindow:
    return TimeWindow(at(start_hour, start_minute, day), at(end_hour, end_minute, day))


class RecordingDispatcher:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def dispatch(self, event: str, payload: Mapping[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def _build_test_settings(tmp_path, filename: str = "roomhub.db", **overrides):
    get_settings.cache_clear()
    base = get_settings()
    values: dict[str, Any] = {
        "database_path": tmp_path / filename,
        "attendance_token_secret": "test-attendance-secret-0123456789abcdef",
        "auto_approve_bookings": False,
        "auto_release_enabled": False,
        "auto_release_retry_backoff_seconds": 0.2,
        "cron_secret": None,
        "seed_demo_data": False,
    }
    values.update(overrides)
    return replace(base, **values)


@pytest.fixture
def settings(tmp_path):
    return _build_test_settings(tmp_path)


@pytest.fixture
def clock():
    return FrozenClock(at(7, 0))


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def repository(settings):
    repository = DataRepository(settings)
    repository.initialize_database()
    return repository


@pytest.fixture
def facility(repository, settings):
    return FacilityService(repository=repository, settings=settings)


@pytest.fixture
def resolver(repository, settings, clock):
    return AvailabilityResolver(repository=repository, settings=settings, clock=clock)


@pytest.fixture
def bookings(repository, resolver, settings, clock, dispatcher):
    return BookingService(
        repository=repository,
        resolver=resolver,
        settings=settings,
        clock=clock,
        dispatcher=dispatcher,
    )


@pytest.fixture
def attendance(repository, settings, clock, dispatcher):
    return AttendanceService(
        repository=repository,
        signer=AttendanceTokenSigner(settings),
        settings=settings,
        clock=clock,
        dispatcher=dispatcher,
    )


@pytest.fixture
def scheduler(repository, bookings, settings, clock):
    return AutoReleaseScheduler(
        repository=repository,
        booking_service=bookings,
        settings=settings,
        clock=clock,
        sleep=lambda _seconds: None,
    )


@pytest.fixture
def room(facility):
    return facility.create_room(
        "Boardroom",
        10,
        timezone="UTC",
        buffer_minutes=15,
        min_duration_minutes=15,
        max_bookings_per_user_per_day=None,
        max_bookings_per_user_per_week=None,
    )


@pytest.fixture
def confirmed_booking(bookings, room):
    def _confirmed(booking_window: TimeWindow, user_id: str = "alice", **kwargs: Any) -> Booking:
        created = bookings.create_booking(
            room_id=room.room_id,
            user_id=user_id,
            window=booking_window,
            title="Weekly sync",
            **kwargs,
        )
        return bookings.approve_booking(created.booking_id)

    return _confirmed
