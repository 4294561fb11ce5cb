"""Facility administration: rooms, booking policies and blackout windows."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Optional
from uuid import uuid4

from roomhub.domain.constraints import validate_blackout, validate_room_policy
from roomhub.domain.errors import NotFoundError, ValidationError
from roomhub.domain.models import (
    Blackout,
    BlackoutType,
    OperatingHours,
    Recurrence,
    Room,
)
from roomhub.domain.time_window import TimeWindow
from roomhub.repository.data_repository import DataRepository
from roomhub.utils.config import Settings, get_settings
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)

_POLICY_FIELDS = frozenset(
    {
        "name",
        "capacity",
        "timezone",
        "operating_hours",
        "buffer_minutes",
        "min_duration_minutes",
        "max_duration_minutes",
        "advance_booking_days",
        "same_day_booking_enabled",
        "max_bookings_per_user_per_day",
        "max_bookings_per_user_per_week",
    }
)
_BLACKOUT_FIELDS = frozenset({"title", "description", "window", "blackout_type", "is_active", "recurrence"})


class FacilityService:
    def __init__(self, repository: DataRepository, settings: Optional[Settings] = None) -> None:
        self._repository = repository
        self._settings = settings or get_settings()

    def default_room(self, name: str, capacity: int) -> Room:
        """Room carrying the configured default booking policy."""
        settings = self._settings
        return Room(
            room_id=str(uuid4()),
            name=name,
            capacity=capacity,
            timezone=settings.default_timezone,
            operating_hours=OperatingHours.default(),
            buffer_minutes=settings.default_buffer_minutes,
            min_duration_minutes=settings.default_min_duration_minutes,
            max_duration_minutes=settings.default_max_duration_minutes,
            advance_booking_days=settings.default_advance_booking_days,
            same_day_booking_enabled=settings.default_same_day_booking_enabled,
            max_bookings_per_user_per_day=settings.default_max_bookings_per_user_per_day,
            max_bookings_per_user_per_week=settings.default_max_bookings_per_user_per_week,
        )

    def get_room(self, room_id: str) -> Room:
        room = self._repository.get_room(room_id)
        if room is None:
            raise NotFoundError(f"room {room_id} not found", code="room_not_found")
        return room

    def list_rooms(self) -> list[Room]:
        return self._repository.list_rooms()

    def create_room(self, name: str, capacity: int, **policy: Any) -> Room:
        room = self._apply(self.default_room(name.strip() if name else "", capacity), policy)
        validate_room_policy(room)
        self._repository.insert_room(room)
        logger.info("Room %s (%s) created", room.room_id, room.name)
        return room

    def update_policy(self, room_id: str, **changes: Any) -> Room:
        room = self._apply(self.get_room(room_id), changes)
        validate_room_policy(room)
        if not self._repository.update_room(room):
            raise NotFoundError(f"room {room_id} not found", code="room_not_found")
        logger.info("Room %s policy updated: %s", room_id, sorted(changes))
        return room

    @staticmethod
    def _apply(room: Room, changes: dict[str, Any]) -> Room:
        unknown = set(changes) - _POLICY_FIELDS
        if unknown:
            raise ValidationError(f"unknown room fields: {sorted(unknown)}", code="invalid_policy")
        return replace(room, **changes)

    def seed_demo_rooms(self) -> int:
        rooms = [
            self.default_room("Boardroom", 12),
            self.default_room("Focus Room A", 4),
            self.default_room("Training Hall", 40),
        ]
        return self._repository.seed_demo_rooms(rooms)

    # -------------------------------------------------------------- blackouts

    def add_blackout(
        self,
        room_id: str,
        title: str,
        window: TimeWindow,
        blackout_type: BlackoutType = BlackoutType.MAINTENANCE,
        description: Optional[str] = None,
        recurrence: Optional[Recurrence] = None,
        is_active: bool = True,
    ) -> Blackout:
        self.get_room(room_id)
        blackout = Blackout(
            blackout_id=str(uuid4()),
            room_id=room_id,
            title=(title or "").strip(),
            window=window,
            blackout_type=blackout_type,
            is_active=is_active,
            description=description,
            recurrence=recurrence,
        )
        validate_blackout(blackout)
        self._repository.insert_blackout(blackout)
        logger.info("Blackout %s added to room %s (%s)", blackout.blackout_id, room_id, blackout_type.value)
        return blackout

    def get_blackout(self, blackout_id: str) -> Blackout:
        blackout = self._repository.get_blackout(blackout_id)
        if blackout is None:
            raise NotFoundError(f"blackout {blackout_id} not found", code="blackout_not_found")
        return blackout

    def update_blackout(self, blackout_id: str, **changes: Any) -> Blackout:
        unknown = set(changes) - _BLACKOUT_FIELDS
        if unknown:
            raise ValidationError(f"unknown blackout fields: {sorted(unknown)}", code="invalid_blackout")
        blackout = replace(self.get_blackout(blackout_id), **changes)
        validate_blackout(blackout)
        if not self._repository.update_blackout(blackout):
            raise NotFoundError(f"blackout {blackout_id} not found", code="blackout_not_found")
        logger.info("Blackout %s updated: %s", blackout_id, sorted(changes))
        return blackout

    def delete_blackout(self, blackout_id: str) -> None:
        if not self._repository.delete_blackout(blackout_id):
            raise NotFoundError(f"blackout {blackout_id} not found", code="blackout_not_found")
        logger.info("Blackout %s deleted", blackout_id)
