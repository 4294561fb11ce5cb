"""HTTP controller layer for rooms, policies, blackouts and availability."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import AwareDatetime, BaseModel, Field, field_validator

from roomhub.controllers.dependencies import (
    get_availability_resolver,
    get_facility_service,
    internal_error,
    to_http_exception,
)
from roomhub.domain.errors import BookingCoreError
from roomhub.domain.models import (
    WEEKDAYS,
    Blackout,
    BlackoutType,
    OperatingHours,
    Recurrence,
    RecurrenceFrequency,
    Room,
    parse_clock_time,
)
from roomhub.domain.time_window import TimeWindow
from roomhub.services.availability_service import AvailabilityResolver
from roomhub.services.facility_service import FacilityService
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["facility"])


class DayHoursPayload(BaseModel):
    enabled: bool
    start: str = Field(pattern=r"^\d{2}:\d{2}$")
    end: str = Field(pattern=r"^\d{2}:\d{2}$")

    @field_validator("start", "end")
    @classmethod
    def validate_clock_time(cls, value: str) -> str:
        parse_clock_time(value)
        return value


class RoomPolicyPayload(BaseModel):
    """Partial policy; omitted fields keep their current value."""

    name: Optional[str] = Field(default=None, min_length=1)
    capacity: Optional[int] = Field(default=None, gt=0)
    timezone: Optional[str] = None
    operating_hours: Optional[dict[str, DayHoursPayload]] = None
    buffer_minutes: Optional[int] = Field(default=None, ge=0, le=60)
    min_duration_minutes: Optional[int] = Field(default=None, ge=15, le=480)
    max_duration_minutes: Optional[int] = Field(default=None, ge=30, le=1440)
    advance_booking_days: Optional[int] = Field(default=None, ge=1, le=365)
    same_day_booking_enabled: Optional[bool] = None
    max_bookings_per_user_per_day: Optional[int] = Field(default=None, ge=1)
    max_bookings_per_user_per_week: Optional[int] = Field(default=None, ge=1)

    @field_validator("operating_hours")
    @classmethod
    def validate_all_weekdays(
        cls,
        value: Optional[dict[str, DayHoursPayload]],
    ) -> Optional[dict[str, DayHoursPayload]]:
        if value is None:
            return None
        missing = [day for day in WEEKDAYS if day not in value]
        if missing:
            raise ValueError(f"operating_hours is missing {', '.join(missing)}")
        return value

    def to_changes(self) -> dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        if "operating_hours" in changes:
            if changes["operating_hours"] is None:
                del changes["operating_hours"]
            else:
                changes["operating_hours"] = OperatingHours.from_dict(changes["operating_hours"])
        for key in list(changes):
            # An explicit null only means "unlimited" for the per-user caps.
            if changes[key] is None and not key.startswith("max_bookings_per_user"):
                del changes[key]
        return changes


class CreateRoomRequest(RoomPolicyPayload):
    name: str = Field(min_length=1)
    capacity: int = Field(gt=0)


class RoomResponse(BaseModel):
    room_id: str
    name: str
    capacity: int
    timezone: str
    operating_hours: dict[str, dict[str, Any]]
    buffer_minutes: int
    min_duration_minutes: int
    max_duration_minutes: int
    advance_booking_days: int
    same_day_booking_enabled: bool
    max_bookings_per_user_per_day: Optional[int]
    max_bookings_per_user_per_week: Optional[int]

    @classmethod
    def from_domain(cls, room: Room) -> RoomResponse:
        return cls(
            room_id=room.room_id,
            name=room.name,
            capacity=room.capacity,
            timezone=room.timezone,
            operating_hours=room.operating_hours.to_dict(),
            buffer_minutes=room.buffer_minutes,
            min_duration_minutes=room.min_duration_minutes,
            max_duration_minutes=room.max_duration_minutes,
            advance_booking_days=room.advance_booking_days,
            same_day_booking_enabled=room.same_day_booking_enabled,
            max_bookings_per_user_per_day=room.max_bookings_per_user_per_day,
            max_bookings_per_user_per_week=room.max_bookings_per_user_per_week,
        )


class RecurrencePayload(BaseModel):
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1)
    until: Optional[AwareDatetime] = None

    def to_domain(self) -> Recurrence:
        return Recurrence(frequency=self.frequency, interval=self.interval, until=self.until)


class BlackoutRequest(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    start_time: AwareDatetime
    end_time: AwareDatetime
    blackout_type: BlackoutType = BlackoutType.MAINTENANCE
    is_active: bool = True
    recurrence: Optional[RecurrencePayload] = None


class BlackoutPatchRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    start_time: Optional[AwareDatetime] = None
    end_time: Optional[AwareDatetime] = None
    blackout_type: Optional[BlackoutType] = None
    is_active: Optional[bool] = None
    recurrence: Optional[RecurrencePayload] = None


class BlackoutResponse(BaseModel):
    blackout_id: str
    room_id: str
    title: str
    description: Optional[str]
    start_time: datetime
    end_time: datetime
    blackout_type: BlackoutType
    is_active: bool
    recurrence: Optional[RecurrencePayload]

    @classmethod
    def from_domain(cls, blackout: Blackout) -> BlackoutResponse:
        recurrence = None
        if blackout.recurrence is not None:
            recurrence = RecurrencePayload(
                frequency=blackout.recurrence.frequency,
                interval=blackout.recurrence.interval,
                until=blackout.recurrence.until,
            )
        return cls(
            blackout_id=blackout.blackout_id,
            room_id=blackout.room_id,
            title=blackout.title,
            description=blackout.description,
            start_time=blackout.window.start,
            end_time=blackout.window.end,
            blackout_type=blackout.blackout_type,
            is_active=blackout.is_active,
            recurrence=recurrence,
        )


class AvailabilityResponse(BaseModel):
    room_id: str
    start_time: datetime
    end_time: datetime
    bookable: bool
    reason: Optional[str] = None
    message: Optional[str] = None


class SlotResponse(BaseModel):
    start_time: datetime
    end_time: datetime
    available: bool
    reason: Optional[str] = None


class SlotsResponse(BaseModel):
    room_id: str
    slot_date: date
    slots: list[SlotResponse]


@router.post("/rooms", response_model=RoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
    payload: CreateRoomRequest,
    service: FacilityService = Depends(get_facility_service),
) -> RoomResponse:
    changes = payload.to_changes()
    name = changes.pop("name")
    capacity = changes.pop("capacity")
    try:
        room = service.create_room(name, capacity, **changes)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected room creation failure")
        raise internal_error("Failed to create room") from exc
    return RoomResponse.from_domain(room)


@router.get("/rooms/{room_id}", response_model=RoomResponse)
async def get_room(
    room_id: str,
    service: FacilityService = Depends(get_facility_service),
) -> RoomResponse:
    try:
        return RoomResponse.from_domain(service.get_room(room_id))
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc


@router.put("/rooms/{room_id}/policy", response_model=RoomResponse)
async def update_room_policy(
    room_id: str,
    payload: RoomPolicyPayload,
    service: FacilityService = Depends(get_facility_service),
) -> RoomResponse:
    try:
        room = service.update_policy(room_id, **payload.to_changes())
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected policy update failure")
        raise internal_error("Failed to update room policy") from exc
    return RoomResponse.from_domain(room)


@router.post(
    "/rooms/{room_id}/blackouts",
    response_model=BlackoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_blackout(
    room_id: str,
    payload: BlackoutRequest,
    service: FacilityService = Depends(get_facility_service),
) -> BlackoutResponse:
    try:
        blackout = service.add_blackout(
            room_id,
            title=payload.title,
            window=TimeWindow(payload.start_time, payload.end_time),
            blackout_type=payload.blackout_type,
            description=payload.description,
            recurrence=payload.recurrence.to_domain() if payload.recurrence else None,
            is_active=payload.is_active,
        )
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected blackout creation failure")
        raise internal_error("Failed to create blackout") from exc
    return BlackoutResponse.from_domain(blackout)


@router.patch("/blackouts/{blackout_id}", response_model=BlackoutResponse)
async def update_blackout(
    blackout_id: str,
    payload: BlackoutPatchRequest,
    service: FacilityService = Depends(get_facility_service),
) -> BlackoutResponse:
    fields = payload.model_dump(exclude_unset=True)
    try:
        changes: dict[str, Any] = {}
        if "start_time" in fields or "end_time" in fields:
            current = service.get_blackout(blackout_id)
            changes["window"] = TimeWindow(
                payload.start_time or current.window.start,
                payload.end_time or current.window.end,
            )
        for key in ("title", "blackout_type", "is_active"):
            if key in fields and fields[key] is not None:
                changes[key] = getattr(payload, key)
        if "description" in fields:
            changes["description"] = payload.description
        if "recurrence" in fields:
            changes["recurrence"] = payload.recurrence.to_domain() if payload.recurrence else None
        blackout = service.update_blackout(blackout_id, **changes)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected blackout update failure")
        raise internal_error("Failed to update blackout") from exc
    return BlackoutResponse.from_domain(blackout)


@router.delete("/blackouts/{blackout_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_blackout(
    blackout_id: str,
    service: FacilityService = Depends(get_facility_service),
) -> Response:
    try:
        service.delete_blackout(blackout_id)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/rooms/{room_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    room_id: str,
    start: AwareDatetime = Query(...),
    end: AwareDatetime = Query(...),
    user_id: Optional[str] = Query(default=None),
    resolver: AvailabilityResolver = Depends(get_availability_resolver),
) -> AvailabilityResponse:
    """Preview only; the same checks run again when the booking is created."""
    try:
        window = TimeWindow(start, end)
        result = resolver.check_availability(room_id, window, user_id)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected availability failure")
        raise internal_error("Failed to check availability") from exc
    return AvailabilityResponse(
        room_id=room_id,
        start_time=window.start,
        end_time=window.end,
        bookable=result.bookable,
        reason=result.reason,
        message=result.message,
    )


@router.get("/rooms/{room_id}/slots", response_model=SlotsResponse)
async def list_slots(
    room_id: str,
    day: date = Query(..., alias="date"),
    duration_minutes: Optional[int] = Query(default=None, gt=0, le=1440),
    user_id: Optional[str] = Query(default=None),
    resolver: AvailabilityResolver = Depends(get_availability_resolver),
) -> SlotsResponse:
    try:
        slots = resolver.list_slots(room_id, day, user_id=user_id, duration_minutes=duration_minutes)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected slot listing failure")
        raise internal_error("Failed to list slots") from exc
    return SlotsResponse(
        room_id=room_id,
        slot_date=day,
        slots=[
            SlotResponse(
                start_time=slot.window.start,
                end_time=slot.window.end,
                available=slot.available,
                reason=slot.reason,
            )
            for slot in slots
        ],
    )
