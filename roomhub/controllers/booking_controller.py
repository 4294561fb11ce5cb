"""HTTP controller layer for the booking lifecycle and the release sweep."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import AwareDatetime, BaseModel, Field

from roomhub.controllers.dependencies import (
    get_booking_service,
    get_clock,
    get_release_scheduler,
    internal_error,
    require_cron_secret,
    to_http_exception,
)
from roomhub.domain.errors import BookingCoreError
from roomhub.domain.lifecycle import LifecycleState, derive_state
from roomhub.domain.models import Booking, BookingStatus
from roomhub.domain.time_window import TimeWindow
from roomhub.services.booking_service import BookingService
from roomhub.services.release_scheduler import AutoReleaseScheduler
from roomhub.utils.clock import Clock
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["bookings"])


class CreateBookingRequest(BaseModel):
    room_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    start_time: AwareDatetime
    end_time: AwareDatetime
    check_in_required: bool = True
    grace_period_minutes: Optional[int] = Field(default=None, ge=0, le=240)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CheckInRequest(BaseModel):
    acting_user_id: Optional[str] = None


class BookingResponse(BaseModel):
    booking_id: str
    room_id: str
    user_id: str
    title: str
    description: Optional[str]
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    lifecycle_state: LifecycleState
    check_in_required: bool
    grace_period_minutes: int
    checked_in_at: Optional[datetime]
    auto_release_at: Optional[datetime]
    auto_released_at: Optional[datetime]
    rejection_reason: Optional[str]
    present_count: int = Field(ge=0)

    @classmethod
    def from_domain(cls, booking: Booking, now: datetime) -> BookingResponse:
        return cls(
            booking_id=booking.booking_id,
            room_id=booking.room_id,
            user_id=booking.user_id,
            title=booking.title,
            description=booking.description,
            start_time=booking.start_time,
            end_time=booking.end_time,
            status=booking.status,
            lifecycle_state=derive_state(booking, now),
            check_in_required=booking.check_in_required,
            grace_period_minutes=booking.grace_period_minutes,
            checked_in_at=booking.checked_in_at,
            auto_release_at=booking.auto_release_at,
            auto_released_at=booking.auto_released_at,
            rejection_reason=booking.rejection_reason,
            present_count=booking.present_count,
        )


class CheckInResponse(BaseModel):
    booking_id: str
    checked_in_at: datetime
    already_checked_in: bool


class CheckInStatusResponse(BaseModel):
    booking_id: str
    is_checked_in: bool
    checked_in_at: Optional[datetime]
    check_in_required: bool
    grace_period_minutes: int
    check_in_opens_at: datetime
    grace_deadline: datetime
    auto_release_scheduled: bool
    can_check_in: bool


class AutoReleaseResponse(BaseModel):
    booking_id: str
    auto_released_at: datetime
    already_released: bool


class SweepItemResponse(BaseModel):
    booking_id: str
    success: bool
    auto_released_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class SweepResponse(BaseModel):
    processed: int = Field(ge=0)
    released: int = Field(ge=0)
    failed: int = Field(ge=0)
    expired: int = Field(default=0, ge=0)
    results: list[SweepItemResponse]


class ExpirePendingResponse(BaseModel):
    expired: int = Field(ge=0)
    bookings: list[BookingResponse]


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: CreateBookingRequest,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
) -> BookingResponse:
    """Validate availability and reserve the window in one atomic write."""
    try:
        booking = service.create_booking(
            room_id=payload.room_id,
            user_id=payload.user_id,
            window=TimeWindow(payload.start_time, payload.end_time),
            title=payload.title,
            description=payload.description,
            check_in_required=payload.check_in_required,
            grace_period_minutes=payload.grace_period_minutes,
        )
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected booking creation failure")
        raise internal_error("Failed to create booking") from exc
    return BookingResponse.from_domain(booking, clock.now())


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
) -> BookingResponse:
    try:
        booking = service.get_booking(booking_id)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    return BookingResponse.from_domain(booking, clock.now())


@router.post("/bookings/{booking_id}/approve", response_model=BookingResponse)
async def approve_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
) -> BookingResponse:
    try:
        booking = service.approve_booking(booking_id)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected approval failure")
        raise internal_error("Failed to approve booking") from exc
    return BookingResponse.from_domain(booking, clock.now())


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: str,
    payload: Optional[ReasonRequest] = None,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
) -> BookingResponse:
    try:
        booking = service.reject_booking(booking_id, payload.reason if payload else None)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected rejection failure")
        raise internal_error("Failed to reject booking") from exc
    return BookingResponse.from_domain(booking, clock.now())


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    payload: Optional[ReasonRequest] = None,
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
) -> BookingResponse:
    try:
        booking = service.cancel_booking(booking_id, payload.reason if payload else None)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected cancellation failure")
        raise internal_error("Failed to cancel booking") from exc
    return BookingResponse.from_domain(booking, clock.now())


@router.post("/bookings/{booking_id}/check-in", response_model=CheckInResponse)
async def check_in(
    booking_id: str,
    payload: Optional[CheckInRequest] = None,
    service: BookingService = Depends(get_booking_service),
) -> CheckInResponse:
    """Safe to retry: a repeated call returns the original timestamp."""
    try:
        result = service.check_in(booking_id, payload.acting_user_id if payload else None)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected check-in failure")
        raise internal_error("Failed to check in") from exc
    return CheckInResponse(
        booking_id=result.booking_id,
        checked_in_at=result.checked_in_at,
        already_checked_in=result.already_checked_in,
    )


@router.get("/bookings/{booking_id}/check-in", response_model=CheckInStatusResponse)
async def get_check_in_status(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
) -> CheckInStatusResponse:
    try:
        result = service.get_check_in_status(booking_id)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    return CheckInStatusResponse(**asdict(result))


@router.post(
    "/bookings/{booking_id}/auto-release",
    response_model=AutoReleaseResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def auto_release(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
) -> AutoReleaseResponse:
    try:
        result = service.auto_release(booking_id)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected auto-release failure")
        raise internal_error("Failed to auto-release booking") from exc
    return AutoReleaseResponse(
        booking_id=result.booking_id,
        auto_released_at=result.auto_released_at,
        already_released=result.already_released,
    )


@router.post(
    "/cron/auto-release",
    response_model=SweepResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def run_auto_release_sweep(
    scheduler: AutoReleaseScheduler = Depends(get_release_scheduler),
) -> SweepResponse:
    """Entry point for an external scheduler; overlapping calls are safe."""
    try:
        report = scheduler.run_sweep()
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected auto-release sweep failure")
        raise internal_error("Failed to run auto-release sweep") from exc
    return SweepResponse(
        processed=report.processed,
        released=report.released,
        failed=report.failed,
        expired=report.expired,
        results=[
            SweepItemResponse(
                booking_id=item.booking_id,
                success=item.success,
                auto_released_at=item.auto_released_at,
                error_code=item.error_code,
                error=item.error,
            )
            for item in report.results
        ],
    )


@router.post(
    "/cron/expire-pending",
    response_model=ExpirePendingResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def expire_pending_bookings(
    service: BookingService = Depends(get_booking_service),
    clock: Clock = Depends(get_clock),
) -> ExpirePendingResponse:
    try:
        expired = service.expire_pending()
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected pending-expiry failure")
        raise internal_error("Failed to expire pending bookings") from exc
    now = clock.now()
    return ExpirePendingResponse(
        expired=len(expired),
        bookings=[BookingResponse.from_domain(booking, now) for booking in expired],
    )
