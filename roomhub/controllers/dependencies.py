"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from roomhub.domain.errors import (
    BookingCoreError,
    ConflictError,
    GuardViolation,
    NotFoundError,
    RateLimited,
    TooManyAttempts,
    UpstreamTimeout,
    ValidationError,
)
from roomhub.services.attendance_service import AttendanceService
from roomhub.services.availability_service import AvailabilityResolver
from roomhub.services.booking_service import BookingService
from roomhub.services.facility_service import FacilityService
from roomhub.services.release_scheduler import AutoReleaseScheduler
from roomhub.utils.clock import Clock, SystemClock
from roomhub.utils.config import Settings, get_settings


bearer_scheme = HTTPBearer(auto_error=False)

# Checked in order; subclasses come before their bases.
_STATUS_BY_ERROR: tuple[tuple[type[BookingCoreError], int], ...] = (
    (TooManyAttempts, status.HTTP_429_TOO_MANY_REQUESTS),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (GuardViolation, status.HTTP_409_CONFLICT),
    (UpstreamTimeout, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: BookingCoreError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped
            break
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message},
    )


def internal_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "internal_error", "message": message},
    )


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _service(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "service_unavailable", "message": f"{label} is not initialized"},
        )
    return service


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", None) or SystemClock()


def get_facility_service(request: Request) -> FacilityService:
    return _service(request, "facility_service", "Facility service")


def get_availability_resolver(request: Request) -> AvailabilityResolver:
    return _service(request, "availability_resolver", "Availability resolver")


def get_booking_service(request: Request) -> BookingService:
    return _service(request, "booking_service", "Booking service")


def get_attendance_service(request: Request) -> AttendanceService:
    return _service(request, "attendance_service", "Attendance service")


def get_release_scheduler(request: Request) -> AutoReleaseScheduler:
    return _service(request, "release_scheduler", "Auto-release scheduler")


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
) -> None:
    if not settings.cron_secret:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "unauthorized", "message": "Authorization header with Bearer token is required"},
        )
    if not secrets.compare_digest(credentials.credentials, settings.cron_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "unauthorized", "message": "Invalid cron secret"},
        )
