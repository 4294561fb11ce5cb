"""HTTP controller layer for meeting invitations and attendance verification."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from pydantic import BaseModel, Field

from roomhub.controllers.dependencies import (
    client_ip,
    get_attendance_service,
    internal_error,
    to_http_exception,
)
from roomhub.domain.errors import BookingCoreError
from roomhub.domain.models import AttendanceStatus, Occupancy, RsvpStatus
from roomhub.services.attendance_service import AttendanceService
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/meetings", tags=["attendance"])


class InvitationRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    name: Optional[str] = Field(default=None, max_length=200)


class InvitationResponse(BaseModel):
    invitation_id: str
    booking_id: str
    display_name: str
    rsvp_status: RsvpStatus
    attendance_status: AttendanceStatus


class RsvpRequest(BaseModel):
    accepted: bool


class TokenResponse(BaseModel):
    token: str
    booking_id: str
    issued_at: datetime
    expires_at: datetime


class SendCodeRequest(BaseModel):
    invitation_id: str = Field(min_length=1)


class SendCodeResponse(BaseModel):
    invitation_id: str
    expires_at: datetime
    send_count: int = Field(ge=1)


class VerifyCodeRequest(BaseModel):
    invitation_id: str = Field(min_length=1)
    # Format is checked by the service so rejected attempts are still audited.
    code: str = Field(max_length=16)
    token: Optional[str] = None


class OccupancyResponse(BaseModel):
    booking_id: str
    present: int = Field(ge=0)
    invited: int = Field(ge=0)
    capacity: int = Field(gt=0)
    percentage: int = Field(ge=0)

    @classmethod
    def from_domain(cls, occupancy: Occupancy) -> OccupancyResponse:
        return cls(
            booking_id=occupancy.booking_id,
            present=occupancy.present,
            invited=occupancy.invited,
            capacity=occupancy.capacity,
            percentage=occupancy.percentage,
        )


class VerifyCodeResponse(BaseModel):
    success: bool
    invitation_id: str
    attended_at: Optional[datetime]
    already_present: bool
    reason: Optional[str] = None
    occupancy: Optional[OccupancyResponse] = None


class AttendeeResponse(BaseModel):
    invitation_id: str
    display_name: str
    attendance_status: AttendanceStatus


@router.post(
    "/{booking_id}/invitations",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_invitation(
    booking_id: str,
    payload: InvitationRequest,
    service: AttendanceService = Depends(get_attendance_service),
) -> InvitationResponse:
    try:
        invitation = service.invite(booking_id, payload.email, payload.name)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected invitation failure")
        raise internal_error("Failed to create invitation") from exc
    return InvitationResponse(
        invitation_id=invitation.invitation_id,
        booking_id=invitation.booking_id,
        display_name=invitation.display_name,
        rsvp_status=invitation.rsvp_status,
        attendance_status=invitation.attendance_status,
    )


@router.post("/{booking_id}/invitations/{invitation_id}/rsvp", response_model=InvitationResponse)
async def record_rsvp(
    booking_id: str,
    invitation_id: str,
    payload: RsvpRequest,
    service: AttendanceService = Depends(get_attendance_service),
) -> InvitationResponse:
    try:
        invitation = service.record_rsvp(booking_id, invitation_id, payload.accepted)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    return InvitationResponse(
        invitation_id=invitation.invitation_id,
        booking_id=invitation.booking_id,
        display_name=invitation.display_name,
        rsvp_status=invitation.rsvp_status,
        attendance_status=invitation.attendance_status,
    )


@router.post("/{booking_id}/qr", response_model=TokenResponse)
async def issue_attendance_token(
    booking_id: str,
    request: Request,
    user_agent: Optional[str] = Header(default=None),
    service: AttendanceService = Depends(get_attendance_service),
) -> TokenResponse:
    """Token for the meeting's QR code; requires the organizer to be checked in."""
    try:
        issued = service.issue_attendance_token(
            booking_id,
            ip_address=client_ip(request),
            user_agent=user_agent,
        )
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected token issuance failure")
        raise internal_error("Failed to issue attendance token") from exc
    return TokenResponse(
        token=issued.token,
        booking_id=issued.booking_id,
        issued_at=issued.issued_at,
        expires_at=issued.expires_at,
    )


@router.post("/{booking_id}/attendance/send-code", response_model=SendCodeResponse)
async def send_attendance_code(
    booking_id: str,
    payload: SendCodeRequest,
    request: Request,
    user_agent: Optional[str] = Header(default=None),
    service: AttendanceService = Depends(get_attendance_service),
) -> SendCodeResponse:
    try:
        issued = service.send_attendance_code(
            booking_id,
            payload.invitation_id,
            ip_address=client_ip(request),
            user_agent=user_agent,
        )
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected code delivery failure")
        raise internal_error("Failed to send attendance code") from exc
    return SendCodeResponse(
        invitation_id=issued.invitation_id,
        expires_at=issued.expires_at,
        send_count=issued.send_count,
    )


@router.post("/{booking_id}/attendance/verify", response_model=VerifyCodeResponse)
async def verify_attendance_code(
    booking_id: str,
    payload: VerifyCodeRequest,
    request: Request,
    user_agent: Optional[str] = Header(default=None),
    service: AttendanceService = Depends(get_attendance_service),
) -> VerifyCodeResponse:
    try:
        result = service.verify_code(
            booking_id,
            payload.invitation_id,
            payload.code,
            token=payload.token,
            ip_address=client_ip(request),
            user_agent=user_agent,
        )
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected verification failure")
        raise internal_error("Failed to verify attendance code") from exc
    return VerifyCodeResponse(
        success=result.success,
        invitation_id=result.invitation_id,
        attended_at=result.attended_at,
        already_present=result.already_present,
        reason=result.reason,
        occupancy=OccupancyResponse.from_domain(result.occupancy) if result.occupancy else None,
    )


@router.get("/{booking_id}/occupancy", response_model=OccupancyResponse)
async def get_occupancy(
    booking_id: str,
    service: AttendanceService = Depends(get_attendance_service),
) -> OccupancyResponse:
    try:
        occupancy = service.get_occupancy(booking_id)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    return OccupancyResponse.from_domain(occupancy)


@router.get("/{booking_id}/attendance/attendees", response_model=list[AttendeeResponse])
async def list_attendees(
    booking_id: str,
    token: str = Query(..., alias="t", min_length=1),
    service: AttendanceService = Depends(get_attendance_service),
) -> list[AttendeeResponse]:
    """Public roster behind the QR token; never exposes email addresses."""
    try:
        attendees = service.list_attendees(booking_id, token=token)
    except BookingCoreError as exc:
        raise to_http_exception(exc) from exc
    return [
        AttendeeResponse(
            invitation_id=item.invitation_id,
            display_name=item.display_name,
            attendance_status=item.attendance_status,
        )
        for item in attendees
    ]
