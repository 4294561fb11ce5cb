"""Meeting attendance: invitations, QR tokens, per-invitee codes and occupancy."""

from __future__ import annotations

import hashlib
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from roomhub.domain.constraints import ATTENDANCE_CODE_LENGTH, validate_attendance_code
from roomhub.domain.errors import (
    BookingCoreError,
    CodeMismatch,
    ConflictError,
    InvalidAttendanceToken,
    NotCheckedIn,
    NotConfirmed,
    NotFoundError,
    RateLimited,
    TooManyAttempts,
    ValidationError,
    WindowExpired,
    WindowNotOpenYet,
)
from roomhub.domain.models import (
    AttendanceEvent,
    AttendanceEventKind,
    AttendanceStatus,
    AttendeeListItem,
    Booking,
    BookingStatus,
    Invitation,
    IssuedCode,
    IssuedToken,
    Occupancy,
    RsvpStatus,
    TokenClaims,
    VerificationResult,
)
from roomhub.repository.data_repository import DataRepository
from roomhub.services.notification_service import NotificationDispatcher, dispatch_safely
from roomhub.services.token_service import AttendanceTokenSigner
from roomhub.utils.clock import Clock, SystemClock
from roomhub.utils.config import Settings, get_settings
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)

MAX_USER_AGENT_LENGTH = 500
_TAG_PATTERN = re.compile(r"<[^>]*>")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def sanitize_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    cleaned = _TAG_PATTERN.sub("", user_agent).strip()
    return cleaned[:MAX_USER_AGENT_LENGTH] or None


def hash_code(salt: str, code: str) -> str:
    return hashlib.sha256(f"{salt}:{code}".encode("utf-8")).hexdigest()


class AttendanceService:
    """Verifies who is physically present and keeps the live count."""

    def __init__(
        self,
        repository: DataRepository,
        signer: AttendanceTokenSigner,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self._repository = repository
        self._signer = signer
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._dispatcher = dispatcher

    def _require_booking(self, booking_id: str) -> Booking:
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
        return booking

    def _require_invitation(self, booking_id: str, invitation_id: str) -> Invitation:
        invitation = self._repository.get_invitation(invitation_id)
        if invitation is None or invitation.booking_id != booking_id:
            raise NotFoundError(
                f"invitation {invitation_id} not found for booking {booking_id}",
                code="invitation_not_found",
            )
        return invitation

    def _record(
        self,
        kind: AttendanceEventKind,
        booking_id: str,
        now: datetime,
        invitation_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self._repository.append_attendance_event(
            AttendanceEvent(
                kind=kind,
                booking_id=booking_id,
                created_at=now,
                invitation_id=invitation_id,
                metadata=metadata or {},
                ip_address=ip_address,
                user_agent=sanitize_user_agent(user_agent),
            )
        )

    def _attendance_closes_at(self, booking: Booking) -> datetime:
        return booking.end_time + timedelta(minutes=self._settings.attendance_grace_minutes)

    def _ensure_attendance_open(self, booking: Booking, now: datetime) -> None:
        if booking.status is not BookingStatus.CONFIRMED:
            raise NotConfirmed(f"booking {booking.booking_id} is not confirmed")
        if booking.checked_in_at is None:
            raise NotCheckedIn("the organizer has not checked in yet")
        if now < booking.start_time:
            raise WindowNotOpenYet("the meeting has not started yet")
        if now > self._attendance_closes_at(booking):
            raise WindowExpired("attendance for this meeting has closed")

    # ------------------------------------------------------------ invitations

    def invite(self, booking_id: str, email: str, name: Optional[str] = None) -> Invitation:
        booking = self._require_booking(booking_id)
        if booking.status is BookingStatus.CANCELLED:
            raise NotConfirmed(f"booking {booking_id} is cancelled")
        normalized = (email or "").strip().lower()
        if not _EMAIL_PATTERN.match(normalized):
            raise ValidationError("a valid invitee email is required", code="invalid_email")

        invitation = Invitation(
            invitation_id=str(uuid4()),
            booking_id=booking_id,
            invitee_email=normalized,
            invitee_name=(name or "").strip() or None,
            rsvp_status=RsvpStatus.PENDING,
            attendance_status=AttendanceStatus.NOT_PRESENT,
        )
        self._repository.insert_invitation(invitation, self._clock.now())
        logger.info("Invitation %s created for booking %s", invitation.invitation_id, booking_id)
        dispatch_safely(
            self._dispatcher,
            "invitation_created",
            {"booking_id": booking_id, "invitation_id": invitation.invitation_id, "email": normalized},
        )
        return invitation

    def record_rsvp(self, booking_id: str, invitation_id: str, accepted: bool) -> Invitation:
        self._require_invitation(booking_id, invitation_id)
        status = RsvpStatus.ACCEPTED if accepted else RsvpStatus.DECLINED
        self._repository.update_rsvp(invitation_id, status)
        return self._require_invitation(booking_id, invitation_id)

    # ------------------------------------------------------------------ token

    def issue_attendance_token(
        self,
        booking_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedToken:
        booking = self._require_booking(booking_id)
        now = self._clock.now()
        self._ensure_attendance_open(booking, now)

        issued = self._signer.issue(booking_id, now)
        self._record(
            AttendanceEventKind.QR_ISSUED,
            booking_id,
            now,
            metadata={"expires_at": issued.expires_at.isoformat()},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("Attendance token issued for booking %s", booking_id)
        return issued

    def verify_token(self, token: str, booking_id: str) -> TokenClaims:
        claims = self._signer.decode(token, self._clock.now())
        if claims.booking_id != booking_id:
            raise InvalidAttendanceToken(
                "attendance token was issued for a different meeting",
                code="token_booking_mismatch",
            )
        return claims

    # ------------------------------------------------------------------ codes

    def send_attendance_code(
        self,
        booking_id: str,
        invitation_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedCode:
        """Generate a fresh code for one invitee and hand it to the dispatcher."""
        booking = self._require_booking(booking_id)
        invitation = self._require_invitation(booking_id, invitation_id)
        now = self._clock.now()
        if booking.status is not BookingStatus.CONFIRMED:
            raise NotConfirmed(f"booking {booking_id} is not confirmed")
        expires_at = self._attendance_closes_at(booking)
        if now > expires_at:
            raise WindowExpired("attendance for this meeting has closed")

        code = f"{secrets.randbelow(10 ** ATTENDANCE_CODE_LENGTH):0{ATTENDANCE_CODE_LENGTH}d}"
        salt = secrets.token_hex(8)
        stored = self._repository.store_attendance_code(
            invitation_id,
            code_hash=hash_code(salt, code),
            code_salt=salt,
            expires_at=expires_at,
            now=now,
            max_sends=self._settings.max_code_sends,
            cooldown_cutoff=now - timedelta(minutes=self._settings.code_send_cooldown_minutes),
        )
        if not stored:
            if invitation.code_send_count >= self._settings.max_code_sends:
                raise RateLimited("maximum code sends reached for this invitation", code="max_code_sends")
            raise RateLimited("please wait before requesting another code")

        send_count = invitation.code_send_count + 1
        self._record(
            AttendanceEventKind.CODE_SENT,
            booking_id,
            now,
            invitation_id=invitation_id,
            metadata={"send_count": send_count},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        dispatch_safely(
            self._dispatcher,
            "attendance_code",
            {
                "booking_id": booking_id,
                "invitation_id": invitation_id,
                "email": invitation.invitee_email,
                "code": code,
                "expires_at": expires_at.isoformat(),
            },
        )
        return IssuedCode(invitation_id=invitation_id, code=code, expires_at=expires_at, send_count=send_count)

    def verify_code(
        self,
        booking_id: str,
        invitation_id: str,
        code: str,
        token: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationResult:
        """Mark an invitee present; every attempt lands in the audit log."""
        now = self._clock.now()
        try:
            result = self._verify(booking_id, invitation_id, code, token, now)
        except BookingCoreError as exc:
            self._record(
                AttendanceEventKind.VERIFY_FAILED,
                booking_id,
                now,
                invitation_id=invitation_id,
                metadata={"reason": exc.code},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            logger.warning(
                "Attendance verification failed for invitation %s on booking %s: %s",
                invitation_id,
                booking_id,
                exc.code,
            )
            raise

        self._record(
            AttendanceEventKind.VERIFY_SUCCESS,
            booking_id,
            now,
            invitation_id=invitation_id,
            metadata={"already_present": result.already_present},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return result

    def _verify(
        self,
        booking_id: str,
        invitation_id: str,
        code: str,
        token: Optional[str],
        now: datetime,
    ) -> VerificationResult:
        validate_attendance_code(code)
        if token is not None:
            self.verify_token(token, booking_id)
        invitation = self._require_invitation(booking_id, invitation_id)

        since = now - timedelta(minutes=self._settings.verification_cooldown_minutes)
        if self._repository.count_failed_verifications(invitation_id, since) >= self._settings.max_verification_attempts:
            raise TooManyAttempts("too many failed attempts, try again later")

        if invitation.attendance_status is AttendanceStatus.PRESENT:
            return self._already_present(invitation)

        booking = self._require_booking(booking_id)
        self._ensure_attendance_open(booking, now)
        if invitation.code_hash is None or invitation.code_salt is None:
            raise CodeMismatch("no attendance code has been issued", code="code_not_issued")
        if invitation.code_expires_at is not None and now > invitation.code_expires_at:
            raise CodeMismatch("attendance code has expired", code="code_expired")
        if not secrets.compare_digest(hash_code(invitation.code_salt, code), invitation.code_hash):
            raise CodeMismatch("invalid code")

        if not self._repository.mark_present(invitation_id, booking_id, now):
            current = self._require_invitation(booking_id, invitation_id)
            if current.attendance_status is AttendanceStatus.PRESENT:
                return self._already_present(current)
            raise ConflictError("attendance could not be recorded", code="concurrent_update")

        logger.info("Invitation %s marked present for booking %s", invitation_id, booking_id)
        return VerificationResult(
            success=True,
            invitation_id=invitation_id,
            attended_at=now,
            already_present=False,
            occupancy=self._repository.get_occupancy(booking_id),
        )

    def _already_present(self, invitation: Invitation) -> VerificationResult:
        return VerificationResult(
            success=True,
            invitation_id=invitation.invitation_id,
            attended_at=invitation.attended_at,
            already_present=True,
            occupancy=self._repository.get_occupancy(invitation.booking_id),
            reason="already_present",
        )

    # ------------------------------------------------------------- occupancy

    def get_occupancy(self, booking_id: str) -> Occupancy:
        occupancy = self._repository.get_occupancy(booking_id)
        if occupancy is None:
            raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
        return occupancy

    def list_attendees(self, booking_id: str, token: Optional[str] = None) -> list[AttendeeListItem]:
        """Public roster: display names only, never email addresses."""
        if token is not None:
            self.verify_token(token, booking_id)
        self._require_booking(booking_id)
        return [
            AttendeeListItem(
                invitation_id=invitation.invitation_id,
                display_name=invitation.display_name,
                attendance_status=invitation.attendance_status,
            )
            for invitation in self._repository.list_invitations(booking_id)
        ]
