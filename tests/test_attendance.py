from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import jwt
import pytest

from conftest import at, window
from roomhub.domain.errors import (
    AttendanceTokenExpired,
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
from roomhub.domain.models import AttendanceEventKind, AttendanceStatus, RsvpStatus
from roomhub.services.attendance_service import sanitize_user_agent
from roomhub.services.token_service import AttendanceTokenSigner


@pytest.fixture
def meeting(bookings, clock, confirmed_booking):
    """Confirmed 09:00-10:00 booking, organizer checked in, clock at 09:05."""
    booking = confirmed_booking(window(9, 0, 10, 0))
    clock.set(at(9, 0))
    bookings.check_in(booking.booking_id)
    clock.set(at(9, 5))
    return booking


def _wrong(code: str) -> str:
    return "0000" if code != "0000" else "1111"


# --- invitations ---

def test_invite_normalises_email_and_rejects_duplicates(attendance, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "  Dana@Example.COM ", "Dana")

    assert invitation.invitee_email == "dana@example.com"
    assert invitation.attendance_status is AttendanceStatus.NOT_PRESENT
    with pytest.raises(ConflictError) as excinfo:
        attendance.invite(meeting.booking_id, "dana@example.com")
    assert excinfo.value.code == "duplicate_invitation"


def test_invite_requires_a_plausible_email(attendance, meeting) -> None:
    with pytest.raises(ValidationError) as excinfo:
        attendance.invite(meeting.booking_id, "not-an-email")

    assert excinfo.value.code == "invalid_email"


def test_rsvp_is_recorded(attendance, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")

    updated = attendance.record_rsvp(meeting.booking_id, invitation.invitation_id, accepted=False)

    assert updated.rsvp_status is RsvpStatus.DECLINED


# --- tokens ---

def test_token_requires_organizer_check_in(attendance, clock, confirmed_booking) -> None:
    booking = confirmed_booking(window(9, 0, 10, 0))
    clock.set(at(9, 5))

    with pytest.raises(NotCheckedIn):
        attendance.issue_attendance_token(booking.booking_id)


def test_token_not_issued_before_meeting_starts(attendance, bookings, clock, confirmed_booking) -> None:
    booking = confirmed_booking(window(9, 0, 10, 0))
    clock.set(at(8, 50))
    bookings.check_in(booking.booking_id)

    with pytest.raises(WindowNotOpenYet):
        attendance.issue_attendance_token(booking.booking_id)


def test_token_not_issued_after_attendance_closes(attendance, clock, meeting) -> None:
    clock.set(at(10, 16))

    with pytest.raises(WindowExpired):
        attendance.issue_attendance_token(meeting.booking_id)


def test_issued_token_verifies_and_is_audited(attendance, repository, meeting) -> None:
    issued = attendance.issue_attendance_token(
        meeting.booking_id,
        ip_address="10.0.0.7",
        user_agent="Kiosk <b>lobby</b>",
    )

    claims = attendance.verify_token(issued.token, meeting.booking_id)

    assert claims.booking_id == meeting.booking_id
    assert claims.expires_at == at(9, 20)
    events = repository.list_attendance_events(meeting.booking_id, AttendanceEventKind.QR_ISSUED)
    assert len(events) == 1
    assert events[0].ip_address == "10.0.0.7"
    assert events[0].user_agent == "Kiosk lobby"


def test_token_expires_after_ttl(attendance, clock, meeting) -> None:
    issued = attendance.issue_attendance_token(meeting.booking_id)
    clock.set(at(9, 20))

    with pytest.raises(AttendanceTokenExpired):
        attendance.verify_token(issued.token, meeting.booking_id)


def test_tampered_token_is_rejected(attendance, meeting) -> None:
    token = attendance.issue_attendance_token(meeting.booking_id).token
    signing_input, _, signature = token.rpartition(".")
    tampered = f"{signing_input}.{'A' if signature[0] != 'A' else 'B'}{signature[1:]}"

    with pytest.raises(InvalidAttendanceToken):
        attendance.verify_token(tampered, meeting.booking_id)
    with pytest.raises(InvalidAttendanceToken):
        attendance.verify_token("garbage", meeting.booking_id)


def test_token_for_another_meeting_is_rejected(attendance, settings, clock, meeting) -> None:
    foreign = AttendanceTokenSigner(settings).issue("other-booking", clock.now())

    with pytest.raises(InvalidAttendanceToken) as excinfo:
        attendance.verify_token(foreign.token, meeting.booking_id)

    assert excinfo.value.code == "token_booking_mismatch"


def test_token_signed_with_another_secret_is_rejected(attendance, settings, clock, meeting) -> None:
    other_settings = replace(settings, attendance_token_secret="another-attendance-secret-0123456789")
    forged = AttendanceTokenSigner(other_settings).issue(meeting.booking_id, clock.now())

    with pytest.raises(InvalidAttendanceToken):
        attendance.verify_token(forged.token, meeting.booking_id)


def test_token_is_a_standard_hs256_jwt(attendance, settings, meeting) -> None:
    issued = attendance.issue_attendance_token(meeting.booking_id)

    header = jwt.get_unverified_header(issued.token)
    claims = jwt.decode(
        issued.token,
        settings.attendance_token_secret,
        algorithms=["HS256"],
        options={"verify_exp": False, "verify_iat": False},
    )

    assert header["alg"] == "HS256"
    assert claims["booking_id"] == meeting.booking_id
    assert claims["scope"] == "attendance_view"
    assert claims["exp"] - claims["iat"] == 15 * 60
    assert claims["jti"]


def test_token_with_wrong_scope_or_missing_claims_is_rejected(attendance, settings, clock, meeting) -> None:
    issued_at = int(clock.now().timestamp())
    wrong_scope = jwt.encode(
        {"booking_id": meeting.booking_id, "scope": "admin", "iat": issued_at, "exp": issued_at + 600},
        settings.attendance_token_secret,
        algorithm="HS256",
    )
    no_expiry = jwt.encode(
        {"booking_id": meeting.booking_id, "scope": "attendance_view", "iat": issued_at},
        settings.attendance_token_secret,
        algorithm="HS256",
    )

    with pytest.raises(InvalidAttendanceToken):
        attendance.verify_token(wrong_scope, meeting.booking_id)
    with pytest.raises(InvalidAttendanceToken):
        attendance.verify_token(no_expiry, meeting.booking_id)


# --- codes ---

def test_send_and_verify_marks_present(attendance, bookings, dispatcher, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com", "Dana")
    issued = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)

    result = attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code)

    assert len(issued.code) == 4 and issued.code.isdigit()
    assert result.success and not result.already_present
    assert result.attended_at == at(9, 5)
    assert result.occupancy.present == 1
    assert result.occupancy.percentage == 10
    assert bookings.get_booking(meeting.booking_id).present_count == 1
    sent = [payload for name, payload in dispatcher.events if name == "attendance_code"]
    assert sent[0]["code"] == issued.code


def test_repeat_verification_is_idempotent(attendance, bookings, clock, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")
    issued = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)
    first = attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code)
    clock.set(at(9, 30))

    second = attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code)

    assert second.already_present
    assert second.reason == "already_present"
    assert second.attended_at == first.attended_at
    assert second.occupancy.present == 1
    assert bookings.get_booking(meeting.booking_id).present_count == 1


def test_invitation_from_another_booking_is_not_found(attendance, repository, confirmed_booking, meeting) -> None:
    other = confirmed_booking(window(11, 0, 12, 0), user_id="bob")
    stranger = attendance.invite(other.booking_id, "eve@example.com")

    with pytest.raises(NotFoundError) as excinfo:
        attendance.verify_code(meeting.booking_id, stranger.invitation_id, "1234")

    assert excinfo.value.code == "invitation_not_found"
    failures = repository.list_attendance_events(meeting.booking_id, AttendanceEventKind.VERIFY_FAILED)
    assert [event.metadata["reason"] for event in failures] == ["invitation_not_found"]


def test_malformed_code_is_a_validation_error(attendance, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")

    with pytest.raises(ValidationError) as excinfo:
        attendance.verify_code(meeting.booking_id, invitation.invitation_id, "12a4")

    assert excinfo.value.code == "invalid_code_format"


def test_verify_without_issued_code(attendance, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")

    with pytest.raises(CodeMismatch) as excinfo:
        attendance.verify_code(meeting.booking_id, invitation.invitation_id, "1234")

    assert excinfo.value.code == "code_not_issued"


def test_verify_after_attendance_closes(attendance, clock, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")
    issued = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)
    clock.set(at(10, 16))

    with pytest.raises(WindowExpired):
        attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code)


def test_failed_attempts_are_throttled(attendance, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")
    issued = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)

    for _ in range(5):
        with pytest.raises(CodeMismatch):
            attendance.verify_code(meeting.booking_id, invitation.invitation_id, _wrong(issued.code))

    with pytest.raises(TooManyAttempts):
        attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code)


def test_throttle_lifts_after_cooldown(attendance, clock, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")
    issued = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)
    for _ in range(5):
        with pytest.raises(CodeMismatch):
            attendance.verify_code(meeting.booking_id, invitation.invitation_id, _wrong(issued.code))

    clock.set(at(9, 21))

    assert attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code).success


def test_code_verification_with_token(attendance, settings, clock, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")
    issued = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)
    token = attendance.issue_attendance_token(meeting.booking_id).token
    foreign = AttendanceTokenSigner(settings).issue("other-booking", clock.now()).token

    with pytest.raises(InvalidAttendanceToken):
        attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code, token=foreign)
    result = attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code, token=token)

    assert result.success


def test_code_sends_are_rate_limited(attendance, clock, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")
    attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)

    with pytest.raises(RateLimited) as excinfo:
        attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)
    assert excinfo.value.code == "rate_limited"

    for _ in range(4):
        clock.advance(minutes=1)
        attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)

    clock.advance(minutes=1)
    with pytest.raises(RateLimited) as excinfo:
        attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)
    assert excinfo.value.code == "max_code_sends"


def test_resend_replaces_previous_code(attendance, clock, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")
    first = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)
    clock.advance(minutes=1)
    second = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)

    assert second.send_count == 2
    if first.code != second.code:
        with pytest.raises(CodeMismatch):
            attendance.verify_code(meeting.booking_id, invitation.invitation_id, first.code)
    assert attendance.verify_code(meeting.booking_id, invitation.invitation_id, second.code).success


def test_code_not_sent_for_pending_booking(attendance, bookings, room) -> None:
    pending = bookings.create_booking(room.room_id, "alice", window(9, 0, 10, 0), "Planning")
    invitation = attendance.invite(pending.booking_id, "dana@example.com")

    with pytest.raises(NotConfirmed):
        attendance.send_attendance_code(pending.booking_id, invitation.invitation_id)


def test_concurrent_verifications_count_every_attendee(attendance, bookings, meeting) -> None:
    issued = []
    for index in range(8):
        invitation = attendance.invite(meeting.booking_id, f"guest{index}@example.com")
        issued.append(attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id))

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(
                lambda code: attendance.verify_code(meeting.booking_id, code.invitation_id, code.code),
                issued,
            )
        )

    assert all(result.success for result in results)
    occupancy = attendance.get_occupancy(meeting.booking_id)
    assert occupancy.present == 8
    assert occupancy.invited == 8
    assert bookings.get_booking(meeting.booking_id).present_count == 8


def test_concurrent_duplicate_verification_counts_once(attendance, bookings, meeting) -> None:
    invitation = attendance.invite(meeting.booking_id, "dana@example.com")
    issued = attendance.send_attendance_code(meeting.booking_id, invitation.invitation_id)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(
                lambda _: attendance.verify_code(meeting.booking_id, invitation.invitation_id, issued.code),
                range(12),
            )
        )

    assert sum(1 for result in results if not result.already_present) == 1
    assert bookings.get_booking(meeting.booking_id).present_count == 1


# --- roster and occupancy ---

def test_attendee_list_hides_emails(attendance, meeting) -> None:
    attendance.invite(meeting.booking_id, "dana@example.com", "Dana")
    attendance.invite(meeting.booking_id, "eve@example.com")

    roster = attendance.list_attendees(meeting.booking_id)

    assert sorted(item.display_name for item in roster) == ["Dana", "eve"]
    assert all("@" not in item.display_name for item in roster)


def test_occupancy_of_unknown_booking(attendance) -> None:
    with pytest.raises(NotFoundError):
        attendance.get_occupancy("missing")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, None),
        ("", None),
        ("<script>x</script>", "x"),
        ("Mozilla/5.0 <b>kiosk</b>", "Mozilla/5.0 kiosk"),
        ("a" * 600, "a" * 500),
    ],
)
def test_sanitize_user_agent(raw, expected) -> None:
    assert sanitize_user_agent(raw) == expected
