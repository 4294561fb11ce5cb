"""Signed, short-lived attendance tokens embedded in meeting QR codes."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from roomhub.domain.errors import AttendanceTokenExpired, InvalidAttendanceToken
from roomhub.domain.models import IssuedToken, TokenClaims
from roomhub.utils.config import Settings, get_settings


ATTENDANCE_SCOPE = "attendance_view"
TOKEN_ALGORITHM = "HS256"


class AttendanceTokenSigner:
    """HS256 JWT signer for ``{booking_id, scope, iat, exp, jti}`` claims.

    Time claims are checked against the caller's clock rather than the wall
    clock, so expiry follows the same clock as the booking lifecycle.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        if not self._settings.attendance_token_secret:
            raise ValueError("attendance token secret must be configured")
        self._secret = self._settings.attendance_token_secret

    def issue(self, booking_id: str, now: datetime) -> IssuedToken:
        issued_at = now.astimezone(timezone.utc).replace(microsecond=0)
        expires_at = issued_at + timedelta(minutes=self._settings.attendance_token_ttl_minutes)
        token = jwt.encode(
            {
                "booking_id": booking_id,
                "scope": ATTENDANCE_SCOPE,
                "iat": int(issued_at.timestamp()),
                "exp": int(expires_at.timestamp()),
                "jti": secrets.token_urlsafe(8),
            },
            self._secret,
            algorithm=TOKEN_ALGORITHM,
        )
        return IssuedToken(
            token=token,
            booking_id=booking_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def decode(self, token: str, now: datetime) -> TokenClaims:
        """Verify signature, scope and expiry; return the embedded claims."""
        try:
            claims = jwt.decode(
                token or "",
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                options={
                    "require": ["exp", "iat", "booking_id", "scope"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidAttendanceToken(f"attendance token rejected: {exc}") from exc

        try:
            issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError) as exc:
            raise InvalidAttendanceToken("attendance token time claims are unreadable") from exc

        scope = str(claims["scope"])
        if scope != ATTENDANCE_SCOPE:
            raise InvalidAttendanceToken("attendance token has the wrong scope")
        if now >= expires_at:
            raise AttendanceTokenExpired("attendance token has expired")
        return TokenClaims(
            booking_id=str(claims["booking_id"]),
            scope=scope,
            issued_at=issued_at,
            expires_at=expires_at,
        )
