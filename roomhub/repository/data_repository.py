"""Repository layer responsible for all database access.

Every state transition is a single conditional write executed inside a
``BEGIN IMMEDIATE`` transaction, so concurrent request handlers and sweep
runs serialise on the store instead of on application memory.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from roomhub.domain.errors import ConflictError, UpstreamTimeout
from roomhub.domain.models import (
    AttendanceEvent,
    AttendanceEventKind,
    AttendanceStatus,
    Blackout,
    BlackoutType,
    Booking,
    BookingStatus,
    Invitation,
    Occupancy,
    OperatingHours,
    Recurrence,
    RecurrenceFrequency,
    Room,
    RsvpStatus,
)
from roomhub.domain.time_window import TimeWindow
from roomhub.utils.config import Settings, get_settings
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# A booking holds its slot unless cancelled or vacated by auto-release.
# Pending requests lapse at their start time.
_OCCUPYING_SQL = """
    b.status IN ('pending', 'confirmed')
    AND NOT (
        b.status = 'confirmed'
        AND b.checked_in_at IS NULL
        AND b.auto_release_at IS NOT NULL
        AND b.auto_release_at <= :now
    )
    AND NOT (b.status = 'pending' AND b.start_time <= :now)
"""


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so SQL string comparison matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("refusing to persist a naive datetime")
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


@dataclass(frozen=True)
class QuotaWindow:
    """A per-user cap evaluated over one calendar period."""

    reason: str
    window: TimeWindow
    cap: int


@dataclass(frozen=True)
class ReservationOutcome:
    booking: Optional[Booking]
    reason: Optional[str] = None

    @property
    def reserved(self) -> bool:
        return self.booking is not None


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.store_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the reserved lock from the first statement."""
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise UpstreamTimeout(f"store unavailable: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE;")
            yield conn
            conn.execute("COMMIT;")
        except sqlite3.OperationalError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK;")
            if _is_lock_error(exc):
                raise UpstreamTimeout(
                    f"store did not answer within {self._settings.store_timeout_seconds}s"
                ) from exc
            raise
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK;")
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise UpstreamTimeout(f"store unavailable: {exc}") from exc
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            if _is_lock_error(exc):
                raise UpstreamTimeout(
                    f"store did not answer within {self._settings.store_timeout_seconds}s"
                ) from exc
            raise
        finally:
            conn.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode = WAL;")
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS rooms (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        capacity INTEGER NOT NULL CHECK (capacity > 0),
                        timezone TEXT NOT NULL DEFAULT 'UTC',
                        operating_hours TEXT NOT NULL,
                        buffer_minutes INTEGER NOT NULL DEFAULT 0,
                        min_duration_minutes INTEGER NOT NULL,
                        max_duration_minutes INTEGER NOT NULL,
                        advance_booking_days INTEGER NOT NULL,
                        same_day_booking_enabled INTEGER NOT NULL CHECK (same_day_booking_enabled IN (0,1)),
                        max_bookings_per_user_per_day INTEGER,
                        max_bookings_per_user_per_week INTEGER,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP
                    );

                    CREATE TABLE IF NOT EXISTS blackouts (
                        id TEXT PRIMARY KEY,
                        room_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        blackout_type TEXT NOT NULL CHECK (
                            blackout_type IN ('maintenance','cleaning','event','holiday','repair','other')
                        ),
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1)),
                        recurrence_frequency TEXT CHECK (recurrence_frequency IN ('daily','weekly')),
                        recurrence_interval INTEGER NOT NULL DEFAULT 1,
                        recurrence_until TEXT,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                        CHECK (end_time > start_time),
                        FOREIGN KEY (room_id) REFERENCES rooms(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS bookings (
                        id TEXT PRIMARY KEY,
                        room_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        status TEXT NOT NULL CHECK (status IN ('pending','confirmed','cancelled')),
                        check_in_required INTEGER NOT NULL DEFAULT 1 CHECK (check_in_required IN (0,1)),
                        grace_period_minutes INTEGER NOT NULL DEFAULT 15,
                        checked_in_at TEXT,
                        checked_in_by TEXT,
                        auto_release_at TEXT,
                        auto_released_at TEXT,
                        rejection_reason TEXT,
                        cancelled_at TEXT,
                        present_count INTEGER NOT NULL DEFAULT 0 CHECK (present_count >= 0),
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        CHECK (end_time > start_time),
                        FOREIGN KEY (room_id) REFERENCES rooms(id)
                    );

                    CREATE TABLE IF NOT EXISTS invitations (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        invitee_email TEXT NOT NULL,
                        invitee_name TEXT,
                        rsvp_status TEXT NOT NULL DEFAULT 'pending'
                            CHECK (rsvp_status IN ('pending','accepted','declined')),
                        attendance_status TEXT NOT NULL DEFAULT 'not_present'
                            CHECK (attendance_status IN ('not_present','present')),
                        attended_at TEXT,
                        code_hash TEXT,
                        code_salt TEXT,
                        code_expires_at TEXT,
                        code_send_count INTEGER NOT NULL DEFAULT 0,
                        code_last_sent_at TEXT,
                        created_at TEXT NOT NULL,
                        UNIQUE (booking_id, invitee_email),
                        FOREIGN KEY (booking_id) REFERENCES bookings(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS attendance_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        kind TEXT NOT NULL CHECK (
                            kind IN ('qr_issued','code_sent','verify_success','verify_failed')
                        ),
                        booking_id TEXT NOT NULL,
                        invitation_id TEXT,
                        metadata TEXT NOT NULL DEFAULT '{}',
                        ip_address TEXT,
                        user_agent TEXT,
                        created_at TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_bookings_room_window
                    ON bookings(room_id, start_time, end_time, status);

                    CREATE INDEX IF NOT EXISTS idx_bookings_release_candidates
                    ON bookings(status, auto_release_at);

                    CREATE INDEX IF NOT EXISTS idx_bookings_user_room
                    ON bookings(user_id, room_id, start_time);

                    CREATE INDEX IF NOT EXISTS idx_blackouts_room_active
                    ON blackouts(room_id, is_active);

                    CREATE INDEX IF NOT EXISTS idx_invitations_booking
                    ON invitations(booking_id);

                    CREATE INDEX IF NOT EXISTS idx_attendance_events_invitation
                    ON attendance_events(invitation_id, kind, created_at);
                    """
                )
            finally:
                conn.close()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_rooms(self, rooms: Sequence[Room]) -> int:
        """Insert demo rooms only when the rooms table is empty."""
        try:
            with self._transaction() as conn:
                row = conn.execute("SELECT COUNT(*) AS count FROM rooms;").fetchone()
                if int(row["count"]) > 0:
                    logger.info("Rooms already present; skipping demo seed")
                    return 0
                for room in rooms:
                    self._insert_room(conn, room)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc
        logger.info("Seeded %s demo rooms", len(rooms))
        return len(rooms)

    # ------------------------------------------------------------------ rooms

    @staticmethod
    def _room_params(room: Room) -> dict[str, Any]:
        return {
            "id": room.room_id,
            "name": room.name,
            "capacity": room.capacity,
            "timezone": room.timezone,
            "operating_hours": json.dumps(room.operating_hours.to_dict(), sort_keys=True),
            "buffer_minutes": room.buffer_minutes,
            "min_duration_minutes": room.min_duration_minutes,
            "max_duration_minutes": room.max_duration_minutes,
            "advance_booking_days": room.advance_booking_days,
            "same_day_booking_enabled": int(room.same_day_booking_enabled),
            "max_per_day": room.max_bookings_per_user_per_day,
            "max_per_week": room.max_bookings_per_user_per_week,
        }

    def _insert_room(self, conn: sqlite3.Connection, room: Room) -> None:
        conn.execute(
            """
            INSERT INTO rooms (
                id, name, capacity, timezone, operating_hours, buffer_minutes,
                min_duration_minutes, max_duration_minutes, advance_booking_days,
                same_day_booking_enabled, max_bookings_per_user_per_day,
                max_bookings_per_user_per_week
            )
            VALUES (
                :id, :name, :capacity, :timezone, :operating_hours, :buffer_minutes,
                :min_duration_minutes, :max_duration_minutes, :advance_booking_days,
                :same_day_booking_enabled, :max_per_day, :max_per_week
            );
            """,
            self._room_params(room),
        )

    def insert_room(self, room: Room) -> None:
        with self._transaction() as conn:
            self._insert_room(conn, room)

    def update_room(self, room: Room) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE rooms
                SET name = :name,
                    capacity = :capacity,
                    timezone = :timezone,
                    operating_hours = :operating_hours,
                    buffer_minutes = :buffer_minutes,
                    min_duration_minutes = :min_duration_minutes,
                    max_duration_minutes = :max_duration_minutes,
                    advance_booking_days = :advance_booking_days,
                    same_day_booking_enabled = :same_day_booking_enabled,
                    max_bookings_per_user_per_day = :max_per_day,
                    max_bookings_per_user_per_week = :max_per_week
                WHERE id = :id;
                """,
                self._room_params(room),
            )
            return cursor.rowcount == 1

    def get_room(self, room_id: str) -> Optional[Room]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM rooms WHERE id = ?;", (room_id,)).fetchone()
            return None if row is None else _row_to_room(row)

    def list_rooms(self) -> list[Room]:
        with self._reader() as conn:
            rows = conn.execute("SELECT * FROM rooms ORDER BY name ASC;").fetchall()
            return [_row_to_room(row) for row in rows]

    # -------------------------------------------------------------- blackouts

    @staticmethod
    def _blackout_params(blackout: Blackout) -> dict[str, Any]:
        recurrence = blackout.recurrence
        return {
            "id": blackout.blackout_id,
            "room_id": blackout.room_id,
            "title": blackout.title,
            "description": blackout.description,
            "start_time": to_db_timestamp(blackout.window.start),
            "end_time": to_db_timestamp(blackout.window.end),
            "blackout_type": blackout.blackout_type.value,
            "is_active": int(blackout.is_active),
            "recurrence_frequency": recurrence.frequency.value if recurrence else None,
            "recurrence_interval": recurrence.interval if recurrence else 1,
            "recurrence_until": to_db_timestamp(recurrence.until) if recurrence else None,
        }

    def insert_blackout(self, blackout: Blackout) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO blackouts (
                    id, room_id, title, description, start_time, end_time, blackout_type,
                    is_active, recurrence_frequency, recurrence_interval, recurrence_until
                )
                VALUES (
                    :id, :room_id, :title, :description, :start_time, :end_time, :blackout_type,
                    :is_active, :recurrence_frequency, :recurrence_interval, :recurrence_until
                );
                """,
                self._blackout_params(blackout),
            )

    def update_blackout(self, blackout: Blackout) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE blackouts
                SET title = :title,
                    description = :description,
                    start_time = :start_time,
                    end_time = :end_time,
                    blackout_type = :blackout_type,
                    is_active = :is_active,
                    recurrence_frequency = :recurrence_frequency,
                    recurrence_interval = :recurrence_interval,
                    recurrence_until = :recurrence_until
                WHERE id = :id;
                """,
                self._blackout_params(blackout),
            )
            return cursor.rowcount == 1

    def delete_blackout(self, blackout_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM blackouts WHERE id = ?;", (blackout_id,))
            return cursor.rowcount == 1

    def get_blackout(self, blackout_id: str) -> Optional[Blackout]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM blackouts WHERE id = ?;", (blackout_id,)).fetchone()
            return None if row is None else _row_to_blackout(row)

    @staticmethod
    def _active_blackouts(conn: sqlite3.Connection, room_id: str) -> list[Blackout]:
        rows = conn.execute(
            """
            SELECT * FROM blackouts
            WHERE room_id = ? AND is_active = 1
            ORDER BY start_time ASC;
            """,
            (room_id,),
        ).fetchall()
        return [_row_to_blackout(row) for row in rows]

    def list_active_blackouts(self, room_id: str) -> list[Blackout]:
        with self._reader() as conn:
            return self._active_blackouts(conn, room_id)

    # --------------------------------------------------------------- bookings

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
            return None if row is None else _row_to_booking(row)

    def list_occupying_bookings(
        self,
        room_id: str,
        window: TimeWindow,
        now: datetime,
    ) -> list[Booking]:
        """Bookings still holding the room that intersect ``window``."""
        with self._reader() as conn:
            rows = conn.execute(
                f"""
                SELECT b.* FROM bookings AS b
                WHERE b.room_id = :room_id
                  AND {_OCCUPYING_SQL}
                  AND b.start_time < :window_end
                  AND b.end_time > :window_start
                ORDER BY b.start_time ASC;
                """,
                {
                    "room_id": room_id,
                    "now": to_db_timestamp(now),
                    "window_start": to_db_timestamp(window.start),
                    "window_end": to_db_timestamp(window.end),
                },
            ).fetchall()
            return [_row_to_booking(row) for row in rows]

    @staticmethod
    def _count_user_bookings(
        conn: sqlite3.Connection,
        room_id: str,
        user_id: str,
        period: TimeWindow,
    ) -> int:
        row = conn.execute(
            """
            SELECT COUNT(*) AS count FROM bookings
            WHERE room_id = ?
              AND user_id = ?
              AND status IN ('pending', 'confirmed')
              AND start_time >= ?
              AND start_time < ?;
            """,
            (room_id, user_id, to_db_timestamp(period.start), to_db_timestamp(period.end)),
        ).fetchone()
        return int(row["count"])

    def count_user_bookings(self, room_id: str, user_id: str, period: TimeWindow) -> int:
        with self._reader() as conn:
            return self._count_user_bookings(conn, room_id, user_id, period)

    def reserve_if_free(
        self,
        booking: Booking,
        *,
        guard_window: TimeWindow,
        now: datetime,
        quotas: Sequence[QuotaWindow] = (),
    ) -> ReservationOutcome:
        """Insert ``booking`` only if nothing blocks it, as one atomic step.

        Blackouts and quotas are re-read under the write lock; the overlap
        guard is part of the INSERT itself, against the buffer-expanded
        ``guard_window``.
        """
        with self._transaction() as conn:
            for blackout in self._active_blackouts(conn, booking.room_id):
                if blackout.blocks(booking.window):
                    return ReservationOutcome(booking=None, reason="blackout")

            for quota in quotas:
                held = self._count_user_bookings(conn, booking.room_id, booking.user_id, quota.window)
                if held >= quota.cap:
                    return ReservationOutcome(booking=None, reason=quota.reason)

            params = self._booking_params(booking)
            params.update(
                {
                    "now": to_db_timestamp(now),
                    "guard_start": to_db_timestamp(guard_window.start),
                    "guard_end": to_db_timestamp(guard_window.end),
                }
            )
            cursor = conn.execute(
                f"""
                INSERT INTO bookings (
                    id, room_id, user_id, title, description, start_time, end_time, status,
                    check_in_required, grace_period_minutes, auto_release_at, created_at, updated_at
                )
                SELECT
                    :id, :room_id, :user_id, :title, :description, :start_time, :end_time, :status,
                    :check_in_required, :grace_period_minutes, :auto_release_at, :created_at, :updated_at
                WHERE NOT EXISTS (
                    SELECT 1 FROM bookings AS b
                    WHERE b.room_id = :room_id
                      AND {_OCCUPYING_SQL}
                      AND b.start_time < :guard_end
                      AND b.end_time > :guard_start
                );
                """,
                params,
            )
            if cursor.rowcount != 1:
                return ReservationOutcome(booking=None, reason="booking_conflict")
            row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking.booking_id,)).fetchone()
            return ReservationOutcome(booking=_row_to_booking(row))

    @staticmethod
    def _booking_params(booking: Booking) -> dict[str, Any]:
        return {
            "id": booking.booking_id,
            "room_id": booking.room_id,
            "user_id": booking.user_id,
            "title": booking.title,
            "description": booking.description,
            "start_time": to_db_timestamp(booking.window.start),
            "end_time": to_db_timestamp(booking.window.end),
            "status": booking.status.value,
            "check_in_required": int(booking.check_in_required),
            "grace_period_minutes": booking.grace_period_minutes,
            "auto_release_at": to_db_timestamp(booking.auto_release_at),
            "created_at": to_db_timestamp(booking.created_at),
            "updated_at": to_db_timestamp(booking.updated_at or booking.created_at),
        }

    def confirm_booking(
        self,
        booking_id: str,
        auto_release_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bookings
                SET status = 'confirmed', auto_release_at = :auto_release_at, updated_at = :now
                WHERE id = :id AND status = 'pending' AND start_time > :now;
                """,
                {
                    "auto_release_at": to_db_timestamp(auto_release_at),
                    "now": to_db_timestamp(now),
                    "id": booking_id,
                },
            )
            return cursor.rowcount == 1

    def reject_booking(self, booking_id: str, reason: Optional[str], now: datetime) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bookings
                SET status = 'cancelled', rejection_reason = ?, cancelled_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending';
                """,
                (reason, to_db_timestamp(now), to_db_timestamp(now), booking_id),
            )
            return cursor.rowcount == 1

    def cancel_booking(self, booking_id: str, reason: Optional[str], now: datetime) -> bool:
        stamp = to_db_timestamp(now)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bookings
                SET status = 'cancelled',
                    rejection_reason = COALESCE(?, rejection_reason),
                    auto_release_at = NULL,
                    cancelled_at = ?,
                    updated_at = ?
                WHERE id = ?
                  AND status IN ('pending', 'confirmed')
                  AND checked_in_at IS NULL
                  AND end_time > ?;
                """,
                (reason, stamp, stamp, booking_id, stamp),
            )
            return cursor.rowcount == 1

    def mark_checked_in(
        self,
        booking_id: str,
        now: datetime,
        acting_user_id: Optional[str],
    ) -> bool:
        """Record check-in and cancel the scheduled release in one guarded write."""
        stamp = to_db_timestamp(now)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bookings
                SET checked_in_at = :now,
                    checked_in_by = :acting_user_id,
                    auto_release_at = NULL,
                    updated_at = :now
                WHERE id = :id
                  AND status = 'confirmed'
                  AND checked_in_at IS NULL
                  AND auto_released_at IS NULL
                  AND (auto_release_at IS NULL OR auto_release_at > :now);
                """,
                {"now": stamp, "acting_user_id": acting_user_id, "id": booking_id},
            )
            return cursor.rowcount == 1

    def mark_auto_released(self, booking_id: str, now: datetime) -> bool:
        stamp = to_db_timestamp(now)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bookings
                SET auto_released_at = :now, updated_at = :now
                WHERE id = :id
                  AND status = 'confirmed'
                  AND checked_in_at IS NULL
                  AND auto_release_at IS NOT NULL
                  AND auto_release_at <= :now
                  AND auto_released_at IS NULL;
                """,
                {"now": stamp, "id": booking_id},
            )
            return cursor.rowcount == 1

    def list_auto_release_candidates(self, now: datetime, limit: Optional[int] = None) -> list[Booking]:
        query = """
            SELECT * FROM bookings
            WHERE status = 'confirmed'
              AND checked_in_at IS NULL
              AND auto_release_at IS NOT NULL
              AND auto_release_at <= ?
              AND auto_released_at IS NULL
            ORDER BY auto_release_at ASC
        """
        params: tuple[Any, ...] = (to_db_timestamp(now),)
        if limit is not None:
            query += " LIMIT ?"
            params = params + (limit,)
        with self._reader() as conn:
            rows = conn.execute(query + ";", params).fetchall()
            return [_row_to_booking(row) for row in rows]

    def expire_pending_bookings(
        self,
        now: datetime,
        reason: str,
        limit: Optional[int] = None,
    ) -> list[Booking]:
        """Cancel pending requests whose start passed without approval.

        Selection and update share one write transaction, so a concurrent
        approve either lands first (and the row is skipped) or finds the
        booking already cancelled.
        """
        stamp = to_db_timestamp(now)
        query = """
            SELECT id FROM bookings
            WHERE status = 'pending' AND start_time <= ?
            ORDER BY start_time ASC
        """
        params: tuple[Any, ...] = (stamp,)
        if limit is not None:
            query += " LIMIT ?"
            params = params + (limit,)

        expired: list[Booking] = []
        with self._transaction() as conn:
            booking_ids = [row["id"] for row in conn.execute(query + ";", params).fetchall()]
            for booking_id in booking_ids:
                cursor = conn.execute(
                    """
                    UPDATE bookings
                    SET status = 'cancelled',
                        rejection_reason = COALESCE(rejection_reason, :reason),
                        cancelled_at = :now,
                        updated_at = :now
                    WHERE id = :id AND status = 'pending' AND start_time <= :now;
                    """,
                    {"reason": reason, "now": stamp, "id": booking_id},
                )
                if cursor.rowcount != 1:
                    continue
                row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
                expired.append(_row_to_booking(row))
        return expired

    # ------------------------------------------------------------ invitations

    def insert_invitation(self, invitation: Invitation, now: datetime) -> None:
        try:
            self._insert_invitation(invitation, now)
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"{invitation.invitee_email} is already invited to booking {invitation.booking_id}",
                code="duplicate_invitation",
            ) from exc

    def _insert_invitation(self, invitation: Invitation, now: datetime) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO invitations (
                    id, booking_id, invitee_email, invitee_name, rsvp_status,
                    attendance_status, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    invitation.invitation_id,
                    invitation.booking_id,
                    invitation.invitee_email,
                    invitation.invitee_name,
                    invitation.rsvp_status.value,
                    invitation.attendance_status.value,
                    to_db_timestamp(now),
                ),
            )

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM invitations WHERE id = ?;", (invitation_id,)).fetchone()
            return None if row is None else _row_to_invitation(row)

    def find_invitation_by_email(self, booking_id: str, email: str) -> Optional[Invitation]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM invitations WHERE booking_id = ? AND invitee_email = ?;",
                (booking_id, email),
            ).fetchone()
            return None if row is None else _row_to_invitation(row)

    def list_invitations(self, booking_id: str) -> list[Invitation]:
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM invitations
                WHERE booking_id = ?
                ORDER BY COALESCE(invitee_name, invitee_email) ASC;
                """,
                (booking_id,),
            ).fetchall()
            return [_row_to_invitation(row) for row in rows]

    def update_rsvp(self, invitation_id: str, rsvp_status: RsvpStatus) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE invitations SET rsvp_status = ? WHERE id = ?;",
                (rsvp_status.value, invitation_id),
            )
            return cursor.rowcount == 1

    def store_attendance_code(
        self,
        invitation_id: str,
        *,
        code_hash: str,
        code_salt: str,
        expires_at: datetime,
        now: datetime,
        max_sends: int,
        cooldown_cutoff: datetime,
    ) -> bool:
        """Replace the invitation's code unless the send limit or cooldown applies."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE invitations
                SET code_hash = :code_hash,
                    code_salt = :code_salt,
                    code_expires_at = :expires_at,
                    code_send_count = code_send_count + 1,
                    code_last_sent_at = :now
                WHERE id = :id
                  AND code_send_count < :max_sends
                  AND (code_last_sent_at IS NULL OR code_last_sent_at <= :cutoff);
                """,
                {
                    "code_hash": code_hash,
                    "code_salt": code_salt,
                    "expires_at": to_db_timestamp(expires_at),
                    "now": to_db_timestamp(now),
                    "id": invitation_id,
                    "max_sends": max_sends,
                    "cutoff": to_db_timestamp(cooldown_cutoff),
                },
            )
            return cursor.rowcount == 1

    def mark_present(self, invitation_id: str, booking_id: str, now: datetime) -> bool:
        """Flip attendance to present and bump the live counter atomically."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE invitations
                SET attendance_status = 'present', attended_at = ?
                WHERE id = ? AND booking_id = ? AND attendance_status = 'not_present';
                """,
                (to_db_timestamp(now), invitation_id, booking_id),
            )
            if cursor.rowcount != 1:
                return False
            conn.execute(
                "UPDATE bookings SET present_count = present_count + 1 WHERE id = ?;",
                (booking_id,),
            )
            return True

    def get_occupancy(self, booking_id: str) -> Optional[Occupancy]:
        with self._reader() as conn:
            row = conn.execute(
                """
                SELECT
                    b.id AS booking_id,
                    (
                        SELECT COUNT(*) FROM invitations AS i
                        WHERE i.booking_id = b.id AND i.attendance_status = 'present'
                    ) AS present,
                    (
                        SELECT COUNT(*) FROM invitations AS i
                        WHERE i.booking_id = b.id
                    ) AS invited,
                    r.capacity AS capacity
                FROM bookings AS b
                INNER JOIN rooms AS r ON r.id = b.room_id
                WHERE b.id = ?;
                """,
                (booking_id,),
            ).fetchone()
            if row is None:
                return None
            return Occupancy(
                booking_id=str(row["booking_id"]),
                present=int(row["present"]),
                invited=int(row["invited"]),
                capacity=int(row["capacity"]),
            )

    # ------------------------------------------------------- attendance audit

    def append_attendance_event(self, event: AttendanceEvent) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO attendance_events (
                    kind, booking_id, invitation_id, metadata, ip_address, user_agent, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    event.kind.value,
                    event.booking_id,
                    event.invitation_id,
                    json.dumps(event.metadata, sort_keys=True, default=str),
                    event.ip_address,
                    event.user_agent,
                    to_db_timestamp(event.created_at),
                ),
            )
            return int(cursor.lastrowid)

    def list_attendance_events(
        self,
        booking_id: str,
        kind: Optional[AttendanceEventKind] = None,
    ) -> list[AttendanceEvent]:
        query = "SELECT * FROM attendance_events WHERE booking_id = ?"
        params: tuple[Any, ...] = (booking_id,)
        if kind is not None:
            query += " AND kind = ?"
            params = params + (kind.value,)
        with self._reader() as conn:
            rows = conn.execute(query + " ORDER BY id ASC;", params).fetchall()
            return [_row_to_event(row) for row in rows]

    def count_failed_verifications(self, invitation_id: str, since: datetime) -> int:
        with self._reader() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM attendance_events
                WHERE invitation_id = ? AND kind = 'verify_failed' AND created_at >= ?;
                """,
                (invitation_id, to_db_timestamp(since)),
            ).fetchone()
            return int(row["count"])


def _row_to_room(row: sqlite3.Row) -> Room:
    return Room(
        room_id=str(row["id"]),
        name=str(row["name"]),
        capacity=int(row["capacity"]),
        timezone=str(row["timezone"]),
        operating_hours=OperatingHours.from_dict(json.loads(row["operating_hours"])),
        buffer_minutes=int(row["buffer_minutes"]),
        min_duration_minutes=int(row["min_duration_minutes"]),
        max_duration_minutes=int(row["max_duration_minutes"]),
        advance_booking_days=int(row["advance_booking_days"]),
        same_day_booking_enabled=bool(row["same_day_booking_enabled"]),
        max_bookings_per_user_per_day=row["max_bookings_per_user_per_day"],
        max_bookings_per_user_per_week=row["max_bookings_per_user_per_week"],
    )


def _row_to_blackout(row: sqlite3.Row) -> Blackout:
    recurrence = None
    if row["recurrence_frequency"] is not None:
        recurrence = Recurrence(
            frequency=RecurrenceFrequency(row["recurrence_frequency"]),
            interval=int(row["recurrence_interval"]),
            until=from_db_timestamp(row["recurrence_until"]),
        )
    return Blackout(
        blackout_id=str(row["id"]),
        room_id=str(row["room_id"]),
        title=str(row["title"]),
        description=row["description"],
        window=TimeWindow(from_db_timestamp(row["start_time"]), from_db_timestamp(row["end_time"])),
        blackout_type=BlackoutType(row["blackout_type"]),
        is_active=bool(row["is_active"]),
        recurrence=recurrence,
    )


def _row_to_booking(row: sqlite3.Row) -> Booking:
    return Booking(
        booking_id=str(row["id"]),
        room_id=str(row["room_id"]),
        user_id=str(row["user_id"]),
        title=str(row["title"]),
        description=row["description"],
        window=TimeWindow(from_db_timestamp(row["start_time"]), from_db_timestamp(row["end_time"])),
        status=BookingStatus(row["status"]),
        check_in_required=bool(row["check_in_required"]),
        grace_period_minutes=int(row["grace_period_minutes"]),
        checked_in_at=from_db_timestamp(row["checked_in_at"]),
        checked_in_by=row["checked_in_by"],
        auto_release_at=from_db_timestamp(row["auto_release_at"]),
        auto_released_at=from_db_timestamp(row["auto_released_at"]),
        rejection_reason=row["rejection_reason"],
        cancelled_at=from_db_timestamp(row["cancelled_at"]),
        present_count=int(row["present_count"]),
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


def _row_to_invitation(row: sqlite3.Row) -> Invitation:
    return Invitation(
        invitation_id=str(row["id"]),
        booking_id=str(row["booking_id"]),
        invitee_email=str(row["invitee_email"]),
        invitee_name=row["invitee_name"],
        rsvp_status=RsvpStatus(row["rsvp_status"]),
        attendance_status=AttendanceStatus(row["attendance_status"]),
        attended_at=from_db_timestamp(row["attended_at"]),
        code_hash=row["code_hash"],
        code_salt=row["code_salt"],
        code_expires_at=from_db_timestamp(row["code_expires_at"]),
        code_send_count=int(row["code_send_count"]),
        code_last_sent_at=from_db_timestamp(row["code_last_sent_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> AttendanceEvent:
    return AttendanceEvent(
        event_id=int(row["id"]),
        kind=AttendanceEventKind(row["kind"]),
        booking_id=str(row["booking_id"]),
        invitation_id=row["invitation_id"],
        metadata=json.loads(row["metadata"]),
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        created_at=from_db_timestamp(row["created_at"]),
    )
