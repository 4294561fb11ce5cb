"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


_ENV_PREFIX = "ROOMHUB_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> Optional[str]:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return None
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    store_timeout_seconds: float

    # booking lifecycle
    default_grace_period_minutes: int
    check_in_open_lead_minutes: int
    auto_approve_bookings: bool

    # availability defaults applied to rooms created without an explicit policy
    default_timezone: str
    default_min_duration_minutes: int
    default_max_duration_minutes: int
    default_buffer_minutes: int
    default_advance_booking_days: int
    default_same_day_booking_enabled: bool
    default_max_bookings_per_user_per_day: Optional[int]
    default_max_bookings_per_user_per_week: Optional[int]
    slot_step_minutes: int

    # attendance
    attendance_token_secret: str
    attendance_token_ttl_minutes: int
    attendance_grace_minutes: int
    max_verification_attempts: int
    verification_cooldown_minutes: int
    max_code_sends: int
    code_send_cooldown_minutes: int

    # auto-release sweep
    auto_release_enabled: bool
    auto_release_interval_seconds: int
    auto_release_retry_attempts: int
    auto_release_retry_backoff_seconds: float
    cron_secret: Optional[str]

    seed_demo_data: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process from ``ROOMHUB_*`` variables."""
    return Settings(
        app_name=_env("APP_NAME", "RoomHub Booking Core"),
        app_version=_env("APP_VERSION", "0.1.0"),
        log_level=_env("LOG_LEVEL", "INFO"),
        database_path=Path(_env("DATABASE_PATH", "data/roomhub.db")),
        store_timeout_seconds=_env_float("STORE_TIMEOUT_SECONDS", 5.0),
        default_grace_period_minutes=_env_int("DEFAULT_GRACE_PERIOD_MINUTES", 15),
        check_in_open_lead_minutes=_env_int("CHECK_IN_OPEN_LEAD_MINUTES", 15),
        auto_approve_bookings=_env_bool("AUTO_APPROVE_BOOKINGS", False),
        default_timezone=_env("DEFAULT_TIMEZONE", "UTC"),
        default_min_duration_minutes=_env_int("DEFAULT_MIN_DURATION_MINUTES", 30),
        default_max_duration_minutes=_env_int("DEFAULT_MAX_DURATION_MINUTES", 480),
        default_buffer_minutes=_env_int("DEFAULT_BUFFER_MINUTES", 15),
        default_advance_booking_days=_env_int("DEFAULT_ADVANCE_BOOKING_DAYS", 30),
        default_same_day_booking_enabled=_env_bool("DEFAULT_SAME_DAY_BOOKING_ENABLED", True),
        default_max_bookings_per_user_per_day=_env_int("DEFAULT_MAX_BOOKINGS_PER_USER_PER_DAY", 1),
        default_max_bookings_per_user_per_week=_env_int("DEFAULT_MAX_BOOKINGS_PER_USER_PER_WEEK", 5),
        slot_step_minutes=_env_int("SLOT_STEP_MINUTES", 30),
        attendance_token_secret=_env("ATTENDANCE_TOKEN_SECRET", "change-me-in-production"),
        attendance_token_ttl_minutes=_env_int("ATTENDANCE_TOKEN_TTL_MINUTES", 15),
        attendance_grace_minutes=_env_int("ATTENDANCE_GRACE_MINUTES", 15),
        max_verification_attempts=_env_int("MAX_VERIFICATION_ATTEMPTS", 5),
        verification_cooldown_minutes=_env_int("VERIFICATION_COOLDOWN_MINUTES", 15),
        max_code_sends=_env_int("MAX_CODE_SENDS", 5),
        code_send_cooldown_minutes=_env_int("CODE_SEND_COOLDOWN_MINUTES", 1),
        auto_release_enabled=_env_bool("AUTO_RELEASE_ENABLED", False),
        auto_release_interval_seconds=_env_int("AUTO_RELEASE_INTERVAL_SECONDS", 120),
        auto_release_retry_attempts=_env_int("AUTO_RELEASE_RETRY_ATTEMPTS", 2),
        auto_release_retry_backoff_seconds=_env_float("AUTO_RELEASE_RETRY_BACKOFF_SECONDS", 0.2),
        cron_secret=_env_optional("CRON_SECRET"),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", False),
    )
