"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository, clock, services and routers, and runs startup
initialization (schema, optional demo rooms, optional auto-release sweep).

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from roomhub.controllers.attendance_controller import router as attendance_router
from roomhub.controllers.booking_controller import router as booking_router
from roomhub.controllers.facility_controller import router as facility_router
from roomhub.repository.data_repository import DataRepository
from roomhub.services.attendance_service import AttendanceService
from roomhub.services.availability_service import AvailabilityResolver
from roomhub.services.booking_service import BookingService
from roomhub.services.facility_service import FacilityService
from roomhub.services.notification_service import LoggingNotificationDispatcher, NotificationDispatcher
from roomhub.services.release_scheduler import AutoReleaseScheduler
from roomhub.services.token_service import AttendanceTokenSigner
from roomhub.utils.clock import Clock, SystemClock
from roomhub.utils.config import Settings, get_settings
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every collaborator is created here and injected through app.state, so
    tests can pass their own settings, a frozen clock or a recording
    dispatcher without patching module globals.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    dispatcher = dispatcher or LoggingNotificationDispatcher()

    # --- Repository (SQLite connection factory, atomic conditional writes) ---
    repository = DataRepository(settings)

    # --- Services ---
    facility_service = FacilityService(repository=repository, settings=settings)
    resolver = AvailabilityResolver(repository=repository, settings=settings, clock=clock)
    booking_service = BookingService(
        repository=repository,
        resolver=resolver,
        settings=settings,
        clock=clock,
        dispatcher=dispatcher,
    )
    attendance_service = AttendanceService(
        repository=repository,
        signer=AttendanceTokenSigner(settings),
        settings=settings,
        clock=clock,
        dispatcher=dispatcher,
    )
    release_scheduler = AutoReleaseScheduler(
        repository=repository,
        booking_service=booking_service,
        settings=settings,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        try:
            yield
        finally:
            _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(facility_router)
    app.include_router(booking_router)
    app.include_router(attendance_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.clock = clock
    app.state.repository = repository
    app.state.facility_service = facility_service
    app.state.availability_resolver = resolver
    app.state.booking_service = booking_service
    app.state.attendance_service = attendance_service
    app.state.release_scheduler = release_scheduler

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. Demo rooms are seeded only when configured and the rooms table is empty.
      3. The sweep thread starts last, once the schema it queries exists.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo rooms (skipped if rooms table not empty)")
        app.state.facility_service.seed_demo_rooms()

    if settings.auto_release_enabled:
        logger.info("Startup: starting auto-release sweep")
        app.state.release_scheduler.start()

    logger.info("Startup complete, system ready")


def _shutdown(app: FastAPI) -> None:
    scheduler: AutoReleaseScheduler = app.state.release_scheduler
    if scheduler.is_running:
        scheduler.stop()


# Module-level app object for uvicorn
app = create_app()
