"""Recurring sweep that releases confirmed bookings nobody checked in to.

Each run first cancels pending requests whose start passed unapproved.

The sweep does not serialise itself: overlapping runs (a cron firing while the
background thread is mid-sweep) are safe because each release is a guarded,
idempotent write.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from roomhub.domain.errors import BookingCoreError, UpstreamTimeout
from roomhub.domain.models import AutoReleaseResult, SweepItemResult, SweepReport
from roomhub.repository.data_repository import DataRepository
from roomhub.services.booking_service import BookingService
from roomhub.utils.clock import Clock, SystemClock
from roomhub.utils.config import Settings, get_settings
from roomhub.utils.logger import get_logger


logger = get_logger(__name__)


class AutoReleaseScheduler:
    def __init__(
        self,
        repository: DataRepository,
        booking_service: BookingService,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._booking_service = booking_service
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_sweep(self, limit: Optional[int] = None) -> SweepReport:
        """Release every overdue candidate; one failure never aborts the batch."""
        started_at = self._clock.now()
        expired = self._expire_pending(limit)
        candidates = self._repository.list_auto_release_candidates(started_at, limit=limit)
        results: list[SweepItemResult] = []

        for booking in candidates:
            try:
                released = self._release_with_retry(booking.booking_id)
            except BookingCoreError as exc:
                logger.warning("Auto-release of booking %s failed: %s", booking.booking_id, exc)
                results.append(
                    SweepItemResult(
                        booking_id=booking.booking_id,
                        success=False,
                        error_code=exc.code,
                        error=exc.message,
                    )
                )
                continue
            except Exception as exc:
                logger.exception("Unexpected failure releasing booking %s", booking.booking_id)
                results.append(
                    SweepItemResult(
                        booking_id=booking.booking_id,
                        success=False,
                        error_code="unexpected_error",
                        error=str(exc),
                    )
                )
                continue
            results.append(
                SweepItemResult(
                    booking_id=booking.booking_id,
                    success=True,
                    auto_released_at=released.auto_released_at,
                )
            )

        released_count = sum(1 for item in results if item.success)
        report = SweepReport(
            started_at=started_at,
            processed=len(results),
            released=released_count,
            failed=len(results) - released_count,
            results=results,
            expired=expired,
        )
        if report.processed or report.expired:
            logger.info(
                "Auto-release sweep processed=%s released=%s failed=%s expired=%s",
                report.processed,
                report.released,
                report.failed,
                report.expired,
            )
        return report

    def _expire_pending(self, limit: Optional[int]) -> int:
        try:
            return len(self._booking_service.expire_pending(limit=limit))
        except UpstreamTimeout as exc:
            # Left for the next run; releases still proceed.
            logger.warning("Pending expiry skipped this sweep: %s", exc)
            return 0

    def _release_with_retry(self, booking_id: str) -> AutoReleaseResult:
        # Only store timeouts are retried; release is idempotent so a repeat is harmless.
        retries = max(0, self._settings.auto_release_retry_attempts)
        for attempt in range(retries + 1):
            try:
                return self._booking_service.auto_release(booking_id)
            except UpstreamTimeout:
                if attempt == retries:
                    raise
                delay = self._settings.auto_release_retry_backoff_seconds * (2 ** attempt)
                logger.warning(
                    "Store timeout releasing booking %s; retry %s/%s in %.2fs",
                    booking_id,
                    attempt + 1,
                    retries,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="auto-release-sweep",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Auto-release sweep started (every %ss)",
            self._settings.auto_release_interval_seconds,
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Auto-release sweep stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_sweep()
            except Exception:
                logger.exception("Auto-release sweep failed")
            self._stop_event.wait(self._settings.auto_release_interval_seconds)
