# backend/marketplace/services/settlement_scheduler.py
"""
Time-triggered settlement jobs.

Each job selects its candidates, acts on them one at a time and records
the outcome. A failure on one candidate is logged with its id, counted and
skipped; the rest of the batch still runs. Jobs only touch rows that still
match their predicate, so re-running a job (or running it twice) is safe.

Nothing here schedules itself. Celery beat and the internal cron endpoint
call ``run_hourly_jobs`` / ``run_daily_jobs`` / ``run_weekly_jobs``.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import SYSTEM_ACTOR, BookingStatus
from ..core.exceptions import InvalidStateException
from ..core.timezone_utils import ensure_utc, subtract_months, utc_now
from ..events import notification_events as events
from ..events.notification_events import NotificationRequest
from ..integrations.pagarme_client import PaymentGateway
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_service import AUTO_CANCEL_REASON, BookingService
from .notification_service import NotificationDispatcher
from .payment_service import PaymentService

logger = logging.getLogger(__name__)


@dataclass
class JobReport:
    """Outcome counts for one job run."""

    job: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: Dict[str, str] = field(default_factory=dict)

    def succeed(self) -> None:
        self.processed += 1
        self.succeeded += 1
        prometheus_metrics.record_job_item(self.job, "succeeded")

    def skip(self) -> None:
        self.processed += 1
        self.skipped += 1
        prometheus_metrics.record_job_item(self.job, "skipped")

    def fail(self, item_id: str, error: Exception) -> None:
        self.processed += 1
        self.failed += 1
        self.failures[item_id] = f"{type(error).__name__}: {error}"
        prometheus_metrics.record_job_item(self.job, "failed")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SettlementScheduler(BaseService):
    """Candidate selection and per-item execution for the settlement jobs."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        dispatcher: NotificationDispatcher,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self.dispatcher = dispatcher
        self.clock = clock
        self.booking_service = BookingService(db, gateway, clock=clock)
        self.payment_service = PaymentService(db, gateway, clock=clock)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.notification_repository = RepositoryFactory.create_notification_repository(db)

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.clock()

    def _run_item(self, report: JobReport, item_id: str, action: Callable[[], bool]) -> None:
        """
        Run ``action`` for one candidate and record the outcome.

        ``action`` returns False when the candidate no longer needed work.
        """
        try:
            done = action()
        except InvalidStateException as exc:
            self.logger.info("%s: %s no longer eligible (%s)", report.job, item_id, exc.message)
            report.skip()
            return
        except Exception as exc:
            self.db.rollback()
            self.logger.error(
                "%s failed for %s: %s",
                report.job,
                item_id,
                exc,
                exc_info=True,
                extra={"job": report.job, "item_id": item_id},
            )
            report.fail(item_id, exc)
            return
        if done:
            report.succeed()
        else:
            report.skip()

    def _finish(self, report: JobReport, started: float) -> JobReport:
        prometheus_metrics.observe_job_duration(report.job, time.perf_counter() - started)
        log = self.logger.warning if report.failed else self.logger.info
        log(
            "%s completed: %d processed, %d succeeded, %d failed, %d skipped",
            report.job,
            report.processed,
            report.succeeded,
            report.failed,
            report.skipped,
            extra={"job": report.job},
        )
        return report

    def _dispatch(self, notifications: List[NotificationRequest]) -> None:
        if notifications:
            self.dispatcher.dispatch(notifications)

    # ----------------------------------------------------------------- hourly
    def cancel_stale_pending_bookings(self, now: Optional[datetime] = None) -> JobReport:
        """Cancel bookings the provider never answered, with a full refund."""
        now = self._now(now)
        started = time.perf_counter()
        report = JobReport("cancel_stale_pending_bookings")
        cutoff = now - timedelta(hours=settings.pending_booking_timeout_hours)

        for booking_id in self.booking_repository.find_stale_pending_ids(cutoff):

            def cancel(booking_id: str = booking_id) -> bool:
                transition = self.booking_service.update_status(
                    booking_id,
                    SYSTEM_ACTOR,
                    BookingStatus.CANCELLED.value,
                    reason=AUTO_CANCEL_REASON,
                    now=now,
                )
                self._dispatch(transition.notifications)
                return True

            self._run_item(report, booking_id, cancel)

        return self._finish(report, started)

    # ------------------------------------------------------------------ daily
    def release_matured_escrow(self, now: Optional[datetime] = None) -> JobReport:
        """Release every payment whose escrow hold has elapsed."""
        now = self._now(now)
        started = time.perf_counter()
        report = JobReport("release_matured_escrow")

        for payment_id in self.payment_repository.find_release_candidate_ids(now):

            def release(payment_id: str = payment_id) -> bool:
                transition = self.payment_service.release_funds(payment_id, now=now)
                self._dispatch(transition.notifications)
                return bool(transition.notifications)

            self._run_item(report, payment_id, release)

        return self._finish(report, started)

    def send_booking_reminders(self, now: Optional[datetime] = None) -> JobReport:
        """Remind both parties of accepted bookings starting within the window."""
        now = self._now(now)
        started = time.perf_counter()
        report = JobReport("send_booking_reminders")
        window_end = now + timedelta(hours=settings.reminder_window_hours)

        for booking in self.booking_repository.find_accepted_starting_between(now, window_end):

            def remind(booking=booking) -> bool:
                with self.transaction():
                    stamped = self.booking_repository.mark_reminder_sent(booking.id, now)
                if not stamped:
                    return False
                title = booking.service.title if booking.service else "your booking"
                when = ensure_utc(booking.booking_date).strftime("%Y-%m-%d %H:%M UTC")
                self._dispatch(
                    [
                        events.booking_reminder(booking.client_id, title, when),
                        events.booking_reminder(booking.provider_id, title, when),
                    ]
                )
                return True

            self._run_item(report, booking.id, remind)

        return self._finish(report, started)

    # ----------------------------------------------------------------- weekly
    def purge_read_notifications(self, now: Optional[datetime] = None) -> JobReport:
        """Delete read notifications older than the retention period."""
        now = self._now(now)
        started = time.perf_counter()
        report = JobReport("purge_read_notifications")
        cutoff = subtract_months(now, settings.notification_retention_months)

        def purge() -> bool:
            with self.transaction():
                deleted = self.notification_repository.delete_read_before(cutoff)
            self.logger.info("Purged %d read notifications older than %s", deleted, cutoff.isoformat())
            return True

        self._run_item(report, "read_notifications", purge)
        return self._finish(report, started)

    # ------------------------------------------------------------ entrypoints
    def run_hourly_jobs(self, now: Optional[datetime] = None) -> List[JobReport]:
        return [self.cancel_stale_pending_bookings(now)]

    def run_daily_jobs(self, now: Optional[datetime] = None) -> List[JobReport]:
        now = self._now(now)
        return [self.release_matured_escrow(now), self.send_booking_reminders(now)]

    def run_weekly_jobs(self, now: Optional[datetime] = None) -> List[JobReport]:
        return [self.purge_read_notifications(now)]

    def run(self, job: str, now: Optional[datetime] = None) -> List[JobReport]:
        """Run the ``hourly``, ``daily`` or ``weekly`` job set."""
        runners = {
            "hourly": self.run_hourly_jobs,
            "daily": self.run_daily_jobs,
            "weekly": self.run_weekly_jobs,
        }
        if job not in runners:
            raise ValueError(f"Unknown job set: {job}")
        return runners[job](now)
