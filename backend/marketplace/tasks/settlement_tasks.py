# backend/marketplace/tasks/settlement_tasks.py
"""
Celery tasks for the settlement scheduler.

Each task opens its own session, runs one job set and returns the job
reports. Per-item failures are absorbed by the scheduler; a task only
fails (and retries) when the run itself could not start or finish.
"""

from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, ParamSpec, Protocol, TypeVar, cast

from celery.result import AsyncResult
from sqlalchemy.orm import Session

from marketplace.api.dependencies.services import build_payment_gateway
from marketplace.database import SessionLocal
from marketplace.services.notification_service import (
    DatabaseNotificationSink,
    NotificationDispatcher,
)
from marketplace.services.settlement_scheduler import SettlementScheduler
from marketplace.tasks.celery_app import celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)

logger = logging.getLogger(__name__)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


def run_job_set(db: Session, job: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Run one job set against ``db`` and return serialisable reports."""
    scheduler = SettlementScheduler(
        db,
        build_payment_gateway(),
        NotificationDispatcher(DatabaseNotificationSink(db)),
    )
    return [report.to_dict() for report in scheduler.run(job, now)]


def _run(task: Any, job: str, now_iso: Optional[str]) -> List[Dict[str, Any]]:
    now = datetime.fromisoformat(now_iso) if now_iso else None
    db: Session = SessionLocal()
    try:
        reports = run_job_set(db, job, now)
        logger.info("Settlement %s run finished", job, extra={"reports": reports})
        return reports
    except Exception as exc:
        logger.error("Settlement %s run failed: %s", job, exc)
        raise task.retry(exc=exc, countdown=300)
    finally:
        db.close()


@typed_task(bind=True, max_retries=2, name="marketplace.tasks.settlement_tasks.run_hourly_jobs")
def run_hourly_jobs(self: Any, now_iso: Optional[str] = None) -> List[Dict[str, Any]]:
    """Auto-cancel pending bookings the provider never answered."""
    return _run(self, "hourly", now_iso)


@typed_task(bind=True, max_retries=2, name="marketplace.tasks.settlement_tasks.run_daily_jobs")
def run_daily_jobs(self: Any, now_iso: Optional[str] = None) -> List[Dict[str, Any]]:
    """Release matured escrow and send booking reminders."""
    return _run(self, "daily", now_iso)


@typed_task(bind=True, max_retries=2, name="marketplace.tasks.settlement_tasks.run_weekly_jobs")
def run_weekly_jobs(self: Any, now_iso: Optional[str] = None) -> List[Dict[str, Any]]:
    """Purge read notifications past retention."""
    return _run(self, "weekly", now_iso)
