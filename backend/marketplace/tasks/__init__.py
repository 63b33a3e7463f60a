# backend/marketplace/tasks/__init__.py
"""
Celery tasks package for the marketplace.

This package contains the settlement tasks driven by Celery beat:
- Hourly auto-cancellation of unanswered bookings
- Daily escrow release and booking reminders
- Weekly notification retention
"""

from marketplace.tasks.celery_app import celery_app
from marketplace.tasks.settlement_tasks import (
    run_daily_jobs,
    run_hourly_jobs,
    run_weekly_jobs,
)

__all__ = [
    "celery_app",
    "run_daily_jobs",
    "run_hourly_jobs",
    "run_weekly_jobs",
]
