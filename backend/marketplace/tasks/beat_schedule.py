# backend/marketplace/tasks/beat_schedule.py
"""
Celery Beat schedule for the settlement jobs.

All times are UTC. The jobs are idempotent, so a duplicate or late beat
only re-processes rows that still match each job's predicate.
"""

from typing import Any

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: dict[str, dict[str, Any]] = {
    # Auto-cancel unanswered bookings - every hour on the hour
    "settlement-hourly": {
        "task": "marketplace.tasks.settlement_tasks.run_hourly_jobs",
        "schedule": crontab(minute=0),
        "options": {"queue": "settlement", "priority": 5},
    },
    # Escrow release and booking reminders - daily at 02:00
    "settlement-daily": {
        "task": "marketplace.tasks.settlement_tasks.run_daily_jobs",
        "schedule": crontab(hour=2, minute=0),
        "options": {"queue": "settlement", "priority": 7},
    },
    # Notification retention - Sundays at 03:00
    "settlement-weekly": {
        "task": "marketplace.tasks.settlement_tasks.run_weekly_jobs",
        "schedule": crontab(hour=3, minute=0, day_of_week=0),
        "options": {"queue": "settlement", "priority": 2},
    },
}

# Environment-specific overrides
SCHEDULE_CONFIG: dict[str, dict[str, dict[str, Any]]] = {
    "development": {
        "settlement-hourly": {
            "task": "marketplace.tasks.settlement_tasks.run_hourly_jobs",
            "schedule": crontab(minute="*/15"),
            "options": {"queue": "settlement"},
        },
    },
}


def get_beat_schedule(environment: str = "production") -> dict[str, dict[str, Any]]:
    """
    Get the beat schedule for the specified environment.

    Args:
        environment: The environment name (production, staging, development, test)

    Returns:
        Mapping of schedule entry name to Celery beat configuration dict
    """
    base: dict[str, dict[str, Any]] = dict(CELERYBEAT_SCHEDULE)
    overrides = SCHEDULE_CONFIG.get(environment)
    if overrides:
        base.update(overrides)
    return base
