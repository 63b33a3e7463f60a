from __future__ import annotations

from datetime import timedelta

from celery.schedules import crontab
import pytest

from marketplace.models.notification import Notification
from marketplace.tasks import settlement_tasks
from marketplace.tasks.beat_schedule import get_beat_schedule


@pytest.fixture
def task_db(db, gateway, monkeypatch):
    monkeypatch.setattr(settlement_tasks, "build_payment_gateway", lambda: gateway)
    monkeypatch.setattr(settlement_tasks, "SessionLocal", lambda: db)
    return db


def test_daily_run_releases_and_stores_notifications(task_db, completed_booking, provider, now):
    completed_booking()

    reports = settlement_tasks.run_job_set(task_db, "daily", now + timedelta(days=15))

    assert reports[0]["job"] == "release_matured_escrow"
    assert reports[0]["succeeded"] == 1
    stored = task_db.query(Notification).filter_by(user_id=provider.id).all()
    assert [n.type for n in stored] == ["funds_available"]


def test_task_accepts_iso_timestamp(task_db, now):
    reports = settlement_tasks.run_weekly_jobs(now.isoformat())
    assert [r["job"] for r in reports] == ["purge_read_notifications"]


def test_task_failure_is_retried(task_db, monkeypatch):
    def explode(db, job, now=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(settlement_tasks, "run_job_set", explode)

    # Called directly, Celery's retry re-raises the original error
    with pytest.raises(RuntimeError):
        settlement_tasks.run_hourly_jobs()


def test_beat_schedule_covers_every_job_set():
    schedule = get_beat_schedule("production")

    assert {entry["task"] for entry in schedule.values()} == {
        "marketplace.tasks.settlement_tasks.run_hourly_jobs",
        "marketplace.tasks.settlement_tasks.run_daily_jobs",
        "marketplace.tasks.settlement_tasks.run_weekly_jobs",
    }
    assert schedule["settlement-daily"]["schedule"] == crontab(hour=2, minute=0)


def test_development_runs_hourly_jobs_more_often():
    schedule = get_beat_schedule("development")
    assert schedule["settlement-hourly"]["schedule"] == crontab(minute="*/15")
    assert get_beat_schedule("production")["settlement-hourly"]["schedule"] == crontab(minute=0)
