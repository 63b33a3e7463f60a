# backend/marketplace/tasks/celery_app.py
"""
Celery app that runs the settlement job sets.

Redis is both broker and result backend. Beat fires the hourly, daily and
weekly sets on the settlement queue; see ``beat_schedule``.
"""

import logging
import os
from typing import Any, Type, cast

from celery import Celery, Task
from celery.signals import setup_logging

from marketplace.core.config import settings
from marketplace.core.logging_config import setup_logging as configure_logging


def create_celery_app() -> Celery:
    """Build the app from settings; CELERY_* env vars override the Redis URL."""
    broker_url = os.getenv("CELERY_BROKER_URL") or settings.redis_url
    result_backend = os.getenv("CELERY_RESULT_BACKEND") or broker_url

    celery_app = Celery(
        "marketplace",
        broker=broker_url,
        backend=result_backend,
    )

    celery_app.conf.update(
        {
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": "UTC",
            "enable_utc": True,
            "worker_prefetch_multiplier": 1,
            "worker_max_tasks_per_child": 100,
            "task_soft_time_limit": 300,
            "task_time_limit": 600,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "task_default_retry_delay": 60,
            "task_max_retries": 3,
            "beat_schedule_filename": "celerybeat-schedule",
            "worker_hijack_root_logger": False,
            "broker_transport_options": {"visibility_timeout": 3600},
        }
    )

    celery_app.conf.imports = ("marketplace.tasks.settlement_tasks",)
    celery_app.conf.task_routes = {
        "marketplace.tasks.settlement_tasks.*": {"queue": "settlement"},
    }

    from marketplace.tasks.beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule(settings.environment)

    return celery_app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Workers log through the same root handler as the API."""
    configure_logging(settings.log_level)


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Logs final failures and each retry with the task id."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger = logging.getLogger(__name__)
        logger.error(
            "Task %s[%s] failed with exception: %s",
            self.name,
            task_id,
            exc,
            exc_info=True,
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger = logging.getLogger(__name__)
        logger.warning(
            "Task %s[%s] retry %s due to: %s",
            self.name,
            task_id,
            self.request.retries,
            exc,
            extra={"task_id": task_id, "task_name": self.name, "retry_count": self.request.retries},
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)


celery_app.Task = cast(Type[Task], BaseTask)

