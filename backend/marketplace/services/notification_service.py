# backend/marketplace/services/notification_service.py
"""
Notification emitter and dispatcher.

State-machine operations return ``NotificationRequest`` objects. After the
operation's transaction has committed, ``NotificationDispatcher`` hands each
request to a ``NotificationSink``. Delivery failures are logged and counted
but never fail the operation that produced them.
"""

import logging
from typing import Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..events.notification_events import NotificationRequest
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Delivery channel boundary; implementations decide how a message reaches the user."""

    def emit(self, user_id: str, type: str, title: str, message: str) -> None:
        ...


class DatabaseNotificationSink:
    """Stores notifications as in-app rows."""

    def __init__(self, db: Session):
        self.db = db
        self.repository = RepositoryFactory.create_notification_repository(db)

    def emit(self, user_id: str, type: str, title: str, message: str) -> None:
        try:
            self.repository.create(user_id=user_id, type=type, title=title, message=message)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise


class NotificationDispatcher:
    """Delivers collected notification requests to a sink, one at a time."""

    def __init__(self, sink: NotificationSink):
        self.sink = sink

    def dispatch(self, requests: Iterable[NotificationRequest]) -> int:
        """
        Emit every request; returns how many were delivered.

        Args:
            requests: Notifications collected by a committed operation
        """
        delivered = 0
        for request in requests:
            try:
                self.sink.emit(request.user_id, request.type.value, request.title, request.message)
            except Exception as exc:
                logger.error(
                    "Notification delivery failed for user %s (%s): %s",
                    request.user_id,
                    request.type.value,
                    exc,
                    extra={"user_id": request.user_id, "notification_type": request.type.value},
                )
                prometheus_metrics.record_notification(request.type.value, "failed")
                continue
            delivered += 1
            prometheus_metrics.record_notification(request.type.value, "delivered")
        return delivered
