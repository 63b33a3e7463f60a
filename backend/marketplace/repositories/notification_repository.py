"""Repository for in-app notification rows."""

from datetime import datetime
import logging
from typing import List

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.notification import Notification
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class NotificationRepository(BaseRepository[Notification]):
    def __init__(self, db: Session):
        super().__init__(db, Notification)

    def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        return (
            self.db.query(Notification)
            .filter(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
            .all()
        )

    def delete_read_before(self, cutoff: datetime) -> int:
        """Delete read notifications created before ``cutoff``; returns the count."""
        try:
            result = self.db.execute(
                delete(Notification)
                .where(Notification.is_read.is_(True), Notification.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error purging notifications: %s", e)
            raise RepositoryException(f"Failed to purge notifications: {e}") from e
        return int(result.rowcount or 0)
