"""
In-app notification model.

Rows are written by the database notification sink and purged by the
weekly retention job once read and old enough.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text
import ulid

from ..core.timezone_utils import utc_now
from ..database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (Index("ix_notifications_read_created", "is_read", "created_at"),)
