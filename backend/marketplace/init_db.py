# backend/marketplace/init_db.py
"""
Create all tables for the configured database.

Deployed databases are migrated with Alembic (`alembic upgrade head` from
backend/); this shortcut is for local development databases.
"""

import logging

from marketplace.core.logging_config import setup_logging
from marketplace.database import Base, engine
import marketplace.models  # noqa: F401  registers every model on Base.metadata

logger = logging.getLogger(__name__)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema created on %s", engine.url.render_as_string(hide_password=True))


if __name__ == "__main__":
    setup_logging()
    init_db()
