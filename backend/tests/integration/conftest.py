from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

from marketplace.database import Base, build_engine


@pytest.fixture
def file_sessions(tmp_path):
    """Session factory over a file-backed SQLite database, one connection per session."""
    engine = build_engine(f"sqlite:///{tmp_path / 'concurrency.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()
