# backend/marketplace/repositories/base_repository.py
"""
Generic data access for the ledger tables.

Repositories never commit. The service layer owns the transaction
boundary through ``BaseService.transaction()``.
"""

import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException
from ..database.session_utils import get_dialect_name

T = TypeVar("T")

logger = logging.getLogger(__name__)


class IntegrityViolation(RepositoryException):
    """A unique, foreign-key or check constraint rejected the write."""


class BaseRepository(Generic[T]):
    """Lookups, locking reads and flushing inserts/deletes for one model."""

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        return get_dialect_name(self.db)

    def get_by_id(self, id: str, load_relationships: bool = True) -> Optional[T]:
        """Retrieve an entity by its primary key."""
        try:
            query = self.db.query(self.model).filter(self.model.id == id)
            if load_relationships:
                query = self._apply_eager_loading(query)
            return query.first()
        except SQLAlchemyError as e:
            self.logger.error("Error getting %s by id %s: %s", self.model.__name__, id, e)
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {e}") from e

    def get_for_update(self, id: str) -> Optional[T]:
        """
        Re-read an entity with a row lock for the rest of the transaction.

        ``populate_existing`` refreshes any stale identity-map copy. SQLite
        ignores FOR UPDATE and serializes writers at the database level.
        """
        try:
            return (
                self.db.query(self.model)
                .filter(self.model.id == id)
                .populate_existing()
                .with_for_update()
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error locking %s %s: %s", self.model.__name__, id, e)
            raise RepositoryException(f"Failed to lock {self.model.__name__}: {e}") from e

    def create(self, **kwargs: Any) -> T:
        """
        Insert and flush so the ULID default is assigned.

        An integrity failure rolls back the session, undoing earlier writes in
        the same transaction.
        """
        try:
            entity = self.model(**kwargs)
            self.db.add(entity)
            self.db.flush()
            return entity
        except IntegrityError as exc:
            self.logger.warning("Integrity error creating %s: %s", self.model.__name__, exc)
            self.db.rollback()
            raise IntegrityViolation(f"Integrity constraint violated: {exc}") from exc
        except SQLAlchemyError as e:
            self.logger.error("Error creating %s: %s", self.model.__name__, e)
            self.db.rollback()
            raise RepositoryException(f"Failed to create {self.model.__name__}: {e}") from e

    def delete(self, id: str) -> bool:
        """
        Delete an entity by its primary key.

        Returns False if entity not found, raises exception for constraint violations.
        """
        try:
            entity = self.get_by_id(id, load_relationships=False)
            if not entity:
                return False

            self.db.delete(entity)
            self.db.flush()
            return True
        except IntegrityError as e:
            self.logger.error(
                "Cannot delete %s %s due to constraints: %s", self.model.__name__, id, e
            )
            self.db.rollback()
            raise IntegrityViolation(f"Cannot delete due to existing references: {e}") from e
        except SQLAlchemyError as e:
            self.logger.error("Error deleting %s %s: %s", self.model.__name__, id, e)
            self.db.rollback()
            raise RepositoryException(f"Failed to delete {self.model.__name__}: {e}") from e

    def find_one_by(self, **kwargs: Any) -> Optional[T]:
        """Find a single entity by exact-match criteria."""
        try:
            return self.db.query(self.model).filter_by(**kwargs).first()
        except SQLAlchemyError as e:
            self.logger.error("Error finding one by criteria: %s", e)
            raise RepositoryException(f"Failed to find record: {e}") from e

    def _apply_eager_loading(self, query: Query) -> Query:
        """Subclasses add joinedload options for their relationships."""
        return query

    def _build_query(self) -> Query:
        return self.db.query(self.model)
