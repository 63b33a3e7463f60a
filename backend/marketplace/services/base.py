# backend/marketplace/services/base.py
"""
Shared plumbing for the booking, payment, withdrawal and scheduler services.

Every state change runs inside ``transaction()``; gateway calls never do.
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Iterator, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """Session holder with commit/rollback handling and operation timing."""

    def __init__(self, db: Session):
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Commit the writes made in the block, or roll all of them back.

        Database errors surface as ``ServiceException``. Other exceptions propagate
        unchanged after the rollback.
        """
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            self.logger.error("Transaction failed: %s", e)
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {e}") from e
        except Exception:
            self.db.rollback()
            raise

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """Time the wrapped method and record it in the operation histogram."""

        def decorator(func: F) -> F:
            @wraps(func)
            def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                start_time = time.perf_counter()
                success = False
                error_type = None
                try:
                    result = func(self, *args, **kwargs)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    elapsed = time.perf_counter() - start_time
                    if elapsed > SLOW_OPERATION_SECONDS and hasattr(self, "logger"):
                        self.logger.warning(
                            "Slow operation detected: %s took %.2fs", operation_name, elapsed
                        )
                    prometheus_metrics.record_service_operation(
                        service=self.__class__.__name__,
                        operation=operation_name,
                        duration=elapsed,
                        status="success" if success else "error",
                        error_type=error_type,
                    )

            return cast(F, wrapper)

        return decorator

    def log_operation(self, operation: str, **context: Any) -> None:
        self.logger.info("%s completed", operation, extra={"operation": operation, **context})
