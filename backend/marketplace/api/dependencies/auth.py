# backend/marketplace/api/dependencies/auth.py
"""
Caller identity and privileged-access dependencies.

Authentication happens upstream. The gateway in front of this API sets
``X-User-ID`` to the authenticated user's id; this module only resolves
that id to a user row. Admin and scheduler endpoints use static bearer
tokens from settings.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import SecretStr
from sqlalchemy.orm import Session

from ...core.config import settings
from ...core.ulid_helper import is_valid_ulid
from ...models.user import User
from ...repositories.factory import RepositoryFactory
from .database import get_db

logger = logging.getLogger(__name__)


def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the acting user from the upstream identity header."""
    if not x_user_id or not is_valid_ulid(x_user_id):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid user identity",
        )
    user = RepositoryFactory.create_user_repository(db).get_by_id(
        x_user_id, load_relationships=False
    )
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )
    return user


def _check_bearer(authorization: Optional[str], expected: Optional[SecretStr], scope: str) -> None:
    if expected is None or not expected.get_secret_value():
        logger.error("%s token is not configured; rejecting request", scope)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{scope} access disabled")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        token.strip(), expected.get_secret_value()
    ):
        logger.warning("Rejected %s request with invalid bearer token", scope)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_admin(authorization: Optional[str] = Header(None)) -> None:
    """Allow only callers presenting ``settings.admin_api_token``."""
    _check_bearer(authorization, settings.admin_api_token, "Admin")


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Allow only the scheduler trigger presenting ``settings.cron_secret``."""
    _check_bearer(authorization, settings.cron_secret, "Cron")
