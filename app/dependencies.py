"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated
import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.security import decode_token
from app.db.session import get_db
from app.services.app_store import AppStoreSignedPayloadVerifier, get_verifier

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Signed payload verifier dependency
Verifier = Annotated[AppStoreSignedPayloadVerifier, Depends(get_verifier)]

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)

# Development test user ID (consistent UUID for testing)
DEV_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "code": "AUTH_002",
            "message": message,
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> uuid.UUID:
    """
    Resolve the calling account from the bearer token's ``sub`` claim.

    Raises 401 if not authenticated or the token is invalid.
    In development with DEV_AUTH_DISABLED=True, returns the dev user.
    """
    if settings.auth_disabled:
        request.state.user_id = DEV_USER_ID
        return DEV_USER_ID

    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type") != "access":
        raise _unauthorized("Invalid or expired token")

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        logger.warning("Access token carried a non-UUID subject")
        raise _unauthorized("Invalid or expired token")

    # Picked up by the New Relic middleware
    request.state.user_id = user_id
    return user_id


# Type alias for authenticated caller dependency
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
