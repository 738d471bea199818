"""
FastAPI dependencies for authentication.

Route handlers receive the authenticated actor as a ``Principal`` value via
``Depends(get_current_user)`` and pass it explicitly to the authorization
engine; there is no process-wide session state.
"""

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from auth.identity import Principal, resolve_principal

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme; missing credentials are reported as 401 by
# resolve_principal rather than FastAPI's default 403
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """
    Extract and validate the current principal from the Authorization header.

    Raises:
        Unauthenticated: 401 if the credential is absent or invalid

    Example:
        @router.get("/api/protected")
        async def protected_route(principal: Principal = Depends(get_current_user)):
            return {"user_id": principal.id}
    """
    token = credentials.credentials if credentials else None
    principal = resolve_principal(token)
    logger.debug(f"Authenticated principal {principal.id} ({principal.email})")
    return principal
