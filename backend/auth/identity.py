"""
Identity resolution: bearer token -> Principal.

Resolution is stateless. It validates the token and reads the claims, and it
never consults the store, so a principal is only ever as fresh as its token.
Every authorization check re-reads memberships from the store instead.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from auth.security import TOKEN_TYPE, verify_token
from errors import Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated actor performing a request."""

    id: int
    email: str


def principal_claims(user) -> dict:
    """Token claims for a user row (the inverse of resolve_principal)."""
    return {"sub": str(user.id), "email": user.email}


def resolve_principal(token: Optional[str]) -> Principal:
    """
    Resolve a bearer token into a Principal.

    Raises:
        Unauthenticated: token missing, malformed, expired, badly signed,
            not an access token, or lacking ``sub``/``email`` claims
    """
    if not token:
        logger.info("No bearer token provided")
        raise Unauthenticated("Not authenticated")

    payload = verify_token(token)
    if payload is None:
        raise Unauthenticated("Invalid or expired token")

    if payload.get("type") != TOKEN_TYPE:
        logger.info(f"Invalid token type: {payload.get('type')}")
        raise Unauthenticated("Invalid token type")

    subject = payload.get("sub")
    email = payload.get("email")
    if subject is None or not email:
        logger.info("Token payload missing 'sub' or 'email' claim")
        raise Unauthenticated("Invalid token payload")

    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        logger.info(f"Invalid user id format in token: {subject}")
        raise Unauthenticated("Invalid token format")

    return Principal(id=user_id, email=email)
