"""
Password hashing (Argon2id via passlib) and JWT access tokens (python-jose).

Tokens are stateless: the signature and ``exp`` are the only things checked
here. Whether the subject still exists, or still has access to anything, is
decided per request by auth.identity and auth.permissions.
"""

import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

logger = logging.getLogger(__name__)

TOKEN_TYPE = "access"
SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")
DEFAULT_TOKEN_MINUTES = 60
MAX_TOKEN_MINUTES = 24 * 60

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def is_production_like() -> bool:
    return os.environ.get("ENVIRONMENT", "development").lower() in ("production", "staging")


def _load_secret_key() -> str:
    key = os.environ.get("JWT_SECRET_KEY")
    if key:
        return key
    if is_production_like():
        raise ValueError("JWT_SECRET_KEY must be set when ENVIRONMENT is production or staging")
    logger.warning("JWT_SECRET_KEY not set; issuing tokens with a per-process development key")
    return "taskflow-dev-" + secrets.token_urlsafe(32)


def _load_algorithm() -> str:
    algorithm = os.environ.get("JWT_ALGORITHM", "HS256")
    if algorithm not in SUPPORTED_ALGORITHMS:
        logger.warning(f"JWT_ALGORITHM={algorithm} is not one of {SUPPORTED_ALGORITHMS}; falling back to HS256")
        return "HS256"
    return algorithm


def _load_token_minutes() -> int:
    raw = os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", str(DEFAULT_TOKEN_MINUTES))
    try:
        minutes = int(raw)
    except ValueError:
        logger.warning(f"ACCESS_TOKEN_EXPIRE_MINUTES={raw!r} is not an integer; using {DEFAULT_TOKEN_MINUTES}")
        return DEFAULT_TOKEN_MINUTES
    if not 1 <= minutes <= MAX_TOKEN_MINUTES:
        logger.warning(f"ACCESS_TOKEN_EXPIRE_MINUTES={minutes} out of range; using {DEFAULT_TOKEN_MINUTES}")
        return DEFAULT_TOKEN_MINUTES
    return minutes


SECRET_KEY = _load_secret_key()
ALGORITHM = _load_algorithm()
ACCESS_TOKEN_EXPIRE_MINUTES = _load_token_minutes()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    is_valid = pwd_context.verify(plain_password, hashed_password)
    logger.debug(f"Password verification result: {is_valid}")
    return is_valid


def create_access_token(claims: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Sign an access token carrying ``claims`` (``sub`` and ``email``).

    ``expires_delta`` overrides the configured lifetime; a negative value
    yields an already expired token.
    """
    lifetime = expires_delta if expires_delta is not None else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    expire = datetime.now(timezone.utc) + lifetime

    payload = dict(claims, exp=expire, type=TOKEN_TYPE)
    logger.debug(f"Issuing access token for subject {claims.get('sub')}, expires {expire.isoformat()}")
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode ``token``, returning its payload, or None on a bad signature or expiry."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"JWT verification failed: {e}")
        return None
