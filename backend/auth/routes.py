"""
Authentication API endpoints.

This module provides REST API endpoints for:
- User registration
- Login
- Resolving the current principal
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

import schemas
from database import get_db
from errors import Conflict, Unauthenticated
from lifecycle import atomic
from models import User
from auth.security import hash_password, verify_password, create_access_token
from auth.identity import Principal, principal_claims
from auth.dependencies import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _auth_response(user: User) -> dict:
    return {
        "success": True,
        "user": user,
        "token": create_access_token(principal_claims(user)),
    }


@router.post("/register", response_model=schemas.AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(request: schemas.RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new user account.

    Args:
        request: Registration data (username, email, password)
        db: Database session

    Returns:
        Created user and an access token

    Raises:
        Conflict: 409 if the email or username is already registered
    """
    logger.info(f"Registration attempt for email: {request.email}")

    existing_user = (
        db.query(User)
        .filter(or_(User.email == request.email, User.username == request.username))
        .first()
    )
    if existing_user:
        logger.info(f"Registration failed: email or username already exists: {request.email}")
        raise Conflict("User with this email or username already exists")

    logger.debug("Hashing password for new user")
    new_user = User(
        username=request.username,
        email=request.email,
        password_hash=hash_password(request.password),
    )

    # Concurrent registrations hit the unique constraints instead
    with atomic(db, "User with this email or username already exists"):
        db.add(new_user)
    db.refresh(new_user)

    logger.info(f"User registered successfully: {new_user.email} (ID: {new_user.id})")
    return _auth_response(new_user)


@router.post("/login", response_model=schemas.AuthResponse)
async def login(request: schemas.LoginRequest, db: Session = Depends(get_db)):
    """
    Login with email and password.

    Raises:
        Unauthenticated: 401 if credentials are invalid
    """
    logger.info(f"Login attempt for email: {request.email}")

    user = db.query(User).filter(User.email == request.email).first()
    if not user:
        logger.info(f"Login failed: user not found: {request.email}")
        raise Unauthenticated("Invalid email or password")

    if not verify_password(request.password, user.password_hash):
        logger.info(f"Login failed: invalid password: {request.email}")
        raise Unauthenticated("Invalid email or password")

    logger.info(f"User logged in successfully: {user.email} (ID: {user.id})")
    return _auth_response(user)


@router.get("/me", response_model=schemas.PrincipalResponse)
async def get_me(principal: Principal = Depends(get_current_user)):
    """Return the principal resolved from the bearer token."""
    return {"id": principal.id, "email": principal.email}
