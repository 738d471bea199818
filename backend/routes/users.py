"""
User directory and self-service profile endpoints.

Profile writes always target the principal's own row.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

import lifecycle
import models
import schemas
import storage
from auth.dependencies import get_current_user
from auth.identity import Principal
from database import get_db
from errors import AppError, NotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


def _own_user(principal: Principal, db: Session) -> models.User:
    user = db.query(models.User).filter(models.User.id == principal.id).first()
    if user is None:
        logger.info(f"Token for user {principal.id} refers to a missing user")
        raise NotFound("User not found")
    return user


@router.get("", response_model=List[schemas.UserSummary])
def list_users(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List all users (for picking team members)."""
    logger.debug(f"User {principal.id} listing users")
    return db.query(models.User).order_by(models.User.username).all()


@router.get("/profile", response_model=schemas.UserProfile)
def get_profile(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return _own_user(principal, db)


@router.put("/profile", response_model=schemas.UserProfile)
def update_profile(
    profile: schemas.ProfileUpdate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Partially update the current user's profile."""
    user = _own_user(principal, db)
    update_data = profile.model_dump(exclude_unset=True)

    with lifecycle.atomic(db):
        for key, value in update_data.items():
            setattr(user, key, value)
    db.refresh(user)

    logger.info(f"User {principal.id} updated profile fields: {sorted(update_data)}")
    return user


@router.post("/avatar", response_model=schemas.UserProfile)
async def upload_avatar(
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Replace the current user's avatar (JPEG, PNG or GIF up to 5MB)."""
    user = _own_user(principal, db)
    storage.validate_upload(file, storage.AVATAR_EXTENSIONS, storage.AVATAR_MIME_TYPES)

    _, public_path, file_size = await storage.save_upload("avatars", file, storage.MAX_AVATAR_SIZE)
    previous_path = user.avatar_url

    try:
        with lifecycle.atomic(db):
            user.avatar_url = public_path
    except AppError:
        storage.remove_file(public_path)
        raise
    storage.remove_file(previous_path)
    db.refresh(user)

    logger.info(f"User {principal.id} uploaded avatar ({file_size} bytes)")
    return user


@router.delete("/avatar", response_model=schemas.UserProfile)
def delete_avatar(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    user = _own_user(principal, db)
    previous_path = user.avatar_url

    with lifecycle.atomic(db):
        user.avatar_url = None
    storage.remove_file(previous_path)
    db.refresh(user)

    logger.info(f"User {principal.id} removed avatar")
    return user
