"""
File storage for task attachments and user avatars.

Files live on local disk under UPLOAD_DIR and are served from /uploads.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Iterable, Set, Tuple

from fastapi import UploadFile

from errors import AppError, InvalidInput

logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(os.environ.get("UPLOAD_DIR", "./uploads"))
MAX_FILE_SIZE = 50 * 1024 * 1024  # 50MB
MAX_AVATAR_SIZE = 5 * 1024 * 1024  # 5MB
CHUNK_SIZE = 1024 * 1024  # 1MB chunks (max memory footprint)

ALLOWED_EXTENSIONS = {
    ".pdf", ".txt", ".md", ".doc", ".docx",  # Documents
    ".png", ".jpg", ".jpeg", ".gif", ".webp",  # Images (no .svg, XSS)
    ".json", ".xml", ".csv", ".xlsx",  # Data files
    ".zip", ".tar", ".gz"  # Archives
}
ALLOWED_MIME_TYPES = {
    "application/pdf",
    "text/plain", "text/markdown",
    "application/msword", "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/png", "image/jpeg", "image/gif", "image/webp",
    "application/json", "application/xml", "text/xml", "text/csv",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/zip", "application/x-tar", "application/gzip"
}

AVATAR_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif"}
AVATAR_MIME_TYPES = {"image/png", "image/jpeg", "image/gif"}


class PayloadTooLarge(AppError):
    status_code = 413
    default_message = "File too large"


def validate_upload(file: UploadFile, extensions: Set[str] = ALLOWED_EXTENSIONS,
                    mime_types: Set[str] = ALLOWED_MIME_TYPES) -> None:
    """Validate file extension and MIME type."""
    if not file.filename:
        raise InvalidInput("No file uploaded")

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in extensions:
        raise InvalidInput(
            f"File type not allowed. Allowed extensions: {', '.join(sorted(extensions))}"
        )

    # Many clients send octet-stream for binary files, so we trust the extension
    if file.content_type not in mime_types and file.content_type != "application/octet-stream":
        raise InvalidInput(f"MIME type not allowed: {file.content_type}")


async def save_upload(subdir: str, file: UploadFile, max_size: int = MAX_FILE_SIZE) -> Tuple[str, str, int]:
    """
    Save an uploaded file using chunked streaming.

    Reads the file in 1MB chunks, validating size incrementally, and aborts
    as soon as the limit is exceeded.

    Returns:
        tuple: (filename, public path under /uploads, file_size)
    """
    target_dir = UPLOAD_DIR / subdir
    target_dir.mkdir(parents=True, exist_ok=True)

    file_ext = Path(file.filename).suffix.lower()
    unique_filename = f"{uuid.uuid4()}{file_ext}"
    filepath = target_dir / unique_filename

    total_size = 0
    try:
        with open(filepath, "wb") as f:
            while True:
                chunk = await file.read(CHUNK_SIZE)
                if not chunk:
                    break

                total_size += len(chunk)
                if total_size > max_size:
                    raise PayloadTooLarge(
                        f"File too large. Maximum size: {max_size / (1024 * 1024):.0f}MB"
                    )
                f.write(chunk)
    except Exception:
        if filepath.exists():
            filepath.unlink()
        raise

    logger.debug(f"Saved upload {file.filename} to {filepath} ({total_size} bytes)")
    return unique_filename, f"/uploads/{subdir}/{unique_filename}", total_size


def remove_file(public_path: str) -> None:
    """Remove a stored file by its /uploads path. Missing files are ignored."""
    if not public_path:
        return
    file_path = UPLOAD_DIR / public_path.replace("/uploads/", "", 1)
    try:
        if file_path.exists():
            file_path.unlink()
            logger.debug(f"Deleted file from disk: {file_path}")
    except OSError as e:
        # Database row is already gone at this point
        logger.error(f"Failed to delete file from disk: {file_path}: {e}")


def remove_files(public_paths: Iterable[str]) -> None:
    for path in public_paths:
        remove_file(path)
