"""
Error taxonomy shared by the authorization engine, lifecycle rules and routes.

Every error carries the HTTP status it maps to; main.py renders all of them
as JSON with a stable ``error`` message field.
"""

from typing import Optional

from fastapi import status


class AppError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message}


class Unauthenticated(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authenticated"


class PermissionDenied(AppError):
    """Authenticated but not permitted; ``reason`` is machine readable."""

    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Permission denied"

    def __init__(self, reason, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message)

    def to_dict(self) -> dict:
        reason = getattr(self.reason, "value", self.reason)
        return {"error": self.message, "reason": reason}


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflict"


class InvalidInput(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid input"


class InternalError(AppError):
    pass
