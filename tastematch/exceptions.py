"""Custom exceptions for TasteMatch.

Every data problem the taste core can run into has a type here. Most of them
are absorbed inside the core and turned into a degraded result; only
configuration errors and unknown users reach the API layer.
"""

from typing import Any, Dict, Optional


class TasteMatchException(Exception):
    """Base exception for TasteMatch errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize exception.

        Args:
            message: Human-readable error message
            status_code: HTTP status code for API responses
            details: Additional error details for debugging
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class MissingDataError(TasteMatchException):
    """Raised when a user or item has no usable music data."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=404, details=details)


class InvalidVectorError(TasteMatchException):
    """Raised when a vector is empty, non-finite, all zero or the wrong size."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Invalid vector: {reason}",
            status_code=422,
            details=details or {"reason": reason},
        )


class CollaboratorUnavailableError(TasteMatchException):
    """Raised when a collaborator call times out or fails."""

    def __init__(self, collaborator: str, error: Optional[Exception] = None):
        reason = "timed out" if error is None else str(error)
        super().__init__(
            message=f"Collaborator '{collaborator}' unavailable: {reason}",
            status_code=503,
            details={
                "collaborator": collaborator,
                "error": reason,
                "error_type": type(error).__name__ if error else "TimeoutError",
            },
        )
        self.collaborator = collaborator


class CollaboratorDataCorruptError(TasteMatchException):
    """Raised when stored vector data cannot be parsed."""

    def __init__(self, raw_type: str, error: Exception):
        super().__init__(
            message=f"Could not parse vector stored as {raw_type}: {error}",
            status_code=502,
            details={
                "raw_type": raw_type,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )


class ConfigurationError(TasteMatchException):
    """Raised when system-wide settings break a required contract."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=500, details=details)


class UserNotFoundError(TasteMatchException):
    """Raised when a user id is not known to the user store."""

    def __init__(self, user_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"User {user_id} not found.",
            status_code=404,
            details=details or {"user_id": user_id},
        )
