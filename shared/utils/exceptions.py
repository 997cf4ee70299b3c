"""
shared/utils/exceptions.py
Typed application errors. Raised by routers, repositories and the booking
workflow; main.py maps each one to its HTTP status with a {"message": ...} body.
"""

from fastapi import status


class AppError(Exception):
    """Base class for all errors that reach the client with a message."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "An internal server error occurred"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(AppError):
    """Malformed or missing input."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthenticationError(AppError):
    """Missing, invalid, expired or revoked credentials."""
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Access token required"


class AuthorizationError(AppError):
    """Authenticated, but the role or ownership does not permit the action."""
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Access denied"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class InvalidTransitionError(AppError):
    """Requested booking status change is not in the transition table."""
    status_code = status.HTTP_409_CONFLICT
    default_message = "Status change not permitted"


class ConflictError(AppError):
    """Optimistic-concurrency check failed, or a unique record already exists."""
    status_code = status.HTTP_409_CONFLICT
    default_message = "The resource was modified by another request. Please retry."


class DependencyError(AppError):
    """Backing store or another dependency is unavailable."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Data store unavailable"
