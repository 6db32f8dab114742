"""Custom exceptions for API error handling."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base for errors that map to a problem+json response."""

    code = "INTERNAL_ERROR"
    status = 500
    title = "Internal error"

    def __init__(self, message: str, *, code: Optional[str] = None, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.extra = extra or {}


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status = 400
    title = "Validation error"


class AuthenticationError(AppError):
    code = "AUTHENTICATION_ERROR"
    status = 401
    title = "Authentication required"


class AuthorizationError(AppError):
    code = "AUTHORIZATION_ERROR"
    status = 403
    title = "Forbidden"


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status = 404
    title = "Not found"


class QueueError(AppError):
    """Raised when a check cannot be handed to the worker pool."""

    code = "QUEUE_ERROR"
    status = 503
    title = "Queue unavailable"
