"""Service-layer exceptions mapped to HTTP status codes by the app factory."""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for errors a request handler should turn into a response."""

    status_code = 400

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.message, **self.extra}


class ValidationError(ServiceError):
    """Malformed request body or missing field."""


class InvariantError(ServiceError):
    """Operation refused because it would break a data invariant."""


class AuthenticationError(ServiceError):
    status_code = 401


class AuthorizationError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404
