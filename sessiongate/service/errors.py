from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Failure raised by a service and rendered as an error envelope.

    ``status_code`` and ``error_code`` are class attributes so handlers can
    map a subclass without inspecting the message. ``detail`` is echoed to
    the client as ``content.details``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        self.status_code = status_code or type(self).status_code
        self.error_code = error_code or type(self).error_code


class ValidationError(ServiceError):
    """Input is well-typed but violates a business rule, e.g. a malformed email."""

    status_code = 400
    error_code = "validation_error"


class InvalidCodeError(ServiceError):
    status_code = 400
    error_code = "invalid_code"


class WeakSecretError(ServiceError):
    """Password too guessable, or its confirmation does not match."""

    status_code = 400
    error_code = "weak_secret"


class AuthenticationError(ServiceError):
    """No usable session, or credentials rejected."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class ExpiredError(ServiceError):
    """A challenge outlived its validity window."""

    status_code = 403
    error_code = "expired"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """The email address is already taken."""

    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCodeError",
    "WeakSecretError",
    "AuthenticationError",
    "ForbiddenError",
    "ExpiredError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
