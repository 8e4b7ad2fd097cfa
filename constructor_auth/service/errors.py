from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` used in the response envelope:
    - validation_error / invalid_code (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict / email_already_exists (409)
    - entity_deleted (410)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCodeError(ServiceError):
    """One-time code is wrong, expired, superseded or already used (400)."""
    status_code = 400
    error_code = "invalid_code"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnauthorizedError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundEntityError(ServiceError):
    """Requested entity not found (404)."""
    status_code = 404
    error_code = "not_found"

    def __init__(self, entity: str = "Entity", **kwargs) -> None:
        super().__init__(f"{entity} not found", **kwargs)
        self.entity = entity


class AlreadyExistEntityError(ServiceError):
    """Unique constraint violated by a write (409)."""
    status_code = 409
    error_code = "conflict"

    def __init__(self, entity: str = "Entity", **kwargs) -> None:
        super().__init__(f"{entity} already exists", **kwargs)
        self.entity = entity


class EmailAlreadyExistsError(ServiceError):
    """A live account already owns the email (409)."""
    status_code = 409
    error_code = "email_already_exists"

    def __init__(self, message: str = "Email already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EntityDeletedError(ServiceError):
    """Entity was soft-deleted (410)."""
    status_code = 410
    error_code = "entity_deleted"

    def __init__(self, entity: str = "Entity", **kwargs) -> None:
        super().__init__(f"{entity} has been deleted", **kwargs)
        self.entity = entity


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCodeError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundEntityError",
    "AlreadyExistEntityError",
    "EmailAlreadyExistsError",
    "EntityDeletedError",
    "ServerError",
]
