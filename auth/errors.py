"""
auth/errors.py -- Error taxonomy for the auth core.

Every failure that leaves an auth/ component is one of these classes. Stores
wrap SQLAlchemy errors before raising, so callers never see a raw
IntegrityError or OperationalError.

Each class carries the HTTP status_code and stable error_code the API layer
uses for its error envelope. The mapping lives on the class so api/main.py
needs a single exception handler for the whole taxonomy.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from typing import Optional


class AuthServiceError(Exception):
    """Base class for auth-core failures mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AuthenticationError(AuthServiceError):
    """Missing, malformed, expired or badly signed credential (401)."""

    status_code = 401
    error_code = "unauthorized"


class SessionRevokedError(AuthenticationError):
    """Token counter no longer matches the user's token_version (401).

    Surfaced as its own class for logging; the HTTP response is identical to
    any other AuthenticationError.
    """


class AuthorizationError(AuthServiceError):
    """Valid identity, insufficient role permission (403)."""

    status_code = 403
    error_code = "forbidden"


class InviteInvalidError(AuthServiceError):
    """Invite code unknown, expired, already used, or email mismatch (400)."""

    status_code = 400
    error_code = "invite_invalid"


class ValidationError(AuthServiceError):
    """Malformed input to an auth operation (400)."""

    status_code = 400
    error_code = "validation_error"


class NotFoundError(AuthServiceError):
    """Requested record does not exist (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(AuthServiceError):
    """Uniqueness collision that survived its single retry (409)."""

    status_code = 409
    error_code = "conflict"


class StorageError(AuthServiceError):
    """Backing database unavailable or failed mid-operation (503)."""

    status_code = 503
    error_code = "storage_unavailable"


__all__ = [
    "AuthServiceError",
    "StorageError",
    "AuthenticationError",
    "SessionRevokedError",
    "AuthorizationError",
    "InviteInvalidError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
]
