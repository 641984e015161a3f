"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and the service do the work.

Timestamps are timezone-aware UTC datetimes here. The stores translate them
to and from the fixed-width ISO strings kept in the database.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """An account in ClinicGate.

    token_version is the revocation counter. Every bearer token embeds the
    value current at issuance; bumping it invalidates all of them at once.
    It only ever increases.

    is_active is the soft lifecycle flag. Users are never hard-deleted by the
    auth core; deactivation bumps token_version like logout-all does.
    """

    username: str
    email: str
    role: str  # "admin", "terapeuta", "secretaria"
    id: int | None = None
    hashed_password: str | None = None
    token_version: int = 0
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class Session:
    """A persisted login on one device.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw token is handed
    to the client once at login and never stored.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    user_agent: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Invite:
    """A single-use, role-granting signup code.

    email, when set, restricts redemption to that address (case-insensitive).
    used is terminal: once True it never reverts.
    """

    code: str
    role: str
    expires_at: datetime
    id: int | None = None
    email: str | None = None
    used: bool = False
    used_by: int | None = None
    created_by: int | None = None
    last_email_sent: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AuthContext:
    """Identity resolved from a verified bearer token."""

    user_id: int
    username: str
    role: str
    token_version: int
    expires_at: datetime
    session_id: int | None = None


@dataclass(frozen=True)
class SignupFields:
    """Account fields supplied alongside an invite code."""

    username: str
    email: str
    password: str


@dataclass
class LoginResult:
    """What a successful login hands back: the bearer token plus the session row."""

    access_token: str
    session_token: str
    session: Session
    user: User
    expires_in: int


@dataclass(frozen=True)
class RevocationResult:
    token_version: int
    sessions_removed: int
