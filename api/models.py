"""
API request and response models for the ClinicGate auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuthContext, Invite, Session, User
from auth.passwords import MAX_PASSWORD_LENGTH

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    terapeuta = "terapeuta"
    secretaria = "secretaria"


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. identifier is a username or email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout. Falls back to the session cookie."""

    session_token: Optional[str] = Field(default=None, max_length=128)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup (invite redemption).

    Field rules (username charset, email shape, password length) are enforced
    by the invite service so the CLI and the API reject the same inputs.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=20)
    username: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """One login session. The token itself is never returned here."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: datetime
    active: bool = True

    @classmethod
    def from_session(cls, session: Session, active: bool = True) -> "SessionResponse":
        return cls(
            id=session.id,
            user_id=session.user_id,
            user_agent=session.user_agent,
            created_at=session.created_at,
            expires_at=session.expires_at,
            active=active,
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login and /auth/change-password.

    session_token is shown once; it identifies this device for POST /auth/logout.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    session_token: str
    session: SessionResponse
    username: str
    role: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    role: str
    session_id: Optional[int] = None
    expires_at: datetime
    resources: list[str]

    @classmethod
    def from_context(cls, context: AuthContext, resources: list[str]) -> "MeResponse":
        return cls(
            user_id=context.user_id,
            username=context.username,
            role=context.role,
            session_id=context.session_id,
            expires_at=context.expires_at,
            resources=resources,
        )


class RevocationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    token_version: int
    sessions_removed: int


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users (admin creates an account directly)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)
    role: RoleEnum = RoleEnum.terapeuta


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Both fields optional."""

    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: str
    is_active: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at,
            last_login=user.last_login,
        )


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


class InviteCreate(BaseModel):
    """Request body for POST /api/v1/invites.

    ttl_hours defaults to INVITE_EXPIRE_DAYS when omitted.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    role: RoleEnum = RoleEnum.terapeuta
    email: Optional[str] = Field(default=None, max_length=254)
    ttl_hours: Optional[int] = Field(default=None, ge=1, le=24 * 90)
    code: Optional[str] = Field(default=None, max_length=20)

    @field_validator("email", "code", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class InviteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    email: Optional[str] = None
    role: str
    used: bool
    used_by: Optional[int] = None
    created_by: Optional[int] = None
    expires_at: datetime
    last_email_sent: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_invite(cls, invite: Invite) -> "InviteResponse":
        return cls(
            id=invite.id,
            code=invite.code,
            email=invite.email,
            role=invite.role,
            used=invite.used,
            used_by=invite.used_by,
            created_by=invite.created_by,
            expires_at=invite.expires_at,
            last_email_sent=invite.last_email_sent,
            created_at=invite.created_at,
        )


class InviteInfoResponse(BaseModel):
    """Public pre-signup view of an invite: no id, no bookkeeping."""

    model_config = ConfigDict(frozen=True)

    code: str
    email: Optional[str] = None
    role: str
    expires_at: datetime


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class AdminSessionResponse(SessionResponse):
    username: Optional[str] = None


class AdminRevokeRequest(BaseModel):
    """Request body for POST /api/v1/admin/sessions/revoke -- forced logout-all."""

    user_id: int = Field(ge=1)
