"""
api/routes/v1/auth.py -- Login, logout, session and signup REST endpoints.

Routes:
  POST   /api/v1/auth/login            -- password login; returns bearer + session token, sets cookies
  POST   /api/v1/auth/logout           -- delete this device's session row; clears cookies
  POST   /api/v1/auth/logout-all       -- bump token_version and delete every session (requires auth)
  GET    /api/v1/auth/me               -- current identity and reachable resources (requires auth)
  GET    /api/v1/auth/sessions         -- caller's active sessions (requires auth)
  DELETE /api/v1/auth/sessions/{id}    -- sign out one of the caller's devices (requires auth)
  POST   /api/v1/auth/change-password  -- new password, revoke everything, fresh login (requires auth)
  POST   /api/v1/auth/signup           -- redeem an invite code (public)

Security:
  [C1] AuthService.login() runs bcrypt even for unknown identifiers.
  [M5] Cache-Control: no-store on every response that carries a token.
  Every authentication failure returns the same 401 body; the reason is only logged.
  IDOR guard: DELETE /auth/sessions/{id} passes the caller's user_id to the
  store, which scopes the delete to rows the caller owns.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    RevocationResponse,
    SessionResponse,
    SignupRequest,
    UserResponse,
)
from auth.dependencies import get_auth_context, get_auth_service
from auth.models import AuthContext, LoginResult, SignupFields
from auth.permissions import resources_for
from auth.service import AuthService
from auth.tokens import SESSION_COOKIE, clear_auth_cookies, set_auth_cookies
from core.config import Settings

# Auth policy:
# - POST   /auth/login, /auth/logout, /auth/signup: public
# - everything else:                                requires a valid bearer (get_auth_context)
router = APIRouter()


def _login_response(result: LoginResult, settings: Settings, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=result.expires_in,
            session_token=result.session_token,
            session=SessionResponse.from_session(result.session),
            username=result.user.username,
            role=result.user.role,
        ).model_dump(mode="json"),
    )
    set_auth_cookies(resp, result.access_token, result.session_token, result.expires_in, settings=settings)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, auth: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Authenticate with username-or-email and password.

    Returns the bearer token and this device's session token, and sets both
    as httpOnly cookies for browser clients.
    """
    result = auth.login(body.identifier, body.password, user_agent=request.headers.get("user-agent"))
    return _login_response(result, auth.settings)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Delete this device's session row and clear cookies.

    The bearer token stays valid until it expires; use /auth/logout-all to
    cut every token off immediately. Logging out twice is not an error.
    """
    raw = (body.session_token if body else None) or request.cookies.get(SESSION_COOKIE)
    auth.logout_one(raw or "")
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookies(resp)
    return resp


@router.post("/auth/signup", response_model=UserResponse, status_code=201)
def signup(body: SignupRequest, auth: AuthService = Depends(get_auth_service)) -> UserResponse:
    """Create an account by redeeming an invite code. The account gets the invite's role."""
    user = auth.redeem_invite(
        body.code,
        SignupFields(username=body.username, email=body.email, password=body.password),
    )
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(context: AuthContext = Depends(get_auth_context)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse.from_context(context, resources_for(context.role))


@router.post("/auth/logout-all", response_model=RevocationResponse)
def logout_all(
    context: AuthContext = Depends(get_auth_context),
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Sign out every device: all bearer tokens and all session rows, at once."""
    result = auth.logout_all(context.user_id)
    resp = JSONResponse(
        content=RevocationResponse(
            user_id=context.user_id,
            token_version=result.token_version,
            sessions_removed=result.sessions_removed,
        ).model_dump()
    )
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    context: AuthContext = Depends(get_auth_context),
    auth: AuthService = Depends(get_auth_service),
) -> list[SessionResponse]:
    """List the caller's active sessions, newest first."""
    return [SessionResponse.from_session(s) for s in auth.find_sessions_by_user(context.user_id)]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    session_id: int,
    context: AuthContext = Depends(get_auth_context),
    auth: AuthService = Depends(get_auth_service),
) -> None:
    """Sign out one of the caller's devices. 404 if the session is not theirs."""
    auth.revoke_session(context.user_id, session_id)


@router.post("/auth/change-password", response_model=LoginResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    context: AuthContext = Depends(get_auth_context),
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Replace the caller's password.

    Every existing token and session is revoked; the response carries a fresh
    login for the device that made the change.
    """
    result = auth.change_password(
        context.user_id,
        body.current_password,
        body.new_password,
        user_agent=request.headers.get("user-agent"),
    )
    return _login_response(result, auth.settings)
