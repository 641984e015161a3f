"""
auth/dependencies.py -- FastAPI Depends() helpers: the per-request auth gate.

Token sources, checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. "access_token" cookie -- set by POST /auth/login for browser clients.

get_auth_context() resolves the token through AuthService.authenticate()
(signature, expiry, counter re-check). require_permission(resource, action)
builds a dependency that additionally consults the permission table and
raises AuthorizationError (403) -- never a 401 -- for a valid identity
lacking the permission.

Errors are raised as the auth taxonomy, not HTTPException. api/main.py maps
them to the error envelope in one handler.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.models import AuthContext
from auth.service import AuthService
from auth.tokens import ACCESS_COOKIE


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def bearer_token(request: Request) -> str | None:
    """Return the raw bearer token from the header or cookie, or None."""
    header = request.headers.get("Authorization", "")
    if header[:7].lower() == "bearer ":
        token = header[7:].strip()
        if token:
            return token
    return request.cookies.get(ACCESS_COOKIE) or None


def get_auth_context(request: Request) -> AuthContext:
    """Require authentication. Raises AuthenticationError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(context: AuthContext = Depends(get_auth_context)): ...
    """
    return get_auth_service(request).authenticate(bearer_token(request))


def require_permission(resource: str, action: str) -> Callable[..., AuthContext]:
    """Build a dependency that allows the request only if the caller's role
    holds (resource, action).

        @router.get("/users", dependencies=[Depends(require_permission("usuarios", "list"))])
    """

    def _check(request: Request, context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        get_auth_service(request).require_permission(context, resource, action)
        return context

    return _check
