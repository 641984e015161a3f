"""
api/routes/v1/users.py -- User administration REST endpoints.

Routes:
  GET   /api/v1/users        -- list all users (usuarios:list)
  POST  /api/v1/users        -- create a user directly, no invite (usuarios:create)
  PATCH /api/v1/users/{id}   -- change role and/or active flag (usuarios:update)

Security:
  [M4] PATCH blocks self-deactivation and demoting or deactivating the last
       active admin.
  A role change or deactivation bumps the target's token_version, so every
  token they hold stops working on the next request.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import UserCreate, UserPatch, UserResponse
from auth.dependencies import get_auth_service, require_permission
from auth.models import AuthContext
from auth.service import AuthService

router = APIRouter()


@router.get(
    "/users",
    response_model=list[UserResponse],
    dependencies=[Depends(require_permission("usuarios", "list"))],
)
def list_users(auth: AuthService = Depends(get_auth_service)) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in auth.list_users()]


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=201,
    dependencies=[Depends(require_permission("usuarios", "create"))],
)
def create_user(body: UserCreate, auth: AuthService = Depends(get_auth_service)) -> UserResponse:
    user = auth.create_user(body.username, body.email, body.password, body.role.value)
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
def patch_user(
    user_id: int,
    body: UserPatch,
    context: AuthContext = Depends(require_permission("usuarios", "update")),
    auth: AuthService = Depends(get_auth_service),
) -> UserResponse:
    """Update role and/or is_active. Omitted fields are left alone.

    Both changes land together or not at all.
    """
    user = auth.update_user(
        context.user_id,
        user_id,
        role=body.role.value if body.role is not None else None,
        is_active=body.is_active,
    )
    return UserResponse.from_user(user)
