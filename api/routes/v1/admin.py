"""
api/routes/v1/admin.py -- Session oversight for administrators.

Routes:
  GET  /api/v1/admin/sessions          -- every session row with active/expired status (usuarios:list)
  POST /api/v1/admin/sessions/revoke   -- forced logout-all for a user (usuarios:update)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import AdminRevokeRequest, AdminSessionResponse, RevocationResponse
from auth.dependencies import get_auth_service, require_permission
from auth.service import AuthService

router = APIRouter()


@router.get(
    "/admin/sessions",
    response_model=list[AdminSessionResponse],
    dependencies=[Depends(require_permission("usuarios", "list"))],
)
def list_sessions(
    include_expired: bool = True,
    auth: AuthService = Depends(get_auth_service),
) -> list[AdminSessionResponse]:
    usernames = {u.id: u.username for u in auth.list_users()}
    return [
        AdminSessionResponse(
            id=s.id,
            user_id=s.user_id,
            username=usernames.get(s.user_id),
            user_agent=s.user_agent,
            created_at=s.created_at,
            expires_at=s.expires_at,
            active=auth.session_is_live(s),
        )
        for s in auth.list_all_sessions(include_expired=include_expired)
    ]


@router.post(
    "/admin/sessions/revoke",
    response_model=RevocationResponse,
    dependencies=[Depends(require_permission("usuarios", "update"))],
)
def revoke_user_sessions(body: AdminRevokeRequest, auth: AuthService = Depends(get_auth_service)) -> RevocationResponse:
    """Sign a user out of every device. 404 for an unknown user."""
    result = auth.logout_all(body.user_id)
    return RevocationResponse(
        user_id=body.user_id,
        token_version=result.token_version,
        sessions_removed=result.sessions_removed,
    )
