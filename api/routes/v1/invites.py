"""
api/routes/v1/invites.py -- Invite code REST endpoints.

Routes:
  GET    /api/v1/invites/info/{code}       -- public pre-signup lookup (role, email, expiry)
  POST   /api/v1/invites                   -- issue an invite (convites:create)
  GET    /api/v1/invites                   -- list invites, newest first (convites:list)
  DELETE /api/v1/invites/{id}              -- delete an invite (convites:delete)
  POST   /api/v1/invites/{id}/email-sent   -- claim the email dispatch slot (convites:update)

email-sent does not send anything. The mailer calls it before sending; a 400
means the invite has no address, is no longer redeemable, or was emailed
within INVITE_EMAIL_COOLDOWN_SECONDS.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import InviteCreate, InviteInfoResponse, InviteResponse
from auth.dependencies import get_auth_service, require_permission
from auth.models import AuthContext
from auth.service import AuthService

router = APIRouter()


@router.get("/invites/info/{code}", response_model=InviteInfoResponse)
def invite_info(code: str, auth: AuthService = Depends(get_auth_service)) -> InviteInfoResponse:
    """Describe a redeemable invite. 400 invite_invalid if unknown, used or expired."""
    invite = auth.invites.get_info(code)
    return InviteInfoResponse(code=invite.code, email=invite.email, role=invite.role, expires_at=invite.expires_at)


@router.post("/invites", response_model=InviteResponse, status_code=201)
def create_invite(
    body: InviteCreate,
    context: AuthContext = Depends(require_permission("convites", "create")),
    auth: AuthService = Depends(get_auth_service),
) -> InviteResponse:
    invite = auth.issue_invite(
        body.role.value,
        email=body.email,
        ttl_seconds=body.ttl_hours * 3600 if body.ttl_hours else None,
        code=body.code,
        created_by=context.user_id,
    )
    return InviteResponse.from_invite(invite)


@router.get(
    "/invites",
    response_model=list[InviteResponse],
    dependencies=[Depends(require_permission("convites", "list"))],
)
def list_invites(auth: AuthService = Depends(get_auth_service)) -> list[InviteResponse]:
    return [InviteResponse.from_invite(i) for i in auth.invites.list_invites()]


@router.delete(
    "/invites/{invite_id}",
    status_code=204,
    dependencies=[Depends(require_permission("convites", "delete"))],
)
def delete_invite(invite_id: int, auth: AuthService = Depends(get_auth_service)) -> None:
    auth.invites.delete(invite_id)


@router.post(
    "/invites/{invite_id}/email-sent",
    response_model=InviteResponse,
    dependencies=[Depends(require_permission("convites", "update"))],
)
def invite_email_sent(invite_id: int, auth: AuthService = Depends(get_auth_service)) -> InviteResponse:
    """Record an invite email dispatch, refusing it inside the cooldown window."""
    return InviteResponse.from_invite(auth.invites.claim_email_dispatch(invite_id))
