"""
auth/service.py -- AuthService: the facade the HTTP layer and the CLI call.

Wires the three stores onto one SQLAlchemy engine and composes them into the
operations the rest of the application needs:

  login / logout_one / logout_all
  authenticate (bearer -> AuthContext) / authorize
  issue_invite / redeem_invite
  change_password / update_user (role + active flag) / create_user
  ensure_admin (bootstrap) / purge_expired_sessions

Authentication model:
  The bearer token is the authoritative channel. authenticate() verifies the
  signature and expiry without I/O, then does ONE keyed lookup of the user to
  compare the token's ver claim with users.token_version. With
  Settings.enforce_session_rows the session row named by the token's sid
  claim must also still be live, which makes "sign out this device" cut off
  that device's bearer token immediately.

Credential-change flows (password, role, deactivation) run their write and
the logout-all bump in the same transaction: either the change and the
revocation both land or neither does.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.engine import Engine

from auth.errors import AuthenticationError, AuthorizationError, NotFoundError, SessionRevokedError, ValidationError
from auth.invites import InviteLedger, InviteService, validate_password, validate_signup
from auth.models import AuthContext, Invite, LoginResult, RevocationResult, Session, SignupFields, User
from auth.passwords import hash_password
from auth.permissions import ADMIN, authorize, is_valid_role, normalize_role
from auth.revocation import RevocationController
from auth.schema import create_auth_engine, storage_errors, utcnow
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import authenticate_user, create_access_token, decode_access_token
from core.config import Settings, get_settings

logger = logging.getLogger("clinicgate.auth.service")

_AUTH_REQUIRED = "Authentication required."


class AuthService:
    """Authentication, revocation, invite and account operations over one engine.

    Usage:
        auth = AuthService.from_url("sqlite:///clinicgate_auth.db")
        result = auth.login("ana", "secret123")
        context = auth.authenticate(result.access_token)
        auth.authorize(context, "pacientes", "list")
        auth.logout_all(context.user_id)
    """

    def __init__(
        self,
        engine: Engine,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.settings = settings or get_settings()
        self._clock = clock
        self.users = UserStore(engine, clock=clock)
        self.sessions = SessionStore(engine, clock=clock, secret_key=self.settings.secret_key)
        self.revocation = RevocationController(engine, self.users, self.sessions)
        self.invites = InviteService(
            InviteLedger(engine, clock=clock),
            self.users,
            engine,
            clock=clock,
            default_ttl_seconds=self.settings.invite_expire_days * 24 * 3600,
            email_cooldown_seconds=self.settings.invite_email_cooldown_seconds,
        )

    @classmethod
    def from_url(
        cls,
        db_url: str,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "AuthService":
        return cls(create_auth_engine(db_url), settings=settings, clock=clock)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str, user_agent: str | None = None) -> LoginResult:
        """Verify credentials and start a session.

        Raises AuthenticationError for an unknown identifier, a wrong password
        or an inactive account, with no way to tell them apart.
        """
        user = authenticate_user(self.users, identifier or "", password or "")
        if user is None:
            logger.info("Login failed")
            raise AuthenticationError("Invalid username or password.", detail={"reason": "bad_credentials"})
        result = self._start_session(user, user_agent)
        logger.info("Login user_id=%s role=%s session_id=%s", user.id, user.role, result.session.id)
        return result

    def _start_session(self, user: User, user_agent: str | None) -> LoginResult:
        raw_token, session = self.sessions.create(user.id, self.settings.session_expire_seconds, user_agent=user_agent)
        self.users.update_last_login(user.id)
        access_token = create_access_token(
            user,
            session_id=session.id,
            expire_seconds=self.settings.token_expire_seconds,
            now=self._clock(),
            secret_key=self.settings.secret_key,
        )
        return LoginResult(
            access_token=access_token,
            session_token=raw_token,
            session=session,
            user=user,
            expires_in=self.settings.token_expire_seconds,
        )

    def logout_one(self, raw_session_token: str) -> bool:
        return self.revocation.logout_one(raw_session_token)

    def logout_all(self, user_id: int) -> RevocationResult:
        return self.revocation.logout_all(user_id)

    # ------------------------------------------------------------------
    # Per-request gate
    # ------------------------------------------------------------------

    def authenticate(self, bearer: str | None) -> AuthContext:
        """Resolve a bearer token to an AuthContext.

        Raises:
            AuthenticationError: missing, malformed, badly signed or expired
                                 token, or the account is gone or inactive.
            SessionRevokedError: the token's ver claim is behind the user's
                                 token_version (or, with enforce_session_rows,
                                 its session row is gone).
        """
        context = decode_access_token(bearer, now=self._clock(), secret_key=self.settings.secret_key)
        user = self.users.get_by_id(context.user_id)
        if user is None:
            raise AuthenticationError(_AUTH_REQUIRED, detail={"reason": "unknown_user"})
        if not user.is_active:
            raise AuthenticationError(_AUTH_REQUIRED, detail={"reason": "inactive"})
        if context.token_version != user.token_version:
            raise SessionRevokedError(_AUTH_REQUIRED, detail={"reason": "revoked"})
        if self.settings.enforce_session_rows:
            session = self.sessions.get_by_id(context.session_id) if context.session_id is not None else None
            if session is None or session.user_id != user.id:
                raise SessionRevokedError(_AUTH_REQUIRED, detail={"reason": "session_gone"})
        # Role changes bump the counter, so user.role equals the claim here;
        # the stored value is used regardless.
        return dataclasses.replace(context, role=user.role, username=user.username)

    def authorize(self, context: AuthContext, resource: str, action: str) -> bool:
        return authorize(context.role, resource, action)

    def require_permission(self, context: AuthContext, resource: str, action: str) -> None:
        """Raise AuthorizationError unless context's role holds (resource, action)."""
        if not self.authorize(context, resource, action):
            logger.info(
                "Forbidden user_id=%s role=%s resource=%s action=%s",
                context.user_id,
                context.role,
                resource,
                action,
            )
            raise AuthorizationError(
                "You do not have permission to perform this action.",
                detail={"resource": resource, "action": action},
            )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def find_sessions_by_user(self, user_id: int) -> list[Session]:
        return self.sessions.list_by_user(user_id)

    def revoke_session(self, user_id: int, session_id: int) -> None:
        """Sign out one of user_id's devices. Raises NotFoundError if it is not theirs."""
        if not self.sessions.delete_by_id(session_id, user_id=user_id):
            raise NotFoundError("Session not found.")
        logger.info("Session id=%s revoked by owner user_id=%s", session_id, user_id)

    def list_all_sessions(self, include_expired: bool = True) -> list[Session]:
        return self.sessions.list_all(include_expired=include_expired)

    def session_is_live(self, session: Session) -> bool:
        return self.sessions.is_live(session)

    def purge_expired_sessions(self) -> int:
        return self.sessions.purge_expired()

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def issue_invite(
        self,
        role: str,
        email: str | None = None,
        ttl_seconds: int | None = None,
        code: str | None = None,
        created_by: int | None = None,
    ) -> Invite:
        return self.invites.issue(role, email=email, ttl_seconds=ttl_seconds, code=code, created_by=created_by)

    def redeem_invite(self, code: str, signup: SignupFields) -> User:
        return self.invites.validate_and_redeem(code, signup)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def list_users(self) -> list[User]:
        return self.users.list_users()

    def create_user(self, username: str, email: str, password: str, role: str) -> User:
        """Create an account directly (admin action or bootstrap), bypassing invites."""
        if not is_valid_role(role):
            raise ValidationError(f"Unknown role: {role!r}.", detail={"field": "role"})
        fields = validate_signup(SignupFields(username=username, email=email, password=password))
        user_id = self.users.create_user(
            User(
                username=fields.username,
                email=fields.email,
                role=normalize_role(role),
                hashed_password=hash_password(fields.password),
            )
        )
        logger.info("User created user_id=%s role=%s", user_id, normalize_role(role))
        return self.get_user(user_id)

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        user_agent: str | None = None,
    ) -> LoginResult:
        """Replace the user's password, revoke every login, and start a fresh one."""
        user = self.get_user(user_id)
        if not self.users.verify_credential(user, current_password or ""):
            raise ValidationError("Current password is incorrect.", detail={"field": "current_password"})
        validate_password(new_password or "", field="new_password")
        digest = hash_password(new_password)
        with storage_errors("change password"), self.engine.begin() as conn:
            revoked = self.revocation.logout_all(user_id, conn=conn)
            self.users.update_user(user_id, conn=conn, hashed_password=digest)
        logger.info("Password changed user_id=%s token_version=%s", user_id, revoked.token_version)
        return self._start_session(self.get_user(user_id), user_agent)

    def update_user(
        self,
        actor_id: int | None,
        user_id: int,
        role: str | None = None,
        is_active: bool | None = None,
    ) -> User:
        """Apply a role change and/or an active-flag change as one unit.

        Every guard runs before or inside the single transaction, so a
        rejected request leaves the user exactly as it was:
          - an actor cannot deactivate themselves;
          - the last active admin cannot be demoted or deactivated.
        A role change or a deactivation revokes every login of the user
        (one counter bump however many fields change). None leaves a field
        alone.
        """
        if role is not None:
            if not is_valid_role(role):
                raise ValidationError(f"Unknown role: {role!r}.", detail={"field": "role"})
            role = normalize_role(role)
        if is_active is False and actor_id is not None and actor_id == user_id:
            raise ValidationError("You cannot deactivate your own account.", detail={"field": "is_active"})

        target = self.get_user(user_id)
        changes: dict = {}
        if role is not None and role != target.role:
            changes["role"] = role
        if is_active is not None and is_active != target.is_active:
            changes["is_active"] = is_active
        if not changes:
            return target

        deactivating = changes.get("is_active") is False
        revoke = "role" in changes or deactivating
        revoked = None
        with storage_errors("update user"), self.engine.begin() as conn:
            if revoke:
                revoked = self.revocation.logout_all(user_id, conn=conn)
            self.users.update_user(user_id, conn=conn, **changes)
            if target.role == ADMIN and target.is_active and self.users.count_active_admins(conn=conn) == 0:
                if deactivating:
                    raise ValidationError("Cannot deactivate the last active admin.", detail={"field": "is_active"})
                raise ValidationError("Cannot demote the last active admin.", detail={"field": "role"})

        if "role" in changes:
            logger.info("Role changed user_id=%s %s -> %s", user_id, target.role, role)
        if "is_active" in changes:
            logger.info("User user_id=%s %s", user_id, "activated" if is_active else "deactivated")
        if revoked is not None:
            logger.info(
                "Revoked all logins user_id=%s token_version=%s sessions_removed=%s",
                user_id,
                revoked.token_version,
                revoked.sessions_removed,
            )
        return self.get_user(user_id)

    def set_user_role(self, user_id: int, role: str) -> User:
        """Change a user's role. Revokes their logins; refuses to demote the last active admin."""
        return self.update_user(None, user_id, role=role)

    def set_user_active(self, actor_id: int, user_id: int, active: bool) -> User:
        """Activate or deactivate a user. Deactivation revokes every login.

        An admin cannot deactivate themselves, and the last active admin
        cannot be deactivated.
        """
        return self.update_user(actor_id, user_id, is_active=active)

    def ensure_admin(self) -> User | None:
        """Create the bootstrap admin from settings if the user table is empty.

        Returns the new admin, or None when nothing was created.
        """
        if not self.settings.bootstrap_admin_configured:
            return None
        if self.users.has_users():
            return None
        admin = self.create_user(
            self.settings.admin_username,
            self.settings.admin_email,
            self.settings.admin_password,
            ADMIN,
        )
        logger.info("Bootstrap admin %r created", admin.username)
        return admin
