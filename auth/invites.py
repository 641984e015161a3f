"""
auth/invites.py -- Invite ledger (persistence) and invite service (issue/redeem).

Single-use redemption:
  validate_and_redeem() never does read-check-write on the used flag. The
  flip is a conditional UPDATE

      UPDATE invites SET used = 1 WHERE id = :id AND used = 0 AND expires_at > :now

  run in the same transaction as the user INSERT. Whichever caller's UPDATE
  reports one affected row owns the invite; every other concurrent caller sees
  zero rows and gets InviteInvalidError. If creating the user fails (username
  taken, say) the transaction rolls back and the invite stays redeemable.
  Losers are not retried.

Expiry:
  An invite is expired once now >= expires_at. Nothing sweeps invites in the
  background; the check happens when the code is read or redeemed.

Codes:
  8 characters from an alphabet without look-alikes (no I, O, 0, 1), drawn
  with secrets. A collision on insert is retried once with a fresh code, then
  surfaced as ConflictError. Codes are case-insensitive (stored uppercase).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection, Engine

from auth.errors import ConflictError, InviteInvalidError, NotFoundError, ValidationError
from auth.models import Invite, SignupFields, User
from auth.passwords import MAX_PASSWORD_BYTES, MIN_PASSWORD_LENGTH, hash_password, password_fits
from auth.permissions import is_valid_role, normalize_role
from auth.schema import from_db_time, invites, storage_errors, to_db_time, transaction, utcnow
from auth.store import UserStore

logger = logging.getLogger("clinicgate.auth.invites")

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8

_CODE_RE = re.compile(r"^[A-Z0-9-]{4,20}$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,60}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_INVALID_MESSAGE = "Invite code is invalid, expired or already used."


def generate_invite_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def validate_password(password: str, field: str = "password") -> None:
    """Raise ValidationError unless password has 8+ characters and fits bcrypt's 72 bytes."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
            detail={"field": field},
        )
    if not password_fits(password):
        raise ValidationError(
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes (accented letters count as two).",
            detail={"field": field},
        )


def validate_signup(fields: SignupFields) -> SignupFields:
    """Check account fields and return a normalized copy.

    Raises ValidationError naming the first offending field.
    """
    username = (fields.username or "").strip()
    email = normalize_email(fields.email) or ""
    password = fields.password or ""
    if not _USERNAME_RE.match(username):
        raise ValidationError(
            "Username must be 3-60 characters: letters, digits, '.', '_' or '-'.",
            detail={"field": "username"},
        )
    if not _EMAIL_RE.match(email) or len(email) > 254:
        raise ValidationError("Email address is not valid.", detail={"field": "email"})
    validate_password(password)
    return SignupFields(username=username, email=email, password=password)


# ---------------------------------------------------------------------------
# Ledger (persistence)
# ---------------------------------------------------------------------------


class InviteLedger:
    """Repository for Invite rows."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def insert(self, invite: Invite) -> Invite:
        """Insert invite and return it with id and timestamps filled in.

        Raises ConflictError if the code already exists.
        """
        now = self._clock()
        with storage_errors("create invite"), self.engine.begin() as conn:
            result = conn.execute(
                invites.insert().values(
                    code=invite.code,
                    email=invite.email,
                    role=invite.role,
                    used=False,
                    created_by=invite.created_by,
                    expires_at=to_db_time(invite.expires_at),
                    created_at=to_db_time(now),
                    updated_at=to_db_time(now),
                )
            )
            invite.id = result.inserted_primary_key[0]
        invite.created_at = invite.updated_at = now
        return invite

    def get_by_code(self, code: str) -> Invite | None:
        with storage_errors("load invite"), self.engine.connect() as conn:
            row = conn.execute(invites.select().where(invites.c.code == code)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def get_by_id(self, invite_id: int) -> Invite | None:
        with storage_errors("load invite"), self.engine.connect() as conn:
            row = conn.execute(invites.select().where(invites.c.id == invite_id)).fetchone()
        return _row_to_invite(row) if row is not None else None

    def list_all(self) -> list[Invite]:
        """Return every invite, newest first."""
        with storage_errors("list invites"), self.engine.connect() as conn:
            rows = conn.execute(invites.select().order_by(invites.c.created_at.desc(), invites.c.id.desc())).fetchall()
        return [_row_to_invite(r) for r in rows]

    def mark_used(self, invite_id: int, conn: Connection | None = None) -> bool:
        """Flip used to True if, and only if, it is still False and unexpired.

        Returns True when this call performed the flip. The predicate is
        evaluated by the database, so two concurrent callers cannot both win.
        """
        now = to_db_time(self._clock())
        with storage_errors("redeem invite"), transaction(self.engine, conn) as c:
            result = c.execute(
                invites.update()
                .where((invites.c.id == invite_id) & (invites.c.used.is_(False)) & (invites.c.expires_at > now))
                .values(used=True, updated_at=now)
            )
        return result.rowcount == 1

    def set_used_by(self, invite_id: int, user_id: int, conn: Connection | None = None) -> None:
        with storage_errors("redeem invite"), transaction(self.engine, conn) as c:
            c.execute(invites.update().where(invites.c.id == invite_id).values(used_by=user_id))

    def record_email_sent(self, invite_id: int, sent_before: datetime | None = None) -> bool:
        """Stamp last_email_sent with the current time.

        With sent_before set, the stamp is written only if the previous send
        is older than sent_before (or there was none) -- a conditional write,
        so two concurrent dispatchers cannot both claim the same slot.
        Returns True if the row was updated.
        """
        now = to_db_time(self._clock())
        condition = invites.c.id == invite_id
        if sent_before is not None:
            condition = condition & (
                invites.c.last_email_sent.is_(None) | (invites.c.last_email_sent <= to_db_time(sent_before))
            )
        with storage_errors("record invite email"), self.engine.begin() as conn:
            result = conn.execute(invites.update().where(condition).values(last_email_sent=now, updated_at=now))
        return result.rowcount == 1

    def delete(self, invite_id: int) -> bool:
        with storage_errors("delete invite"), self.engine.begin() as conn:
            result = conn.execute(invites.delete().where(invites.c.id == invite_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class InviteService:
    """Issues invite codes and redeems them into accounts.

    Usage:
        service = InviteService(ledger, user_store, engine)
        invite = service.issue("terapeuta", ttl_seconds=24 * 3600)
        user = service.validate_and_redeem(invite.code, SignupFields("ana", "ana@x.com", "secret123"))
    """

    def __init__(
        self,
        ledger: InviteLedger,
        users: UserStore,
        engine: Engine,
        clock: Callable[[], datetime] = utcnow,
        default_ttl_seconds: int = 7 * 24 * 3600,
        email_cooldown_seconds: int = 300,
        code_factory: Callable[[], str] = generate_invite_code,
    ) -> None:
        self.ledger = ledger
        self.users = users
        self.engine = engine
        self._clock = clock
        self.default_ttl_seconds = default_ttl_seconds
        self.email_cooldown_seconds = email_cooldown_seconds
        self._code_factory = code_factory

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        role: str,
        email: str | None = None,
        ttl_seconds: int | None = None,
        code: str | None = None,
        created_by: int | None = None,
    ) -> Invite:
        """Create an unused invite granting role, expiring ttl_seconds from now.

        code: use this code instead of generating one. An explicit code that
              already exists raises ConflictError immediately; a generated one
              is retried once first.
        """
        if not is_valid_role(role):
            raise ValidationError(f"Unknown role: {role!r}.", detail={"field": "role"})
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("Invite lifetime must be positive.", detail={"field": "ttl_seconds"})
        email = normalize_email(email)
        if email is not None and not _EMAIL_RE.match(email):
            raise ValidationError("Email address is not valid.", detail={"field": "email"})

        if code is not None:
            code = normalize_code(code)
            if not _CODE_RE.match(code):
                raise ValidationError("Invite code must be 4-20 letters, digits or '-'.", detail={"field": "code"})
            invite = self.ledger.insert(self._new_invite(code, role, email, ttl, created_by))
        else:
            try:
                invite = self.ledger.insert(self._new_invite(self._code_factory(), role, email, ttl, created_by))
            except ConflictError:
                logger.warning("Invite code collision; retrying once")
                try:
                    invite = self.ledger.insert(self._new_invite(self._code_factory(), role, email, ttl, created_by))
                except ConflictError:
                    raise ConflictError("Could not allocate a unique invite code.") from None

        logger.info(
            "Invite issued id=%s role=%s restricted=%s created_by=%s",
            invite.id,
            invite.role,
            invite.email is not None,
            created_by,
        )
        return invite

    def _new_invite(self, code: str, role: str, email: str | None, ttl: int, created_by: int | None) -> Invite:
        return Invite(
            code=code,
            role=normalize_role(role),
            email=email,
            expires_at=self._clock() + timedelta(seconds=ttl),
            created_by=created_by,
        )

    # ------------------------------------------------------------------
    # Lookup / redeem
    # ------------------------------------------------------------------

    def get_info(self, code: str) -> Invite:
        """Return a redeemable invite for the pre-signup form.

        Raises InviteInvalidError if the code is unknown, used or expired.
        """
        return self._require_redeemable(code)

    def validate_and_redeem(self, code: str, signup: SignupFields) -> User:
        """Consume the invite and create the account it grants, atomically.

        Raises:
            ValidationError:    signup fields malformed or already taken.
            InviteInvalidError: code unknown, used, expired, email mismatch,
                                or a concurrent redemption got there first.
        """
        fields = validate_signup(signup)
        invite = self._require_redeemable(code, candidate_email=fields.email)
        digest = hash_password(fields.password)

        with storage_errors("redeem invite"), self.engine.begin() as conn:
            if not self.ledger.mark_used(invite.id, conn=conn):
                logger.info("Invite id=%s lost redemption race or expired mid-flight", invite.id)
                raise InviteInvalidError(_INVALID_MESSAGE, detail={"reason": "already_used"})
            user_id = self.users.create_user(
                User(username=fields.username, email=fields.email, role=invite.role, hashed_password=digest),
                conn=conn,
            )
            self.ledger.set_used_by(invite.id, user_id, conn=conn)

        logger.info("Invite id=%s redeemed by user_id=%s role=%s", invite.id, user_id, invite.role)
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found after signup.")
        return user

    def _require_redeemable(self, code: str, candidate_email: str | None = None) -> Invite:
        invite = self.ledger.get_by_code(normalize_code(code))
        if invite is None:
            raise InviteInvalidError(_INVALID_MESSAGE, detail={"reason": "not_found"})
        if invite.used:
            raise InviteInvalidError(_INVALID_MESSAGE, detail={"reason": "already_used"})
        if self._clock() >= invite.expires_at:
            raise InviteInvalidError(_INVALID_MESSAGE, detail={"reason": "expired"})
        if candidate_email is not None and invite.email is not None and invite.email != normalize_email(candidate_email):
            raise InviteInvalidError(_INVALID_MESSAGE, detail={"reason": "email_mismatch"})
        return invite

    # ------------------------------------------------------------------
    # Email dispatch bookkeeping
    # ------------------------------------------------------------------

    def record_email_sent(self, invite_id: int) -> Invite:
        """Stamp last_email_sent unconditionally. Raises NotFoundError for an unknown id."""
        if not self.ledger.record_email_sent(invite_id):
            raise NotFoundError("Invite not found.")
        return self._get(invite_id)

    def check_email_dispatch(self, invite_id: int) -> Invite:
        """Return the invite if an email may be sent for it now.

        The invite must carry an address, be unused and unexpired, and its
        last email must be older than the cooldown.
        """
        invite = self._get(invite_id)
        if invite.email is None:
            raise ValidationError("Invite has no email address.", detail={"field": "email"})
        if invite.used:
            raise InviteInvalidError(_INVALID_MESSAGE, detail={"reason": "already_used"})
        now = self._clock()
        if now >= invite.expires_at:
            raise InviteInvalidError(_INVALID_MESSAGE, detail={"reason": "expired"})
        if invite.last_email_sent is not None:
            elapsed = (now - invite.last_email_sent).total_seconds()
            if elapsed < self.email_cooldown_seconds:
                raise ValidationError(
                    "An email for this invite was sent too recently.",
                    detail={"retry_after": int(self.email_cooldown_seconds - elapsed) + 1},
                )
        return invite

    def claim_email_dispatch(self, invite_id: int) -> Invite:
        """check_email_dispatch() followed by a conditional stamp of last_email_sent.

        Two concurrent claims for the same invite cannot both succeed.
        """
        self.check_email_dispatch(invite_id)
        cutoff = self._clock() - timedelta(seconds=self.email_cooldown_seconds)
        if not self.ledger.record_email_sent(invite_id, sent_before=cutoff):
            raise ValidationError(
                "An email for this invite was sent too recently.",
                detail={"retry_after": self.email_cooldown_seconds},
            )
        return self._get(invite_id)

    # ------------------------------------------------------------------
    # Admin listing
    # ------------------------------------------------------------------

    def list_invites(self) -> list[Invite]:
        return self.ledger.list_all()

    def delete(self, invite_id: int) -> None:
        if not self.ledger.delete(invite_id):
            raise NotFoundError("Invite not found.")
        logger.info("Invite id=%s deleted", invite_id)

    def _get(self, invite_id: int) -> Invite:
        invite = self.ledger.get_by_id(invite_id)
        if invite is None:
            raise NotFoundError("Invite not found.")
        return invite


def _row_to_invite(row) -> Invite:
    return Invite(
        id=row.id,
        code=row.code,
        email=row.email,
        role=row.role,
        used=bool(row.used),
        used_by=row.used_by,
        created_by=row.created_by,
        expires_at=from_db_time(row.expires_at),
        last_email_sent=from_db_time(row.last_email_sent),
        created_at=from_db_time(row.created_at),
        updated_at=from_db_time(row.updated_at),
    )
