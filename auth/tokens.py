"""
auth/tokens.py -- Bearer token issue/validation, session token generation, login check.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username (sub), role, the user's token_version at issuance
       (ver), the session row id (sid) and expiry. The signature and expiry are
       checked here without touching the database; the ver claim is compared
       against the live users.token_version by AuthService.authenticate(). That
       one keyed lookup is what lets logout-all revoke every outstanding token
       without storing tokens server-side.

  Expiry: checked here against an explicit clock rather than by jose, so the
       boundary is exact: a token whose exp equals "now" is already expired.

  Session tokens: secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw_token) so lookup is O(1) and a leaked
       database does not yield usable tokens. bcrypt's slowness is unnecessary
       for high-entropy random values.

  Login: authenticate_user() always runs bcrypt, against DUMMY_HASH when the
       identifier is unknown, so response time does not reveal whether an
       account exists [C1].

  SECRET_KEY: defaults to core.config.get_settings(), which enforces the
       production/dev policy and the 32-character minimum [M6]. Every helper
       also takes an explicit key; AuthService passes its own Settings.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.errors import AuthenticationError
from auth.models import AuthContext, User
from auth.passwords import DUMMY_HASH, verify_password
from auth.schema import utcnow
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("clinicgate.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
SESSION_COOKIE = "session_token"

# Claims every token we mint carries, with the type each must decode to.
_REQUIRED_CLAIMS: dict[str, type] = {
    "sub": str,
    "user_id": int,
    "role": str,
    "ver": int,
    "exp": int,
}


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user: User,
    *,
    session_id: int | None = None,
    expire_seconds: int = 0,
    now: datetime | None = None,
    secret_key: str | None = None,
) -> str:
    """Encode a signed JWT for user.

    Args:
        user:           The account being logged in. Its current token_version
                        is embedded as the ver claim.
        session_id:     Session row minted alongside this token, if any.
        expire_seconds: Token lifetime. If 0 (default), uses
                        Settings.token_expire_seconds.
        now:            Issue time. Defaults to the current UTC time.
        secret_key:     Signing key. Defaults to the process SECRET_KEY;
                        AuthService passes its own Settings.secret_key.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued_at = int((now or utcnow()).timestamp())
    payload = {
        "sub": user.username,
        "user_id": user.id,
        "role": user.role,
        "ver": user.token_version,
        "iat": issued_at,
        "exp": issued_at + duration,
    }
    if session_id is not None:
        payload["sid"] = session_id
    return jwt.encode(payload, secret_key or _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(
    token: str | None,
    *,
    now: datetime | None = None,
    secret_key: str | None = None,
) -> AuthContext:
    """Verify a JWT's signature, structure and expiry.

    Raises AuthenticationError on any failure. The counter check is not done
    here -- it needs the credential store; see AuthService.authenticate().
    detail["reason"] records which check failed, for logs only.
    """
    if not token:
        raise AuthenticationError("Authentication required.", detail={"reason": "missing"})
    try:
        # jose's own exp check treats exp == now as still valid and reads the
        # wall clock; expiry is enforced below instead.
        payload = jwt.decode(
            token,
            secret_key or _settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError as exc:
        raise AuthenticationError("Authentication required.", detail={"reason": "invalid"}) from exc

    for claim, kind in _REQUIRED_CLAIMS.items():
        value = payload.get(claim)
        if not isinstance(value, kind) or isinstance(value, bool):
            raise AuthenticationError("Authentication required.", detail={"reason": "malformed", "claim": claim})
    sid = payload.get("sid")
    if sid is not None and not isinstance(sid, int):
        raise AuthenticationError("Authentication required.", detail={"reason": "malformed", "claim": "sid"})

    current = (now or utcnow()).timestamp()
    if current >= payload["exp"]:
        raise AuthenticationError("Authentication required.", detail={"reason": "expired"})

    return AuthContext(
        user_id=payload["user_id"],
        username=payload["sub"],
        role=payload["role"],
        token_version=payload["ver"],
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        session_id=sid,
    )


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, identifier: str, password: str) -> User | None:
    """Check a username-or-email / password pair with timing equalization.

    - Unknown identifier: bcrypt runs against DUMMY_HASH (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash (same cost)
    - Inactive account: rejected after the hash check, same cost again

    Returns the User on success, None on any failure.
    """
    user = store.get_by_username_or_email(identifier)
    if user is None or not user.hashed_password:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, DUMMY_HASH)
        return None
    if not store.verify_credential(user, password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Session token generation and hashing
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    """Return a new opaque session token (64 hex chars, 256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_session_token(raw_token: str, secret_key: str | None = None) -> str:
    """Return HMAC-SHA256(secret_key or SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can look a session up by hash through the
    UNIQUE index instead of scanning.
    """
    return hmac.new(
        (secret_key or _settings.secret_key).encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(
    response,
    access_token: str,
    session_token: str,
    expire_seconds: int = 0,
    *,
    settings: Settings | None = None,
) -> None:
    """Write the bearer token and session token as httpOnly cookies.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    The access cookie's max_age matches the JWT expiry; the session cookie
    lives as long as the session row. settings defaults to the process-wide
    Settings; routes pass the serving AuthService's.
    """
    settings = settings or _settings
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    response.set_cookie(
        ACCESS_COOKIE,
        value=access_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )
    response.set_cookie(
        SESSION_COOKIE,
        value=session_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_expire_seconds,
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(SESSION_COOKIE)
