"""
auth/passwords.py -- bcrypt password hashing.

This is the opaque hash/verify capability the rest of the auth core consumes.
Nothing outside this module knows the digest format.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt

MIN_PASSWORD_LENGTH = 8
# Characters, for the request models' coarse max_length. The real ceiling is
# bcrypt's 72 *bytes*: bcrypt 5 raises on longer input and 4.x silently
# truncates it, so callers check password_fits() before hashing.
MAX_PASSWORD_LENGTH = 72
MAX_PASSWORD_BYTES = 72


def password_fits(plain: str) -> bool:
    """Return True if plain is within bcrypt's 72-byte input limit once UTF-8 encoded."""
    return len(plain.encode("utf-8")) <= MAX_PASSWORD_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for input over MAX_PASSWORD_BYTES; validate first.
    """
    if not password_fits(plain):
        raise ValueError("password exceeds bcrypt's 72-byte limit")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch, and so does input over
    MAX_PASSWORD_BYTES: no stored password is that long, and bcrypt 4.x would
    otherwise compare only its first 72 bytes.
    """
    if not password_fits(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Login always runs verify_password(), even for an
# unknown identifier, so response time does not reveal whether it exists.
DUMMY_HASH: str = hash_password("clinicgate_timing_dummy")
