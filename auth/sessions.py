"""
auth/sessions.py -- Session store: enumerable, individually revocable logins.

A session row is the secondary channel next to the bearer token. The bearer
token authorizes requests; the session row is what makes a login visible in
"your devices" and revocable on its own ("sign out this device").

Tokens:
  The raw token (secrets.token_hex(32)) is returned to the client exactly once.
  Only HMAC-SHA256(SECRET_KEY, raw) is stored, under a UNIQUE index. A collision
  on insert is retried once with a fresh token and then surfaced as
  ConflictError.

Expiry:
  A row with expires_at <= now is logically absent -- every read filters on
  expires_at > :now. Stale rows are removed lazily by purge_expired(), which
  the API lifespan runs periodically.

Layer rule: no imports from api/. core/ only through auth.tokens.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from auth.errors import ConflictError, ValidationError
from auth.models import Session
from auth.schema import from_db_time, storage_errors, to_db_time, transaction, user_sessions, utcnow
from auth.tokens import generate_session_token, hash_session_token

logger = logging.getLogger("clinicgate.auth.sessions")


class SessionStore:
    """Repository for Session rows.

    Usage:
        sessions = SessionStore(engine)
        raw_token, session = sessions.create(user_id, ttl_seconds=7 * 24 * 3600)
        sessions.find_by_token(raw_token)        # Session or None
        sessions.delete_all_by_user_id(user_id)  # logout-all
    """

    def __init__(
        self,
        engine: Engine,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = generate_session_token,
        secret_key: str | None = None,
    ) -> None:
        self.engine = engine
        self._clock = clock
        self._token_factory = token_factory
        self._secret_key = secret_key

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, user_id: int, ttl_seconds: int, user_agent: str | None = None) -> tuple[str, Session]:
        """Insert a session row for user_id and return (raw_token, session).

        Raises ValidationError for a non-positive TTL and ConflictError if two
        consecutive generated tokens both collide.
        """
        if ttl_seconds <= 0:
            raise ValidationError("Session lifetime must be positive.")
        try:
            return self._insert(user_id, ttl_seconds, user_agent)
        except ConflictError:
            logger.warning("Session token collision for user_id=%s; retrying once", user_id)
        try:
            return self._insert(user_id, ttl_seconds, user_agent)
        except ConflictError:
            raise ConflictError("Could not allocate a unique session token.") from None

    def _insert(self, user_id: int, ttl_seconds: int, user_agent: str | None) -> tuple[str, Session]:
        raw_token = self._token_factory()
        now = self._clock()
        session = Session(
            user_id=user_id,
            token_hash=hash_session_token(raw_token, self._secret_key),
            expires_at=now + timedelta(seconds=ttl_seconds),
            user_agent=user_agent[:255] if user_agent else None,
            created_at=now,
            updated_at=now,
        )
        with storage_errors("create session"), self.engine.begin() as conn:
            result = conn.execute(
                user_sessions.insert().values(
                    token=session.token_hash,
                    user_id=user_id,
                    expires_at=to_db_time(session.expires_at),
                    user_agent=session.user_agent,
                    created_at=to_db_time(now),
                    updated_at=to_db_time(now),
                )
            )
            session.id = result.inserted_primary_key[0]
        return raw_token, session

    def delete_by_token(self, raw_token: str, conn: Connection | None = None) -> bool:
        """Delete the session for raw_token. Returns True if a row was removed."""
        with storage_errors("delete session"), transaction(self.engine, conn) as c:
            result = c.execute(
                user_sessions.delete().where(user_sessions.c.token == hash_session_token(raw_token, self._secret_key))
            )
        return result.rowcount > 0

    def delete_by_id(self, session_id: int, user_id: int | None = None) -> bool:
        """Delete one session by id. When user_id is given the row must belong to it.

        The owner check sits in the WHERE clause, so a user cannot sign out
        someone else's device by guessing ids.
        """
        condition = user_sessions.c.id == session_id
        if user_id is not None:
            condition = condition & (user_sessions.c.user_id == user_id)
        with storage_errors("delete session"), self.engine.begin() as conn:
            result = conn.execute(user_sessions.delete().where(condition))
        return result.rowcount > 0

    def delete_all_by_user_id(self, user_id: int, conn: Connection | None = None) -> int:
        """Delete every session (expired or not) for user_id. Returns rows removed."""
        with storage_errors("delete sessions"), transaction(self.engine, conn) as c:
            result = c.execute(user_sessions.delete().where(user_sessions.c.user_id == user_id))
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete all expired rows. Returns number of rows removed."""
        with storage_errors("purge sessions"), self.engine.begin() as conn:
            result = conn.execute(
                user_sessions.delete().where(user_sessions.c.expires_at <= to_db_time(self._clock()))
            )
        if result.rowcount:
            logger.info("Purged %d expired session(s)", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_token(self, raw_token: str) -> Session | None:
        """Return the live session for raw_token, or None if missing or expired."""
        if not raw_token:
            return None
        with storage_errors("load session"), self.engine.connect() as conn:
            row = conn.execute(
                user_sessions.select().where(
                    (user_sessions.c.token == hash_session_token(raw_token, self._secret_key)) & self._live_condition()
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_id(self, session_id: int) -> Session | None:
        """Return the live session with this id, or None if missing or expired."""
        with storage_errors("load session"), self.engine.connect() as conn:
            row = conn.execute(
                user_sessions.select().where((user_sessions.c.id == session_id) & self._live_condition())
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_by_user(self, user_id: int) -> list[Session]:
        """Return the user's live sessions, newest first."""
        with storage_errors("list sessions"), self.engine.connect() as conn:
            rows = conn.execute(
                user_sessions.select()
                .where((user_sessions.c.user_id == user_id) & self._live_condition())
                .order_by(user_sessions.c.created_at.desc(), user_sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_all(self, include_expired: bool = True) -> list[Session]:
        """Return every session row, newest first. Admin listing."""
        query = select(user_sessions).order_by(user_sessions.c.created_at.desc(), user_sessions.c.id.desc())
        if not include_expired:
            query = query.where(self._live_condition())
        with storage_errors("list sessions"), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_session(r) for r in rows]

    def is_live(self, session: Session) -> bool:
        return session.expires_at > self._clock()

    def _live_condition(self):
        return user_sessions.c.expires_at > to_db_time(self._clock())


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token,
        expires_at=from_db_time(row.expires_at),
        user_agent=row.user_agent,
        created_at=from_db_time(row.created_at),
        updated_at=from_db_time(row.updated_at),
    )
