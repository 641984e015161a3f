"""
auth/revocation.py -- Logout-one and logout-all.

Two channels carry a login:
  1. the stateless bearer token (JWT), valid until exp unless its ver claim
     falls behind users.token_version;
  2. the session row, valid until deleted or expired.

logout_one() removes a single session row. It does not touch the counter, so
bearer tokens from other devices keep working.

logout_all() closes both channels for every device at once: it bumps
users.token_version and deletes all of the user's session rows inside ONE
transaction. The bump runs first so it is the statement that takes the write
lock; if the delete then fails the bump rolls back too and nothing changes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Connection, Engine

from auth.models import RevocationResult
from auth.schema import storage_errors
from auth.sessions import SessionStore
from auth.store import UserStore

logger = logging.getLogger("clinicgate.auth.revocation")


class RevocationController:
    """Coordinates the counter bump and the session wipe."""

    def __init__(self, engine: Engine, users: UserStore, sessions: SessionStore) -> None:
        self.engine = engine
        self.users = users
        self.sessions = sessions

    def logout_one(self, raw_session_token: str) -> bool:
        """Delete the session identified by raw_session_token.

        Returns False when no such session exists; a repeated logout is not
        an error.
        """
        if not raw_session_token:
            return False
        removed = self.sessions.delete_by_token(raw_session_token)
        if removed:
            logger.info("Session logged out")
        return removed

    def logout_all(self, user_id: int, conn: Connection | None = None) -> RevocationResult:
        """Bump user_id's token_version and delete all of its sessions, atomically.

        Pass conn to fold the revocation into a larger transaction (password
        change, role change, deactivation). Nothing is logged then: the
        caller's transaction may still roll back, so the caller logs after
        it commits. Raises NotFoundError for an unknown user, in which case
        nothing is written.
        """
        if conn is not None:
            return self._revoke(user_id, conn)
        with storage_errors("revoke sessions"), self.engine.begin() as new_conn:
            result = self._revoke(user_id, new_conn)
        logger.info(
            "Revoked all logins user_id=%s token_version=%s sessions_removed=%s",
            user_id,
            result.token_version,
            result.sessions_removed,
        )
        return result

    def _revoke(self, user_id: int, conn: Connection) -> RevocationResult:
        version = self.users.bump_token_version(user_id, conn=conn)
        removed = self.sessions.delete_all_by_user_id(user_id, conn=conn)
        return RevocationResult(token_version=version, sessions_removed=removed)
