"""
auth/store.py -- Credential store: SQLAlchemy Core persistence for users.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service and route code never touch SQL directly.

The revocation counter (users.token_version) is written here and nowhere
else, and only through bump_token_version(): an atomic
UPDATE ... SET token_version = token_version + 1 ... RETURNING token_version.
The database does the increment, so concurrent bumps from several service
instances never lose an update.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Usernames are matched case-insensitively; emails are stored lowercased.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.engine import Connection, Engine

from auth.errors import NotFoundError, ValidationError
from auth.models import User
from auth.passwords import verify_password
from auth.schema import from_db_time, storage_errors, to_db_time, transaction, users, utcnow

# Fields update_user() accepts. token_version is deliberately absent -- it only
# moves through bump_token_version().
_MUTABLE_FIELDS = frozenset({"role", "is_active", "hashed_password", "email"})


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore(engine)
        user_id = store.create_user(User(username="ana", email="ana@x.com", role="terapeuta",
                                          hashed_password=hash_password("secret123")))
        user = store.get_by_username_or_email("ana")
        new_version = store.bump_token_version(user_id)
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with storage_errors("count users"), self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def get_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with storage_errors("load user"), transaction(self.engine, conn) as c:
            row = c.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username_or_email(self, identifier: str) -> User | None:
        """Look up a user by username (case-insensitive) or email. Returns None if not found."""
        ident = identifier.strip().lower()
        if not ident:
            return None
        with storage_errors("load user"), self.engine.connect() as conn:
            row = conn.execute(
                users.select()
                .where(or_(func.lower(users.c.username) == ident, users.c.email == ident))
                .order_by(users.c.id)
                .limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_username_or_email(self, identifier: str) -> User:
        """Like get_by_username_or_email() but raises NotFoundError."""
        user = self.get_by_username_or_email(identifier)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with storage_errors("list users"), self.engine.connect() as conn:
            rows = conn.execute(users.select().order_by(users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self, conn: Connection | None = None) -> int:
        """Return the number of active admin users (last-admin guard) [M4].

        Pass conn to count inside a transaction that has just changed a role
        or active flag, so the guard sees its own write.
        """
        with storage_errors("count admins"), transaction(self.engine, conn) as c:
            result = c.execute(
                select(func.count())
                .select_from(users)
                .where((users.c.role == "admin") & (users.c.is_active.is_(True)))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Credential check
    # ------------------------------------------------------------------

    def verify_credential(self, user: User, plaintext: str) -> bool:
        """Compare plaintext against the stored digest via the hashing collaborator."""
        if not user.hashed_password:
            return False
        return verify_password(plaintext, user.hashed_password)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User, conn: Connection | None = None) -> int:
        """Insert a new user and return its assigned ID.

        Raises ValidationError if the username or email is already taken and
        ConflictError if a concurrent insert wins the unique index race.
        Pass conn to make the insert part of a larger transaction (invite
        redemption creates the user in the same transaction as the flip).
        """
        now = to_db_time(self._clock())
        email = user.email.strip().lower()
        with storage_errors("create user"), transaction(self.engine, conn) as c:
            taken = c.execute(
                select(users.c.username, users.c.email).where(
                    or_(func.lower(users.c.username) == user.username.lower(), users.c.email == email)
                )
            ).fetchone()
            if taken is not None:
                field = "email" if taken.email == email else "username"
                raise ValidationError(f"That {field} is already in use.", detail={"field": field})
            result = c.execute(
                users.insert().values(
                    username=user.username,
                    email=email,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    token_version=0,
                    is_active=user.is_active,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def bump_token_version(self, user_id: int, conn: Connection | None = None) -> int:
        """Atomically increment token_version and return the new value.

        Every bearer token carrying the old value fails validation from the
        moment this commits. Raises NotFoundError for an unknown user.
        """
        with storage_errors("bump token version"), transaction(self.engine, conn) as c:
            new_version = c.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(token_version=users.c.token_version + 1, updated_at=to_db_time(self._clock()))
                .returning(users.c.token_version)
            ).scalar()
        if new_version is None:
            raise NotFoundError("User not found.")
        return new_version

    def update_user(self, user_id: int, conn: Connection | None = None, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: role, is_active, hashed_password, email. Unknown
        fields raise ValidationError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown user fields: {sorted(unknown)!r}")
        if not fields:
            return False
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        fields["updated_at"] = to_db_time(self._clock())
        with storage_errors("update user"), transaction(self.engine, conn) as c:
            result = c.execute(users.update().where(users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC time as last_login for the given user."""
        with storage_errors("record login"), self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=to_db_time(self._clock())))


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        token_version=row.token_version,
        is_active=bool(row.is_active),
        created_at=from_db_time(row.created_at),
        updated_at=from_db_time(row.updated_at),
        last_login=from_db_time(row.last_login),
    )
