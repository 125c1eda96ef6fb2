"""
auth/store.py -- SQLAlchemy Core persistence layer for user records.

Pattern: Repository + Data Mapper (same as devices/store.py and
audit/store.py). UserStore is the repository; _row_to_user and the
_challenge_* helpers are the mappers. Service and route code never touches
SQL directly.

Atomicity:
  Every mutation is one UPDATE or INSERT statement. There is no
  read-modify-write across a network round trip, so a request that times out
  mid-way never leaves half-applied state. In particular the failed-attempt
  increment and the lock decision are a single UPDATE whose CASE expressions
  read the pre-update attempt count. Concurrent failures for the same user may
  lock slightly early, never late.

  Single-use challenges are consumed with a compare-and-clear UPDATE guarded
  by the serialized challenge value; of two racing MFA submissions only one
  sees rowcount == 1.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import MfaPending, PendingChallenge, ResetPending, Role, User, VerificationPending
from core.clock import Clock, from_iso, to_iso, utcnow
from core.db import make_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("is_locked", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(40)),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("challenge", Text),  # JSON-encoded PendingChallenge, NULL = none
    Column("refresh_token", Text),
    Column("password_changed_at", String(40)),
    Column("last_login", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("avatar", String(500), nullable=False, server_default=""),
    Column("bio", String(200)),
)

# Columns stored as 0/1 integers. update_user() converts bools for these.
_BOOL_COLUMNS = frozenset({"is_verified", "is_locked", "mfa_enabled"})
_DATETIME_COLUMNS = frozenset({"lock_until", "password_changed_at", "last_login"})


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///authguard.db")
        uid = store.create_user(User(username="ada", email="ada@example.com", hashed_password=h))
        user = store.get_by_email("ada@example.com")
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        self.engine: Engine = make_engine(db_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_id(self, user_id: int) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> Optional[User]:
        """Look up a user by email. Emails are stored lower-cased and stripped."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def exists(self, *, email: str, username: str) -> bool:
        """Return True if either the email or the username is already taken."""
        stmt = select(func.count()).where(or_(_users.c.email == normalize_email(email), _users.c.username == username))
        with self.engine.connect() as conn:
            return (conn.execute(stmt).scalar() or 0) > 0

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        is_verified: Optional[bool] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[User], int]:
        """Return one page of users (newest first) and the total match count.

        search matches a case-insensitive substring of username or email.
        """
        conditions = []
        if role is not None:
            conditions.append(_users.c.role == role)
        if is_verified is not None:
            conditions.append(_users.c.is_verified == (1 if is_verified else 0))
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(or_(func.lower(_users.c.username).like(pattern), _users.c.email.like(pattern)))

        stmt = _users.select().where(*conditions).order_by(_users.c.created_at.desc(), _users.c.id.desc())
        count_stmt = select(func.count()).select_from(_users).where(*conditions)
        with self.engine.connect() as conn:
            total = conn.execute(count_stmt).scalar() or 0
            rows = conn.execute(stmt.offset(offset).limit(limit)).fetchall()
        return [_row_to_user(r) for r in rows], total

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers translate that into a Conflict.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    is_verified=1 if user.is_verified else 0,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    challenge=_challenge_to_column(user.challenge),
                    avatar=user.avatar,
                    bio=user.bio,
                    created_at=to_iso(self._clock()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update arbitrary columns on one user.

        Bools, roles, datetimes and challenges are converted to their column
        representation. Returns True if a row was updated.
        """
        values = _to_columns(fields)
        if not values:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def increment_login_attempts(self, user_id: int, threshold: int, lock_until: datetime) -> Optional[User]:
        """Count one failed attempt and lock the account when it reaches threshold.

        One UPDATE statement: the CASE expressions see the pre-update values,
        so "attempts + 1 >= threshold and not already locked" is decided
        atomically with the increment. Returns the updated user.
        """
        crosses = (_users.c.login_attempts + 1 >= threshold) & (_users.c.is_locked == 0)
        stmt = (
            _users.update()
            .where(_users.c.id == user_id)
            .values(
                login_attempts=_users.c.login_attempts + 1,
                is_locked=case((crosses, 1), else_=_users.c.is_locked),
                lock_until=case((crosses, to_iso(lock_until)), else_=_users.c.lock_until),
            )
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()
        return self.get_by_id(user_id)

    def reset_login_attempts(self, user_id: int, attempts: int = 0) -> None:
        """Set the attempt counter and clear every lock field in one write."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(login_attempts=attempts, is_locked=0, lock_until=None)
            )
            conn.commit()

    def set_refresh_token(self, user_id: int, token: Optional[str]) -> None:
        """Overwrite the single live refresh token (last write wins)."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(refresh_token=token))
            conn.commit()

    def set_challenge(self, user_id: int, challenge: PendingChallenge) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(challenge=_challenge_to_column(challenge))
            )
            conn.commit()

    def consume_challenge(self, user_id: int, challenge: PendingChallenge, **extra) -> bool:
        """Clear the pending challenge only if it still equals `challenge`.

        extra columns (e.g. is_verified=True) are written in the same
        statement. Returns False if another request consumed or replaced it
        first.
        """
        expected = _challenge_to_column(challenge)
        values = {**_to_columns(extra), "challenge": None}
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where((_users.c.id == user_id) & (_users.c.challenge == expected)).values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def set_password(self, user_id: int, hashed_password: str, changed_at: datetime) -> None:
        """Store a new hash, stamp passwordChangedAt and drop the refresh token."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    hashed_password=hashed_password,
                    password_changed_at=to_iso(changed_at),
                    refresh_token=None,
                    challenge=None,
                )
            )
            conn.commit()

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user. Superadmin rows are never deleted.

        Returns True if a row was deleted, False if not found or protected.
        Device and audit rows referencing the user are left in place: audit
        history keeps denormalized identifiers on purpose.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.delete().where((_users.c.id == user_id) & (_users.c.role != Role.superadmin.value))
            )
            conn.commit()
        return result.rowcount > 0

    def batch_update(self, user_ids: list[int], **fields) -> tuple[int, int]:
        """Apply the same field updates to many users, skipping superadmins.

        Returns (updated_count, superadmin_protected_count).
        """
        values = _to_columns(fields)
        if not values:
            return 0, 0
        if values.get("is_locked") == 0:
            values["lock_until"] = None
            values["login_attempts"] = 0
        ids = _users.c.id.in_(user_ids)
        with self.engine.connect() as conn:
            protected = (
                conn.execute(
                    select(func.count()).where(ids & (_users.c.role == Role.superadmin.value))
                ).scalar()
                or 0
            )
            result = conn.execute(
                _users.update().where(ids & (_users.c.role != Role.superadmin.value)).values(**values)
            )
            conn.commit()
        return result.rowcount, protected

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers and row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _to_columns(fields: dict) -> dict:
    """Convert domain values (bools, roles, datetimes, challenges) to column values."""
    values = {}
    for name, value in fields.items():
        if name in _BOOL_COLUMNS:
            value = 1 if value else 0
        elif name in _DATETIME_COLUMNS and isinstance(value, datetime):
            value = to_iso(value)
        elif name == "role":
            value = Role(value).value
        elif name == "email":
            value = normalize_email(value)
        elif name == "challenge":
            value = _challenge_to_column(value)
        values[name] = value
    return values


_CHALLENGE_KINDS = {
    "mfa": MfaPending,
    "reset": ResetPending,
    "verification": VerificationPending,
}


def _challenge_to_column(challenge: PendingChallenge) -> Optional[str]:
    """Serialize a challenge deterministically (sorted keys, fixed-width timestamps).

    Determinism matters: consume_challenge() compares serialized values.
    """
    if challenge is None:
        return None
    kind = next(k for k, cls in _CHALLENGE_KINDS.items() if isinstance(challenge, cls))
    data = {"kind": kind, "code": challenge.code, "expires_at": to_iso(challenge.expires_at)}
    if isinstance(challenge, MfaPending):
        data["device_id"] = challenge.device_id
        data["suspicion"] = challenge.suspicion
    return json.dumps(data, sort_keys=True)


def _column_to_challenge(raw: Optional[str]) -> PendingChallenge:
    if not raw:
        return None
    data = json.loads(raw)
    cls = _CHALLENGE_KINDS.get(data.get("kind"))
    if cls is None:
        return None
    if cls is MfaPending:
        return MfaPending(
            code=data["code"],
            expires_at=from_iso(data["expires_at"]),
            device_id=data.get("device_id"),
            suspicion=data.get("suspicion"),
        )
    return cls(code=data["code"], expires_at=from_iso(data["expires_at"]))


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        is_verified=bool(row.is_verified),
        login_attempts=row.login_attempts,
        is_locked=bool(row.is_locked),
        lock_until=from_iso(row.lock_until),
        mfa_enabled=bool(row.mfa_enabled),
        challenge=_column_to_challenge(row.challenge),
        refresh_token=row.refresh_token,
        password_changed_at=from_iso(row.password_changed_at),
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
        avatar=row.avatar or "",
        bio=row.bio,
    )
