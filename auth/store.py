"""
auth/store.py -- Credential Store: SQLAlchemy Core persistence for User records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Components never touch SQL directly.

The store owns no behavior. It does not decide when an account locks or
whether a password is acceptable -- auth/login.py and auth/account.py do,
and call in here to persist the outcome.

Lockout counter:
  record_failed_login() increments login_attempts with an UPDATE ... SET
  login_attempts = login_attempts + 1 and reads the new value back inside
  the same transaction. Two concurrent failures may both observe the same
  post-increment value and one lock may be set a few milliseconds late; the
  lockout window only has to be approximately enforced.

Two-factor columns:
  set_two_factor() is the only writer of the four two-factor columns. It
  takes a TwoFactorState and writes all four together, so the columns cannot
  drift into a combination _two_factor_from_row() would not recognise.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.engine import Engine

from auth.db import from_iso, to_iso, users, utc_now
from auth.models import (
    LastLoginDevice,
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorPending,
    TwoFactorState,
    User,
)

# Columns update_user() will write. Everything else has a dedicated method.
_UPDATABLE_FIELDS = frozenset(
    {
        "username",
        "first_name",
        "last_name",
        "avatar",
        "email",
        "hashed_password",
        "email_verified_at",
        "login_attempts",
        "locked_until",
        "pending_email",
        "pending_email_requested_at",
    }
)
_TIMESTAMP_FIELDS = frozenset({"email_verified_at", "locked_until", "pending_email_requested_at"})


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(engine)
        uid = store.create_user(User(username="alice", email="alice@example.com", hashed_password=h))
        user = store.get_by_email("alice@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> Optional[User]:
        """Look up a user by email. Emails are stored lowercase; the argument is normalized."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> Optional[User]:
        """Exact, case-sensitive username match."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def username_taken(self, username: str, exclude_user_id: Optional[int] = None) -> bool:
        query = select(func.count()).select_from(users).where(users.c.username == username)
        if exclude_user_id is not None:
            query = query.where(users.c.id != exclude_user_id)
        with self.engine.connect() as conn:
            return (conn.execute(query).scalar() or 0) > 0

    def email_in_use(self, email: str, exclude_user_id: Optional[int] = None) -> bool:
        """True if any other user holds email as their address or as a pending change."""
        normalized = email.strip().lower()
        query = (
            select(func.count())
            .select_from(users)
            .where(or_(users.c.email == normalized, users.c.pending_email == normalized))
        )
        if exclude_user_id is not None:
            query = query.where(users.c.id != exclude_user_id)
        with self.engine.connect() as conn:
            return (conn.execute(query).scalar() or 0) > 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a lost race against a concurrent registration.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    username=user.username,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    avatar=user.avatar,
                    email_verified_at=to_iso(user.email_verified_at),
                    login_attempts=0,
                    created_at=to_iso(user.created_at or utc_now()),
                )
            )
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update plain columns on a user. Returns False if user_id does not exist.

        Unknown field names raise ValueError -- column names come from the
        whitelist above, never from caller input.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if not fields:
            return True
        values = {k: (to_iso(v) if k in _TIMESTAMP_FIELDS else v) for k, v in fields.items()}
        if "email" in values and values["email"]:
            values["email"] = values["email"].strip().lower()
        with self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def set_two_factor(self, user_id: int, state: TwoFactorState) -> None:
        if isinstance(state, TwoFactorEnabled):
            values = {
                "is_two_factor_enabled": 1,
                "two_factor_secret": state.encrypted_seed,
                "two_factor_temp_secret": None,
                "two_factor_enabled_at": to_iso(state.enabled_at),
            }
        elif isinstance(state, TwoFactorPending):
            values = {
                "is_two_factor_enabled": 0,
                "two_factor_secret": None,
                "two_factor_temp_secret": state.encrypted_seed,
                "two_factor_enabled_at": None,
            }
        else:
            values = {
                "is_two_factor_enabled": 0,
                "two_factor_secret": None,
                "two_factor_temp_secret": None,
                "two_factor_enabled_at": None,
            }
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(**values))

    def record_failed_login(self, user_id: int, threshold: int, lock_until: datetime) -> tuple[int, bool]:
        """Increment the failed-attempt counter; lock the account at threshold.

        Returns (attempts_after_increment, locked_now).
        """
        with self.engine.begin() as conn:
            conn.execute(
                users.update().where(users.c.id == user_id).values(login_attempts=users.c.login_attempts + 1)
            )
            attempts = conn.execute(select(users.c.login_attempts).where(users.c.id == user_id)).scalar() or 0
            locked = attempts >= threshold
            if locked:
                conn.execute(users.update().where(users.c.id == user_id).values(locked_until=to_iso(lock_until)))
        return attempts, locked

    def record_successful_login(self, user_id: int, snapshot: LastLoginDevice, now: datetime) -> None:
        """Reset lockout state and store the last-login snapshot."""
        with self.engine.begin() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(
                    login_attempts=0,
                    locked_until=None,
                    last_login_at=to_iso(now),
                    last_login_device_type=snapshot.device_type,
                    last_login_user_agent=snapshot.user_agent,
                    last_login_ip=snapshot.ip_address,
                    last_login_location=snapshot.location,
                    last_login_logged_in_at=to_iso(snapshot.logged_in_at),
                )
            )

    def unlock(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update().where(users.c.id == user_id).values(login_attempts=0, locked_until=None)
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _two_factor_from_row(row) -> TwoFactorState:
    if row.is_two_factor_enabled and row.two_factor_secret:
        return TwoFactorEnabled(encrypted_seed=row.two_factor_secret, enabled_at=from_iso(row.two_factor_enabled_at))
    if row.two_factor_temp_secret:
        return TwoFactorPending(encrypted_seed=row.two_factor_temp_secret)
    return TwoFactorDisabled()


def _row_to_user(row) -> User:
    snapshot = None
    if row.last_login_logged_in_at:
        snapshot = LastLoginDevice(
            device_type=row.last_login_device_type or "web",
            user_agent=row.last_login_user_agent or "Unknown",
            ip_address=row.last_login_ip or "Unknown",
            location=row.last_login_location or "Unknown",
            logged_in_at=from_iso(row.last_login_logged_in_at),  # type: ignore[arg-type]
        )
    return User(
        id=row.id,
        username=row.username,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        hashed_password=row.hashed_password,
        avatar=row.avatar,
        email_verified_at=from_iso(row.email_verified_at),
        two_factor=_two_factor_from_row(row),
        login_attempts=row.login_attempts,
        locked_until=from_iso(row.locked_until),
        last_login_at=from_iso(row.last_login_at),
        last_login_device=snapshot,
        pending_email=row.pending_email,
        pending_email_requested_at=from_iso(row.pending_email_requested_at),
        created_at=from_iso(row.created_at),
    )
