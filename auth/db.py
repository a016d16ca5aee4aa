"""
auth/db.py -- SQLAlchemy Core schema and engine factory for the identity stores.

Every store in auth/ (UserStore, TokenLedger, DeviceRegistry, AuditSink)
shares one Engine and the tables declared here. Keeping the schema in one
place means create_all() builds a consistent database no matter which store
is constructed first.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps:
  Stored as ISO-8601 UTC strings with microsecond precision
  (to_iso()). Fixed-width formatting makes lexicographic order equal
  chronological order, so "expires_at < :now" works in SQL on both SQLite
  and PostgreSQL without dialect-specific date types.

Uniqueness:
  users.email is UNIQUE. devices carries UNIQUE(user_id, user_agent,
  ip_address) so two concurrent first logins from the same fingerprint cannot
  both insert; the loser re-reads the winner's row (see auth/devices.py).
  user_agent and ip_address are NOT NULL with "" as the unknown value --
  SQL treats NULLs as distinct in UNIQUE constraints, which would defeat it.
  security_tokens is AUTOINCREMENT on SQLite: a consumed token id is never
  reused by the next issued token.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False, index=True),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("email", String(320), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("avatar", Text),
    Column("email_verified_at", String(40)),
    Column("is_two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("two_factor_secret", Text),  # AES-GCM payload, active seed
    Column("two_factor_temp_secret", Text),  # AES-GCM payload, pending enrollment
    Column("two_factor_enabled_at", String(40)),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("last_login_at", String(40)),
    Column("last_login_device_type", String(30)),
    Column("last_login_user_agent", Text),
    Column("last_login_ip", String(64)),
    Column("last_login_location", String(200)),
    Column("last_login_logged_in_at", String(40)),
    Column("pending_email", String(320), index=True),
    Column("pending_email_requested_at", String(40)),
    Column("created_at", String(40), nullable=False),
)

devices = Table(
    "devices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("device_type", String(30), nullable=False),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("ip_address", String(64), nullable=False, server_default=""),
    Column("geo_country", String(100)),
    Column("geo_region", String(100)),
    Column("geo_city", String(100)),
    Column("geo_latitude", Float),
    Column("geo_longitude", Float),
    Column("last_active_at", String(40), nullable=False),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("user_id", "user_agent", "ip_address", name="uq_devices_fingerprint"),
)

security_tokens = Table(
    "security_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("device_id", Integer),  # no FK: device rows are deleted independently
    Column("email", String(320), nullable=False),
    Column("token_hash", String(64), nullable=False, index=True),  # SHA-256 hex
    Column("token_type", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    sqlite_autoincrement=True,
)

audit_events = Table(
    "audit_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),  # traceability only -- no FK
    Column("action", String(64), nullable=False, index=True),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("path", Text),
    Column("method", String(10)),
    Column("metadata", Text),  # JSON object
    Column("created_at", String(40), nullable=False),
)

Index("ix_security_tokens_user_type", security_tokens.c.user_id, security_tokens.c.token_type)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection and not inherited from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def create_identity_engine(db_url: str) -> Engine:
    """Create an Engine for db_url and make sure every identity table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine
