"""
auth/ledger.py -- Token Ledger: persisted single-use security tokens.

Every token is stored as SHA-256(raw) with a type tag and an expiry. The raw
value is returned to the caller exactly once, by issue(), and is never
persisted or logged.

Atomic redemption (consume):
  A redeemable token must be handed to at most one caller, even when two
  requests present the same secret at the same instant -- that is what turns
  replay of a stolen refresh token into a visible anomaly instead of a
  silent second session.

  consume() is a compare-and-delete:
    1. SELECT the candidate row by (token_hash, token_type).
    2. DELETE ... WHERE id = :id AND token_hash = :hash AND token_type = :type.
    3. Only the caller whose DELETE reports rowcount == 1 receives the row.
  A concurrent caller that selected the same row sees rowcount == 0 and gets
  None, exactly as if the token had never existed. The DELETE repeats the
  hash and type so a stale id can never match a successor row, and the table
  is AUTOINCREMENT on SQLite so deleted ids are not handed out again. This relies only on the
  database's row-level delete atomicity, so it behaves the same on SQLite
  and PostgreSQL without dialect-specific DELETE ... RETURNING.

  consume() does not check expiry. An expired token is still deleted and
  returned; callers decide whether expiry is a failure (it always is) and
  which failure to report.

TTL:
  Expired rows that are never presented are removed by purge_expired(),
  run periodically from the API lifespan task and the operator CLI.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.engine import Engine

from auth.db import from_iso, security_tokens, to_iso, utc_now
from auth.models import SecurityToken, TokenType
from core.crypto import generate_numeric_code, generate_secret, hash_token

logger = logging.getLogger("whisper.auth.ledger")


class TokenLedger:
    """Repository for SecurityToken rows with single-use redemption."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        user_id: int,
        token_type: TokenType,
        email: str,
        ttl: timedelta,
        device_id: Optional[int] = None,
        raw: Optional[str] = None,
    ) -> str:
        """Persist a new token and return its raw secret.

        raw defaults to a 64-byte random hex secret. Pass a pre-generated
        value (see issue_code) for short numeric one-time codes.
        """
        raw = raw if raw is not None else generate_secret()
        now = self._clock()
        with self.engine.begin() as conn:
            conn.execute(
                security_tokens.insert().values(
                    user_id=user_id,
                    device_id=device_id,
                    email=email,
                    token_hash=hash_token(raw),
                    token_type=token_type.value,
                    expires_at=to_iso(now + ttl),
                    created_at=to_iso(now),
                )
            )
        return raw

    def issue_code(self, user_id: int, token_type: TokenType, email: str, ttl: timedelta) -> str:
        """Issue a 6-digit numeric one-time code."""
        return self.issue(user_id, token_type, email, ttl, raw=generate_numeric_code())

    # ------------------------------------------------------------------
    # Lookup and redemption
    # ------------------------------------------------------------------

    def find(self, raw: str, token_type: TokenType, user_id: Optional[int] = None) -> Optional[SecurityToken]:
        """Non-consuming lookup. Used only where the token must survive (identifying the current session)."""
        query = security_tokens.select().where(
            and_(security_tokens.c.token_hash == hash_token(raw), security_tokens.c.token_type == token_type.value)
        )
        if user_id is not None:
            query = query.where(security_tokens.c.user_id == user_id)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_token(row) if row is not None else None

    def consume(self, raw: str, token_type: TokenType) -> Optional[SecurityToken]:
        """Atomically find and delete a token. Returns None if absent or lost to a concurrent consumer."""
        with self.engine.begin() as conn:
            row = conn.execute(
                security_tokens.select().where(
                    and_(
                        security_tokens.c.token_hash == hash_token(raw),
                        security_tokens.c.token_type == token_type.value,
                    )
                )
            ).first()
            if row is None or not _take(conn, row):
                return None
        return _row_to_token(row)

    def consume_for_user(self, user_id: int, token_type: TokenType) -> Optional[SecurityToken]:
        """Atomically take the newest token of token_type belonging to user_id.

        Used for email OTPs, where the code is compared after the row has
        already been removed so that every attempt burns it.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                security_tokens.select()
                .where(and_(security_tokens.c.user_id == user_id, security_tokens.c.token_type == token_type.value))
                .order_by(security_tokens.c.id.desc())
                .limit(1)
            ).first()
            if row is None or not _take(conn, row):
                return None
        return _row_to_token(row)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_for_user(self, user_id: int, token_type: TokenType, except_device_id: Optional[int] = None) -> int:
        """Delete all of a user's tokens of one type, optionally sparing one device's. Returns count deleted."""
        condition = and_(security_tokens.c.user_id == user_id, security_tokens.c.token_type == token_type.value)
        if except_device_id is not None:
            condition = and_(
                condition,
                or_(security_tokens.c.device_id.is_(None), security_tokens.c.device_id != except_device_id),
            )
        with self.engine.begin() as conn:
            result = conn.execute(security_tokens.delete().where(condition))
        return result.rowcount

    def revoke_for_device(self, user_id: int, device_id: int) -> int:
        """Delete every refresh token bound to one of the user's devices."""
        with self.engine.begin() as conn:
            result = conn.execute(
                security_tokens.delete().where(
                    and_(
                        security_tokens.c.user_id == user_id,
                        security_tokens.c.device_id == device_id,
                        security_tokens.c.token_type == TokenType.REFRESH.value,
                    )
                )
            )
        return result.rowcount

    def revoke_other_devices(self, user_id: int, keep_device_id: int) -> int:
        """Delete every refresh token of user_id not bound to keep_device_id."""
        return self.revoke_for_user(user_id, TokenType.REFRESH, except_device_id=keep_device_id)

    def list_for_user(self, user_id: int, token_type: Optional[TokenType] = None) -> list[SecurityToken]:
        query = security_tokens.select().where(security_tokens.c.user_id == user_id)
        if token_type is not None:
            query = query.where(security_tokens.c.token_type == token_type.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(security_tokens.c.id)).fetchall()
        return [_row_to_token(r) for r in rows]

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every token past its expiry. Returns number of rows removed."""
        cutoff = to_iso(now or self._clock())
        with self.engine.begin() as conn:
            result = conn.execute(security_tokens.delete().where(security_tokens.c.expires_at <= cutoff))
        if result.rowcount:
            logger.info("Purged %d expired security tokens", result.rowcount)
        return result.rowcount


def _take(conn, row) -> bool:
    """Delete exactly the selected row. False if another caller got there first."""
    deleted = conn.execute(
        security_tokens.delete().where(
            and_(
                security_tokens.c.id == row.id,
                security_tokens.c.user_id == row.user_id,
                security_tokens.c.token_hash == row.token_hash,
                security_tokens.c.token_type == row.token_type,
            )
        )
    )
    return deleted.rowcount == 1


def _row_to_token(row) -> SecurityToken:
    return SecurityToken(
        id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        email=row.email,
        token_hash=row.token_hash,
        token_type=TokenType(row.token_type),
        expires_at=from_iso(row.expires_at),  # type: ignore[arg-type]
        created_at=from_iso(row.created_at),
    )
