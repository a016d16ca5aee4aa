"""
auth/tokens.py -- Password hashing and short-lived access tokens.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The work factor comes
       from Settings.bcrypt_rounds and is passed in by the caller, so tests can
       drop to 4 rounds while production stays at 12 or above.
       dummy_hash(rounds) supports timing equalization in auth/login.py: an
       unknown email still pays for one bcrypt comparison at the same cost, so
       response time does not reveal whether an account exists.

  Access tokens: python-jose with HS256, subject = user id. These are the
       bearer credentials the HTTP layer hands out after login/refresh. The
       identity core never inspects them -- sessions are tracked by refresh
       tokens in the ledger (auth/ledger.py). Decoding returns None on any
       failure; the route layer turns that into a 401.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import bcrypt
from jose import JWTError, jwt

logger = logging.getLogger("whisper.auth.tokens")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of plain at the given work factor.

    bcrypt only looks at the first 72 bytes. The API contract caps passwords
    at 128 characters; anything beyond 72 bytes is silently ignored by bcrypt.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        logger.warning("Stored password hash could not be parsed")
        return False


@lru_cache(maxsize=None)
def dummy_hash(rounds: int) -> str:
    """A throwaway hash at the given cost, computed once per work factor."""
    return hash_password("whisper_timing_dummy", rounds)


# ---------------------------------------------------------------------------
# Access tokens (JWT)
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, secret_key: str, expire_seconds: int, now: Optional[datetime] = None) -> str:
    """Encode a signed JWT whose subject is the user id."""
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": issued,
        "exp": issued + timedelta(seconds=expire_seconds),
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str, secret_key: str) -> Optional[int]:
    """Verify a JWT and return its user id, or None on any failure."""
    try:
        payload = jwt.decode(token, secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject or not str(subject).isdigit():
        return None
    return int(subject)
