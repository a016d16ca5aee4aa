"""
auth/password_policy.py -- Complexity rules for new passwords.

Applied by registration and password change. The API contract enforces a
looser transport bound (8-128 characters); this is the stricter rule the
identity core enforces before anything is hashed.
"""

from __future__ import annotations

import re
from typing import Optional

MIN_PASSWORD_LENGTH = 12

_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter."),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter."),
    (re.compile(r"[0-9]"), "Password must contain at least one number."),
    (re.compile(r"[^A-Za-z0-9]"), "Password must contain at least one special character."),
]


def validate_password(password: str) -> Optional[str]:
    """Return the message for the first rule password breaks, or None if it passes."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
    for pattern, message in _RULES:
        if not pattern.search(password):
            return message
    return None
