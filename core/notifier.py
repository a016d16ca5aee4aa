"""
core/notifier.py -- Outbound security email dispatch.

Security notifications are fire-and-forget from the identity core's point of
view: a confirmed password change must stay confirmed even if the "your
password was changed" email never leaves the building. The Notifier raises
NotificationError on any transport failure; callers in auth/ log and swallow
it. Nothing here retries.

Transport: JSON POST to an HTTP mail gateway authenticated with an API key.
When no gateway URL is configured (local development, tests) the message is
logged at INFO without its body and reported as sent.

Layer rule: core/ may not import from api/ or auth/.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

import requests

logger = logging.getLogger("whisper.mail")


class NotificationError(Exception):
    """Raised when a notification could not be handed to the mail gateway."""


class NotificationKind(str, Enum):
    VERIFICATION = "verification"
    NEW_DEVICE_ALERT = "new_device_alert"
    PASSWORD_CHANGED = "password_changed"
    EMAIL_CHANGE_REQUEST = "email_change_request"
    EMAIL_CHANGE_NOTICE = "email_change_notice"
    TWO_FACTOR_OTP = "two_factor_otp"
    TWO_FACTOR_ENABLED = "two_factor_enabled"


_SUBJECTS: dict[NotificationKind, str] = {
    NotificationKind.VERIFICATION: "Verify your Whisper email address",
    NotificationKind.NEW_DEVICE_ALERT: "Security alert: New device signed into your Whisper account",
    NotificationKind.PASSWORD_CHANGED: "Your Whisper password was changed",
    NotificationKind.EMAIL_CHANGE_REQUEST: "Confirm your new Whisper email address",
    NotificationKind.EMAIL_CHANGE_NOTICE: "An email change was requested on your Whisper account",
    NotificationKind.TWO_FACTOR_OTP: "Your Whisper verification code",
    NotificationKind.TWO_FACTOR_ENABLED: "Two-factor authentication is now enabled",
}

_BODIES: dict[NotificationKind, str] = {
    NotificationKind.VERIFICATION: (
        "Welcome to Whisper, {name}!\n\n"
        "Verify your email address by opening the link below:\n{link}\n\n"
        "This link expires in {minutes} minutes.\n"
        "If you did not create this account, you can safely ignore this email."
    ),
    NotificationKind.NEW_DEVICE_ALERT: (
        "We detected a sign-in to your Whisper account from a new device.\n\n"
        "Account: {email}\nDevice: {device}\nLocation: {location}\nIP Address: {ip}\nTime: {time}\n\n"
        "If this was you, no action is required. If you do NOT recognize this activity, "
        "change your password immediately and review your devices."
    ),
    NotificationKind.PASSWORD_CHANGED: (
        "Hi {name},\n\nThe password for your Whisper account was changed at {time} "
        "from {device} ({ip}).\n\nAll other sessions have been signed out. "
        "If this wasn't you, reset your password right away."
    ),
    NotificationKind.EMAIL_CHANGE_REQUEST: (
        "Hi {name},\n\nConfirm {new_email} as the new address for your Whisper account:\n{link}\n\n"
        "This link expires in {minutes} minutes."
    ),
    NotificationKind.EMAIL_CHANGE_NOTICE: (
        "Hi {name},\n\nA request was made at {time} to change your Whisper email address to {new_email}.\n"
        "Device: {device}\nIP Address: {ip}\nLocation: {location}\n\n"
        "If this wasn't you, change your password and review your devices."
    ),
    NotificationKind.TWO_FACTOR_OTP: (
        "Your Whisper verification code is {code}.\n\nIt expires in {minutes} minutes. Never share this code."
    ),
    NotificationKind.TWO_FACTOR_ENABLED: (
        "Hi {name},\n\nTwo-factor authentication was enabled on your Whisper account at {time}."
    ),
}


class _SafeDict(dict):
    """Leave unknown placeholders visible instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render(kind: NotificationKind, template_data: dict[str, Any]) -> tuple[str, str]:
    """Return (subject, plain-text body) for a notification kind."""
    body = _BODIES[kind].format_map(_SafeDict({k: "" if v is None else v for k, v in template_data.items()}))
    return _SUBJECTS[kind], body


class Notifier:
    """Send security notifications through an HTTP mail gateway.

    Usage:
        notifier = Notifier(gateway_url, api_key, sender="Whisper <no-reply@whisper.app>")
        notifier.send(NotificationKind.PASSWORD_CHANGED, "alice@example.com", {"name": "Alice"})
    """

    def __init__(self, gateway_url: str = "", api_key: str = "", sender: str = "", timeout: float = 10.0) -> None:
        self._gateway_url = gateway_url
        self._api_key = api_key
        self._sender = sender
        self._timeout = timeout
        self._session: Optional[requests.Session] = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def send(self, kind: NotificationKind, recipient: str, template_data: dict[str, Any]) -> None:
        """Render and dispatch one notification.

        Raises:
            NotificationError: on connection failure or a non-2xx gateway response.
        """
        subject, body = render(kind, template_data)
        if not self._gateway_url:
            logger.info("Mail transport disabled; would send %s to %s", kind.value, recipient)
            return

        payload = {
            "from": self._sender,
            "to": recipient,
            "subject": subject,
            "text": body,
            "tag": kind.value,
        }
        try:
            resp = self._get_session().post(
                self._gateway_url,
                json=payload,
                headers={"X-API-Key": self._api_key},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error("Mail gateway connection failed: %s", e)
            raise NotificationError(f"Connection failed: {e}") from e

        if not resp.ok:
            logger.error("Mail gateway rejected %s: HTTP %d", kind.value, resp.status_code)
            raise NotificationError(f"Gateway error: HTTP {resp.status_code}")
        logger.info("Sent %s to %s", kind.value, recipient)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


def send_quietly(notifier: Notifier, kind: NotificationKind, recipient: str, template_data: dict[str, Any]) -> bool:
    """Send a notification, logging and swallowing NotificationError.

    Used by identity components after their state change has committed; a
    mail outage must not unwind it. Returns False if the send failed.
    """
    try:
        notifier.send(kind, recipient, template_data)
    except NotificationError as e:
        logger.warning("Notification %s to %s not delivered: %s", kind.value, recipient, e)
        return False
    return True
