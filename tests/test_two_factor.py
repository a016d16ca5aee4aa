"""
tests/test_two_factor.py -- TOTP enrollment state machine.
"""

from __future__ import annotations

import base64
from datetime import timedelta

import pyotp
import pytest

from auth.models import AuditAction, TokenType, TwoFactorEnabled, TwoFactorPending
from auth.results import FailureKind
from auth.two_factor import qr_data_uri
from core.crypto import CipherError
from core.notifier import NotificationKind

from conftest import make_verified_user


@pytest.fixture
def user_id(identity) -> int:
    return make_verified_user(identity)


def _emailed_code(notifier) -> str:
    return notifier.of_kind(NotificationKind.TWO_FACTOR_OTP)[-1][2]["code"]


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


class TestInitiateSetup:
    def test_starts_pending_with_encrypted_seed(self, identity, user_id) -> None:
        setup = identity.two_factor.initiate_setup(user_id).unwrap()

        state = identity.users.get_by_id(user_id).two_factor
        assert isinstance(state, TwoFactorPending)
        assert state.encrypted_seed != setup.manual_seed
        assert identity.two_factor.status(user_id).value == "pending"

    def test_provisioning_uri_and_qr(self, identity, user_id) -> None:
        setup = identity.two_factor.initiate_setup(user_id).unwrap()

        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert "issuer=Whisper" in setup.otpauth_uri
        assert f"secret={setup.manual_seed}" in setup.otpauth_uri
        assert setup.qr_payload.startswith("data:image/svg+xml;base64,")
        svg = base64.b64decode(setup.qr_payload.split(",", 1)[1])
        assert b"<svg" in svg

    def test_emails_a_six_digit_code(self, identity, notifier, user_id) -> None:
        identity.two_factor.initiate_setup(user_id).unwrap()
        sent = notifier.of_kind(NotificationKind.TWO_FACTOR_OTP)
        assert len(sent) == 1
        assert sent[0][1] == "alice@example.com"
        assert len(_emailed_code(notifier)) == 6

    def test_restart_replaces_seed_and_code(self, identity, user_id) -> None:
        first = identity.two_factor.initiate_setup(user_id).unwrap()
        second = identity.two_factor.initiate_setup(user_id).unwrap()
        assert first.manual_seed != second.manual_seed
        assert len(identity.ledger.list_for_user(user_id, TokenType.TWO_FACTOR_EMAIL_OTP)) == 1

    def test_already_enabled_conflicts(self, identity, clock, user_id) -> None:
        setup = identity.two_factor.initiate_setup(user_id).unwrap()
        code = pyotp.TOTP(setup.manual_seed).at(clock.now)
        identity.two_factor.confirm_setup(user_id, totp=code).unwrap()

        assert identity.two_factor.initiate_setup(user_id).kind is FailureKind.CONFLICT

    def test_qr_data_uri_standalone(self) -> None:
        assert qr_data_uri("otpauth://totp/x?secret=JBSWY3DPEHPK3PXP").startswith("data:image/svg+xml;base64,")


class TestConfirmWithTotp:
    def test_one_step_of_drift_is_accepted(self, identity, clock, notifier, user_id) -> None:
        setup = identity.two_factor.initiate_setup(user_id).unwrap()
        code = pyotp.TOTP(setup.manual_seed).at(clock.now + timedelta(seconds=30))

        assert identity.two_factor.confirm_setup(user_id, totp=code).ok

        state = identity.users.get_by_id(user_id).two_factor
        assert isinstance(state, TwoFactorEnabled)
        assert state.enabled_at == clock.now
        assert identity.users.get_by_id(user_id).is_two_factor_enabled
        assert identity.ledger.list_for_user(user_id, TokenType.TWO_FACTOR_EMAIL_OTP) == []
        assert len(notifier.of_kind(NotificationKind.TWO_FACTOR_ENABLED)) == 1

    def test_two_steps_of_drift_is_rejected(self, identity, clock, user_id) -> None:
        setup = identity.two_factor.initiate_setup(user_id).unwrap()
        code = pyotp.TOTP(setup.manual_seed).at(clock.now + timedelta(seconds=60))

        result = identity.two_factor.confirm_setup(user_id, totp=code)
        assert result.kind is FailureKind.UNAUTHORIZED
        assert result.failure.message == "Invalid verification code."
        assert isinstance(identity.users.get_by_id(user_id).two_factor, TwoFactorPending)

        event = identity.audit.recent(action=AuditAction.TWO_FACTOR_ENABLE_FAILED)[0]
        assert event.metadata == {"reason": "totp_invalid", "method": "totp"}

    def test_failure_keeps_pending_seed_for_retry(self, identity, clock, user_id) -> None:
        setup = identity.two_factor.initiate_setup(user_id).unwrap()
        totp = pyotp.TOTP(setup.manual_seed)
        identity.two_factor.confirm_setup(user_id, totp=_wrong(totp.at(clock.now)))

        assert identity.two_factor.confirm_setup(user_id, totp=totp.at(clock.now)).ok

    def test_tampered_seed_fails_loudly(self, identity, clock, user_id) -> None:
        setup = identity.two_factor.initiate_setup(user_id).unwrap()
        identity.users.set_two_factor(user_id, TwoFactorPending(encrypted_seed="AAAA" * 12))

        with pytest.raises(CipherError):
            identity.two_factor.confirm_setup(user_id, totp=pyotp.TOTP(setup.manual_seed).at(clock.now))


class TestConfirmWithEmailOtp:
    def test_emailed_code_enables(self, identity, notifier, user_id) -> None:
        identity.two_factor.initiate_setup(user_id).unwrap()
        assert identity.two_factor.confirm_setup(user_id, email_otp=_emailed_code(notifier)).ok
        assert identity.two_factor.status(user_id).value == "enabled"

    def test_mismatch_burns_the_code(self, identity, notifier, user_id) -> None:
        identity.two_factor.initiate_setup(user_id).unwrap()
        code = _emailed_code(notifier)

        first = identity.two_factor.confirm_setup(user_id, email_otp=_wrong(code))
        assert first.kind is FailureKind.UNAUTHORIZED
        second = identity.two_factor.confirm_setup(user_id, email_otp=code)
        assert second.kind is FailureKind.UNAUTHORIZED

        reasons = [e.metadata["reason"] for e in identity.audit.recent(action=AuditAction.TWO_FACTOR_ENABLE_FAILED)]
        assert reasons == ["email_otp_not_found", "email_otp_mismatch"]

    def test_expired_code(self, identity, clock, notifier, user_id) -> None:
        identity.two_factor.initiate_setup(user_id).unwrap()
        clock.advance(minutes=identity.settings.email_token_minutes)

        result = identity.two_factor.confirm_setup(user_id, email_otp=_emailed_code(notifier))
        assert result.kind is FailureKind.UNAUTHORIZED
        event = identity.audit.recent(action=AuditAction.TWO_FACTOR_ENABLE_FAILED)[0]
        assert event.metadata["reason"] == "email_otp_expired"


class TestConfirmPreconditions:
    def test_not_started(self, identity, user_id) -> None:
        result = identity.two_factor.confirm_setup(user_id, totp="123456")
        assert result.kind is FailureKind.VALIDATION
        assert identity.two_factor.status(user_id).value == "disabled"

    def test_no_code_given(self, identity, user_id) -> None:
        identity.two_factor.initiate_setup(user_id).unwrap()
        assert identity.two_factor.confirm_setup(user_id).kind is FailureKind.VALIDATION

    def test_already_enabled(self, identity, notifier, user_id) -> None:
        identity.two_factor.initiate_setup(user_id).unwrap()
        identity.two_factor.confirm_setup(user_id, email_otp=_emailed_code(notifier)).unwrap()

        assert identity.two_factor.confirm_setup(user_id, totp="123456").kind is FailureKind.CONFLICT
