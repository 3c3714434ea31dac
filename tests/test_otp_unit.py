"""Unit tests for OTP challenge issuance and redemption.

Tests for:
- Code generation and format checks
- Issuance preconditions (missing, deleted, inactive users)
- Redemption success, single use, expiry and attempt exhaustion
- Wrong guesses only charging challenges with the submitted code
- Most-recent-challenge selection
- Master code handling
- Stale challenge cleanup
"""

from datetime import datetime, timedelta, timezone

import pytest

from otpgate.service.errors import (
    InvalidInputError,
    InvalidOrExpiredOTPError,
    UserInactiveError,
    UserNotFoundError,
)
from otpgate.service.otp import OTPChallengeManager
from otpgate.storage.models import OTPChallenge, OTPPurpose

EMAIL = "user@example.com"


@pytest.fixture
def otp(memory_store, settings):
    return OTPChallengeManager(memory_store, settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(EMAIL)


def _wrong_code(code: str) -> str:
    return "".join(str((int(c) + 1) % 10) for c in code)


class TestCodeFormat:
    """Tests for code generation and format validation."""

    def test_generated_code_has_configured_length(self, otp):
        for _ in range(50):
            code = otp.generate_code()
            assert len(code) == 6
            assert code.isascii() and code.isdigit()

    def test_length_follows_settings(self, memory_store, settings):
        manager = OTPChallengeManager(memory_store, settings.model_copy(update={"otp_length": 8}))
        assert len(manager.generate_code()) == 8

    def test_format_rejects_wrong_length_and_non_digits(self, otp):
        assert otp.is_valid_format("123456")
        assert not otp.is_valid_format("12345")
        assert not otp.is_valid_format("1234567")
        assert not otp.is_valid_format("12a456")
        assert not otp.is_valid_format("")

    def test_format_rejects_non_ascii_digits(self, otp):
        # Arabic-indic digits pass str.isdigit()
        assert not otp.is_valid_format("١٢٣٤٥٦")


class TestIssue:
    """Tests for challenge issuance."""

    async def test_issue_persists_unverified_challenge(self, otp, memory_store, user):
        challenge = await otp.issue(EMAIL, OTPPurpose.LOGIN)

        stored = memory_store.get_challenge(challenge.id)
        assert stored is not None
        assert stored.email == EMAIL
        assert stored.purpose == OTPPurpose.LOGIN
        assert stored.attempts == 0
        assert stored.max_attempts == 3
        assert not stored.is_verified
        assert stored.expires_at - stored.created_at == timedelta(minutes=10)

    async def test_issue_requires_existing_user(self, otp):
        with pytest.raises(UserNotFoundError):
            await otp.issue("nobody@example.com")

    async def test_issue_rejects_inactive_user(self, otp, memory_store, user):
        memory_store.set_user_active(user.id, False)
        with pytest.raises(UserInactiveError):
            await otp.issue(EMAIL)

    async def test_issue_treats_deleted_user_as_missing(self, otp, memory_store, user):
        memory_store.soft_delete_user(user.id, "admin-id", datetime.now(timezone.utc))
        with pytest.raises(UserNotFoundError):
            await otp.issue(EMAIL)

    async def test_issue_rejects_unknown_purpose(self, otp, user):
        with pytest.raises(InvalidInputError):
            await otp.issue(EMAIL, "password_reset")

    async def test_concurrent_issuance_keeps_both_challenges(self, otp, memory_store, user):
        first = await otp.issue(EMAIL)
        second = await otp.issue(EMAIL)

        assert memory_store.get_challenge(first.id) is not None
        assert memory_store.get_challenge(second.id) is not None
        # The older challenge stays redeemable after the newer one is used
        await otp.redeem(EMAIL, second.code)
        await otp.redeem(EMAIL, first.code)
        assert memory_store.get_challenge(first.id).is_verified
        assert memory_store.get_challenge(second.id).is_verified


class TestRedeem:
    """Tests for challenge redemption."""

    async def test_redeem_marks_challenge_verified(self, otp, memory_store, user):
        challenge = await otp.issue(EMAIL)

        result = await otp.redeem(EMAIL, challenge.code)

        assert result.challenge.id == challenge.id
        assert memory_store.get_challenge(challenge.id).is_verified

    async def test_code_is_single_use(self, otp, user):
        challenge = await otp.issue(EMAIL)
        await otp.redeem(EMAIL, challenge.code)

        with pytest.raises(InvalidOrExpiredOTPError):
            await otp.redeem(EMAIL, challenge.code)

    async def test_wrong_code_leaves_mailed_challenge_untouched(self, otp, memory_store, user):
        challenge = await otp.issue(EMAIL)

        with pytest.raises(InvalidOrExpiredOTPError):
            await otp.redeem(EMAIL, _wrong_code(challenge.code))

        assert memory_store.get_challenge(challenge.id).attempts == 0

    async def test_wrong_guesses_do_not_lock_out_the_real_code(self, otp, memory_store, user):
        challenge = await otp.issue(EMAIL)
        for _ in range(3):
            with pytest.raises(InvalidOrExpiredOTPError):
                await otp.redeem(EMAIL, _wrong_code(challenge.code))

        result = await otp.redeem(EMAIL, challenge.code)

        assert result.challenge.id == challenge.id
        assert memory_store.get_challenge(challenge.id).attempts == 0

    async def test_failed_redeem_charges_matching_unusable_challenge(self, otp, memory_store, user):
        now = datetime.now(timezone.utc)
        expired = OTPChallenge.new(
            EMAIL, "123456", OTPPurpose.LOGIN,
            ttl=timedelta(minutes=10), max_attempts=3, now=now - timedelta(minutes=11),
        )
        memory_store.create_challenge(expired)

        with pytest.raises(InvalidOrExpiredOTPError):
            await otp.redeem(EMAIL, "123456")

        assert memory_store.get_challenge(expired.id).attempts == 1

    async def test_exhausted_challenge_rejects_correct_code(self, otp, memory_store, user):
        challenge = await otp.issue(EMAIL)
        for _ in range(3):
            memory_store.increment_challenge_attempts(EMAIL, challenge.code, OTPPurpose.LOGIN)

        with pytest.raises(InvalidOrExpiredOTPError):
            await otp.redeem(EMAIL, challenge.code)
        assert not memory_store.get_challenge(challenge.id).is_verified
        assert memory_store.get_challenge(challenge.id).attempts == 4

    async def test_redeem_canonicalizes_email(self, otp, memory_store, user):
        challenge = await otp.issue("  User@Example.COM ")

        assert memory_store.get_challenge(challenge.id).email == EMAIL
        result = await otp.redeem("USER@example.com", challenge.code)
        assert result.challenge.id == challenge.id

    async def test_expired_challenge_is_rejected(self, otp, memory_store, user):
        now = datetime.now(timezone.utc)
        expired = OTPChallenge.new(
            EMAIL,
            "123456",
            OTPPurpose.LOGIN,
            ttl=timedelta(minutes=10),
            max_attempts=3,
            now=now - timedelta(minutes=11),
        )
        memory_store.create_challenge(expired)

        with pytest.raises(InvalidOrExpiredOTPError):
            await otp.redeem(EMAIL, "123456")

    async def test_purpose_must_match(self, otp, user):
        challenge = await otp.issue(EMAIL, OTPPurpose.REGISTRATION)

        with pytest.raises(InvalidOrExpiredOTPError):
            await otp.redeem(EMAIL, challenge.code, OTPPurpose.LOGIN)

    async def test_most_recent_matching_challenge_wins(self, otp, memory_store, user):
        now = datetime.now(timezone.utc)
        older = OTPChallenge.new(
            EMAIL, "111111", OTPPurpose.LOGIN,
            ttl=timedelta(minutes=10), max_attempts=3, now=now - timedelta(minutes=2),
        )
        newer = OTPChallenge.new(
            EMAIL, "111111", OTPPurpose.LOGIN,
            ttl=timedelta(minutes=10), max_attempts=3, now=now - timedelta(minutes=1),
        )
        memory_store.create_challenge(newer)
        memory_store.create_challenge(older)

        result = await otp.redeem(EMAIL, "111111")

        assert result.challenge.id == newer.id
        assert not memory_store.get_challenge(older.id).is_verified

    async def test_malformed_code_is_invalid_input(self, otp, memory_store, user):
        challenge = await otp.issue(EMAIL)

        with pytest.raises(InvalidInputError):
            await otp.redeem(EMAIL, "12ab")
        assert memory_store.get_challenge(challenge.id).attempts == 0


class TestMasterCode:
    """Tests for the configured master code."""

    async def test_master_code_bypasses_format_only(self, memory_store, settings, user):
        manager = OTPChallengeManager(
            memory_store, settings.model_copy(update={"master_otp_code": "letmein"})
        )
        assert manager.is_valid_format("letmein")

        await manager.issue(EMAIL)
        with pytest.raises(InvalidOrExpiredOTPError):
            await manager.redeem(EMAIL, "letmein")

    async def test_master_code_disabled_by_default(self, otp):
        assert not otp.is_master_code("000000")
        assert not otp.is_valid_format("letmein")


class TestCleanup:
    """Tests for stale challenge removal."""

    async def test_cleanup_removes_expired_and_verified(self, otp, memory_store, user):
        now = datetime.now(timezone.utc)
        expired = OTPChallenge.new(
            EMAIL, "222222", OTPPurpose.LOGIN,
            ttl=timedelta(minutes=1), max_attempts=3, now=now - timedelta(minutes=5),
        )
        memory_store.create_challenge(expired)
        verified = await otp.issue(EMAIL)
        await otp.redeem(EMAIL, verified.code)
        live = await otp.issue(EMAIL)

        removed = await otp.cleanup()

        assert removed == 2
        assert memory_store.get_challenge(live.id) is not None
        assert memory_store.get_challenge(expired.id) is None
