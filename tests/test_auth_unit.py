"""Unit tests for the authentication orchestrator.

Tests for:
- Code request and delivery reporting
- Code redemption, last-login bookkeeping and session creation
- Refresh and logout semantics
- Bearer authentication and role checks
- Storage timeouts surfacing as retryable errors
"""

import time

import pytest

from otpgate.service.auth import AuthService
from otpgate.service.email import EmailService
from otpgate.service.errors import (
    ForbiddenError,
    InvalidInputError,
    InvalidOrExpiredOTPError,
    NotFoundError,
    ServiceUnavailableError,
    SessionInvalidError,
    TokenExpiredError,
    TokenInvalidError,
    UserInactiveError,
    UserNotFoundError,
)
from otpgate.service.otp import OTPChallengeManager
from otpgate.service.sessions import SessionManager
from otpgate.service.tokens import TokenIssuer
from otpgate.storage.errors import StorageUnavailable

EMAIL = "user@example.com"


class RecordingMailer(EmailService):
    """Captures codes instead of sending them."""

    def __init__(self, result=True, error=None, delay=0.0):
        super().__init__()
        self.sent = []
        self.result = result
        self.error = error
        self.delay = delay

    def send_otp(self, to_email, code, purpose):
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        self.sent.append((to_email, code, purpose))
        return self.result


def _build(store, settings, mailer=None):
    return AuthService(
        store,
        settings,
        otp=OTPChallengeManager(store, settings),
        tokens=TokenIssuer(settings),
        sessions=SessionManager(store, settings),
        mailer=mailer or RecordingMailer(),
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def auth(memory_store, settings, mailer):
    return _build(memory_store, settings, mailer)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(EMAIL, role="user")


async def _login(auth, mailer, email=EMAIL):
    await auth.request_code(email)
    code = mailer.sent[-1][1]
    return await auth.redeem_code(email, code, user_agent="pytest", ip_addr="127.0.0.1")


class TestRequestCode:
    """Tests for requesting a one-time code."""

    async def test_request_code_mails_code(self, auth, mailer, memory_store, user):
        result = await auth.request_code(EMAIL)

        assert result.delivered is True
        assert result.email == EMAIL
        assert len(mailer.sent) == 1
        to_email, code, _ = mailer.sent[0]
        assert to_email == EMAIL
        assert memory_store.get_challenge(result.challenge_id).code == code
        assert not hasattr(result, "code")

    async def test_email_is_normalized(self, auth, mailer, user):
        result = await auth.request_code("  User@Example.COM ")
        assert result.email == EMAIL
        assert mailer.sent[0][0] == EMAIL

    async def test_invalid_email(self, auth):
        with pytest.raises(InvalidInputError):
            await auth.request_code("not-an-email")

    async def test_unknown_user(self, auth, mailer):
        with pytest.raises(UserNotFoundError):
            await auth.request_code("ghost@example.com")
        assert mailer.sent == []

    async def test_inactive_user(self, auth, memory_store, user):
        memory_store.set_user_active(user.id, False)
        with pytest.raises(UserInactiveError):
            await auth.request_code(EMAIL)

    async def test_mail_failure_is_reported_not_raised(self, memory_store, settings, user):
        auth = _build(memory_store, settings, RecordingMailer(error=RuntimeError("smtp down")))

        result = await auth.request_code(EMAIL)

        assert result.delivered is False
        assert memory_store.get_challenge(result.challenge_id) is not None

    async def test_mail_timeout_is_reported_not_raised(self, memory_store, settings, user):
        slow = settings.model_copy(update={"mail_timeout_seconds": 0.05})
        auth = _build(memory_store, slow, RecordingMailer(delay=0.3))

        result = await auth.request_code(EMAIL)

        assert result.delivered is False


class TestRedeemCode:
    """Tests for redeeming a code into tokens."""

    async def test_successful_login(self, auth, mailer, memory_store, user):
        result = await _login(auth, mailer)

        assert result.user.id == user.id
        assert result.access_token and result.refresh_token
        stored_user = memory_store.get_user_by_id(user.id)
        assert stored_user.last_login_at is not None
        assert stored_user.email_verified is True
        session = memory_store.sessions[result.session.id]
        assert session.is_active
        assert session.device_info == {"user_agent": "pytest"}
        assert session.ip_addr == "127.0.0.1"

    async def test_wrong_code(self, auth, mailer, user):
        await auth.request_code(EMAIL)
        code = mailer.sent[-1][1]
        wrong = "".join(str((int(c) + 1) % 10) for c in code)

        with pytest.raises(InvalidOrExpiredOTPError):
            await auth.redeem_code(EMAIL, wrong)

    async def test_malformed_code(self, auth, user):
        with pytest.raises(InvalidInputError):
            await auth.redeem_code(EMAIL, "abc")

    async def test_user_deactivated_after_issue(self, auth, mailer, memory_store, user):
        await auth.request_code(EMAIL)
        memory_store.set_user_active(user.id, False)

        with pytest.raises(UserInactiveError):
            await auth.redeem_code(EMAIL, mailer.sent[-1][1])


class TestRefreshAndLogout:
    """Tests for refresh and logout."""

    async def test_refresh_returns_new_access_token(self, auth, mailer, user):
        login = await _login(auth, mailer)

        result = await auth.refresh(login.refresh_token)

        assert result.access_token
        assert result.user.id == user.id
        claims = auth.tokens.verify(result.access_token, token_type="access")
        assert claims.user_id == user.id

    async def test_access_token_cannot_refresh(self, auth, mailer, user):
        login = await _login(auth, mailer)
        with pytest.raises(TokenInvalidError):
            await auth.refresh(login.access_token)

    async def test_logout_invalidates_refresh(self, auth, mailer, user):
        login = await _login(auth, mailer)

        await auth.logout(login.refresh_token)
        await auth.logout(login.refresh_token)

        with pytest.raises(SessionInvalidError):
            await auth.refresh(login.refresh_token)

    async def test_logout_unknown_token_is_noop(self, auth):
        await auth.logout("not-a-token")
        await auth.logout("")

    async def test_logout_all(self, auth, mailer, user):
        first = await _login(auth, mailer)
        second = await _login(auth, mailer)

        assert await auth.logout_all(user.id) == 2
        for login in (first, second):
            with pytest.raises(SessionInvalidError):
                await auth.refresh(login.refresh_token)

    async def test_refresh_rejects_inactive_user(self, auth, mailer, memory_store, user):
        login = await _login(auth, mailer)
        memory_store.set_user_active(user.id, False)

        with pytest.raises(UserInactiveError):
            await auth.refresh(login.refresh_token)

    async def test_revoke_foreign_session_is_not_found(self, auth, mailer, memory_store, user):
        login = await _login(auth, mailer)
        other = memory_store.create_user("other@example.com")

        with pytest.raises(NotFoundError):
            await auth.revoke_session(other.id, login.session.id)
        await auth.revoke_session(user.id, login.session.id)
        assert await auth.list_sessions(user.id) == []


class TestAuthenticate:
    """Tests for bearer authentication."""

    async def test_authenticate_valid_token(self, auth, mailer, user):
        login = await _login(auth, mailer)

        ctx = await auth.authenticate(f"Bearer {login.access_token}")

        assert ctx.user_id == user.id
        assert ctx.role == "user"

    async def test_missing_or_malformed_header(self, auth):
        with pytest.raises(TokenInvalidError):
            await auth.authenticate(None)
        with pytest.raises(TokenInvalidError):
            await auth.authenticate("Basic abc")

    async def test_role_hierarchy(self, auth, mailer, memory_store):
        memory_store.create_user("boss@example.com", role="manager")
        login = await _login(auth, mailer, "boss@example.com")
        header = f"Bearer {login.access_token}"

        assert (await auth.authenticate(header, required_role="user")).role == "manager"
        await auth.authenticate(header, required_role="manager")
        with pytest.raises(ForbiddenError):
            await auth.authenticate(header, required_role="admin")

    async def test_deleted_user_token_rejected(self, auth, mailer, memory_store, user):
        from datetime import datetime, timezone

        login = await _login(auth, mailer)
        memory_store.soft_delete_user(user.id, "admin-id", datetime.now(timezone.utc))

        with pytest.raises(UserNotFoundError):
            await auth.authenticate(f"Bearer {login.access_token}")

    async def test_expired_access_token(self, memory_store, settings, mailer, user):
        from datetime import timedelta

        short = settings.model_copy(update={"access_token_ttl": timedelta(seconds=1)})
        auth = _build(memory_store, short, mailer)
        login = await _login(auth, mailer)
        time.sleep(1.1)

        with pytest.raises(TokenExpiredError):
            await auth.authenticate(f"Bearer {login.access_token}")


class TestStoreFailures:
    """Tests for storage outages."""

    async def test_store_outage_is_service_unavailable(self, auth, memory_store, user):
        def broken(*args, **kwargs):
            raise StorageUnavailable("connection refused", operation="get_user_by_email")

        memory_store.get_user_by_email = broken

        with pytest.raises(ServiceUnavailableError) as excinfo:
            await auth.request_code(EMAIL)
        assert excinfo.value.status_code == 503
        assert excinfo.value.detail["retryable"] is True

    async def test_store_timeout_is_service_unavailable(self, memory_store, settings, user):
        auth = _build(memory_store, settings.model_copy(update={"store_timeout_seconds": 0.05}))

        def slow(*args, **kwargs):
            time.sleep(0.3)

        memory_store.get_user_by_email = slow

        with pytest.raises(ServiceUnavailableError):
            await auth.request_code(EMAIL)
