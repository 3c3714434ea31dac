from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from otpgate.config import Settings
from otpgate.logging import email_hash, get_logger
from otpgate.service.email import EmailService
from otpgate.service.errors import (
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    SessionInvalidError,
    TokenInvalidError,
)
from otpgate.service.otp import (
    OTPChallengeManager,
    ensure_user_can_authenticate,
    parse_purpose,
)
from otpgate.service.sessions import SessionManager
from otpgate.service.timeouts import call_store
from otpgate.service.tokens import ACCESS, REFRESH, TokenIssuer
from otpgate.service.validation import normalize_email
from otpgate.storage.common import CredentialStore
from otpgate.storage.models import OTPPurpose, Session, User

logger = get_logger(__name__)

_ROLE_RANK = {"user": 0, "manager": 1, "admin": 2}


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str


@dataclass
class CodeRequestResult:
    email: str
    purpose: OTPPurpose
    challenge_id: str
    expires_at: datetime
    delivered: bool


@dataclass
class LoginResult:
    user: User
    session: Session
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime


@dataclass
class RefreshResult:
    user: User
    access_token: str
    access_expires_at: datetime


class AuthService:
    """Coordinates OTP login, token refresh, logout and bearer authentication.

    Owns no state of its own: users and sessions live in the store, codes in
    the OTP manager, signing in the token issuer.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        otp: OTPChallengeManager,
        tokens: TokenIssuer,
        sessions: SessionManager,
        mailer: EmailService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.otp = otp
        self.tokens = tokens
        self.sessions = sessions
        self.mailer = mailer
        self.logger = logger

    async def _call(self, func, *args):
        return await call_store(func, *args, timeout=self.settings.store_timeout_seconds)

    def _normalize_email(self, email: str) -> str:
        try:
            return normalize_email(email)
        except ValueError as exc:
            raise InvalidInputError(str(exc), detail={"field": "email"})

    async def _load_user_for_auth(self, *, email: str | None = None, user_id: str | None = None) -> User:
        if email is not None:
            user = await self._call(self.store.get_user_by_email, email)
        else:
            user = await self._call(self.store.get_user_by_id, user_id)
        return ensure_user_can_authenticate(user)

    async def _dispatch_code(self, email: str, code: str, purpose: OTPPurpose) -> bool:
        try:
            delivered = await asyncio.wait_for(
                asyncio.to_thread(self.mailer.send_otp, email, code, purpose),
                timeout=self.settings.mail_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.error(
                "otp_mail_timeout",
                email_hash=email_hash(email),
                timeout_seconds=self.settings.mail_timeout_seconds,
            )
            return False
        except Exception as exc:
            self.logger.error(
                "otp_mail_failed",
                email_hash=email_hash(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            self.logger.warning("otp_mail_not_delivered", email_hash=email_hash(email))
        return bool(delivered)

    async def request_code(
        self, email: str, purpose: OTPPurpose | str = OTPPurpose.LOGIN
    ) -> CodeRequestResult:
        email = self._normalize_email(email)
        purpose = parse_purpose(purpose)
        user = await self._load_user_for_auth(email=email)

        # Opportunistic sweep; a failure here must not block issuing a code
        try:
            await self.otp.cleanup()
        except Exception as exc:
            self.logger.warning("otp_cleanup_failed", error=str(exc))

        challenge = await self.otp.issue(email, purpose, user=user)
        delivered = await self._dispatch_code(email, challenge.code, purpose)
        self.logger.info(
            "otp_code_requested",
            user_id=user.id,
            email_hash=email_hash(email),
            purpose=purpose.value,
            delivered=delivered,
        )
        return CodeRequestResult(
            email=email,
            purpose=purpose,
            challenge_id=challenge.id,
            expires_at=challenge.expires_at,
            delivered=delivered,
        )

    async def redeem_code(
        self,
        email: str,
        code: str,
        purpose: OTPPurpose | str = OTPPurpose.LOGIN,
        *,
        user_agent: Optional[str] = None,
        platform: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        email = self._normalize_email(email)
        purpose = parse_purpose(purpose)
        if not self.otp.is_valid_format(code):
            raise InvalidInputError(
                f"code must be exactly {self.otp.code_length} digits",
                detail={"field": "code"},
            )
        user = await self._load_user_for_auth(email=email)

        redemption = await self.otp.redeem(email, code, purpose)
        await self._call(self.store.update_last_login, user.id, redemption.verified_at)
        user.last_login_at = redemption.verified_at
        user.email_verified = True

        access = self.tokens.issue_access_token(user.id, user.email, user.role)
        refresh = self.tokens.issue_refresh_token(user.id, user.email)
        session = await self.sessions.create(
            user.id,
            refresh.token,
            device_info={"user_agent": user_agent, "platform": platform},
            source_address=ip_addr,
            ttl=self.settings.refresh_token_ttl,
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            purpose=purpose.value,
        )
        return LoginResult(
            user=user,
            session=session,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
        )

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """Mint a new access token; the refresh token itself is not rotated."""
        claims = self.tokens.verify(refresh_token, token_type=REFRESH)
        session = await self.sessions.find_active(refresh_token)
        if session is None:
            raise SessionInvalidError()
        if session.user_id != claims.user_id:
            self.logger.warning(
                "refresh_subject_mismatch",
                session_id=session.id,
                subject_user_id=claims.user_id,
            )
            raise SessionInvalidError()
        await self.sessions.touch(session.id)

        user = await self._load_user_for_auth(user_id=claims.user_id)
        access = self.tokens.issue_access_token(user.id, user.email, user.role)
        self.logger.info("access_token_refreshed", user_id=user.id, session_id=session.id)
        return RefreshResult(
            user=user,
            access_token=access.token,
            access_expires_at=access.expires_at,
        )

    async def logout(self, refresh_token: str) -> None:
        """Deactivate the session behind ``refresh_token``; unknown tokens are ignored."""
        if not refresh_token:
            return
        await self.sessions.deactivate(refresh_token)

    async def logout_all(self, user_id: str) -> int:
        return await self.sessions.deactivate_all(user_id)

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_active(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        if not await self.sessions.deactivate_for_user(user_id, session_id):
            raise NotFoundError("session not found", detail={"session_id": session_id})

    async def get_profile(self, user_id: str) -> User:
        return await self._load_user_for_auth(user_id=user_id)

    async def cleanup_challenges(self) -> int:
        return await self.otp.cleanup()

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise TokenInvalidError("Missing bearer token")
        claims = self.tokens.verify(token, token_type=ACCESS)
        # Tokens are stateless, so the account is re-checked on every request
        user = await self._load_user_for_auth(user_id=claims.user_id)
        if required_role and not self._role_allows(user.role, required_role):
            self.logger.warning(
                "authorization_denied",
                user_id=user.id,
                role=user.role,
                required_role=required_role,
            )
            raise ForbiddenError("insufficient role", detail={"required_role": required_role})
        return AuthContext(user_id=user.id, email=user.email, role=user.role)

    def _role_allows(self, role: str, required: str) -> bool:
        if role not in _ROLE_RANK or required not in _ROLE_RANK:
            return False
        return _ROLE_RANK[role] >= _ROLE_RANK[required]

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
