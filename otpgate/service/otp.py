from __future__ import annotations

import hmac
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from otpgate.config import Settings
from otpgate.logging import email_hash, get_logger
from otpgate.service.errors import (
    InvalidInputError,
    InvalidOrExpiredOTPError,
    UserInactiveError,
    UserNotFoundError,
)
from otpgate.service.timeouts import call_store
from otpgate.service.validation import normalize_email
from otpgate.storage.common import CredentialStore
from otpgate.storage.models import OTPChallenge, OTPPurpose, User

logger = get_logger(__name__)


def parse_purpose(value: OTPPurpose | str) -> OTPPurpose:
    try:
        return OTPPurpose(value)
    except ValueError:
        raise InvalidInputError(
            "purpose must be one of: " + ", ".join(p.value for p in OTPPurpose),
            detail={"field": "purpose"},
        )


def canonical_email(email: str) -> str:
    try:
        return normalize_email(email)
    except ValueError as exc:
        raise InvalidInputError(str(exc), detail={"field": "email"})


def ensure_user_can_authenticate(user: Optional[User]) -> User:
    """Soft-deleted accounts are reported exactly like missing ones."""
    if user is None or user.is_deleted:
        raise UserNotFoundError()
    if not user.is_active:
        raise UserInactiveError()
    return user


@dataclass
class RedemptionResult:
    challenge: OTPChallenge
    verified_at: datetime


class OTPChallengeManager:
    """Issues and redeems numeric one-time codes bound to (email, purpose).

    A challenge is redeemable while it is unverified, unexpired and has
    attempts left. Redemption picks the most recently issued redeemable
    challenge whose code matches. A failed redemption charges one attempt to
    each unverified challenge matching (email, code, purpose). Emails are
    canonicalized before any lookup.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _call(self, func, *args):
        return await call_store(func, *args, timeout=self.settings.store_timeout_seconds)

    @property
    def code_length(self) -> int:
        return self.settings.otp_length

    def generate_code(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.code_length))

    def is_master_code(self, code: str) -> bool:
        master = self.settings.master_otp_code
        if not master or not isinstance(code, str):
            return False
        return hmac.compare_digest(master.encode(), code.encode())

    def is_valid_format(self, code: str) -> bool:
        if not isinstance(code, str):
            return False
        if self.is_master_code(code):
            return True
        # isdigit() accepts non-ASCII digits, hence the explicit set
        return len(code) == self.code_length and all(c in string.digits for c in code)

    async def issue(
        self,
        email: str,
        purpose: OTPPurpose | str = OTPPurpose.LOGIN,
        *,
        user: Optional[User] = None,
    ) -> OTPChallenge:
        purpose = parse_purpose(purpose)
        email = canonical_email(email)
        if user is None:
            user = await self._call(self.store.get_user_by_email, email)
        ensure_user_can_authenticate(user)

        challenge = OTPChallenge.new(
            email,
            self.generate_code(),
            purpose,
            ttl=timedelta(minutes=self.settings.otp_expiry_minutes),
            max_attempts=self.settings.max_otp_attempts,
            now=self._now(),
        )
        await self._call(self.store.create_challenge, challenge)
        self.logger.info(
            "otp_challenge_issued",
            email_hash=email_hash(email),
            purpose=purpose.value,
            challenge_id=challenge.id,
            expires_at=challenge.expires_at.isoformat(),
        )
        return challenge

    async def redeem(
        self,
        email: str,
        code: str,
        purpose: OTPPurpose | str = OTPPurpose.LOGIN,
    ) -> RedemptionResult:
        purpose = parse_purpose(purpose)
        email = canonical_email(email)
        if not self.is_valid_format(code):
            raise InvalidInputError(
                f"code must be exactly {self.code_length} digits",
                detail={"field": "code"},
            )

        now = self._now()
        challenge = await self._call(
            self.store.find_valid_challenge, email, code, purpose, now
        )
        # A concurrent redeem may have won between lookup and update
        if challenge is not None and await self._call(
            self.store.mark_challenge_verified, challenge.id, now
        ):
            challenge.is_verified = True
            self.logger.info(
                "otp_challenge_verified",
                email_hash=email_hash(email),
                purpose=purpose.value,
                challenge_id=challenge.id,
                master_code=self.is_master_code(code),
            )
            return RedemptionResult(challenge=challenge, verified_at=now)

        burned = await self._call(
            self.store.increment_challenge_attempts, email, code, purpose
        )
        self.logger.warning(
            "otp_challenge_rejected",
            email_hash=email_hash(email),
            purpose=purpose.value,
            challenges_charged=burned,
        )
        raise InvalidOrExpiredOTPError()

    async def cleanup(self) -> int:
        """Delete expired and already-verified challenges."""
        removed = await self._call(self.store.delete_stale_challenges, self._now())
        if removed:
            self.logger.info("otp_challenges_cleaned", removed=removed)
        return removed
