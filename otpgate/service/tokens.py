from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from otpgate.config import Settings
from otpgate.logging import get_logger
from otpgate.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    jti: str
    role: Optional[str] = None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


class TokenIssuer:
    """Mints and verifies HS256 JWTs.

    The signing secret is copied out of settings at construction and never
    changes afterwards. Verification is pure: it checks structure, algorithm,
    signature, issuer, audience and expiry, and never looks at storage.
    """

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = settings.access_token_ttl
        self.refresh_ttl = settings.refresh_token_ttl
        self.leeway_seconds = settings.jwt_leeway_seconds

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _mint(self, claims: dict[str, Any], ttl_seconds: float) -> IssuedToken:
        now = int(time.time())
        exp = now + int(ttl_seconds)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": exp,
            # Unique per token so two logins in the same second never collide
            "jti": str(uuid.uuid4()),
            **claims,
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def issue_access_token(self, user_id: str, email: str, role: str) -> IssuedToken:
        return self._mint(
            {"sub": user_id, "email": email, "role": role, "token_type": ACCESS},
            self.access_ttl.total_seconds(),
        )

    def issue_refresh_token(self, user_id: str, email: str) -> IssuedToken:
        return self._mint(
            {"sub": user_id, "email": email, "token_type": REFRESH},
            self.refresh_ttl.total_seconds(),
        )

    def verify(self, token: str, *, token_type: Optional[str] = None) -> TokenClaims:
        """Return the token's claims or raise TokenInvalidError / TokenExpiredError."""
        if not isinstance(token, str) or not token:
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError()

        # Pin the algorithm to rule out alg-confusion tricks
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError()

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalidError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()

        if payload.get("iss") != self.issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalidError()
        if token_type and payload.get("token_type") != token_type:
            raise TokenInvalidError()

        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError()
        if exp_ts <= time.time() - self.leeway_seconds:
            raise TokenExpiredError()

        user_id = payload.get("sub")
        email = payload.get("email")
        if not isinstance(user_id, str) or not isinstance(email, str):
            raise TokenInvalidError()
        return TokenClaims(
            user_id=user_id,
            email=email,
            role=payload.get("role"),
            token_type=payload.get("token_type", ""),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=str(payload.get("jti", "")),
        )
