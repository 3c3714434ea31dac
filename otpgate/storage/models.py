from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

ROLES = ("admin", "manager", "user")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPPurpose(str, Enum):
    """What a one-time code may be redeemed for."""

    LOGIN = "login"
    REGISTRATION = "registration"


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    is_active: bool = True
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None
    employee_id: Optional[str] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class OTPChallenge:
    id: str
    email: str
    code: str
    purpose: OTPPurpose
    created_at: datetime
    expires_at: datetime
    is_verified: bool = False
    attempts: int = 0
    max_attempts: int = 3

    @classmethod
    def new(
        cls,
        email: str,
        code: str,
        purpose: OTPPurpose,
        *,
        ttl: timedelta,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> "OTPChallenge":
        issued_at = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            code=code,
            purpose=OTPPurpose(purpose),
            created_at=issued_at,
            expires_at=issued_at + ttl,
            max_attempts=max_attempts,
        )

    def is_redeemable(self, now: datetime) -> bool:
        return (
            not self.is_verified
            and self.expires_at > now
            and self.attempts < self.max_attempts
        )


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    device_info: Dict[str, Any] = field(default_factory=dict)
    ip_addr: Optional[str] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        ttl: timedelta,
        *,
        device_info: Optional[Dict[str, Any]] = None,
        ip_addr: str | None = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=created,
            expires_at=created + ttl,
            device_info=dict(device_info or {}),
            ip_addr=ip_addr,
            last_used_at=created,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass
class AuditLogEntry:
    id: str
    admin_id: str
    action: str
    resource_type: str
    resource_id: str
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
