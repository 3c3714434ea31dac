"""Storage contract and helpers shared by the memory and postgres backends."""

from __future__ import annotations

import json
from datetime import datetime
from ipaddress import ip_address
from typing import Any, Dict, List, Optional, Protocol

from otpgate.storage.models import (
    AuditLogEntry,
    OTPChallenge,
    OTPPurpose,
    Session,
    User,
)


class CredentialStore(Protocol):
    """Operations the authentication core needs from persistence.

    Each call is atomic. Lookups signal "not found" with ``None`` and
    conditional updates with ``False``/``0``; backend outages raise
    :class:`~otpgate.storage.errors.StorageUnavailable`.
    """

    def ping(self) -> bool: ...

    # users
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    def update_last_login(self, user_id: str, at: datetime) -> bool: ...

    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
        created_by: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> User: ...

    def next_employee_sequence(self) -> int: ...

    def user_statistics(self) -> Dict[str, int]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def soft_delete_user(
        self, user_id: str, deleted_by: str, at: datetime
    ) -> Optional[User]: ...

    def restore_user(self, user_id: str) -> Optional[User]: ...

    # otp challenges
    def create_challenge(self, challenge: OTPChallenge) -> OTPChallenge: ...

    def find_valid_challenge(
        self, email: str, code: str, purpose: OTPPurpose, now: datetime
    ) -> Optional[OTPChallenge]: ...

    def mark_challenge_verified(self, challenge_id: str, now: datetime) -> bool: ...

    def increment_challenge_attempts(
        self, email: str, code: str, purpose: OTPPurpose
    ) -> int: ...

    def delete_stale_challenges(self, now: datetime) -> int: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def find_active_session_by_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> bool: ...

    def deactivate_session(self, token_hash: str) -> bool: ...

    def deactivate_all_sessions_for_user(self, user_id: str) -> int: ...

    def deactivate_user_session(self, user_id: str, session_id: str) -> bool: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    # audit
    def record_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_audit_logs(self, resource_id: str, limit: int = 50) -> List[AuditLogEntry]: ...


def normalize_ip(raw_ip: Any) -> Optional[str]:
    """Return a canonical textual IP address, or None if it does not parse."""
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return None


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column that may come back as text or as a dict."""
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None
