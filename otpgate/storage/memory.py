from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from otpgate.logging import get_logger
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import (
    AuditLogEntry,
    OTPChallenge,
    OTPPurpose,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and single-node development.

    Every public method takes ``_data_lock`` for its whole body, which makes
    each call atomic with respect to the others. Returned records are copies;
    mutating them does not write through.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.challenges: List[OTPChallenge] = []
        self.sessions: Dict[str, Session] = {}
        self.audit_logs: List[AuditLogEntry] = []
        self._employee_seq = 0
        # RLock so helpers can re-enter from within a locked method
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
        created_by: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if employee_id and any(
                existing.employee_id == employee_id for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "employee id already exists", {"field": "employee_id"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
                created_by=created_by,
                employee_id=employee_id,
            )
            self.users[user.id] = user
            return replace(user)

    def next_employee_sequence(self) -> int:
        with self._data_lock:
            self._employee_seq += 1
            return self._employee_seq

    def user_statistics(self) -> Dict[str, int]:
        with self._data_lock:
            users = list(self.users.values())
            live = [u for u in users if not u.is_deleted]
            return {
                "total_users": len(users),
                "active_users": sum(1 for u in live if u.is_active),
                "inactive_users": sum(1 for u in live if not u.is_active),
                "deleted_users": len(users) - len(live),
                "admin_created_users": sum(1 for u in users if u.created_by),
                "self_registered_users": sum(1 for u in users if not u.created_by),
                "admin_users": sum(1 for u in users if u.role == "admin"),
                "manager_users": sum(1 for u in users if u.role == "manager"),
                "regular_users": sum(1 for u in users if u.role == "user"),
            }

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_last_login(self, user_id: str, at: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.last_login_at = at
            user.email_verified = True
            user.updated_at = at
            return True

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            return replace(user)

    def soft_delete_user(
        self, user_id: str, deleted_by: str, at: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return None
            user.deleted_at = at
            user.deleted_by = deleted_by
            user.is_active = False
            user.updated_at = at
            return replace(user)

    def restore_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is None:
                return None
            user.deleted_at = None
            user.deleted_by = None
            user.is_active = True
            user.updated_at = utcnow()
            return replace(user)

    # otp challenges
    def create_challenge(self, challenge: OTPChallenge) -> OTPChallenge:
        with self._data_lock:
            self.challenges.append(replace(challenge))
            return replace(challenge)

    def get_challenge(self, challenge_id: str) -> Optional[OTPChallenge]:
        with self._data_lock:
            found = next((c for c in self.challenges if c.id == challenge_id), None)
            return replace(found) if found else None

    def find_valid_challenge(
        self, email: str, code: str, purpose: OTPPurpose, now: datetime
    ) -> Optional[OTPChallenge]:
        with self._data_lock:
            candidates = [
                c
                for c in reversed(self.challenges)
                if c.email == email
                and c.code == code
                and c.purpose == purpose
                and c.is_redeemable(now)
            ]
            if not candidates:
                return None
            # reversed() above makes the later insert win created_at ties
            return replace(max(candidates, key=lambda c: c.created_at))

    def mark_challenge_verified(self, challenge_id: str, now: datetime) -> bool:
        with self._data_lock:
            for challenge in self.challenges:
                if challenge.id == challenge_id and challenge.is_redeemable(now):
                    challenge.is_verified = True
                    return True
            return False

    def increment_challenge_attempts(
        self, email: str, code: str, purpose: OTPPurpose
    ) -> int:
        with self._data_lock:
            touched = 0
            for challenge in self.challenges:
                if (
                    challenge.email == email
                    and challenge.code == code
                    and challenge.purpose == purpose
                    and not challenge.is_verified
                ):
                    challenge.attempts += 1
                    touched += 1
            return touched

    def delete_stale_challenges(self, now: datetime) -> int:
        with self._data_lock:
            before = len(self.challenges)
            self.challenges = [
                c for c in self.challenges if c.expires_at >= now and not c.is_verified
            ]
            return before - len(self.challenges)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session, device_info=dict(session.device_info))
            return replace(session)

    def find_active_session_by_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.refresh_token_hash == token_hash and sess.is_usable(now):
                    return replace(sess)
            return None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.last_used_at = at
            return True

    def deactivate_session(self, token_hash: str) -> bool:
        with self._data_lock:
            changed = False
            for sess in self.sessions.values():
                if sess.refresh_token_hash == token_hash and sess.is_active:
                    sess.is_active = False
                    changed = True
            return changed

    def deactivate_all_sessions_for_user(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_active:
                    sess.is_active = False
                    count += 1
            return count

    def deactivate_user_session(self, user_id: str, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id or not sess.is_active:
                return False
            sess.is_active = False
            return True

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_usable(now)
            ]
        return sorted(active, key=lambda s: s.last_used_at or s.created_at, reverse=True)

    # audit
    def record_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_logs.append(replace(entry))
            return replace(entry)

    def list_audit_logs(self, resource_id: str, limit: int = 50) -> List[AuditLogEntry]:
        with self._data_lock:
            matching = [replace(e) for e in self.audit_logs if e.resource_id == resource_id]
        matching.sort(key=lambda e: e.created_at, reverse=True)
        return matching[:limit]
