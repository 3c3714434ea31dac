from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from otpgate.config import Settings
from otpgate.logging import get_logger
from otpgate.service.timeouts import call_store
from otpgate.storage.common import CredentialStore, normalize_ip
from otpgate.storage.models import Session

logger = get_logger(__name__)


def hash_refresh_token(refresh_token: str) -> str:
    """Sessions are keyed by this digest; raw refresh tokens are never stored."""
    return hashlib.sha256(refresh_token.encode()).hexdigest()


class SessionManager:
    """Tracks which refresh tokens are still honourable."""

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _call(self, func, *args):
        return await call_store(func, *args, timeout=self.settings.store_timeout_seconds)

    async def create(
        self,
        user_id: str,
        refresh_token: str,
        device_info: Optional[Dict[str, Any]] = None,
        source_address: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> Session:
        session = Session.new(
            user_id,
            hash_refresh_token(refresh_token),
            ttl or self.settings.refresh_token_ttl,
            device_info={k: v for k, v in (device_info or {}).items() if v is not None},
            ip_addr=normalize_ip(source_address),
            now=self._now(),
        )
        await self._call(self.store.create_session, session)
        self.logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def find_active(self, refresh_token: str) -> Optional[Session]:
        return await self._call(
            self.store.find_active_session_by_token,
            hash_refresh_token(refresh_token),
            self._now(),
        )

    async def touch(self, session_id: str) -> None:
        await self._call(self.store.touch_session, session_id, self._now())

    async def deactivate(self, refresh_token: str) -> bool:
        """Single-session logout. Unknown or already inactive tokens are a no-op."""
        changed = await self._call(
            self.store.deactivate_session, hash_refresh_token(refresh_token)
        )
        if changed:
            self.logger.info("session_deactivated")
        return changed

    async def deactivate_all(self, user_id: str) -> int:
        count = await self._call(self.store.deactivate_all_sessions_for_user, user_id)
        self.logger.info("sessions_deactivated_for_user", user_id=user_id, count=count)
        return count

    async def deactivate_for_user(self, user_id: str, session_id: str) -> bool:
        changed = await self._call(self.store.deactivate_user_session, user_id, session_id)
        if changed:
            self.logger.info("session_revoked", user_id=user_id, session_id=session_id)
        return changed

    async def list_active(self, user_id: str) -> List[Session]:
        return await self._call(self.store.list_active_sessions, user_id, self._now())
