from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from otpgate.config import Settings
from otpgate.logging import get_logger
from otpgate.service.timeouts import call_store
from otpgate.storage.common import CredentialStore, normalize_ip
from otpgate.storage.models import AuditLogEntry, utcnow

logger = get_logger(__name__)

USER_CREATED = "USER_CREATED"
USER_ACTIVATED = "USER_ACTIVATED"
USER_DEACTIVATED = "USER_DEACTIVATED"
USER_DELETED = "USER_DELETED"
USER_RESTORED = "USER_RESTORED"

AUDIT_ACTIONS = (
    USER_CREATED,
    USER_ACTIVATED,
    USER_DEACTIVATED,
    USER_DELETED,
    USER_RESTORED,
)


class AuditService:
    """Append-only record of admin actions.

    Recording is best-effort: a storage failure is logged and never fails the
    action being audited. Unknown action names are rejected up front.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    async def record(
        self,
        admin_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        *,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"unknown audit action: {action}")
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            admin_id=admin_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_values=old_values,
            new_values=new_values,
            ip_addr=normalize_ip(ip_addr),
            user_agent=user_agent,
            created_at=utcnow(),
        )
        try:
            saved = await call_store(
                self.store.record_audit_log,
                entry,
                timeout=self.settings.store_timeout_seconds,
            )
        except Exception as exc:
            self.logger.error(
                "audit_log_failed",
                action=action,
                admin_id=admin_id,
                resource_type=resource_type,
                resource_id=resource_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        self.logger.info(
            "audit_log_recorded",
            action=action,
            admin_id=admin_id,
            resource_id=resource_id,
        )
        return saved

    async def list_for_resource(self, resource_id: str, limit: int = 50) -> List[AuditLogEntry]:
        return await call_store(
            self.store.list_audit_logs,
            resource_id,
            limit,
            timeout=self.settings.store_timeout_seconds,
        )
