from __future__ import annotations

from typing import Any, Dict, List, Optional

from otpgate.config import Settings
from otpgate.logging import email_hash, get_logger
from otpgate.service.audit import (
    USER_ACTIVATED,
    USER_CREATED,
    USER_DEACTIVATED,
    USER_DELETED,
    USER_RESTORED,
    AuditService,
)
from otpgate.service.errors import (
    BadRequestError,
    ConflictError,
    InvalidInputError,
    UserNotFoundError,
)
from otpgate.service.sessions import SessionManager
from otpgate.service.timeouts import call_store
from otpgate.service.validation import normalize_email
from otpgate.storage.common import CredentialStore
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import ROLES, AuditLogEntry, User, utcnow

logger = get_logger(__name__)

RESOURCE_USER = "user"
_EMPLOYEE_ID_RETRIES = 5


def _user_snapshot(user: User) -> Dict[str, Any]:
    return {
        "email": user.email,
        "role": user.role,
        "employee_id": user.employee_id,
        "is_active": user.is_active,
        "deleted_at": user.deleted_at.isoformat() if user.deleted_at else None,
    }


class AdminService:
    """User lifecycle operations performed by administrators.

    Every successful mutation leaves an audit entry. Deactivation and soft
    deletion also end the target's refresh sessions, so existing refresh
    tokens stop working immediately.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        sessions: SessionManager,
        audit: AuditService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.sessions = sessions
        self.audit = audit
        self.logger = logger

    async def _call(self, func, *args, **kwargs):
        return await call_store(
            func, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    async def _require_user(self, user_id: str) -> User:
        user = await self._call(self.store.get_user_by_id, user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    async def get_user(self, user_id: str) -> User:
        return await self._require_user(user_id)

    async def _next_employee_id(self) -> str:
        """Format the next sequence value as PREFIX-YYYY-Annn."""
        seq = await self._call(self.store.next_employee_sequence)
        return f"{self.settings.employee_id_prefix}-{utcnow().year}-A{seq:03d}"

    async def create_user(
        self,
        email: str,
        role: str = "user",
        *,
        actor: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        try:
            email = normalize_email(email)
        except ValueError as exc:
            raise InvalidInputError(str(exc), detail={"field": "email"})
        if role not in ROLES:
            raise InvalidInputError(
                "role must be one of: " + ", ".join(ROLES), detail={"field": "role"}
            )

        existing = await self._call(self.store.get_user_by_email, email)
        if existing is not None:
            reason = "user_deleted_exists" if existing.is_deleted else "user_exists"
            raise ConflictError("user already exists", detail={"reason": reason})
        user = None
        for attempt in range(1, _EMPLOYEE_ID_RETRIES + 1):
            employee_id = await self._next_employee_id()
            try:
                user = await self._call(
                    self.store.create_user,
                    email,
                    role=role,
                    is_active=True,
                    email_verified=False,
                    created_by=actor,
                    employee_id=employee_id,
                )
                break
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "employee_id":
                    # Lost a race with a concurrent create for the same address
                    raise ConflictError(
                        "user already exists", detail={"reason": "user_exists"}
                    )
                self.logger.warning(
                    "employee_id_collision", employee_id=employee_id, attempt=attempt
                )
        if user is None:
            raise ConflictError(
                "could not allocate a unique employee id",
                detail={"reason": "employee_id_exhausted"},
            )

        self.logger.info(
            "admin_user_created",
            admin_id=actor,
            user_id=user.id,
            email_hash=email_hash(email),
            role=role,
            employee_id=user.employee_id,
        )
        await self.audit.record(
            actor,
            USER_CREATED,
            RESOURCE_USER,
            user.id,
            new_values=_user_snapshot(user),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return user

    async def set_user_active(
        self,
        user_id: str,
        is_active: bool,
        *,
        actor: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = await self._require_user(user_id)
        if user.is_deleted:
            raise BadRequestError("cannot change status of a deleted user")
        if user.id == actor and not is_active:
            raise BadRequestError("cannot deactivate your own account")

        updated = await self._call(self.store.set_user_active, user_id, is_active)
        if updated is None:
            raise UserNotFoundError()
        if not is_active:
            await self.sessions.deactivate_all(user_id)

        self.logger.info(
            "admin_user_status_changed",
            admin_id=actor,
            user_id=user_id,
            is_active=is_active,
        )
        await self.audit.record(
            actor,
            USER_ACTIVATED if is_active else USER_DEACTIVATED,
            RESOURCE_USER,
            user_id,
            old_values={"is_active": user.is_active},
            new_values={"is_active": is_active},
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return updated

    async def soft_delete_user(
        self,
        user_id: str,
        *,
        actor: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = await self._require_user(user_id)
        if user.id == actor:
            raise BadRequestError("cannot delete your own account")
        if user.is_deleted:
            raise BadRequestError("user is already deleted")

        deleted = await self._call(self.store.soft_delete_user, user_id, actor, utcnow())
        if deleted is None:
            raise BadRequestError("user is already deleted")
        await self.sessions.deactivate_all(user_id)

        self.logger.info("admin_user_deleted", admin_id=actor, user_id=user_id)
        await self.audit.record(
            actor,
            USER_DELETED,
            RESOURCE_USER,
            user_id,
            old_values=_user_snapshot(user),
            new_values=_user_snapshot(deleted),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return deleted

    async def restore_user(
        self,
        user_id: str,
        *,
        actor: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = await self._require_user(user_id)
        if not user.is_deleted:
            raise BadRequestError("user is not deleted")

        restored = await self._call(self.store.restore_user, user_id)
        if restored is None:
            raise BadRequestError("user is not deleted")

        self.logger.info("admin_user_restored", admin_id=actor, user_id=user_id)
        await self.audit.record(
            actor,
            USER_RESTORED,
            RESOURCE_USER,
            user_id,
            old_values=_user_snapshot(user),
            new_values=_user_snapshot(restored),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return restored

    async def list_user_audit_logs(self, user_id: str, limit: int = 50) -> List[AuditLogEntry]:
        await self._require_user(user_id)
        return await self.audit.list_for_resource(user_id, limit)

    async def user_statistics(self) -> Dict[str, Any]:
        counts = await self._call(self.store.user_statistics)
        return {
            "statistics": {
                "total_users": counts.get("total_users", 0),
                "active_users": counts.get("active_users", 0),
                "inactive_users": counts.get("inactive_users", 0),
                "deleted_users": counts.get("deleted_users", 0),
                "admin_created_users": counts.get("admin_created_users", 0),
                "self_registered_users": counts.get("self_registered_users", 0),
                "users_by_role": {
                    "admin": counts.get("admin_users", 0),
                    "manager": counts.get("manager_users", 0),
                    "user": counts.get("regular_users", 0),
                },
            },
            "generated_at": utcnow(),
        }
