"""Unit tests for admin user lifecycle and audit logging."""

import pytest

from otpgate.service.admin import AdminService
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
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import utcnow


@pytest.fixture
def sessions(memory_store, settings):
    return SessionManager(memory_store, settings)


@pytest.fixture
def admin_service(memory_store, settings, sessions):
    audit = AuditService(memory_store, settings)
    return AdminService(memory_store, settings, sessions=sessions, audit=audit)


@pytest.fixture
def admin(memory_store):
    return memory_store.create_user("admin@example.com", role="admin")


def _actions(memory_store, resource_id):
    return [e.action for e in memory_store.audit_logs if e.resource_id == resource_id]


class TestCreateUser:
    """Tests for admin user creation."""

    async def test_create_user_records_audit(self, admin_service, memory_store, admin):
        user = await admin_service.create_user(
            "New.User@Example.com", "manager", actor=admin.id, ip_addr="192.0.2.1", user_agent="ua"
        )

        assert user.email == "new.user@example.com"
        assert user.role == "manager"
        assert user.created_by == admin.id
        entry = memory_store.audit_logs[-1]
        assert entry.action == USER_CREATED
        assert entry.admin_id == admin.id
        assert entry.ip_addr == "192.0.2.1"
        assert entry.new_values["role"] == "manager"

    async def test_duplicate_email_conflicts(self, admin_service, admin):
        await admin_service.create_user("dup@example.com", actor=admin.id)
        with pytest.raises(ConflictError) as excinfo:
            await admin_service.create_user("DUP@example.com", actor=admin.id)
        assert excinfo.value.detail["reason"] == "user_exists"

    async def test_deleted_duplicate_has_distinct_reason(self, admin_service, admin):
        user = await admin_service.create_user("gone@example.com", actor=admin.id)
        await admin_service.soft_delete_user(user.id, actor=admin.id)

        with pytest.raises(ConflictError) as excinfo:
            await admin_service.create_user("gone@example.com", actor=admin.id)
        assert excinfo.value.detail["reason"] == "user_deleted_exists"

    async def test_invalid_role(self, admin_service, admin):
        with pytest.raises(InvalidInputError):
            await admin_service.create_user("x@example.com", "root", actor=admin.id)


class TestStatusChanges:
    """Tests for activation, deactivation, deletion and restore."""

    async def test_deactivation_ends_sessions(self, admin_service, sessions, memory_store, admin):
        user = memory_store.create_user("u@example.com")
        await sessions.create(user.id, "refresh-token")

        updated = await admin_service.set_user_active(user.id, False, actor=admin.id)

        assert updated.is_active is False
        assert await sessions.find_active("refresh-token") is None
        assert _actions(memory_store, user.id) == [USER_DEACTIVATED]

        await admin_service.set_user_active(user.id, True, actor=admin.id)
        assert _actions(memory_store, user.id) == [USER_DEACTIVATED, USER_ACTIVATED]

    async def test_cannot_deactivate_self(self, admin_service, admin):
        with pytest.raises(BadRequestError):
            await admin_service.set_user_active(admin.id, False, actor=admin.id)

    async def test_unknown_user(self, admin_service, admin):
        with pytest.raises(UserNotFoundError):
            await admin_service.set_user_active("missing", False, actor=admin.id)

    async def test_soft_delete_and_restore(self, admin_service, sessions, memory_store, admin):
        user = memory_store.create_user("u@example.com")
        await sessions.create(user.id, "refresh-token")

        deleted = await admin_service.soft_delete_user(user.id, actor=admin.id)
        assert deleted.deleted_at is not None
        assert deleted.deleted_by == admin.id
        assert await sessions.find_active("refresh-token") is None

        with pytest.raises(BadRequestError):
            await admin_service.soft_delete_user(user.id, actor=admin.id)
        with pytest.raises(BadRequestError):
            await admin_service.set_user_active(user.id, True, actor=admin.id)

        restored = await admin_service.restore_user(user.id, actor=admin.id)
        assert restored.deleted_at is None
        assert restored.is_active is True
        assert _actions(memory_store, user.id) == [USER_DELETED, USER_RESTORED]

    async def test_cannot_delete_self(self, admin_service, admin):
        with pytest.raises(BadRequestError):
            await admin_service.soft_delete_user(admin.id, actor=admin.id)

    async def test_restore_requires_deleted_user(self, admin_service, memory_store, admin):
        user = memory_store.create_user("u@example.com")
        with pytest.raises(BadRequestError):
            await admin_service.restore_user(user.id, actor=admin.id)


class TestAuditFailures:
    """Audit failures never fail the audited action."""

    async def test_audit_store_failure_is_swallowed(self, admin_service, memory_store, admin):
        def broken(entry):
            raise RuntimeError("audit table locked")

        memory_store.record_audit_log = broken

        user = await admin_service.create_user("u@example.com", actor=admin.id)

        assert memory_store.get_user_by_id(user.id) is not None
        assert memory_store.audit_logs == []

    async def test_list_user_audit_logs_newest_first(self, admin_service, memory_store, admin):
        user = await admin_service.create_user("u@example.com", actor=admin.id)
        await admin_service.set_user_active(user.id, False, actor=admin.id)

        entries = await admin_service.list_user_audit_logs(user.id)

        assert [e.action for e in entries][0] in {USER_CREATED, USER_DEACTIVATED}
        assert {e.action for e in entries} == {USER_CREATED, USER_DEACTIVATED}

    async def test_unknown_action_is_rejected(self, memory_store, settings, admin):
        audit = AuditService(memory_store, settings)

        with pytest.raises(ValueError):
            await audit.record(admin.id, "USER_PROMOTED", "user", "some-id")
        assert memory_store.audit_logs == []


class TestEmployeeIds:
    """Employee ids are assigned to admin-created accounts."""

    async def test_ids_follow_prefix_year_sequence(self, admin_service, admin):
        first = await admin_service.create_user("one@example.com", actor=admin.id)
        second = await admin_service.create_user("two@example.com", actor=admin.id)

        year = utcnow().year
        assert first.employee_id == f"LHWK-{year}-A001"
        assert second.employee_id == f"LHWK-{year}-A002"

    async def test_prefix_comes_from_settings(self, memory_store, settings, sessions, admin):
        custom = settings.model_copy(update={"employee_id_prefix": "ACME"})
        service = AdminService(
            memory_store, custom, sessions=sessions, audit=AuditService(memory_store, custom)
        )

        user = await service.create_user("acme@example.com", actor=admin.id)

        assert user.employee_id.startswith("ACME-")

    async def test_collision_retries_with_next_sequence(self, admin_service, memory_store, admin):
        year = utcnow().year
        memory_store.create_user("taken@example.com", employee_id=f"LHWK-{year}-A001")

        user = await admin_service.create_user("fresh@example.com", actor=admin.id)

        assert user.employee_id == f"LHWK-{year}-A002"

    async def test_store_rejects_duplicate_employee_id(self, memory_store):
        memory_store.create_user("a@example.com", employee_id="LHWK-2025-A100")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("b@example.com", employee_id="LHWK-2025-A100")
        assert excinfo.value.detail["field"] == "employee_id"

    async def test_audit_snapshot_includes_employee_id(self, admin_service, memory_store, admin):
        user = await admin_service.create_user("snap@example.com", actor=admin.id)

        assert memory_store.audit_logs[-1].new_values["employee_id"] == user.employee_id


class TestStatistics:
    """Tests for the user statistics aggregate."""

    async def test_counts_by_state_origin_and_role(self, admin_service, memory_store, admin):
        await admin_service.create_user("m@example.com", "manager", actor=admin.id)
        inactive = await admin_service.create_user("i@example.com", actor=admin.id)
        await admin_service.set_user_active(inactive.id, False, actor=admin.id)
        gone = await admin_service.create_user("d@example.com", actor=admin.id)
        await admin_service.soft_delete_user(gone.id, actor=admin.id)

        report = await admin_service.user_statistics()

        stats = report["statistics"]
        assert stats["total_users"] == 4
        assert stats["active_users"] == 2
        assert stats["inactive_users"] == 1
        assert stats["deleted_users"] == 1
        assert stats["admin_created_users"] == 3
        assert stats["self_registered_users"] == 1
        assert stats["users_by_role"] == {"admin": 1, "manager": 1, "user": 2}
        assert report["generated_at"] is not None
