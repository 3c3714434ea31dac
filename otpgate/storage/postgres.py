from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from otpgate.logging import get_logger
from otpgate.storage.common import parse_json_meta
from otpgate.storage.errors import ConstraintViolation, StorageUnavailable
from otpgate.storage.models import (
    AuditLogEntry,
    OTPChallenge,
    OTPPurpose,
    Session,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_by UUID REFERENCES app_user(id),
        employee_id TEXT UNIQUE,
        deleted_at TIMESTAMPTZ,
        deleted_by UUID REFERENCES app_user(id)
    )
    """,
    "ALTER TABLE app_user ADD COLUMN IF NOT EXISTS employee_id TEXT UNIQUE",
    "CREATE SEQUENCE IF NOT EXISTS employee_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        code TEXT NOT NULL,
        purpose TEXT NOT NULL CHECK (purpose IN ('login', 'registration')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_challenge_lookup_idx ON otp_challenge (email, purpose, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        device_info JSONB,
        ip_addr TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_token_idx ON auth_session (refresh_token_hash)",
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id) WHERE is_active",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        admin_id UUID NOT NULL,
        action TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        old_values JSONB,
        new_values JSONB,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_resource_idx ON audit_log (resource_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Each method borrows one pooled connection and runs a single statement, so
    every operation is atomic on its own. Connection-level failures are
    reported as :class:`StorageUnavailable`.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        connect_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StorageUnavailable("database connection pool exhausted") from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # row mappers
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            created_by=str(row["created_by"]) if row.get("created_by") else None,
            employee_id=row.get("employee_id"),
            deleted_at=row.get("deleted_at"),
            deleted_by=str(row["deleted_by"]) if row.get("deleted_by") else None,
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> OTPChallenge:
        return OTPChallenge(
            id=str(row["id"]),
            email=row["email"],
            code=row["code"],
            purpose=OTPPurpose(row["purpose"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            is_verified=row.get("is_verified", False),
            attempts=row.get("attempts", 0),
            max_attempts=row.get("max_attempts", 3),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            device_info=parse_json_meta(row.get("device_info")) or {},
            ip_addr=row.get("ip_addr"),
            is_active=row.get("is_active", True),
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["id"]),
            admin_id=str(row["admin_id"]),
            action=row["action"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            old_values=parse_json_meta(row.get("old_values")),
            new_values=parse_json_meta(row.get("new_values")),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user
                        (id, email, role, is_active, email_verified, created_by, employee_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, role, is_active, email_verified, created_by, employee_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if "employee_id" in constraint:
                raise ConstraintViolation(
                    "employee id already exists", {"field": "employee_id"}
                )
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def next_employee_sequence(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT nextval('employee_id_seq') AS next_id").fetchone()
        return int(row["next_id"])

    def user_statistics(self) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_users,
                    COUNT(*) FILTER (WHERE is_active AND deleted_at IS NULL) AS active_users,
                    COUNT(*) FILTER (WHERE NOT is_active AND deleted_at IS NULL) AS inactive_users,
                    COUNT(*) FILTER (WHERE deleted_at IS NOT NULL) AS deleted_users,
                    COUNT(*) FILTER (WHERE created_by IS NOT NULL) AS admin_created_users,
                    COUNT(*) FILTER (WHERE created_by IS NULL) AS self_registered_users,
                    COUNT(*) FILTER (WHERE role = 'admin') AS admin_users,
                    COUNT(*) FILTER (WHERE role = 'manager') AS manager_users,
                    COUNT(*) FILTER (WHERE role = 'user') AS regular_users
                FROM app_user
                """
            ).fetchone()
        return {key: int(value or 0) for key, value in (row or {}).items()}

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET last_login_at = %s, email_verified = TRUE, updated_at = %s
                WHERE id = %s
                """,
                (at, at, user_id),
            )
            return cur.rowcount > 0

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET is_active = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def soft_delete_user(
        self, user_id: str, deleted_by: str, at: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET deleted_at = %s, deleted_by = %s, is_active = FALSE, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (at, deleted_by, at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def restore_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET deleted_at = NULL, deleted_by = NULL, is_active = TRUE, updated_at = now()
                WHERE id = %s AND deleted_at IS NOT NULL
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # otp challenges
    def create_challenge(self, challenge: OTPChallenge) -> OTPChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_challenge
                    (id, email, code, purpose, created_at, expires_at, is_verified, attempts, max_attempts)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.email,
                    challenge.code,
                    challenge.purpose.value,
                    challenge.created_at,
                    challenge.expires_at,
                    challenge.is_verified,
                    challenge.attempts,
                    challenge.max_attempts,
                ),
            )
        return challenge

    def get_challenge(self, challenge_id: str) -> Optional[OTPChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def find_valid_challenge(
        self, email: str, code: str, purpose: OTPPurpose, now: datetime
    ) -> Optional[OTPChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_challenge
                WHERE email = %s AND code = %s AND purpose = %s
                  AND NOT is_verified
                  AND expires_at > %s
                  AND attempts < max_attempts
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (email, code, OTPPurpose(purpose).value, now),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def mark_challenge_verified(self, challenge_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge SET is_verified = TRUE
                WHERE id = %s
                  AND NOT is_verified
                  AND expires_at > %s
                  AND attempts < max_attempts
                RETURNING id
                """,
                (challenge_id, now),
            ).fetchone()
        return row is not None

    def increment_challenge_attempts(
        self, email: str, code: str, purpose: OTPPurpose
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE otp_challenge SET attempts = attempts + 1
                WHERE email = %s AND code = %s AND purpose = %s AND NOT is_verified
                """,
                (email, code, OTPPurpose(purpose).value),
            )
            return cur.rowcount

    def delete_stale_challenges(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM otp_challenge WHERE expires_at < %s OR is_verified",
                (now,),
            )
            return cur.rowcount

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session
                        (id, user_id, refresh_token_hash, device_info, ip_addr,
                         created_at, expires_at, is_active, last_used_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        json.dumps(session.device_info) if session.device_info else None,
                        session.ip_addr,
                        session.created_at,
                        session.expires_at,
                        session.is_active,
                        session.last_used_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def find_active_session_by_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE refresh_token_hash = %s AND is_active AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET last_used_at = %s WHERE id = %s",
                (at, session_id),
            )
            return cur.rowcount > 0

    def deactivate_session(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE
                WHERE refresh_token_hash = %s AND is_active
                """,
                (token_hash,),
            )
            return cur.rowcount > 0

    def deactivate_all_sessions_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                (user_id,),
            )
            return cur.rowcount

    def deactivate_user_session(self, user_id: str, session_id: str) -> bool:
        try:
            uuid.UUID(str(session_id))
        except ValueError:
            return False
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE
                WHERE id = %s AND user_id = %s AND is_active
                """,
                (session_id, user_id),
            )
            return cur.rowcount > 0

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY COALESCE(last_used_at, created_at) DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # audit
    def record_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                    (id, admin_id, action, resource_type, resource_id,
                     old_values, new_values, ip_addr, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.admin_id,
                    entry.action,
                    entry.resource_type,
                    entry.resource_id,
                    json.dumps(entry.old_values, default=str) if entry.old_values else None,
                    json.dumps(entry.new_values, default=str) if entry.new_values else None,
                    entry.ip_addr,
                    entry.user_agent,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(self, resource_id: str, limit: int = 50) -> List[AuditLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM audit_log
                WHERE resource_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (resource_id, limit),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]
