from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from otpgate.config import get_settings, reset_settings_cache
from otpgate.logging import get_logger
from otpgate.service.admin import AdminService
from otpgate.service.audit import AuditService
from otpgate.service.auth import AuthService
from otpgate.service.email import EmailService
from otpgate.service.otp import OTPChallengeManager
from otpgate.service.sessions import SessionManager
from otpgate.service.tokens import TokenIssuer
from otpgate.storage.memory import MemoryStore
from otpgate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: postgresql://app:secret@db/otpgate -> postgresql://app:***@db/otpgate
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        store_type = "memory" if use_memory else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if use_memory
                else PostgresStore(
                    self.settings.database_url,
                    connect_timeout=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            timeout=self.settings.mail_timeout_seconds,
            otp_expiry_minutes=self.settings.otp_expiry_minutes,
            dev_mode=self.settings.test_mode or self.settings.email_dev_mode,
        )
        self.otp = OTPChallengeManager(self.store, self.settings)
        self.tokens = TokenIssuer(self.settings)
        self.sessions = SessionManager(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            otp=self.otp,
            tokens=self.tokens,
            sessions=self.sessions,
            mailer=self.email,
        )
        self.audit = AuditService(self.store, self.settings)
        self.admin = AdminService(
            self.store, self.settings, sessions=self.sessions, audit=self.audit
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            email_configured=self.email.is_configured,
            master_code_enabled=bool(self.settings.master_otp_code),
            otp_length=self.settings.otp_length,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
