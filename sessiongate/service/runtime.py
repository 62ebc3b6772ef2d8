from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

from sessiongate.config import Settings, get_settings, reset_settings_cache
from sessiongate.logging import get_logger
from sessiongate.service.accounts import AccountService
from sessiongate.service.challenges import ChallengeService
from sessiongate.service.email import EmailService
from sessiongate.service.hashing import CredentialHasher
from sessiongate.service.sessions import SessionManager
from sessiongate.storage.memory import MemoryStore
from sessiongate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def redact_dsn(dsn: Optional[str]) -> Optional[str]:
    """``postgresql://app:secret@db/auth`` -> ``postgresql://app:***@db/auth``."""
    if not dsn:
        return dsn
    parts = urlsplit(dsn)
    if parts.password is None:
        return dsn
    userinfo, _, hostinfo = parts.netloc.rpartition("@")
    user = userinfo.split(":", 1)[0]
    return urlunsplit(parts._replace(netloc=f"{user}:***@{hostinfo}"))


def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    kind = "memory" if settings.use_memory_store else "postgres"
    try:
        store = MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=kind,
            database_url=redact_dsn(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_ready", store_type=kind)
    return store


class Runtime:
    """Wires the store and services once per process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = _build_store(self.settings)

        # Derived once from FRONTEND_ORIGIN; the session manager keeps a reference.
        self.cookie_settings = self.settings.cookie_settings()
        self.hasher = CredentialHasher()
        self.sessions = SessionManager(
            self.store,
            self.hasher,
            self.cookie_settings,
            validity=timedelta(days=self.settings.session_ttl_days),
        )
        self.challenges = ChallengeService(
            self.store,
            self.hasher,
            validity=timedelta(minutes=self.settings.challenge_ttl_minutes),
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_minutes=self.settings.challenge_ttl_minutes,
        )
        if not self.email.is_configured:
            logger.warning(
                "email_not_configured",
                message="SMTP_HOST/EMAIL_FROM_ADDRESS unset; challenge emails are only logged",
            )
        self.accounts = AccountService(
            self.store, self.hasher, self.sessions, self.challenges, self.email
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Process-wide Runtime, built on first use under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a fresh read of the environment (TEST_MODE only)."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
