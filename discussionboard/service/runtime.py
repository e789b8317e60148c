from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from discussionboard.config import get_settings, reset_settings_cache
from discussionboard.logging import get_logger
from discussionboard.service.auth import AuthService
from discussionboard.service.email import EmailService
from discussionboard.service.session_cache import SessionCache
from discussionboard.service.sessions import AuthSessionService
from discussionboard.service.tokens import TokenCodec
from discussionboard.service.users import UserDirectory
from discussionboard.storage.memory import MemoryStore
from discussionboard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the service instances for the FastAPI app.

    Each component is built once here and handed to the ones that need it;
    nothing below this class reaches for a global.
    """

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=self.settings.memory_store_persist,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout_seconds=self.settings.db_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.users = UserDirectory(self.store)
        self.session_cache = SessionCache(
            max_entries=self.settings.session_cache_max_entries
        )
        self.sessions = AuthSessionService(
            self.store,
            self.session_cache,
            self.users,
            codec=TokenCodec(),
            activation_ttl=timedelta(hours=self.settings.activation_token_ttl_hours),
            authentication_ttl=timedelta(hours=self.settings.session_token_ttl_hours),
            sweep_batch_size=self.settings.token_sweep_batch_size,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            activation_ttl_hours=self.settings.activation_token_ttl_hours,
        )
        self.auth = AuthService(
            self.users,
            self.sessions,
            self.email.notify_activation,
            base_url=self.settings.app_base_url,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked check is the fast path once the
    runtime exists, the locked one prevents two threads building it.
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
