from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tenantauth.config import get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.activity import ActivitySink, LogActivitySink
from tenantauth.service.auth import AuthService, build_password_hasher
from tenantauth.service.guard import PrivilegeGuard
from tenantauth.service.refresh import RefreshCredentialManager, build_refresh_hasher
from tenantauth.service.tokens import TokenCodec
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.postgres import PostgresStore

logger = get_logger(__name__)

# Upper bound on any access token lifetime, whatever the configured TTL.
MAX_ACCESS_LIFETIME = timedelta(minutes=60)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    parsed = urlparse(url)
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, activity: Optional[ActivitySink] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env,
        )

        # Built before the store so a missing secret fails without touching the database.
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            max_lifetime=MAX_ACCESS_LIFETIME,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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

        fast_hashing = self.settings.test_mode
        self.activity: ActivitySink = activity or LogActivitySink()
        self.refresh = RefreshCredentialManager(
            self.store,
            default_ttl=timedelta(days=self.settings.refresh_token_ttl_days),
            hasher=build_refresh_hasher(fast=fast_hashing),
        )
        self.guard = PrivilegeGuard(self.store)
        self.auth = AuthService(
            self.store,
            self.settings,
            codec=self.codec,
            refresh=self.refresh,
            guard=self.guard,
            activity=self.activity,
            hasher=build_password_hasher(fast=fast_hashing),
        )
        logger.info(
            "runtime_initialized",
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            rotate_refresh=self.settings.rotate_refresh_credentials,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two concurrent builds.
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


def clear_runtime() -> None:
    """Drop the singleton so the next ``get_runtime`` rebuilds from settings."""

    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = None
