from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from prodauth.config import Settings, get_settings, reset_settings_cache
from prodauth.logging import get_logger
from prodauth.service.gate import AuthorizationGate
from prodauth.service.permissions import PermissionResolver
from prodauth.service.sessions import SessionManager
from prodauth.service.tokens import TokenCodec
from prodauth.storage.memory import MemoryStore
from prodauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:secret@db/prodauth -> postgresql://app:***@db/prodauth
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
            database_url=_mask_url_password(self.settings.database_url),
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.codec = TokenCodec(self.settings)
        self.resolver = PermissionResolver(self.store)
        self.sessions = SessionManager(self.store, self.codec, self.resolver)
        self.gate = AuthorizationGate(
            self.codec,
            self.resolver,
            permission_source=self.settings.permission_source,
        )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            permission_source=self.gate.permission_source.value,
        )

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton on an empty store for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        if isinstance(runtime.store, MemoryStore):
            runtime.store.clear()
        return runtime
