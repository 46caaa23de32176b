from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, StoreBackend, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.authorization import AuthorizationFlowCoordinator
from authcore.service.lockout import LockoutGuard
from authcore.service.login import PasswordLoginService
from authcore.service.primitives import AccessTokenCodec, SecretPrimitives
from authcore.service.tokens import TokenLifecycleManager
from authcore.storage.common import AuthCoreStore
from authcore.storage.memory import MemoryStore
from authcore.storage.models import utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
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


def build_store(settings: Settings) -> AuthCoreStore:
    backend = settings.store_backend
    try:
        if backend == StoreBackend.REDIS:
            from authcore.storage.redis_store import RedisStore

            store: AuthCoreStore = RedisStore(
                settings.redis_url, socket_timeout=settings.store_timeout_seconds
            )
            store.verify_connection()
        elif backend == StoreBackend.POSTGRES:
            from authcore.storage.postgres import PostgresStore

            store = PostgresStore(
                settings.database_url,
                statement_timeout_seconds=settings.store_timeout_seconds,
            )
        else:
            store = MemoryStore()
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=backend.value,
            redis_url=_mask_url_password(settings.redis_url),
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=backend.value)
    return store


class Runtime:
    """Holds the store and the service singletons for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthCoreStore] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            store_backend=self.settings.store_backend.value,
            clients=len(self.settings.clients),
        )
        self.store = store if store is not None else build_store(self.settings)
        self.primitives = SecretPrimitives()
        self.codec = AccessTokenCodec(
            self.settings.jwt_secret or "",
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            clock_skew_seconds=self.settings.clock_skew_seconds,
        )
        self.tokens = TokenLifecycleManager(
            self.store,
            self.settings,
            primitives=self.primitives,
            codec=self.codec,
            now=now,
        )
        # Redis and Postgres expire rows themselves or via an operator sweep
        sweep_interval = (
            self.settings.sweep_interval_seconds
            if isinstance(self.store, MemoryStore)
            else 0
        )
        self.authorization = AuthorizationFlowCoordinator(
            self.store,
            self.settings,
            self.tokens,
            primitives=self.primitives,
            now=now,
            sweep_interval_seconds=sweep_interval,
        )
        self.lockout = LockoutGuard(self.store, self.settings, now=now)
        self.login = PasswordLoginService(
            self.store,
            self.settings,
            self.lockout,
            self.tokens,
            primitives=self.primitives,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(new_runtime: Runtime) -> Runtime:
    """Install a preconstructed runtime (tests, embedding applications)."""
    global runtime
    with _runtime_lock:
        runtime = new_runtime
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton from a fresh read of the environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
