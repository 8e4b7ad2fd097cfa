from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from constructor_auth.config import Settings, get_settings, reset_settings_cache
from constructor_auth.logging import get_logger
from constructor_auth.service.audit import AuditLogService
from constructor_auth.service.auth import AuthService
from constructor_auth.service.codes import CodeService
from constructor_auth.service.crypto import CryptoService
from constructor_auth.service.email import EmailService
from constructor_auth.service.notifications import NotificationDispatcher
from constructor_auth.service.oauth import GoogleStrategy, OAuthService, OAuthStrategyRegistry
from constructor_auth.service.tokens import TokenService
from constructor_auth.storage.memory import MemoryStore
from constructor_auth.storage.postgres import PostgresStore
from constructor_auth.storage.redis_cache import RedisCache
from constructor_auth.storage.users import UserRepository

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password part of a connection URL with ``***`` for logging."""
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the user cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to read users from the store only."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.users = UserRepository(self.store, self.cache)
        self.crypto = CryptoService(self.settings)
        self.codes = CodeService(self.store, self.settings)
        self.tokens = TokenService(self.store, self.users, self.settings)
        self.audit = AuditLogService(self.store)
        self.email = EmailService.from_settings(self.settings)
        self.notifications = NotificationDispatcher(self.email)
        self.oauth_registry = OAuthStrategyRegistry(
            [
                GoogleStrategy(
                    self.users,
                    self.tokens,
                    self.audit,
                    self.notifications,
                    crypto=self.crypto,
                    settings=self.settings,
                )
            ]
        )
        self.oauth = OAuthService(self.oauth_registry)
        self.auth = AuthService(
            store=self.store,
            users=self.users,
            crypto=self.crypto,
            codes=self.codes,
            tokens=self.tokens,
            audit=self.audit,
            notifications=self.notifications,
            oauth=self.oauth,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            oauth_types=self.oauth_registry.types,
        )

    async def close(self) -> None:
        await self.notifications.drain()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton; creation is guarded by a lock."""
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
        runtime = Runtime(settings)
        return runtime
