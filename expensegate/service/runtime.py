from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from expensegate.config import GateConfig, Settings, get_settings, reset_settings_cache
from expensegate.logging import get_logger
from expensegate.service.gate import AuthGate
from expensegate.service.lockout import LockoutBackend, LockoutTracker
from expensegate.service.sessions import SessionService
from expensegate.service.tokens import TokenCodec
from expensegate.storage.memory import MemoryStore
from expensegate.storage.postgres import PostgresStore
from expensegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
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
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.gate_config = GateConfig.from_settings(self.settings)
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
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

        self.cache: Optional[RedisCache] = self._connect_cache()
        lockout_backend: LockoutBackend = self.cache or self.store

        self.codec = TokenCodec(self.gate_config.token_secret)
        self.lockout = LockoutTracker(lockout_backend, self.gate_config)
        self.gate = AuthGate(
            self.gate_config,
            codec=self.codec,
            sessions=self.store,
            accounts=self.store,
            lockout=self.lockout,
        )
        self.sessions = SessionService(
            self.store, self.gate_config, codec=self.codec, lockout=self.lockout
        )
        logger.info(
            "runtime_init_completed",
            lockout_backend="redis" if self.cache else store_type,
            max_attempts=self.gate_config.max_attempts,
            lockout_window_seconds=int(self.gate_config.lockout_window.total_seconds()),
        )

    def _connect_cache(self) -> Optional[RedisCache]:
        if not self.settings.redis_url:
            return None
        try:
            cache = RedisCache(self.settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured for lockout counters but unreachable; start Redis "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to count in the store."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )
            return None

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing runtime
    and a locked re-check before creating one.
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
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
