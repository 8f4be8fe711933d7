from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tasksync.config import Settings, get_settings, reset_settings_cache
from tasksync.logging import get_logger
from tasksync.service.auth import AuthService
from tasksync.service.email import EmailService
from tasksync.service.events import SessionEventBroadcaster
from tasksync.service.otp import OTPService
from tasksync.service.pending import PendingRegistrationStore
from tasksync.service.tokens import TokenService
from tasksync.storage.cache import KeyValueCache
from tasksync.storage.memory import MemoryStore
from tasksync.storage.memory_cache import MemoryCache
from tasksync.storage.postgres import PostgresStore
from tasksync.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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


def _build_cache(settings: Settings) -> KeyValueCache:
    if settings.use_memory_cache:
        logger.info("runtime_cache_initialized", cache_type="memory")
        return MemoryCache()

    redis_error: Exception | None = None
    try:
        cache = RedisCache(
            settings.redis_url, socket_timeout=settings.redis_socket_timeout
        )
        cache.verify_connection()
        logger.info(
            "runtime_cache_initialized",
            cache_type="redis",
            redis_url=_mask_url_password(settings.redis_url),
        )
        return cache
    except Exception as exc:
        redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for one-time codes, pending sign-ups and refresh tokens; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error),
        message=(
            f"Running without Redis under {fallback_mode}; codes, pending sign-ups and "
            "refresh tokens are in-process only and lost on restart."
        ),
        mode=fallback_mode,
    )
    return MemoryCache()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = _build_cache(self.settings)
        self.pending = PendingRegistrationStore(
            self.cache,
            ttl_seconds=self.settings.pending_registration_ttl_hours * 60 * 60,
        )
        self.otp = OTPService(self.cache, expiry_minutes=self.settings.otp_expiry_minutes)
        self.tokens = TokenService(self.cache, self.settings)
        self.events = SessionEventBroadcaster(self.tokens)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            pending=self.pending,
            otp=self.otp,
            tokens=self.tokens,
            events=self.events,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            expiry_minutes=self.settings.otp_expiry_minutes,
        )
        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path once the runtime exists,
    and a second check under the lock during creation.
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
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                asyncio.get_running_loop().create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit against the runtime cache.

    Returns bool if return_remaining is False, else (allowed, remaining,
    reset_seconds).
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=return_remaining, cost=cost
    )
