from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authflow.config import get_settings, reset_settings_cache
from authflow.logging import get_logger
from authflow.service.auth import AuthService
from authflow.service.credentials import PasswordCredentialVerifier
from authflow.service.email import EmailService
from authflow.service.tokens import TokenCodec
from authflow.storage.memory import MemoryCodeStore, MemoryStore
from authflow.storage.postgres import PostgresStore
from authflow.storage.redis_cache import RedisCodeStore, SyncRedisCodeStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

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


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

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
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
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
        logger.info("runtime_store_initialized", store_type=store_type)

        self.codes: Union[MemoryCodeStore, RedisCodeStore, SyncRedisCodeStore, None] = None
        redis_error: Exception | None = None
        if self.settings.use_redis_codes and self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest's event loops
                if self.settings.test_mode:
                    codes = SyncRedisCodeStore(self.settings.redis_url)
                else:
                    codes = RedisCodeStore(self.settings.redis_url)
                codes.verify_connection()
                self.codes = codes
            except Exception as exc:
                redis_error = exc
                self.codes = None

        if self.codes is None:
            if self.settings.use_redis_codes and not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is required for 2FA codes; start Redis, set USE_REDIS_CODES=false "
                    "for a single-process deployment, or set TEST_MODE=true."
                ) from redis_error
            if self.settings.use_redis_codes:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    mode="TEST_MODE",
                )
            self.codes = MemoryCodeStore()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            default_locale=self.settings.default_locale,
        )
        self.credentials = PasswordCredentialVerifier(self.store)
        self.codec = TokenCodec(self.settings.token_secret)
        self.auth = AuthService(
            self.store,
            self.codes,
            self.settings,
            verifier=self.credentials,
            emailer=self.email,
            codec=self.codec,
        )
        logger.info(
            "runtime_init_completed",
            code_store=type(self.codes).__name__,
            email_configured=self.email.is_configured,
        )


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
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
            codes = runtime.codes
            if isinstance(codes, SyncRedisCodeStore):
                codes.client.close()
            elif isinstance(codes, RedisCodeStore):
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(codes.close())
                except RuntimeError:
                    asyncio.run(codes.close())
            if isinstance(runtime.store, PostgresStore):
                runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
