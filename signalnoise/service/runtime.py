from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from signalnoise.config import get_settings, reset_settings_cache
from signalnoise.logging import get_logger
from signalnoise.service.email import EmailService
from signalnoise.service.magic_link import MagicLinkService
from signalnoise.service.revocation import RevocationService
from signalnoise.service.sessions import SessionValidator
from signalnoise.service.sync import SyncService
from signalnoise.storage.common import AccountStore
from signalnoise.storage.memory import MemoryAccountStore
from signalnoise.storage.redis_store import RedisAccountStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

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

        self.store: AccountStore = self._build_store()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.magic_links = MagicLinkService(
            self.store, self.settings, email_service=self.email
        )
        self.sessions = SessionValidator(self.store, self.settings)
        self.revocation = RevocationService(self.store)
        self.sync = SyncService(self.store)
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            email_configured=self.email.is_configured,
        )

    def _build_store(self) -> AccountStore:
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryAccountStore()

        redis_error: Exception | None = None
        try:
            store = RedisAccountStore(
                self.settings.redis_url, key_prefix=self.settings.key_prefix
            )
            store.verify_connection()
            logger.info("runtime_store_initialized", store_type="redis")
            return store
        except Exception as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            logger.error(
                "runtime_store_init_failed",
                store_type="redis",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(redis_error).__name__,
                error=str(redis_error),
            )
            raise RuntimeError(
                "Redis is required for accounts, sessions and sync snapshots; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message=f"Running without Redis under {fallback_mode}; accounts are in-memory only.",
            mode=fallback_mode,
        )
        return MemoryAccountStore()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
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
        previous = runtime
        if previous is not None and isinstance(previous.store, RedisAccountStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(previous.store.close())
            except RuntimeError:
                asyncio.run(previous.store.close())
        reset_settings_cache()
        runtime = Runtime()
        return runtime
