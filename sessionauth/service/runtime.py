from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionauth.config import get_settings, reset_settings_cache
from sessionauth.logging import get_logger
from sessionauth.service.credentials import CredentialVerifier
from sessionauth.service.orchestrator import AuthOrchestrator
from sessionauth.service.rate_limit import RateLimiter
from sessionauth.service.refresh_tokens import RefreshTokenStore
from sessionauth.service.tokens import TokenIssuer
from sessionauth.service.transport import SessionTransport
from sessionauth.storage.memory import MemoryStore
from sessionauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before logging it.

    Example: postgresql://app:secret@db:5432/auth -> postgresql://app:***@db:5432/auth
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
    except Exception:
        return "***url_parse_error***"


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
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.login_limiter = RateLimiter(
            max_attempts=self.settings.login_max_attempts,
            window_seconds=self.settings.login_window_seconds,
            lockout_seconds=self.settings.login_lockout_seconds,
            name="login",
        )
        self.register_limiter = RateLimiter(
            max_attempts=self.settings.login_max_attempts,
            window_seconds=self.settings.login_window_seconds,
            lockout_seconds=self.settings.login_lockout_seconds,
            name="register",
        )
        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.credentials = CredentialVerifier(self.store)
        self.refresh_tokens = RefreshTokenStore(
            self.store,
            ttl_seconds=self.settings.refresh_token_ttl_seconds,
            max_active=self.settings.max_refresh_tokens_per_user,
        )
        self.transport = SessionTransport(
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            secure=self.settings.cookie_secure,
            domain=self.settings.cookie_domain,
        )
        self.auth = AuthOrchestrator(
            self.store,
            credentials=self.credentials,
            tokens=self.tokens,
            refresh_tokens=self.refresh_tokens,
            transport=self.transport,
            login_limiter=self.login_limiter,
            register_limiter=self.register_limiter,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cookie_secure=self.settings.cookie_secure,
            max_refresh_per_user=self.settings.max_refresh_tokens_per_user,
        )

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
