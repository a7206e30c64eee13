from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tessera.config import get_settings, reset_settings_cache
from tessera.logging import get_logger
from tessera.service.auth import AuthService
from tessera.service.bindings import BindingReconciler
from tessera.service.broker import SessionBroker
from tessera.service.interceptor import AccessInterceptor
from tessera.service.pairing import PairingRegistry
from tessera.service.tokens import TokenLedger
from tessera.storage.common import extend_core_schema
from tessera.storage.memory import MemoryStore
from tessera.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[MemoryStore, PostgresStore]
        if self.settings.use_memory_store:
            self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
        else:
            logger.info("runtime_postgres_selected", database_url=_mask_url_password(self.settings.database_url))
            self.store = PostgresStore(self.settings.database_url)

        self.tokens = TokenLedger(self.store, auth_token_expire=self.settings.auth_token_expire)
        self.pairing = PairingRegistry(login_token_expire=self.settings.login_token_expire)
        self.broker = SessionBroker(self.store, self.tokens)
        self.interceptor = AccessInterceptor(self.tokens)
        self.bindings = BindingReconciler(self.store)
        self.auth = AuthService(
            self.store,
            tokens=self.tokens,
            pairing=self.pairing,
            broker=self.broker,
            bindings=self.bindings,
        )
        self._started = False

    async def start(self) -> None:
        """Open the store, declare the core tables and seed the admin account.

        Failing to declare the tables is fatal and propagates to the caller.
        """
        if self._started:
            return
        if isinstance(self.store, PostgresStore):
            await self.store.open()
        try:
            await extend_core_schema(self.store)
        except Exception as exc:
            logger.error("schema_extend_failed", error_type=type(exc).__name__, error=str(exc))
            raise
        if self.settings.admin_enabled and self.settings.admin_password:
            await self.auth.bootstrap_admin(
                self.settings.admin_username, self.settings.admin_password
            )
        self._started = True
        logger.info("runtime_started")

    async def close(self) -> None:
        self.pairing.clear()
        if isinstance(self.store, PostgresStore):
            await self.store.close()
        self._started = False


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton from a fresh settings load."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
