from __future__ import annotations

import asyncio
import threading
from typing import Optional

from ditto.config import AppEnv, CodeMode, get_settings, reset_settings_cache
from ditto.logging import get_logger
from ditto.service.auth import AuthService
from ditto.service.codes import (
    CodeGenerator,
    CodeIssuer,
    DeterministicCodeGenerator,
    RandomCodeGenerator,
)
from ditto.service.federation import FederationAdapter
from ditto.service.lockout import LockoutTracker
from ditto.service.tokens import TokenService
from ditto.storage.memory import MemoryStore

logger = get_logger(__name__)


def _code_generator(mode: CodeMode) -> CodeGenerator:
    if mode == CodeMode.DETERMINISTIC:
        return DeterministicCodeGenerator()
    return RandomCodeGenerator()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        code_mode = self.settings.resolved_code_mode
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            code_mode=code_mode.value,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                persist=self.settings.user_store_persist,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        if code_mode == CodeMode.DETERMINISTIC:
            logger.warning(
                "verification_bypass_enabled",
                message="codes are derived from the phone number; never use in production",
            )

        self.codes = CodeIssuer(
            _code_generator(code_mode),
            ttl_minutes=self.settings.code_ttl_minutes,
            debug_channel=self.settings.expose_debug_codes,
        )
        self.lockout = LockoutTracker(
            max_attempts=self.settings.lockout_max_attempts,
            lock_minutes=self.settings.lockout_minutes,
        )
        self.tokens = TokenService(self.settings)
        self.federation = FederationAdapter.from_settings(self.settings)
        if not self.settings.google_client_id:
            logger.warning("google_client_id_unset", message="Google Sign-In will reject all tokens")
        self.auth = AuthService(
            self.store,
            self.settings,
            codes=self.codes,
            lockout=self.lockout,
            tokens=self.tokens,
            federation=self.federation,
        )
        logger.info("runtime_initialized")

    async def close(self) -> None:
        await self.federation.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
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
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if settings.app_env != AppEnv.TEST:
            raise RuntimeError("runtime reset is only allowed with APP_ENV=test")
        runtime = Runtime()
        return runtime
