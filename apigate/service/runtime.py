from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from apigate.config import RateLimitBackend, Settings
from apigate.logging import get_logger
from apigate.service.auth import (
    API_KEY_PREFIX,
    ApiKeyStore,
    ApiKeyVerifier,
    AuthGate,
    HttpApiKeyStore,
    HttpIdentityProvider,
    IdentityProvider,
)
from apigate.service.health import HealthService
from apigate.service.lifecycle import LifecycleController, LifecycleState
from apigate.service.rate_limit import DEFAULT_POLICIES, CounterStore, RateLimiter, RateLimitPolicy
from apigate.service.reporting import ErrorReporter, LogErrorReporter
from apigate.storage.memory import MemoryCounterStore
from apigate.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)

# Attached subsystems closed during drain, in this order
REALTIME = "realtime"
JOB_QUEUE = "job_queue"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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


class Runtime:
    """Explicitly constructed container for the services one app instance shares.

    Held on ``app.state.runtime``; there is no module-level instance. Tests
    pass fakes for any collaborator.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[CounterStore] = None,
        identity_provider: Optional[IdentityProvider] = None,
        api_key_store: Optional[ApiKeyStore] = None,
        reporter: Optional[ErrorReporter] = None,
        lifecycle: Optional[LifecycleController] = None,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        clock: Optional[Callable[[], float]] = None,
        version: str = "0.0.0",
    ) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            app_env=settings.app_env.value,
            rate_limit_backend=settings.rate_limit_backend.value,
            redis_url=_mask_url_password(settings.redis_url),
        )
        self.store: CounterStore = store or self._build_store(settings)
        self.identity_provider: IdentityProvider = identity_provider or HttpIdentityProvider(
            settings.identity_provider_url or "",
            settings.identity_provider_key or "",
            timeout=settings.identity_provider_timeout_seconds,
        )
        self.api_key_verifier = ApiKeyVerifier(
            api_key_store
            or HttpApiKeyStore(
                settings.identity_provider_url or "",
                settings.identity_provider_key or "",
                timeout=settings.identity_provider_timeout_seconds,
            )
        )
        self.reporter: ErrorReporter = reporter or LogErrorReporter()
        self.policies = dict(policies or DEFAULT_POLICIES)
        self.rate_limiter = RateLimiter(
            self.store, prefix=settings.rate_limit_prefix, clock=clock or time.time
        )
        self.auth = AuthGate(self.identity_provider)
        self.api_key_auth = AuthGate(self.api_key_verifier, expected=f"Bearer {API_KEY_PREFIX}XXXXX")
        self.lifecycle = lifecycle or LifecycleController(
            drain_timeout=settings.shutdown_timeout_seconds,
            step_timeout=settings.shutdown_step_timeout_seconds,
            reporter=self.reporter,
        )
        self.health = HealthService(
            timeout_seconds=settings.health_check_timeout_seconds,
            critical=settings.health_critical_dependencies,
            version=version,
            environment=settings.app_env.value,
        )
        self.health.register("store", self.store.ping)
        self.health.register("identity_provider", self.identity_provider.ping)
        self.health.register(JOB_QUEUE, None)
        self.subsystems: Dict[str, Any] = {}
        self._register_shutdown_steps()

    @staticmethod
    def _build_store(settings: Settings) -> CounterStore:
        if settings.rate_limit_backend == RateLimitBackend.MEMORY:
            logger.warning("rate_limit_memory_backend", detail="counters are not shared across processes")
            return MemoryCounterStore()
        return RedisCounterStore(
            settings.redis_url or "", socket_timeout=settings.redis_socket_timeout_seconds
        )

    def policy(self, name: str) -> RateLimitPolicy:
        return self.policies[name]

    def attach(self, name: str, subsystem: Any) -> None:
        """Attach an external subsystem (real-time channel, job queue, ...).

        Subsystems may expose ``start()``, ``ping()`` and ``close()``; each is
        optional. Attach before the listener binds.
        """
        if self.lifecycle.state != LifecycleState.STARTING:
            raise RuntimeError(f"cannot attach {name!r} after startup")
        self.subsystems[name] = subsystem
        if hasattr(subsystem, "start"):
            self.lifecycle.add_startup_step(f"start_{name}", subsystem.start)
        self.health.register(name, getattr(subsystem, "ping", None))
        logger.info("subsystem_attached", subsystem=name)

    async def _close_subsystem(self, name: str) -> None:
        subsystem = self.subsystems.get(name)
        if subsystem is not None and hasattr(subsystem, "close"):
            await subsystem.close()

    async def _close_others(self) -> None:
        for name, subsystem in self.subsystems.items():
            if name not in (REALTIME, JOB_QUEUE) and hasattr(subsystem, "close"):
                await subsystem.close()

    async def _flush_telemetry(self) -> None:
        timeout = self.settings.shutdown_step_timeout_seconds
        await asyncio.to_thread(self.reporter.flush, timeout)

    def _register_shutdown_steps(self) -> None:
        steps = self.lifecycle
        steps.add_shutdown_step("close_realtime", lambda: self._close_subsystem(REALTIME))
        steps.add_shutdown_step("close_job_queue", lambda: self._close_subsystem(JOB_QUEUE))
        steps.add_shutdown_step("close_subsystems", self._close_others)
        steps.add_shutdown_step("close_store", self.store.close)
        steps.add_shutdown_step("close_identity_provider", self.identity_provider.close)
        steps.add_shutdown_step("close_api_keys", self.api_key_verifier.close)
        steps.add_shutdown_step("flush_telemetry", self._flush_telemetry)
