from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Dict, Optional

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger, mask_url_password
from sessionguard.service.activity import ActivityAnalyzer
from sessionguard.service.alerts import (
    AlertDispatcher,
    AlertNotifier,
    LoggingAlertDispatcher,
    WebhookAlertDispatcher,
)
from sessionguard.service.lifecycle import TokenLifecycleService
from sessionguard.service.revocation import RevocationStore
from sessionguard.service.sessions import CredentialStore
from sessionguard.service.throttle import LoginThrottle
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class Runtime:
    """Builds the service graph once and owns its background tasks.

    Collaborators may be injected; anything not given is built from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        cache: Optional[RedisCache] = None,
        clock: Optional[Clock] = None,
        dispatcher: Optional[AlertDispatcher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock: Clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            redis_enabled=self.settings.redis_enabled,
            test_mode=self.settings.test_mode,
        )

        self.store: CredentialStore = store if store is not None else MemoryStore()

        if cache is None and self.settings.redis_enabled:
            cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.redis_operation_timeout_seconds,
            )
        self.cache = cache

        if dispatcher is None:
            if self.settings.alert_webhook_url:
                dispatcher = WebhookAlertDispatcher(self.settings.alert_webhook_url)
            else:
                dispatcher = LoggingAlertDispatcher()
        self.notifier = AlertNotifier(dispatcher)

        self.revocations = RevocationStore(
            self.cache,
            clock=self.clock,
            operation_timeout=self.settings.redis_operation_timeout_seconds,
            sweep_interval=self.settings.revocation_sweep_interval_seconds,
            probe_interval=self.settings.revocation_probe_interval_seconds,
        )
        retention = timedelta(hours=self.settings.monitor_retention_hours)
        self.throttle = LoginThrottle(
            max_attempts=self.settings.max_login_attempts,
            lockout=timedelta(seconds=self.settings.lockout_seconds),
            retention=retention,
            enabled=self.settings.security_monitoring_enabled,
            clock=self.clock,
            notifier=self.notifier,
        )
        self.analyzer = ActivityAnalyzer(
            history_limit=self.settings.activity_history_limit,
            retention=retention,
            enabled=self.settings.security_monitoring_enabled,
            clock=self.clock,
            notifier=self.notifier,
        )
        self.codec = TokenCodec(self.settings, clock=self.clock)
        self.auth = TokenLifecycleService(
            self.settings,
            self.store,
            self.revocations,
            codec=self.codec,
            throttle=self.throttle,
            analyzer=self.analyzer,
            clock=self.clock,
        )
        self._monitor_task: Optional[asyncio.Task] = None
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        if self.cache is not None:
            reachable = await self.revocations.check_primary()
            if not reachable:
                if self.settings.require_redis:
                    raise RuntimeError(
                        "Redis is required for token revocation; start Redis or unset REQUIRE_REDIS."
                    )
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=mask_url_password(self.settings.redis_url),
                    message="Revocations are held in process memory until Redis recovers.",
                )
        await self.revocations.start()
        if not self.settings.test_mode:
            self._monitor_task = asyncio.create_task(self._monitor_cleanup_loop())
        self._started = True
        logger.info("runtime_started", revocation_backend=self.revocations.status.value)

    async def _monitor_cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.monitor_cleanup_interval_seconds)
            try:
                removed = self.auth.cleanup_monitoring()
                logger.info("security_monitor_cleanup", removed=removed, **self.throttle.stats())
            except Exception as exc:
                logger.error("security_monitor_cleanup_failed", error=str(exc))

    async def shutdown(self) -> None:
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        await self.notifier.drain()
        await self.revocations.shutdown()
        self._started = False
        logger.info("runtime_stopped")

    def stats(self) -> Dict[str, Any]:
        return {
            "revocation": self.revocations.stats(),
            "throttle": self.throttle.stats(),
            "activity": self.analyzer.stats(),
            "pending_alerts": self.notifier.pending,
        }
