from __future__ import annotations

import asyncio
import hashlib
import threading
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional, TypeVar

from sessionguard.clock import Clock, SystemClock, ensure_utc
from sessionguard.logging import get_logger
from sessionguard.service.errors import RevocationStoreError
from sessionguard.storage.models import BackendStatus, RevocationEntry
from sessionguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

T = TypeVar("T")


def token_key(token: str) -> str:
    """Cache key for a raw bearer token; the token itself is never stored."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RevocationStore:
    """Set of revoked tokens, each remembered until its natural expiry.

    Redis is the primary backend when configured. Any primary failure moves
    the store to ``DEGRADED``; from then on entries live in the local map
    until ``probe_primary`` replays them and switches back.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Optional[Clock] = None,
        operation_timeout: float = 0.5,
        sweep_interval: float = 3600.0,
        probe_interval: float = 30.0,
    ) -> None:
        self.cache = cache
        self.clock: Clock = clock or SystemClock()
        self.operation_timeout = operation_timeout
        self.sweep_interval = sweep_interval
        self.probe_interval = probe_interval
        self._local: Dict[str, RevocationEntry] = {}
        self._local_lock = threading.Lock()
        self._status = BackendStatus.PRIMARY if cache else BackendStatus.DEGRADED
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def status(self) -> BackendStatus:
        return self._status

    def _transition(self, status: BackendStatus, reason: str) -> None:
        if status is self._status:
            return
        previous, self._status = self._status, status
        log = logger.warning if status is BackendStatus.DEGRADED else logger.info
        log(
            "revocation_backend_transition",
            previous=previous.value,
            current=status.value,
            reason=reason,
        )

    async def _call_primary(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)

    # -- core operations -----------------------------------------------------

    async def add(self, key: str, expires_at: datetime) -> None:
        now = self.clock.now()
        expires_at = ensure_utc(expires_at)
        if now >= expires_at:
            return
        if self.cache and self._status is BackendStatus.PRIMARY:
            try:
                await self._call_primary(
                    self.cache.mark_revoked(key, RedisCache.ttl_seconds(expires_at, now))
                )
                return
            except Exception as exc:
                logger.warning(
                    "revocation_primary_write_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                self._transition(BackendStatus.DEGRADED, "write_failed")
        try:
            self._store_local(key, expires_at)
        except Exception as exc:
            logger.error("revocation_local_write_failed", error=str(exc))
            raise RevocationStoreError(
                "failed to record revocation", detail={"error": str(exc)}
            ) from exc

    def _store_local(self, key: str, expires_at: datetime) -> None:
        with self._local_lock:
            existing = self._local.get(key)
            if existing and existing.expires_at >= expires_at:
                return
            self._local[key] = RevocationEntry(token_key=key, expires_at=expires_at)

    def _has_local(self, key: str, now: datetime) -> bool:
        with self._local_lock:
            entry = self._local.get(key)
            return bool(entry and entry.expires_at > now)

    async def has(self, key: str) -> bool:
        if self._has_local(key, self.clock.now()):
            return True
        if self.cache and self._status is BackendStatus.PRIMARY:
            try:
                return bool(await self._call_primary(self.cache.is_revoked(key)))
            except Exception as exc:
                logger.warning(
                    "revocation_primary_read_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                self._transition(BackendStatus.DEGRADED, "read_failed")
        return False

    # -- maintenance ---------------------------------------------------------

    def sweep_expired(self) -> int:
        """Drop local entries whose expiry has passed. Returns the count removed."""
        now = self.clock.now()
        with self._local_lock:
            expired = [k for k, entry in self._local.items() if entry.expires_at <= now]
            for k in expired:
                self._local.pop(k, None)
        if expired:
            logger.debug("revocation_sweep", removed=len(expired))
        return len(expired)

    async def probe_primary(self) -> bool:
        """Try to return to the primary backend.

        Live local entries are replayed with their remaining TTL first, so an
        entry recorded during the outage is still honored once reads go back
        to Redis.
        """
        if not self.cache or self._status is BackendStatus.PRIMARY:
            return self._status is BackendStatus.PRIMARY
        now = self.clock.now()
        with self._local_lock:
            live = [e for e in self._local.values() if e.expires_at > now]
        try:
            await self._call_primary(self.cache.ping())
            for entry in live:
                await self._call_primary(
                    self.cache.mark_revoked(
                        entry.token_key, RedisCache.ttl_seconds(entry.expires_at, now)
                    )
                )
        except Exception as exc:
            logger.info("revocation_primary_probe_failed", error=str(exc))
            return False
        self._transition(BackendStatus.PRIMARY, "probe_succeeded")
        logger.info("revocation_primary_replayed", replayed=len(live))
        return True

    async def check_primary(self) -> bool:
        """Ping the primary once; an unreachable primary degrades the store."""
        if not self.cache:
            return False
        try:
            await self._call_primary(self.cache.ping())
        except Exception as exc:
            logger.warning(
                "revocation_primary_unreachable",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._transition(BackendStatus.DEGRADED, "startup_ping_failed")
            return False
        return True

    async def start(self) -> None:
        if self._task and not self._task.done():
            logger.warning("revocation_sweep_already_running")
            return
        self._closed = False
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "revocation_sweep_started",
            interval=self.sweep_interval,
            probe_interval=self.probe_interval,
        )

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_sweep = loop.time() + self.sweep_interval
        while True:
            await asyncio.sleep(min(self.probe_interval, self.sweep_interval))
            try:
                if loop.time() >= next_sweep:
                    self.sweep_expired()
                    next_sweep = loop.time() + self.sweep_interval
                if self._status is BackendStatus.DEGRADED:
                    await self.probe_primary()
            except Exception as exc:
                logger.error(
                    "revocation_sweep_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.cache:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("revocation_primary_close_failed", error=str(exc))
        logger.info("revocation_store_stopped")

    def stats(self) -> Dict[str, Any]:
        with self._local_lock:
            local_entries = len(self._local)
        return {
            "status": self._status.value,
            "primary_configured": self.cache is not None,
            "local_entries": local_entries,
            "sweeping": bool(self._task and not self._task.done()),
        }
