import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Protocol

import httpx
import structlog

from mintflow.clock import Clock, system_clock
from mintflow.config import settings
from mintflow.errors import CacheReadError, CacheWriteError, PipelineError
from mintflow.models import AccessCacheEntry, Grant, GrantSource
from mintflow.services.grants import normalize_subject

logger = structlog.get_logger(__name__)


class GrantSourceProtocol(Protocol):
    """The authoritative answer, e.g. ``checkAIAccess(subject)`` on the ledger."""

    async def has_access(self, subject_key: str) -> bool: ...


class AccessCacheManager:
    """TTL-bound cache of ledger-derived access grants.

    ``check`` answers from the cache only while the entry was verified within
    the freshness window.  Otherwise it makes exactly one authoritative read
    and writes the result through.  A cache store that cannot be read is
    treated as a miss; an authoritative read that fails yields *not granted*
    (fail-closed), and nothing is written in that case.

    Writes for one subject are serialized; different subjects never block
    each other.
    """

    def __init__(
        self,
        store,
        grant_source: GrantSourceProtocol,
        clock: Clock = system_clock,
        freshness_window: timedelta | None = None,
        prune_after: timedelta | None = None,
        retrier=None,
    ) -> None:
        self._store = store
        self._grant_source = grant_source
        self._clock = clock
        self.freshness_window = (
            timedelta(hours=settings.access_freshness_hours) if freshness_window is None else freshness_window
        )
        self.prune_after = timedelta(days=settings.access_prune_days) if prune_after is None else prune_after
        self._retrier = retrier
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def check(self, subject_key: str) -> Grant:
        key = normalize_subject(subject_key)
        async with self._lock(key):
            now = self._clock.now()
            try:
                entry = await self._store.get(key, self.freshness_window)
            except CacheReadError as e:
                logger.warning("access_cache_unavailable", subject=key, error=e.reason)
                entry = None

            if entry is not None and entry.is_fresh(now):
                return Grant(
                    subject_key=key,
                    granted=entry.granted,
                    source=GrantSource.CACHE,
                    granted_at=entry.granted_at,
                    evidence_tx_hash=entry.evidence_tx_hash,
                )

            try:
                granted = await self._read_authoritative(key)
            except (PipelineError, httpx.HTTPError) as e:
                logger.warning("access_fail_closed", subject=key, error=str(e))
                return Grant(subject_key=key, granted=False, source=GrantSource.FAIL_CLOSED)

            still_granted = entry is not None and entry.granted and granted
            fresh = AccessCacheEntry(
                subject_key=key,
                granted=granted,
                cached_at=now,
                last_verified_at=now,
                freshness_window=self.freshness_window,
                granted_at=(entry.granted_at if still_granted else now) if granted else None,
                evidence_tx_hash=entry.evidence_tx_hash if still_granted else None,
            )
            await self._write(fresh)
            logger.info("access_revalidated", subject=key, granted=granted)
            return Grant(
                subject_key=key,
                granted=granted,
                source=GrantSource.LEDGER,
                granted_at=fresh.granted_at,
                evidence_tx_hash=fresh.evidence_tx_hash,
            )

    async def set(
        self,
        subject_key: str,
        granted: bool,
        evidence_tx_hash: str | None = None,
        granted_at: datetime | None = None,
    ) -> AccessCacheEntry:
        """Warm the cache right after a confirmed purchase or mint."""
        key = normalize_subject(subject_key)
        now = self._clock.now()
        entry = AccessCacheEntry(
            subject_key=key,
            granted=granted,
            cached_at=now,
            last_verified_at=now,
            freshness_window=self.freshness_window,
            granted_at=(granted_at or now) if granted else None,
            evidence_tx_hash=evidence_tx_hash,
        )
        async with self._lock(key):
            await self._store.upsert(entry)
        logger.info("access_cache_set", subject=key, granted=granted, tx_hash=evidence_tx_hash)
        return entry

    async def touch(self, subject_key: str) -> bool:
        """Refresh ``last_verified_at`` without changing the grant."""
        key = normalize_subject(subject_key)
        async with self._lock(key):
            return await self._store.touch(key, self._clock.now())

    async def prune(self) -> int:
        return await self._store.prune(self._clock.now() - self.prune_after)

    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _lock(self, key: str):
        """Serialize work on one subject.  The lock is dropped once nobody holds or waits on it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _read_authoritative(self, key: str) -> bool:
        if self._retrier is None:
            return await self._grant_source.has_access(key)
        return await self._retrier.wrap(
            lambda: self._grant_source.has_access(key), label="access_check"
        )

    async def _write(self, entry: AccessCacheEntry) -> None:
        try:
            await self._store.upsert(entry)
        except CacheWriteError as e:
            # the fresh value is still returned; the next check reads again
            logger.warning("access_cache_write_failed", subject=entry.subject_key, error=e.reason)
