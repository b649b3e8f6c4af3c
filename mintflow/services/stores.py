import json
from datetime import datetime, timedelta

import aiosqlite
import structlog

from mintflow.database import get_async_conn
from mintflow.errors import CacheReadError, CacheWriteError, MintStoreError
from mintflow.models import (
    AccessCacheEntry,
    MintRequest,
    MintState,
    visibility_from_members,
    whitelist_members,
)

logger = structlog.get_logger(__name__)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteAccessCacheStore:
    """Key-value persistence for access grants, keyed by subject."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = db_path

    async def get(self, subject_key: str, freshness_window: timedelta) -> AccessCacheEntry | None:
        try:
            conn = await get_async_conn(self._db_path)
            try:
                cursor = await conn.execute(
                    "SELECT * FROM access_cache WHERE subject_key = ?", (subject_key,)
                )
                row = await cursor.fetchone()
            finally:
                await conn.close()
        except (aiosqlite.Error, OSError) as e:
            raise CacheReadError(f"access cache lookup failed: {e}") from e

        if row is None:
            return None
        return AccessCacheEntry(
            subject_key=row["subject_key"],
            granted=bool(row["granted"]),
            granted_at=_parse_ts(row["granted_at"]),
            evidence_tx_hash=row["evidence_tx_hash"],
            cached_at=_parse_ts(row["cached_at"]),
            last_verified_at=_parse_ts(row["last_verified_at"]),
            freshness_window=freshness_window,
        )

    async def upsert(self, entry: AccessCacheEntry) -> None:
        await self._write(
            """
            INSERT INTO access_cache
                (subject_key, granted, granted_at, evidence_tx_hash, cached_at, last_verified_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(subject_key) DO UPDATE SET
                granted = excluded.granted,
                granted_at = excluded.granted_at,
                evidence_tx_hash = excluded.evidence_tx_hash,
                cached_at = excluded.cached_at,
                last_verified_at = excluded.last_verified_at
            """,
            (
                entry.subject_key,
                int(entry.granted),
                _ts(entry.granted_at),
                entry.evidence_tx_hash,
                _ts(entry.cached_at),
                _ts(entry.last_verified_at),
            ),
        )

    async def touch(self, subject_key: str, verified_at: datetime) -> bool:
        """Refresh ``last_verified_at`` only.  False if there is no entry."""
        count = await self._write(
            "UPDATE access_cache SET last_verified_at = ? WHERE subject_key = ?",
            (_ts(verified_at), subject_key),
        )
        return count > 0

    async def prune(self, older_than: datetime) -> int:
        count = await self._write(
            "DELETE FROM access_cache WHERE last_verified_at < ?", (_ts(older_than),)
        )
        if count:
            logger.info("access_cache_pruned", removed=count, older_than=_ts(older_than))
        return count

    async def _write(self, sql: str, params: tuple) -> int:
        try:
            conn = await get_async_conn(self._db_path)
            try:
                cursor = await conn.execute(sql, params)
                await conn.commit()
                return cursor.rowcount
            finally:
                await conn.close()
        except (aiosqlite.Error, OSError) as e:
            raise CacheWriteError(f"access cache write failed: {e}") from e


class SqliteMintRequestStore:
    """Keeps MintRequest snapshots so submitted transactions survive restarts."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = db_path

    async def save(self, request: MintRequest) -> None:
        try:
            conn = await get_async_conn(self._db_path)
            try:
                await conn.execute(
                    """
                    INSERT INTO mint_requests
                        (id, content_id, recipient, room_id, kind, visibility_json, tx_hash, state, reason)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        tx_hash = excluded.tx_hash,
                        state = excluded.state,
                        reason = excluded.reason,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        request.id,
                        request.content_id,
                        request.recipient,
                        request.room_id,
                        request.kind,
                        json.dumps(whitelist_members(request.visibility)),
                        request.tx_hash,
                        request.state.value,
                        request.reason,
                    ),
                )
                await conn.commit()
            finally:
                await conn.close()
        except (aiosqlite.Error, OSError) as e:
            raise MintStoreError(
                f"could not save mint {request.id}: {e}",
                tx_hash=request.tx_hash,
                content_id=request.content_id,
            ) from e

    async def get(self, request_id: str) -> MintRequest | None:
        rows = await self._fetch("SELECT * FROM mint_requests WHERE id = ?", (request_id,))
        return self._from_row(rows[0]) if rows else None

    async def list_pending(self) -> list[MintRequest]:
        """Requests left in ``submitted`` (timed out or interrupted)."""
        rows = await self._fetch(
            "SELECT * FROM mint_requests WHERE state = ? ORDER BY created_at",
            (MintState.SUBMITTED.value,),
        )
        return [self._from_row(row) for row in rows]

    async def _fetch(self, sql: str, params: tuple) -> list[aiosqlite.Row]:
        try:
            conn = await get_async_conn(self._db_path)
            try:
                cursor = await conn.execute(sql, params)
                return list(await cursor.fetchall())
            finally:
                await conn.close()
        except (aiosqlite.Error, OSError) as e:
            raise MintStoreError(f"mint request lookup failed: {e}") from e

    @staticmethod
    def _from_row(row: aiosqlite.Row) -> MintRequest:
        state = MintState(row["state"])
        return MintRequest(
            id=row["id"],
            content_id=row["content_id"],
            recipient=row["recipient"],
            room_id=row["room_id"],
            kind=row["kind"],
            visibility=visibility_from_members(json.loads(row["visibility_json"])),
            state=state,
            tx_hash=row["tx_hash"],
            reason=row["reason"],
            history=[state],
        )
