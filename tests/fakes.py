"""Test doubles: virtual clock, scripted ledger and signer, in-memory cache store."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import numpy as np

from mintflow.clients.storage_client import ContentStorageClient
from mintflow.clock import Clock
from mintflow.errors import CacheReadError, CacheWriteError, TransactionRejectedError
from mintflow.events import EventCollector
from mintflow.models import AccessCacheEntry, MintPayload, Receipt, TxStatus
from mintflow.recording.controller import CaptureController
from mintflow.services.access_cache import AccessCacheManager
from mintflow.services.grants import LedgerGrantSource
from mintflow.services.minting import TokenMintCoordinator
from mintflow.services.pipeline import AccessPurchaseFlow, OwnershipPipeline
from mintflow.services.poller import LedgerConfirmationPoller
from mintflow.services.retrier import RateLimitedReadRetrier
from mintflow.services.tokens import TokenIndex
from mintflow.wiring import Services

CONTRACT = "0x" + "c0" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

PIN_API = "https://pin.test"
GATEWAY = "https://gw1.test/ipfs/"
FALLBACK = "https://gw2.test/ipfs/"


# ------------------------------------------------------------------
# Clock
# ------------------------------------------------------------------


class FakeClock(Clock):
    """Virtual time.

    ``auto_advance=True``: every ``sleep`` moves time forward immediately.
    ``auto_advance=False``: sleepers wait until the test calls ``advance``.
    Requested sleeps are recorded in ``sleeps`` (seconds).
    """

    def __init__(self, start: datetime = T0, auto_advance: bool = True) -> None:
        self._now = start
        self._mono = 0.0
        self.auto_advance = auto_advance
        self.sleeps: list[float] = []
        self._waiters: list[tuple[float, asyncio.Future]] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.auto_advance:
            self._move(seconds)
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((self._mono + seconds, fut))
        await fut

    def advance(self, seconds: float) -> None:
        self._move(seconds)
        due = [w for w in self._waiters if w[0] <= self._mono]
        self._waiters = [w for w in self._waiters if w[0] > self._mono]
        for _, fut in due:
            if not fut.done():
                fut.set_result(None)

    def _move(self, seconds: float) -> None:
        self._mono += seconds
        self._now += timedelta(seconds=seconds)


# ------------------------------------------------------------------
# Capture
# ------------------------------------------------------------------


class FakeSource:
    mime_type = "audio/wav"

    def __init__(self, samples: np.ndarray | None = None, open_error: Exception | None = None,
                 read_error: Exception | None = None) -> None:
        self.samples = np.zeros(0, dtype="float32") if samples is None else samples
        self.open_error = open_error
        self.read_error = read_error
        self.opened = 0
        self.closed = 0
        self.is_open = False

    def open(self) -> None:
        self.opened += 1
        if self.open_error is not None:
            raise self.open_error
        self.is_open = True

    def close(self) -> None:
        self.closed += 1
        self.is_open = False

    def read_all(self) -> np.ndarray:
        if self.read_error is not None:
            raise self.read_error
        return self.samples


def tone(seconds: float, sample_rate: int = 16000) -> np.ndarray:
    t = np.arange(int(seconds * sample_rate), dtype="float32") / sample_rate
    return (0.2 * np.sin(2 * np.pi * 440 * t)).astype("float32")


# ------------------------------------------------------------------
# Ledger / signer
# ------------------------------------------------------------------


def receipt(
    tx_hash: str,
    status: TxStatus = TxStatus.SUCCESS,
    confirmations: int = 1,
    to: str = CONTRACT,
    sender: str = ALICE,
) -> Receipt:
    return Receipt(
        tx_hash=tx_hash,
        status=status,
        block_number=100,
        from_address=sender,
        to_address=to,
        confirmations=confirmations,
    )


class FakeLedger:
    """Scripted ledger reads.

    ``receipts`` is consumed one item per ``get_receipt`` call; ``None`` means
    still pending and an exception instance is raised.  When the script runs
    out every further call is pending.
    """

    def __init__(self, receipts=None, contract_address: str = CONTRACT) -> None:
        self.contract_address = contract_address
        self.receipts = list(receipts or [])
        self.receipt_calls = 0
        self.access: dict[str, bool] = {}
        self.access_error: Exception | None = None
        self.access_calls = 0
        self.price = 10**15
        self.logs: list[dict] = []
        self.contents: dict[int, dict] = {}
        self.owners: dict[int, str] = {}
        self.log_errors: list[Exception] = []
        self.log_calls = 0
        self.content_calls = 0

    async def get_receipt(self, tx_hash: str):
        self.receipt_calls += 1
        item = self.receipts.pop(0) if self.receipts else None
        if isinstance(item, Exception):
            raise item
        return item

    async def has_access(self, subject_key: str) -> bool:
        self.access_calls += 1
        if self.access_error is not None:
            raise self.access_error
        return self.access.get(subject_key, False)

    async def ai_access_price(self) -> int:
        return self.price

    async def get_event_logs(self, address, topics, **kwargs):
        self.log_calls += 1
        if self.log_errors:
            raise self.log_errors.pop(0)
        return list(self.logs)

    async def get_content(self, token_id: int) -> dict:
        self.content_calls += 1
        return self.contents[token_id]

    async def owner_of(self, token_id: int) -> str:
        return self.owners[token_id]

    def status(self) -> dict:
        return {"configured": True, "contract_address": self.contract_address}


class FakeSigner:
    def __init__(self, tx_hashes: list[str] | None = None, reject: str | None = None) -> None:
        self.tx_hashes = list(tx_hashes or ["0x" + "ab" * 32])
        self.reject = reject
        self.payloads: list[MintPayload] = []

    async def sign(self, payload: MintPayload) -> str:
        self.payloads.append(payload)
        if self.reject:
            raise TransactionRejectedError(self.reject)
        return self.tx_hashes.pop(0)


# ------------------------------------------------------------------
# Cache store
# ------------------------------------------------------------------


class InMemoryAccessCacheStore:
    def __init__(self) -> None:
        self.entries: dict[str, AccessCacheEntry] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.writes = 0

    async def get(self, subject_key: str, freshness_window: timedelta) -> AccessCacheEntry | None:
        if self.fail_reads:
            raise CacheReadError("store offline")
        entry = self.entries.get(subject_key)
        return replace(entry, freshness_window=freshness_window) if entry else None

    async def upsert(self, entry: AccessCacheEntry) -> None:
        if self.fail_writes:
            raise CacheWriteError("store offline")
        self.writes += 1
        self.entries[entry.subject_key] = entry

    async def touch(self, subject_key: str, verified_at: datetime) -> bool:
        entry = self.entries.get(subject_key)
        if entry is None:
            return False
        entry.last_verified_at = verified_at
        return True

    async def prune(self, older_than: datetime) -> int:
        stale = [k for k, e in self.entries.items() if e.last_verified_at < older_than]
        for key in stale:
            del self.entries[key]
        return len(stale)


def cache_entry(subject_key: str, granted: bool, verified_at: datetime, hours: float = 6) -> AccessCacheEntry:
    return AccessCacheEntry(
        subject_key=subject_key,
        granted=granted,
        cached_at=verified_at,
        last_verified_at=verified_at,
        freshness_window=timedelta(hours=hours),
        granted_at=verified_at if granted else None,
    )


def make_services(
    clock: FakeClock,
    ledger: FakeLedger,
    signer: FakeSigner,
    storage: ContentStorageClient,
    store: InMemoryAccessCacheStore,
    source: FakeSource | None = None,
    collector: EventCollector | None = None,
) -> Services:
    events = collector or EventCollector()
    retrier = RateLimitedReadRetrier(clock, delays_ms=[2000, 4000, 6000], max_retries=3)
    poller = LedgerConfirmationPoller(ledger, clock)
    tokens = TokenIndex(ledger, retrier)
    cache = AccessCacheManager(store, LedgerGrantSource(ledger, tokens), clock)
    coordinator = TokenMintCoordinator(signer, poller, contract_address=CONTRACT, event_sink=events)
    source = source or FakeSource()
    return Services(
        events=events,
        capture=CaptureController(clock=clock, source_factory=lambda c: source, event_sink=events),
        storage=storage,
        ledger=ledger,
        retrier=retrier,
        poller=poller,
        coordinator=coordinator,
        cache=cache,
        tokens=tokens,
        pipeline=OwnershipPipeline(storage, coordinator, cache, event_sink=events),
        purchase=AccessPurchaseFlow(ledger, signer, poller, cache, retrier=retrier, event_sink=events),
    )
