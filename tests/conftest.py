from __future__ import annotations

import pytest
from fakes import FALLBACK, GATEWAY, PIN_API, FakeClock, FakeLedger, InMemoryAccessCacheStore

from mintflow.clients.storage_client import ContentStorageClient
from mintflow.events import EventCollector


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manual_clock() -> FakeClock:
    return FakeClock(auto_advance=False)


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def store() -> InMemoryAccessCacheStore:
    return InMemoryAccessCacheStore()


@pytest.fixture
def storage() -> ContentStorageClient:
    return ContentStorageClient(
        api_url=PIN_API,
        api_key="key",
        secret_key="secret",
        gateway_url=GATEWAY,
        fallback_gateways=[FALLBACK, GATEWAY],
        upload_timeout=5,
        gateway_timeout=1,
        max_upload_bytes=1024 * 1024,
    )
