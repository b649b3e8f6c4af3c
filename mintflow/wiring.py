from dataclasses import dataclass

from mintflow.clients.groq_client import GroqClient
from mintflow.clients.ledger_client import LedgerClient
from mintflow.clients.signer import RelaySigner
from mintflow.clients.storage_client import ContentStorageClient
from mintflow.clock import Clock, system_clock
from mintflow.config import settings
from mintflow.events import EventCollector, log_sink
from mintflow.recording.controller import CaptureController
from mintflow.services.access_cache import AccessCacheManager
from mintflow.services.grants import LedgerGrantSource
from mintflow.services.minting import TokenMintCoordinator
from mintflow.services.pipeline import AccessPurchaseFlow, OwnershipPipeline
from mintflow.services.poller import LedgerConfirmationPoller
from mintflow.services.retrier import RateLimitedReadRetrier
from mintflow.services.stores import SqliteAccessCacheStore, SqliteMintRequestStore
from mintflow.services.tokens import TokenIndex


@dataclass
class Services:
    """Every pipeline component, wired once per process in the app lifespan."""

    events: EventCollector
    capture: CaptureController
    storage: ContentStorageClient
    ledger: LedgerClient
    retrier: RateLimitedReadRetrier
    poller: LedgerConfirmationPoller
    coordinator: TokenMintCoordinator
    cache: AccessCacheManager
    tokens: TokenIndex
    pipeline: OwnershipPipeline
    purchase: AccessPurchaseFlow


def build_services(clock: Clock = system_clock, db_path: str | None = None) -> Services:
    events = EventCollector(max_events=0)
    events.subscribe(log_sink)

    storage = ContentStorageClient()
    ledger = LedgerClient(clock=clock)
    signer = RelaySigner()
    retrier = RateLimitedReadRetrier(clock)
    poller = LedgerConfirmationPoller(ledger, clock)
    tokens = TokenIndex(ledger, retrier)
    cache = AccessCacheManager(
        SqliteAccessCacheStore(db_path),
        LedgerGrantSource(ledger, tokens),
        clock,
        retrier=retrier,
    )
    coordinator = TokenMintCoordinator(
        signer,
        poller,
        event_sink=events,
        store=SqliteMintRequestStore(db_path),
    )
    enricher = GroqClient() if settings.groq_api_key != "gsk_placeholder" else None

    return Services(
        events=events,
        capture=CaptureController(clock=clock, event_sink=events),
        storage=storage,
        ledger=ledger,
        retrier=retrier,
        poller=poller,
        coordinator=coordinator,
        cache=cache,
        tokens=tokens,
        pipeline=OwnershipPipeline(storage, coordinator, cache, enricher=enricher, event_sink=events),
        purchase=AccessPurchaseFlow(ledger, signer, poller, cache, retrier=retrier, event_sink=events),
    )
