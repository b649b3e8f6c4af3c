import asyncio
from dataclasses import dataclass, replace
from typing import Any

import groq
import structlog

from mintflow import abi, contract
from mintflow.clients.signer import Signer
from mintflow.errors import (
    CacheWriteError,
    PipelineError,
    StorageUploadError,
    TransactionRejectedError,
    UploadFailure,
)
from mintflow.events import EventSink, PipelineEvent, log_sink
from mintflow.models import (
    ContentBlob,
    ContentMetadata,
    ContentRecord,
    MintPayload,
    MintRequest,
    MintState,
    VerificationResult,
    VideoContent,
    Visibility,
    VoiceContent,
)
from mintflow.services.access_cache import AccessCacheManager
from mintflow.services.grants import subject_key
from mintflow.services.minting import TokenMintCoordinator
from mintflow.services.poller import LedgerConfirmationPoller

logger = structlog.get_logger(__name__)


@dataclass
class PipelineResult:
    """Terminal answer of one pipeline run.

    ``outcome`` is one of ``confirmed``, ``failed``, ``timed_out``,
    ``cancelled`` or ``upload_failed``.  ``tx_hash`` / ``content_id`` are set
    whenever they are known so the run can be finished by hand.
    """

    outcome: str
    reason: str | None = None
    content: ContentRecord | None = None
    request: MintRequest | None = None
    verification: VerificationResult | None = None
    upload_failure: UploadFailure | None = None
    tx_hash: str | None = None

    @property
    def content_id(self) -> str | None:
        if self.content is not None:
            return self.content.content_id
        return self.request.content_id if self.request else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "reason": self.reason,
            "content_id": self.content_id,
            "gateway_urls": list(self.content.gateway_urls) if self.content else [],
            "tx_hash": self.tx_hash,
            "upload_failure": self.upload_failure.value if self.upload_failure else None,
            "mint": self.request.snapshot() if self.request else None,
        }


class OwnershipPipeline:
    """capture blob -> enrichment -> upload -> mint -> verify -> cache warm.

    The stages of one run are strictly sequential.  Independent runs share
    nothing but the access cache store.  Enrichment (transcript, summary) is
    best effort; every other stage failure ends the run with a
    :class:`PipelineResult` instead of an exception.
    """

    def __init__(
        self,
        storage,
        coordinator: TokenMintCoordinator,
        cache: AccessCacheManager,
        *,
        enricher=None,
        event_sink: EventSink = log_sink,
    ) -> None:
        self._storage = storage
        self._coordinator = coordinator
        self._cache = cache
        self._enricher = enricher
        self._emit = event_sink

    async def run(
        self,
        blob: ContentBlob,
        metadata: ContentMetadata,
        visibility: Visibility,
        *,
        recipient: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PipelineResult:
        recipient = (recipient or metadata.creator).lower()
        log = logger.bind(room_id=metadata.room_id, recipient=recipient)

        if blob.size_bytes and self._enricher is not None:
            metadata = await self.enrich(blob, metadata)

        # Upload
        try:
            content = await self._storage.upload(blob, metadata)
        except StorageUploadError as e:
            log.error("pipeline_upload_failed", failure=e.kind.value, reason=e.reason)
            self._emit(
                [PipelineEvent("content.upload_failed", metadata.room_id, e.reason, {"failure": e.kind.value})]
            )
            return PipelineResult("upload_failed", e.reason, upload_failure=e.kind)
        self._emit(
            [
                PipelineEvent(
                    "content.uploaded",
                    metadata.room_id,
                    data={"content_id": content.content_id, "size_bytes": content.size_bytes},
                )
            ]
        )

        # Mint
        request = await self._coordinator.prepare(
            content.content_id, recipient, metadata.room_id, visibility, metadata=metadata
        )
        if request.state is MintState.FAILED:
            return PipelineResult("failed", request.reason, content=content, request=request)

        try:
            verification = await self._coordinator.drive(request, cancel=cancel)
        except TransactionRejectedError as e:
            return PipelineResult("failed", e.reason, content=content, request=request)

        result = PipelineResult(
            verification.outcome.value,
            verification.reason,
            content=content,
            request=request,
            verification=verification,
            tx_hash=request.tx_hash,
        )
        if verification.confirmed:
            await self._warm(subject_key(recipient, content.content_id), request.tx_hash)
        log.info(
            "pipeline_finished",
            outcome=result.outcome,
            content_id=content.content_id,
            tx_hash=request.tx_hash,
        )
        return result

    async def recheck(self, request: MintRequest) -> PipelineResult:
        """Resume a mint left in Submitted and warm the cache if it confirms."""
        verification = await self._coordinator.recheck(request)
        if verification.confirmed:
            await self._warm(subject_key(request.recipient, request.content_id), request.tx_hash)
        return PipelineResult(
            verification.outcome.value,
            verification.reason,
            request=request,
            verification=verification,
            tx_hash=request.tx_hash,
        )

    async def enrich(self, blob: ContentBlob, metadata: ContentMetadata) -> ContentMetadata:
        """Add a transcript (and a summary for video).  Failures leave *metadata* as is."""
        kind = metadata.kind
        try:
            if isinstance(kind, VoiceContent):
                if kind.transcript:
                    return metadata
                transcript = await self._enricher.transcribe(blob.data, _filename(blob))
                return replace(metadata, kind=VoiceContent(transcript=transcript or None))
            if isinstance(kind, VideoContent):
                transcript = kind.transcript or await self._enricher.transcribe(blob.data, _filename(blob))
                summary = kind.summary
                if transcript and not summary:
                    summary = (await self._enricher.summarize(transcript)).get("summary") or None
                return replace(
                    metadata,
                    kind=VideoContent(
                        participants=kind.participants,
                        summary=summary,
                        transcript=transcript or None,
                    ),
                )
        except (groq.APIError, ValueError, KeyError) as e:
            logger.warning("enrichment_skipped", room_id=metadata.room_id, error=str(e))
            return metadata
        raise TypeError(f"unknown content kind: {kind!r}")

    async def _warm(self, key: str, tx_hash: str | None) -> None:
        try:
            await self._cache.set(key, True, evidence_tx_hash=tx_hash)
        except CacheWriteError as e:
            # next check revalidates against the ledger
            logger.warning("cache_warm_failed", subject=key, error=e.reason)


@dataclass
class PurchaseResult:
    outcome: str
    buyer: str
    price_wei: int | None = None
    tx_hash: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "buyer": self.buyer,
            "price_wei": str(self.price_wei) if self.price_wei is not None else None,
            "tx_hash": self.tx_hash,
            "reason": self.reason,
        }


class AccessPurchaseFlow:
    """Buy AI access: price read -> payable call -> verify -> cache warm."""

    def __init__(
        self,
        ledger,
        signer: Signer,
        poller: LedgerConfirmationPoller,
        cache: AccessCacheManager,
        *,
        retrier=None,
        event_sink: EventSink = log_sink,
    ) -> None:
        self._ledger = ledger
        self._signer = signer
        self._poller = poller
        self._cache = cache
        self._retrier = retrier
        self._emit = event_sink

    async def prepare(self) -> MintPayload:
        if self._retrier is not None:
            price = await self._retrier.wrap(self._ledger.ai_access_price, label="ai_access_price")
        else:
            price = await self._ledger.ai_access_price()
        return MintPayload(
            to=self._ledger.contract_address,
            data=abi.encode_call(contract.PURCHASE_AI_ACCESS),
            function="purchaseAIAccess",
            value=price,
        )

    async def purchase(self, buyer: str, *, cancel: asyncio.Event | None = None) -> PurchaseResult:
        buyer = buyer.lower()
        try:
            payload = await self.prepare()
            tx_hash = await self._signer.sign(payload)
        except PipelineError as e:
            logger.warning("purchase_failed", buyer=buyer, reason=e.reason)
            return PurchaseResult("failed", buyer, reason=e.reason)

        self._emit([PipelineEvent("access.submitted", buyer, data={"tx_hash": tx_hash})])
        verification = await self._poller.verify(
            tx_hash, expected_to=payload.to, expected_from=buyer, cancel=cancel
        )
        result = PurchaseResult(
            verification.outcome.value,
            buyer,
            price_wei=payload.value,
            tx_hash=tx_hash,
            reason=verification.reason,
        )
        if verification.confirmed:
            try:
                await self._cache.set(buyer, True, evidence_tx_hash=tx_hash)
            except CacheWriteError as e:
                logger.warning("cache_warm_failed", subject=buyer, error=e.reason)
        self._emit(
            [PipelineEvent(f"access.{verification.outcome.value}", buyer, verification.reason or "", {"tx_hash": tx_hash})]
        )
        logger.info("purchase_finished", buyer=buyer, outcome=result.outcome, tx_hash=tx_hash)
        return result


def _filename(blob: ContentBlob) -> str:
    return "capture." + blob.mime_type.rsplit("/", 1)[-1]
