import asyncio
from typing import Any

import structlog

from mintflow import abi, contract
from mintflow.clients.signer import Signer
from mintflow.config import settings
from mintflow.errors import InvalidTransitionError, MintStoreError, TransactionRejectedError
from mintflow.events import EventSink, PipelineEvent, log_sink
from mintflow.models import (
    ContentMetadata,
    MintPayload,
    MintRequest,
    MintState,
    VerificationResult,
    VerifyOutcome,
    VideoContent,
    Visibility,
    VoiceContent,
    kind_name,
    whitelist_members,
)
from mintflow.services.poller import LedgerConfirmationPoller

logger = structlog.get_logger(__name__)


class TokenMintCoordinator:
    """Drives a MintRequest through Preparing -> ReadyToSubmit -> Submitted -> Confirmed | Failed.

    Signing is delegated to the :class:`Signer`; confirmation to the
    :class:`LedgerConfirmationPoller`.  A request only becomes Confirmed after
    it was Submitted and the poller reported a matching confirmed receipt.
    Rejected and reverted transactions are terminal and never resubmitted.

    A request that times out stays Submitted; :meth:`recheck` resumes it.
    """

    def __init__(
        self,
        signer: Signer,
        poller: LedgerConfirmationPoller,
        *,
        contract_address: str | None = None,
        sender: str | None = None,
        event_sink: EventSink = log_sink,
        store=None,
    ) -> None:
        self._signer = signer
        self._poller = poller
        self.contract_address = (contract_address or settings.contract_address).lower()
        # None means the recipient signs its own mint
        self._sender = sender.lower() if sender else None
        self._emit = event_sink
        self._store = store
        self._requests: dict[str, MintRequest] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def prepare(
        self,
        content_id: str,
        recipient: str,
        room_id: str,
        visibility: Visibility,
        extra_args: dict[str, Any] | None = None,
        *,
        metadata: ContentMetadata | None = None,
    ) -> MintRequest:
        """Build the mint call locally.  No state-changing call is made.

        *metadata* (when known) supplies kind, duration, transcript and video
        fields; *extra_args* can override any of ``duration``, ``transcript``,
        ``summary`` and ``participants``.
        """
        extra = dict(extra_args or {})
        content_kind = metadata.kind if metadata else (
            VideoContent() if extra.get("kind") == "video" else VoiceContent()
        )
        request = MintRequest(
            content_id=content_id,
            recipient=recipient.lower(),
            room_id=room_id,
            visibility=visibility,
            kind=kind_name(content_kind),
        )
        self._requests[request.id] = request

        duration = extra.get("duration", metadata.duration_seconds if metadata else 0)
        try:
            payload = self._build_payload(request, content_kind, int(round(duration)), extra)
        except (ValueError, TypeError) as e:
            await self._apply(request, request.transition(MintState.FAILED, reason=f"cannot encode mint call: {e}"))
            logger.error("mint_prepare_failed", request_id=request.id, content_id=content_id, error=str(e))
            return request

        request.prepared_payload = payload
        await self._apply(request, request.transition(MintState.READY_TO_SUBMIT))
        return request

    async def submit(self, request: MintRequest) -> str:
        """Hand the prepared payload to the signer and record the tx hash."""
        if request.state is not MintState.READY_TO_SUBMIT or request.prepared_payload is None:
            raise InvalidTransitionError(
                f"mint {request.id} is {request.state.value}, not ready to submit",
                content_id=request.content_id,
            )
        try:
            tx_hash = await self._signer.sign(request.prepared_payload)
        except TransactionRejectedError as e:
            await self.on_failed(request, e.reason)
            raise TransactionRejectedError(e.reason, content_id=request.content_id) from e

        await self._apply(request, request.transition(MintState.SUBMITTED, tx_hash=tx_hash))
        logger.info("mint_submitted", request_id=request.id, tx_hash=tx_hash)
        return tx_hash

    async def on_confirmed(self, request: MintRequest, result: VerificationResult) -> None:
        if not result.confirmed or result.tx_hash != request.tx_hash:
            raise InvalidTransitionError(
                f"mint {request.id} cannot be confirmed by {result.outcome.value} for {result.tx_hash}",
                tx_hash=request.tx_hash,
                content_id=request.content_id,
            )
        await self._apply(request, request.transition(MintState.CONFIRMED))

    async def on_failed(self, request: MintRequest, reason: str) -> None:
        await self._apply(request, request.transition(MintState.FAILED, reason=reason))
        logger.warning(
            "mint_failed",
            request_id=request.id,
            tx_hash=request.tx_hash,
            content_id=request.content_id,
            reason=reason,
        )

    async def drive(
        self, request: MintRequest, *, cancel: asyncio.Event | None = None
    ) -> VerificationResult:
        """Submit (if not yet submitted) and verify until a terminal outcome."""
        if request.state is MintState.READY_TO_SUBMIT:
            await self.submit(request)
        return await self._verify(request, cancel)

    async def recheck(
        self, request: MintRequest, *, cancel: asyncio.Event | None = None
    ) -> VerificationResult:
        """Run a fresh verification for a request still waiting in Submitted."""
        if request.state is not MintState.SUBMITTED:
            raise InvalidTransitionError(
                f"mint {request.id} is {request.state.value}; only submitted mints can be rechecked",
                tx_hash=request.tx_hash,
                content_id=request.content_id,
            )
        logger.info("mint_recheck", request_id=request.id, tx_hash=request.tx_hash)
        return await self._verify(request, cancel)

    async def get(self, request_id: str) -> MintRequest | None:
        request = self._requests.get(request_id)
        if request is None and self._store is not None:
            request = await self._store.get(request_id)
            if request is not None and not request.is_terminal:
                self._requests[request.id] = request
        return request

    async def pending(self) -> list[MintRequest]:
        """Submitted mints awaiting confirmation, in memory or left over from earlier runs."""
        found = {r.id: r for r in self._requests.values() if r.state is MintState.SUBMITTED}
        if self._store is not None:
            for request in await self._store.list_pending():
                found.setdefault(request.id, request)
        return list(found.values())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _verify(
        self, request: MintRequest, cancel: asyncio.Event | None
    ) -> VerificationResult:
        result = await self._poller.verify(
            request.tx_hash,
            expected_to=self.contract_address,
            expected_from=self._sender or request.recipient,
            cancel=cancel,
        )
        if result.outcome is VerifyOutcome.CONFIRMED:
            await self.on_confirmed(request, result)
        elif result.outcome is VerifyOutcome.FAILED:
            await self.on_failed(request, result.reason or "transaction failed")
        else:
            # timed out or cancelled: stays submitted, tx hash surfaced for recheck
            request.reason = result.reason
            self._emit(
                [
                    PipelineEvent(
                        kind=f"mint.{result.outcome.value}",
                        subject=request.id,
                        message=result.reason or "",
                        data={"tx_hash": request.tx_hash, "content_id": request.content_id},
                    )
                ]
            )
            await self._persist(request)
        return result

    def _build_payload(
        self,
        request: MintRequest,
        content_kind: VoiceContent | VideoContent,
        duration: int,
        extra: dict[str, Any],
    ) -> MintPayload:
        whitelist = whitelist_members(request.visibility)
        if isinstance(content_kind, VoiceContent):
            data = abi.encode_call(
                contract.MINT_VOICE,
                request.recipient,
                request.content_id,
                duration,
                request.room_id,
                whitelist,
                extra.get("transcript", content_kind.transcript) or "",
            )
            return MintPayload(to=self.contract_address, data=data, function="mintVoiceNFT")
        if isinstance(content_kind, VideoContent):
            data = abi.encode_call(
                contract.MINT_VIDEO,
                request.recipient,
                request.content_id,
                duration,
                request.room_id,
                list(extra.get("participants", content_kind.participants)),
                extra.get("summary", content_kind.summary) or "",
                whitelist,
            )
            return MintPayload(to=self.contract_address, data=data, function="mintVideoNFT")
        raise TypeError(f"unknown content kind: {content_kind!r}")

    async def _apply(self, request: MintRequest, events: list[PipelineEvent]) -> None:
        self._emit(events)
        persisted = await self._persist(request)
        if persisted and request.is_terminal:
            # the store answers get() for finished requests
            self._requests.pop(request.id, None)

    async def _persist(self, request: MintRequest) -> bool:
        """Save a snapshot.  A failed write is logged; the in-memory request stays authoritative."""
        if self._store is None:
            return False
        try:
            await self._store.save(request)
        except MintStoreError as e:
            logger.error(
                "mint_persist_failed",
                request_id=request.id,
                state=request.state.value,
                tx_hash=request.tx_hash,
                content_id=request.content_id,
                error=e.reason,
            )
            return False
        return True
