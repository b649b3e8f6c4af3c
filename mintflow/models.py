import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from mintflow.errors import InvalidTransitionError
from mintflow.events import PipelineEvent

# ------------------------------------------------------------------
# Capture
# ------------------------------------------------------------------


class CaptureState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZED = "finalized"
    ERROR = "error"


_CAPTURE_TRANSITIONS: dict[CaptureState, set[CaptureState]] = {
    CaptureState.IDLE: {CaptureState.RECORDING, CaptureState.ERROR},
    CaptureState.RECORDING: {CaptureState.FINALIZED, CaptureState.ERROR},
    CaptureState.FINALIZED: set(),
    CaptureState.ERROR: set(),
}


@dataclass
class CaptureConstraints:
    sample_rate: int = 16000
    channels: int = 1
    device: int | str | None = None


@dataclass
class CaptureSession:
    id: str
    max_duration_seconds: float
    elapsed_seconds: float = 0.0
    state: CaptureState = CaptureState.IDLE
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (CaptureState.FINALIZED, CaptureState.ERROR)

    def record_elapsed(self, seconds: float) -> None:
        """Elapsed time never exceeds the session's maximum duration."""
        self.elapsed_seconds = max(0.0, min(seconds, self.max_duration_seconds))

    def transition(self, new_state: CaptureState, *, reason: str | None = None) -> list[PipelineEvent]:
        if new_state not in _CAPTURE_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"capture {self.id}: {self.state.value} -> {new_state.value} is not allowed"
            )
        self.state = new_state
        if new_state is CaptureState.ERROR:
            self.error = reason
        return [
            PipelineEvent(
                kind=f"capture.{new_state.value}",
                subject=self.id,
                message=reason or "",
                data={"elapsed_seconds": round(self.elapsed_seconds, 2)},
            )
        ]


@dataclass(frozen=True)
class ContentBlob:
    data: bytes
    mime_type: str
    duration_seconds: float

    @property
    def size_bytes(self) -> int:
        return len(self.data)


# ------------------------------------------------------------------
# Content
# ------------------------------------------------------------------


@dataclass(frozen=True)
class VoiceContent:
    transcript: str | None = None


@dataclass(frozen=True)
class VideoContent:
    participants: tuple[str, ...] = ()
    summary: str | None = None
    transcript: str | None = None


ContentKind = VoiceContent | VideoContent


def kind_name(kind: ContentKind) -> str:
    if isinstance(kind, VoiceContent):
        return "voice"
    if isinstance(kind, VideoContent):
        return "video"
    raise TypeError(f"unknown content kind: {kind!r}")


@dataclass(frozen=True)
class ContentMetadata:
    kind: ContentKind
    room_id: str
    creator: str
    duration_seconds: float
    name: str | None = None

    @property
    def transcript(self) -> str | None:
        return self.kind.transcript

    def to_keyvalues(self) -> dict[str, str]:
        """Flat string map stored next to the pinned file."""
        values = {
            "app": "mintflow",
            "type": kind_name(self.kind),
            "roomId": self.room_id,
            "creator": self.creator,
            "duration": str(int(round(self.duration_seconds))),
        }
        if isinstance(self.kind, VideoContent):
            values["participants"] = ",".join(self.kind.participants)
            if self.kind.summary:
                values["summary"] = self.kind.summary
        return values


@dataclass(frozen=True)
class ContentRecord:
    content_id: str
    size_bytes: int
    mime_type: str
    gateway_urls: tuple[str, ...]
    metadata: ContentMetadata


# ------------------------------------------------------------------
# Minting
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Public:
    pass


@dataclass(frozen=True)
class Whitelist:
    members: frozenset[str]


Visibility = Public | Whitelist


def whitelist_members(visibility: Visibility) -> list[str]:
    if isinstance(visibility, Public):
        return []
    if isinstance(visibility, Whitelist):
        return sorted(visibility.members)
    raise TypeError(f"unknown visibility: {visibility!r}")


def visibility_from_members(members: list[str] | None, *, is_private: bool | None = None) -> Visibility:
    if is_private is False or not members:
        return Public()
    return Whitelist(frozenset(members))


class MintState(str, Enum):
    PREPARING = "preparing"
    READY_TO_SUBMIT = "ready_to_submit"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_MINT_TRANSITIONS: dict[MintState, set[MintState]] = {
    MintState.PREPARING: {MintState.READY_TO_SUBMIT, MintState.FAILED},
    MintState.READY_TO_SUBMIT: {MintState.SUBMITTED, MintState.FAILED},
    MintState.SUBMITTED: {MintState.CONFIRMED, MintState.FAILED},
    MintState.CONFIRMED: set(),
    MintState.FAILED: set(),
}


@dataclass(frozen=True)
class MintPayload:
    """What the external signer receives: target, calldata and optional value."""

    to: str
    data: str
    function: str
    value: int | None = None

    def to_signer_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"to": self.to, "data": self.data}
        if self.value is not None:
            payload["value"] = hex(self.value)
        return payload


@dataclass
class MintRequest:
    content_id: str
    recipient: str
    room_id: str
    visibility: Visibility
    kind: str = "voice"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    prepared_payload: MintPayload | None = None
    state: MintState = MintState.PREPARING
    tx_hash: str | None = None
    reason: str | None = None
    history: list[MintState] = field(default_factory=lambda: [MintState.PREPARING])

    @property
    def is_terminal(self) -> bool:
        return self.state in (MintState.CONFIRMED, MintState.FAILED)

    def transition(
        self,
        new_state: MintState,
        *,
        tx_hash: str | None = None,
        reason: str | None = None,
    ) -> list[PipelineEvent]:
        """Move forward one stage.  Backwards moves and skips raise."""
        if new_state not in _MINT_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"mint {self.id}: {self.state.value} -> {new_state.value} is not allowed",
                tx_hash=self.tx_hash,
                content_id=self.content_id,
            )
        if new_state is MintState.SUBMITTED:
            if not tx_hash:
                raise InvalidTransitionError("submitted requires a tx_hash", content_id=self.content_id)
            self.tx_hash = tx_hash
        if reason:
            self.reason = reason
        self.state = new_state
        self.history.append(new_state)

        data: dict[str, Any] = {"content_id": self.content_id, "room_id": self.room_id}
        if self.tx_hash:
            data["tx_hash"] = self.tx_hash
        return [
            PipelineEvent(
                kind=f"mint.{new_state.value}",
                subject=self.id,
                message=reason or "",
                data=data,
            )
        ]

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content_id": self.content_id,
            "recipient": self.recipient,
            "room_id": self.room_id,
            "kind": self.kind,
            "visibility": whitelist_members(self.visibility),
            "state": self.state.value,
            "tx_hash": self.tx_hash,
            "reason": self.reason,
        }


# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------


class TxStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    REVERTED = "reverted"


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: TxStatus
    block_number: int
    from_address: str
    to_address: str | None
    confirmations: int


@dataclass
class TransactionRecord:
    tx_hash: str
    status: TxStatus = TxStatus.PENDING
    confirmations: int = 0
    last_checked_at: datetime | None = None
    attempt: int = 0

    def observe(self, receipt: Receipt | None, checked_at: datetime) -> None:
        self.last_checked_at = checked_at
        if receipt is None:
            return
        self.status = receipt.status
        # confirmations only ever go up while polling
        self.confirmations = max(self.confirmations, receipt.confirmations)


class VerifyOutcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class VerificationResult:
    outcome: VerifyOutcome
    tx_hash: str
    record: TransactionRecord
    reason: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.outcome is VerifyOutcome.CONFIRMED


# ------------------------------------------------------------------
# Access
# ------------------------------------------------------------------


@dataclass
class AccessCacheEntry:
    subject_key: str
    granted: bool
    cached_at: datetime
    last_verified_at: datetime
    freshness_window: timedelta
    granted_at: datetime | None = None
    evidence_tx_hash: str | None = None

    def is_fresh(self, now: datetime) -> bool:
        return now - self.last_verified_at <= self.freshness_window


class GrantSource(str, Enum):
    CACHE = "cache"
    LEDGER = "ledger"
    FAIL_CLOSED = "fail_closed"


@dataclass(frozen=True)
class Grant:
    subject_key: str
    granted: bool
    source: GrantSource
    granted_at: datetime | None = None
    evidence_tx_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject_key,
            "granted": self.granted,
            "source": self.source.value,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "evidence_tx_hash": self.evidence_tx_hash,
        }


# ------------------------------------------------------------------
# Read model
# ------------------------------------------------------------------


@dataclass(frozen=True)
class TokenRecord:
    """Derived purely from ledger reads."""

    token_id: int
    content_id: str
    owner: str
    room_id: str
    visibility: Visibility
    created_at: datetime
    kind: str = "voice"
