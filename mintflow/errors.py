from enum import Enum


class PipelineError(Exception):
    """Base for every error the capture-to-ownership pipeline raises.

    ``reason`` is human readable.  ``tx_hash`` / ``content_id`` are filled in
    whenever they are known so an operator can recover manually.
    """

    def __init__(
        self,
        reason: str,
        *,
        tx_hash: str | None = None,
        content_id: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash
        self.content_id = content_id


class CaptureError(PipelineError):
    """Fatal to the capture session.  Never retried automatically."""

    def __init__(self, reason: str, *, kind: str = "device_unavailable") -> None:
        super().__init__(reason)
        self.kind = kind  # permission_denied | device_unavailable | busy | encode_failed


class UploadFailure(str, Enum):
    TIMEOUT = "timeout"
    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"
    TOO_LARGE = "too_large"
    EMPTY = "empty"
    PROVIDER_ERROR = "provider_error"


class StorageUploadError(PipelineError):
    def __init__(self, kind: UploadFailure | str, reason: str | None = None) -> None:
        self.kind = UploadFailure(kind)
        super().__init__(reason or f"upload failed: {self.kind.value}")


class NotFoundError(PipelineError):
    """Content could not be read from any gateway."""


class TransactionRejectedError(PipelineError):
    """The signer refused or failed to broadcast the transaction."""


class TransactionRevertedError(PipelineError):
    """The ledger executed the transaction and reverted it."""


class TransactionPendingTimeout(PipelineError):
    """The attempt budget ran out before the transaction resolved."""


class ReadRateLimitError(PipelineError):
    """The ledger/indexer answered with a structured rate-limit error."""


class LedgerReadError(PipelineError):
    """Any other failed or malformed ledger/indexer answer."""


class CacheReadError(PipelineError):
    pass


class CacheWriteError(PipelineError):
    pass


class MintStoreError(PipelineError):
    """A mint request snapshot could not be read or written."""


class InvalidTransitionError(PipelineError):
    """A state machine was asked to move backwards or skip a stage."""
