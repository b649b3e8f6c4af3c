import asyncio

import httpx
import structlog

from mintflow.clock import Clock, system_clock
from mintflow.config import settings
from mintflow.errors import LedgerReadError, ReadRateLimitError
from mintflow.models import (
    Receipt,
    TransactionRecord,
    TxStatus,
    VerificationResult,
    VerifyOutcome,
)

logger = structlog.get_logger(__name__)

_TRANSIENT = (httpx.HTTPError, ReadRateLimitError, LedgerReadError)


def backoff_schedule(max_attempts: int, base_delay_ms: int, max_delay_ms: int) -> list[int]:
    """``min(base * 2**(n-1), cap)`` for n = 1..max_attempts."""
    return [min(base_delay_ms * 2 ** (n - 1), max_delay_ms) for n in range(1, max_attempts + 1)]


class LedgerConfirmationPoller:
    """Polls a transaction receipt until it is confirmed, reverted or out of attempts.

    Per attempt *n* (1-indexed)::

        receipt success, confirmations >= required  -> CONFIRMED
            (unless to/from do not match the expected counterparties -> FAILED)
        receipt reverted                             -> FAILED, no further attempts
        absent / not enough confirmations, n < max   -> sleep min(base * 2**(n-1), cap)
        n == max                                     -> TIMED_OUT

    Fetch errors count against the same attempt budget.  The ``cancel`` event
    is checked before each sleep; it never overrides a terminal outcome.
    """

    def __init__(self, ledger, clock: Clock = system_clock) -> None:
        self._ledger = ledger
        self._clock = clock

    async def verify(
        self,
        tx_hash: str,
        *,
        expected_to: str | None = None,
        expected_from: str | None = None,
        required_confirmations: int | None = None,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> VerificationResult:
        required = settings.required_confirmations if required_confirmations is None else required_confirmations
        attempts = settings.confirmation_max_attempts if max_attempts is None else max_attempts
        delays = backoff_schedule(
            attempts,
            settings.confirmation_base_delay_ms if base_delay_ms is None else base_delay_ms,
            settings.confirmation_max_delay_ms if max_delay_ms is None else max_delay_ms,
        )
        record = TransactionRecord(tx_hash=tx_hash)

        for n in range(1, attempts + 1):
            record.attempt = n
            try:
                receipt = await self._ledger.get_receipt(tx_hash)
            except _TRANSIENT as e:
                logger.warning("receipt_fetch_failed", tx_hash=tx_hash, attempt=n, error=str(e))
                receipt = None
            record.observe(receipt, self._clock.now())

            if receipt is not None:
                if receipt.status is TxStatus.REVERTED:
                    logger.warning("tx_reverted", tx_hash=tx_hash, attempt=n)
                    return VerificationResult(
                        VerifyOutcome.FAILED, tx_hash, record, "transaction reverted"
                    )
                if receipt.status is TxStatus.SUCCESS and record.confirmations >= required:
                    mismatch = self._counterparty_mismatch(receipt, expected_to, expected_from)
                    if mismatch:
                        logger.error("tx_counterparty_mismatch", tx_hash=tx_hash, detail=mismatch)
                        return VerificationResult(VerifyOutcome.FAILED, tx_hash, record, mismatch)
                    logger.info(
                        "tx_confirmed",
                        tx_hash=tx_hash,
                        attempt=n,
                        confirmations=record.confirmations,
                    )
                    return VerificationResult(VerifyOutcome.CONFIRMED, tx_hash, record)

            if n == attempts:
                break
            if cancel is not None and cancel.is_set():
                logger.info("tx_poll_cancelled", tx_hash=tx_hash, attempt=n)
                return VerificationResult(
                    VerifyOutcome.CANCELLED, tx_hash, record, "verification cancelled"
                )
            delay_ms = delays[n - 1]
            logger.debug("tx_poll_wait", tx_hash=tx_hash, attempt=n, delay_ms=delay_ms)
            await self._clock.sleep(delay_ms / 1000)

        logger.warning("tx_poll_timed_out", tx_hash=tx_hash, attempts=attempts)
        return VerificationResult(
            VerifyOutcome.TIMED_OUT,
            tx_hash,
            record,
            f"not confirmed after {attempts} attempts; recheck {tx_hash} manually",
        )

    @staticmethod
    def _counterparty_mismatch(
        receipt: Receipt, expected_to: str | None, expected_from: str | None
    ) -> str | None:
        if expected_to and (receipt.to_address or "").lower() != expected_to.lower():
            return f"receipt target {receipt.to_address} is not {expected_to}"
        if expected_from and receipt.from_address.lower() != expected_from.lower():
            return f"receipt sender {receipt.from_address} is not {expected_from}"
        return None
