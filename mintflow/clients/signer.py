from typing import Protocol

import httpx
import structlog

from mintflow.config import settings
from mintflow.errors import TransactionRejectedError
from mintflow.models import MintPayload

logger = structlog.get_logger(__name__)


class Signer(Protocol):
    """Signs and broadcasts a prepared call, returning the transaction hash.

    Implementations raise :class:`TransactionRejectedError` when the user or
    the wallet refuses, or when the broadcast itself fails.
    """

    async def sign(self, payload: MintPayload) -> str: ...


class RelaySigner:
    """Forwards payloads to a wallet relay over HTTP.

    The relay receives ``{"to", "data", "value"?}`` and answers
    ``{"tx_hash": "0x..."}`` on success or ``{"error": "..."}`` otherwise.
    """

    def __init__(self, url: str | None = None, timeout: float | None = None) -> None:
        self._url = url or settings.signer_url
        self._timeout = settings.signer_timeout_seconds if timeout is None else timeout

    async def sign(self, payload: MintPayload) -> str:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._url, json=payload.to_signer_payload())
        except httpx.HTTPError as e:
            logger.error("signer_unreachable", url=self._url, error=str(e) or type(e).__name__)
            raise TransactionRejectedError(f"signer unreachable: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.is_error or body.get("error"):
            reason = body.get("error") or f"HTTP {resp.status_code}"
            logger.warning("signer_rejected", function=payload.function, reason=reason)
            raise TransactionRejectedError(f"signer rejected {payload.function}: {reason}")

        tx_hash = body.get("tx_hash") or body.get("hash")
        if not isinstance(tx_hash, str) or not tx_hash.startswith("0x"):
            raise TransactionRejectedError(f"signer answered without a transaction hash: {body!r}")
        return tx_hash.lower()
