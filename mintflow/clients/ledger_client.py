import asyncio
from typing import Any

import httpx
import structlog

from mintflow import abi, contract
from mintflow.clock import Clock, system_clock
from mintflow.config import settings
from mintflow.errors import LedgerReadError, ReadRateLimitError
from mintflow.models import Receipt, TxStatus

logger = structlog.get_logger(__name__)

_RATE_LIMIT_MARKERS = ("rate limit", "max calls per sec", "too many requests")
_NO_RECORDS = "no records found"


def _is_rate_limited(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


class LedgerClient:
    """Read-only access to the ledger through an Etherscan-v2-compatible indexer.

    Every call is a single HTTP request.  Rate-limit answers (HTTP 429 or the
    indexer's ``"Max rate limit reached"`` envelope) raise
    :class:`ReadRateLimitError`; anything else that is not a usable answer
    raises :class:`LedgerReadError`.  Retrying is the caller's decision.

    Requests are spaced at least *min_interval_ms* apart (measured on the
    injected clock) so bursts of reads stay under the indexer's quota.
    """

    def __init__(
        self,
        *,
        indexer_url: str | None = None,
        api_key: str | None = None,
        chain_id: int | None = None,
        contract_address: str | None = None,
        timeout: float | None = None,
        min_interval_ms: int | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._url = indexer_url or settings.indexer_url
        self._api_key = settings.indexer_api_key if api_key is None else api_key
        self._chain_id = settings.chain_id if chain_id is None else chain_id
        self.contract_address = (contract_address or settings.contract_address).lower()
        self._timeout = settings.indexer_timeout_seconds if timeout is None else timeout
        interval = settings.indexer_min_interval_ms if min_interval_ms is None else min_interval_ms
        self._min_interval = interval / 1000
        self._clock = clock
        self._last_request: float | None = None
        self._throttle_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def block_number(self) -> int:
        result = await self._get({"module": "proxy", "action": "eth_blockNumber"})
        return self._hex_int(result, "block number")

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        """The receipt with confirmations, or ``None`` while still pending."""
        raw = await self._get(
            {"module": "proxy", "action": "eth_getTransactionReceipt", "txhash": tx_hash}
        )
        if not raw or not raw.get("blockNumber"):
            return None

        block = self._hex_int(raw["blockNumber"], "receipt block")
        latest = await self.block_number()
        status = TxStatus.SUCCESS if self._hex_int(raw.get("status", "0x0"), "status") == 1 else TxStatus.REVERTED
        return Receipt(
            tx_hash=tx_hash,
            status=status,
            block_number=block,
            from_address=(raw.get("from") or "").lower(),
            to_address=(raw.get("to") or "").lower() or None,
            confirmations=max(0, latest - block + 1),
        )

    async def get_event_logs(
        self,
        address: str,
        topics: list[str | None],
        *,
        from_block: int = 0,
        to_block: int | str = "latest",
    ) -> list[dict[str, Any]]:
        """Raw logs emitted by *address*, filtered by positional topics (``None`` = any)."""
        params: dict[str, Any] = {
            "module": "logs",
            "action": "getLogs",
            "address": address,
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        for i, topic in enumerate(topics):
            if topic is None:
                continue
            params[f"topic{i}"] = topic
            if i > 0 and topics[0] is not None:
                params[f"topic0_{i}_opr"] = "and"
        result = await self._get(params)
        return list(result or [])

    # ------------------------------------------------------------------
    # Contract views
    # ------------------------------------------------------------------

    async def call(self, data: str, to: str | None = None) -> bytes:
        result = await self._get(
            {
                "module": "proxy",
                "action": "eth_call",
                "to": to or self.contract_address,
                "data": data,
                "tag": "latest",
            }
        )
        if not isinstance(result, str):
            raise LedgerReadError(f"eth_call returned {type(result).__name__}, expected hex")
        try:
            return abi.hex_to_bytes(result)
        except ValueError as e:
            raise LedgerReadError(f"eth_call returned non-hex data: {result[:40]}") from e

    async def has_access(self, subject_key: str) -> bool:
        """Authoritative grant check: ``checkAIAccess(subject)``."""
        raw = await self.call(abi.encode_call(contract.CHECK_AI_ACCESS, subject_key))
        return bool(self._decode(["bool"], raw)[0])

    async def ai_access_price(self) -> int:
        raw = await self.call(abi.encode_call(contract.AI_ACCESS_PRICE))
        return self._decode(["uint256"], raw)[0]

    async def owner_of(self, token_id: int) -> str:
        raw = await self.call(abi.encode_call(contract.OWNER_OF, token_id))
        return self._decode(["address"], raw)[0]

    async def get_content(self, token_id: int) -> dict[str, Any]:
        raw = await self.call(abi.encode_call(contract.GET_CONTENT, token_id))
        try:
            fields = abi.decode_struct(contract.CONTENT_FIELDS, raw)
        except ValueError as e:
            raise LedgerReadError(f"could not decode content for token {token_id}: {e}") from e
        (
            content_type,
            ipfs_hash,
            duration,
            room_id,
            creator,
            timestamp,
            is_private,
            whitelisted,
            transcription,
            participants,
            summary,
        ) = fields
        return {
            "kind": contract.CONTENT_TYPES.get(content_type, "unknown"),
            "content_id": ipfs_hash,
            "duration": duration,
            "room_id": room_id,
            "creator": creator,
            "timestamp": timestamp,
            "is_private": is_private,
            "whitelisted_users": whitelisted,
            "transcription": transcription,
            "participants": participants,
            "summary": summary,
        }

    def status(self) -> dict[str, Any]:
        return {
            "configured": bool(self._api_key),
            "chain_id": self._chain_id,
            "contract_address": self.contract_address,
        }

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get(self, params: dict[str, Any]) -> Any:
        query = {"chainid": self._chain_id, **params, "apikey": self._api_key}
        action = params.get("action")
        await self._throttle()
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(self._url, params=query)
        except httpx.HTTPError as e:
            logger.warning("ledger_request_error", action=action, error=str(e) or type(e).__name__)
            raise LedgerReadError(f"{action} request failed: {e}") from e

        if resp.status_code == 429:
            raise ReadRateLimitError(f"{action}: HTTP 429 from indexer")
        if resp.is_error:
            raise LedgerReadError(f"{action}: HTTP {resp.status_code} from indexer")

        try:
            body = resp.json()
        except ValueError as e:
            raise LedgerReadError(f"{action}: indexer answered with non-JSON body") from e

        # JSON-RPC proxy envelope
        error = body.get("error")
        if error:
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            if _is_rate_limited(message):
                raise ReadRateLimitError(f"{action}: {message}")
            raise LedgerReadError(f"{action}: {message}")

        # REST envelope: {"status": "0", "message": "NOTOK", "result": "..."}
        if body.get("status") == "0":
            message = f"{body.get('message', '')} {body.get('result', '')}".strip()
            if _is_rate_limited(message):
                raise ReadRateLimitError(f"{action}: {message}")
            if _NO_RECORDS in message.lower():
                return []
            raise LedgerReadError(f"{action}: {message}")

        result = body.get("result")
        if isinstance(result, str) and _is_rate_limited(result):
            raise ReadRateLimitError(f"{action}: {result}")
        return result

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            if self._last_request is not None:
                wait = self._last_request + self._min_interval - self._clock.monotonic()
                if wait > 0:
                    logger.debug("ledger_throttle", wait_ms=int(wait * 1000))
                    await self._clock.sleep(wait)
            self._last_request = self._clock.monotonic()

    @staticmethod
    def _hex_int(value: Any, what: str) -> int:
        try:
            return int(value, 16)
        except (TypeError, ValueError) as e:
            raise LedgerReadError(f"malformed {what}: {value!r}") from e

    @staticmethod
    def _decode(types: list[str], raw: bytes) -> list[Any]:
        try:
            return abi.decode_args(types, raw)
        except ValueError as e:
            raise LedgerReadError(f"could not decode {types}: {e}") from e
