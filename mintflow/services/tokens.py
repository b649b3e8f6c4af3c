from datetime import datetime, timezone

import structlog

from mintflow import abi, contract
from mintflow.errors import LedgerReadError
from mintflow.models import TokenRecord, visibility_from_members
from mintflow.services.retrier import RateLimitedReadRetrier

logger = structlog.get_logger(__name__)


class TokenIndex:
    """Read model of minted tokens, rebuilt from ``NFTMinted`` logs.

    Every read goes through the rate-limit retrier.  ``list_tokens`` keeps the
    last good answer for each ``(room_id, creator)`` query and serves it when
    the retrier runs out of attempts.
    """

    def __init__(self, ledger, retrier: RateLimitedReadRetrier, contract_address: str | None = None) -> None:
        self._ledger = ledger
        self._retrier = retrier
        self._address = (contract_address or ledger.contract_address).lower()
        self._last_good: dict[tuple[str | None, str | None], list[TokenRecord]] = {}

    async def list_tokens(
        self, room_id: str | None = None, creator: str | None = None
    ) -> list[TokenRecord]:
        key = (room_id, creator.lower() if creator else None)

        async def read() -> list[TokenRecord]:
            return await self._read(room_id=room_id, creator=creator)

        if key in self._last_good:
            records = await self._retrier.wrap(read, fallback=self._last_good[key], label="list_tokens")
        else:
            records = await self._retrier.wrap(read, label="list_tokens")

        self._last_good[key] = records
        logger.debug("tokens_listed", room_id=room_id, creator=creator, count=len(records))
        return records

    async def find_by_content(self, content_id: str) -> TokenRecord | None:
        """Fresh lookup of the token minted for *content_id* (no stale fallback).

        The ``ipfsHash`` in each log's unindexed data narrows the scan, so only
        matching tokens (or logs without readable data) cost contract reads.
        """

        async def read() -> TokenRecord | None:
            logs = await self._ledger.get_event_logs(self._address, self._topics())
            for log in logs:
                if _logged_content_id(log) not in (content_id, None):
                    continue
                record = await self.get_token(self._token_id(log))
                if record.content_id == content_id:
                    return record
            return None

        return await self._retrier.wrap(read, label="find_by_content")

    async def get_token(self, token_id: int) -> TokenRecord:
        content = await self._ledger.get_content(token_id)
        owner = await self._ledger.owner_of(token_id)
        return TokenRecord(
            token_id=token_id,
            content_id=content["content_id"],
            owner=owner.lower(),
            room_id=content["room_id"],
            visibility=visibility_from_members(
                content["whitelisted_users"], is_private=content["is_private"]
            ),
            created_at=datetime.fromtimestamp(content["timestamp"], tz=timezone.utc),
            kind=content["kind"],
        )

    async def _read(self, room_id: str | None = None, creator: str | None = None) -> list[TokenRecord]:
        logs = await self._ledger.get_event_logs(self._address, self._topics(room_id, creator))
        return [await self.get_token(self._token_id(log)) for log in logs]

    @staticmethod
    def _topics(room_id: str | None = None, creator: str | None = None) -> list[str | None]:
        return [
            abi.event_topic(contract.NFT_MINTED),
            None,  # tokenId
            abi.address_topic(creator) if creator else None,
            abi.string_topic(room_id) if room_id else None,
        ]

    @staticmethod
    def _token_id(log: dict) -> int:
        try:
            return int(log["topics"][1], 16)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise LedgerReadError(f"NFTMinted log without a token id: {log!r}") from e


def _logged_content_id(log: dict) -> str | None:
    """``ipfsHash`` from the unindexed ``(uint8 contentType, string ipfsHash)`` data, if readable."""
    data = log.get("data")
    if not data or data == "0x":
        return None
    try:
        return abi.decode_args(["uint8", "string"], abi.hex_to_bytes(data))[1]
    except ValueError:
        return None
