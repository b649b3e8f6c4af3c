import httpx
import pytest
import respx
from fakes import FakeClock

from mintflow import abi, contract
from mintflow.clients.ledger_client import LedgerClient
from mintflow.errors import LedgerReadError, ReadRateLimitError
from mintflow.models import TxStatus

pytestmark = pytest.mark.asyncio

URL = "https://indexer.test/api"
CONTRACT = "0x" + "c0" * 20
SENDER = "0x" + "A1" * 20
TX = "0x" + "ab" * 32


def _client(clock: FakeClock | None = None) -> LedgerClient:
    return LedgerClient(
        indexer_url=URL,
        api_key="k",
        chain_id=8453,
        contract_address=CONTRACT,
        timeout=1,
        min_interval_ms=1000,
        clock=clock or FakeClock(),
    )


def _rpc(result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


class TestReceipts:

    async def test_receipt_with_confirmations(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            action = request.url.params["action"]
            if action == "eth_getTransactionReceipt":
                assert request.url.params["txhash"] == TX
                return _rpc({"blockNumber": "0x60", "status": "0x1", "from": SENDER, "to": CONTRACT})
            if action == "eth_blockNumber":
                return _rpc("0x64")
            raise AssertionError(action)

        with respx.mock:
            route = respx.get(URL).mock(side_effect=handler)
            receipt = await _client().get_receipt(TX)

        assert receipt.status is TxStatus.SUCCESS
        assert receipt.confirmations == 5
        assert receipt.from_address == SENDER.lower()
        assert receipt.to_address == CONTRACT
        assert route.calls.last.request.url.params["chainid"] == "8453"
        assert route.calls.last.request.url.params["apikey"] == "k"

    async def test_reverted_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params["action"] == "eth_blockNumber":
                return _rpc("0x60")
            return _rpc({"blockNumber": "0x60", "status": "0x0", "from": SENDER, "to": CONTRACT})

        with respx.mock:
            respx.get(URL).mock(side_effect=handler)
            receipt = await _client().get_receipt(TX)

        assert receipt.status is TxStatus.REVERTED
        assert receipt.confirmations == 1

    async def test_pending_receipt_is_none(self) -> None:
        with respx.mock:
            route = respx.get(URL).mock(return_value=_rpc(None))
            assert await _client().get_receipt(TX) is None
        assert route.call_count == 1


class TestRateLimits:

    async def test_rate_limit_envelope(self) -> None:
        with respx.mock:
            respx.get(URL).mock(
                return_value=httpx.Response(
                    200, json={"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}
                )
            )
            with pytest.raises(ReadRateLimitError):
                await _client().get_receipt(TX)

    async def test_http_429(self) -> None:
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(429))
            with pytest.raises(ReadRateLimitError):
                await _client().block_number()

    async def test_other_errors_are_read_errors(self) -> None:
        with respx.mock:
            respx.get(URL).mock(
                return_value=httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Invalid API Key"})
            )
            with pytest.raises(LedgerReadError):
                await _client().block_number()

    async def test_transport_failure_is_read_error(self) -> None:
        with respx.mock:
            respx.get(URL).mock(side_effect=httpx.ConnectError("down"))
            with pytest.raises(LedgerReadError):
                await _client().block_number()


class TestViews:

    async def test_has_access_calls_check(self) -> None:
        with respx.mock:
            route = respx.get(URL).mock(return_value=_rpc("0x" + "00" * 31 + "01"))
            granted = await _client().has_access(SENDER.lower())

        assert granted is True
        params = route.calls.last.request.url.params
        assert params["action"] == "eth_call"
        assert params["to"] == CONTRACT
        assert params["data"].startswith(abi.selector(contract.CHECK_AI_ACCESS))

    async def test_ai_access_price(self) -> None:
        with respx.mock:
            respx.get(URL).mock(return_value=_rpc("0x" + (10**15).to_bytes(32, "big").hex()))
            assert await _client().ai_access_price() == 10**15

    async def test_empty_call_result_is_read_error(self) -> None:
        with respx.mock:
            respx.get(URL).mock(return_value=_rpc("0x"))
            with pytest.raises(LedgerReadError):
                await _client().has_access(SENDER.lower())

    async def test_get_content_decodes_struct(self) -> None:
        values = [0, "QmVoice", 30, "room-1", "0x" + "a1" * 20, 1_700_000_000, False, [], "hi", [], ""]
        data = (32).to_bytes(32, "big") + abi.encode_args(contract.CONTENT_FIELDS, values)
        with respx.mock:
            respx.get(URL).mock(return_value=_rpc("0x" + data.hex()))
            content = await _client().get_content(7)

        assert content["kind"] == "voice"
        assert content["content_id"] == "QmVoice"
        assert content["room_id"] == "room-1"
        assert content["is_private"] is False

    async def test_event_logs_topics_and_empty_result(self) -> None:
        topic0 = abi.event_topic(contract.NFT_MINTED)
        creator = abi.address_topic(SENDER)
        with respx.mock:
            route = respx.get(URL).mock(
                return_value=httpx.Response(200, json={"status": "0", "message": "No records found", "result": []})
            )
            logs = await _client().get_event_logs(CONTRACT, [topic0, None, creator])

        assert logs == []
        params = route.calls.last.request.url.params
        assert params["topic0"] == topic0
        assert params["topic2"] == creator
        assert params["topic0_2_opr"] == "and"
        assert "topic1" not in params


class TestThrottle:

    async def test_requests_are_spaced_by_min_interval(self) -> None:
        clock = FakeClock()
        client = _client(clock)

        with respx.mock:
            respx.get(URL).mock(return_value=_rpc("0x64"))
            await client.block_number()
            await client.block_number()
            clock.advance(0.4)
            await client.block_number()
            clock.advance(5)
            await client.block_number()

        # first request goes straight out; later ones wait out the remainder
        assert clock.sleeps == [1.0, pytest.approx(0.6)]

    async def test_zero_interval_never_sleeps(self) -> None:
        clock = FakeClock()
        client = LedgerClient(
            indexer_url=URL, api_key="k", contract_address=CONTRACT, min_interval_ms=0, clock=clock
        )

        with respx.mock:
            respx.get(URL).mock(return_value=_rpc("0x64"))
            for _ in range(3):
                await client.block_number()

        assert clock.sleeps == []
