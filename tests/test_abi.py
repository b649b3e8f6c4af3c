import pytest

from mintflow import abi, contract


def test_selector_matches_known_value():
    assert abi.selector("transfer(address,uint256)") == "0xa9059cbb"


def test_event_topic_matches_known_value():
    assert abi.event_topic("Transfer(address,address,uint256)") == (
        "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    )


def test_address_topic_is_left_padded():
    topic = abi.address_topic("0x" + "AB" * 20)
    assert topic == "0x" + "00" * 12 + "ab" * 20


def test_string_uses_head_tail_layout():
    encoded = abi.encode_args(["string"], ["abc"])
    assert len(encoded) == 96
    assert abi.word(encoded, 0) == 32  # offset to tail
    assert abi.word(encoded, 32) == 3  # length
    assert encoded[64:67] == b"abc"
    assert encoded[67:] == b"\x00" * 29


def test_mint_calldata_decodes_back():
    recipient = "0x" + "a1" * 20
    data = abi.encode_call(
        contract.MINT_VOICE, recipient, "QmHash", 42, "room-1", ["0x" + "b2" * 20], "hello"
    )
    assert data.startswith(abi.selector(contract.MINT_VOICE))

    raw = abi.hex_to_bytes(data)[4:]
    decoded = abi.decode_args(abi.parse_types(contract.MINT_VOICE), raw)
    assert decoded == [recipient, "QmHash", 42, "room-1", ["0x" + "b2" * 20], "hello"]


def test_decode_struct_reads_content_tuple():
    values = [1, "QmVideo", 90, "room-9", "0x" + "c3" * 20, 1_700_000_000, True,
              ["alice"], "transcript", ["alice", "bob"], "summary"]
    body = abi.encode_args(contract.CONTENT_FIELDS, values)
    data = (32).to_bytes(32, "big") + body

    assert abi.decode_struct(contract.CONTENT_FIELDS, data) == values


def test_wrong_argument_count_is_rejected():
    with pytest.raises(ValueError):
        abi.encode_call(contract.CHECK_AI_ACCESS)


def test_bad_address_is_rejected():
    with pytest.raises(ValueError):
        abi.encode_call(contract.CHECK_AI_ACCESS, "0x1234")


def test_word_past_end_raises():
    with pytest.raises(ValueError):
        abi.word(b"\x00" * 31, 0)
