"""Minimal contract-call codec.

Covers exactly the types the workspace contract uses: ``address``,
``uint8``/``uint256``, ``bool``, ``string`` and ``string[]`` arguments, plus
single dynamic-struct return values.  Anything else raises ``ValueError``.

Encoding follows the standard head/tail layout: static values sit in the head,
dynamic values get an offset in the head and their bytes in the tail.
"""
from __future__ import annotations

from typing import Any, Sequence

from Crypto.Hash import keccak

WORD = 32


def keccak256(data: bytes) -> bytes:
    return keccak.new(digest_bits=256, data=data).digest()


def selector(signature: str) -> str:
    """``"checkAIAccess(address)"`` -> ``"0x" + first 4 bytes of its keccak``."""
    return "0x" + keccak256(signature.encode("ascii"))[:4].hex()


def event_topic(signature: str) -> str:
    return "0x" + keccak256(signature.encode("ascii")).hex()


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + _encode_single("address", address).hex()


def string_topic(value: str) -> str:
    """Indexed ``string`` parameters are stored as the keccak of their bytes."""
    return "0x" + keccak256(value.encode("utf-8")).hex()


def parse_types(signature: str) -> list[str]:
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [t.strip() for t in inner.split(",") if t.strip()]


def encode_call(signature: str, *args: Any) -> str:
    types = parse_types(signature)
    if len(types) != len(args):
        raise ValueError(f"{signature} takes {len(types)} arguments, got {len(args)}")
    return selector(signature) + encode_args(types, args).hex()


def encode_args(types: Sequence[str], values: Sequence[Any]) -> bytes:
    heads: list[bytes] = []
    tails: list[bytes] = []
    head_size = WORD * len(types)
    tail_size = 0
    for typ, value in zip(types, values):
        encoded = _encode_single(typ, value)
        if _is_dynamic(typ):
            heads.append(_uint(head_size + tail_size))
            tails.append(encoded)
            tail_size += len(encoded)
        else:
            heads.append(encoded)
    return b"".join(heads) + b"".join(tails)


def decode_args(types: Sequence[str], data: bytes, base: int = 0) -> list[Any]:
    return [_decode_single(typ, data, base + WORD * i, base) for i, typ in enumerate(types)]


def decode_struct(types: Sequence[str], data: bytes) -> list[Any]:
    """Decode a single dynamic tuple returned from a view call."""
    return decode_args(types, data, base=word(data, 0))


def decode_string_at(data: bytes, offset: int) -> str:
    length = word(data, offset)
    start = offset + WORD
    if start + length > len(data):
        raise ValueError("string runs past end of data")
    return data[start : start + length].decode("utf-8", errors="replace")


def word(data: bytes, offset: int) -> int:
    if offset < 0 or offset + WORD > len(data):
        raise ValueError(f"no 32-byte word at offset {offset} (data is {len(data)} bytes)")
    return int.from_bytes(data[offset : offset + WORD], "big")


def hex_to_bytes(value: str) -> bytes:
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


# ------------------------------------------------------------------
# Internals
# ------------------------------------------------------------------


def _is_dynamic(typ: str) -> bool:
    return typ in ("string", "bytes") or typ.endswith("[]")


def _uint(value: int) -> bytes:
    if value < 0:
        raise ValueError("unsigned value cannot be negative")
    return int(value).to_bytes(WORD, "big")


def _pad(raw: bytes) -> bytes:
    return raw + b"\x00" * (-len(raw) % WORD)


def _encode_single(typ: str, value: Any) -> bytes:
    if typ == "address":
        raw = hex_to_bytes(value)
        if len(raw) != 20:
            raise ValueError(f"not a 20-byte address: {value!r}")
        return b"\x00" * 12 + raw
    if typ.startswith("uint"):
        return _uint(int(value))
    if typ == "bool":
        return _uint(1 if value else 0)
    if typ == "string":
        raw = value.encode("utf-8")
        return _uint(len(raw)) + _pad(raw)
    if typ.endswith("[]"):
        items = list(value)
        return _uint(len(items)) + encode_args([typ[:-2]] * len(items), items)
    raise ValueError(f"unsupported ABI type: {typ}")


def _decode_single(typ: str, data: bytes, head: int, base: int) -> Any:
    if typ == "string":
        return decode_string_at(data, base + word(data, head))
    if typ.endswith("[]"):
        offset = base + word(data, head)
        count = word(data, offset)
        return decode_args([typ[:-2]] * count, data, offset + WORD)
    if typ == "address":
        word(data, head)
        return "0x" + data[head + 12 : head + WORD].hex()
    if typ.startswith("uint"):
        return word(data, head)
    if typ == "bool":
        return word(data, head) != 0
    raise ValueError(f"unsupported ABI type: {typ}")
