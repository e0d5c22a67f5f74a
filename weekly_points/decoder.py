"""
decoder.py — ActionLogged log decoding.

Event data comes in one of two historical layouts:

    bytes             [offset=0x20][len][payload...]
    timestamp+bytes   [uint256 timestamp][offset=0x40][len][payload...]

The payload is abi.encode(uint256 points, uint256 periodKey, ...); anything
after the first two words is ignored.

Every function here returns None on malformed input instead of raising.
"""
from __future__ import annotations

from dataclasses import dataclass

WORD = 32

LAYOUT_BYTES = "bytes"
LAYOUT_TIMESTAMP_BYTES = "timestamp+bytes"

# layout name -> index of the word holding the dynamic-bytes offset
_OFFSET_WORD = {
    LAYOUT_BYTES: 0,
    LAYOUT_TIMESTAMP_BYTES: 1,
}


@dataclass(frozen=True)
class Contribution:
    points: int
    period_key: int


@dataclass(frozen=True)
class DecodedContribution:
    address: str
    points: int
    period_key: int
    block_number: int | None = None


def _to_bytes(data_hex) -> bytes | None:
    if isinstance(data_hex, (bytes, bytearray)):
        return bytes(data_hex)
    if not isinstance(data_hex, str):
        return None
    h = data_hex[2:] if data_hex[:2].lower() == "0x" else data_hex
    if len(h) % 2:
        return None
    try:
        return bytes.fromhex(h)
    except ValueError:
        return None


def _word(data: bytes, start: int) -> int | None:
    if start < 0 or start + WORD > len(data):
        return None
    return int.from_bytes(data[start:start + WORD], "big")


def _dynamic_bytes(data: bytes, layout: str) -> bytes | None:
    offset = _word(data, _OFFSET_WORD[layout] * WORD)
    if offset is None:
        return None
    length = _word(data, offset)
    if length is None:
        return None
    start = offset + WORD
    end = start + length
    if end > len(data):
        return None
    return data[start:end]


def _candidate_layouts(first_word: int) -> tuple[str, ...]:
    if first_word == WORD:
        return (LAYOUT_BYTES, LAYOUT_TIMESTAMP_BYTES)
    return (LAYOUT_TIMESTAMP_BYTES,)


def extract_payload(data_hex) -> bytes | None:
    """Unwrap the dynamic `bytes` argument from raw log data."""
    data = _to_bytes(data_hex)
    if data is None:
        return None
    first = _word(data, 0)
    if first is None:
        return None
    for layout in _candidate_layouts(first):
        payload = _dynamic_bytes(data, layout)
        if payload is not None:
            return payload
    return None


def decode_contribution(payload) -> Contribution | None:
    if payload is None or len(payload) < 2 * WORD:
        return None
    return Contribution(
        points=int.from_bytes(payload[:WORD], "big"),
        period_key=int.from_bytes(payload[WORD:2 * WORD], "big"),
    )


def address_from_topic(topic) -> str | None:
    """Low 20 bytes of a 32-byte topic, as a lower-case 0x address."""
    raw = _to_bytes(topic)
    if raw is None or len(raw) < 20:
        return None
    return "0x" + raw[-20:].hex()


def decode_log(log: dict) -> DecodedContribution | None:
    topics = log.get("topics") or []
    if len(topics) < 2:
        return None
    address = address_from_topic(topics[1])
    if address is None:
        return None
    contribution = decode_contribution(extract_payload(log.get("data")))
    if contribution is None:
        return None

    block_number = log.get("blockNumber")
    if isinstance(block_number, str):
        try:
            block_number = int(block_number, 16)
        except ValueError:
            block_number = None

    return DecodedContribution(address, contribution.points, contribution.period_key, block_number)
