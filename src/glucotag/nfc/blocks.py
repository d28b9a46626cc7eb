from __future__ import annotations

from typing import Iterable, List, Mapping, Sequence

BLOCK_SIZE = 8
EXPECTED_BLOCK_COUNT = 43
CRITICAL_BLOCKS = (0, 3)
TREND_BUFFER_START = 26
TREND_BUFFER_SLOTS = 16

RawBlockSet = List[bytes]


def block_hex(block: bytes) -> str:
    return block.hex().upper()


def hex_dump(blocks: Sequence[bytes]) -> List[dict]:
    """Serialize blocks into the `[{index, hex}]` layout used by scan logs."""
    return [{"index": index, "hex": block_hex(block)} for index, block in enumerate(blocks)]


def blocks_from_hex(entries: Iterable[Mapping[str, object]]) -> RawBlockSet:
    """
    Rebuild an ordered block set from `[{index, hex}]` records.

    Records may arrive in any order; gaps are filled with empty blocks so
    the decoder sees them as missing rather than shifted.
    """
    by_index: dict[int, bytes] = {}
    for entry in entries:
        try:
            index = int(entry["index"])  # type: ignore[call-overload]
            payload = str(entry["hex"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid block record {entry!r}") from exc
        if index < 0:
            raise ValueError(f"Negative block index {index}")
        if len(payload) % 2 != 0:
            raise ValueError(f"Block {index} hex payload has odd length")
        by_index[index] = bytes.fromhex(payload)
    if not by_index:
        return []
    return [by_index.get(index, b"") for index in range(max(by_index) + 1)]
