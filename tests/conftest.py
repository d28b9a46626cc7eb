from __future__ import annotations

from typing import Callable, List

import pytest

TREND_BUFFER_START = 26


def build_blocks(
    raw16: int = 1200,
    *,
    arrow: int = 4,
    trend_index: int = 5,
    age_minutes: int = 1000,
    state: int = 0x03,
) -> List[bytes]:
    """43 eight-byte blocks with one populated trend slot."""
    blocks = [bytes(8) for _ in range(43)]
    block0 = bytearray(8)
    block0[0:2] = age_minutes.to_bytes(2, "little")
    block0[4] = state
    blocks[0] = bytes(block0)
    block3 = bytearray(8)
    block3[3] = trend_index
    block3[4] = 7
    blocks[3] = bytes(block3)
    slot = bytearray(8)
    slot[0:2] = raw16.to_bytes(2, "little")
    slot[3] = arrow
    blocks[TREND_BUFFER_START + (trend_index & 0x1F) % 16] = bytes(slot)
    return blocks


@pytest.fixture
def make_blocks() -> Callable[..., List[bytes]]:
    return build_blocks
