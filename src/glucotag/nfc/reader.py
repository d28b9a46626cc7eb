from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .blocks import BLOCK_SIZE, EXPECTED_BLOCK_COUNT, RawBlockSet, block_hex
from .errors import BlockReadFailure
from .radio import DetectedTag
from .session import TagSession

logger = logging.getLogger(__name__)


@dataclass
class ReadPass:
    """Outcome of one sequential pass over the tag memory."""

    blocks: RawBlockSet = field(default_factory=list)
    error: Optional[BlockReadFailure] = None
    duration: float = 0.0

    @property
    def complete(self) -> bool:
        return self.error is None


class BlockReader:
    """
    Reads blocks 0..N-1 one at a time. A failing block ends the pass and the
    partial block list is returned; retries belong to the verifier.
    """

    def __init__(
        self,
        session: TagSession,
        tag: DetectedTag,
        *,
        block_count: int = EXPECTED_BLOCK_COUNT,
        block_size: int = BLOCK_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.tag = tag
        self.block_count = block_count
        self.block_size = block_size
        self._clock = clock
        self._passes = 0

    async def read_pass(self, deadline: Optional[float] = None) -> ReadPass:
        """One pass over the tag; stops between blocks once *deadline* (clock time) is reached."""
        self._passes += 1
        started = self._clock()
        blocks: RawBlockSet = []
        error: Optional[BlockReadFailure] = None
        for index in range(self.block_count):
            if deadline is not None and self._clock() >= deadline:
                error = BlockReadFailure(index, "time budget exhausted")
                break
            if self.session.invalidated:
                error = BlockReadFailure(index, self.session.invalidation_message or "session invalidated")
                break
            try:
                data = await self.session.radio_session.read_single_block(self.tag, index)
            except BlockReadFailure as exc:
                error = exc
                break
            except Exception as exc:
                error = BlockReadFailure(index, str(exc) or type(exc).__name__)
                break
            block = bytes(data)
            if len(block) != self.block_size:
                logger.debug("Block #%d returned %d bytes (expected %d)", index, len(block), self.block_size)
            blocks.append(block)
            logger.debug("Pass #%d block #%d -> %s", self._passes, index, block_hex(block))
        duration = self._clock() - started
        if error is not None:
            logger.debug("Pass #%d aborted after %d block(s): %s", self._passes, len(blocks), error)
        else:
            logger.debug("Pass #%d completed in %.2fs", self._passes, duration)
        return ReadPass(blocks=blocks, error=error, duration=duration)
