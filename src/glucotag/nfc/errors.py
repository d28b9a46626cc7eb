"""
Exceptions raised by the acquisition pipeline.

Decode discards are not exceptions: the decoder reports them through the
``discardReason`` diagnostic. Verification timeouts and missing quorum are
outcomes (see ``VerificationOutcome``) rather than errors.
"""

from __future__ import annotations

from typing import Optional


class GlucotagError(Exception):
    """Base class for every error raised by the pipeline."""


class HardwareUnavailable(GlucotagError):
    """The radio could not start a reading session."""


class ConnectionFailed(GlucotagError):
    """Connecting to the detected tag failed."""


class UnsupportedTagType(GlucotagError):
    """The detected tag does not speak the expected protocol family."""

    def __init__(self, tag_type: str, expected: str = "iso15693") -> None:
        super().__init__(f"Unsupported tag type '{tag_type}' (expected {expected})")
        self.tag_type = tag_type
        self.expected = expected


class BlockReadFailure(GlucotagError):
    """A single block read failed. Aborts only the current attempt."""

    def __init__(self, block_index: int, reason: str) -> None:
        super().__init__(f"Block {block_index} read failed: {reason}")
        self.block_index = block_index
        self.reason = reason


class NoDataAcquired(GlucotagError):
    """No block was obtained across every verification attempt."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Scan produced no data after {attempts} attempt(s)")
        self.attempts = attempts


class PersistenceFailure(GlucotagError):
    """Writing the scan log or calibration record failed."""

    def __init__(self, target: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to persist {target}{detail}")
        self.target = target


class ScanLogDecodeError(GlucotagError):
    """A stored scan log entry is not well-formed."""

    def __init__(self, entry_id: str, reason: str) -> None:
        super().__init__(f"Scan log '{entry_id}' is malformed: {reason}")
        self.entry_id = entry_id
        self.reason = reason
