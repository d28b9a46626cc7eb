"""Interfaces of the radio hardware collaborator."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol


class PollingMode(str, enum.Enum):
    ISO15693 = "iso15693"


@dataclass(frozen=True)
class DetectedTag:
    identifier: str
    tag_type: str


class RadioSession(Protocol):
    alert_message: str

    async def detect_tags(self) -> List[DetectedTag]:
        """Wait until at least one tag is in the field."""
        ...

    async def connect(self, tag: DetectedTag) -> None:
        ...

    async def read_single_block(self, tag: DetectedTag, index: int) -> bytes:
        ...

    async def invalidate(self, error_message: Optional[str] = None) -> None:
        """End the session; the stop command must not block the event loop."""
        ...

    def add_invalidation_callback(self, callback: Callable[[Optional[str]], None]) -> None:
        """Register a callback fired when the platform or user ends the session."""
        ...


class RadioBackend(Protocol):
    def is_available(self) -> bool:
        ...

    async def start(self, polling: PollingMode) -> RadioSession:
        """Begin a reading session. Raises HardwareUnavailable."""
        ...
