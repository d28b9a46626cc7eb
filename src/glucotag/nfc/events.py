from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ScanLogPersisted:
    entry_id: str
    path: Path
    timestamp: datetime


class EventChannel(Generic[T]):
    """
    Explicit publish/subscribe channel. Subscribers are called synchronously
    in subscription order; a failing subscriber is logged and skipped so it
    cannot break the publisher.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r on channel '%s' failed", callback, self.name)

    def __len__(self) -> int:
        return len(self._subscribers)
