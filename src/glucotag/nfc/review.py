from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .calibration import Calibration, CalibrationReferencePoint, CalibrationStore
from .errors import ScanLogDecodeError
from .events import ScanLogPersisted
from .scanlog import ScanLogStore

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 8


@dataclass(frozen=True)
class CalibrationCandidate:
    entry_id: str
    timestamp: datetime
    raw_value: int
    glucose: Optional[str] = None


def recent_candidates(store: ScanLogStore, limit: int = MAX_CANDIDATES) -> List[CalibrationCandidate]:
    """Newest logged scans that carry a raw value, for pairing with reference readings."""
    candidates: List[CalibrationCandidate] = []
    for entry_id in store.list():
        try:
            entry = store.load(entry_id)
        except (ScanLogDecodeError, FileNotFoundError) as exc:
            logger.debug("Skipping scan log %s: %s", entry_id, exc)
            continue
        raw_value = entry.raw_value
        if raw_value is None:
            continue
        glucose = entry.diagnostics.get("glucoseMgdl")
        candidates.append(
            CalibrationCandidate(
                entry_id=entry_id,
                timestamp=entry.timestamp,
                raw_value=raw_value,
                glucose=None if glucose is None else str(glucose),
            )
        )
    candidates.sort(key=lambda item: item.timestamp, reverse=True)
    return candidates[:limit]


class CalibrationReviewer:
    """
    Keeps the candidate list fresh by listening to scan log appends and
    turns user-supplied official readings into a calibration recompute.
    """

    def __init__(
        self,
        scan_log: ScanLogStore,
        calibration: CalibrationStore,
        *,
        limit: int = MAX_CANDIDATES,
    ) -> None:
        self.scan_log = scan_log
        self.calibration = calibration
        self.limit = limit
        self.candidates: List[CalibrationCandidate] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.scan_log.events.subscribe(self._on_persisted)
        self.refresh()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def refresh(self) -> List[CalibrationCandidate]:
        self.candidates = recent_candidates(self.scan_log, self.limit)
        return self.candidates

    def _on_persisted(self, event: ScanLogPersisted) -> None:
        logger.debug("Scan log %s persisted; refreshing calibration candidates", event.entry_id)
        self.refresh()

    def apply(self, official_values: Dict[str, Optional[float]]) -> Calibration:
        """Pair official values (by entry id) with candidates and recompute."""
        points = [
            CalibrationReferencePoint(raw_value=candidate.raw_value, official_value=official_values.get(candidate.entry_id))
            for candidate in self.candidates
        ]
        return self.calibration.recompute(points)
