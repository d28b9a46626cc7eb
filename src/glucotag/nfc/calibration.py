from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .errors import PersistenceFailure

logger = logging.getLogger(__name__)

MIN_REFERENCE_POINTS = 2


@dataclass(frozen=True)
class Calibration:
    slope: float = 1.0
    intercept: float = 0.0
    is_calibrated: bool = False

    def apply(self, raw_value: float) -> float:
        return raw_value * self.slope + self.intercept

    def to_mapping(self) -> Dict[str, object]:
        return {"slope": self.slope, "intercept": self.intercept, "isCalibrated": self.is_calibrated}

    @staticmethod
    def from_mapping(data: Dict[str, object]) -> "Calibration":
        try:
            slope = float(data["slope"])  # type: ignore[arg-type]
            intercept = float(data["intercept"])  # type: ignore[arg-type]
            flag = data["isCalibrated"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Calibration record invalid: {exc}") from exc
        if not isinstance(flag, bool):
            raise ValueError("Calibration field 'isCalibrated' must be a boolean")
        if not (np.isfinite(slope) and np.isfinite(intercept)):
            raise ValueError("Calibration slope/intercept must be finite")
        return Calibration(slope=slope, intercept=intercept, is_calibrated=flag)


UNCALIBRATED = Calibration()


@dataclass(frozen=True)
class CalibrationReferencePoint:
    """A logged raw value paired with an externally measured glucose value."""

    raw_value: int
    official_value: Optional[float] = None

    @property
    def eligible(self) -> bool:
        return self.official_value is not None and np.isfinite(self.official_value)


def linear_regression(points: Iterable[Tuple[float, float]]) -> Tuple[float, float]:
    """
    Ordinary least squares through the closed-form sums.

    Degenerate input (every x identical) yields the identity mapping.
    """
    data = np.asarray(list(points), dtype=float)
    n = float(data.shape[0])
    x = data[:, 0]
    y = data[:, 1]
    sum_x = float(np.sum(x))
    sum_y = float(np.sum(y))
    sum_xy = float(np.sum(x * y))
    sum_x2 = float(np.sum(x * x))
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 1.0, 0.0
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept


class CalibrationStore:
    """
    Single persisted calibration record shared by the decode path and the
    calibration review path. Writes are last-writer-wins.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> Calibration:
        if not self.path.exists():
            return UNCALIBRATED
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("calibration payload is not an object")
            return Calibration.from_mapping(data)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable calibration at %s: %s", self.path, exc)
            return UNCALIBRATED

    def recompute(self, points: Iterable[CalibrationReferencePoint]) -> Calibration:
        eligible: List[Tuple[float, float]] = [
            (float(point.raw_value), float(point.official_value))  # type: ignore[arg-type]
            for point in points
            if point.eligible
        ]
        if len(eligible) < MIN_REFERENCE_POINTS:
            logger.info(
                "Calibration unchanged: %d eligible point(s), need %d",
                len(eligible),
                MIN_REFERENCE_POINTS,
            )
            return self.load()
        slope, intercept = linear_regression(eligible)
        calibration = Calibration(slope=slope, intercept=intercept, is_calibrated=True)
        self._save(calibration)
        logger.info(
            "Calibration recomputed from %d points (slope=%.6f intercept=%.3f)",
            len(eligible),
            slope,
            intercept,
        )
        return calibration

    def reset(self) -> Calibration:
        self._save(UNCALIBRATED)
        logger.info("Calibration reset to uncalibrated default")
        return UNCALIBRATED

    def _save(self, calibration: Calibration) -> None:
        payload = json.dumps(calibration.to_mapping(), indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".calibration-", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceFailure(str(self.path), exc) from exc
