"""
Heuristic decoder for Libre-style sensor memory dumps. Experimental, not for
medical decisions.

Memory layout (43 blocks of 8 bytes):
- block 0: two candidate age counters (bytes 0..3) and the sensor state
  byte (offset 4).
- block 3: trend pointer (offset 3, low 5 bits) and history pointer
  (offset 4).
- blocks 26..41: 16-slot circular trend buffer. Each slot starts with a
  little-endian raw glucose sample; byte 3 carries the trend arrow code.

Converting raw samples to mg/dL needs factory constants that are not
available, so an uncalibrated decode tries a short list of scalings and keeps
the first one inside the physiological band. The 13-bit sample mask and the
"largest plausible age" rule are best guesses kept stable so logged scans
decode identically over time.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .blocks import (
    CRITICAL_BLOCKS,
    EXPECTED_BLOCK_COUNT,
    TREND_BUFFER_SLOTS,
    TREND_BUFFER_START,
    RawBlockSet,
)
from .calibration import Calibration

logger = logging.getLogger(__name__)

GLUCOSE_MIN_MGDL = 40.0
GLUCOSE_MAX_MGDL = 500.0
RAW_SAMPLE_MASK = 0x1FFF
TREND_INDEX_MASK = 0x1F
TREND_ARROW_MASK = 0x7F
MAX_SENSOR_AGE_MINUTES = 14 * 24 * 60
WARMUP_MINUTES = 60


class Trend(str, enum.Enum):
    NORTH = "north"
    NORTH_EAST = "northEast"
    EAST = "east"
    SOUTH_EAST = "southEast"
    SOUTH = "south"
    UNKNOWN = "unknown"

    @property
    def symbol(self) -> str:
        return _TREND_SYMBOLS[self]


_TREND_SYMBOLS = {
    Trend.NORTH: "↑",
    Trend.NORTH_EAST: "↗",
    Trend.EAST: "→",
    Trend.SOUTH_EAST: "↘",
    Trend.SOUTH: "↓",
    Trend.UNKNOWN: "?",
}

# Evaluated top to bottom, first match wins.
TREND_RULES: Tuple[Tuple[Callable[[int], bool], Trend], ...] = (
    (lambda code: code == 2, Trend.SOUTH),
    (lambda code: code == 3, Trend.SOUTH_EAST),
    (lambda code: code == 4, Trend.EAST),
    (lambda code: code == 5, Trend.NORTH_EAST),
    (lambda code: code == 6, Trend.NORTH),
)

SCALING_RULES: Tuple[Tuple[str, Callable[[float], float]], ...] = (
    ("/10", lambda raw: raw / 10.0),
    ("*1", lambda raw: raw),
)


class DiscardReason(str, enum.Enum):
    INSUFFICIENT_BLOCKS = "insufficientBlocks"
    MISSING_CRITICAL_BLOCK = "missingCriticalBlock"
    TREND_BLOCK_MISSING = "trendBlockMissing"
    TREND_BLOCK_TOO_SHORT = "trendBlockTooShort"
    CALIBRATED_OUT_OF_RANGE = "calibratedValueOutOfRange"
    OUT_OF_RANGE_RAW = "outOfRangeRawValue"


@dataclass
class DecodedReading:
    timestamp: datetime
    glucose: Optional[float]
    trend: Trend
    diagnostics: Dict[str, str] = field(default_factory=dict)
    raw_blocks: RawBlockSet = field(default_factory=list)

    @property
    def raw_value(self) -> Optional[int]:
        """Masked raw sample, when the trend slot could be read."""
        value = self.diagnostics.get("rawGlucoseMasked")
        return int(value) if value is not None else None

    @property
    def discard_reason(self) -> Optional[str]:
        return self.diagnostics.get("discardReason")

    @property
    def plausible(self) -> bool:
        return self.glucose is not None


def is_plausible(value: float) -> bool:
    return GLUCOSE_MIN_MGDL <= value <= GLUCOSE_MAX_MGDL


def trend_from_code(code: int) -> Trend:
    for predicate, trend in TREND_RULES:
        if predicate(code):
            return trend
    return Trend.UNKNOWN


def resolve_glucose(raw: float, calibration: Optional[Calibration]) -> Tuple[Optional[float], str, Optional[str]]:
    """Return (glucose, applied scaling, discard reason)."""
    if calibration is not None and calibration.is_calibrated:
        calibrated = calibration.apply(raw)
        if is_plausible(calibrated):
            return calibrated, "calibrated", None
        return None, "none", DiscardReason.CALIBRATED_OUT_OF_RANGE.value
    for label, scale in SCALING_RULES:
        value = scale(raw)
        if is_plausible(value):
            return value, label, None
    return None, "none", DiscardReason.OUT_OF_RANGE_RAW.value


def derive_sensor_age(block0: bytes) -> Tuple[Optional[int], Optional[str], Optional[str]]:
    """
    Return (age minutes, chosen candidate label, failure reason).

    Four byte-pair readings of block 0 are tried; among those inside the
    14-day window the largest is kept, on the assumption that the counters
    only increment.
    """
    if len(block0) < 6:
        return None, None, "block0TooShort"
    candidates: List[Tuple[str, int]] = [
        ("le01", int.from_bytes(block0[0:2], "little")),
        ("be01", int.from_bytes(block0[0:2], "big")),
        ("le23", int.from_bytes(block0[2:4], "little")),
        ("be23", int.from_bytes(block0[2:4], "big")),
    ]
    plausible = [item for item in candidates if 0 <= item[1] <= MAX_SENSOR_AGE_MINUTES]
    if not plausible:
        logger.debug("No plausible sensor age among %s", candidates)
        return None, None, "noPlausibleAgeCandidate"
    label, age = max(plausible, key=lambda item: item[1])
    logger.debug("Sensor age candidates %s -> %s=%d min", candidates, label, age)
    return age, label, None


def _discard(
    timestamp: datetime,
    blocks: RawBlockSet,
    diagnostics: Dict[str, str],
    reason: DiscardReason,
) -> DecodedReading:
    diagnostics["discardReason"] = reason.value
    diagnostics.setdefault("appliedScaling", "none")
    diagnostics["plausible"] = "false"
    logger.debug("Decode discarded: %s", reason.value)
    return DecodedReading(
        timestamp=timestamp,
        glucose=None,
        trend=Trend.UNKNOWN,
        diagnostics=diagnostics,
        raw_blocks=blocks,
    )


def decode(
    blocks: Sequence[bytes],
    calibration: Optional[Calibration] = None,
    *,
    now: Optional[datetime] = None,
) -> DecodedReading:
    """Decode an ordered block set. Never raises for malformed input."""
    timestamp = now or datetime.now(timezone.utc)
    block_list: RawBlockSet = [bytes(block) for block in blocks]
    diagnostics: Dict[str, str] = {"blockCount": str(len(block_list))}

    if len(block_list) < EXPECTED_BLOCK_COUNT:
        return _discard(timestamp, block_list, diagnostics, DiscardReason.INSUFFICIENT_BLOCKS)
    if any(not block_list[index] for index in CRITICAL_BLOCKS):
        return _discard(timestamp, block_list, diagnostics, DiscardReason.MISSING_CRITICAL_BLOCK)
    block0 = block_list[0]
    block3 = block_list[3]
    if len(block0) < 5 or len(block3) < 5:
        return _discard(timestamp, block_list, diagnostics, DiscardReason.MISSING_CRITICAL_BLOCK)

    diagnostics["sensorStateHex"] = f"{block0[4]:02X}"
    age, age_source, age_reason = derive_sensor_age(block0)
    if age is not None:
        diagnostics["sensorAgeMinutes"] = str(age)
        diagnostics["sensorAgeSource"] = str(age_source)
        is_warmup = age < WARMUP_MINUTES
        if is_warmup:
            diagnostics["warmupRemainingMinutes"] = str(WARMUP_MINUTES - age)
        diagnostics["isWarmup"] = "true" if is_warmup else "false"
    else:
        diagnostics["isWarmup"] = "false"
        diagnostics["sensorAgeReason"] = str(age_reason)

    trend_index = block3[3] & TREND_INDEX_MASK
    history_index = block3[4]
    trend_block_index = TREND_BUFFER_START + (trend_index % TREND_BUFFER_SLOTS)
    diagnostics["trendIndex"] = str(trend_index)
    diagnostics["historyIndex"] = str(history_index)
    diagnostics["selectedTrendBlock"] = str(trend_block_index)

    if trend_block_index >= len(block_list) or not block_list[trend_block_index]:
        return _discard(timestamp, block_list, diagnostics, DiscardReason.TREND_BLOCK_MISSING)
    trend_block = block_list[trend_block_index]
    if len(trend_block) < 4:
        return _discard(timestamp, block_list, diagnostics, DiscardReason.TREND_BLOCK_TOO_SHORT)

    raw16 = int.from_bytes(trend_block[0:2], "little")
    raw_sample = raw16 & RAW_SAMPLE_MASK
    arrow_code = trend_block[3] & TREND_ARROW_MASK
    trend = trend_from_code(arrow_code)
    diagnostics["raw16"] = str(raw16)
    diagnostics["rawGlucoseMasked"] = str(raw_sample)
    diagnostics["trendArrowValue"] = str(arrow_code)
    diagnostics["trendArrowRaw"] = str(trend_block[3])

    glucose, scaling, reason = resolve_glucose(float(raw_sample), calibration)
    if calibration is not None and calibration.is_calibrated:
        diagnostics["calibrationSlope"] = repr(calibration.slope)
        diagnostics["calibrationIntercept"] = repr(calibration.intercept)
    diagnostics["appliedScaling"] = scaling
    diagnostics["plausible"] = "true" if glucose is not None else "false"
    if reason is not None:
        diagnostics["discardReason"] = reason
    logger.debug(
        "Decoded raw16=%d masked=%d scaling=%s glucose=%s trend=%s",
        raw16,
        raw_sample,
        scaling,
        glucose,
        trend.value,
    )
    return DecodedReading(
        timestamp=timestamp,
        glucose=glucose,
        trend=trend,
        diagnostics=diagnostics,
        raw_blocks=block_list,
    )
