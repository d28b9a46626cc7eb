"""Tabular summaries of the scan log and reference-point loading."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import pandas as pd

from .nfc.calibration import CalibrationReferencePoint
from .nfc.errors import ScanLogDecodeError
from .nfc.scanlog import ScanLogStore

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = [
    "entry_id",
    "timestamp",
    "block_count",
    "raw16",
    "raw_glucose_masked",
    "glucose_mgdl",
    "applied_scaling",
    "verification_succeeded",
    "verification_attempts",
    "discard_reason",
]

REFERENCE_COLUMNS = {"raw_value", "official_value"}


def scan_log_frame(store: ScanLogStore) -> pd.DataFrame:
    """One row per readable scan log entry, newest first."""

    rows: list[dict[str, object]] = []
    for entry_id in store.list():
        try:
            entry = store.load(entry_id)
        except (ScanLogDecodeError, FileNotFoundError) as exc:
            logger.warning("Skipping scan log %s: %s", entry_id, exc)
            continue
        meta = entry.diagnostics
        rows.append(
            {
                "entry_id": entry.entry_id,
                "timestamp": entry.timestamp,
                "block_count": entry.block_count,
                "raw16": meta.get("raw16"),
                "raw_glucose_masked": meta.get("rawGlucoseMasked"),
                "glucose_mgdl": meta.get("glucoseMgdl"),
                "applied_scaling": meta.get("appliedScaling"),
                "verification_succeeded": meta.get("verificationSucceeded"),
                "verification_attempts": meta.get("verificationAttempts"),
                "discard_reason": meta.get("discardReason"),
            }
        )
    df = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
    for column in ("raw16", "raw_glucose_masked", "verification_attempts"):
        df[column] = pd.to_numeric(df[column], errors="coerce").astype("Int64")
    df["glucose_mgdl"] = pd.to_numeric(df["glucose_mgdl"], errors="coerce")
    return df


def export_scan_log(store: ScanLogStore, path: Path) -> int:
    """Write the scan log summary to CSV and return the row count."""

    df = scan_log_frame(store)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return len(df)


def load_reference_points_csv(path: str | Path) -> List[CalibrationReferencePoint]:
    """Load `raw_value`/`official_value` pairs. Blank official values stay ineligible.

    Parameters
    ----------
    path:
        CSV file with at least `raw_value` and `official_value` columns.
    """

    df = pd.read_csv(path)
    missing = REFERENCE_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")
    if df["raw_value"].isna().any():
        raise ValueError("raw_value may not be blank")
    raw = df["raw_value"].astype(int)
    official = pd.to_numeric(df["official_value"], errors="coerce")
    return [
        CalibrationReferencePoint(
            raw_value=int(raw_value),
            official_value=None if pd.isna(official_value) else float(official_value),
        )
        for raw_value, official_value in zip(raw, official)
    ]
