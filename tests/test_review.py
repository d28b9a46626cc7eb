from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from glucotag.nfc.calibration import CalibrationStore
from glucotag.nfc.decoder import decode
from glucotag.nfc.review import MAX_CANDIDATES, CalibrationReviewer, recent_candidates
from glucotag.nfc.scanlog import ScanLogStore


def _log(store: ScanLogStore, blocks, minutes: int) -> str:
    when = datetime(2024, 3, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return store.append(blocks, decode(blocks).diagnostics, timestamp=when)


def test_recent_candidates_newest_first(tmp_path: Path, make_blocks) -> None:
    store = ScanLogStore(tmp_path / "logs")
    older = _log(store, make_blocks(1000), 0)
    newer = _log(store, make_blocks(1500), 10)
    _log(store, make_blocks()[:5], 20)  # no raw value
    candidates = recent_candidates(store)
    assert [candidate.entry_id for candidate in candidates] == [newer, older]
    assert candidates[0].raw_value == 1500


def test_candidates_fall_back_to_raw16(tmp_path: Path) -> None:
    store = ScanLogStore(tmp_path)
    entry_id = store.append([b"\x00" * 8], {"raw16": "777"})
    assert [candidate.raw_value for candidate in recent_candidates(store)] == [777]
    assert recent_candidates(store)[0].entry_id == entry_id


def test_candidates_are_capped(tmp_path: Path, make_blocks) -> None:
    store = ScanLogStore(tmp_path)
    for minute in range(MAX_CANDIDATES + 3):
        _log(store, make_blocks(1000 + minute), minute)
    candidates = recent_candidates(store)
    assert len(candidates) == MAX_CANDIDATES
    assert candidates[0].raw_value == 1000 + MAX_CANDIDATES + 2


def test_corrupt_entries_are_skipped(tmp_path: Path, make_blocks) -> None:
    store = ScanLogStore(tmp_path)
    good = _log(store, make_blocks(1000), 0)
    (tmp_path / "scan_corrupt.json").write_text("{", encoding="utf-8")
    assert [candidate.entry_id for candidate in recent_candidates(store)] == [good]


def test_reviewer_refreshes_on_new_log(tmp_path: Path, make_blocks) -> None:
    store = ScanLogStore(tmp_path / "logs")
    reviewer = CalibrationReviewer(store, CalibrationStore(tmp_path / "calibration.json"))
    reviewer.start()
    assert reviewer.candidates == []
    entry_id = _log(store, make_blocks(1000), 0)
    assert [candidate.entry_id for candidate in reviewer.candidates] == [entry_id]
    reviewer.stop()
    _log(store, make_blocks(1100), 5)
    assert len(reviewer.candidates) == 1


def test_reviewer_apply_recomputes(tmp_path: Path, make_blocks) -> None:
    store = ScanLogStore(tmp_path / "logs")
    calibration = CalibrationStore(tmp_path / "calibration.json")
    low = _log(store, make_blocks(1000), 0)
    high = _log(store, make_blocks(2000), 5)
    skipped = _log(store, make_blocks(1500), 10)
    reviewer = CalibrationReviewer(store, calibration)
    reviewer.start()
    result = reviewer.apply({low: 110.0, high: 210.0, skipped: None})
    assert result.is_calibrated
    assert result.slope == pytest.approx(0.1)
    assert result.intercept == pytest.approx(10.0)
    assert calibration.load() == result
