from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from conftest import build_blocks
from glucotag.nfc.config import ScannerConfig, load_config
from glucotag.nfc.controller import (
    BANNER_NO_DATA,
    BANNER_NOT_CONSISTENT,
    BANNER_SUCCESS,
    AcquisitionController,
)
from glucotag.nfc.errors import HardwareUnavailable, NoDataAcquired, UnsupportedTagType
from glucotag.nfc.radio import DetectedTag, PollingMode
from glucotag.nfc.scanlog import ScanLogStore

TAG = DetectedTag(identifier="E007000011112222", tag_type="iso15693")


class ScriptedRadioSession:
    """Serves one block set per pass; a pass starts whenever block 0 is read."""

    def __init__(self, passes: List[Optional[List[bytes]]], tag: DetectedTag = TAG):
        self.passes = passes
        self.tag = tag
        self.pass_no = 0
        self.alert_message = ""
        self.invalidations: List[Optional[str]] = []

    async def detect_tags(self) -> List[DetectedTag]:
        return [self.tag]

    async def connect(self, tag: DetectedTag) -> None:
        return None

    async def read_single_block(self, tag: DetectedTag, index: int) -> bytes:
        await asyncio.sleep(0)
        if index == 0:
            self.pass_no += 1
        blocks = self.passes[min(self.pass_no, len(self.passes)) - 1]
        if blocks is None:
            raise IOError("no response")
        return blocks[index]

    async def invalidate(self, error_message: Optional[str] = None) -> None:
        self.invalidations.append(error_message)

    def add_invalidation_callback(self, callback: Callable[[Optional[str]], None]) -> None:
        return None


class ScriptedRadio:
    def __init__(self, session: ScriptedRadioSession, available: bool = True):
        self.session = session
        self.available = available
        self.starts = 0

    def is_available(self) -> bool:
        return self.available

    async def start(self, polling: PollingMode) -> ScriptedRadioSession:
        self.starts += 1
        self.session.pass_no = 0
        return self.session


def _config(tmp_path: Path, *overrides: str) -> ScannerConfig:
    return load_config(
        overrides=[
            f"storage.scan_log_dir={tmp_path / 'logs'}",
            f"storage.calibration_path={tmp_path / 'calibration.json'}",
            *overrides,
        ]
    )


@pytest.mark.asyncio
async def test_successful_scan_is_logged(tmp_path: Path) -> None:
    radio = ScriptedRadio(ScriptedRadioSession([build_blocks(1200)]))
    controller = AcquisitionController(radio, _config(tmp_path))
    states = []
    controller.state_changed.subscribe(states.append)

    outcome = await controller.start_scan()

    assert outcome is not None and outcome.succeeded
    assert outcome.banner == BANNER_SUCCESS
    assert controller.last_reading is not None
    assert controller.last_reading.glucose == pytest.approx(120.0)
    assert controller.error_message is None
    assert controller.is_scanning is False
    assert radio.session.alert_message == BANNER_SUCCESS
    assert radio.session.invalidations == [None]
    assert states[0].is_scanning and not states[-1].is_scanning

    store = ScanLogStore(tmp_path / "logs")
    assert store.list() == [outcome.log_entry_id]
    entry = store.load(outcome.log_entry_id)
    assert entry.diagnostics["verificationSucceeded"] == "true"
    assert entry.diagnostics["glucoseMgdl"] == "120.0"
    assert entry.raw_blocks() == build_blocks(1200)


@pytest.mark.asyncio
async def test_inconsistent_scan_withholds_glucose(tmp_path: Path) -> None:
    passes = [build_blocks(1000 + 10 * index) for index in range(8)]
    controller = AcquisitionController(ScriptedRadio(ScriptedRadioSession(passes)), _config(tmp_path))
    outcome = await controller.start_scan()
    assert outcome is not None and not outcome.succeeded
    assert outcome.banner == BANNER_NOT_CONSISTENT
    assert controller.error_message == BANNER_NOT_CONSISTENT
    assert controller.last_reading is not None
    assert controller.last_reading.glucose is None
    entry = ScanLogStore(tmp_path / "logs").load(outcome.log_entry_id)
    assert entry.diagnostics["verificationSucceeded"] == "false"
    assert entry.diagnostics["discardReason"] == "verificationInsufficientMatches"


@pytest.mark.asyncio
async def test_no_data_scan(tmp_path: Path) -> None:
    controller = AcquisitionController(
        ScriptedRadio(ScriptedRadioSession([None])),
        _config(tmp_path, "verification.max_attempts=2"),
    )
    outcome = await controller.start_scan()
    assert outcome is not None
    assert outcome.banner == BANNER_NO_DATA
    assert isinstance(outcome.error, NoDataAcquired)
    assert outcome.reading is None
    assert controller.last_reading is None
    assert outcome.log_entry_id is not None


@pytest.mark.asyncio
async def test_hardware_unavailable(tmp_path: Path) -> None:
    radio = ScriptedRadio(ScriptedRadioSession([build_blocks()]), available=False)
    controller = AcquisitionController(radio, _config(tmp_path))
    outcome = await controller.start_scan()
    assert outcome is not None
    assert isinstance(outcome.error, HardwareUnavailable)
    assert controller.error_message == "NFC not available on this device"
    assert controller.last_reading is None
    assert ScanLogStore(tmp_path / "logs").list() == []


@pytest.mark.asyncio
async def test_unsupported_tag(tmp_path: Path) -> None:
    session = ScriptedRadioSession([build_blocks()], tag=DetectedTag(identifier="04AA", tag_type="iso14443"))
    controller = AcquisitionController(ScriptedRadio(session), _config(tmp_path))
    outcome = await controller.start_scan()
    assert outcome is not None
    assert isinstance(outcome.error, UnsupportedTagType)
    assert session.invalidations == ["Unsupported tag type"]


@pytest.mark.asyncio
async def test_single_flight(tmp_path: Path) -> None:
    radio = ScriptedRadio(ScriptedRadioSession([build_blocks(1200)]))
    controller = AcquisitionController(radio, _config(tmp_path))
    first, second = await asyncio.gather(controller.start_scan(), controller.start_scan())
    assert first is not None and first.succeeded
    assert second is None
    assert radio.starts == 1


@pytest.mark.asyncio
async def test_error_clears_after_delay(tmp_path: Path) -> None:
    radio = ScriptedRadio(ScriptedRadioSession([]), available=False)
    controller = AcquisitionController(radio, _config(tmp_path, "error_clear_sec=0.01"))
    await controller.start_scan()
    assert controller.error_message is not None
    await asyncio.sleep(0.05)
    assert controller.error_message is None


@pytest.mark.asyncio
async def test_persistence_failure_keeps_reading(tmp_path: Path) -> None:
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory", encoding="utf-8")
    controller = AcquisitionController(ScriptedRadio(ScriptedRadioSession([build_blocks(1200)])), _config(tmp_path))
    outcome = await controller.start_scan()
    assert outcome is not None and outcome.succeeded
    assert outcome.log_entry_id is None
    assert controller.last_reading is not None
    assert controller.last_reading.glucose == pytest.approx(120.0)


@pytest.mark.asyncio
async def test_proximity_trigger_cooldown(tmp_path: Path) -> None:
    now = [1000.0]
    radio = ScriptedRadio(ScriptedRadioSession([build_blocks(1200)]))
    controller = AcquisitionController(radio, _config(tmp_path), clock=lambda: now[0])

    assert await controller.on_proximity() is None
    controller.set_auto_scan_enabled(True)
    assert await controller.on_proximity() is not None
    now[0] += 5.0
    assert await controller.on_proximity() is None
    now[0] += 6.0
    assert await controller.on_proximity() is not None
    assert radio.starts == 2


@pytest.mark.asyncio
async def test_calibration_applies_to_scans(tmp_path: Path) -> None:
    calibration_path = tmp_path / "calibration.json"
    calibration_path.write_text('{"slope": 0.1, "intercept": 5.0, "isCalibrated": true}', encoding="utf-8")
    controller = AcquisitionController(ScriptedRadio(ScriptedRadioSession([build_blocks(1000)])), _config(tmp_path))
    outcome = await controller.start_scan()
    assert outcome is not None and outcome.succeeded
    assert outcome.reading.glucose == pytest.approx(105.0)
    assert outcome.reading.diagnostics["appliedScaling"] == "calibrated"
