from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from conftest import build_blocks
from glucotag.nfc.config import SerialSettings, load_config
from glucotag.nfc.controller import AcquisitionController
from glucotag.nfc.errors import BlockReadFailure, HardwareUnavailable
from glucotag.nfc.radio import DetectedTag, PollingMode
from glucotag.nfc.serial_bridge import (
    BridgeError,
    SerialBridgeRadio,
    SerialRadioSession,
    parse_response,
    parse_tag_line,
)

BLOCKS = build_blocks(1200)


def bridge_firmware(command: str) -> List[str]:
    verb, _, arg = command.partition(" ")
    if verb == "NFC.POLL":
        return ["OK", "TAG E007AABBCCDDEEFF ISO15693", "END"]
    if verb == "NFC.READ":
        index = int(arg)
        if index >= len(BLOCKS):
            return ["ERR out of range", "END"]
        return [f"OK {BLOCKS[index].hex().upper()}", "END"]
    return ["OK", "END"]


class FakePort:
    def __init__(self, responder: Callable[[str], List[str]]):
        self._responder = responder
        self._pending: List[bytes] = []
        self.written: List[str] = []
        self.closed = False

    def reset_input_buffer(self) -> None:
        self._pending.clear()

    def write(self, payload: bytes) -> int:
        command = payload.decode("ascii").strip()
        self.written.append(command)
        self._pending.extend(line.encode("utf-8") + b"\r\n" for line in self._responder(command))
        return len(payload)

    def flush(self) -> None:
        pass

    def readline(self) -> bytes:
        if self._pending:
            return self._pending.pop(0)
        return b""

    def close(self) -> None:
        self.closed = True


class FakeSerialModule:
    def __init__(self, responder: Callable[[str], List[str]] = bridge_firmware, fail: bool = False):
        self.responder = responder
        self.fail = fail
        self.ports: List[FakePort] = []
        self.SerialException = RuntimeError

    def Serial(self, *args, **kwargs):
        if self.fail:
            raise self.SerialException("could not open port")
        port = FakePort(self.responder)
        self.ports.append(port)
        return port


def test_parse_response() -> None:
    assert parse_response(["OK 0102", "END"]) == ("0102", [])
    assert parse_response(["OK", "TAG A iso15693", "END"]) == ("", ["TAG A iso15693"])
    with pytest.raises(BridgeError, match="busy"):
        parse_response(["ERR busy", "END"])
    with pytest.raises(BridgeError):
        parse_response([])
    with pytest.raises(BridgeError):
        parse_response(["HELLO", "END"])


def test_parse_tag_line() -> None:
    tag = parse_tag_line("TAG E007AA ISO15693")
    assert tag.identifier == "E007AA"
    assert tag.tag_type == "iso15693"
    with pytest.raises(BridgeError):
        parse_tag_line("TAG E007AA")


@pytest.mark.asyncio
async def test_bridge_session_reads_blocks(monkeypatch) -> None:
    fake_serial = FakeSerialModule()
    monkeypatch.setattr("glucotag.nfc.serial_bridge.serial", fake_serial)
    radio = SerialBridgeRadio(SerialSettings(port="/dev/ttyFAKE", timeout=0.2))
    assert radio.is_available()

    session = await radio.start(PollingMode.ISO15693)
    tags = await session.detect_tags()
    await session.connect(tags[0])
    assert await session.read_single_block(tags[0], 26 + 5) == BLOCKS[31]
    with pytest.raises(BlockReadFailure):
        await session.read_single_block(tags[0], 99)

    closed = []
    session.add_invalidation_callback(closed.append)
    await session.invalidate("Sensor read complete")
    await session.invalidate("again")
    port = fake_serial.ports[0]
    assert port.written[0] == "NFC.START ISO15693"
    assert "NFC.CONNECT E007AABBCCDDEEFF" in port.written
    assert port.written[-1] == "NFC.STOP Sensor read complete"
    assert port.closed
    assert closed == ["Sensor read complete"]


@pytest.mark.asyncio
async def test_bridge_unavailable_without_pyserial(monkeypatch) -> None:
    monkeypatch.setattr("glucotag.nfc.serial_bridge.serial", None)
    assert not SerialBridgeRadio(SerialSettings()).is_available()


@pytest.mark.asyncio
async def test_bridge_open_failure(monkeypatch) -> None:
    monkeypatch.setattr("glucotag.nfc.serial_bridge.serial", FakeSerialModule(fail=True))
    with pytest.raises(HardwareUnavailable, match="/dev/ttyFAKE"):
        await SerialBridgeRadio(SerialSettings(port="/dev/ttyFAKE", timeout=0.2)).start(PollingMode.ISO15693)


@pytest.mark.asyncio
async def test_bridge_refuses_session(monkeypatch) -> None:
    fake_serial = FakeSerialModule(responder=lambda command: ["ERR no field", "END"])
    monkeypatch.setattr("glucotag.nfc.serial_bridge.serial", fake_serial)
    with pytest.raises(HardwareUnavailable, match="no field"):
        await SerialBridgeRadio(SerialSettings(timeout=0.2)).start(PollingMode.ISO15693)
    assert fake_serial.ports[0].closed


@pytest.mark.asyncio
async def test_scan_over_bridge(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr("glucotag.nfc.serial_bridge.serial", FakeSerialModule())
    cfg = load_config(
        overrides=[
            f"storage.scan_log_dir={tmp_path / 'logs'}",
            f"storage.calibration_path={tmp_path / 'calibration.json'}",
            "serial.timeout=0.2",
        ]
    )
    controller = AcquisitionController(SerialBridgeRadio(cfg.serial), cfg)
    outcome = await controller.start_scan()
    assert outcome is not None and outcome.succeeded
    assert outcome.reading.glucose == pytest.approx(120.0)
    assert outcome.log_entry_id is not None


class SlowExecutor:
    """Answers like the bridge but takes a while, recording how many commands overlap."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.commands: List[str] = []
        self.threads: List[int] = []
        self._guard = threading.Lock()

    def __call__(self, command: str, timeout: float) -> List[str]:
        with self._guard:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.commands.append(command)
            self.threads.append(threading.get_ident())
        try:
            time.sleep(self.delay)
            return bridge_firmware(command)
        finally:
            with self._guard:
                self.active -= 1


TAG = DetectedTag(identifier="E007AABBCCDDEEFF", tag_type="iso15693")


@pytest.mark.asyncio
async def test_bridge_commands_never_overlap() -> None:
    executor = SlowExecutor()
    session = SerialRadioSession(executor, timeout=1.0)

    reads = [asyncio.create_task(session.read_single_block(TAG, index)) for index in range(3)]
    await asyncio.sleep(0.01)
    # Abandoned awaits leave their worker threads running.
    reads[0].cancel()
    await asyncio.gather(*reads[1:], session.invalidate("done"), return_exceptions=True)
    await asyncio.sleep(0.2)

    assert executor.peak == 1
    assert "NFC.STOP done" in executor.commands


@pytest.mark.asyncio
async def test_bridge_stop_runs_off_the_event_loop() -> None:
    executor = SlowExecutor(delay=0.1)
    closed: List[Optional[str]] = []
    session = SerialRadioSession(executor, timeout=1.0, on_close=lambda: closed.append("port"))
    ticks = 0

    async def ticker() -> None:
        nonlocal ticks
        while True:
            await asyncio.sleep(0.01)
            ticks += 1

    task = asyncio.create_task(ticker())
    try:
        await session.invalidate("Sensor read complete")
    finally:
        task.cancel()

    assert executor.commands == ["NFC.STOP Sensor read complete"]
    assert executor.threads[0] != threading.get_ident()
    assert ticks >= 3
    assert closed == ["port"]
    with pytest.raises(BridgeError):
        await session.detect_tags()
