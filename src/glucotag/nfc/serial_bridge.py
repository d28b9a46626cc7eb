"""
Radio backend for an NFC reader bridge attached over a serial/CDC port.

The bridge firmware speaks a line protocol. Every command is answered by one
or more lines terminated with `END`; the first line starts with `OK` or
`ERR <reason>`:

    NFC.START ISO15693      -> OK
    NFC.POLL 500            -> OK / TAG <uid> <type> ... / END
    NFC.CONNECT <uid>       -> OK
    NFC.READ <index>        -> OK <hex>
    NFC.STOP [message]      -> OK
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, List, Optional, Sequence, Tuple

try:
    import serial  # type: ignore[import]
except ImportError:  # pragma: no cover - handled in CLI validation
    serial = None  # type: ignore[assignment]

from .config import SerialSettings
from .errors import BlockReadFailure, HardwareUnavailable
from .radio import DetectedTag, PollingMode

logger = logging.getLogger(__name__)

POLL_WINDOW_MS = 500
DETECT_TIMEOUT_SEC = 30.0


class BridgeError(RuntimeError):
    """The bridge answered with ERR or an unexpected payload."""


def parse_response(lines: Sequence[str]) -> Tuple[str, List[str]]:
    """Split a bridge answer into (status detail, body lines)."""
    cleaned = [line.strip() for line in lines if line.strip()]
    if not cleaned:
        raise BridgeError("Empty response")
    header = cleaned[0]
    if header.startswith("ERR"):
        raise BridgeError(header[3:].strip() or "unknown error")
    if not header.startswith("OK"):
        raise BridgeError(f"Unexpected response header: {header}")
    body: List[str] = []
    for line in cleaned[1:]:
        if line == "END":
            break
        if line.startswith("ERR"):
            raise BridgeError(line[3:].strip() or "unknown error")
        body.append(line)
    return header[2:].strip(), body


def parse_tag_line(line: str) -> DetectedTag:
    parts = line.split()
    if len(parts) != 3 or parts[0] != "TAG":
        raise BridgeError(f"Malformed tag line: {line}")
    return DetectedTag(identifier=parts[1], tag_type=parts[2].lower())


class SerialCommandClient:
    """Blocking request/response client for the bridge port."""

    def __init__(self, settings: SerialSettings):
        if serial is None:
            raise ImportError("pyserial is required but not installed.")
        self._port = serial.Serial(port=settings.port, baudrate=settings.baudrate, timeout=settings.timeout)
        self._timeout = settings.timeout

    def execute(self, command: str, timeout: Optional[float] = None) -> List[str]:
        """Send one command and collect its reply up to and including `END`."""
        self._port.reset_input_buffer()
        self._port.write(f"{command.strip()}\n".encode("ascii", errors="ignore"))
        self._port.flush()
        return self._collect(command, time.monotonic() + (timeout or self._timeout))

    def _collect(self, command: str, deadline: float) -> List[str]:
        lines: List[str] = []
        while time.monotonic() < deadline:
            line = self._port.readline().decode("utf-8", errors="ignore").rstrip("\r\n")
            if not line:
                continue
            lines.append(line)
            if line == "END":
                return lines
        raise TimeoutError(f"Bridge did not answer '{command}' in time")

    def close(self) -> None:
        try:
            self._port.close()
        except Exception:
            logger.debug("Closing serial port failed", exc_info=True)


Executor = Callable[[str, float], Sequence[str]]


class SerialRadioSession:
    """
    One bridge session. The bridge is half-duplex: every command, including
    the final stop, runs in a worker thread while holding the session's I/O
    lock, so a worker left behind by a cancelled await still finishes before
    the next command goes out.
    """

    def __init__(self, executor: Executor, timeout: float, on_close: Optional[Callable[[], None]] = None) -> None:
        self._executor = executor
        self._timeout = timeout
        self._on_close = on_close
        self._io_lock = threading.Lock()
        self._callbacks: List[Callable[[Optional[str]], None]] = []
        self._closed = False
        self.alert_message = ""

    def _exchange(self, command: str) -> Sequence[str]:
        with self._io_lock:
            return self._executor(command, self._timeout)

    async def _call(self, command: str) -> Tuple[str, List[str]]:
        if self._closed:
            raise BridgeError("Session invalidated")
        lines = await asyncio.to_thread(self._exchange, command)
        return parse_response(lines)

    async def detect_tags(self) -> List[DetectedTag]:
        deadline = time.monotonic() + DETECT_TIMEOUT_SEC
        while time.monotonic() < deadline:
            _, body = await self._call(f"NFC.POLL {POLL_WINDOW_MS}")
            tags = [parse_tag_line(line) for line in body if line.startswith("TAG")]
            if tags:
                return tags
        raise BridgeError("No tag detected")

    async def connect(self, tag: DetectedTag) -> None:
        await self._call(f"NFC.CONNECT {tag.identifier}")

    async def read_single_block(self, tag: DetectedTag, index: int) -> bytes:
        try:
            detail, _ = await self._call(f"NFC.READ {index}")
            return bytes.fromhex(detail)
        except (BridgeError, TimeoutError, ValueError) as exc:
            raise BlockReadFailure(index, str(exc)) from exc

    async def invalidate(self, error_message: Optional[str] = None) -> None:
        if self._closed:
            return
        self._closed = True
        command = "NFC.STOP" if not error_message else f"NFC.STOP {error_message}"
        try:
            await asyncio.to_thread(self._exchange, command)
        except Exception as exc:
            logger.debug("NFC.STOP failed: %s", exc)
        if self._on_close is not None:
            await asyncio.to_thread(self._close_port)
        for callback in list(self._callbacks):
            callback(error_message)

    def _close_port(self) -> None:
        with self._io_lock:
            self._on_close()

    def add_invalidation_callback(self, callback: Callable[[Optional[str]], None]) -> None:
        self._callbacks.append(callback)


class SerialBridgeRadio:
    """RadioBackend implementation over pyserial."""

    def __init__(self, settings: SerialSettings) -> None:
        self.settings = settings

    def is_available(self) -> bool:
        return serial is not None

    async def start(self, polling: PollingMode) -> SerialRadioSession:
        try:
            client = await asyncio.to_thread(SerialCommandClient, self.settings)
        except Exception as exc:
            raise HardwareUnavailable(f"Cannot open NFC bridge on {self.settings.port}: {exc}") from exc
        session = SerialRadioSession(client.execute, self.settings.timeout, on_close=client.close)
        try:
            await session._call(f"NFC.START {polling.value.upper()}")
        except (BridgeError, TimeoutError) as exc:
            client.close()
            raise HardwareUnavailable(f"NFC bridge refused session: {exc}") from exc
        logger.info("NFC bridge session started on %s", self.settings.port)
        return session
