from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .calibration import CalibrationStore
from .config import ScannerConfig
from .decoder import DecodedReading
from .errors import (
    ConnectionFailed,
    GlucotagError,
    HardwareUnavailable,
    NoDataAcquired,
    PersistenceFailure,
    UnsupportedTagType,
)
from .events import EventChannel
from .radio import RadioBackend
from .reader import BlockReader
from .scanlog import ScanLogStore
from .session import TagSession
from .verifier import ConsistencyVerifier, VerificationResult, VerificationState

logger = logging.getLogger(__name__)

BANNER_SUCCESS = "Sensor read complete"
BANNER_NOT_CONSISTENT = "Reading not consistent. Try again."
BANNER_NO_DATA = "Scan produced no data."


@dataclass(frozen=True)
class ScannerState:
    is_scanning: bool
    last_reading: Optional[DecodedReading]
    error_message: Optional[str]


@dataclass
class ScanOutcome:
    banner: str
    reading: Optional[DecodedReading] = None
    verification: Optional[VerificationResult] = None
    log_entry_id: Optional[str] = None
    error: Optional[GlucotagError] = None

    @property
    def succeeded(self) -> bool:
        return self.verification is not None and self.verification.succeeded


def banner_for(result: VerificationResult) -> str:
    if result.state is VerificationState.SUCCEEDED:
        return BANNER_SUCCESS
    if result.state is VerificationState.FAILED_NO_DATA:
        return BANNER_NO_DATA
    return BANNER_NOT_CONSISTENT


class AcquisitionController:
    """
    Single-flight scan orchestration and the observable state handed to the
    presentation layer. All transitions happen on the event loop thread, so
    the in-progress flag needs no lock: it is set before the first await.
    """

    def __init__(
        self,
        radio: RadioBackend,
        config: ScannerConfig,
        *,
        calibration: Optional[CalibrationStore] = None,
        scan_log: Optional[ScanLogStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.radio = radio
        self.config = config
        self.calibration = calibration or CalibrationStore(config.storage.calibration_path)
        self.scan_log = scan_log or ScanLogStore(config.storage.scan_log_dir)
        self._clock = clock
        self.is_scanning = False
        self.last_reading: Optional[DecodedReading] = None
        self.error_message: Optional[str] = None
        self.auto_scan_enabled = config.auto_scan_on_proximity
        self.last_proximity_trigger: Optional[float] = None
        self.state_changed: EventChannel[ScannerState] = EventChannel("scanner-state")
        self._clear_handle: Optional[asyncio.TimerHandle] = None

    @property
    def state(self) -> ScannerState:
        return ScannerState(
            is_scanning=self.is_scanning,
            last_reading=self.last_reading,
            error_message=self.error_message,
        )

    def set_auto_scan_enabled(self, enabled: bool) -> None:
        if enabled == self.auto_scan_enabled:
            logger.debug("set_auto_scan_enabled noop (unchanged: %s)", enabled)
            return
        self.auto_scan_enabled = enabled
        logger.info("Auto scan on proximity %s", "enabled" if enabled else "disabled")

    async def on_proximity(self) -> Optional[ScanOutcome]:
        """Proximity trigger: honours the enable flag, cooldown and single flight."""
        if not self.auto_scan_enabled:
            return None
        now = self._clock()
        last = self.last_proximity_trigger
        if last is not None and now - last < self.config.proximity_cooldown_sec:
            logger.debug("Proximity trigger ignored due to cooldown")
            return None
        if self.is_scanning:
            logger.debug("Proximity trigger ignored; scan in progress")
            return None
        self.last_proximity_trigger = now
        logger.debug("Proximity trigger -> starting scan")
        return await self.start_scan()

    async def start_scan(self) -> Optional[ScanOutcome]:
        """Run one verified acquisition. Returns None when a scan is already running."""
        if self.is_scanning:
            logger.debug("Scan request rejected; scan already in progress")
            return None
        self.is_scanning = True
        self.error_message = None
        self._publish()
        try:
            outcome = await self._acquire()
        finally:
            self.is_scanning = False
        # failures never leave a glucose value behind
        self.last_reading = outcome.reading
        if outcome.error is not None or not outcome.succeeded:
            self._show_error(outcome.banner)
        else:
            self._publish()
        return outcome

    async def _acquire(self) -> ScanOutcome:
        session = TagSession(self.radio, prompt=self.config.reader.prompt)
        try:
            async with session:
                await session.begin()
                tag = await session.connect_first_tag()
                reader = BlockReader(
                    session,
                    tag,
                    block_count=self.config.reader.block_count,
                    block_size=self.config.reader.block_size,
                    clock=self._clock,
                )
                verifier = ConsistencyVerifier(self.config.verification, clock=self._clock)
                result = await verifier.run(reader.read_pass, self.calibration.load())
                banner = banner_for(result)
                session.set_alert(banner)
        except (HardwareUnavailable, ConnectionFailed, UnsupportedTagType) as exc:
            logger.warning("Scan aborted: %s", exc)
            return ScanOutcome(banner=str(exc), error=exc)

        entry_id = self._persist(result)
        if result.state is VerificationState.FAILED_NO_DATA:
            return ScanOutcome(
                banner=banner,
                verification=result,
                log_entry_id=entry_id,
                error=NoDataAcquired(result.attempts),
            )
        return ScanOutcome(banner=banner, reading=result.reading, verification=result, log_entry_id=entry_id)

    def _persist(self, result: VerificationResult) -> Optional[str]:
        try:
            return self.scan_log.append(result.blocks, result.reading.diagnostics)
        except PersistenceFailure as exc:
            logger.warning("Scan result not logged: %s", exc)
            return None

    def _show_error(self, message: str) -> None:
        self.error_message = message
        self._publish()
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._clear_handle = loop.call_later(self.config.error_clear_sec, self._clear_error, message)

    def _clear_error(self, message: str) -> None:
        self._clear_handle = None
        if self.error_message == message:
            self.error_message = None
            self._publish()

    def _publish(self) -> None:
        self.state_changed.publish(self.state)
