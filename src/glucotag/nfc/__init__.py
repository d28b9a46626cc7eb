"""
Sensor tag acquisition and decoding pipeline.

The subpackage exposes the configuration model, the pure block decoder, the
repeated-read verifier, the calibration and scan log stores, and the
controller that ties them to a radio backend.
"""

from .calibration import Calibration, CalibrationReferencePoint, CalibrationStore
from .config import ScannerConfig, SerialSettings, VerificationConfig, load_config
from .controller import AcquisitionController, ScannerState, ScanOutcome
from .decoder import DecodedReading, DiscardReason, Trend, decode
from .errors import (
    BlockReadFailure,
    ConnectionFailed,
    GlucotagError,
    HardwareUnavailable,
    NoDataAcquired,
    PersistenceFailure,
    ScanLogDecodeError,
    UnsupportedTagType,
)
from .events import EventChannel, ScanLogPersisted
from .reader import BlockReader, ReadPass
from .review import CalibrationReviewer, recent_candidates
from .scanlog import ScanLogEntry, ScanLogStore
from .session import TagSession
from .verifier import ConsistencyVerifier, VerificationOutcome, VerificationResult, VerificationState

__all__ = [
    "Calibration",
    "CalibrationReferencePoint",
    "CalibrationStore",
    "ScannerConfig",
    "SerialSettings",
    "VerificationConfig",
    "load_config",
    "AcquisitionController",
    "ScannerState",
    "ScanOutcome",
    "DecodedReading",
    "DiscardReason",
    "Trend",
    "decode",
    "BlockReadFailure",
    "ConnectionFailed",
    "GlucotagError",
    "HardwareUnavailable",
    "NoDataAcquired",
    "PersistenceFailure",
    "ScanLogDecodeError",
    "UnsupportedTagType",
    "EventChannel",
    "ScanLogPersisted",
    "BlockReader",
    "ReadPass",
    "CalibrationReviewer",
    "recent_candidates",
    "ScanLogEntry",
    "ScanLogStore",
    "TagSession",
    "ConsistencyVerifier",
    "VerificationOutcome",
    "VerificationResult",
    "VerificationState",
]
