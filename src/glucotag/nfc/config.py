from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Sequence

MIN_BLOCK_COUNT = 43
DEFAULT_PROMPT = "Hold the top of the device near the sensor"


@dataclass
class VerificationConfig:
    time_budget_sec: float = 10.0
    max_attempts: int = 8
    required_reads: int = 3
    tolerance_raw: int = 2

    def validate(self) -> None:
        if self.time_budget_sec <= 0:
            raise ValueError("verification.time_budget_sec must be positive")
        if self.max_attempts < 1:
            raise ValueError("verification.max_attempts must be at least 1")
        if self.required_reads < 1:
            raise ValueError("verification.required_reads must be at least 1")
        if self.tolerance_raw < 0:
            raise ValueError("verification.tolerance_raw may not be negative")


@dataclass
class ReaderConfig:
    block_count: int = 43
    block_size: int = 8
    prompt: str = DEFAULT_PROMPT

    def validate(self) -> None:
        if self.block_count < MIN_BLOCK_COUNT:
            raise ValueError(f"reader.block_count must be >= {MIN_BLOCK_COUNT}")
        if self.block_size < 4:
            raise ValueError("reader.block_size must be >= 4")


@dataclass
class StorageConfig:
    scan_log_dir: Path = Path("scan_logs")
    calibration_path: Path = Path("calibration.json")


@dataclass
class SerialSettings:
    port: str = "/dev/ttyACM0"
    baudrate: int = 115200
    timeout: float = 2.0


@dataclass
class ScannerConfig:
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    reader: ReaderConfig = field(default_factory=ReaderConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    serial: SerialSettings = field(default_factory=SerialSettings)
    auto_scan_on_proximity: bool = False
    proximity_cooldown_sec: float = 10.0
    error_clear_sec: float = 5.0
    verbose_logging: bool = False

    def validate(self) -> None:
        self.verification.validate()
        self.reader.validate()
        if self.proximity_cooldown_sec < 0:
            raise ValueError("proximity_cooldown_sec may not be negative")
        if self.error_clear_sec < 0:
            raise ValueError("error_clear_sec may not be negative")


def config_from_mapping(data: Dict[str, Any]) -> ScannerConfig:
    verification = data.get("verification") or {}
    reader = data.get("reader") or {}
    storage = data.get("storage") or {}
    serial = data.get("serial") or {}
    config = ScannerConfig(
        verification=VerificationConfig(
            time_budget_sec=float(verification.get("time_budget_sec", 10.0)),
            max_attempts=int(verification.get("max_attempts", 8)),
            required_reads=int(verification.get("required_reads", 3)),
            tolerance_raw=int(verification.get("tolerance_raw", 2)),
        ),
        reader=ReaderConfig(
            block_count=int(reader.get("block_count", 43)),
            block_size=int(reader.get("block_size", 8)),
            prompt=str(reader.get("prompt", DEFAULT_PROMPT)),
        ),
        storage=StorageConfig(
            scan_log_dir=Path(storage.get("scan_log_dir", "scan_logs")),
            calibration_path=Path(storage.get("calibration_path", "calibration.json")),
        ),
        serial=SerialSettings(
            port=str(serial.get("port", "/dev/ttyACM0")),
            baudrate=int(serial.get("baudrate", 115200)),
            timeout=float(serial.get("timeout", 2.0)),
        ),
        auto_scan_on_proximity=bool(data.get("auto_scan_on_proximity", False)),
        proximity_cooldown_sec=float(data.get("proximity_cooldown_sec", 10.0)),
        error_clear_sec=float(data.get("error_clear_sec", 5.0)),
        verbose_logging=bool(data.get("verbose_logging", False)),
    )
    config.validate()
    return config


_TRUE_WORDS = {"true", "yes", "on", "1"}
_FALSE_WORDS = {"false", "no", "off", "0"}


def _read_config_file(path: Path) -> Dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object at the top level")
    return data


def _layer(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    # Config is at most two levels deep: top-level scalars and one level of sections.
    layered = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict):
            layered[key] = {**(base.get(key) or {}), **value}
        else:
            layered[key] = value
    return layered


def _typed(key: str, template: Any, raw: str) -> Any:
    """Convert *raw* to the type of the default value the key overrides."""
    if isinstance(template, bool):
        word = raw.lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ValueError(f"Override '{key}' expects true/false, got '{raw}'")
    if isinstance(template, (int, float)):
        try:
            return type(template)(raw)
        except ValueError:
            raise ValueError(f"Override '{key}' expects {type(template).__name__}, got '{raw}'") from None
    return raw


def parse_overrides(overrides: Sequence[str]) -> Dict[str, Any]:
    """
    Turn `section.key=value` strings into a config mapping.

    Keys must name an existing ScannerConfig field; values take that field's type.
    """
    defaults = ScannerConfig()
    mapping: Dict[str, Any] = {}
    for item in overrides:
        key, sep, raw = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"Override '{item}' must use key=value syntax")
        section_name, _, name = key.rpartition(".")
        owner = getattr(defaults, section_name, None) if section_name else defaults
        if owner is None or not is_dataclass(owner) or name not in {f.name for f in fields(owner)}:
            raise ValueError(f"Unknown config key '{key}'")
        value = getattr(owner, name)
        if is_dataclass(value):
            raise ValueError(f"Config key '{key}' is a section; set one of its fields")
        typed = _typed(key, value, raw.strip())
        if section_name:
            mapping.setdefault(section_name, {})[name] = typed
        else:
            mapping[name] = typed
    return mapping


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> ScannerConfig:
    """
    Load the scanner configuration from JSON and apply CLI-style overrides.

    A missing *path* yields the defaults. Overrides are dotted `key=value`
    pairs, e.g.:
        ["verification.required_reads=4", "serial.port=/dev/ttyUSB0"]
    """
    data = _read_config_file(Path(path)) if path is not None else {}
    return config_from_mapping(_layer(data, parse_overrides(overrides or [])))
