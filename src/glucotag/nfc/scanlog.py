from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

from .blocks import RawBlockSet, blocks_from_hex, hex_dump
from .errors import PersistenceFailure, ScanLogDecodeError
from .events import EventChannel, ScanLogPersisted

logger = logging.getLogger(__name__)

ENTRY_PREFIX = "scan_"
ENTRY_SUFFIX = ".json"
RESERVED_KEYS = frozenset({"timestamp", "blockCount", "blocks"})

Scalar = Union[str, int, float, bool]


@dataclass(frozen=True)
class ScanLogEntry:
    entry_id: str
    timestamp: datetime
    block_count: int
    blocks: List[str]
    diagnostics: Dict[str, Scalar] = field(default_factory=dict)

    def raw_blocks(self) -> RawBlockSet:
        return blocks_from_hex({"index": index, "hex": value} for index, value in enumerate(self.blocks))

    @property
    def raw_value(self) -> Optional[int]:
        """Raw sample for calibration pairing: masked value, else raw16."""
        for key in ("rawGlucoseMasked", "raw16"):
            value = self.diagnostics.get(key)
            if value is None:
                continue
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
        return None


def _entry_name(timestamp: datetime) -> str:
    stamp = timestamp.strftime("%Y-%m-%dT%H-%M-%S.%fZ")
    return f"{ENTRY_PREFIX}{stamp}_{uuid.uuid4().hex[:8]}"


def _scalar(value: object) -> Scalar:
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


class ScanLogStore:
    """
    Append-only directory of scan records, one JSON file per entry. Entries
    are never rewritten; removal is an explicit operator action.
    """

    def __init__(self, directory: Path | str, events: Optional[EventChannel[ScanLogPersisted]] = None) -> None:
        self.directory = Path(directory)
        self.events: EventChannel[ScanLogPersisted] = events if events is not None else EventChannel("scan-log")

    def _path(self, entry_id: str) -> Path:
        if not entry_id or "/" in entry_id or "\\" in entry_id or entry_id.startswith("."):
            raise ValueError(f"Invalid scan log id '{entry_id}'")
        return self.directory / f"{entry_id}{ENTRY_SUFFIX}"

    def append(
        self,
        raw_blocks: Sequence[bytes],
        diagnostics: Mapping[str, object],
        *,
        timestamp: Optional[datetime] = None,
    ) -> str:
        ts = (timestamp or datetime.now(timezone.utc)).astimezone(timezone.utc)
        payload: Dict[str, object] = {
            key: _scalar(value) for key, value in diagnostics.items() if key not in RESERVED_KEYS
        }
        payload["timestamp"] = ts.isoformat().replace("+00:00", "Z")
        payload["blockCount"] = len(raw_blocks)
        payload["blocks"] = hex_dump(raw_blocks)
        text = json.dumps(payload, indent=2, sort_keys=True)
        entry_id = _entry_name(ts)
        target = self._path(entry_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".pending-", suffix=ENTRY_SUFFIX, dir=self.directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(text)
                    fh.flush()
                    os.fsync(fh.fileno())
                # link() refuses to replace an existing entry
                os.link(tmp_name, target)
            finally:
                Path(tmp_name).unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Failed to persist scan log %s: %s", entry_id, exc)
            raise PersistenceFailure(str(target), exc) from exc
        logger.info("Persisted scan to %s", target.name)
        self.events.publish(ScanLogPersisted(entry_id=entry_id, path=target, timestamp=ts))
        return entry_id

    def list(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        paths = [
            path
            for path in self.directory.iterdir()
            if path.is_file() and path.name.startswith(ENTRY_PREFIX) and path.suffix == ENTRY_SUFFIX
        ]
        paths.sort(key=lambda path: (path.stat().st_mtime_ns, path.name), reverse=True)
        return [path.stem for path in paths]

    def load(self, entry_id: str) -> ScanLogEntry:
        path = self._path(entry_id)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ScanLogDecodeError(entry_id, str(exc)) from exc
        if not isinstance(raw, dict):
            raise ScanLogDecodeError(entry_id, "payload is not a JSON object")
        try:
            timestamp = datetime.fromisoformat(str(raw["timestamp"]).replace("Z", "+00:00"))
            block_records = raw["blocks"]
            if not isinstance(block_records, list):
                raise ValueError("'blocks' is not a list")
            ordered = sorted(block_records, key=lambda item: int(item["index"]))
            blocks = [str(item["hex"]).upper() for item in ordered]
            block_count = int(raw.get("blockCount", len(blocks)))
        except (KeyError, TypeError, ValueError) as exc:
            raise ScanLogDecodeError(entry_id, str(exc)) from exc
        diagnostics: Dict[str, Scalar] = {}
        for key, value in raw.items():
            if key in RESERVED_KEYS:
                continue
            if isinstance(value, (str, bool, int, float)):
                diagnostics[key] = value
        return ScanLogEntry(
            entry_id=entry_id,
            timestamp=timestamp,
            block_count=block_count,
            blocks=blocks,
            diagnostics=diagnostics,
        )

    def delete(self, entry_id: str) -> None:
        path = self._path(entry_id)
        path.unlink()
        logger.info("Deleted log %s", path.name)

    def purge_all(self) -> int:
        removed = 0
        for entry_id in self.list():
            try:
                self.delete(entry_id)
            except FileNotFoundError:
                continue
            removed += 1
        return removed
