"""Command line interface for the glucotag package."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .nfc.calibration import CalibrationStore
from .nfc.config import ScannerConfig, load_config
from .nfc.controller import AcquisitionController
from .nfc.decoder import decode
from .nfc.errors import ScanLogDecodeError
from .nfc.review import recent_candidates
from .nfc.scanlog import ScanLogStore
from .nfc.serial_bridge import SerialBridgeRadio, serial
from .reporting import export_scan_log, load_reference_points_csv

logger = logging.getLogger(__name__)

app = typer.Typer(
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Glucose sensor tag acquisition utilities.",
)
logs_app = typer.Typer(help="Scan log management.")
calibrate_app = typer.Typer(help="Linear calibration utilities.")
app.add_typer(logs_app, name="logs")
app.add_typer(calibrate_app, name="calibrate")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to scanner config JSON.")
OverrideOption = typer.Option(
    None,
    "--set",
    help="Override config keys, e.g. --set verification.required_reads=4",
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_path: Optional[Path], override: Optional[List[str]]) -> ScannerConfig:
    try:
        return load_config(config_path, override or None)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--config/--set") from exc


@app.command()
def scan(
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial device of the NFC bridge."),
    config_path: Optional[Path] = ConfigOption,
    override: Optional[List[str]] = OverrideOption,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every block read."),
) -> None:
    """Run one verified acquisition and log it."""

    cfg = _load(config_path, override)
    if port:
        cfg.serial.port = port
    _configure_logging(verbose or cfg.verbose_logging)
    logger.debug("Using NFC bridge on %s", cfg.serial.port)
    if serial is None:
        raise typer.BadParameter("pyserial is required for scanning (pip install pyserial)")
    controller = AcquisitionController(SerialBridgeRadio(cfg.serial), cfg)
    outcome = asyncio.run(controller.start_scan())
    if outcome is None:  # pragma: no cover - single invocation cannot overlap
        raise typer.Exit(code=1)
    typer.echo(outcome.banner)
    reading = outcome.reading
    if reading is not None and reading.glucose is not None:
        typer.echo(f"Glucose: {reading.glucose:.0f} mg/dL {reading.trend.symbol} ({reading.trend.value})")
    if outcome.log_entry_id:
        typer.echo(f"Logged as {outcome.log_entry_id}")
    if not outcome.succeeded:
        raise typer.Exit(code=2)


@app.command("decode")
def decode_command(
    input_path: Path = typer.Option(..., "--in", help="Scan log JSON file", exists=True, readable=True),
    raw: bool = typer.Option(False, "--raw", help="Ignore the stored calibration."),
    config_path: Optional[Path] = ConfigOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    """Re-decode a logged scan offline."""

    cfg = _load(config_path, override)
    store = ScanLogStore(input_path.parent)
    try:
        entry = store.load(input_path.stem)
        blocks = entry.raw_blocks()
    except (ScanLogDecodeError, ValueError) as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc
    calibration = None if raw else CalibrationStore(cfg.storage.calibration_path).load()
    reading = decode(blocks, calibration)
    glucose = "n/a" if reading.glucose is None else f"{reading.glucose:.1f} mg/dL"
    typer.echo(f"Glucose: {glucose}")
    typer.echo(f"Trend: {reading.trend.value}")
    for key in sorted(reading.diagnostics):
        typer.echo(f"  {key}: {reading.diagnostics[key]}")


@logs_app.command("list")
def logs_list(config_path: Optional[Path] = ConfigOption, override: Optional[List[str]] = OverrideOption) -> None:
    cfg = _load(config_path, override)
    for entry_id in ScanLogStore(cfg.storage.scan_log_dir).list():
        typer.echo(entry_id)


@logs_app.command("show")
def logs_show(
    entry_id: str = typer.Argument(..., help="Scan log identifier"),
    config_path: Optional[Path] = ConfigOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    cfg = _load(config_path, override)
    try:
        entry = ScanLogStore(cfg.storage.scan_log_dir).load(entry_id)
    except FileNotFoundError as exc:
        raise typer.BadParameter(f"Unknown scan log '{entry_id}'") from exc
    except ScanLogDecodeError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc
    typer.echo(
        json.dumps(
            {
                "timestamp": entry.timestamp.isoformat(),
                "blockCount": entry.block_count,
                "blocks": entry.blocks,
                **entry.diagnostics,
            },
            indent=2,
            sort_keys=True,
        )
    )


@logs_app.command("delete")
def logs_delete(
    entry_id: str = typer.Argument(..., help="Scan log identifier"),
    config_path: Optional[Path] = ConfigOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    cfg = _load(config_path, override)
    try:
        ScanLogStore(cfg.storage.scan_log_dir).delete(entry_id)
    except FileNotFoundError as exc:
        raise typer.BadParameter(f"Unknown scan log '{entry_id}'") from exc
    typer.echo(f"Deleted {entry_id}")


@logs_app.command("purge")
def logs_purge(
    yes: bool = typer.Option(False, "--yes", help="Confirm deletion of every scan log."),
    config_path: Optional[Path] = ConfigOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    if not yes:
        raise typer.BadParameter("Pass --yes to delete every scan log", param_hint="--yes")
    cfg = _load(config_path, override)
    removed = ScanLogStore(cfg.storage.scan_log_dir).purge_all()
    typer.echo(f"Deleted {removed} scan log(s)")


@logs_app.command("export")
def logs_export(
    out: Path = typer.Option(Path("scan_log.csv"), "--out", help="Destination CSV"),
    config_path: Optional[Path] = ConfigOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    cfg = _load(config_path, override)
    rows = export_scan_log(ScanLogStore(cfg.storage.scan_log_dir), out)
    typer.echo(f"Wrote {rows} row(s) to {out}")


@calibrate_app.command("show")
def calibrate_show(config_path: Optional[Path] = ConfigOption, override: Optional[List[str]] = OverrideOption) -> None:
    cfg = _load(config_path, override)
    calibration = CalibrationStore(cfg.storage.calibration_path).load()
    typer.echo(f"Calibrated: {'yes' if calibration.is_calibrated else 'no'}")
    typer.echo(f"Slope: {calibration.slope:.6f}")
    typer.echo(f"Intercept: {calibration.intercept:.3f}")


@calibrate_app.command("candidates")
def calibrate_candidates(
    limit: int = typer.Option(8, "--limit", help="Number of recent scans to list."),
    config_path: Optional[Path] = ConfigOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    """List recent scans with their raw value for pairing with meter readings."""

    cfg = _load(config_path, override)
    for candidate in recent_candidates(ScanLogStore(cfg.storage.scan_log_dir), limit):
        glucose = candidate.glucose or "-"
        typer.echo(f"{candidate.entry_id}\t{candidate.timestamp.isoformat()}\traw={candidate.raw_value}\tglucose={glucose}")


@calibrate_app.command("recompute")
def calibrate_recompute(
    points_csv: Path = typer.Option(..., "--points-csv", help="CSV with raw_value,official_value", exists=True),
    config_path: Optional[Path] = ConfigOption,
    override: Optional[List[str]] = OverrideOption,
) -> None:
    cfg = _load(config_path, override)
    try:
        points = load_reference_points_csv(points_csv)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--points-csv") from exc
    store = CalibrationStore(cfg.storage.calibration_path)
    eligible = sum(1 for point in points if point.eligible)
    calibration = store.recompute(points)
    if eligible < 2:
        typer.echo(f"Calibration unchanged: {eligible} usable point(s), need at least 2")
        raise typer.Exit(code=1)
    typer.echo(f"Slope: {calibration.slope:.6f}")
    typer.echo(f"Intercept: {calibration.intercept:.3f}")


@calibrate_app.command("reset")
def calibrate_reset(config_path: Optional[Path] = ConfigOption, override: Optional[List[str]] = OverrideOption) -> None:
    cfg = _load(config_path, override)
    CalibrationStore(cfg.storage.calibration_path).reset()
    typer.echo("Calibration reset")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
