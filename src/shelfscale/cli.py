"""Command line interface for the shelfscale package."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional

import typer

from .acquisition import AcquisitionLoop
from .calibration import CalibrationOperator
from .config import ScaleConfig, load_config
from .errors import CalibrationOrchestrationError, StoreError, TransportError
from .frames import FrameParser
from .orchestrator import CalibrationOrchestrator
from .store import CalibrationStore, open_store, seed_defaults, seed_from_json
from .transport import SerialSettings, SerialTransport

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, context_settings={"help_option_names": ["-h", "--help"]},
                  help="Load cell shelf scale service.")


def _config_option():
    return typer.Option(None, "--config", "-c", help="Path to JSON config file.")


def _override_option():
    return typer.Option(
        None, "--set", help="Override config keys, e.g. --set serial.port=/dev/ttyACM0 --set acquisition.cell_count=12"
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_path: Optional[Path], override: Optional[List[str]]) -> ScaleConfig:
    try:
        return load_config(config_path, override or None)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--config/--set") from exc


def _open_store(cfg: ScaleConfig) -> CalibrationStore:
    try:
        return open_store(cfg.store.backend, cfg.store.path)
    except StoreError as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _build_transport(cfg: ScaleConfig) -> SerialTransport:
    return SerialTransport(
        SerialSettings(
            port=cfg.serial.port,
            baudrate=cfg.serial.baudrate,
            timeout=cfg.serial.timeout,
            command_terminator=cfg.serial.command_terminator,
            frame_delimiter=cfg.serial.frame_delimiter,
        )
    )


def build_loop(cfg: ScaleConfig, transport, store: CalibrationStore) -> AcquisitionLoop:
    return AcquisitionLoop(
        transport,
        store,
        poll_interval=cfg.acquisition.poll_interval,
        timeout=cfg.serial.timeout,
        command=cfg.serial.command,
        operator=CalibrationOperator(cfg.acquisition.operator.lower()),
        parser=FrameParser(),
        stats_log_interval=cfg.acquisition.stats_log_interval,
    )


@app.command()
def serve(
    config_path: Optional[Path] = _config_option(),
    override: Optional[List[str]] = _override_option(),
    seed: bool = typer.Option(False, "--seed", help="Seed missing load cells with default calibration first."),
) -> None:
    """Run the acquisition loop and the HTTP API."""
    from .api import create_app, serve as serve_api

    cfg = _load(config_path, override)
    store = _open_store(cfg)
    if seed:
        seed_defaults(store, cfg.acquisition.cell_count)
    transport = _build_transport(cfg)
    loop = build_loop(cfg, transport, store)
    orchestrator = CalibrationOrchestrator(loop)
    api = create_app(
        store,
        loop,
        orchestrator,
        cell_ids=cfg.cell_ids,
        products=cfg.products,
        cors_origins=cfg.api.cors_origins,
    )
    loop.start()
    try:
        serve_api(api, cfg.api.host, cfg.api.port)
    except KeyboardInterrupt:
        logger.info("Stopping service (Ctrl+C)")
    finally:
        loop.stop(wait=True, timeout=cfg.serial.timeout + 1.0)
        transport.close()
        store.close()


@app.command()
def setup(
    config_path: Optional[Path] = _config_option(),
    override: Optional[List[str]] = _override_option(),
    from_json: Optional[Path] = typer.Option(
        None, "--from-json", exists=True, readable=True, help="Calibration export with data_order/offset/multiplier."
    ),
    overwrite: bool = typer.Option(False, "--overwrite", help="Reset existing cells to offset 0, multiplier 1."),
) -> None:
    """Seed the calibration store."""
    cfg = _load(config_path, override)
    store = _open_store(cfg)
    try:
        if from_json is not None:
            try:
                written = seed_from_json(store, from_json)
            except ValueError as exc:
                raise typer.BadParameter(str(exc), param_hint="--from-json") from exc
        else:
            written = seed_defaults(store, cfg.acquisition.cell_count, overwrite=overwrite)
    finally:
        store.close()
    typer.echo(f"Load cells written: {written}")


@app.command()
def calibrate(
    config_path: Optional[Path] = _config_option(),
    override: Optional[List[str]] = _override_option(),
) -> None:
    """Capture the current readings as new zero offsets."""
    cfg = _load(config_path, override)
    store = _open_store(cfg)
    transport = _build_transport(cfg)
    orchestrator = CalibrationOrchestrator(build_loop(cfg, transport, store))
    try:
        transport.open()
        time.sleep(max(cfg.serial.reset_delay, 0.0))
        report = orchestrator.recalibrate(resume=False)
    except TransportError as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except CalibrationOrchestrationError as exc:
        typer.echo(f"Calibration FAILED: {exc}")
        for cell_id, reason in sorted(exc.failed_cells.items()):
            typer.echo(f"  load cell {cell_id}: {reason}")
        raise typer.Exit(code=1) from exc
    finally:
        transport.close()
        store.close()
    for cell_id, offset in sorted(report.offsets.items()):
        typer.echo(f"load cell {cell_id}: offset={offset:g}")
    if report.skipped:
        typer.echo(f"Skipped (no calibration record): {', '.join(str(i) for i in report.skipped)}")
    typer.echo(f"Calibration stored for {len(report.offsets)} load cells")


@app.command()
def probe(
    config_path: Optional[Path] = _config_option(),
    override: Optional[List[str]] = _override_option(),
    command: Optional[str] = typer.Option(None, "--command", help="Command to send (default from config)."),
    timeout: float = typer.Option(10.0, "--timeout", help="Response timeout (seconds)."),
) -> None:
    """Send one command to the device and print the raw response."""
    cfg = _load(config_path, override)
    transport = _build_transport(cfg)
    cmd = command or cfg.serial.command
    try:
        transport.open()
        typer.echo(f"Waiting {cfg.serial.reset_delay:.1f}s for the device to reset...")
        time.sleep(max(cfg.serial.reset_delay, 0.0))
        typer.echo(f"Sending command: {cmd!r}")
        response = transport.send_and_await(cmd, timeout)
    except (TimeoutError, TransportError) as exc:
        typer.echo(f"[error] {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        transport.close()
    typer.echo(f"Response: {response!r}")
    frame = FrameParser().decode(response)
    if frame:
        typer.echo(f"Decoded {len(frame)} values: {', '.join(f'{v:g}' for v in frame)}")
    else:
        typer.echo("Response did not contain an amplitude list")


@app.command()
def weights(
    config_path: Optional[Path] = _config_option(),
    override: Optional[List[str]] = _override_option(),
) -> None:
    """Print the stored calibration and last weight of each load cell."""
    cfg = _load(config_path, override)
    store = _open_store(cfg)
    try:
        cells = store.list_cells(cfg.cell_ids)
    finally:
        store.close()
    if not cells:
        typer.echo("No load cells configured; run 'shelfscale setup' first.")
        return
    typer.echo(f"{'id':>4} {'offset':>12} {'multiplier':>12} {'weight':>12}")
    for cell in cells:
        typer.echo(f"{cell.id:>4} {cell.offset:>12.3f} {cell.multiplier:>12.5f} {cell.weight:>12.2f}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
