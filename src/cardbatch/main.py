"""Command-line entrypoint for batch card scanning."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from .config import DEFAULT_SETTINGS_PATH, ScanSettings, load_settings, save_settings
from .errors import CardBatchError
from .events import CompleteEvent, ErrorEvent, ProgressEvent
from .models import CardAddress, Side
from .orchestrator import BatchOrchestrator
from .processing import process_card

app = typer.Typer(help="Scan trading cards through an ADF scanner into numbered image files.")
settings_app = typer.Typer(help="Show or change the stored settings.")
app.add_typer(settings_app, name="settings")

SettingsOption = typer.Option(DEFAULT_SETTINGS_PATH, "--settings", help="Settings JSON file.")


@app.callback()
def configure(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output.")) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


def _load(path: Path) -> ScanSettings:
    try:
        return load_settings(path)
    except (ValidationError, ValueError) as exc:
        typer.echo(f"Invalid settings in {path}: {exc}", err=True)
        raise typer.Exit(code=2)


@app.command("devices")
def list_devices(settings_path: Path = SettingsOption) -> None:
    """List scanners reported by scanimage."""

    settings = _load(settings_path)
    orchestrator = BatchOrchestrator(settings)
    try:
        devices = asyncio.run(orchestrator.list_devices())
    except CardBatchError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    if not devices:
        typer.echo("No scanners found.")
        return
    typer.echo(json.dumps([device.as_payload() for device in devices], indent=2))


async def _run_batch(orchestrator: BatchOrchestrator, batch_name: str) -> CompleteEvent:
    loop = asyncio.get_running_loop()
    typer.echo(await orchestrator.start(batch_name))
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop)
    except NotImplementedError:  # pragma: no cover - not available on Windows
        pass
    try:
        while True:
            event = await orchestrator.events.get()
            if isinstance(event, ProgressEvent):
                typer.echo(f"Cards: {event.current}  ({event.filename or 'no image'})")
            elif isinstance(event, ErrorEvent):
                typer.echo(f"Error: {event.message}", err=True)
            elif isinstance(event, CompleteEvent):
                await orchestrator.wait_closed()
                return event
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:  # pragma: no cover
            pass


@app.command("scan")
def scan(
    batch_name: str = typer.Argument(..., help="Name of the batch; also the output folder name."),
    settings_path: Path = SettingsOption,
    device: Optional[str] = typer.Option(None, help="Override the configured device id."),
    output_directory: Optional[Path] = typer.Option(None, help="Override the output directory."),
    duplex: Optional[bool] = typer.Option(None, "--duplex/--simplex", help="Override duplex capture."),
) -> None:
    """Scan a batch until the feeder runs empty (Ctrl+C stops early)."""

    settings = _load(settings_path)
    overrides = {
        key: value
        for key, value in {
            "device_id": device,
            "output_directory": output_directory,
            "duplex": duplex,
        }.items()
        if value is not None
    }
    if overrides:
        settings = settings.updated(**overrides)

    orchestrator = BatchOrchestrator(settings)
    try:
        result = asyncio.run(_run_batch(orchestrator, batch_name))
    except CardBatchError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    typer.echo(result.message)
    if not result.success:
        raise typer.Exit(code=1)


@app.command("process")
def process(
    raw_image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw page image."),
    card: int = typer.Option(1, min=1, help="Card number used for the output name."),
    side: Side = typer.Option(Side.FRONT, help="Card side (F or B)."),
    output_dir: Path = typer.Option(Path("."), help="Directory for the processed image."),
    settings_path: Path = SettingsOption,
) -> None:
    """Run the processing pipeline on a single page image."""

    settings = _load(settings_path)
    try:
        result = process_card(raw_image.read_bytes(), CardAddress(card, side), settings.processing_options())
    except CardBatchError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / result.filename
    target.write_bytes(result.data)
    region = result.region
    typer.echo(f"Wrote {target} (crop {region.width}x{region.height} at {region.left},{region.top})")
    if not result.validation.valid:
        typer.echo(f"Warning: {result.validation.reason}", err=True)


@settings_app.command("show")
def show_settings(settings_path: Path = SettingsOption) -> None:
    typer.echo(_load(settings_path).model_dump_json(indent=2))


@settings_app.command("set")
def set_settings(
    assignments: List[str] = typer.Argument(..., help="KEY=VALUE pairs, e.g. dpi=300 duplex=false."),
    settings_path: Path = SettingsOption,
) -> None:
    changes = {}
    for item in assignments:
        if "=" not in item:
            typer.echo(f"Expected KEY=VALUE, got {item!r}", err=True)
            raise typer.Exit(code=2)
        key, value = item.split("=", 1)
        changes[key.strip()] = value.strip()
    unknown = set(changes) - set(ScanSettings.model_fields)
    if unknown:
        typer.echo(f"Unknown setting(s): {', '.join(sorted(unknown))}", err=True)
        raise typer.Exit(code=2)
    try:
        settings = _load(settings_path).updated(**changes)
    except ValidationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    path = save_settings(settings, settings_path)
    typer.echo(f"Saved settings to {path}")


if __name__ == "__main__":
    app()
