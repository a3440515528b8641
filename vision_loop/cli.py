from __future__ import annotations

import asyncio
import json
import logging
from functools import partial
from pathlib import Path

import typer
import yaml

from vision_loop.analysis.pipeline import RequestPipeline
from vision_loop.analysis.scheduler import AnalysisScheduler
from vision_loop.capture.camera import CameraAcquisitionError, CameraSource
from vision_loop.capture.encoder import encode_frame
from vision_loop.config import Settings, load_settings, resolve_config_path, validate_cadence_ms
from vision_loop.inference.client import InferenceClient
from vision_loop.logging_config import configure_logging
from vision_loop.models import Failure, InferenceOutcome
from vision_loop.presentation.console import ConsoleSink

app = typer.Typer(help="Periodic webcam capture and vision-model query loop.")
config_app = typer.Typer(help="Configuration commands.")

app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

DRAIN_TIMEOUT_SECONDS = 5.0
CONFIG_POLL_SECONDS = 1.0

CONFIG_OPTION = typer.Option(
    Path("configs/default.yaml"),
    "--config",
    "-c",
    envvar="VISION_LOOP_CONFIG",
    help="Path to YAML configuration file.",
)


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _apply_overrides(
    settings: Settings,
    *,
    endpoint: str | None = None,
    instruction: str | None = None,
    cadence_ms: int | None = None,
    camera_index: int | None = None,
) -> Settings:
    if endpoint is not None:
        settings.inference.endpoint = endpoint
    if instruction is not None:
        settings.analysis.instruction = instruction
    if cadence_ms is not None:
        settings.analysis.cadence_ms = validate_cadence_ms(cadence_ms)
    if camera_index is not None:
        settings.camera.index = camera_index
    return settings


def _build_camera(settings: Settings) -> CameraSource:
    return CameraSource(
        index=settings.camera.index,
        width=settings.camera.width,
        height=settings.camera.height,
    )


def _build_client(settings: Settings) -> InferenceClient:
    return InferenceClient(timeout_seconds=settings.inference.timeout_seconds)


@config_app.command("show")
def show_config(config_path: Path = CONFIG_OPTION) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command("run")
def run_loop(
    config_path: Path = CONFIG_OPTION,
    endpoint: str | None = typer.Option(None, help="Chat-completions endpoint URL."),
    instruction: str | None = typer.Option(None, "--instruction", "-i", help="Question sent with every frame."),
    cadence_ms: int | None = typer.Option(None, "--cadence-ms", help="Analysis interval in milliseconds."),
    camera_index: int | None = typer.Option(None, "--camera", help="OpenCV camera index."),
    duration: float | None = typer.Option(None, help="Stop after this many seconds. Runs until Ctrl-C when omitted."),
    watch_config: bool = typer.Option(True, help="Apply cadence/instruction/endpoint edits to the config file live."),
) -> None:
    """Start the camera and analyse frames at a fixed cadence."""

    try:
        settings = _apply_overrides(
            _bootstrap(config_path),
            endpoint=endpoint,
            instruction=instruction,
            cadence_ms=cadence_ms,
            camera_index=camera_index,
        )
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    watch_path = resolve_config_path(config_path) if watch_config else None

    try:
        started = asyncio.run(_run_session(settings, duration=duration, watch_path=watch_path))
    except KeyboardInterrupt:
        typer.echo("Interrupted.", err=True)
        return

    if not started:
        raise typer.Exit(code=1)


@app.command("once")
def run_single(
    config_path: Path = CONFIG_OPTION,
    endpoint: str | None = typer.Option(None, help="Chat-completions endpoint URL."),
    instruction: str | None = typer.Option(None, "--instruction", "-i", help="Question sent with the frame."),
    camera_index: int | None = typer.Option(None, "--camera", help="OpenCV camera index."),
) -> None:
    """Capture a single frame, query the endpoint once and print the answer."""

    try:
        settings = _apply_overrides(
            _bootstrap(config_path),
            endpoint=endpoint,
            instruction=instruction,
            camera_index=camera_index,
        )
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    try:
        outcome = asyncio.run(_run_single(settings))
    except CameraAcquisitionError as exc:
        logger.error("Camera acquisition failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    if isinstance(outcome, Failure):
        raise typer.Exit(code=1)


async def _run_session(settings: Settings, *, duration: float | None, watch_path: Path | None) -> bool:
    source = _build_camera(settings)
    client = _build_client(settings)
    scheduler = AnalysisScheduler.from_settings(settings, source=source, client=client, sink=ConsoleSink())

    try:
        if not scheduler.start():
            return False

        waiters: list[asyncio.Task[None]] = []
        if watch_path is not None:
            waiters.append(asyncio.create_task(_watch_config(watch_path, scheduler)))
        try:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            for waiter in waiters:
                waiter.cancel()
        return True
    finally:
        scheduler.stop()
        try:
            await asyncio.wait_for(scheduler.drain(), timeout=DRAIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Abandoning in-flight analysis after %.0fs.", DRAIN_TIMEOUT_SECONDS)
        await client.aclose()
        logger.info(
            "Session finished: %d invocations, %d dropped ticks.",
            scheduler.pipeline.invocation_count,
            scheduler.dropped_ticks,
        )


async def _run_single(settings: Settings) -> InferenceOutcome | None:
    source = _build_camera(settings)
    source.open()
    client = _build_client(settings)
    try:
        pipeline = RequestPipeline(
            source=source,
            client=client,
            sink=ConsoleSink(timestamps=False),
            encoder=partial(encode_frame, quality=settings.camera.jpeg_quality, mirror=settings.camera.mirror),
            model_id=settings.inference.model,
        )
        return await pipeline.run_once(settings.analysis.instruction, settings.inference.endpoint)
    finally:
        source.release()
        await client.aclose()


async def _watch_config(config_path: Path, scheduler: AnalysisScheduler) -> None:
    last_mtime = _mtime(config_path)
    previous = _load_quietly(config_path)

    while True:
        await asyncio.sleep(CONFIG_POLL_SECONDS)
        mtime = _mtime(config_path)
        if mtime == last_mtime:
            continue
        last_mtime = mtime

        current = _load_quietly(config_path)
        if current is None:
            continue
        if previous is not None:
            _apply_live_settings(scheduler, previous, current)
        previous = current


def _apply_live_settings(scheduler: AnalysisScheduler, previous: Settings, current: Settings) -> None:
    """Push fields edited in the config file since the last read into a running scheduler."""

    if current.analysis.cadence_ms != previous.analysis.cadence_ms:
        scheduler.on_cadence_changed(current.analysis.cadence_ms)
    if current.analysis.instruction != previous.analysis.instruction:
        scheduler.instruction = current.analysis.instruction
        logger.info("Instruction updated from config file.")
    if current.inference.endpoint != previous.inference.endpoint:
        scheduler.endpoint = current.inference.endpoint
        logger.info("Endpoint updated to %s", scheduler.endpoint)


def _load_quietly(config_path: Path) -> Settings | None:
    try:
        return load_settings(config_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable config at %s (%s).", config_path, exc)
        return None


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


if __name__ == "__main__":
    app()
