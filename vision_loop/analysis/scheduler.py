from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Protocol

from vision_loop import messages
from vision_loop.analysis.pipeline import (
    DEFAULT_MODEL_ID,
    InferenceSubmitter,
    PresentationSink,
    RequestPipeline,
)
from vision_loop.capture.camera import CameraAcquisitionError
from vision_loop.capture.encoder import encode_frame
from vision_loop.config import Settings, validate_cadence_ms
from vision_loop.models import AnalysisState, Status

logger = logging.getLogger(__name__)


class ManagedVideoSource(Protocol):
    def open(self) -> None: ...

    def current_frame(self) -> Any: ...

    def release(self) -> None: ...


class _StatusBoard:
    """Forwards to the real sink and remembers the last status emitted."""

    def __init__(self, sink: PresentationSink) -> None:
        self._sink = sink
        self.current = messages.STATUS_IDLE

    def on_status(self, status: Status) -> None:
        self.current = status
        self._sink.on_status(status)

    def on_result(self, text: str, is_error: bool) -> None:
        self._sink.on_result(text, is_error)


class AnalysisScheduler:
    """Owns the run/idle lifecycle and the periodic analysis cadence.

    Must be driven from inside a running asyncio event loop. Ticks that find
    the pipeline busy are dropped, so a slow endpoint lowers the effective
    cadence instead of queueing requests.
    """

    def __init__(
        self,
        *,
        source: ManagedVideoSource,
        client: InferenceSubmitter,
        sink: PresentationSink,
        endpoint: str,
        instruction: str,
        cadence_ms: int = 2000,
        encoder: Callable[[Any], bytes] = encode_frame,
        model_id: str = DEFAULT_MODEL_ID,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._source = source
        self._sleep = sleep
        self._board = _StatusBoard(sink)
        self.pipeline = RequestPipeline(
            source=source,
            client=client,
            sink=self._board,
            encoder=encoder,
            model_id=model_id,
        )
        self.endpoint = endpoint
        self.instruction = instruction
        self._cadence_ms = validate_cadence_ms(cadence_ms)
        self._state = AnalysisState.IDLE
        self._timer: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()
        self._generation = 0
        self.dropped_ticks = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        source: ManagedVideoSource,
        client: InferenceSubmitter,
        sink: PresentationSink,
        encoder: Callable[[Any], bytes] | None = None,
    ) -> AnalysisScheduler:
        if encoder is None:
            encoder = partial(encode_frame, quality=settings.camera.jpeg_quality, mirror=settings.camera.mirror)

        return cls(
            source=source,
            client=client,
            sink=sink,
            endpoint=settings.inference.endpoint,
            instruction=settings.analysis.instruction,
            cadence_ms=settings.analysis.cadence_ms,
            encoder=encoder,
            model_id=settings.inference.model,
        )

    @property
    def state(self) -> AnalysisState:
        return self._state

    @property
    def status(self) -> Status:
        return self._board.current

    @property
    def cadence_ms(self) -> int:
        return self._cadence_ms

    @property
    def is_running(self) -> bool:
        return self._state is AnalysisState.RUNNING

    def start(self) -> bool:
        """Acquire the video source and begin analysing; returns False on failure."""

        if self._state in (AnalysisState.STARTING, AnalysisState.RUNNING):
            logger.warning("start() ignored; scheduler is already %s.", self._state.value)
            return False

        self._set_state(AnalysisState.STARTING, messages.STATUS_STARTING)
        try:
            self._source.open()
        except CameraAcquisitionError as exc:
            logger.error("Camera acquisition failed: %s", exc)
            self._fail_start(exc)
            return False
        except Exception as exc:
            logger.exception("Camera acquisition failed unexpectedly")
            self._fail_start(exc)
            return False

        self._generation += 1
        self._state = AnalysisState.RUNNING
        logger.info("Analysis started at %d ms cadence.", self._cadence_ms)

        if self.pipeline.is_processing:
            # A call from a previous run is still draining; the first tick picks up.
            self._board.on_status(messages.STATUS_ACTIVE)
        else:
            self._dispatch()
        self._arm_timer()
        return True

    def stop(self) -> None:
        """Cancel the timer and release the source. In-flight requests finish on their own."""

        self._cancel_timer()
        self._source.release()
        if self._state is not AnalysisState.STOPPED:
            logger.info("Analysis stopped.")
        self._set_state(AnalysisState.STOPPED, messages.STATUS_STOPPED)

    def on_cadence_changed(self, cadence_ms: int) -> None:
        self._cadence_ms = validate_cadence_ms(cadence_ms)
        if self._state is not AnalysisState.RUNNING:
            return

        self._cancel_timer()
        if not self.pipeline.is_processing:
            self._dispatch()
        self._arm_timer()
        logger.info("Cadence changed to %d ms.", self._cadence_ms)

    async def drain(self) -> None:
        """Wait for in-flight invocations, including ones orphaned by ``stop()``."""

        while self._inflight:
            await asyncio.wait(set(self._inflight))

    def _set_state(self, state: AnalysisState, status: Status) -> None:
        self._state = state
        self._board.on_status(status)

    def _fail_start(self, exc: Exception) -> None:
        self._source.release()
        self._set_state(AnalysisState.ERROR, messages.STATUS_CAMERA_ERROR)
        reason = str(exc) or type(exc).__name__
        self._board.on_result(f"{messages.CAMERA_ACCESS_ERROR_PREFIX} {reason}", True)

    def _arm_timer(self) -> None:
        period = self._cadence_ms / 1000.0
        self._timer = asyncio.create_task(self._tick_loop(period), name="vision-loop-timer")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _tick_loop(self, period: float) -> None:
        while True:
            await self._sleep(period)
            self._on_tick()

    def _on_tick(self) -> None:
        if self._state is not AnalysisState.RUNNING:
            return
        if self.pipeline.is_processing:
            self.dropped_ticks += 1
            logger.debug("Tick dropped; previous analysis still in flight.")
            return
        self._dispatch()

    def _dispatch(self) -> None:
        generation = self._generation
        task = asyncio.create_task(
            self.pipeline.run_once(
                self.instruction,
                self.endpoint,
                is_current=lambda: self._is_current(generation),
            ),
            name=f"vision-loop-analysis-{generation}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _is_current(self, generation: int) -> bool:
        return self._state is AnalysisState.RUNNING and self._generation == generation
