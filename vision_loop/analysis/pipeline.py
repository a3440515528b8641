from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from vision_loop import messages
from vision_loop.capture.camera import CaptureError
from vision_loop.capture.encoder import encode_frame
from vision_loop.inference.client import (
    InferenceConnectionError,
    InferenceProtocolError,
    ResponseParseError,
    extract_response_text,
)
from vision_loop.models import ErrorKind, Failure, InferenceOutcome, InferenceRequest, Status, Success

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "SmolVLM"
REQUEST_MAX_TOKENS = 256
REQUEST_TEMPERATURE = 0.7


class VideoSource(Protocol):
    def current_frame(self) -> Any: ...


class InferenceSubmitter(Protocol):
    async def submit(self, endpoint: str, request: InferenceRequest) -> dict[str, Any]: ...


class PresentationSink(Protocol):
    def on_status(self, status: Status) -> None: ...

    def on_result(self, text: str, is_error: bool) -> None: ...


class RequestPipeline:
    """Runs one capture, encode, submit, classify cycle at a time.

    ``is_processing`` is the overlap guard: it is true for exactly the lifetime
    of one ``run_once`` call and is cleared on every exit path.
    """

    def __init__(
        self,
        *,
        source: VideoSource,
        client: InferenceSubmitter,
        sink: PresentationSink,
        encoder: Callable[[Any], bytes] = encode_frame,
        model_id: str = DEFAULT_MODEL_ID,
    ) -> None:
        self._source = source
        self._client = client
        self._sink = sink
        self._encoder = encoder
        self.model_id = model_id
        self._processing = False
        self.invocation_count = 0

    @property
    def is_processing(self) -> bool:
        return self._processing

    def build_request(self, image: bytes, instruction: str) -> InferenceRequest:
        return InferenceRequest(
            image=image,
            instruction=instruction.strip() or messages.FALLBACK_INSTRUCTION,
            model_id=self.model_id,
            max_tokens=REQUEST_MAX_TOKENS,
            temperature=REQUEST_TEMPERATURE,
            stream=False,
        )

    async def run_once(
        self,
        instruction: str,
        endpoint: str,
        *,
        is_current: Callable[[], bool] | None = None,
    ) -> InferenceOutcome | None:
        """Execute one invocation; returns None when it is skipped.

        An invocation is skipped when another one is in flight or when
        ``is_current`` is already False as the task begins. ``is_current`` is
        checked again after the network call resumes; a False answer then means
        the outcome is returned but never shown.
        """

        if self._processing:
            logger.debug("Analysis already in flight; skipping invocation.")
            return None
        if is_current is not None and not is_current():
            logger.debug("Scheduler stopped before the invocation began; skipping.")
            return None

        self._processing = True
        self.invocation_count += 1
        self._sink.on_status(messages.STATUS_ANALYZING)
        try:
            outcome = await self._execute(instruction, endpoint)
        except Exception as exc:
            logger.exception("Analysis failed unexpectedly")
            outcome = Failure(ErrorKind.UNEXPECTED, messages.prefixed_error(str(exc) or type(exc).__name__))
        finally:
            self._processing = False

        if is_current is not None and not is_current():
            logger.info("Discarding analysis result; scheduler is no longer running.")
            return outcome

        self._report(outcome)
        return outcome

    async def _execute(self, instruction: str, endpoint: str) -> InferenceOutcome:
        try:
            frame = self._source.current_frame()
            image = self._encoder(frame)
        except CaptureError as exc:
            logger.warning("Frame capture failed: %s", exc)
            return Failure(ErrorKind.CAPTURE, messages.prefixed_error(str(exc)))

        request = self.build_request(image, instruction)

        try:
            payload = await self._client.submit(endpoint, request)
        except InferenceConnectionError as exc:
            logger.warning("Inference endpoint unreachable: %s", exc)
            return Failure(ErrorKind.CONNECTION, messages.API_UNREACHABLE)
        except InferenceProtocolError as exc:
            logger.warning("Inference endpoint rejected request: %s", exc)
            return Failure(ErrorKind.PROTOCOL, messages.prefixed_error(str(exc)))
        except ResponseParseError as exc:
            logger.warning("Unparseable inference response: %s", exc)
            return Success(messages.NO_RESPONSE)

        return Success(extract_response_text(payload) or messages.NO_RESPONSE)

    def _report(self, outcome: InferenceOutcome) -> None:
        if isinstance(outcome, Success):
            self._sink.on_result(outcome.text, False)
            self._sink.on_status(messages.STATUS_ACTIVE)
            return

        self._sink.on_result(outcome.message, True)
        self._sink.on_status(messages.failure_status(outcome.kind))
