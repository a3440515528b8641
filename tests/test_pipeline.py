from __future__ import annotations

import asyncio
from typing import Any

import pytest

from vision_loop import messages
from vision_loop.analysis.pipeline import RequestPipeline
from vision_loop.capture.camera import CaptureError
from vision_loop.inference.client import (
    InferenceConnectionError,
    InferenceProtocolError,
    ResponseParseError,
)
from vision_loop.models import ErrorKind, Failure, InferenceRequest, Status, StatusClass, Success


class _RecordingSink:
    def __init__(self) -> None:
        self.statuses: list[Status] = []
        self.results: list[tuple[str, bool]] = []

    def on_status(self, status: Status) -> None:
        self.statuses.append(status)

    def on_result(self, text: str, is_error: bool) -> None:
        self.results.append((text, is_error))


class _FakeSource:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    def current_frame(self) -> Any:
        if self.error is not None:
            raise self.error
        return "frame"


class _FakeClient:
    def __init__(self, response: Any = None, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.response = response if response is not None else {"choices": [{"message": {"content": "a cat"}}]}
        self.error = error
        self.gate = gate
        self.requests: list[InferenceRequest] = []

    async def submit(self, endpoint: str, request: InferenceRequest) -> dict[str, Any]:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.response


def _pipeline(client: _FakeClient, sink: _RecordingSink, source: _FakeSource | None = None) -> RequestPipeline:
    return RequestPipeline(
        source=source or _FakeSource(),
        client=client,
        sink=sink,
        encoder=lambda frame: b"encoded:" + frame.encode(),
    )


def test_success_reports_text_and_active_status() -> None:
    sink = _RecordingSink()
    client = _FakeClient()
    pipeline = _pipeline(client, sink)

    outcome = asyncio.run(pipeline.run_once("What is this?", "http://vlm"))

    assert outcome == Success("a cat")
    assert sink.results == [("a cat", False)]
    assert sink.statuses == [messages.STATUS_ANALYZING, messages.STATUS_ACTIVE]
    assert pipeline.is_processing is False

    (request,) = client.requests
    assert request.image == b"encoded:frame"
    assert request.instruction == "What is this?"
    assert (request.model_id, request.max_tokens, request.temperature, request.stream) == ("SmolVLM", 256, 0.7, False)


def test_empty_choices_yield_placeholder_text() -> None:
    sink = _RecordingSink()

    asyncio.run(_pipeline(_FakeClient(response={"choices": []}), sink).run_once("q", "http://vlm"))

    assert sink.results == [("No response", False)]


def test_unparseable_body_degrades_to_placeholder() -> None:
    sink = _RecordingSink()

    outcome = asyncio.run(_pipeline(_FakeClient(error=ResponseParseError("bad json")), sink).run_once("q", "http://vlm"))

    assert outcome == Success("No response")
    assert sink.statuses[-1] == messages.STATUS_ACTIVE


def test_blank_instruction_falls_back_to_default() -> None:
    client = _FakeClient()

    asyncio.run(_pipeline(client, _RecordingSink()).run_once("   ", "http://vlm"))

    assert client.requests[0].instruction == "What do you see?"


def test_http_500_is_protocol_failure_with_status_code() -> None:
    sink = _RecordingSink()
    pipeline = _pipeline(_FakeClient(error=InferenceProtocolError(500, "Internal Server Error")), sink)

    outcome = asyncio.run(pipeline.run_once("q", "http://vlm"))

    assert isinstance(outcome, Failure)
    assert outcome.kind is ErrorKind.PROTOCOL
    ((text, is_error),) = sink.results
    assert "500" in text and is_error is True
    assert sink.statuses[-1] == Status(StatusClass.ERROR, "Connection error")
    assert pipeline.is_processing is False


def test_connection_refused_shows_fixed_message_not_raw_error() -> None:
    sink = _RecordingSink()
    error = InferenceConnectionError("[Errno 111] Connection refused")

    outcome = asyncio.run(_pipeline(_FakeClient(error=error), sink).run_once("q", "http://vlm"))

    assert outcome == Failure(ErrorKind.CONNECTION, messages.API_UNREACHABLE)
    assert sink.results == [(messages.API_UNREACHABLE, True)]
    assert "Errno" not in sink.results[0][0]
    assert sink.statuses[-1].label == "Connection error"


def test_capture_error_short_circuits_submission() -> None:
    sink = _RecordingSink()
    client = _FakeClient()
    pipeline = _pipeline(client, sink, source=_FakeSource(error=CaptureError("Camera returned no frame.")))

    outcome = asyncio.run(pipeline.run_once("q", "http://vlm"))

    assert isinstance(outcome, Failure) and outcome.kind is ErrorKind.CAPTURE
    assert client.requests == []
    assert sink.results == [("Error: Camera returned no frame.", True)]
    assert sink.statuses[-1] == Status(StatusClass.ERROR, "Camera error")
    assert pipeline.is_processing is False


def test_unexpected_fault_is_reported_and_flag_cleared() -> None:
    sink = _RecordingSink()
    pipeline = _pipeline(_FakeClient(error=KeyError("choices")), sink)

    outcome = asyncio.run(pipeline.run_once("q", "http://vlm"))

    assert isinstance(outcome, Failure) and outcome.kind is ErrorKind.UNEXPECTED
    assert sink.statuses[-1] == Status(StatusClass.ERROR, "Analysis error")
    assert len(sink.results) == 1
    assert pipeline.is_processing is False


def test_second_invocation_is_rejected_while_first_in_flight() -> None:
    async def _run() -> tuple[Any, Any, int]:
        gate = asyncio.Event()
        client = _FakeClient(gate=gate)
        pipeline = _pipeline(client, _RecordingSink())

        first = asyncio.create_task(pipeline.run_once("q", "http://vlm"))
        await asyncio.sleep(0)
        assert pipeline.is_processing is True

        second = await pipeline.run_once("q", "http://vlm")
        gate.set()
        return await first, second, len(client.requests)

    first, second, request_count = asyncio.run(_run())

    assert first == Success("a cat")
    assert second is None
    assert request_count == 1


def test_stale_outcome_is_discarded_when_no_longer_current() -> None:
    sink = _RecordingSink()
    answers = iter([True, False])

    outcome = asyncio.run(_pipeline(_FakeClient(), sink).run_once("q", "http://vlm", is_current=lambda: next(answers)))

    assert outcome == Success("a cat")
    assert sink.results == []
    assert sink.statuses == [messages.STATUS_ANALYZING]


def test_invocation_is_skipped_when_not_current_before_it_begins() -> None:
    sink = _RecordingSink()
    client = _FakeClient()
    pipeline = _pipeline(client, sink)

    outcome = asyncio.run(pipeline.run_once("q", "http://vlm", is_current=lambda: False))

    assert outcome is None
    assert sink.statuses == []
    assert sink.results == []
    assert client.requests == []
    assert pipeline.invocation_count == 0


def test_request_parameters_are_fixed() -> None:
    pipeline = _pipeline(_FakeClient(), _RecordingSink())

    request = pipeline.build_request(b"jpeg", "q")

    assert (request.max_tokens, request.temperature, request.stream) == (256, 0.7, False)


def test_cancellation_still_clears_processing_flag() -> None:
    async def _run() -> RequestPipeline:
        pipeline = _pipeline(_FakeClient(gate=asyncio.Event()), _RecordingSink())
        task = asyncio.create_task(pipeline.run_once("q", "http://vlm"))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return pipeline

    assert asyncio.run(_run()).is_processing is False
