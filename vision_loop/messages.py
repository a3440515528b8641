from __future__ import annotations

from vision_loop.models import ErrorKind, Status, StatusClass

READY = "Ready"
STOPPED = "Stopped"
ANALYZING = "Analyzing..."
ACTIVE = "Analysis active"
CAMERA_STARTING = "Starting camera..."
CAMERA_ERROR = "Camera error"
CONNECTION_ERROR = "Connection error"
ANALYSIS_ERROR = "Analysis error"

FALLBACK_INSTRUCTION = "What do you see?"
NO_RESPONSE = "No response"
API_UNREACHABLE = "Could not connect to API. Make sure llama-server is running."
ERROR_PREFIX = "Error:"
CAMERA_ACCESS_ERROR_PREFIX = "Camera access error:"

STATUS_IDLE = Status(StatusClass.NONE, READY)
STATUS_STOPPED = Status(StatusClass.NONE, STOPPED)
STATUS_STARTING = Status(StatusClass.PROCESSING, CAMERA_STARTING)
STATUS_ANALYZING = Status(StatusClass.PROCESSING, ANALYZING)
STATUS_ACTIVE = Status(StatusClass.ACTIVE, ACTIVE)
STATUS_CAMERA_ERROR = Status(StatusClass.ERROR, CAMERA_ERROR)

_FAILURE_LABELS = {
    ErrorKind.CAPTURE: CAMERA_ERROR,
    ErrorKind.CONNECTION: CONNECTION_ERROR,
    ErrorKind.PROTOCOL: CONNECTION_ERROR,
    ErrorKind.UNEXPECTED: ANALYSIS_ERROR,
}


def failure_status(kind: ErrorKind) -> Status:
    return Status(StatusClass.ERROR, _FAILURE_LABELS[kind])


def prefixed_error(message: str) -> str:
    return f"{ERROR_PREFIX} {message}"
