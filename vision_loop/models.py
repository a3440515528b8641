from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AnalysisState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class StatusClass(str, Enum):
    """Indicator color class shown next to the status label."""

    NONE = "none"
    PROCESSING = "processing"
    ACTIVE = "active"
    ERROR = "error"


class ErrorKind(str, Enum):
    CAPTURE = "capture"
    CONNECTION = "connection"
    PROTOCOL = "protocol"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True, slots=True)
class Status:
    """Immutable status value handed to the presentation sink."""

    status_class: StatusClass
    label: str


@dataclass(frozen=True, slots=True)
class InferenceRequest:
    """One vision query: encoded frame plus instruction and generation parameters."""

    image: bytes
    instruction: str
    model_id: str
    max_tokens: int
    temperature: float
    stream: bool = False


@dataclass(frozen=True, slots=True)
class Success:
    text: str

    @property
    def is_error(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Failure:
    kind: ErrorKind
    message: str

    @property
    def is_error(self) -> bool:
        return True


InferenceOutcome = Success | Failure
