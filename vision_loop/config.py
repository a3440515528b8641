from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "VISION_LOOP_"
ALLOWED_CADENCES_MS = (500, 1000, 2000, 3000, 5000, 10000)


class CameraSettings(BaseModel):
    index: int = 0
    width: int = 640
    height: int = 480
    mirror: bool = True
    jpeg_quality: int = Field(default=80, ge=1, le=100)


class InferenceSettings(BaseModel):
    endpoint: str = "http://localhost:8080/v1/chat/completions"
    model: str = "SmolVLM"
    timeout_seconds: float = 30.0


class AnalysisSettings(BaseModel):
    cadence_ms: int = 2000
    instruction: str = "What do you see in this image? Describe briefly."

    @field_validator("cadence_ms")
    @classmethod
    def _check_cadence(cls, value: int) -> int:
        return validate_cadence_ms(value)


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    camera: CameraSettings = Field(default_factory=CameraSettings)
    inference: InferenceSettings = Field(default_factory=InferenceSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def validate_cadence_ms(value: int) -> int:
    """Reject cadences outside the enumerated interval set."""

    if value not in ALLOWED_CADENCES_MS:
        raise ValueError(f"cadence_ms must be one of {list(ALLOWED_CADENCES_MS)}, got {value}.")
    return value


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = resolve_config_path(config_path)
    raw_config: dict[str, Any] = {}
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    return Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
