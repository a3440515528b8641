from __future__ import annotations

import base64
import json
import logging
from typing import Any

import httpx

from vision_loop.models import InferenceRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
IMAGE_MIME_TYPE = "image/jpeg"


class InferenceError(RuntimeError):
    """Base class for failures talking to the inference endpoint."""


class InferenceConnectionError(InferenceError):
    """The endpoint could not be reached (refused, reset, DNS, timeout)."""


class InferenceProtocolError(InferenceError):
    """The endpoint answered with a non-success HTTP status."""

    def __init__(self, status_code: int, reason: str) -> None:
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"API error: {status_code} {reason}".rstrip())


class ResponseParseError(InferenceError):
    """The endpoint answered 2xx with a body that is not valid JSON."""


class InferenceClient:
    """Async client for OpenAI-compatible vision chat-completion endpoints."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None

    async def submit(self, endpoint: str, request: InferenceRequest) -> dict[str, Any]:
        """POST one request and return the decoded JSON body."""

        client = self._get_client()
        try:
            response = await client.post(
                endpoint,
                json=build_request_body(request),
                headers={"Content-Type": "application/json"},
            )
        except httpx.TransportError as exc:
            raise InferenceConnectionError(f"Could not reach {endpoint}: {exc}") from exc

        if not response.is_success:
            raise InferenceProtocolError(response.status_code, response.reason_phrase)

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ResponseParseError(f"Endpoint returned a non-JSON body: {exc}") from exc

        if not isinstance(payload, dict):
            raise ResponseParseError(f"Endpoint returned {type(payload).__name__}, expected a JSON object.")
        return payload

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            logger.debug("Created HTTP client with %.1fs timeout", self.timeout_seconds)
        return self._client


def build_request_body(request: InferenceRequest) -> dict[str, Any]:
    return {
        "model": request.model_id,
        "messages": [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image_url",
                        "image_url": {"url": to_data_uri(request.image)},
                    },
                    {
                        "type": "text",
                        "text": request.instruction,
                    },
                ],
            }
        ],
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "stream": request.stream,
    }


def to_data_uri(image: bytes, mime_type: str = IMAGE_MIME_TYPE) -> str:
    encoded = base64.b64encode(image).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def extract_response_text(payload: dict[str, Any]) -> str | None:
    """Return ``choices[0].message.content`` or None when the path is missing or empty."""

    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    first = choices[0]
    if not isinstance(first, dict):
        return None

    message = first.get("message")
    if not isinstance(message, dict):
        return None

    content = message.get("content")
    if not isinstance(content, str) or not content:
        return None
    return content
