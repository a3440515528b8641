from __future__ import annotations

from typing import Any

from vision_loop.capture.camera import CaptureError

DEFAULT_JPEG_QUALITY = 80


def encode_frame(
    frame: Any,
    *,
    quality: int = DEFAULT_JPEG_QUALITY,
    mirror: bool = True,
    cv2_module: Any | None = None,
) -> bytes:
    """Encode a BGR frame as JPEG bytes, optionally mirrored to match a selfie preview."""

    if cv2_module is None:
        import cv2 as cv2_module

    if frame is None or getattr(frame, "size", 0) == 0:
        raise CaptureError("Cannot encode an empty frame.")

    try:
        if mirror:
            frame = cv2_module.flip(frame, 1)
        ok, buffer = cv2_module.imencode(".jpg", frame, [int(cv2_module.IMWRITE_JPEG_QUALITY), int(quality)])
    except cv2_module.error as exc:
        raise CaptureError(f"Failed to encode frame as JPEG: {exc}") from exc
    if not ok:
        raise CaptureError("Failed to encode frame as JPEG.")
    return buffer.tobytes()
