from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class CameraAcquisitionError(RuntimeError):
    """The video device could not be opened."""


class CaptureError(RuntimeError):
    """A single frame could not be read or encoded."""


class CameraSource:
    """OpenCV-backed live video source.

    The scheduler owns the open/release lifecycle; the request pipeline only
    calls ``current_frame`` while the source is open.
    """

    def __init__(
        self,
        index: int = 0,
        width: int | None = 640,
        height: int | None = 480,
        *,
        cv2_module: Any | None = None,
    ) -> None:
        self.index = index
        self.width = width
        self.height = height
        self._cv2 = cv2_module
        self._capture: Any | None = None

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def open(self) -> None:
        if self._capture is not None:
            return

        cv2 = self._cv2_module()
        try:
            capture = cv2.VideoCapture(self.index)
        except Exception as exc:
            raise CameraAcquisitionError(f"Unable to open camera {self.index}: {exc}") from exc

        if not capture.isOpened():
            capture.release()
            raise CameraAcquisitionError(f"Unable to open camera {self.index}.")

        try:
            if self.width:
                capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            if self.height:
                capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        except Exception as exc:
            capture.release()
            raise CameraAcquisitionError(f"Unable to configure camera {self.index}: {exc}") from exc

        self._capture = capture
        logger.info("Opened camera %s", self.index)

    def current_frame(self) -> Any:
        if self._capture is None:
            raise CaptureError("Camera is not open.")

        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise CaptureError("Camera returned no frame.")
        return frame

    def release(self) -> None:
        if self._capture is None:
            return

        capture, self._capture = self._capture, None
        capture.release()
        logger.info("Released camera %s", self.index)

    def _cv2_module(self) -> Any:
        if self._cv2 is None:
            import cv2

            self._cv2 = cv2
        return self._cv2
