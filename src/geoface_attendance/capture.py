"""
Capture device access.

The pipeline reads RGB frames through the ``CaptureDevice`` interface. The
OpenCV implementation runs the blocking ``VideoCapture`` calls in a worker
thread so that the frame loop keeps cooperating with other tasks.
"""

import abc
import asyncio
from typing import Optional, Union

import cv2
import numpy as np
import structlog

from .exceptions import CaptureError

# Initialize structured logger
logger = structlog.get_logger(__name__)


class CaptureDevice(abc.ABC):
    """A live video source yielding RGB frames."""

    @abc.abstractmethod
    async def open(self) -> None:
        """Acquire the device. Raises ``CaptureError`` if unavailable or denied."""

    @abc.abstractmethod
    async def read(self) -> np.ndarray:
        """Return the next frame as an RGB array. Raises ``CaptureError``."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the device; safe to call more than once."""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        """True while the device is acquired."""


class OpenCVCaptureDevice(CaptureDevice):
    """
    Camera or video file read through OpenCV.

    Parameters
    ----------
    source : Union[int, str], default=0
        Camera index or video path/URL.
    width, height : int
        Requested frame size.
    """

    def __init__(self, source: Union[int, str] = 0, width: int = 1280, height: int = 720) -> None:
        self.source = source
        self.width = width
        self.height = height
        self._capture: Optional[cv2.VideoCapture] = None

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def _open_blocking(self) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(self.source)
        if not capture.isOpened():
            capture.release()
            raise CaptureError(
                "Camera unavailable or access denied", device=str(self.source)
            )
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return capture

    async def open(self) -> None:
        if self._capture is not None:
            return
        self._capture = await asyncio.to_thread(self._open_blocking)
        logger.info("Capture device opened", device=str(self.source))

    async def read(self) -> np.ndarray:
        if self._capture is None:
            raise CaptureError("Capture device is not open", device=str(self.source))

        ok, frame = await asyncio.to_thread(self._capture.read)
        if not ok or frame is None:
            raise CaptureError("Failed to read a frame from the camera", device=str(self.source))

        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    async def close(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            await asyncio.to_thread(capture.release)
            logger.info("Capture device released", device=str(self.source))
