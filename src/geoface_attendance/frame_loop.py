"""
Background face tracking over the shared capture device.

``FrameTracker`` runs the bounding-box detector on every frame as an asyncio
task, remembering the last face it saw for the matching stage. Only one
detection pipeline may use the capture device at a time, so the workflow
suspends the tracker while the liveness stage reads frames and resumes it
afterwards. Clearing ``tracking_active`` ends the loop.
"""

import asyncio
import contextlib
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog

from .capture import CaptureDevice
from .constants import FRAME_INTERVAL_SECONDS
from .data_models import FaceBox
from .detectors import FaceBoxDetector
from .exceptions import CaptureError

# Initialize structured logger
logger = structlog.get_logger(__name__)

Ticker = Callable[[], Awaitable[None]]


def make_ticker(interval: float = FRAME_INTERVAL_SECONDS) -> Ticker:
    """Return a ticker that sleeps ``interval`` seconds between frames."""

    async def tick() -> None:
        await asyncio.sleep(interval)

    return tick


class FrameTracker:
    """
    Bounding-box tracking loop.

    Parameters
    ----------
    detector : FaceBoxDetector
        Bounding-box detection capability.
    capture : CaptureDevice
        Open capture device shared with the liveness stage.
    ticker : Ticker, optional
        Awaited between frames; defaults to the display frame interval.

    Examples
    --------
    >>> tracker = FrameTracker(detector, capture)
    >>> tracker.start()
    >>> async with tracker.suspended():
    ...     frame = await capture.read()
    >>> await tracker.stop()
    """

    def __init__(
        self,
        detector: FaceBoxDetector,
        capture: CaptureDevice,
        ticker: Optional[Ticker] = None,
    ) -> None:
        self.detector = detector
        self.capture = capture
        self.ticker = ticker or make_ticker()

        self.tracking_active = False
        self.last_face: Optional[FaceBox] = None
        self.last_error: Optional[CaptureError] = None
        self.frames = 0

        self._task: Optional[asyncio.Task] = None
        self._gate = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the tracking loop; a no-op while it is already running."""
        if self.running:
            return

        self.tracking_active = True
        self.last_error = None
        self._task = asyncio.create_task(self._loop())
        logger.debug("Face tracking started")

    async def _loop(self) -> None:
        try:
            while self.tracking_active:
                async with self._gate:
                    if not self.tracking_active:
                        break
                    frame = await self.capture.read()
                    face = await self.detector.detect(frame)
                    self.frames += 1
                    if face is not None:
                        self.last_face = face
                await self.ticker()
        except CaptureError as e:
            self._fail(e)
        except Exception as e:
            self._fail(CaptureError(f"Face tracking failed: {e}", context={"error_type": type(e).__name__}))

    def _fail(self, error: CaptureError) -> None:
        self.tracking_active = False
        self.last_error = error
        logger.warning("Face tracking stopped on error", error=error.message, frames=self.frames)

    def raise_if_failed(self) -> None:
        """Re-raise the capture error that stopped the loop, if any."""
        if self.last_error is not None:
            raise self.last_error

    @contextlib.asynccontextmanager
    async def suspended(self) -> AsyncIterator[None]:
        """Hold the capture device exclusively, pausing tracking for the block."""
        async with self._gate:
            logger.debug("Face tracking suspended")
            yield
        logger.debug("Face tracking resumed")

    async def stop(self) -> None:
        """Clear ``tracking_active`` and wait for the loop to finish."""
        self.tracking_active = False
        task, self._task = self._task, None
        if task is None:
            return

        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Face tracking stopped", frames=self.frames)
