"""
Shared fakes for the attendance pipeline tests.

None of these touch a camera or a face model: frames are plain arrays,
landmarks are synthesised for a requested eye openness, and descriptors are
looked up from a script.
"""

import asyncio
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import numpy as np
import pytest

from geoface_attendance.capture import CaptureDevice
from geoface_attendance.data_models import EyeLandmarks, FaceBox, GeoPosition, Identity
from geoface_attendance.detectors import (
    DescriptorExtractor,
    ExtractionStrategy,
    FaceBoxDetector,
    LandmarkDetector,
)
from geoface_attendance.exceptions import CaptureError, FeatureExtractionError
from geoface_attendance.location import PositionProvider


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def eye(openness: float) -> np.ndarray:
    """Six 3-D eye points whose aspect ratio equals ``openness``."""
    half = openness / 2.0
    return np.array(
        [
            [0.0, 0.0, 0.0],
            [1.0 / 3.0, half, 0.0],
            [2.0 / 3.0, half, 0.0],
            [1.0, 0.0, 0.0],
            [2.0 / 3.0, -half, 0.0],
            [1.0 / 3.0, -half, 0.0],
        ]
    )


def landmarks(openness: float) -> EyeLandmarks:
    return EyeLandmarks(left=eye(openness), right=eye(openness))


def blink_script(
    blinks: int,
    open_value: float = 0.30,
    closed_value: float = 0.10,
    calibration_frames: int = 30,
) -> List[Optional[EyeLandmarks]]:
    """Calibration frames followed by ``blinks`` full close/reopen cycles."""
    script = [landmarks(open_value) for _ in range(calibration_frames)]
    for _ in range(blinks):
        script.extend([landmarks(open_value), landmarks(closed_value), landmarks(open_value)])
    return script


async def zero_ticker() -> None:
    """Ticker that only yields control."""
    await asyncio.sleep(0)


class ScriptedLandmarkDetector(LandmarkDetector):
    """Returns scripted landmarks in order, then ``tail`` forever."""

    def __init__(self, script: Iterable[Optional[EyeLandmarks]], tail: Optional[EyeLandmarks] = None) -> None:
        self.script = list(script)
        self.tail = tail
        self.calls = 0

    async def detect(self, frame: np.ndarray) -> Optional[EyeLandmarks]:
        self.calls += 1
        if self.script:
            return self.script.pop(0)
        return self.tail


class FakeBoxDetector(FaceBoxDetector):
    def __init__(self, face_box: Optional[FaceBox] = FaceBox(x=40, y=30, width=80, height=100)) -> None:
        self.face_box = face_box
        self.calls = 0

    async def detect(self, frame: np.ndarray) -> Optional[FaceBox]:
        self.calls += 1
        return self.face_box


class FakeCapture(CaptureDevice):
    """Capture device returning a constant black frame."""

    def __init__(self, fail_open: bool = False, fail_read_after: Optional[int] = None) -> None:
        self.fail_open = fail_open
        self.fail_read_after = fail_read_after
        self.frame = np.zeros((240, 320, 3), dtype=np.uint8)
        self.reads = 0
        self.opens = 0
        self.closes = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self.fail_open:
            raise CaptureError("Camera unavailable or access denied", device="fake")
        self.opens += 1
        self._open = True

    async def read(self) -> np.ndarray:
        if not self._open:
            raise CaptureError("Capture device is not open", device="fake")
        if self.fail_read_after is not None and self.reads >= self.fail_read_after:
            raise CaptureError("Failed to read a frame from the camera", device="fake")
        self.reads += 1
        return self.frame

    async def close(self) -> None:
        if self._open:
            self.closes += 1
        self._open = False


class FakeExtractor(DescriptorExtractor):
    """
    Descriptor extractor driven by a table.

    ``live`` is returned for frames by the strategies listed in
    ``working_strategies``; other strategies return None, or raise when listed
    in ``raising_strategies``. Samples are looked up in ``samples``.
    """

    def __init__(
        self,
        live: Optional[np.ndarray] = None,
        working_strategies: Iterable[ExtractionStrategy] = tuple(ExtractionStrategy),
        raising_strategies: Iterable[ExtractionStrategy] = (),
        samples: Optional[dict] = None,
    ) -> None:
        self.live = live
        self.working_strategies = set(working_strategies)
        self.raising_strategies = set(raising_strategies)
        self.samples = samples or {}
        self.calls: List[ExtractionStrategy] = []
        self.sample_calls: List[object] = []

    def extract(self, frame, face_box, strategy):
        self.calls.append(strategy)
        if strategy in self.raising_strategies:
            raise FeatureExtractionError("Simulated failure", extraction_method=strategy.value)
        if strategy in self.working_strategies:
            return self.live
        return None

    def extract_from_sample(self, sample):
        self.sample_calls.append(sample)
        result = self.samples.get(sample)
        if isinstance(result, Exception):
            raise result
        return result


class FakePositionProvider(PositionProvider):
    def __init__(self, position: Optional[GeoPosition] = None, delay: float = 0.0, error: Optional[Exception] = None) -> None:
        self.position = position
        self.delay = delay
        self.error = error
        self.calls = 0

    async def current_position(self) -> GeoPosition:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.position


class StepDateTime:
    """Callable returning fixed, manually advanced UTC datetimes."""

    def __init__(self, start: datetime = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)) -> None:
        self.value = start

    def __call__(self) -> datetime:
        return self.value


ANCHOR = GeoPosition(latitude=51.5007, longitude=-0.1246, accuracy=5.0)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def descriptor():
    rng = np.random.default_rng(7)
    vector = rng.normal(size=128)
    return vector / np.linalg.norm(vector) * 0.5


@pytest.fixture
def identity(descriptor):
    return Identity(key="AB123", display_name="Ada Lovelace", descriptors=[descriptor])


@pytest.fixture
def anchor():
    return ANCHOR
