"""
Request/response interfaces for face analysis.

Detection is awaited rather than pushed: the workflow asks a detector for a
result on one frame and gets it back. Two detector variants exist, bounding
box tracking and eye landmark analysis, and one descriptor extractor. The
``face_recognition``-backed implementations live in ``feature_extraction``.
"""

import abc
import enum
from typing import Generic, Optional, TypeVar

import numpy as np

from .data_models import EyeLandmarks, FaceBox, PhotoSample

ResultT = TypeVar("ResultT")


class Detector(abc.ABC, Generic[ResultT]):
    """A face analysis capability answering one frame at a time."""

    name: str = "detector"

    @abc.abstractmethod
    async def detect(self, frame: np.ndarray) -> Optional[ResultT]:
        """Analyse ``frame`` (RGB) and return a result, or None if no face was found."""


class FaceBoxDetector(Detector[FaceBox]):
    """Bounding-box tracking variant."""

    name = "face_box"


class LandmarkDetector(Detector[EyeLandmarks]):
    """Landmark/mesh analysis variant used by the liveness stage."""

    name = "landmarks"


class ExtractionStrategy(str, enum.Enum):
    """Descriptor extraction strategies, tried in declaration order."""

    # Tightly cropped, padded region around the tracked face
    PADDED_CROP = "padded_crop"
    # Wider crop, upscaled, with a more permissive face detector
    UPSAMPLED_CROP = "upsampled_crop"
    # The whole uncropped frame
    FULL_FRAME = "full_frame"


class DescriptorExtractor(abc.ABC):
    """Turns an image into a fixed-length face descriptor."""

    @abc.abstractmethod
    def extract(
        self,
        frame: np.ndarray,
        face_box: Optional[FaceBox],
        strategy: ExtractionStrategy,
    ) -> Optional[np.ndarray]:
        """
        Extract one descriptor from ``frame`` using ``strategy``.

        Returns None when no face is found. May raise
        ``FeatureExtractionError`` for unusable input.
        """

    @abc.abstractmethod
    def extract_from_sample(self, sample: PhotoSample) -> Optional[np.ndarray]:
        """Extract one descriptor from an enrolled photographic sample."""
