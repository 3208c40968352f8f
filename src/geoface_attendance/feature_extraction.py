"""
Face analysis backed by the face_recognition library.

This module implements the detector and extractor interfaces from
``detectors`` on top of face_recognition (dlib) and OpenCV: face box
tracking, eye landmark analysis for the liveness stage, and 128-dimensional
descriptor extraction from live frames and enrolled photographic samples.

Detection calls are blocking and run in a worker thread so that the frame
loop stays responsive.
"""

import asyncio
import base64
import binascii
from pathlib import Path
from typing import List, Optional

import cv2
import face_recognition
import numpy as np
import structlog

from .constants import (
    FACE_DESCRIPTOR_DIM,
    MIN_CROP_EDGE,
    TIGHT_CROP_PADDING,
    UPSAMPLED_CROP_PADDING,
    UPSAMPLED_CROP_SCALE,
)
from .data_models import EyeLandmarks, FaceBox, PhotoSample
from .detectors import DescriptorExtractor, ExtractionStrategy, FaceBoxDetector, LandmarkDetector
from .exceptions import FeatureExtractionError
from .utils import timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

_DATA_URL_PREFIX = "data:"


def _largest(locations: List[tuple]) -> tuple:
    return max(locations, key=lambda loc: (loc[2] - loc[0]) * (loc[1] - loc[3]))


class FaceRecognitionBoxDetector(FaceBoxDetector):
    """
    Bounding box tracking with the HOG face detector.

    When several faces are present the largest one is tracked.
    """

    def __init__(self, number_of_times_to_upsample: int = 1, model: str = "hog") -> None:
        self.number_of_times_to_upsample = number_of_times_to_upsample
        self.model = model

    def _detect_blocking(self, frame: np.ndarray) -> Optional[FaceBox]:
        locations = face_recognition.face_locations(
            frame,
            number_of_times_to_upsample=self.number_of_times_to_upsample,
            model=self.model,
        )
        if not locations:
            return None
        return FaceBox.from_css(_largest(locations))

    async def detect(self, frame: np.ndarray) -> Optional[FaceBox]:
        return await asyncio.to_thread(self._detect_blocking, frame)


class FaceRecognitionLandmarkDetector(LandmarkDetector):
    """Eye contours from the 68-point landmark model."""

    def _detect_blocking(self, frame: np.ndarray) -> Optional[EyeLandmarks]:
        faces = face_recognition.face_landmarks(frame, model="large")
        if not faces:
            return None

        landmarks = faces[0]
        left = landmarks.get("left_eye")
        right = landmarks.get("right_eye")
        if not left or not right or len(left) != 6 or len(right) != 6:
            return None

        # Planar landmarks; depth is zero
        left = np.column_stack([np.asarray(left, dtype=np.float64), np.zeros(6)])
        right = np.column_stack([np.asarray(right, dtype=np.float64), np.zeros(6)])
        return EyeLandmarks(left=left, right=right)

    async def detect(self, frame: np.ndarray) -> Optional[EyeLandmarks]:
        return await asyncio.to_thread(self._detect_blocking, frame)


class FaceRecognitionExtractor(DescriptorExtractor):
    """
    128-dimensional face descriptors via face_recognition.

    Parameters
    ----------
    num_jitters : int, default=1
        Re-sampling passes per encoding; higher is slower and more stable.

    Examples
    --------
    >>> extractor = FaceRecognitionExtractor()
    >>> descriptor = extractor.extract(frame, face_box, ExtractionStrategy.PADDED_CROP)
    >>> descriptor.shape
    (128,)
    """

    def __init__(self, num_jitters: int = 1) -> None:
        self.num_jitters = num_jitters

    def _encode(
        self, image: np.ndarray, method: str, number_of_times_to_upsample: int = 1
    ) -> Optional[np.ndarray]:
        if image.ndim != 3 or image.shape[2] != 3 or image.size == 0:
            raise FeatureExtractionError(
                f"Expected an RGB image, got shape {image.shape}",
                extraction_method=method,
            )

        image = np.ascontiguousarray(image, dtype=np.uint8)
        locations = face_recognition.face_locations(
            image, number_of_times_to_upsample=number_of_times_to_upsample
        )
        if not locations:
            return None

        if len(locations) > 1:
            logger.warning(
                "Multiple faces detected, using the largest face",
                faces_detected=len(locations),
                extraction_method=method,
            )

        encodings = face_recognition.face_encodings(
            image, [_largest(locations)], num_jitters=self.num_jitters
        )
        if not encodings:
            return None

        encoding = np.asarray(encodings[0], dtype=np.float64)
        if encoding.shape != (FACE_DESCRIPTOR_DIM,):
            raise FeatureExtractionError(
                f"Unexpected face encoding dimension: {encoding.shape}. "
                f"Expected: ({FACE_DESCRIPTOR_DIM},)",
                extraction_method=method,
            )
        return encoding

    @staticmethod
    def _crop(frame: np.ndarray, face_box: FaceBox, padding: float) -> np.ndarray:
        region = face_box.padded(padding, frame.shape, min_edge=MIN_CROP_EDGE)
        return frame[region.y : region.y + region.height, region.x : region.x + region.width]

    @timer
    def extract(
        self,
        frame: np.ndarray,
        face_box: Optional[FaceBox],
        strategy: ExtractionStrategy,
    ) -> Optional[np.ndarray]:
        strategy = ExtractionStrategy(strategy)

        if strategy is ExtractionStrategy.FULL_FRAME:
            return self._encode(frame, strategy.value)

        if face_box is None:
            raise FeatureExtractionError(
                "Crop strategies require a tracked face box",
                extraction_method=strategy.value,
            )

        if strategy is ExtractionStrategy.PADDED_CROP:
            crop = self._crop(frame, face_box, TIGHT_CROP_PADDING)
            return self._encode(crop, strategy.value)

        crop = self._crop(frame, face_box, UPSAMPLED_CROP_PADDING)
        if crop.size == 0:
            raise FeatureExtractionError(
                "Face box lies outside the frame", extraction_method=strategy.value
            )
        crop = cv2.resize(
            crop,
            None,
            fx=UPSAMPLED_CROP_SCALE,
            fy=UPSAMPLED_CROP_SCALE,
            interpolation=cv2.INTER_CUBIC,
        )
        return self._encode(crop, strategy.value, number_of_times_to_upsample=2)

    @timer
    def extract_from_sample(self, sample: PhotoSample) -> Optional[np.ndarray]:
        image = self.load_sample(sample)
        return self._encode(image, "enrolled_sample")

    def load_sample(self, sample: PhotoSample) -> np.ndarray:
        """
        Decode an enrolled photographic sample into an RGB array.

        Parameters
        ----------
        sample : PhotoSample
            A file path, a base64 ``data:`` URL, raw encoded image bytes, or
            an already decoded RGB array.

        Raises
        ------
        FeatureExtractionError
            If the sample cannot be decoded.
        """
        if isinstance(sample, np.ndarray):
            return sample

        if isinstance(sample, str) and sample.startswith(_DATA_URL_PREFIX):
            _, _, payload = sample.partition(",")
            try:
                sample = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as e:
                raise FeatureExtractionError(
                    f"Invalid base64 image payload: {e}", extraction_method="enrolled_sample"
                )

        if isinstance(sample, (str, Path)):
            path = Path(sample)
            if not path.exists():
                raise FeatureExtractionError(
                    f"Image file not found: {path}",
                    extraction_method="enrolled_sample",
                    context={"image_path": str(path)},
                )
            sample = path.read_bytes()

        if not isinstance(sample, (bytes, bytearray)):
            raise FeatureExtractionError(
                f"Unsupported sample type: {type(sample).__name__}",
                extraction_method="enrolled_sample",
            )

        buffer = np.frombuffer(bytes(sample), dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
        if image is None:
            raise FeatureExtractionError(
                "Failed to decode image. File may be corrupted or invalid format",
                extraction_method="enrolled_sample",
            )

        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
