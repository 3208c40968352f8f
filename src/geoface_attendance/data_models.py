"""
Data models for the attendance verification pipeline.

This module defines the core data structures passed between pipeline stages.
All models use dataclasses; the committed ``AttendanceRecord`` is frozen so
that a record can never be mutated after it is created.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from .constants import EYE_LANDMARK_POINTS, VERIFICATION_METHOD

# Enrolled photo as a file path, raw encoded bytes, base64 data URL or RGB array
PhotoSample = Union[str, bytes, np.ndarray]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identity:
    """
    Enrollment record for one person, read-only to the pipeline.

    Parameters
    ----------
    key : str
        Identity key (alphanumeric, 3-20 characters).
    display_name : str
        Name shown in status messages.
    descriptors : List[np.ndarray], default_factory=list
        Precomputed face descriptors, in enrollment order.
    photos : List[PhotoSample], default_factory=list
        Enrolled photographic samples for identities without descriptors.

    Examples
    --------
    >>> identity = Identity(key="AB123", display_name="Ada", descriptors=[np.zeros(128)])
    >>> identity.has_descriptors
    True
    """

    key: str
    display_name: str
    descriptors: List[np.ndarray] = field(default_factory=list)
    photos: List[PhotoSample] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.key or not isinstance(self.key, str):
            raise ValueError("key must be a non-empty string")

        converted = []
        for i, descriptor in enumerate(self.descriptors):
            vector = np.asarray(descriptor, dtype=np.float64)
            if vector.ndim != 1 or vector.size == 0:
                raise ValueError(f"descriptors[{i}] must be a non-empty 1D vector")
            converted.append(vector)
        self.descriptors = converted

    @property
    def has_descriptors(self) -> bool:
        """True if precomputed descriptors are enrolled."""
        return len(self.descriptors) > 0

    @property
    def has_photos(self) -> bool:
        """True if photographic samples are enrolled."""
        return len(self.photos) > 0


@dataclass
class GeoPosition:
    """
    A measured (or configured) point on the globe.

    Parameters
    ----------
    latitude : float
        Degrees, -90 to 90.
    longitude : float
        Degrees, -180 to 180.
    accuracy : Optional[float], default=None
        Reported accuracy radius in metres.
    timestamp : datetime, default_factory=now (UTC)
        Capture time of the position.
    """

    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")
        if self.accuracy is not None and self.accuracy < 0:
            raise ValueError(f"accuracy cannot be negative: {self.accuracy}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.latitude,
            "lon": self.longitude,
            "accuracy": self.accuracy,
        }


@dataclass(frozen=True)
class FaceBox:
    """Pixel bounding box of a detected face."""

    x: int
    y: int
    width: int
    height: int
    confidence: Optional[float] = None

    def padded(self, ratio: float, frame_shape: Tuple[int, ...], min_edge: int = 0) -> "FaceBox":
        """
        Grow the box by ``ratio`` of its size on every side.

        The result is clamped to the frame and grown to at least ``min_edge``
        pixels per side where the frame allows it.
        """
        frame_height, frame_width = frame_shape[0], frame_shape[1]
        pad_x = int(round(self.width * ratio))
        pad_y = int(round(self.height * ratio))

        width = max(self.width + 2 * pad_x, min_edge)
        height = max(self.height + 2 * pad_y, min_edge)
        center_x = self.x + self.width / 2.0
        center_y = self.y + self.height / 2.0

        left = max(0, int(round(center_x - width / 2.0)))
        top = max(0, int(round(center_y - height / 2.0)))
        right = min(frame_width, left + width)
        bottom = min(frame_height, top + height)

        return FaceBox(
            x=left,
            y=top,
            width=max(0, right - left),
            height=max(0, bottom - top),
            confidence=self.confidence,
        )

    def as_css(self) -> Tuple[int, int, int, int]:
        """Return (top, right, bottom, left), the face_recognition location order."""
        return (self.y, self.x + self.width, self.y + self.height, self.x)

    @classmethod
    def from_css(cls, location: Tuple[int, int, int, int]) -> "FaceBox":
        top, right, bottom, left = location
        return cls(x=left, y=top, width=right - left, height=bottom - top)


@dataclass
class EyeLandmarks:
    """
    Contours of both eyes, six points each, in 2-D or 3-D.

    Point order per eye: outer corner, two upper lid points, inner corner,
    two lower lid points (p1..p6 of the eye aspect ratio).
    """

    left: np.ndarray
    right: np.ndarray

    def __post_init__(self) -> None:
        self.left = np.asarray(self.left, dtype=np.float64)
        self.right = np.asarray(self.right, dtype=np.float64)
        for name, eye in (("left", self.left), ("right", self.right)):
            if eye.ndim != 2 or eye.shape[0] != EYE_LANDMARK_POINTS or eye.shape[1] not in (2, 3):
                raise ValueError(
                    f"{name} eye must have shape ({EYE_LANDMARK_POINTS}, 2|3), got {eye.shape}"
                )


@dataclass(frozen=True)
class MatchResult:
    """Outcome of comparing a live descriptor with enrolled descriptors."""

    score: float
    accepted: bool
    threshold: float
    best_index: Optional[int] = None
    distance: Optional[float] = None


@dataclass(frozen=True)
class GeofenceResult:
    """Outcome of the radius test."""

    valid: bool
    distance_km: float
    radius_km: float


@dataclass(frozen=True)
class FraudAssessment:
    """Outcome of the impossible-travel heuristic."""

    flagged: bool
    reason: str = ""
    speed_kmh: Optional[float] = None
    distance_km: Optional[float] = None
    elapsed_hours: Optional[float] = None


@dataclass(frozen=True)
class StatusEvent:
    """A discrete workflow transition suitable for display."""

    stage: str
    outcome: str
    message: str
    level: str = "info"
    timestamp: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True)
class AttendanceRecord:
    """
    A committed presence event. Created once per successful run, never mutated.

    Parameters
    ----------
    identity_key : str
        Identity that checked in.
    timestamp : datetime
        Commit time (timezone-aware).
    position : GeoPosition
        Position measured during the run.
    biometric_score : float
        Best similarity score, 0 to 100.
    liveness_passed : bool
        Whether the blink check passed; always True for committed records.
    device_hash : str
        Device binding hash of the capturing host.
    fraud_flag : bool
        Advisory impossible-travel flag.
    fraud_reason : str
        Explanation carrying the implied speed when flagged.
    """

    identity_key: str
    timestamp: datetime
    position: GeoPosition
    biometric_score: float
    liveness_passed: bool
    device_hash: str
    fraud_flag: bool = False
    fraud_reason: str = ""
    verification_method: str = VERIFICATION_METHOD
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not self.identity_key:
            raise ValueError("identity_key must be a non-empty string")
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        if not 0.0 <= self.biometric_score <= 100.0:
            raise ValueError("biometric_score must be between 0 and 100")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the record to its persisted shape.

        Returns
        -------
        Dict[str, Any]
            JSON-compatible dictionary.
        """
        return {
            "recordId": self.record_id,
            "identityKey": self.identity_key,
            "timestamp": self.timestamp.isoformat(),
            "position": self.position.to_dict(),
            "biometricScore": self.biometric_score,
            "livenessPassed": self.liveness_passed,
            "deviceHash": self.device_hash,
            "fraudFlag": self.fraud_flag,
            "fraudReason": self.fraud_reason,
            "verificationMethod": self.verification_method,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttendanceRecord":
        """Rebuild a record from the shape produced by ``to_dict``."""
        timestamp = datetime.fromisoformat(data["timestamp"])
        position = data["position"]
        return cls(
            identity_key=data["identityKey"],
            timestamp=timestamp,
            position=GeoPosition(
                latitude=position["lat"],
                longitude=position["lon"],
                accuracy=position.get("accuracy"),
                timestamp=timestamp,
            ),
            biometric_score=float(data["biometricScore"]),
            liveness_passed=bool(data["livenessPassed"]),
            device_hash=data["deviceHash"],
            fraud_flag=bool(data.get("fraudFlag", False)),
            fraud_reason=data.get("fraudReason", ""),
            verification_method=data.get("verificationMethod", VERIFICATION_METHOD),
            record_id=data.get("recordId") or uuid.uuid4().hex,
        )
