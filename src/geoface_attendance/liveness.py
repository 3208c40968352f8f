"""
Blink-based liveness detection for the attendance verification pipeline.

A liveness session first calibrates the subject's own open-eye baseline over
a fixed number of face frames, then counts full close/reopen cycles relative
to that baseline. A static photo never blinks and a naive replay rarely
reproduces two clean cycles inside the time budget.

Eye openness is the eye aspect ratio averaged over both eyes::

    openness = (|p2 - p6| + |p3 - p5|) / (2 * |p1 - p4|)

with p1/p4 the eye corners and p2, p3 / p6, p5 the upper / lower lid points.
"""

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import numpy as np
import structlog

from .constants import (
    CALIBRATION_FRAMES,
    CLOSE_RATIO,
    LIVENESS_TIMEOUT_SECONDS,
    OPENNESS_FLOOR,
    REOPEN_RATIO,
    TARGET_BLINKS,
)
from .data_models import EyeLandmarks
from .detectors import LandmarkDetector
from .exceptions import LivenessFailed, LivenessTimeout

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Horizontal eye widths below this are treated as a degenerate detection
_MIN_EYE_WIDTH = 1e-9


class LivenessPhase(str, enum.Enum):
    """Lifecycle of a liveness session."""

    CALIBRATING = "calibrating"
    DETECTING = "detecting"
    VERIFIED = "verified"
    TIMEOUT = "timeout"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (LivenessPhase.VERIFIED, LivenessPhase.TIMEOUT, LivenessPhase.FAILED)


class EyeState(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


def eye_aspect_ratio(eye: np.ndarray) -> Optional[float]:
    """
    Openness of one eye from its six contour points.

    Returns
    -------
    Optional[float]
        The ratio, or None if the eye corners coincide.
    """
    eye = np.asarray(eye, dtype=np.float64)
    vertical = np.linalg.norm(eye[1] - eye[5]) + np.linalg.norm(eye[2] - eye[4])
    horizontal = np.linalg.norm(eye[0] - eye[3])
    if horizontal < _MIN_EYE_WIDTH:
        return None
    return float(vertical / (2.0 * horizontal))


def eye_openness(landmarks: EyeLandmarks) -> Optional[float]:
    """Average eye aspect ratio over both eyes, or None if either is degenerate."""
    left = eye_aspect_ratio(landmarks.left)
    right = eye_aspect_ratio(landmarks.right)
    if left is None or right is None:
        return None
    return (left + right) / 2.0


@dataclass
class LivenessSession:
    """
    Mutable state of one verification attempt.

    Created by ``LivenessDetector.start`` and discarded when the attempt
    ends or a new one starts.
    """

    started_at: float
    phase: LivenessPhase = LivenessPhase.CALIBRATING
    eye_state: EyeState = EyeState.OPEN
    calibration_frames: int = 0
    max_openness: float = 0.0
    baseline: Optional[float] = None
    close_threshold: Optional[float] = None
    reopen_threshold: Optional[float] = None
    blinks: int = 0
    face_frames: int = 0
    frames: int = 0
    last_openness: Optional[float] = None
    ended_at: Optional[float] = field(default=None)


class LivenessDetector:
    """
    Calibrate-then-count blink state machine.

    Parameters
    ----------
    calibration_frames : int, default=CALIBRATION_FRAMES
        Face frames used to find the open-eye baseline.
    openness_floor : float, default=OPENNESS_FLOOR
        Minimum baseline; lower calibrated maxima are clamped up to it.
    close_ratio : float, default=CLOSE_RATIO
        Eyes count as closed below ``close_ratio * baseline``.
    reopen_ratio : float, default=REOPEN_RATIO
        Closed eyes count as reopened above ``reopen_ratio * baseline``.
    target_blinks : int, default=TARGET_BLINKS
        Cycles required to verify.
    timeout_seconds : float, default=LIVENESS_TIMEOUT_SECONDS
        Budget for calibration plus blinking.
    clock : Callable[[], float], default=time.monotonic
        Source of the current time in seconds.

    Examples
    --------
    >>> detector = LivenessDetector()
    >>> detector.start()
    >>> for landmarks in frames:
    ...     phase = detector.process_frame(landmarks)
    """

    def __init__(
        self,
        calibration_frames: int = CALIBRATION_FRAMES,
        openness_floor: float = OPENNESS_FLOOR,
        close_ratio: float = CLOSE_RATIO,
        reopen_ratio: float = REOPEN_RATIO,
        target_blinks: int = TARGET_BLINKS,
        timeout_seconds: float = LIVENESS_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if calibration_frames < 1:
            raise ValueError("calibration_frames must be at least 1")
        if not 0.0 < close_ratio < reopen_ratio <= 1.0:
            raise ValueError("ratios must satisfy 0 < close_ratio < reopen_ratio <= 1")
        if target_blinks < 1:
            raise ValueError("target_blinks must be at least 1")

        self.calibration_frames = calibration_frames
        self.openness_floor = openness_floor
        self.close_ratio = close_ratio
        self.reopen_ratio = reopen_ratio
        self.target_blinks = target_blinks
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.session: Optional[LivenessSession] = None

    def start(self) -> LivenessSession:
        """Begin a new session, discarding any incomplete one."""
        if self.session is not None and not self.session.phase.is_terminal:
            logger.info(
                "Discarding incomplete liveness session",
                phase=self.session.phase.value,
                blinks=self.session.blinks,
            )
        self.session = LivenessSession(started_at=self._clock())
        logger.debug("Liveness session started", timeout_seconds=self.timeout_seconds)
        return self.session

    def discard(self) -> None:
        """Drop the current session."""
        self.session = None

    def process_frame(self, landmarks: Optional[EyeLandmarks]) -> LivenessPhase:
        """
        Advance the state machine by one frame.

        Parameters
        ----------
        landmarks : Optional[EyeLandmarks]
            Eye contours found in the frame, or None if no face was found.

        Returns
        -------
        LivenessPhase
            Phase after this frame. Terminal phases are sticky.
        """
        session = self.session
        if session is None:
            session = self.start()
        if session.phase.is_terminal:
            return session.phase

        now = self._clock()
        session.frames += 1

        if now - session.started_at >= self.timeout_seconds:
            session.phase = (
                LivenessPhase.TIMEOUT if session.face_frames > 0 else LivenessPhase.FAILED
            )
            session.ended_at = now
            logger.info(
                "Liveness session expired",
                phase=session.phase.value,
                blinks=session.blinks,
                face_frames=session.face_frames,
            )
            return session.phase

        openness = eye_openness(landmarks) if landmarks is not None else None
        if openness is None:
            return session.phase

        session.face_frames += 1
        session.last_openness = openness

        if session.phase is LivenessPhase.CALIBRATING:
            self._calibrate(session, openness)
        else:
            self._detect(session, openness, now)

        return session.phase

    def _calibrate(self, session: LivenessSession, openness: float) -> None:
        session.calibration_frames += 1
        session.max_openness = max(session.max_openness, openness)

        if session.calibration_frames < self.calibration_frames:
            return

        baseline = session.max_openness
        if baseline < self.openness_floor:
            logger.debug(
                "Calibrated openness below floor, clamping",
                calibrated=baseline,
                floor=self.openness_floor,
            )
            baseline = self.openness_floor

        session.baseline = baseline
        session.close_threshold = self.close_ratio * baseline
        session.reopen_threshold = self.reopen_ratio * baseline
        session.eye_state = EyeState.OPEN
        session.phase = LivenessPhase.DETECTING
        logger.info(
            "Liveness calibrated",
            baseline=round(baseline, 4),
            close_threshold=round(session.close_threshold, 4),
            reopen_threshold=round(session.reopen_threshold, 4),
        )

    def _detect(self, session: LivenessSession, openness: float, now: float) -> None:
        if session.eye_state is EyeState.OPEN:
            if openness < session.close_threshold:
                session.eye_state = EyeState.CLOSED
            return

        if openness > session.reopen_threshold:
            session.eye_state = EyeState.OPEN
            session.blinks += 1
            logger.info("Blink detected", blinks=session.blinks, target=self.target_blinks)

            if session.blinks >= self.target_blinks:
                session.phase = LivenessPhase.VERIFIED
                session.ended_at = now

    async def run(
        self,
        landmark_detector: LandmarkDetector,
        read_frame: Callable[[], Awaitable[np.ndarray]],
        ticker: Callable[[], Awaitable[None]],
    ) -> LivenessSession:
        """
        Drive a full session from live frames until it resolves.

        Parameters
        ----------
        landmark_detector : LandmarkDetector
            Eye landmark analysis capability.
        read_frame : Callable[[], Awaitable[np.ndarray]]
            Returns the next captured frame.
        ticker : Callable[[], Awaitable[None]]
            Awaited between frames.

        Returns
        -------
        LivenessSession
            The verified session.

        Raises
        ------
        LivenessTimeout
            If faces were seen but the blink target was not reached in time.
        LivenessFailed
            If no qualifying face was seen for the whole attempt.
        """
        session = self.start()

        async def _loop() -> None:
            while not session.phase.is_terminal:
                frame = await read_frame()
                landmarks = await landmark_detector.detect(frame)
                self.process_frame(landmarks)
                if not session.phase.is_terminal:
                    await ticker()

        try:
            await asyncio.wait_for(_loop(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            session.phase = (
                LivenessPhase.TIMEOUT if session.face_frames > 0 else LivenessPhase.FAILED
            )
            session.ended_at = self._clock()

        if session.phase is LivenessPhase.VERIFIED:
            return session

        self.discard()
        if session.phase is LivenessPhase.TIMEOUT:
            raise LivenessTimeout(session.blinks, self.target_blinks, self.timeout_seconds)
        raise LivenessFailed(
            "No face detected during the liveness check. Please face the camera",
            context={"frames": session.frames},
        )
