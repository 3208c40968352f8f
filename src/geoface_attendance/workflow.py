"""
Attendance workflow orchestration.

``AttendanceWorkflow`` sequences the verification stages for one person at a
kiosk and owns every piece of per-session state:

    RATE_CHECK -> LIVENESS -> MATCHING -> GEOFENCE
        -> [DUPLICATE_CHECK] -> FRAUD_CHECK -> COMMITTING -> COMMITTED

Any stage may fail with a typed ``AttendanceError``; the remaining stages are
skipped and nothing is committed. Unexpected exceptions are wrapped in a typed
error, and cancellation releases the capture device like any other failure.
The session stays open after a failure so the person can retry, but a
committed session rejects every further run. A record whose save failed or
timed out is kept, and the retry only saves that same record again.
Each transition is published as a ``StatusEvent`` to subscribed callbacks.
"""

import asyncio
import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, TypeVar
from zoneinfo import ZoneInfo

import numpy as np
import structlog

from . import config
from .capture import CaptureDevice
from .constants import IDENTITY_KEY_PATTERN, VERIFICATION_METHOD
from .data_models import AttendanceRecord, GeoPosition, Identity, MatchResult, StatusEvent
from .descriptor_sources import DescriptorSource, EnrolledDescriptorSource
from .detectors import DescriptorExtractor, FaceBoxDetector, LandmarkDetector
from .device import compute_device_hash
from .exceptions import (
    AlreadyMarkedError,
    AttendanceError,
    CaptureError,
    DuplicateCheckInError,
    GeofenceRejected,
    LocationUnavailable,
    MatchRejected,
    NotFoundError,
    PersistenceError,
    RateLimitExceeded,
    ValidationError,
    WorkflowStateError,
)
from .fraud import FraudHeuristicEngine
from .frame_loop import FrameTracker, Ticker, make_ticker
from .geofence import GeofenceValidator
from .liveness import LivenessDetector
from .location import PositionProvider
from .matching import DescriptorMatcher
from .rate_limiter import RateLimiter, get_rate_limiter
from .stores import IdentityStore, RecordStore
from .utils import generate_session_id

# Initialize structured logger
logger = structlog.get_logger(__name__)

T = TypeVar("T")

StatusCallback = Callable[[StatusEvent], None]

_IDENTITY_KEY_RE = re.compile(IDENTITY_KEY_PATTERN)


class WorkflowStage(str, enum.Enum):
    """Stages of one workflow run, in execution order."""

    IDLE = "idle"
    RATE_CHECK = "rate_check"
    LIVENESS = "liveness"
    MATCHING = "matching"
    GEOFENCE = "geofence"
    DUPLICATE_CHECK = "duplicate_check"
    FRAUD_CHECK = "fraud_check"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class SessionContext:
    """State owned by the workflow for one person's session."""

    session_id: str
    identity: Identity
    enrolled_descriptors: List[np.ndarray]
    device_hash: str
    started_at: datetime
    attempts: int = 0
    committed: bool = False
    record: Optional[AttendanceRecord] = None
    last_match: Optional[MatchResult] = None
    pending_record: Optional[AttendanceRecord] = None
    pending_append: Optional["asyncio.Future[None]"] = field(default=None, repr=False)
    last_error: Optional[AttendanceError] = field(default=None, repr=False)

    @property
    def identity_key(self) -> str:
        return self.identity.key


def normalize_identity_key(identity_key: str) -> str:
    """
    Upper-case and validate an identity key.

    Raises
    ------
    ValidationError
        If the key is not 3-20 alphanumeric characters.
    """
    if not isinstance(identity_key, str):
        raise ValidationError("Identity key must be a string", field="identity_key")

    key = identity_key.strip().upper()
    if not _IDENTITY_KEY_RE.match(key):
        raise ValidationError(
            "Invalid identity key format. Use 3-20 letters and digits",
            field="identity_key",
            value=identity_key,
        )
    return key


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AttendanceWorkflow:
    """
    Orchestrates a check-in from identity lookup to committed record.

    Parameters
    ----------
    identity_store : IdentityStore
        Enrollment lookup.
    record_store : RecordStore
        Append-only record sink, also queried for the previous record.
    capture : CaptureDevice
        Capture device shared by tracking, liveness and matching.
    face_detector : FaceBoxDetector
        Bounding-box tracking capability.
    landmark_detector : LandmarkDetector
        Eye landmark capability for the liveness stage.
    extractor : DescriptorExtractor
        Descriptor extraction capability.
    position_provider : PositionProvider
        Position acquisition capability.
    geofence : GeofenceValidator, optional
        Approved zone; built from the configured anchor and radius if omitted.
    descriptor_source : DescriptorSource, optional
        Defaults to precomputed descriptors only.
    rate_limiter : RateLimiter, optional
        Defaults to the process-wide limiter.
    liveness, matcher, fraud_engine : optional
        Stage components; defaults use the configured tuning values.
    enforce_single_daily_checkin : bool, optional
        Enables the same-day duplicate stage; defaults to
        ``config.ENFORCE_SINGLE_DAILY_CHECKIN``.
    timezone_name : str, optional
        IANA timezone deciding the calendar day; defaults to
        ``config.ATTENDANCE_TIMEZONE``.
    location_timeout, store_timeout : float, optional
        Timeouts in seconds for position acquisition and store calls.
    ticker : Ticker, optional
        Awaited between frames by the tracking loop and the liveness stage.
    now : Callable[[], datetime], optional
        Source of timezone-aware commit timestamps.
    device_hash : str, optional
        Overrides the computed device binding hash.

    Examples
    --------
    >>> workflow = AttendanceWorkflow(identities, records, capture, faces,
    ...                               landmarks, extractor, positions, geofence)
    >>> async with workflow:
    ...     await workflow.start_session("AB123")
    ...     record = await workflow.run()
    """

    def __init__(
        self,
        identity_store: IdentityStore,
        record_store: RecordStore,
        capture: CaptureDevice,
        face_detector: FaceBoxDetector,
        landmark_detector: LandmarkDetector,
        extractor: DescriptorExtractor,
        position_provider: PositionProvider,
        geofence: Optional[GeofenceValidator] = None,
        *,
        descriptor_source: Optional[DescriptorSource] = None,
        rate_limiter: Optional[RateLimiter] = None,
        liveness: Optional[LivenessDetector] = None,
        matcher: Optional[DescriptorMatcher] = None,
        fraud_engine: Optional[FraudHeuristicEngine] = None,
        enforce_single_daily_checkin: Optional[bool] = None,
        timezone_name: Optional[str] = None,
        location_timeout: Optional[float] = None,
        store_timeout: Optional[float] = None,
        ticker: Optional[Ticker] = None,
        now: Optional[Callable[[], datetime]] = None,
        device_hash: Optional[str] = None,
    ) -> None:
        if geofence is None:
            anchor = config.get_geofence_anchor()
            if anchor is None:
                raise ValueError(
                    "No geofence given and GEOFENCE_ANCHOR_LATITUDE/LONGITUDE are not configured"
                )
            geofence = GeofenceValidator(anchor, config.GEOFENCE_RADIUS_KM)

        self.identity_store = identity_store
        self.record_store = record_store
        self.capture = capture
        self.face_detector = face_detector
        self.landmark_detector = landmark_detector
        self.extractor = extractor
        self.position_provider = position_provider
        self.geofence = geofence

        self.descriptor_source = descriptor_source or EnrolledDescriptorSource()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.liveness = liveness or LivenessDetector(timeout_seconds=config.LIVENESS_TIMEOUT_SECONDS)
        self.matcher = matcher or DescriptorMatcher()
        self.fraud_engine = fraud_engine or FraudHeuristicEngine()

        self.enforce_single_daily_checkin = (
            config.ENFORCE_SINGLE_DAILY_CHECKIN
            if enforce_single_daily_checkin is None
            else enforce_single_daily_checkin
        )
        self.timezone = ZoneInfo(timezone_name or config.ATTENDANCE_TIMEZONE)
        self.location_timeout = (
            config.LOCATION_TIMEOUT_SECONDS if location_timeout is None else location_timeout
        )
        self.store_timeout = config.STORE_TIMEOUT_SECONDS if store_timeout is None else store_timeout
        self.ticker = ticker or make_ticker()
        self._now = now or _utc_now
        self._device_hash = device_hash

        self.stage = WorkflowStage.IDLE
        self.session: Optional[SessionContext] = None
        self.tracker: Optional[FrameTracker] = None
        self._subscribers: List[StatusCallback] = []

        logger.info(
            "AttendanceWorkflow initialized",
            radius_km=self.geofence.radius_km,
            enforce_single_daily_checkin=self.enforce_single_daily_checkin,
            timezone=str(self.timezone),
        )

    # ------------------------------------------------------------------
    # Status stream
    # ------------------------------------------------------------------
    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a status callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, stage: str, outcome: str, message: str, level: str = "info") -> None:
        event = StatusEvent(stage=stage, outcome=outcome, message=message, level=level)
        for callback in list(self._subscribers):
            callback(event)

    def _enter(self, stage: WorkflowStage, message: str) -> None:
        self.stage = stage
        logger.debug("Workflow stage entered", stage=stage.value)
        self._emit(stage.value, "started", message)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def start_session(self, identity_key: str) -> SessionContext:
        """
        Look up an identity and prepare a session for it.

        Any previous session is ended first.

        Raises
        ------
        ValidationError
            If the identity key is malformed.
        NotFoundError
            If the identity is unknown or has no usable enrollment data.
        PersistenceError
            If the identity lookup fails or times out.
        CaptureError
            If the capture device cannot be opened.
        """
        if self.session is not None:
            await self.reset()

        try:
            return await self._open_session(identity_key)
        except AttendanceError as e:
            logger.warning("Session could not be started", **e.to_dict())
            self._emit("session", e.reason, e.message, "error")
            raise

    async def _open_session(self, identity_key: str) -> SessionContext:
        key = normalize_identity_key(identity_key)

        identity = await self._store_call(self.identity_store.get(key), "identity_lookup")
        if identity is None:
            raise NotFoundError(f"Identity {key} not found", identity_key=key)

        descriptors = await asyncio.to_thread(self.descriptor_source.descriptors_for, identity)

        if self._device_hash is None:
            self._device_hash = compute_device_hash()

        await self._acquire_capture()

        self.session = SessionContext(
            session_id=generate_session_id(),
            identity=identity,
            enrolled_descriptors=descriptors,
            device_hash=self._device_hash,
            started_at=self._now(),
        )
        self.stage = WorkflowStage.IDLE

        structlog.contextvars.bind_contextvars(
            session_id=self.session.session_id, identity_key=key
        )
        logger.info(
            "Session started",
            enrolled_descriptors=len(descriptors),
        )

        self._emit(
            "session",
            "started",
            f"Welcome, {identity.display_name}. Look at the camera and blink twice",
        )
        return self.session

    async def reset(self) -> None:
        """
        End the current session and prepare for the next person.

        Stops tracking, releases the capture device and clears all session
        state, including the committed guard.
        """
        await self._release_capture()
        self.liveness.discard()

        if self.session is not None:
            append = self.session.pending_append
            if append is not None and not append.done():
                logger.warning(
                    "Session reset while a record save is still in progress",
                    record_id=self.session.pending_record.record_id,
                )

        had_session = self.session is not None
        self.session = None
        self.stage = WorkflowStage.IDLE
        structlog.contextvars.unbind_contextvars("session_id", "identity_key")

        if had_session:
            logger.info("Session reset")
            self._emit("session", "reset", "Ready for the next person")

    async def __aenter__(self) -> "AttendanceWorkflow":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.reset()

    async def _acquire_capture(self) -> None:
        if not self.capture.is_open:
            await self.capture.open()
        if self.tracker is None:
            self.tracker = FrameTracker(self.face_detector, self.capture, self.ticker)
            self.tracker.start()

    async def _release_capture(self) -> None:
        if self.tracker is not None:
            await self.tracker.stop()
            self.tracker = None
        await self.capture.close()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def run(self) -> AttendanceRecord:
        """
        Run every verification stage once and commit the record.

        If an earlier run of this session verified a record but could not
        save it, the verification stages are skipped and the same record is
        saved again.

        Returns
        -------
        AttendanceRecord
            The committed record.

        Raises
        ------
        WorkflowStateError
            If no session was started.
        AlreadyMarkedError
            If this session already committed a record.
        AttendanceError
            The typed failure of the first stage that failed.
        """
        session = self.session
        if session is None:
            raise WorkflowStateError("No active session. Enter an identity key first")

        if session.committed:
            self._emit("session", "already_marked", "Attendance already marked", level="warning")
            raise AlreadyMarkedError(session.identity_key)

        session.attempts += 1
        key = session.identity_key
        logger.info("Attendance run started", attempt=session.attempts)

        try:
            self._enter(WorkflowStage.RATE_CHECK, "Checking attempt limit")
            self.rate_limiter.check(key)

            if session.pending_record is None:
                session.pending_record = await self._verify(session)
            else:
                logger.info(
                    "Retrying save of verified record",
                    record_id=session.pending_record.record_id,
                )
            record = session.pending_record

            self._enter(WorkflowStage.COMMITTING, "Saving attendance")
            await self._commit(session, record)
        except AttendanceError as e:
            await self._fail(session, e)
            raise
        except asyncio.CancelledError:
            await self._abandon(session)
            raise
        except Exception as e:
            error = self._wrap_unexpected(e)
            await self._fail(session, error)
            raise error from e

        session.committed = True
        session.record = record
        session.pending_record = None
        self.stage = WorkflowStage.COMMITTED
        self.liveness.discard()
        await self._release_capture()

        logger.info(
            "Attendance committed",
            record_id=record.record_id,
            biometric_score=round(record.biometric_score, 2),
            fraud_flag=record.fraud_flag,
        )
        self._emit(
            WorkflowStage.COMMITTED.value,
            "committed",
            f"Attendance marked for {session.identity.display_name}",
            "success",
        )
        return record

    async def _verify(self, session: SessionContext) -> AttendanceRecord:
        key = session.identity_key

        self._enter(WorkflowStage.LIVENESS, "Liveness check: please blink twice")
        await self._verify_liveness()
        self._emit(WorkflowStage.LIVENESS.value, "passed", "Liveness verified", "success")

        self._enter(WorkflowStage.MATCHING, "Verifying face")
        match = await self._match_face(session)
        self._emit(
            WorkflowStage.MATCHING.value,
            "passed",
            f"Face verified ({match.score:.1f}% similarity)",
            "success",
        )

        self._enter(WorkflowStage.GEOFENCE, "Checking location")
        position = await self._acquire_position()
        geofence_result = self.geofence.validate(position)
        if not geofence_result.valid:
            raise GeofenceRejected(geofence_result.distance_km, geofence_result.radius_km)
        self._emit(
            WorkflowStage.GEOFENCE.value,
            "passed",
            f"Location verified ({geofence_result.distance_km * 1000:.0f} m from the anchor)",
            "success",
        )

        timestamp = self._now()

        if self.enforce_single_daily_checkin:
            self._enter(WorkflowStage.DUPLICATE_CHECK, "Checking today's attendance")
            await self._check_duplicate(key, timestamp)

        self._enter(WorkflowStage.FRAUD_CHECK, "Checking travel plausibility")
        previous = await self._store_call(self.record_store.most_recent(key), "most_recent")
        assessment = self.fraud_engine.evaluate(previous, position, timestamp)
        if assessment.flagged:
            self._emit(WorkflowStage.FRAUD_CHECK.value, "flagged", assessment.reason, "warning")

        return AttendanceRecord(
            identity_key=key,
            timestamp=timestamp,
            position=position,
            biometric_score=match.score,
            liveness_passed=True,
            device_hash=session.device_hash,
            fraud_flag=assessment.flagged,
            fraud_reason=assessment.reason,
            verification_method=VERIFICATION_METHOD,
        )

    async def _commit(self, session: SessionContext, record: AttendanceRecord) -> None:
        # Shielded: a timed-out write keeps running and a retry awaits it
        # instead of appending the record a second time.
        append = session.pending_append
        if append is None or (append.done() and (append.cancelled() or append.exception())):
            append = asyncio.ensure_future(self.record_store.append(record))
            session.pending_append = append

        await self._store_call(asyncio.shield(append), "append")
        session.pending_append = None

    def _wrap_unexpected(self, error: Exception) -> AttendanceError:
        message = f"Unexpected failure during {self.stage.value}: {error}"
        if self.stage is WorkflowStage.GEOFENCE:
            return LocationUnavailable(message, cause="error")
        return CaptureError(
            message, context={"stage": self.stage.value, "error_type": type(error).__name__}
        )

    async def _fail(self, session: SessionContext, error: AttendanceError) -> None:
        failed_stage = self.stage
        self.stage = WorkflowStage.FAILED
        session.last_error = error
        self.liveness.discard()
        await self._release_capture()

        logger.warning("Attendance run failed", stage=failed_stage.value, **error.to_dict())
        level = "warning" if isinstance(error, RateLimitExceeded) else "error"
        self._emit(failed_stage.value, error.reason, error.message, level)

    async def _abandon(self, session: SessionContext) -> None:
        abandoned_stage = self.stage
        self.stage = WorkflowStage.FAILED
        self.liveness.discard()
        await self._release_capture()

        logger.warning("Attendance run cancelled", stage=abandoned_stage.value)
        self._emit(abandoned_stage.value, "cancelled", "Attendance check cancelled", "warning")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _verify_liveness(self) -> None:
        await self._acquire_capture()
        self.tracker.raise_if_failed()

        async with self.tracker.suspended():
            session = await self.liveness.run(self.landmark_detector, self.capture.read, self.ticker)

        logger.info("Liveness passed", blinks=session.blinks, frames=session.frames)

    async def _match_face(self, session: SessionContext) -> MatchResult:
        self.tracker.raise_if_failed()

        async with self.tracker.suspended():
            frame = await self.capture.read()
            face_box = await self.face_detector.detect(frame)
        if face_box is None:
            face_box = self.tracker.last_face

        descriptor = await asyncio.to_thread(
            self.matcher.extract_live_descriptor, self.extractor, frame, face_box
        )
        match = self.matcher.match(descriptor, session.enrolled_descriptors)
        session.last_match = match

        if not match.accepted:
            raise MatchRejected(session.identity_key, match.score, match.threshold)
        return match

    async def _acquire_position(self) -> GeoPosition:
        try:
            return await asyncio.wait_for(
                self.position_provider.current_position(), timeout=self.location_timeout
            )
        except asyncio.TimeoutError:
            raise LocationUnavailable(
                f"Location request timed out after {self.location_timeout:g} seconds",
                cause="timeout",
            )

    async def _check_duplicate(self, key: str, timestamp: datetime) -> None:
        day = timestamp.astimezone(self.timezone).date()
        exists = await self._store_call(
            self.record_store.has_record_on(key, day, self.timezone), "has_record_on"
        )
        if exists:
            raise DuplicateCheckInError(key, day.isoformat())

    async def _store_call(self, call: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.store_timeout)
        except asyncio.TimeoutError:
            raise PersistenceError(
                f"Store {operation} timed out after {self.store_timeout:g} seconds",
                operation=operation,
            )
        except AttendanceError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Unexpected store error during {operation}: {e}",
                operation=operation,
                context={"error_type": type(e).__name__},
            ) from e
