import asyncio
from datetime import timedelta

import numpy as np
import pytest

from conftest import (
    ANCHOR,
    FakeBoxDetector,
    FakeCapture,
    FakeExtractor,
    FakePositionProvider,
    ScriptedLandmarkDetector,
    StepDateTime,
    blink_script,
    zero_ticker,
)
from geoface_attendance import config
from geoface_attendance.data_models import AttendanceRecord, GeoPosition, Identity
from geoface_attendance.descriptor_sources import LegacyPhotoDescriptorSource
from geoface_attendance.detectors import LandmarkDetector
from geoface_attendance.exceptions import (
    AlreadyMarkedError,
    CaptureError,
    DuplicateCheckInError,
    GeofenceRejected,
    LivenessFailed,
    LocationUnavailable,
    MatchRejected,
    NotFoundError,
    PersistenceError,
    RateLimitExceeded,
    ValidationError,
    WorkflowStateError,
)
from geoface_attendance.geofence import GeofenceValidator
from geoface_attendance.liveness import LivenessDetector
from geoface_attendance.rate_limiter import RateLimiter
from geoface_attendance.stores import InMemoryIdentityStore, InMemoryRecordStore
from geoface_attendance.workflow import AttendanceWorkflow, WorkflowStage, normalize_identity_key

DEVICE_HASH = "f" * 64


def offset(descriptor: np.ndarray, distance: float) -> np.ndarray:
    shifted = descriptor.copy()
    shifted[0] += distance
    return shifted


class FailingRecordStore(InMemoryRecordStore):
    async def append(self, record):
        raise OSError("disk full")


class SlowRecordStore(InMemoryRecordStore):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.appends = 0

    async def append(self, record):
        self.appends += 1
        await asyncio.sleep(self.delay)
        await super().append(record)


class CrashingLandmarkDetector(LandmarkDetector):
    async def detect(self, frame):
        raise RuntimeError("Unable to open shape_predictor_68_face_landmarks.dat")


class Kiosk:
    """A workflow wired to fakes, with handles on every fake."""

    def __init__(
        self,
        identities,
        live,
        *,
        blinks_per_run=2,
        runs=1,
        position=ANCHOR,
        record_store=None,
        enforce_single_daily_checkin=False,
        rate_limiter=None,
        capture=None,
        position_provider=None,
        descriptor_source=None,
        liveness=None,
        location_timeout=None,
        store_timeout=None,
        landmark_detector=None,
    ):
        self.identity_store = InMemoryIdentityStore(identities)
        self.record_store = record_store or InMemoryRecordStore()
        self.capture = capture or FakeCapture()
        self.extractor = FakeExtractor(live=live)
        self.landmarks = landmark_detector or ScriptedLandmarkDetector(
            blink_script(blinks_per_run) * runs
        )
        self.positions = position_provider or FakePositionProvider(position)
        self.now = StepDateTime()
        self.events = []

        self.workflow = AttendanceWorkflow(
            self.identity_store,
            self.record_store,
            self.capture,
            FakeBoxDetector(),
            self.landmarks,
            self.extractor,
            self.positions,
            GeofenceValidator(ANCHOR, 0.5),
            descriptor_source=descriptor_source,
            rate_limiter=rate_limiter or RateLimiter(),
            liveness=liveness,
            enforce_single_daily_checkin=enforce_single_daily_checkin,
            timezone_name="UTC",
            location_timeout=location_timeout,
            store_timeout=store_timeout,
            ticker=zero_ticker,
            now=self.now,
            device_hash=DEVICE_HASH,
        )
        self.workflow.subscribe(self.events.append)

    def outcomes(self):
        return [(event.stage, event.outcome) for event in self.events]


def prior_record(timestamp, position=ANCHOR) -> AttendanceRecord:
    return AttendanceRecord(
        identity_key="AB123",
        timestamp=timestamp,
        position=position,
        biometric_score=90.0,
        liveness_passed=True,
        device_hash=DEVICE_HASH,
    )


class TestIdentityKey:
    @pytest.mark.parametrize("raw,expected", [("ab123", "AB123"), (" AB123 ", "AB123")])
    def test_normalizes_case_and_whitespace(self, raw, expected):
        assert normalize_identity_key(raw) == expected

    @pytest.mark.parametrize("raw", ["AB", "AB-123", "A" * 21, ""])
    def test_rejects_malformed_keys(self, raw):
        with pytest.raises(ValidationError):
            normalize_identity_key(raw)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_matching_face_inside_zone_commits(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor)

        await kiosk.workflow.start_session("AB123")
        record = await kiosk.workflow.run()

        assert record.biometric_score == 100.0
        assert record.fraud_flag is False
        assert record.liveness_passed is True
        assert record.device_hash == DEVICE_HASH
        assert record.timestamp == kiosk.now.value
        assert kiosk.record_store.records == [record]
        assert kiosk.workflow.stage is WorkflowStage.COMMITTED
        assert kiosk.capture.is_open is False
        assert kiosk.workflow.tracker is None

    @pytest.mark.asyncio
    async def test_distant_face_is_rejected_without_commit(self, identity, descriptor):
        kiosk = Kiosk([identity], live=offset(descriptor, 1.2))

        await kiosk.workflow.start_session("AB123")
        with pytest.raises(MatchRejected) as excinfo:
            await kiosk.workflow.run()

        assert excinfo.value.score == 0.0
        assert kiosk.record_store.records == []
        assert kiosk.workflow.stage is WorkflowStage.FAILED
        assert ("matching", "match_rejected") in kiosk.outcomes()

    @pytest.mark.asyncio
    async def test_status_events_follow_stage_order(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor)

        await kiosk.workflow.start_session("AB123")
        await kiosk.workflow.run()

        assert kiosk.outcomes() == [
            ("session", "started"),
            ("rate_check", "started"),
            ("liveness", "started"),
            ("liveness", "passed"),
            ("matching", "started"),
            ("matching", "passed"),
            ("geofence", "started"),
            ("geofence", "passed"),
            ("fraud_check", "started"),
            ("committing", "started"),
            ("committed", "committed"),
        ]
        assert kiosk.events[-1].level == "success"


class TestSessionGuards:
    @pytest.mark.asyncio
    async def test_run_without_session_is_rejected(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor)

        with pytest.raises(WorkflowStateError):
            await kiosk.workflow.run()

    @pytest.mark.asyncio
    async def test_unknown_identity_is_not_found(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor)

        with pytest.raises(NotFoundError):
            await kiosk.workflow.start_session("ZZ999")

        assert kiosk.workflow.session is None
        assert ("session", "not_found") in kiosk.outcomes()

    @pytest.mark.asyncio
    async def test_malformed_key_is_rejected_before_lookup(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor)

        with pytest.raises(ValidationError):
            await kiosk.workflow.start_session("A!")

    @pytest.mark.asyncio
    async def test_identity_without_enrollment_is_not_found(self, descriptor):
        kiosk = Kiosk([Identity(key="AB123", display_name="Ada")], live=descriptor)

        with pytest.raises(NotFoundError):
            await kiosk.workflow.start_session("AB123")

    @pytest.mark.asyncio
    async def test_unavailable_camera_fails_session_start(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor, capture=FakeCapture(fail_open=True))

        with pytest.raises(CaptureError):
            await kiosk.workflow.start_session("AB123")

        assert kiosk.workflow.session is None

    @pytest.mark.asyncio
    async def test_committed_session_rejects_second_run(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor, runs=2)

        await kiosk.workflow.start_session("AB123")
        await kiosk.workflow.run()

        with pytest.raises(AlreadyMarkedError):
            await kiosk.workflow.run()
        assert len(kiosk.record_store.records) == 1

    @pytest.mark.asyncio
    async def test_reset_clears_committed_guard(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor, runs=2)

        await kiosk.workflow.start_session("AB123")
        await kiosk.workflow.run()
        await kiosk.workflow.reset()

        assert kiosk.workflow.session is None
        await kiosk.workflow.start_session("AB123")
        await kiosk.workflow.run()

        assert len(kiosk.record_store.records) == 2
        assert ("session", "reset") in kiosk.outcomes()

    @pytest.mark.asyncio
    async def test_context_manager_releases_capture(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor)

        async with kiosk.workflow:
            await kiosk.workflow.start_session("AB123")
            assert kiosk.capture.is_open

        assert kiosk.capture.is_open is False
        assert kiosk.workflow.session is None


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_after_match_failure_commits(self, identity, descriptor):
        kiosk = Kiosk([identity], live=offset(descriptor, 1.2), runs=2)
        await kiosk.workflow.start_session("AB123")

        with pytest.raises(MatchRejected):
            await kiosk.workflow.run()
        assert kiosk.capture.is_open is False

        kiosk.extractor.live = descriptor
        record = await kiosk.workflow.run()

        assert record.biometric_score == 100.0
        assert kiosk.workflow.session.attempts == 2
        assert kiosk.capture.opens == 2

    @pytest.mark.asyncio
    async def test_rate_limit_blocks_before_liveness(self, identity, descriptor):
        kiosk = Kiosk(
            [identity],
            live=offset(descriptor, 1.2),
            rate_limiter=RateLimiter(max_attempts=1),
        )
        await kiosk.workflow.start_session("AB123")
        with pytest.raises(MatchRejected):
            await kiosk.workflow.run()
        calls = kiosk.landmarks.calls

        with pytest.raises(RateLimitExceeded) as excinfo:
            await kiosk.workflow.run()

        assert excinfo.value.wait_seconds > 0
        assert kiosk.landmarks.calls == calls
        assert kiosk.events[-1].level == "warning"

    @pytest.mark.asyncio
    async def test_liveness_failure_aborts_remaining_stages(self, identity, descriptor):
        kiosk = Kiosk(
            [identity],
            live=descriptor,
            blinks_per_run=0,
            liveness=LivenessDetector(calibration_frames=30, timeout_seconds=0.2),
        )
        kiosk.landmarks.script = []
        await kiosk.workflow.start_session("AB123")

        with pytest.raises(LivenessFailed):
            await kiosk.workflow.run()

        assert kiosk.extractor.calls == []
        assert kiosk.positions.calls == 0
        assert kiosk.workflow.liveness.session is None


class TestLocationStages:
    @pytest.mark.asyncio
    async def test_outside_zone_is_rejected(self, identity, descriptor):
        far = GeoPosition(latitude=ANCHOR.latitude + 0.1, longitude=ANCHOR.longitude)
        kiosk = Kiosk([identity], live=descriptor, position=far)
        await kiosk.workflow.start_session("AB123")

        with pytest.raises(GeofenceRejected) as excinfo:
            await kiosk.workflow.run()

        assert excinfo.value.distance_km == pytest.approx(11.12, abs=0.01)
        assert kiosk.record_store.records == []

    @pytest.mark.asyncio
    async def test_slow_position_times_out(self, identity, descriptor):
        kiosk = Kiosk(
            [identity],
            live=descriptor,
            position_provider=FakePositionProvider(ANCHOR, delay=5.0),
            location_timeout=0.05,
        )
        await kiosk.workflow.start_session("AB123")

        with pytest.raises(LocationUnavailable) as excinfo:
            await kiosk.workflow.run()

        assert excinfo.value.context["cause"] == "timeout"
        assert "0.05 seconds" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_impossible_travel_is_advisory(self, identity, descriptor):
        store = InMemoryRecordStore()
        kiosk = Kiosk([identity], live=descriptor, record_store=store)
        # About 1000 km from the anchor, 30 minutes earlier
        distant = GeoPosition(latitude=ANCHOR.latitude - 8.99, longitude=ANCHOR.longitude)
        await store.append(prior_record(kiosk.now.value - timedelta(minutes=30), distant))
        await kiosk.workflow.start_session("AB123")

        record = await kiosk.workflow.run()

        assert record.fraud_flag is True
        assert "km/h" in record.fraud_reason
        assert ("fraud_check", "flagged") in kiosk.outcomes()
        assert len(store.records) == 2


class TestDuplicateCheck:
    @pytest.mark.asyncio
    async def test_same_day_duplicate_rejected_when_enforced(self, identity, descriptor):
        store = InMemoryRecordStore()
        kiosk = Kiosk([identity], live=descriptor, record_store=store, enforce_single_daily_checkin=True)
        await store.append(prior_record(kiosk.now.value - timedelta(hours=1)))
        await kiosk.workflow.start_session("AB123")

        with pytest.raises(DuplicateCheckInError):
            await kiosk.workflow.run()

        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_same_day_duplicate_allowed_when_disabled(self, identity, descriptor):
        store = InMemoryRecordStore()
        kiosk = Kiosk([identity], live=descriptor, record_store=store, enforce_single_daily_checkin=False)
        await store.append(prior_record(kiosk.now.value - timedelta(hours=1)))
        await kiosk.workflow.start_session("AB123")

        await kiosk.workflow.run()

        assert len(store.records) == 2

    @pytest.mark.asyncio
    async def test_previous_day_is_not_a_duplicate(self, identity, descriptor):
        store = InMemoryRecordStore()
        kiosk = Kiosk([identity], live=descriptor, record_store=store, enforce_single_daily_checkin=True)
        await store.append(prior_record(kiosk.now.value - timedelta(days=1)))
        await kiosk.workflow.start_session("AB123")

        await kiosk.workflow.run()

        assert len(store.records) == 2


class TestPersistence:
    @pytest.mark.asyncio
    async def test_store_failure_surfaces_as_persistence_error(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor, record_store=FailingRecordStore())
        await kiosk.workflow.start_session("AB123")

        with pytest.raises(PersistenceError) as excinfo:
            await kiosk.workflow.run()

        assert excinfo.value.context["operation"] == "append"
        assert kiosk.workflow.session.committed is False
        assert kiosk.workflow.stage is WorkflowStage.FAILED
        assert ("committing", "persistence_error") in kiosk.outcomes()

    @pytest.mark.asyncio
    async def test_timed_out_save_is_not_written_twice(self, identity, descriptor):
        store = SlowRecordStore(delay=0.2)
        kiosk = Kiosk([identity], live=descriptor, record_store=store, store_timeout=0.05, runs=2)
        await kiosk.workflow.start_session("AB123")

        with pytest.raises(PersistenceError) as excinfo:
            await kiosk.workflow.run()
        assert "0.05 seconds" in excinfo.value.message
        assert kiosk.workflow.session.committed is False

        # The write finishes after the timeout was reported
        await asyncio.sleep(0.3)
        assert len(store.records) == 1
        calls = kiosk.landmarks.calls

        record = await kiosk.workflow.run()

        assert store.records == [record]
        assert store.appends == 1
        assert kiosk.landmarks.calls == calls
        assert kiosk.workflow.session.committed is True

    @pytest.mark.asyncio
    async def test_failed_save_retries_only_the_save(self, identity, descriptor):
        class FailOnceRecordStore(InMemoryRecordStore):
            def __init__(self):
                super().__init__()
                self.failures = 1

            async def append(self, record):
                if self.failures:
                    self.failures -= 1
                    raise OSError("disk full")
                await super().append(record)

        store = FailOnceRecordStore()
        kiosk = Kiosk([identity], live=descriptor, record_store=store, runs=2)
        await kiosk.workflow.start_session("AB123")
        with pytest.raises(PersistenceError):
            await kiosk.workflow.run()
        calls = kiosk.landmarks.calls

        record = await kiosk.workflow.run()

        assert store.records == [record]
        assert kiosk.landmarks.calls == calls
        assert kiosk.workflow.session.attempts == 2
        assert kiosk.workflow.stage is WorkflowStage.COMMITTED


class TestCleanup:
    @pytest.mark.asyncio
    async def test_unexpected_detector_error_releases_capture(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor, landmark_detector=CrashingLandmarkDetector())
        await kiosk.workflow.start_session("AB123")

        with pytest.raises(CaptureError) as excinfo:
            await kiosk.workflow.run()

        assert excinfo.value.context["error_type"] == "RuntimeError"
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert kiosk.workflow.stage is WorkflowStage.FAILED
        assert kiosk.capture.is_open is False
        assert kiosk.workflow.tracker is None
        assert kiosk.workflow.liveness.session is None
        assert ("liveness", "capture_error") in kiosk.outcomes()

    @pytest.mark.asyncio
    async def test_cancelled_run_releases_capture(self, identity, descriptor):
        kiosk = Kiosk(
            [identity],
            live=descriptor,
            landmark_detector=ScriptedLandmarkDetector([], tail=None),
        )
        await kiosk.workflow.start_session("AB123")

        task = asyncio.create_task(kiosk.workflow.run())
        while kiosk.landmarks.calls == 0:
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert kiosk.workflow.stage is WorkflowStage.FAILED
        assert kiosk.capture.is_open is False
        assert kiosk.workflow.tracker is None
        assert kiosk.workflow.liveness.session is None
        assert ("liveness", "cancelled") in kiosk.outcomes()


class TestTimeouts:
    def test_explicit_zero_timeouts_are_kept(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor, location_timeout=0, store_timeout=0)

        assert kiosk.workflow.location_timeout == 0
        assert kiosk.workflow.store_timeout == 0

    def test_unset_timeouts_use_configuration(self, identity, descriptor):
        kiosk = Kiosk([identity], live=descriptor)

        assert kiosk.workflow.location_timeout == config.LOCATION_TIMEOUT_SECONDS
        assert kiosk.workflow.store_timeout == config.STORE_TIMEOUT_SECONDS


class TestLegacyEnrollment:
    @pytest.mark.asyncio
    async def test_descriptors_derived_from_photos(self, descriptor):
        identity = Identity(key="AB123", display_name="Ada", photos=["enrolled.jpg"])
        extractor = FakeExtractor(samples={"enrolled.jpg": descriptor})
        kiosk = Kiosk(
            [identity],
            live=descriptor,
            descriptor_source=LegacyPhotoDescriptorSource(extractor),
        )

        await kiosk.workflow.start_session("AB123")
        record = await kiosk.workflow.run()

        assert record.biometric_score == 100.0
        assert extractor.sample_calls == ["enrolled.jpg"]
