from __future__ import annotations

import threading

import pytest

from anthro_tracker.config import SessionConfig
from anthro_tracker.measurement.config import PipelineTuning
from anthro_tracker.measurement.events import StateChange
from anthro_tracker.measurement.session import (
    DROPPED_BACKPRESSURE,
    DROPPED_INACTIVE,
    DROPPED_INFERENCE,
    DROPPED_MALFORMED,
    PROCESSED,
    QUEUED,
    MeasurementSession,
)
from anthro_tracker.models import (
    FailureReason,
    JointName,
    MeasurementType,
    PerformanceProfile,
    SessionState,
    SessionStateError,
    ThermalState,
    TrackingLost,
    ValidatedMeasurement,
)
from anthro_tracker.simulation import (
    FailingInference,
    IdentityInference,
    StaticMonitor,
    SyntheticMotion,
    SyntheticTracking,
    build_skeleton,
)


class _Clock:
    def __init__(self, start: float = 10.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _config(**overrides) -> SessionConfig:
    tuning = overrides.pop("tuning", PipelineTuning(pace_producer=False))
    return SessionConfig(tuning=tuning, **overrides)


def _recorder(session: MeasurementSession):
    validated: list[ValidatedMeasurement] = []
    changes: list[StateChange] = []
    session.events.measurement_validated.subscribe(validated.append)
    session.events.session_state_changed.subscribe(changes.append)
    return validated, changes


def test_identical_frames_validate_height_exactly_once() -> None:
    session = MeasurementSession(inference=IdentityInference())
    validated, changes = _recorder(session)
    assert session.start(_config(validation_frames=5)) is SessionState.TRACKING

    outcomes = [session.process(build_skeleton(timestamp=0.1 * (index + 1))) for index in range(5)]
    session.stop()

    assert all(outcome.status == PROCESSED for outcome in outcomes)
    heights = [item for item in validated if item.type is MeasurementType.HEIGHT]
    assert len(heights) == 1
    assert heights[0].value == 172.0
    assert heights[0].confidence == pytest.approx(0.95)
    assert session.state is SessionState.COMPLETED
    assert [change.new for change in changes] == [
        SessionState.CALIBRATING,
        SessionState.TRACKING,
        SessionState.COMPLETED,
    ]
    assert session.process(build_skeleton(timestamp=1.0)).status == DROPPED_INACTIVE


def test_partial_validation_moves_to_validating() -> None:
    session = MeasurementSession()
    session.start(_config(validation_frames=3, required_measurements=["height", "shoulder_width"]))
    # Drop the left shoulder from the first frame so shoulder width validates one frame later.
    first = build_skeleton(timestamp=0.1)
    first.pop(JointName.LEFT_SHOULDER)
    session.process(first)
    session.process(build_skeleton(timestamp=0.2))
    session.process(build_skeleton(timestamp=0.3))
    assert session.state is SessionState.VALIDATING
    assert MeasurementType.HEIGHT in session.get_validated_measurements()
    session.process(build_skeleton(timestamp=0.4))
    assert session.state is SessionState.COMPLETED


def test_thermal_change_mid_session_publishes_reduced_profile() -> None:
    monitor = StaticMonitor()
    session = MeasurementSession(monitor=monitor)
    profiles: list[PerformanceProfile] = []
    session.events.profile_changed.subscribe(profiles.append)
    session.start(_config(validation_frames=50, target_frame_rate=30, max_processing_threads=4))

    session.process(build_skeleton(timestamp=0.1))
    assert session.profile == PerformanceProfile(30, 4, accelerated_inference=True, accelerated_shaders=True)
    monitor.set_thermal("serious")
    session.process(build_skeleton(timestamp=0.2))
    session.process(build_skeleton(timestamp=0.3))

    assert len(profiles) == 1
    assert profiles[0].target_frame_rate == 15
    assert profiles[0].max_processing_threads == 2
    assert profiles[0].accelerated_inference is False
    current = session.get_current_measurements()[MeasurementType.HEIGHT]
    assert current.streak == 3
    assert current.samples == 3
    assert session.snapshot().thermal_state is ThermalState.SERIOUS
    assert session.state is SessionState.TRACKING
    session.stop()


def test_tracking_lost_beyond_grace_fails_session() -> None:
    clock = _Clock(10.0)
    session = MeasurementSession(clock=clock)
    _, changes = _recorder(session)
    # Girth confidence (0.95 * 0.9) stays under 0.9, so only height validates.
    session.start(_config(validation_frames=2, confidence_threshold=0.9, required_measurements=["chest_girth"]))
    session.process(build_skeleton(timestamp=0.1))
    session.process(build_skeleton(timestamp=0.2))
    assert MeasurementType.HEIGHT in session.get_validated_measurements()

    session.tracking_lost()
    clock.now = 11.5
    assert session.check_liveness() is SessionState.TRACKING
    session.tracking_resumed()
    session.tracking_lost()
    clock.now = 12.0
    assert session.check_liveness() is SessionState.TRACKING
    clock.now = 14.5
    assert session.check_liveness() is SessionState.FAILED

    assert session.failure_reason is FailureReason.TRACKING_LOST
    assert changes[-1].reason == "TrackingLostError"
    assert session.diagnostics.tracking_lost_events == 2
    assert session.get_validated_measurements()[MeasurementType.HEIGHT].value == 172.0
    current = session.get_current_measurements()
    assert current[MeasurementType.HEIGHT].validated is True
    assert current[MeasurementType.CHEST_GIRTH].validated is False


class _StallingTracking:
    """Yields one frame, reports the body lost, then stalls until released."""

    def __init__(self) -> None:
        self.release = threading.Event()

    def __iter__(self):
        yield build_skeleton(timestamp=0.1)
        yield TrackingLost(timestamp=0.2)
        self.release.wait(10.0)


def test_stalled_stream_still_fails_after_grace() -> None:
    tracking = _StallingTracking()
    session = MeasurementSession(tracking=tracking)
    failed = threading.Event()
    session.events.session_state_changed.subscribe(
        lambda change: failed.set() if change.new is SessionState.FAILED else None
    )
    tuning = PipelineTuning(pace_producer=False, tracking_lost_grace_s=0.05)
    try:
        session.start(_config(validation_frames=50, tuning=tuning))
        assert failed.wait(5.0)
    finally:
        tracking.release.set()
    assert session.state is SessionState.FAILED
    assert session.failure_reason is FailureReason.TRACKING_LOST
    assert session.diagnostics.tracking_lost_events == 1


class _GatedInference:
    def __init__(self) -> None:
        self.release = threading.Event()

    def refine(self, joints, *, accelerated):
        self.release.wait(5.0)
        return dict(joints)


def test_frames_beyond_in_flight_budget_are_dropped() -> None:
    inference = _GatedInference()
    session = MeasurementSession(inference=inference)
    tuning = PipelineTuning(pace_producer=False, inference_timeout_s=5.0)
    session.start(_config(validation_frames=50, max_processing_threads=1, tuning=tuning))
    try:
        assert session.submit(build_skeleton(timestamp=0.1)).status == QUEUED
        assert session.submit(build_skeleton(timestamp=0.2)).status == DROPPED_BACKPRESSURE
        assert session.diagnostics.dropped_backpressure == 1
        assert session.snapshot().diagnostics["dropped_backpressure"] == 1
    finally:
        inference.release.set()
        session.stop()
    assert session.diagnostics.frames_received == 2


def test_stop_is_idempotent() -> None:
    session = MeasurementSession()
    validated, changes = _recorder(session)
    session.start(_config(validation_frames=10))
    for index in range(3):
        session.process(build_skeleton(timestamp=0.1 * (index + 1)))

    assert session.stop() is SessionState.FAILED
    assert session.failure_reason is FailureReason.CANCELLED
    count = len(changes)
    assert session.stop() is SessionState.FAILED
    assert len(changes) == count
    assert validated == []


def test_reset_returns_to_idle_and_allows_restart() -> None:
    session = MeasurementSession()
    _, changes = _recorder(session)
    session.start(_config(validation_frames=2))
    session.process(build_skeleton(timestamp=0.1))
    session.process(build_skeleton(timestamp=0.2))
    assert session.state is SessionState.COMPLETED

    assert session.reset() is SessionState.IDLE
    assert changes[-1].reason == "reset"
    assert session.get_validated_measurements() == {}
    assert session.get_current_measurements() == {}

    session.start(_config(validation_frames=2))
    outcome = session.process(build_skeleton(timestamp=0.05))
    assert outcome.status == PROCESSED
    assert outcome.sequence == 1
    session.stop()


def test_start_requires_idle() -> None:
    session = MeasurementSession()
    session.start(_config())
    with pytest.raises(SessionStateError):
        session.start(_config())
    session.stop()


def test_excessive_tilt_fails_calibration() -> None:
    session = MeasurementSession(motion=SyntheticMotion(tilt_deg=40.0))
    _, changes = _recorder(session)
    assert session.start(_config()) is SessionState.FAILED
    assert session.failure_reason is FailureReason.CALIBRATION_FAILURE
    assert [change.new for change in changes] == [SessionState.CALIBRATING, SessionState.FAILED]
    assert session.process(build_skeleton(timestamp=0.1)).status == DROPPED_INACTIVE


def test_critical_thermal_at_calibration_does_not_fail() -> None:
    session = MeasurementSession(monitor=StaticMonitor(thermal="critical"), motion=SyntheticMotion())
    assert session.start(_config()) is SessionState.TRACKING
    assert session.profile is not None
    assert session.profile.max_processing_threads == 1
    session.stop()


def test_sustained_critical_overrun_aborts() -> None:
    session = MeasurementSession(monitor=StaticMonitor(thermal=ThermalState.CRITICAL))
    session.start(_config(validation_frames=50, tuning=PipelineTuning(pace_producer=False, critical_liveness_frames=2)))
    assert session.governor is not None
    session.governor.observe_latency(0.5)
    for index in range(3):
        session.process(build_skeleton(timestamp=0.1 * (index + 1)))
    assert session.state is SessionState.FAILED
    assert session.failure_reason is FailureReason.THERMAL_CRITICAL


def test_repeated_inference_loss_escalates() -> None:
    tuning = PipelineTuning(pace_producer=False, max_inference_retries=0, max_consecutive_inference_failures=3)
    session = MeasurementSession(inference=FailingInference())
    session.start(_config(tuning=tuning))
    outcomes = [session.process(build_skeleton(confidence=0.6, timestamp=0.1 * (i + 1))) for i in range(5)]

    assert [outcome.status for outcome in outcomes[:4]] == [DROPPED_INFERENCE] * 4
    assert outcomes[4].status == DROPPED_INACTIVE
    assert session.failure_reason is FailureReason.INFERENCE_UNAVAILABLE


def test_malformed_frames_are_dropped_without_failing() -> None:
    session = MeasurementSession()
    session.start(_config(validation_frames=50))
    outcome = session.process({"head": (0.0, 1.7, 0.0, 0.9)})
    assert outcome.status == DROPPED_MALFORMED
    assert session.process(build_skeleton(timestamp=0.1)).status == PROCESSED
    snapshot = session.snapshot()
    assert snapshot.diagnostics["dropped_malformed"] == 1
    assert snapshot.diagnostics["ingest_malformed"] == 1
    assert session.state is SessionState.TRACKING
    session.stop()


def test_snapshot_reports_progress_and_traces() -> None:
    session = MeasurementSession()
    session.start(_config(validation_frames=50))
    for index in range(4):
        session.process(build_skeleton(timestamp=0.1 * (index + 1)))
    current = session.get_current_measurements()
    assert current[MeasurementType.HEIGHT].streak == 4
    assert current[MeasurementType.HEIGHT].value == 172.0
    assert len(session.filter_traces()[MeasurementType.HEIGHT]) == 4
    payload = session.snapshot().to_dict()
    assert payload["state"] == "tracking"
    assert payload["measurements"]["height"]["samples"] == 4
    assert payload["warnings"] == []
    session.stop()


def test_readiness_check_uses_monitor_capabilities() -> None:
    session = MeasurementSession(monitor=StaticMonitor())
    report = session.deployment_readiness_check()
    assert report.ready is True
    assert report.tier == "ultra-high"


def test_producer_thread_drives_session_to_completion() -> None:
    tracking = SyntheticTracking(frames=2000, noise_cm=0.0)
    session = MeasurementSession(tracking=tracking, inference=IdentityInference())
    done = threading.Event()
    validated, _ = _recorder(session)
    session.events.session_state_changed.subscribe(
        lambda change: done.set() if change.new.is_terminal else None
    )
    session.start(_config(validation_frames=5))
    assert done.wait(10.0)
    session.stop()

    assert session.state is SessionState.COMPLETED
    assert len([item for item in validated if item.type is MeasurementType.HEIGHT]) == 1
    assert session.get_validated_measurements()[MeasurementType.HEIGHT].value == pytest.approx(172.0)
