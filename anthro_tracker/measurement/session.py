"""Host-facing measurement session.

The session drives frames through ingest -> refinement -> extraction ->
accumulation, owns the worker pool and the producer thread, and is the only
place SessionState changes. Session-level failures are reported on the
``session_state_changed`` channel and never raised into the host.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from anthro_tracker.config import SessionConfig, get_config
from anthro_tracker.models import (
    BodyTrackingCapability,
    CalibrationFailure,
    DeviceCapabilities,
    FailureReason,
    JointSnapshot,
    MalformedFrameError,
    MeasurementSnapshot,
    MeasurementType,
    MLInferenceCapability,
    MLInferenceUnavailable,
    MotionCapability,
    MotionSample,
    PerformanceMonitor,
    PerformanceProfile,
    SessionState,
    SessionStateError,
    ThermalState,
    TrackingLost,
    ValidatedMeasurement,
)

from .accumulator import OUTLIER, STALE, MeasurementAccumulator
from .events import Channel, SessionEvents, StateChange
from .extraction import MeasurementExtractor
from .filtering import FilterTraceEntry
from .governor import PerformanceGovernor
from .ingest import FrameIngestAdapter, parse_motion
from .readiness import DEFAULT_REQUIREMENTS, DeploymentRequirements, ReadinessReport, deployment_readiness_check, parse_capabilities
from .refinement import LandmarkRefiner
from .validation import proportion_warnings

logger = logging.getLogger(__name__)

PROCESSED = "processed"
QUEUED = "queued"
DROPPED_BACKPRESSURE = "dropped_backpressure"
DROPPED_MALFORMED = "dropped_malformed"
DROPPED_INFERENCE = "dropped_inference"
DROPPED_INACTIVE = "dropped_inactive"
DROPPED_STALE_GENERATION = "dropped_stale_generation"

_Pending = List[Tuple[Channel[Any], Any]]


@dataclass(frozen=True)
class FrameOutcome:
    status: str
    sequence: Optional[int] = None
    candidates: int = 0
    validated: Tuple[ValidatedMeasurement, ...] = ()
    error: Optional[str] = None


@dataclass
class SessionDiagnostics:
    frames_received: int = 0
    frames_processed: int = 0
    dropped_backpressure: int = 0
    dropped_malformed: int = 0
    dropped_inference: int = 0
    dropped_inactive: int = 0
    dropped_stale_generation: int = 0
    outliers: int = 0
    stale_candidates: int = 0
    consecutive_inference_failures: int = 0
    tracking_lost_events: int = 0
    motion_errors: int = 0


@dataclass(frozen=True)
class SessionSnapshot:
    state: SessionState
    failure_reason: Optional[FailureReason]
    measurements: Dict[MeasurementType, MeasurementSnapshot]
    validated: Dict[MeasurementType, ValidatedMeasurement]
    profile: Optional[PerformanceProfile]
    thermal_state: Optional[ThermalState]
    diagnostics: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "measurements": {key.value: snap.to_dict() for key, snap in self.measurements.items()},
            "validated": {key.value: item.to_dict() for key, item in self.validated.items()},
            "profile": self.profile.to_dict() if self.profile else None,
            "thermal_state": self.thermal_state.value if self.thermal_state else None,
            "diagnostics": dict(self.diagnostics),
            "warnings": list(self.warnings),
        }


@dataclass
class _Pipeline:
    """Per-generation components; replaced wholesale on start and reset."""

    generation: int
    config: SessionConfig
    ingest: FrameIngestAdapter
    refiner: LandmarkRefiner
    extractor: MeasurementExtractor
    governor: PerformanceGovernor
    accumulators: Dict[MeasurementType, MeasurementAccumulator]
    executor: Optional[ThreadPoolExecutor] = None
    producer: Optional[threading.Thread] = None
    stop_event: threading.Event = field(default_factory=threading.Event)
    in_flight: int = 0


class MeasurementSession:
    """Explicit session context: construct one per measurement run."""

    def __init__(
        self,
        tracking: Optional[BodyTrackingCapability] = None,
        inference: Optional[MLInferenceCapability] = None,
        monitor: Optional[PerformanceMonitor] = None,
        motion: Optional[MotionCapability] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tracking = tracking
        self.inference = inference
        self.monitor = monitor
        self.motion = motion
        self.clock = clock
        self.events = SessionEvents()
        self._lock = threading.RLock()
        self._local = threading.local()
        self._state = SessionState.IDLE
        self._failure_reason: Optional[FailureReason] = None
        self._generation = 0
        self._pipeline: Optional[_Pipeline] = None
        self._validated: Dict[MeasurementType, ValidatedMeasurement] = {}
        self._lost_since: Optional[float] = None
        self._lost_timer: Optional[threading.Timer] = None
        self._capabilities: Optional[DeviceCapabilities] = None
        self._motion_iter: Optional[Iterator[Any]] = None
        self._motion_lock = threading.Lock()
        self.diagnostics = SessionDiagnostics()

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        return self._failure_reason

    @property
    def config(self) -> Optional[SessionConfig]:
        pipeline = self._pipeline
        return pipeline.config if pipeline else None

    @property
    def governor(self) -> Optional[PerformanceGovernor]:
        pipeline = self._pipeline
        return pipeline.governor if pipeline else None

    @property
    def profile(self) -> Optional[PerformanceProfile]:
        pipeline = self._pipeline
        return pipeline.governor.profile if pipeline else None

    def _transition(self, new: SessionState, reason: Optional[str], pending: _Pending) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.info("Session %s -> %s%s", old.value, new.value, f" ({reason})" if reason else "")
        pending.append((self.events.session_state_changed, StateChange(old, new, reason)))

    def _fail(self, reason: FailureReason, detail: str, pending: _Pending) -> Optional[_Pipeline]:
        if self._state.is_terminal:
            return None
        logger.warning("Session failed with %s: %s", reason.value, detail)
        self._failure_reason = reason
        self._transition(SessionState.FAILED, reason.value, pending)
        return self._halt_locked()

    def _halt_locked(self) -> Optional[_Pipeline]:
        self._disarm_watchdog_locked()
        pipeline = self._pipeline
        if pipeline is not None:
            pipeline.stop_event.set()
        return pipeline

    def _in_session_thread(self, pipeline: _Pipeline) -> bool:
        if getattr(self._local, "worker", False):
            return True
        return threading.current_thread() is pipeline.producer

    def _release(self, pipeline: Optional[_Pipeline]) -> None:
        """Cancel queued frames and wait for running ones (never from a session thread)."""
        if pipeline is None:
            return
        wait = not self._in_session_thread(pipeline)
        if pipeline.executor is not None:
            pipeline.executor.shutdown(wait=wait, cancel_futures=True)
        pipeline.refiner.close()

    def _emit(self, pending: _Pending) -> None:
        for channel, event in pending:
            channel.publish(event)

    # -------------------------------------------------------------- lifecycle

    def _build_pipeline(self, config: SessionConfig, capabilities: DeviceCapabilities) -> _Pipeline:
        self._generation += 1
        tuning = config.tuning
        return _Pipeline(
            generation=self._generation,
            config=config,
            ingest=FrameIngestAdapter(tuning, clock=self.clock),
            refiner=LandmarkRefiner(self.inference, tuning, max_workers=config.max_processing_threads),
            extractor=MeasurementExtractor(tuning),
            governor=PerformanceGovernor(
                self.monitor, config, capabilities=capabilities, channel=self.events.profile_changed
            ),
            accumulators={measurement: MeasurementAccumulator(measurement, config) for measurement in MeasurementType},
        )

    def _calibrate(self, config: SessionConfig) -> DeviceCapabilities:
        capabilities = DeviceCapabilities()
        if self.monitor is not None:
            try:
                thermal = ThermalState.parse(self.monitor.thermal_state())
                capabilities = parse_capabilities(self.monitor.capabilities())
            except Exception as exc:
                raise CalibrationFailure(f"Could not read device state: {exc}") from exc
            logger.info("Calibrating on %s (thermal %s)", capabilities.model, thermal.value)
        if self.motion is not None:
            sample = self._next_motion(strict=True)
            if sample is None:
                raise CalibrationFailure("Motion capability produced no sample during calibration.")
            if sample.tilt_deg > config.tuning.max_calibration_tilt_deg:
                raise CalibrationFailure(
                    f"Device tilt {sample.tilt_deg:.1f} deg exceeds {config.tuning.max_calibration_tilt_deg:g} deg."
                )
        return capabilities

    def start(self, config: Union[SessionConfig, Mapping[str, Any], None] = None) -> SessionState:
        """idle -> calibrating -> tracking; calibration problems end in ``failed``."""
        if config is None:
            config = get_config()
        elif not isinstance(config, SessionConfig):
            config = SessionConfig.from_mapping(config)
        pending: _Pending = []
        with self._lock:
            if self._state is not SessionState.IDLE:
                raise SessionStateError(f"Cannot start a session in state {self._state.value}.")
            self._failure_reason = None
            self._validated = {}
            self._lost_since = None
            self.diagnostics = SessionDiagnostics()
            self._transition(SessionState.CALIBRATING, None, pending)
            try:
                capabilities = self._calibrate(config)
            except CalibrationFailure as exc:
                self._pipeline = None
                self._fail(FailureReason.CALIBRATION_FAILURE, str(exc), pending)
            else:
                self._capabilities = capabilities
                pipeline = self._build_pipeline(config, capabilities)
                pipeline.executor = ThreadPoolExecutor(
                    max_workers=config.max_processing_threads, thread_name_prefix="anthro-worker"
                )
                self._pipeline = pipeline
                self._transition(SessionState.TRACKING, None, pending)
                if self.tracking is not None:
                    pipeline.producer = threading.Thread(
                        target=self._produce,
                        args=(pipeline,),
                        name="anthro-producer",
                        daemon=True,
                    )
                    pipeline.producer.start()
            state = self._state
        self._emit(pending)
        return state

    def stop(self) -> SessionState:
        """Finish the session; idempotent once terminal or idle."""
        pending: _Pending = []
        with self._lock:
            if self._state is SessionState.IDLE or self._state.is_terminal:
                return self._state
            pipeline = self._halt_locked()
            if self._all_required_validated():
                self._transition(SessionState.COMPLETED, "stopped", pending)
            else:
                self._failure_reason = FailureReason.CANCELLED
                self._transition(SessionState.FAILED, FailureReason.CANCELLED.value, pending)
            state = self._state
        self._release(pipeline)
        self._emit(pending)
        return state

    def reset(self) -> SessionState:
        """Return to idle from any state, discarding all measurement progress."""
        pending: _Pending = []
        with self._lock:
            pipeline = self._halt_locked()
            self._generation += 1
            self._pipeline = None
            self._validated = {}
            self._failure_reason = None
            self._lost_since = None
            self.diagnostics = SessionDiagnostics()
            self._transition(SessionState.IDLE, "reset", pending)
        self._release(pipeline)
        self._emit(pending)
        return SessionState.IDLE

    # --------------------------------------------------------------- liveness

    def tracking_lost(self) -> None:
        with self._lock:
            if not self._state.is_active or self._lost_since is not None:
                return
            self._lost_since = self.clock()
            self.diagnostics.tracking_lost_events += 1
            logger.warning("Body tracking lost at %.3f", self._lost_since)
            pipeline = self._pipeline
            if pipeline is not None:
                self._arm_watchdog_locked(pipeline.config.tuning.tracking_lost_grace_s)

    def tracking_resumed(self) -> None:
        with self._lock:
            if self._lost_since is not None:
                logger.info("Body tracking resumed after %.3fs", self.clock() - self._lost_since)
            self._lost_since = None
            self._disarm_watchdog_locked()

    def _arm_watchdog_locked(self, delay: float) -> None:
        self._disarm_watchdog_locked()
        timer = threading.Timer(delay, self._liveness_watchdog)
        timer.name = "anthro-liveness"
        timer.daemon = True
        self._lost_timer = timer
        timer.start()

    def _disarm_watchdog_locked(self) -> None:
        if self._lost_timer is not None:
            self._lost_timer.cancel()
            self._lost_timer = None

    def _liveness_watchdog(self) -> None:
        """Enforce the tracking-lost grace period while no input arrives."""
        state = self.check_liveness()
        with self._lock:
            if threading.current_thread() is not self._lost_timer:
                return
            self._lost_timer = None
            pipeline = self._pipeline
            if not state.is_active or self._lost_since is None or pipeline is None:
                return
            grace = pipeline.config.tuning.tracking_lost_grace_s
            remaining = grace - (self.clock() - self._lost_since)
            self._arm_watchdog_locked(max(remaining, grace / 10, 0.01))

    def check_liveness(self) -> SessionState:
        pending: _Pending = []
        halted: Optional[_Pipeline] = None
        with self._lock:
            pipeline = self._pipeline
            if self._state.is_active and pipeline is not None:
                grace = pipeline.config.tuning.tracking_lost_grace_s
                if self._lost_since is not None and self.clock() - self._lost_since > grace:
                    halted = self._fail(
                        FailureReason.TRACKING_LOST, f"no body detected for more than {grace:g}s", pending
                    )
                elif pipeline.governor.liveness_lost:
                    halted = self._fail(
                        FailureReason.THERMAL_CRITICAL, "minimum sustainable profile cannot keep up", pending
                    )
            state = self._state
        self._release(halted)
        self._emit(pending)
        return state

    # ------------------------------------------------------------------ input

    def _next_motion(self, strict: bool = False) -> Optional[MotionSample]:
        if self.motion is None:
            return None
        with self._motion_lock:
            try:
                if self._motion_iter is None:
                    self._motion_iter = iter(self.motion)
                return parse_motion(next(self._motion_iter))
            except StopIteration:
                return None
            except Exception as exc:
                if strict:
                    raise CalibrationFailure(f"Motion capability failed: {exc}") from exc
                with self._lock:
                    self.diagnostics.motion_errors += 1
                logger.warning("Skipping motion sample: %s", exc)
                return None

    def _admit(self) -> Tuple[Optional[_Pipeline], Optional[FrameOutcome], Optional[PerformanceProfile]]:
        """Frame boundary: read the profile once and enforce the in-flight budget."""
        with self._lock:
            self.diagnostics.frames_received += 1
            pipeline = self._pipeline
            if not self._state.is_active or pipeline is None:
                self.diagnostics.dropped_inactive += 1
                return None, FrameOutcome(DROPPED_INACTIVE), None
        # Outside the session lock: profile_changed subscribers run here.
        profile = pipeline.governor.at_frame_boundary()
        with self._lock:
            if not self._current(pipeline):
                self.diagnostics.dropped_inactive += 1
                return None, FrameOutcome(DROPPED_INACTIVE), None
            if pipeline.in_flight >= profile.max_processing_threads:
                self.diagnostics.dropped_backpressure += 1
                return None, FrameOutcome(DROPPED_BACKPRESSURE), profile
            pipeline.in_flight += 1
            return pipeline, None, profile

    def _finish_frame(self, pipeline: _Pipeline) -> None:
        with self._lock:
            pipeline.in_flight = max(0, pipeline.in_flight - 1)

    def process(self, snapshot: JointSnapshot, motion: Any = None) -> FrameOutcome:
        """Run one frame synchronously on the caller thread."""
        self.check_liveness()
        pipeline, dropped, profile = self._admit()
        if dropped is not None:
            return dropped
        assert pipeline is not None and profile is not None
        if motion is None:
            motion = self._next_motion()
        try:
            return self._run_frame(pipeline, profile, snapshot, motion)
        finally:
            self._finish_frame(pipeline)

    def submit(self, snapshot: JointSnapshot, motion: Any = None) -> FrameOutcome:
        """Queue one frame on the worker pool; returns immediately."""
        self.check_liveness()
        pipeline, dropped, profile = self._admit()
        if dropped is not None:
            return dropped
        assert pipeline is not None and profile is not None
        if motion is None:
            motion = self._next_motion()
        try:
            assert pipeline.executor is not None
            pipeline.executor.submit(self._worker, pipeline, profile, snapshot, motion)
        except RuntimeError:
            # Pool already shut down by a concurrent stop/complete.
            self._finish_frame(pipeline)
            with self._lock:
                self.diagnostics.dropped_inactive += 1
            return FrameOutcome(DROPPED_INACTIVE)
        return FrameOutcome(QUEUED)

    def _worker(self, pipeline: _Pipeline, profile: PerformanceProfile, snapshot: JointSnapshot, motion: Any) -> None:
        self._local.worker = True
        try:
            self._run_frame(pipeline, profile, snapshot, motion)
        except Exception:
            logger.exception("Unexpected error while processing a frame; frame dropped.")
        finally:
            self._local.worker = False
            self._finish_frame(pipeline)

    def _current(self, pipeline: _Pipeline) -> bool:
        return pipeline.generation == self._generation and self._state.is_active

    # ---------------------------------------------------------------- pipeline

    def _run_frame(
        self,
        pipeline: _Pipeline,
        profile: PerformanceProfile,
        snapshot: JointSnapshot,
        motion: Any,
    ) -> FrameOutcome:
        started = time.perf_counter()
        try:
            frame = pipeline.ingest.normalize(snapshot, motion)
        except MalformedFrameError as exc:
            with self._lock:
                self.diagnostics.dropped_malformed += 1
            logger.warning("Dropping malformed frame: %s", exc)
            return FrameOutcome(DROPPED_MALFORMED, error=str(exc))

        if not self._current(pipeline):
            with self._lock:
                self.diagnostics.dropped_stale_generation += 1
            return FrameOutcome(DROPPED_STALE_GENERATION, sequence=frame.sequence)

        try:
            skeleton = pipeline.refiner.refine(frame, profile)
        except MLInferenceUnavailable as exc:
            return self._inference_dropped(pipeline, frame.sequence, exc)

        candidates = pipeline.extractor.extract(skeleton)
        validated: List[ValidatedMeasurement] = []
        with self._lock:
            if pipeline.generation == self._generation:
                self.diagnostics.consecutive_inference_failures = 0
        for candidate in candidates:
            with self._lock:
                if not self._current(pipeline):
                    break
            update = pipeline.accumulators[candidate.type].submit(candidate)
            if update.validated is not None:
                validated.append(update.validated)
            if update.status == OUTLIER:
                with self._lock:
                    self.diagnostics.outliers += 1
            elif update.status == STALE:
                with self._lock:
                    self.diagnostics.stale_candidates += 1

        pipeline.governor.observe_latency(time.perf_counter() - started)

        pending: _Pending = []
        halted: Optional[_Pipeline] = None
        with self._lock:
            if pipeline.generation != self._generation:
                return FrameOutcome(DROPPED_STALE_GENERATION, sequence=frame.sequence)
            self.diagnostics.frames_processed += 1
            if validated and self._state.is_active:
                for item in validated:
                    self._validated[item.type] = item
                    pending.append((self.events.measurement_validated, item))
                halted = self._advance_locked(pending)
        self._release(halted)
        self._emit(pending)
        return FrameOutcome(PROCESSED, sequence=frame.sequence, candidates=len(candidates), validated=tuple(validated))

    def _inference_dropped(self, pipeline: _Pipeline, sequence: int, exc: MLInferenceUnavailable) -> FrameOutcome:
        pending: _Pending = []
        halted: Optional[_Pipeline] = None
        with self._lock:
            if pipeline.generation == self._generation:
                self.diagnostics.dropped_inference += 1
                self.diagnostics.consecutive_inference_failures += 1
                limit = pipeline.config.tuning.max_consecutive_inference_failures
                if self.diagnostics.consecutive_inference_failures > limit and self._state.is_active:
                    halted = self._fail(
                        FailureReason.INFERENCE_UNAVAILABLE,
                        f"{self.diagnostics.consecutive_inference_failures} consecutive frames without a usable skeleton",
                        pending,
                    )
        logger.warning("Dropping frame %s: %s", sequence, exc)
        self._release(halted)
        self._emit(pending)
        return FrameOutcome(DROPPED_INFERENCE, sequence=sequence, error=str(exc))

    def _all_required_validated(self) -> bool:
        pipeline = self._pipeline
        if pipeline is None:
            return False
        return all(item in self._validated for item in pipeline.config.required_measurements)

    def _advance_locked(self, pending: _Pending) -> Optional[_Pipeline]:
        pipeline = self._pipeline
        if pipeline is None:
            return None
        required = pipeline.config.required_measurements
        if self._all_required_validated():
            self._transition(SessionState.COMPLETED, "all required measurements validated", pending)
            return self._halt_locked()
        if any(item in self._validated for item in required):
            self._transition(SessionState.VALIDATING, None, pending)
        return None

    def _produce(self, pipeline: _Pipeline) -> None:
        """Producer loop: iterate the tracking capability and feed the worker pool."""
        assert self.tracking is not None
        last_admit = 0.0
        try:
            for item in self.tracking:
                if pipeline.stop_event.is_set() or not self._current(pipeline):
                    break
                if isinstance(item, TrackingLost):
                    self.tracking_lost()
                    self.check_liveness()
                    continue
                self.tracking_resumed()
                self.submit(item)
                if pipeline.config.tuning.pace_producer:
                    interval = pipeline.governor.profile.frame_interval_s
                    elapsed = time.perf_counter() - last_admit
                    if elapsed < interval:
                        pipeline.stop_event.wait(interval - elapsed)
                    last_admit = time.perf_counter()
        except Exception as exc:
            logger.warning("Body tracking stream failed: %s", exc)
            self.tracking_lost()
        logger.debug("Producer for generation %s finished.", pipeline.generation)

    # ------------------------------------------------------------------ query

    def get_current_measurements(self) -> Dict[MeasurementType, MeasurementSnapshot]:
        """Non-blocking view of every measurement, validated or in progress."""
        pipeline = self._pipeline
        if pipeline is None:
            return {}
        return {measurement: acc.snapshot for measurement, acc in pipeline.accumulators.items()}

    def filter_traces(self) -> Dict[MeasurementType, List[FilterTraceEntry]]:
        """Diagnostics trace of each temporal filter (includes rejected outliers)."""
        pipeline = self._pipeline
        if pipeline is None:
            return {}
        return {measurement: acc.filter.trace for measurement, acc in pipeline.accumulators.items()}

    def get_validated_measurements(self) -> Dict[MeasurementType, ValidatedMeasurement]:
        with self._lock:
            return dict(self._validated)

    def snapshot(self) -> SessionSnapshot:
        measurements = self.get_current_measurements()
        with self._lock:
            validated = dict(self._validated)
            diagnostics = asdict(self.diagnostics)
            pipeline = self._pipeline
            state = self._state
            reason = self._failure_reason
        values = {key: item.value for key, item in validated.items()}
        for key, snap in measurements.items():
            if key not in values and snap.value is not None:
                values[key] = snap.value
        if pipeline is not None:
            diagnostics.update({f"ingest_{key}": value for key, value in asdict(pipeline.ingest.stats).items()})
            diagnostics.update({f"refinement_{key}": value for key, value in asdict(pipeline.refiner.stats).items()})
        return SessionSnapshot(
            state=state,
            failure_reason=reason,
            measurements=measurements,
            validated=validated,
            profile=pipeline.governor.profile if pipeline else None,
            thermal_state=pipeline.governor.thermal_state if pipeline else None,
            diagnostics=diagnostics,
            warnings=proportion_warnings(values),
        )

    def deployment_readiness_check(
        self, requirements: DeploymentRequirements = DEFAULT_REQUIREMENTS
    ) -> ReadinessReport:
        capabilities: Any = self._capabilities
        if capabilities is None:
            capabilities = self.monitor.capabilities() if self.monitor is not None else DeviceCapabilities()
        return deployment_readiness_check(capabilities, requirements)


__all__ = [
    "DROPPED_BACKPRESSURE",
    "DROPPED_INACTIVE",
    "DROPPED_INFERENCE",
    "DROPPED_MALFORMED",
    "DROPPED_STALE_GENERATION",
    "FrameOutcome",
    "MeasurementSession",
    "PROCESSED",
    "QUEUED",
    "SessionDiagnostics",
    "SessionSnapshot",
]
