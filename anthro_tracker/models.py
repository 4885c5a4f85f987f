from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

Vector3 = Tuple[float, float, float]

__all__ = [
    "AnthroTrackerError",
    "ValidationError",
    "SessionStateError",
    "MalformedFrameError",
    "MLInferenceUnavailable",
    "TrackingLostError",
    "ThermalCriticalAbort",
    "CalibrationFailure",
    "coerce_number",
    "coerce_confidence",
    "JointName",
    "MeasurementType",
    "ThermalState",
    "SessionState",
    "FailureReason",
    "JointSample",
    "MotionSample",
    "Frame",
    "RefinedSkeleton",
    "MeasurementCandidate",
    "ValidatedMeasurement",
    "MeasurementSnapshot",
    "PerformanceProfile",
    "DeviceCapabilities",
    "TrackingLost",
    "BodyTrackingCapability",
    "MotionCapability",
    "MLInferenceCapability",
    "PerformanceMonitor",
]


class AnthroTrackerError(Exception):
    """Base class for every error raised by the measurement core."""


class ValidationError(AnthroTrackerError, ValueError):
    """Raised when host-supplied data or configuration cannot be normalised safely."""


class SessionStateError(AnthroTrackerError):
    """Raised when a session operation is invoked from a state that does not allow it."""


class MalformedFrameError(AnthroTrackerError):
    """A raw joint snapshot could not be turned into a frame (frame-local, non-fatal)."""


class MLInferenceUnavailable(AnthroTrackerError):
    """Refinement could not produce a usable skeleton, even through the fallback path."""


class TrackingLostError(AnthroTrackerError):
    """Body tracking stayed lost for longer than the grace period."""


class ThermalCriticalAbort(AnthroTrackerError):
    """Even the minimum sustainable profile cannot keep the pipeline live."""


class CalibrationFailure(AnthroTrackerError):
    """The session could not establish a baseline while calibrating."""


def coerce_number(
    value: Any,
    *,
    field: str = "value",
    minimum: float | None = None,
    maximum: float | None = None,
    allow_float: bool = True,
) -> float:
    """
    Convert arbitrary input into a finite float with guardrails.

    The `minimum` and `maximum` bounds (inclusive) trigger a ValidationError when
    breached. When `allow_float` is False, the coerced number must be whole.
    """
    if value is None:
        raise ValidationError(f"{field} is required.")

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number; received {value!r}.")

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} is required.")
        try:
            number = float(stripped)
        except ValueError as exc:
            raise ValidationError(f"{field} must be a number; received {value!r}.") from exc
    else:
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{field} must be a number; received {value!r}.") from exc

    if not math.isfinite(number):
        raise ValidationError(f"{field} must be finite; received {value!r}.")

    if not allow_float and number != round(number):
        raise ValidationError(f"{field} must be an integer; received {value!r}.")

    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be >= {minimum}; received {number}.")

    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be <= {maximum}; received {number}.")

    return number


def coerce_confidence(value: Any, *, field: str = "confidence") -> float:
    """Confidences always live in [0, 1]."""
    return coerce_number(value, field=field, minimum=0.0, maximum=1.0)


def _clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


class JointName(str, Enum):
    """Anatomical landmarks understood by the measurement core."""

    HEAD = "head"
    NECK = "neck"
    SPINE_CHEST = "spine_chest"
    ROOT = "root"
    LEFT_SHOULDER = "left_shoulder"
    RIGHT_SHOULDER = "right_shoulder"
    LEFT_ELBOW = "left_elbow"
    RIGHT_ELBOW = "right_elbow"
    LEFT_WRIST = "left_wrist"
    RIGHT_WRIST = "right_wrist"
    LEFT_HIP = "left_hip"
    RIGHT_HIP = "right_hip"
    LEFT_KNEE = "left_knee"
    RIGHT_KNEE = "right_knee"
    LEFT_ANKLE = "left_ankle"
    RIGHT_ANKLE = "right_ankle"

    @classmethod
    def parse(cls, value: Any) -> "JointName":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(text)
        except ValueError as exc:
            raise ValidationError(f"Unknown joint {value!r}.") from exc


class MeasurementType(str, Enum):
    """Anthropometric quantities, in the order the extractor emits them."""

    HEIGHT = "height"
    SHOULDER_WIDTH = "shoulder_width"
    ARM_LENGTH = "arm_length"
    LEG_LENGTH = "leg_length"
    CHEST_GIRTH = "chest_girth"
    WAIST_GIRTH = "waist_girth"
    HIP_GIRTH = "hip_girth"

    @classmethod
    def parse(cls, value: Any) -> "MeasurementType":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        # Host payloads use camelCase ("shoulderWidth"); normalise to snake_case.
        snake = "".join("_" + ch.lower() if ch.isupper() else ch for ch in text).lstrip("_")
        snake = snake.replace("-", "_").replace(" ", "_")
        try:
            return cls(snake)
        except ValueError as exc:
            raise ValidationError(f"Unknown measurement type {value!r}.") from exc


class ThermalState(str, Enum):
    NOMINAL = "nominal"
    FAIR = "fair"
    SERIOUS = "serious"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: Any) -> "ThermalState":
        """Validate a thermal reading at the capability boundary.

        Accepts enum members, names ("serious"), or the platform integer codes
        0 (nominal) .. 3 (critical). Anything else is rejected.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValidationError(f"Invalid thermal state {value!r}.")
        if isinstance(value, int):
            if 0 <= value < len(_THERMAL_ORDER):
                return _THERMAL_ORDER[value]
            raise ValidationError(f"Thermal state code {value} is outside 0..3.")
        if isinstance(value, str):
            text = value.strip().lower()
            if text == "normal":
                text = "nominal"
            try:
                return cls(text)
            except ValueError as exc:
                raise ValidationError(f"Invalid thermal state {value!r}.") from exc
        raise ValidationError(f"Invalid thermal state {value!r}.")


_THERMAL_ORDER = (ThermalState.NOMINAL, ThermalState.FAIR, ThermalState.SERIOUS, ThermalState.CRITICAL)


class SessionState(str, Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    TRACKING = "tracking"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (SessionState.TRACKING, SessionState.VALIDATING)


class FailureReason(str, Enum):
    """Terminal reason codes surfaced on the session-state channel."""

    TRACKING_LOST = "TrackingLostError"
    CALIBRATION_FAILURE = "CalibrationFailure"
    THERMAL_CRITICAL = "ThermalCriticalAbort"
    INFERENCE_UNAVAILABLE = "MLInferenceUnavailable"
    CANCELLED = "cancelled"


def _coerce_vector(value: Any, *, field: str) -> Vector3:
    try:
        items = list(value)
    except TypeError as exc:
        raise ValidationError(f"{field} must be a 3-element sequence; received {value!r}.") from exc
    if len(items) != 3:
        raise ValidationError(f"{field} must have exactly 3 components; received {len(items)}.")
    x, y, z = (coerce_number(item, field=field) for item in items)
    return (x, y, z)


@dataclass(frozen=True)
class JointSample:
    """One tracked joint: position in metres, confidence in [0, 1], timestamp in seconds."""

    joint: JointName
    position: Vector3
    confidence: float
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "joint", JointName.parse(self.joint))
        object.__setattr__(self, "position", _coerce_vector(self.position, field=f"{self.joint.value}.position"))
        object.__setattr__(self, "confidence", coerce_confidence(self.confidence, field=f"{self.joint.value}.confidence"))
        object.__setattr__(self, "timestamp", coerce_number(self.timestamp, field="timestamp"))

    def with_confidence(self, confidence: float) -> "JointSample":
        return replace(self, confidence=_clamp_unit(confidence))


@dataclass(frozen=True)
class MotionSample:
    """Device attitude (roll, pitch, yaw in radians) and acceleration (g)."""

    attitude: Vector3
    acceleration: Vector3 = (0.0, 0.0, 0.0)
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "attitude", _coerce_vector(self.attitude, field="attitude"))
        object.__setattr__(self, "acceleration", _coerce_vector(self.acceleration, field="acceleration"))
        object.__setattr__(self, "timestamp", coerce_number(self.timestamp, field="timestamp"))

    @property
    def tilt_deg(self) -> float:
        """Deviation from an upright device, combining roll and pitch."""
        roll, pitch, _yaw = self.attitude
        return math.degrees(math.hypot(roll, pitch))


@dataclass(frozen=True)
class TrackingLost:
    """Marker yielded by a tracking capability when the body leaves the view."""

    timestamp: Optional[float] = None
    reason: str = "body not detected"


@dataclass(frozen=True)
class Frame:
    """Normalised input record: joints plus optional motion, with a monotonic timestamp."""

    sequence: int
    timestamp: float
    joints: Mapping[JointName, JointSample]
    motion: Optional[MotionSample] = None

    def __len__(self) -> int:
        return len(self.joints)


@dataclass(frozen=True)
class RefinedSkeleton:
    joints: Mapping[JointName, JointSample]
    confidence: float
    timestamp: float
    refined: bool = True

    def confident_joints(self, threshold: float) -> Dict[JointName, JointSample]:
        return {name: sample for name, sample in self.joints.items() if sample.confidence >= threshold}


@dataclass(frozen=True)
class MeasurementCandidate:
    type: MeasurementType
    value: float
    confidence: float
    timestamp: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", _clamp_unit(self.confidence))


@dataclass(frozen=True)
class ValidatedMeasurement:
    type: MeasurementType
    value: float
    confidence: float
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class MeasurementSnapshot:
    """Read-only view of one accumulator, safe to hand to any thread."""

    type: MeasurementType
    value: Optional[float] = None
    confidence: float = 0.0
    validated: bool = False
    streak: int = 0
    samples: int = 0
    outliers: int = 0
    quality: str = "poor"
    timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "confidence": self.confidence,
            "validated": self.validated,
            "streak": self.streak,
            "samples": self.samples,
            "outliers": self.outliers,
            "quality": self.quality,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class PerformanceProfile:
    """Resource budget for the pipeline; only the performance governor produces these."""

    target_frame_rate: int
    max_processing_threads: int
    accelerated_inference: bool = False
    accelerated_shaders: bool = False

    @property
    def frame_interval_s(self) -> float:
        return 1.0 / float(max(1, self.target_frame_rate))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_frame_rate": self.target_frame_rate,
            "max_processing_threads": self.max_processing_threads,
            "accelerated_inference": self.accelerated_inference,
            "accelerated_shaders": self.accelerated_shaders,
        }


@dataclass(frozen=True)
class DeviceCapabilities:
    model: str = "unknown"
    neural_engine: bool = False
    accelerated_shaders: bool = False
    available_memory_gb: float = 4.0
    processor_cores: int = 4
    max_frame_rate: int = 60
    features: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "neural_engine": self.neural_engine,
            "accelerated_shaders": self.accelerated_shaders,
            "available_memory_gb": self.available_memory_gb,
            "processor_cores": self.processor_cores,
            "max_frame_rate": self.max_frame_rate,
            "features": list(self.features),
        }


JointSnapshot = Union[Mapping[Any, Any], Sequence[Any]]


@runtime_checkable
class BodyTrackingCapability(Protocol):
    """Lazy, non-restartable stream of joint snapshots and TrackingLost markers."""

    def __iter__(self) -> Any: ...


@runtime_checkable
class MotionCapability(Protocol):
    def __iter__(self) -> Any: ...


@runtime_checkable
class MLInferenceCapability(Protocol):
    def refine(
        self, joints: Mapping[JointName, JointSample], *, accelerated: bool
    ) -> Union[Mapping[Any, JointSample], Iterable[JointSample]]: ...


@runtime_checkable
class PerformanceMonitor(Protocol):
    def thermal_state(self) -> Any: ...

    def capabilities(self) -> Any: ...
