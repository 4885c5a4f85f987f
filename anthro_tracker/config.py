from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Tuple

from .env import get_env
from .measurement.config import PipelineTuning, validate_config_values
from .models import DeviceCapabilities, MeasurementType, ValidationError, coerce_number

try:  # pragma: no cover - Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    try:
        import tomli as tomllib  # type: ignore
    except ModuleNotFoundError:
        tomllib = None  # type: ignore

DEFAULT_REQUIRED_MEASUREMENTS: Tuple[MeasurementType, ...] = (
    MeasurementType.HEIGHT,
    MeasurementType.SHOULDER_WIDTH,
)

# Host payloads use camelCase; both spellings are accepted.
_KEY_ALIASES = {
    "targetFrameRate": "target_frame_rate",
    "maxProcessingThreads": "max_processing_threads",
    "measurementAccuracy": "measurement_accuracy",
    "confidenceThreshold": "confidence_threshold",
    "validationFrames": "validation_frames",
    "enableTemporalSmoothing": "enable_temporal_smoothing",
    "enableOutlierDetection": "enable_outlier_detection",
    "requiredMeasurements": "required_measurements",
}


@dataclass(frozen=True)
class SessionConfig:
    """Immutable per-session settings supplied by the host at ``start``."""

    target_frame_rate: int = 30
    max_processing_threads: int = 4
    measurement_accuracy: float = 0.95
    confidence_threshold: float = 0.8
    validation_frames: int = 10
    enable_temporal_smoothing: bool = True
    enable_outlier_detection: bool = True
    required_measurements: Tuple[MeasurementType, ...] = DEFAULT_REQUIRED_MEASUREMENTS
    tuning: PipelineTuning = field(default_factory=PipelineTuning.from_env)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "target_frame_rate",
            int(coerce_number(self.target_frame_rate, field="target_frame_rate", minimum=1, allow_float=False)),
        )
        object.__setattr__(
            self,
            "max_processing_threads",
            int(coerce_number(self.max_processing_threads, field="max_processing_threads", minimum=1, allow_float=False)),
        )
        accuracy = coerce_number(self.measurement_accuracy, field="measurement_accuracy")
        if accuracy <= 0:
            raise ValidationError(f"measurement_accuracy must be > 0; received {accuracy}.")
        object.__setattr__(self, "measurement_accuracy", accuracy)
        object.__setattr__(
            self,
            "confidence_threshold",
            coerce_number(self.confidence_threshold, field="confidence_threshold", minimum=0.0, maximum=1.0),
        )
        object.__setattr__(
            self,
            "validation_frames",
            int(coerce_number(self.validation_frames, field="validation_frames", minimum=1, allow_float=False)),
        )
        object.__setattr__(self, "required_measurements", _coerce_required(self.required_measurements))
        if not isinstance(self.tuning, PipelineTuning):
            raise ValidationError("tuning must be a PipelineTuning instance.")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "SessionConfig":
        """Build a config from host keys (camelCase or snake_case)."""
        if not raw:
            return cls()
        if not isinstance(raw, Mapping):
            raise ValidationError("Session config must be a mapping.")
        known = {
            "target_frame_rate",
            "max_processing_threads",
            "measurement_accuracy",
            "confidence_threshold",
            "validation_frames",
            "enable_temporal_smoothing",
            "enable_outlier_detection",
            "required_measurements",
        }
        values: Dict[str, Any] = {}
        tuning_raw: Mapping[str, Any] | None = None
        for key, value in raw.items():
            name = _KEY_ALIASES.get(str(key), str(key))
            if name == "tuning":
                if not isinstance(value, Mapping):
                    raise ValidationError("tuning must be a table/object.")
                tuning_raw = value
                continue
            if name not in known:
                raise ValidationError(f"Unknown session option {key!r}.")
            if name.startswith("enable_"):
                value = _coerce_flag(value, field=name)
            values[name] = value
        values["tuning"] = PipelineTuning.from_mapping(tuning_raw)
        return cls(**values)

    def with_overrides(self, **changes: Any) -> "SessionConfig":
        return replace(self, **changes)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "target_frame_rate": self.target_frame_rate,
            "max_processing_threads": self.max_processing_threads,
            "measurement_accuracy": self.measurement_accuracy,
            "confidence_threshold": self.confidence_threshold,
            "validation_frames": self.validation_frames,
            "enable_temporal_smoothing": self.enable_temporal_smoothing,
            "enable_outlier_detection": self.enable_outlier_detection,
            "required_measurements": [item.value for item in self.required_measurements],
            "tuning": self.tuning.as_dict(),
        }


def _coerce_required(raw: Any) -> Tuple[MeasurementType, ...]:
    if raw is None:
        return DEFAULT_REQUIRED_MEASUREMENTS
    if isinstance(raw, (str, MeasurementType)):
        entries: Iterable[Any] = [entry for entry in str(getattr(raw, "value", raw)).split(",")]
    else:
        entries = raw
    parsed: list[MeasurementType] = []
    for entry in entries:
        if isinstance(entry, str) and not entry.strip():
            continue
        item = MeasurementType.parse(entry)
        if item not in parsed:
            parsed.append(item)
    if not parsed:
        raise ValidationError("required_measurements must name at least one measurement type.")
    return tuple(parsed)


def _coerce_flag(value: Any, *, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValidationError(f"{field} must be a boolean; received {value!r}.")


@dataclass(frozen=True)
class DeviceTierPreset:
    name: str
    measurement_accuracy: float
    confidence_threshold: float
    validation_frames: int
    target_frame_rate: int
    max_processing_threads: int


DEVICE_TIER_PRESETS: Dict[str, DeviceTierPreset] = {
    "ultra-high": DeviceTierPreset("ultra-high", 0.98, 0.9, 15, 60, 4),
    "high": DeviceTierPreset("high", 0.95, 0.85, 12, 30, 4),
    "medium": DeviceTierPreset("medium", 0.92, 0.8, 10, 30, 2),
    "low": DeviceTierPreset("low", 0.88, 0.75, 8, 15, 1),
}


def classify_device_tier(capabilities: DeviceCapabilities) -> str:
    """Map hardware capabilities onto one of the preset tiers."""
    memory = capabilities.available_memory_gb
    cores = capabilities.processor_cores
    if capabilities.neural_engine and capabilities.accelerated_shaders and memory >= 6 and cores >= 8:
        return "ultra-high"
    if capabilities.neural_engine and memory >= 6:
        return "high"
    if memory >= 4 and (cores >= 6 or capabilities.neural_engine):
        return "medium"
    return "low"


def recommended_config(capabilities: DeviceCapabilities, base: SessionConfig | None = None) -> SessionConfig:
    """Derive session settings suited to the device tier."""
    preset = DEVICE_TIER_PRESETS[classify_device_tier(capabilities)]
    base = base or SessionConfig()
    return replace(
        base,
        measurement_accuracy=preset.measurement_accuracy,
        confidence_threshold=preset.confidence_threshold,
        validation_frames=preset.validation_frames,
        target_frame_rate=min(preset.target_frame_rate, max(1, capabilities.max_frame_rate)),
        max_processing_threads=max(1, min(preset.max_processing_threads, capabilities.processor_cores)),
    )


def _config_path() -> Path | None:
    """Resolve the session configuration file, if present."""
    env_override = get_env("CONFIG")
    if env_override:
        path = Path(env_override).expanduser()
        return path if path.exists() else None

    for candidate in ("config/anthro_tracker.toml", "anthro_tracker.toml"):
        default_path = Path(candidate)
        if default_path.exists():
            return default_path
    return None


def _load_toml(path: Path) -> Mapping[str, Any]:
    if tomllib is None:
        raise RuntimeError("TOML configuration requires Python 3.11+ or the 'tomli' package.")
    with path.open("rb") as handle:
        return tomllib.load(handle)


def load_session_config(config_path: Path | str) -> SessionConfig:
    """Load a SessionConfig from TOML or JSON.

    Supports either a root-level mapping or a ``[session]`` table/object in the file.
    Environment overrides apply to tuning fields the file leaves unset.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    if not path.is_file():
        raise ValueError(f"Expected a config file, but got a directory: {path}")

    suffix = path.suffix.lower()
    if suffix == ".toml":
        raw_config: Any = _load_toml(path)
    elif suffix == ".json":
        with path.open("r", encoding="utf-8") as handle:
            raw_config = json.load(handle)
    else:
        raise ValueError(f"Unsupported config format for {path}; expected .toml or .json.")

    body = raw_config.get("session", raw_config) if isinstance(raw_config, dict) else raw_config
    if not isinstance(body, dict):
        raise ValidationError("Invalid config structure; expected a dict or a [session] section.")
    config = SessionConfig.from_mapping(body)
    validate_config_values(config.tuning)
    return config


@lru_cache(maxsize=1)
def get_config() -> SessionConfig:
    """Load configuration once, falling back to built-in defaults."""
    path = _config_path()
    if not path:
        return SessionConfig()
    return load_session_config(path)


def as_dict() -> dict[str, Any]:
    """Return the effective configuration for debug/CLI display."""
    payload = get_config().as_dict()
    payload["source"] = str(_config_path() or "defaults")
    return payload


__all__ = [
    "DEFAULT_REQUIRED_MEASUREMENTS",
    "DEVICE_TIER_PRESETS",
    "DeviceTierPreset",
    "SessionConfig",
    "as_dict",
    "classify_device_tier",
    "get_config",
    "load_session_config",
    "recommended_config",
]
