"""Tuning constants for the measurement pipeline.

Settings include:
- MIN_JOINT_COUNT / JOINT_CONFIDENCE_THRESHOLD: what counts as a usable frame and joint.
- INFERENCE_TIMEOUT_S / MAX_INFERENCE_RETRIES / FALLBACK_CONFIDENCE_PENALTY: refinement budget.
- FILTER_WINDOW / OUTLIER_K / OUTLIER_MIN_SAMPLES / OUTLIER_MIN_SPREAD / EMA_ALPHA: temporal filter.
- MIN_SUSTAINABLE_FRAME_RATE / CRITICAL_LIVENESS_FRAMES: performance governor floor.
- TRACKING_LOST_GRACE_S / MAX_CALIBRATION_TILT_DEG: session liveness and stance checks.

Every field can be overridden through ``ANTHRO_TRACKER_<FIELD_NAME>`` environment
variables, e.g. ``ANTHRO_TRACKER_OUTLIER_K=4.0``.
"""

from __future__ import annotations

import logging
import os
import warnings
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Mapping

from anthro_tracker.env import get_env, get_env_bool, get_env_float, get_env_int
from anthro_tracker.models import ValidationError, coerce_number


def _configure_logger() -> logging.Logger:
    logger = logging.getLogger("anthro_tracker.measurement")
    level_name = get_env("LOG_LEVEL") or os.getenv("LOG_LEVEL")
    if level_name:
        level = getattr(logging, level_name.upper(), logging.INFO)
        logger.setLevel(level)
    return logger


MEASUREMENT_LOGGER = _configure_logger()
logger = MEASUREMENT_LOGGER


@dataclass(frozen=True)
class PipelineTuning:
    """Numeric knobs shared by every pipeline stage."""

    # ingest
    min_joint_count: int = 8
    joint_confidence_threshold: float = 0.5
    # refinement
    inference_timeout_s: float = 0.1
    max_inference_retries: int = 2
    fallback_confidence_penalty: float = 0.8
    # extraction
    head_crown_offset_cm: float = 0.0
    girth_confidence_discount: float = 0.9
    # temporal filter
    filter_window: int = 10
    outlier_k: float = 3.5
    outlier_min_samples: int = 4
    outlier_min_spread: float = 0.5
    ema_alpha: float = 0.5
    trace_size: int = 512
    # governor
    min_sustainable_frame_rate: int = 10
    serious_max_threads: int = 2
    latency_ema_alpha: float = 0.2
    critical_liveness_frames: int = 30
    # session
    tracking_lost_grace_s: float = 2.0
    max_calibration_tilt_deg: float = 25.0
    max_consecutive_inference_failures: int = 30
    pace_producer: bool = True

    @classmethod
    def from_env(cls) -> "PipelineTuning":
        """Defaults with ``ANTHRO_TRACKER_*`` overrides applied."""
        overrides: Dict[str, Any] = {}
        for spec in fields(cls):
            default = spec.default
            key = spec.name.upper()
            if isinstance(default, bool):
                overrides[spec.name] = get_env_bool(key, default)
            elif isinstance(default, int):
                overrides[spec.name] = get_env_int(key, default)
            else:
                overrides[spec.name] = get_env_float(key, default)
        return cls(**overrides)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None, base: "PipelineTuning | None" = None) -> "PipelineTuning":
        """Overlay a ``[session.tuning]`` table on ``base`` (env defaults when omitted)."""
        tuning = base or cls.from_env()
        if not raw:
            return tuning
        known = {spec.name: spec for spec in fields(cls)}
        updates: Dict[str, Any] = {}
        for key, value in raw.items():
            name = _snake_case(str(key))
            if name not in known:
                raise ValidationError(f"Unknown tuning option {key!r}.")
            default = known[name].default
            if isinstance(default, bool):
                updates[name] = _coerce_bool(value, field=name)
            elif isinstance(default, int):
                updates[name] = int(coerce_number(value, field=name, minimum=0, allow_float=False))
            else:
                updates[name] = coerce_number(value, field=name)
        return replace(tuning, **updates)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _snake_case(text: str) -> str:
    return "".join("_" + ch.lower() if ch.isupper() else ch for ch in text).lstrip("_")


def _coerce_bool(value: Any, *, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValidationError(f"{field} must be a boolean; received {value!r}.")


def _warn(message: str) -> None:
    warnings.warn(message, RuntimeWarning, stacklevel=3)
    logger.warning(message)


def _check_unit_interval(tuning: PipelineTuning) -> None:
    for name in ("joint_confidence_threshold", "fallback_confidence_penalty", "girth_confidence_discount"):
        value = getattr(tuning, name)
        if not 0.0 <= value <= 1.0:
            _warn(f"{name}={value} is outside [0,1]; please correct the environment or config.")
    if not 0.0 < tuning.ema_alpha <= 1.0:
        _warn(f"ema_alpha={tuning.ema_alpha} is outside (0,1]; smoothing will misbehave.")
    if not 0.0 < tuning.latency_ema_alpha <= 1.0:
        _warn(f"latency_ema_alpha={tuning.latency_ema_alpha} is outside (0,1].")


def _check_filter(tuning: PipelineTuning) -> None:
    if tuning.filter_window < tuning.outlier_min_samples:
        _warn(
            f"filter_window={tuning.filter_window} is smaller than outlier_min_samples="
            f"{tuning.outlier_min_samples}; outlier detection will never engage."
        )
    if tuning.outlier_k <= 0:
        _warn(f"outlier_k={tuning.outlier_k} is non-positive; every sample would be an outlier.")
    if tuning.outlier_min_spread < 0:
        _warn(f"outlier_min_spread={tuning.outlier_min_spread} is negative.")


def _check_budgets(tuning: PipelineTuning) -> None:
    if tuning.inference_timeout_s <= 0:
        _warn(f"inference_timeout_s={tuning.inference_timeout_s} is non-positive; every call will time out.")
    if tuning.min_sustainable_frame_rate <= 0:
        _warn(f"min_sustainable_frame_rate={tuning.min_sustainable_frame_rate} is non-positive.")
    if tuning.min_joint_count <= 0:
        _warn(f"min_joint_count={tuning.min_joint_count} is non-positive; empty frames would be accepted.")
    if tuning.tracking_lost_grace_s < 0:
        _warn(f"tracking_lost_grace_s={tuning.tracking_lost_grace_s} is negative.")


def validate_config_values(tuning: PipelineTuning | None = None) -> None:
    """Emit warnings for suspicious tuning values (never raises)."""
    tuning = tuning or PipelineTuning.from_env()
    _check_unit_interval(tuning)
    _check_filter(tuning)
    _check_budgets(tuning)


__all__ = [
    "MEASUREMENT_LOGGER",
    "PipelineTuning",
    "validate_config_values",
]
