"""Anthropometric plausibility rules and confidence quality tiers."""

from __future__ import annotations

from typing import Dict, List, Mapping, Tuple

from anthro_tracker.models import MeasurementType

from .config import MEASUREMENT_LOGGER as logger

# Adult ranges in cm; values outside are treated as tracking artefacts.
PLAUSIBLE_RANGES_CM: Dict[MeasurementType, Tuple[float, float]] = {
    MeasurementType.HEIGHT: (100.0, 250.0),
    MeasurementType.SHOULDER_WIDTH: (25.0, 70.0),
    MeasurementType.ARM_LENGTH: (40.0, 100.0),
    MeasurementType.LEG_LENGTH: (50.0, 130.0),
    MeasurementType.CHEST_GIRTH: (60.0, 160.0),
    MeasurementType.WAIST_GIRTH: (50.0, 160.0),
    MeasurementType.HIP_GIRTH: (60.0, 170.0),
}

SHOULDER_TO_HEIGHT_RANGE: Tuple[float, float] = (0.2, 0.4)
HEIGHT_TO_SHOULDER_RANGE: Tuple[float, float] = (2.0, 5.0)

QUALITY_TIERS: Tuple[Tuple[str, float], ...] = (
    ("excellent", 0.95),
    ("good", 0.85),
    ("fair", 0.75),
)


def is_plausible(measurement: MeasurementType, value: float) -> bool:
    low, high = PLAUSIBLE_RANGES_CM[measurement]
    return low <= value <= high


def quality_tier(confidence: float) -> str:
    for name, floor in QUALITY_TIERS:
        if confidence >= floor:
            return name
    return "poor"


def _ratio_outside(value: float, bounds: Tuple[float, float]) -> bool:
    return not bounds[0] <= value <= bounds[1]


def proportion_warnings(values: Mapping[MeasurementType, float]) -> List[str]:
    """Cross-measurement sanity checks; returns human-readable warnings (never raises)."""
    warnings: List[str] = []
    height = values.get(MeasurementType.HEIGHT)
    shoulder = values.get(MeasurementType.SHOULDER_WIDTH)
    chest = values.get(MeasurementType.CHEST_GIRTH)
    waist = values.get(MeasurementType.WAIST_GIRTH)
    hips = values.get(MeasurementType.HIP_GIRTH)

    if waist is not None and chest is not None and waist > chest:
        warnings.append(f"Waist girth {waist:.1f} cm exceeds chest girth {chest:.1f} cm.")
    if hips is not None and waist is not None and hips < waist:
        warnings.append(f"Hip girth {hips:.1f} cm is smaller than waist girth {waist:.1f} cm.")
    if height and shoulder:
        shoulder_ratio = shoulder / height
        if _ratio_outside(shoulder_ratio, SHOULDER_TO_HEIGHT_RANGE):
            warnings.append(
                f"Shoulder/height ratio {shoulder_ratio:.2f} is outside "
                f"{SHOULDER_TO_HEIGHT_RANGE[0]}-{SHOULDER_TO_HEIGHT_RANGE[1]}."
            )
        height_ratio = height / shoulder
        if _ratio_outside(height_ratio, HEIGHT_TO_SHOULDER_RANGE):
            warnings.append(
                f"Height/shoulder ratio {height_ratio:.2f} is outside "
                f"{HEIGHT_TO_SHOULDER_RANGE[0]}-{HEIGHT_TO_SHOULDER_RANGE[1]}."
            )
    for message in warnings:
        logger.debug("Proportion check: %s", message)
    return warnings


__all__ = [
    "PLAUSIBLE_RANGES_CM",
    "QUALITY_TIERS",
    "is_plausible",
    "proportion_warnings",
    "quality_tier",
]
