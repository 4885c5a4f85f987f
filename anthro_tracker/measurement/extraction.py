"""Geometric measurement extraction from a refined skeleton.

Every function here is pure: the same skeleton always yields bit-identical
candidates. Joint positions are metres, outputs are centimetres.
"""

from __future__ import annotations

import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from anthro_tracker.models import JointName, JointSample, MeasurementCandidate, MeasurementType, RefinedSkeleton

from .config import PipelineTuning
from .validation import is_plausible

# Breadth multipliers applied to joint spans and depth/breadth ratios of the
# elliptical cross-sections used for girths.
CHEST_BREADTH_FACTOR = 0.82
HIP_BREADTH_FACTOR = 1.55
WAIST_BREADTH_FACTOR = 0.86
CHEST_DEPTH_RATIO = 0.70
HIP_DEPTH_RATIO = 0.75
WAIST_DEPTH_RATIO = 0.72

_SIDES = ("left", "right")

Estimate = Tuple[float, float]  # (value_cm, confidence)


def _distance_m(a: JointSample, b: JointSample) -> float:
    return float(np.linalg.norm(np.asarray(a.position, dtype=float) - np.asarray(b.position, dtype=float)))


def _midpoint(a: JointSample, b: JointSample) -> np.ndarray:
    return (np.asarray(a.position, dtype=float) + np.asarray(b.position, dtype=float)) / 2.0


def ellipse_perimeter(semi_major: float, semi_minor: float) -> float:
    """Ramanujan's first approximation of an ellipse perimeter."""
    a, b = float(semi_major), float(semi_minor)
    return math.pi * (3.0 * (a + b) - math.sqrt((3.0 * a + b) * (a + 3.0 * b)))


def _joints(present: Mapping[JointName, JointSample], names: Sequence[JointName]) -> Optional[List[JointSample]]:
    samples = [present.get(name) for name in names]
    if any(sample is None for sample in samples):
        return None
    return samples  # type: ignore[return-value]


def _side_joint(side: str, part: str) -> JointName:
    return JointName(f"{side}_{part}")


class MeasurementExtractor:
    """Derives measurement candidates in MeasurementType declaration order."""

    def __init__(self, tuning: PipelineTuning | None = None) -> None:
        self.tuning = tuning or PipelineTuning.from_env()

    def _height(self, present: Mapping[JointName, JointSample]) -> Optional[Estimate]:
        used = _joints(present, (JointName.HEAD, JointName.LEFT_ANKLE, JointName.RIGHT_ANKLE))
        if used is None:
            return None
        head, left, right = used
        span_m = float(np.linalg.norm(np.asarray(head.position, dtype=float) - _midpoint(left, right)))
        value = span_m * 100.0 + self.tuning.head_crown_offset_cm
        return value, min(sample.confidence for sample in used)

    def _shoulder_width(self, present: Mapping[JointName, JointSample]) -> Optional[Estimate]:
        used = _joints(present, (JointName.LEFT_SHOULDER, JointName.RIGHT_SHOULDER))
        if used is None:
            return None
        return _distance_m(*used) * 100.0, min(sample.confidence for sample in used)

    def _hip_width(self, present: Mapping[JointName, JointSample]) -> Optional[Estimate]:
        used = _joints(present, (JointName.LEFT_HIP, JointName.RIGHT_HIP))
        if used is None:
            return None
        return _distance_m(*used) * 100.0, min(sample.confidence for sample in used)

    def _limb(self, present: Mapping[JointName, JointSample], parts: Tuple[str, str, str]) -> Optional[Estimate]:
        lengths: List[float] = []
        confidences: List[float] = []
        for side in _SIDES:
            used = _joints(present, [_side_joint(side, part) for part in parts])
            if used is None:
                continue
            upper, middle, lower = used
            lengths.append((_distance_m(upper, middle) + _distance_m(middle, lower)) * 100.0)
            confidences.extend(sample.confidence for sample in used)
        if not lengths:
            return None
        return float(np.mean(lengths)), min(confidences)

    def _girth(self, breadth_cm: float, depth_ratio: float, confidence: float) -> Estimate:
        semi_major = breadth_cm / 2.0
        value = ellipse_perimeter(semi_major, semi_major * depth_ratio)
        return value, confidence * self.tuning.girth_confidence_discount

    def estimates(self, skeleton: RefinedSkeleton) -> Dict[MeasurementType, Estimate]:
        """Raw estimates before plausibility filtering, keyed by type."""
        present = skeleton.confident_joints(self.tuning.joint_confidence_threshold)
        results: Dict[MeasurementType, Estimate] = {}

        height = self._height(present)
        if height is not None:
            results[MeasurementType.HEIGHT] = height
        shoulder = self._shoulder_width(present)
        if shoulder is not None:
            results[MeasurementType.SHOULDER_WIDTH] = shoulder
        arm = self._limb(present, ("shoulder", "elbow", "wrist"))
        if arm is not None:
            results[MeasurementType.ARM_LENGTH] = arm
        leg = self._limb(present, ("hip", "knee", "ankle"))
        if leg is not None:
            results[MeasurementType.LEG_LENGTH] = leg

        hip_width = self._hip_width(present)
        if shoulder is not None:
            chest_breadth = shoulder[0] * CHEST_BREADTH_FACTOR
            results[MeasurementType.CHEST_GIRTH] = self._girth(chest_breadth, CHEST_DEPTH_RATIO, shoulder[1])
        if shoulder is not None and hip_width is not None:
            waist_breadth = (shoulder[0] * CHEST_BREADTH_FACTOR + hip_width[0] * HIP_BREADTH_FACTOR) / 2.0
            results[MeasurementType.WAIST_GIRTH] = self._girth(
                waist_breadth * WAIST_BREADTH_FACTOR, WAIST_DEPTH_RATIO, min(shoulder[1], hip_width[1])
            )
        if hip_width is not None:
            hip_breadth = hip_width[0] * HIP_BREADTH_FACTOR
            results[MeasurementType.HIP_GIRTH] = self._girth(hip_breadth, HIP_DEPTH_RATIO, hip_width[1])
        return results

    def extract(self, skeleton: RefinedSkeleton) -> Tuple[MeasurementCandidate, ...]:
        estimates = self.estimates(skeleton)
        candidates: List[MeasurementCandidate] = []
        for measurement in MeasurementType:
            estimate = estimates.get(measurement)
            if estimate is None:
                continue
            value, confidence = estimate
            if not math.isfinite(value) or not is_plausible(measurement, value):
                continue
            candidates.append(
                MeasurementCandidate(
                    type=measurement,
                    value=value,
                    confidence=min(1.0, max(0.0, confidence)),
                    timestamp=skeleton.timestamp,
                )
            )
        return tuple(candidates)


__all__ = ["MeasurementExtractor", "ellipse_perimeter"]
