from __future__ import annotations

import math

import pytest

from anthro_tracker.measurement.config import PipelineTuning
from anthro_tracker.measurement.extraction import MeasurementExtractor, ellipse_perimeter
from anthro_tracker.models import JointName, MeasurementType, RefinedSkeleton
from anthro_tracker.simulation import BodyProfile, build_skeleton


def _skeleton(body: BodyProfile | None = None, confidence: float = 0.95, drop: tuple[JointName, ...] = ()) -> RefinedSkeleton:
    joints = build_skeleton(body, confidence=confidence, timestamp=1.0)
    for name in drop:
        joints.pop(name)
    return RefinedSkeleton(joints=joints, confidence=confidence, timestamp=1.0)


def test_ellipse_perimeter_matches_circle() -> None:
    assert ellipse_perimeter(10.0, 10.0) == pytest.approx(2 * math.pi * 10.0)


def test_height_and_shoulder_width_are_exact_for_upright_skeleton() -> None:
    extractor = MeasurementExtractor(PipelineTuning())
    estimates = extractor.estimates(_skeleton(BodyProfile(height_cm=180.0, shoulder_width_cm=45.0)))
    assert estimates[MeasurementType.HEIGHT][0] == pytest.approx(180.0)
    assert estimates[MeasurementType.SHOULDER_WIDTH][0] == pytest.approx(45.0)
    assert estimates[MeasurementType.HEIGHT][1] == pytest.approx(0.95)


def test_head_crown_offset_is_added() -> None:
    extractor = MeasurementExtractor(PipelineTuning(head_crown_offset_cm=8.0))
    estimates = extractor.estimates(_skeleton())
    assert estimates[MeasurementType.HEIGHT][0] == pytest.approx(180.0)


def test_girths_are_discounted() -> None:
    extractor = MeasurementExtractor(PipelineTuning(girth_confidence_discount=0.9))
    estimates = extractor.estimates(_skeleton())
    for measurement in (MeasurementType.CHEST_GIRTH, MeasurementType.WAIST_GIRTH, MeasurementType.HIP_GIRTH):
        assert estimates[measurement][1] == pytest.approx(0.855)


def test_extract_orders_candidates_and_is_deterministic() -> None:
    extractor = MeasurementExtractor(PipelineTuning())
    skeleton = _skeleton()
    first = extractor.extract(skeleton)
    second = extractor.extract(skeleton)
    assert first == second
    order = list(MeasurementType)
    indices = [order.index(candidate.type) for candidate in first]
    assert indices == sorted(indices)
    assert first[0].type is MeasurementType.HEIGHT
    assert all(candidate.timestamp == 1.0 for candidate in first)


def test_missing_joints_skip_dependent_measurements() -> None:
    extractor = MeasurementExtractor(PipelineTuning())
    types = {candidate.type for candidate in extractor.extract(_skeleton(drop=(JointName.HEAD,)))}
    assert MeasurementType.HEIGHT not in types
    assert MeasurementType.SHOULDER_WIDTH in types


def test_low_confidence_joints_are_ignored() -> None:
    extractor = MeasurementExtractor(PipelineTuning(joint_confidence_threshold=0.5))
    assert extractor.extract(_skeleton(confidence=0.3)) == ()


def test_implausible_values_are_filtered() -> None:
    extractor = MeasurementExtractor(PipelineTuning())
    giant = _skeleton(BodyProfile(height_cm=320.0))
    types = {candidate.type for candidate in extractor.extract(giant)}
    assert MeasurementType.HEIGHT not in types
    assert MeasurementType.SHOULDER_WIDTH in types
