from __future__ import annotations

import pytest

from anthro_tracker.measurement.validation import is_plausible, proportion_warnings, quality_tier
from anthro_tracker.models import MeasurementType


@pytest.mark.parametrize(
    ("confidence", "tier"),
    [(0.99, "excellent"), (0.95, "excellent"), (0.9, "good"), (0.8, "fair"), (0.5, "poor")],
)
def test_quality_tier(confidence: float, tier: str) -> None:
    assert quality_tier(confidence) == tier


def test_plausibility_bounds_are_inclusive() -> None:
    assert is_plausible(MeasurementType.HEIGHT, 100.0)
    assert is_plausible(MeasurementType.HEIGHT, 250.0)
    assert not is_plausible(MeasurementType.HEIGHT, 99.9)
    assert not is_plausible(MeasurementType.SHOULDER_WIDTH, 80.0)


def test_proportion_warnings_for_consistent_body() -> None:
    values = {
        MeasurementType.HEIGHT: 172.0,
        MeasurementType.SHOULDER_WIDTH: 42.0,
        MeasurementType.CHEST_GIRTH: 95.0,
        MeasurementType.WAIST_GIRTH: 80.0,
        MeasurementType.HIP_GIRTH: 96.0,
    }
    assert proportion_warnings(values) == []


def test_proportion_warnings_flag_inconsistencies() -> None:
    values = {
        MeasurementType.HEIGHT: 172.0,
        MeasurementType.SHOULDER_WIDTH: 30.0,
        MeasurementType.CHEST_GIRTH: 80.0,
        MeasurementType.WAIST_GIRTH: 90.0,
        MeasurementType.HIP_GIRTH: 85.0,
    }
    warnings = proportion_warnings(values)
    assert any("Waist girth" in message for message in warnings)
    assert any("Hip girth" in message for message in warnings)
    assert any("Shoulder/height" in message for message in warnings)
    assert any("Height/shoulder" in message for message in warnings)


def test_proportion_warnings_ignore_missing_values() -> None:
    assert proportion_warnings({MeasurementType.HEIGHT: 172.0}) == []
