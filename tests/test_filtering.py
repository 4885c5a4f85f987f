from __future__ import annotations

import numpy as np
import pytest

from anthro_tracker.measurement.config import PipelineTuning
from anthro_tracker.measurement.filtering import TemporalFilter, robust_outlier


def _filter(**overrides) -> TemporalFilter:
    return TemporalFilter(PipelineTuning(**overrides))


def test_robust_outlier_uses_spread_floor() -> None:
    window = np.array([170.0, 170.0, 170.0, 170.0])
    # MAD is zero, so the 0.5 cm floor sets the gate at k * 0.5.
    assert not robust_outlier(window, 171.5, k=3.5, min_spread=0.5)
    assert robust_outlier(window, 172.0, k=3.5, min_spread=0.5)


def test_first_sample_seeds_estimate() -> None:
    temporal = _filter()
    result = temporal.update(172.0, 0.9, 0.1)
    assert result.value == pytest.approx(172.0)
    assert result.outlier is False


def test_identical_values_keep_estimate_exact() -> None:
    temporal = _filter()
    for index in range(20):
        result = temporal.update(172.0, 0.95, index * 0.1)
    assert result.value == 172.0


def test_ema_is_confidence_weighted() -> None:
    temporal = _filter(ema_alpha=0.5)
    temporal.update(100.0, 1.0, 0.0)
    result = temporal.update(110.0, 0.5, 0.1)
    assert result.value == pytest.approx(102.5)


def test_outliers_are_rejected_and_traced() -> None:
    temporal = _filter(outlier_min_samples=4)
    for index, value in enumerate([172.0, 172.2, 171.9, 172.1, 172.0]):
        temporal.update(value, 0.95, index * 0.1)
    estimate = temporal.estimate
    window = temporal.window

    result = temporal.update(212.0, 0.95, 1.0)
    assert result.outlier is True
    assert result.value == estimate
    assert temporal.estimate == estimate
    assert temporal.window == window + [212.0]
    assert temporal.trace[-1].outlier is True
    assert temporal.trace[-1].raw == pytest.approx(212.0)


def test_sustained_level_shift_is_eventually_accepted() -> None:
    temporal = _filter(outlier_min_samples=4)
    for index in range(4):
        temporal.update(170.0, 0.95, index * 0.1)

    results = [temporal.update(180.0, 0.95, 1.0 + index * 0.1) for index in range(12)]
    assert [result.outlier for result in results[:4]] == [True] * 4
    assert not any(result.outlier for result in results[4:])
    assert temporal.estimate == pytest.approx(180.0, abs=0.1)


def test_outlier_detection_waits_for_minimum_samples() -> None:
    temporal = _filter(outlier_min_samples=4)
    temporal.update(172.0, 0.95, 0.0)
    assert temporal.update(212.0, 0.95, 0.1).outlier is False


def test_disabled_stages_pass_values_through() -> None:
    temporal = TemporalFilter(PipelineTuning(), enable_smoothing=False, enable_outlier_detection=False)
    for index in range(6):
        temporal.update(172.0, 0.95, index * 0.1)
    result = temporal.update(250.0, 0.95, 1.0)
    assert result.outlier is False
    assert result.value == pytest.approx(250.0)


def test_window_is_bounded_and_reset_clears_state() -> None:
    temporal = _filter(filter_window=3)
    for index in range(5):
        temporal.update(170.0 + index * 0.1, 0.95, float(index))
    assert len(temporal.window) == 3
    temporal.reset()
    assert temporal.estimate is None
    assert temporal.window == []
    assert temporal.trace == []
