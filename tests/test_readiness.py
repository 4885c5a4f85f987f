from __future__ import annotations

import pytest

from anthro_tracker.config import DEVICE_TIER_PRESETS, classify_device_tier, recommended_config
from anthro_tracker.measurement.readiness import (
    DeploymentRequirements,
    deployment_readiness_check,
    parse_capabilities,
)
from anthro_tracker.models import DeviceCapabilities, ValidationError


def test_parse_capabilities_accepts_host_keys() -> None:
    caps = parse_capabilities(
        {
            "deviceModel": "phone-x",
            "hasNeuralEngine": True,
            "hasMetalPerformanceShaders": "yes",
            "availableMemory": 6,
            "processorCount": 6,
            "maxFrameRate": 120,
            "batteryLevel": 0.4,
        }
    )
    assert caps.model == "phone-x"
    assert caps.neural_engine is True
    assert caps.accelerated_shaders is True
    assert caps.available_memory_gb == pytest.approx(6.0)
    assert caps.max_frame_rate == 120


def test_parse_capabilities_rejects_bad_values() -> None:
    with pytest.raises(ValidationError):
        parse_capabilities({"processorCount": 0})
    with pytest.raises(ValidationError):
        parse_capabilities({"hasNeuralEngine": "maybe"})
    with pytest.raises(ValidationError):
        parse_capabilities(["not", "a", "mapping"])


@pytest.mark.parametrize(
    ("caps", "tier"),
    [
        (DeviceCapabilities(neural_engine=True, accelerated_shaders=True, available_memory_gb=8, processor_cores=8), "ultra-high"),
        (DeviceCapabilities(neural_engine=True, available_memory_gb=6, processor_cores=6), "high"),
        (DeviceCapabilities(available_memory_gb=4, processor_cores=6), "medium"),
        (DeviceCapabilities(available_memory_gb=2, processor_cores=2), "low"),
    ],
)
def test_classify_device_tier(caps: DeviceCapabilities, tier: str) -> None:
    assert classify_device_tier(caps) == tier


def test_recommended_config_applies_tier_preset() -> None:
    caps = DeviceCapabilities(available_memory_gb=2, processor_cores=2, max_frame_rate=60)
    config = recommended_config(caps)
    preset = DEVICE_TIER_PRESETS["low"]
    assert config.validation_frames == preset.validation_frames
    assert config.measurement_accuracy == pytest.approx(preset.measurement_accuracy)
    assert config.target_frame_rate == 15
    assert config.max_processing_threads == 1


def test_readiness_reports_missing_requirements() -> None:
    report = deployment_readiness_check(DeviceCapabilities(neural_engine=False, available_memory_gb=3.0))
    assert report.ready is False
    assert "neural_engine" in report.missing_required
    assert any(item.startswith("memory") for item in report.missing_required)
    assert report.missing_recommended == ["accelerated_shaders"]
    assert report.to_dict()["tier"] == "low"


def test_readiness_passes_capable_device() -> None:
    caps = {"hasNeuralEngine": True, "acceleratedShaders": True, "availableMemory": 6, "processorCount": 8}
    report = deployment_readiness_check(caps)
    assert report.ready is True
    assert report.missing_required == []
    assert report.missing_recommended == []
    assert report.tier == "ultra-high"


def test_custom_requirements() -> None:
    requirements = DeploymentRequirements(neural_engine=False, min_memory_gb=2.0, accelerated_shaders_recommended=False)
    report = deployment_readiness_check(DeviceCapabilities(available_memory_gb=2.0), requirements)
    assert report.ready is True
    assert report.missing_recommended == []
