"""Device capability parsing and deployment readiness checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from anthro_tracker.config import classify_device_tier
from anthro_tracker.models import DeviceCapabilities, ValidationError, coerce_number

from .config import MEASUREMENT_LOGGER as logger

# Host payloads use platform names; both spellings map onto DeviceCapabilities fields.
_CAPABILITY_ALIASES = {
    "deviceModel": "model",
    "hasNeuralEngine": "neural_engine",
    "hasMetalPerformanceShaders": "accelerated_shaders",
    "acceleratedShaders": "accelerated_shaders",
    "availableMemory": "available_memory_gb",
    "availableMemoryGb": "available_memory_gb",
    "memoryGB": "available_memory_gb",
    "processorCount": "processor_cores",
    "processorCores": "processor_cores",
    "maxFrameRate": "max_frame_rate",
}


def _flag(value: Any, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "0", "false", "no"}:
        return value.strip().lower() in {"1", "true", "yes"}
    raise ValidationError(f"{field_name} must be a boolean; received {value!r}.")


def parse_capabilities(raw: Any) -> DeviceCapabilities:
    """Validate a capability report from the performance monitor."""
    if isinstance(raw, DeviceCapabilities):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Device capabilities must be a mapping; received {type(raw).__name__}.")
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        name = _CAPABILITY_ALIASES.get(str(key), str(key))
        if name == "model":
            values["model"] = str(value)
        elif name in ("neural_engine", "accelerated_shaders"):
            values[name] = _flag(value, field_name=name)
        elif name == "available_memory_gb":
            values[name] = coerce_number(value, field=name, minimum=0.0)
        elif name in ("processor_cores", "max_frame_rate"):
            values[name] = int(coerce_number(value, field=name, minimum=1, allow_float=False))
        elif name == "features":
            values[name] = tuple(str(item) for item in value)
        else:
            logger.debug("Ignoring unknown capability key %r", key)
    return DeviceCapabilities(**values)


@dataclass(frozen=True)
class DeploymentRequirements:
    neural_engine: bool = True
    min_memory_gb: float = 4.0
    accelerated_shaders_recommended: bool = True


DEFAULT_REQUIREMENTS = DeploymentRequirements()


@dataclass(frozen=True)
class ReadinessReport:
    ready: bool
    capabilities: DeviceCapabilities
    tier: str
    missing_required: List[str] = field(default_factory=list)
    missing_recommended: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "tier": self.tier,
            "missing_required": list(self.missing_required),
            "missing_recommended": list(self.missing_recommended),
            "capabilities": self.capabilities.to_dict(),
        }


def deployment_readiness_check(
    capabilities: Any,
    requirements: DeploymentRequirements = DEFAULT_REQUIREMENTS,
) -> ReadinessReport:
    """Report which required and recommended capabilities the device lacks."""
    caps = parse_capabilities(capabilities)
    missing_required: List[str] = []
    missing_recommended: List[str] = []
    if requirements.neural_engine and not caps.neural_engine:
        missing_required.append("neural_engine")
    if caps.available_memory_gb < requirements.min_memory_gb:
        missing_required.append(f"memory>={requirements.min_memory_gb:g}GB")
    if requirements.accelerated_shaders_recommended and not caps.accelerated_shaders:
        missing_recommended.append("accelerated_shaders")

    report = ReadinessReport(
        ready=not missing_required,
        capabilities=caps,
        tier=classify_device_tier(caps),
        missing_required=missing_required,
        missing_recommended=missing_recommended,
    )
    if not report.ready:
        logger.warning("Device %s is not deployment-ready: missing %s", caps.model, ", ".join(missing_required))
    return report


__all__ = [
    "DEFAULT_REQUIREMENTS",
    "DeploymentRequirements",
    "ReadinessReport",
    "deployment_readiness_check",
    "parse_capabilities",
]
