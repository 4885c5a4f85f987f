"""Streaming measurement pipeline.

Submodules are **lazy-imported** so lightweight tooling (config display,
readiness checks) does not pay for scipy and the worker machinery.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "MEASUREMENT_LOGGER",
    "PipelineTuning",
    "validate_config_values",
    "FrameIngestAdapter",
    "frame_from_record",
    "LandmarkRefiner",
    "MeasurementExtractor",
    "TemporalFilter",
    "MeasurementAccumulator",
    "PerformanceGovernor",
    "deployment_readiness_check",
    "parse_capabilities",
    "proportion_warnings",
    "quality_tier",
    "MeasurementSession",
    "FrameOutcome",
    "SessionSnapshot",
]

_EXPORTS = {
    "MEASUREMENT_LOGGER": "config",
    "PipelineTuning": "config",
    "validate_config_values": "config",
    "FrameIngestAdapter": "ingest",
    "frame_from_record": "ingest",
    "LandmarkRefiner": "refinement",
    "MeasurementExtractor": "extraction",
    "TemporalFilter": "filtering",
    "MeasurementAccumulator": "accumulator",
    "PerformanceGovernor": "governor",
    "deployment_readiness_check": "readiness",
    "parse_capabilities": "readiness",
    "proportion_warnings": "validation",
    "quality_tier": "validation",
    "MeasurementSession": "session",
    "FrameOutcome": "session",
    "SessionSnapshot": "session",
}


def __getattr__(name: str) -> Any:  # pragma: no cover - exercised indirectly
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    module = import_module(f"{__name__}.{module_name}")
    return getattr(module, name)


def __dir__() -> list[str]:  # pragma: no cover - trivial
    return sorted(set(list(globals()) + __all__))
