from __future__ import annotations

from anthro_tracker.config import SessionConfig
from anthro_tracker.measurement.config import PipelineTuning
from anthro_tracker.measurement.events import Channel
from anthro_tracker.measurement.governor import PerformanceGovernor
from anthro_tracker.models import DeviceCapabilities, PerformanceProfile, ThermalState
from anthro_tracker.simulation import StaticMonitor

CAPS = DeviceCapabilities(
    model="bench",
    neural_engine=True,
    accelerated_shaders=True,
    available_memory_gb=8.0,
    processor_cores=8,
    max_frame_rate=60,
)


def _governor(monitor: StaticMonitor, **config) -> PerformanceGovernor:
    return PerformanceGovernor(monitor, SessionConfig(**config), capabilities=CAPS)


def test_nominal_profile_uses_full_budget() -> None:
    governor = _governor(StaticMonitor(capabilities=CAPS), target_frame_rate=30, max_processing_threads=4)
    profile = governor.profile
    assert profile == PerformanceProfile(30, 4, accelerated_inference=True, accelerated_shaders=True)


def test_serious_halves_rate_and_disables_acceleration() -> None:
    monitor = StaticMonitor(capabilities=CAPS)
    governor = _governor(monitor, target_frame_rate=30, max_processing_threads=4)
    monitor.set_thermal("serious")
    profile = governor.at_frame_boundary()
    assert profile.target_frame_rate == 15
    assert profile.max_processing_threads == 2
    assert profile.accelerated_inference is False
    assert governor.thermal_state is ThermalState.SERIOUS


def test_critical_drops_to_floor() -> None:
    monitor = StaticMonitor(thermal=ThermalState.CRITICAL, capabilities=CAPS)
    governor = _governor(monitor, target_frame_rate=30)
    assert governor.profile.target_frame_rate == PipelineTuning().min_sustainable_frame_rate
    assert governor.profile.max_processing_threads == 1


def test_profile_respects_device_limits() -> None:
    caps = DeviceCapabilities(processor_cores=2, max_frame_rate=24)
    governor = PerformanceGovernor(StaticMonitor(capabilities=caps), SessionConfig(target_frame_rate=60), capabilities=caps)
    assert governor.profile.target_frame_rate == 24
    assert governor.profile.max_processing_threads == 2


def test_latency_caps_frame_rate() -> None:
    governor = _governor(StaticMonitor(capabilities=CAPS), target_frame_rate=60)
    governor.observe_latency(0.0625)
    profile = governor.at_frame_boundary()
    assert profile.target_frame_rate == 16


def test_profile_changes_are_published_once() -> None:
    channel: Channel[PerformanceProfile] = Channel("profile_changed")
    received: list[PerformanceProfile] = []
    channel.subscribe(received.append)
    monitor = StaticMonitor(capabilities=CAPS)
    governor = PerformanceGovernor(monitor, SessionConfig(), capabilities=CAPS, channel=channel)
    governor.at_frame_boundary()
    assert received == []
    monitor.set_thermal(ThermalState.SERIOUS)
    governor.at_frame_boundary()
    governor.at_frame_boundary()
    assert len(received) == 1


def test_invalid_thermal_reading_keeps_previous_state() -> None:
    monitor = StaticMonitor(capabilities=CAPS, schedule=["fair", "lava"])
    governor = _governor(monitor)
    assert governor.thermal_state is ThermalState.FAIR
    governor.at_frame_boundary()
    assert governor.thermal_state is ThermalState.FAIR
    assert governor.thermal_read_errors == 1


def test_sustained_critical_overrun_reports_liveness_lost() -> None:
    monitor = StaticMonitor(thermal=ThermalState.CRITICAL, capabilities=CAPS)
    config = SessionConfig(tuning=PipelineTuning(critical_liveness_frames=3, min_sustainable_frame_rate=10))
    governor = PerformanceGovernor(monitor, config, capabilities=CAPS)
    governor.observe_latency(0.5)
    for _ in range(2):
        governor.at_frame_boundary()
    assert not governor.liveness_lost
    governor.at_frame_boundary()
    assert governor.liveness_lost

    monitor.set_thermal(ThermalState.NOMINAL)
    governor.at_frame_boundary()
    assert not governor.liveness_lost
