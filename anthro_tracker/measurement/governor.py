from __future__ import annotations

import logging
import math
import threading
from typing import Optional

from anthro_tracker.config import SessionConfig
from anthro_tracker.models import (
    DeviceCapabilities,
    PerformanceMonitor,
    PerformanceProfile,
    ThermalState,
)

from .events import Channel
from .readiness import parse_capabilities

logger = logging.getLogger(__name__)


class PerformanceGovernor:
    """Maps thermal state and observed latency onto a PerformanceProfile.

    A new profile is only computed in ``at_frame_boundary``; every other reader
    sees the last swapped-in profile.
    """

    def __init__(
        self,
        monitor: Optional[PerformanceMonitor] = None,
        base_config: SessionConfig | None = None,
        *,
        capabilities: Optional[DeviceCapabilities] = None,
        channel: Optional[Channel[PerformanceProfile]] = None,
    ) -> None:
        self.monitor = monitor
        self.config = base_config or SessionConfig()
        self.tuning = self.config.tuning
        self.channel = channel
        self._lock = threading.Lock()
        self.capabilities = capabilities or self._read_capabilities()
        self._thermal = ThermalState.NOMINAL
        self._latency_ema: Optional[float] = None
        self._critical_overruns = 0
        self._thermal_read_errors = 0
        self._thermal = self._read_thermal()
        self._profile = self.compute_profile(self._thermal, None)

    def _read_capabilities(self) -> DeviceCapabilities:
        if self.monitor is None:
            return DeviceCapabilities()
        try:
            return parse_capabilities(self.monitor.capabilities())
        except Exception as exc:
            logger.warning("Could not read device capabilities (%s); using defaults.", exc)
            return DeviceCapabilities()

    def _read_thermal(self) -> ThermalState:
        if self.monitor is None:
            return self._thermal
        try:
            return ThermalState.parse(self.monitor.thermal_state())
        except Exception as exc:
            self._thermal_read_errors += 1
            logger.warning("Ignoring unreadable thermal state (%s); keeping %s.", exc, self._thermal.value)
            return self._thermal

    @property
    def profile(self) -> PerformanceProfile:
        return self._profile

    @property
    def thermal_state(self) -> ThermalState:
        return self._thermal

    @property
    def latency_ema(self) -> Optional[float]:
        return self._latency_ema

    @property
    def liveness_lost(self) -> bool:
        return self._critical_overruns >= self.tuning.critical_liveness_frames

    @property
    def thermal_read_errors(self) -> int:
        return self._thermal_read_errors

    def observe_latency(self, seconds: float) -> None:
        if seconds < 0 or not math.isfinite(seconds):
            return
        alpha = self.tuning.latency_ema_alpha
        with self._lock:
            if self._latency_ema is None:
                self._latency_ema = float(seconds)
            else:
                self._latency_ema = self._latency_ema + alpha * (float(seconds) - self._latency_ema)

    def compute_profile(self, thermal: ThermalState, latency_ema: Optional[float]) -> PerformanceProfile:
        caps = self.capabilities
        max_threads = max(1, min(self.config.max_processing_threads, caps.processor_cores))
        target = max(1, min(self.config.target_frame_rate, caps.max_frame_rate))
        floor_rate = min(self.tuning.min_sustainable_frame_rate, target)

        if thermal in (ThermalState.NOMINAL, ThermalState.FAIR):
            rate, threads = target, max_threads
            accelerated, shaders = caps.neural_engine, caps.accelerated_shaders
        elif thermal is ThermalState.SERIOUS:
            rate = max(floor_rate, target // 2)
            threads = min(self.tuning.serious_max_threads, max_threads)
            accelerated = shaders = False
        else:
            rate, threads = floor_rate, 1
            accelerated = shaders = False

        if latency_ema is not None and latency_ema > 0:
            cap = int(math.floor(1.0 / latency_ema))
            rate = min(rate, max(cap, floor_rate))

        return PerformanceProfile(
            target_frame_rate=max(1, rate),
            max_processing_threads=max(1, threads),
            accelerated_inference=accelerated,
            accelerated_shaders=shaders,
        )

    def at_frame_boundary(self) -> PerformanceProfile:
        with self._lock:
            previous_thermal = self._thermal
            self._thermal = self._read_thermal()
            latency = self._latency_ema
            budget = 1.0 / max(1, self.tuning.min_sustainable_frame_rate)
            if self._thermal is ThermalState.CRITICAL and latency is not None and latency > budget:
                self._critical_overruns += 1
            else:
                self._critical_overruns = 0
            profile = self.compute_profile(self._thermal, latency)
            changed = profile != self._profile
            self._profile = profile

        if self._thermal is not previous_thermal:
            logger.info("Thermal state %s -> %s", previous_thermal.value, self._thermal.value)
        if changed:
            logger.info(
                "Performance profile -> %s fps, %s threads, accelerated=%s",
                profile.target_frame_rate,
                profile.max_processing_threads,
                profile.accelerated_inference,
            )
            if self.channel is not None:
                self.channel.publish(profile)
        return profile


__all__ = ["PerformanceGovernor"]
