"""Deterministic synthetic capabilities for demos, replays and tests.

The generators build an upright skeleton from a small set of body dimensions,
add seeded Gaussian jitter, and can inject gross outliers or tracking dropouts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np

from .models import (
    DeviceCapabilities,
    JointName,
    JointSample,
    MotionSample,
    ThermalState,
    TrackingLost,
)


@dataclass(frozen=True)
class BodyProfile:
    """Body dimensions in centimetres."""

    height_cm: float = 172.0
    shoulder_width_cm: float = 42.0
    hip_width_cm: float = 22.0
    upper_arm_ratio: float = 0.186
    forearm_ratio: float = 0.146
    hip_height_ratio: float = 0.53
    shoulder_height_ratio: float = 0.82


def build_skeleton(
    body: BodyProfile | None = None,
    *,
    confidence: float = 0.95,
    timestamp: float = 0.0,
    noise_cm: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> Dict[JointName, JointSample]:
    """Upright skeleton with ankles on the floor and the head at ``height_cm``."""
    body = body or BodyProfile()
    h = body.height_cm / 100.0
    half_shoulder = body.shoulder_width_cm / 200.0
    half_hip = body.hip_width_cm / 200.0
    shoulder_y = h * body.shoulder_height_ratio
    elbow_y = shoulder_y - h * body.upper_arm_ratio
    wrist_y = elbow_y - h * body.forearm_ratio
    hip_y = h * body.hip_height_ratio
    knee_y = hip_y / 2.0

    positions: Dict[JointName, Tuple[float, float, float]] = {
        JointName.HEAD: (0.0, h, 0.0),
        JointName.NECK: (0.0, h * 0.87, 0.0),
        JointName.SPINE_CHEST: (0.0, h * 0.72, 0.0),
        JointName.ROOT: (0.0, hip_y, 0.0),
        JointName.LEFT_SHOULDER: (-half_shoulder, shoulder_y, 0.0),
        JointName.RIGHT_SHOULDER: (half_shoulder, shoulder_y, 0.0),
        JointName.LEFT_ELBOW: (-half_shoulder, elbow_y, 0.0),
        JointName.RIGHT_ELBOW: (half_shoulder, elbow_y, 0.0),
        JointName.LEFT_WRIST: (-half_shoulder, wrist_y, 0.0),
        JointName.RIGHT_WRIST: (half_shoulder, wrist_y, 0.0),
        JointName.LEFT_HIP: (-half_hip, hip_y, 0.0),
        JointName.RIGHT_HIP: (half_hip, hip_y, 0.0),
        JointName.LEFT_KNEE: (-half_hip, knee_y, 0.0),
        JointName.RIGHT_KNEE: (half_hip, knee_y, 0.0),
        JointName.LEFT_ANKLE: (-half_hip, 0.0, 0.0),
        JointName.RIGHT_ANKLE: (half_hip, 0.0, 0.0),
    }
    if noise_cm > 0:
        rng = rng or np.random.default_rng(0)
        sigma = noise_cm / 100.0
        positions = {
            name: tuple(float(v) for v in np.asarray(pos) + rng.normal(0.0, sigma, size=3))  # type: ignore[misc]
            for name, pos in positions.items()
        }
    return {
        name: JointSample(joint=name, position=pos, confidence=confidence, timestamp=timestamp)
        for name, pos in positions.items()
    }


TrackingItem = Union[Dict[JointName, JointSample], TrackingLost]


@dataclass
class SyntheticTracking:
    """Finite, non-restartable stream of skeleton snapshots."""

    frames: int = 60
    fps: float = 30.0
    body: BodyProfile = field(default_factory=BodyProfile)
    confidence: float = 0.95
    noise_cm: float = 0.3
    seed: int = 7
    outlier_frames: Set[int] = field(default_factory=set)
    outlier_offset_cm: float = 40.0
    lost_frames: Set[int] = field(default_factory=set)
    low_confidence_frames: Set[int] = field(default_factory=set)

    def __post_init__(self) -> None:
        self._consumed = False

    def __iter__(self) -> Iterator[TrackingItem]:
        if self._consumed:
            raise RuntimeError("SyntheticTracking streams cannot be restarted.")
        self._consumed = True
        return self._generate()

    def _generate(self) -> Iterator[TrackingItem]:
        rng = np.random.default_rng(self.seed)
        for index in range(self.frames):
            timestamp = (index + 1) / self.fps
            if index in self.lost_frames:
                yield TrackingLost(timestamp=timestamp)
                continue
            body = self.body
            if index in self.outlier_frames:
                body = BodyProfile(
                    height_cm=self.body.height_cm + self.outlier_offset_cm,
                    shoulder_width_cm=self.body.shoulder_width_cm,
                    hip_width_cm=self.body.hip_width_cm,
                )
            confidence = 0.4 if index in self.low_confidence_frames else self.confidence
            yield build_skeleton(body, confidence=confidence, timestamp=timestamp, noise_cm=self.noise_cm, rng=rng)


@dataclass
class SyntheticMotion:
    """Endless attitude stream with a fixed device tilt (degrees)."""

    tilt_deg: float = 5.0

    def __iter__(self) -> Iterator[MotionSample]:
        pitch = float(np.radians(self.tilt_deg))
        while True:
            yield MotionSample(attitude=(0.0, pitch, 0.0), acceleration=(0.0, -1.0, 0.0))


class IdentityInference:
    """Inference stand-in that returns the joints it was given."""

    def __init__(self) -> None:
        self.calls = 0

    def refine(self, joints: Mapping[JointName, JointSample], *, accelerated: bool) -> Dict[JointName, JointSample]:
        self.calls += 1
        return dict(joints)


class FailingInference:
    """Inference stand-in that always raises."""

    def refine(self, joints: Mapping[JointName, JointSample], *, accelerated: bool) -> Dict[JointName, JointSample]:
        raise RuntimeError("model unavailable")


class StaticMonitor:
    """Performance monitor whose thermal state can be scripted."""

    def __init__(
        self,
        thermal: Union[ThermalState, str, int] = ThermalState.NOMINAL,
        capabilities: DeviceCapabilities | None = None,
        schedule: Sequence[Union[ThermalState, str, int]] = (),
    ) -> None:
        self.thermal = thermal
        self._capabilities = capabilities or DeviceCapabilities(
            model="synthetic",
            neural_engine=True,
            accelerated_shaders=True,
            available_memory_gb=6.0,
            processor_cores=8,
            max_frame_rate=60,
        )
        self._schedule: List[Union[ThermalState, str, int]] = list(schedule)

    def set_thermal(self, thermal: Union[ThermalState, str, int]) -> None:
        self.thermal = thermal

    def thermal_state(self) -> Union[ThermalState, str, int]:
        if self._schedule:
            self.thermal = self._schedule.pop(0)
        return self.thermal

    def capabilities(self) -> DeviceCapabilities:
        return self._capabilities


__all__ = [
    "BodyProfile",
    "FailingInference",
    "IdentityInference",
    "StaticMonitor",
    "SyntheticMotion",
    "SyntheticTracking",
    "build_skeleton",
]
