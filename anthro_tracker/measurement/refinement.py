from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import numpy as np

from anthro_tracker.models import (
    Frame,
    JointName,
    JointSample,
    MLInferenceCapability,
    MLInferenceUnavailable,
    PerformanceProfile,
    RefinedSkeleton,
)

from .config import PipelineTuning

logger = logging.getLogger(__name__)


@dataclass
class RefinementStats:
    """Simple counters to help debug refinement behavior."""

    calls: int = 0
    refined: int = 0
    timeouts: int = 0
    failures: int = 0
    fallbacks: int = 0
    passthrough: int = 0
    unavailable: int = 0


def _normalize_result(result: Any) -> Dict[JointName, JointSample]:
    if isinstance(result, Mapping):
        items = list(result.values())
    elif result is None:
        raise TypeError("inference returned no joints")
    else:
        items = list(result)
    joints: Dict[JointName, JointSample] = {}
    for item in items:
        if not isinstance(item, JointSample):
            raise TypeError(f"inference returned {type(item).__name__}, expected JointSample")
        joints[item.joint] = item
    return joints


def skeleton_confidence(joints: Mapping[JointName, JointSample]) -> float:
    if not joints:
        return 0.0
    return float(np.mean([sample.confidence for sample in joints.values()]))


class LandmarkRefiner:
    """Runs external inference over raw joints with a bounded time and retry budget."""

    def __init__(
        self,
        inference: Optional[MLInferenceCapability] = None,
        tuning: PipelineTuning | None = None,
        max_workers: int = 4,
    ) -> None:
        self.inference = inference
        self.tuning = tuning or PipelineTuning.from_env()
        self.stats = RefinementStats()
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        if inference is not None:
            self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="anthro-inference")

    def _count(self, name: str) -> None:
        with self._lock:
            setattr(self.stats, name, getattr(self.stats, name) + 1)

    def _call_inference(self, frame: Frame, accelerated: bool) -> Optional[Dict[JointName, JointSample]]:
        executor = self._executor
        attempts = self.tuning.max_inference_retries + 1
        for attempt in range(1, attempts + 1):
            self._count("calls")
            try:
                if executor is None:
                    raise RuntimeError("inference executor is closed")
                future = executor.submit(self.inference.refine, dict(frame.joints), accelerated=accelerated)
            except RuntimeError as exc:
                # Executor already shut down (session stopping).
                logger.debug("Inference executor unavailable: %s", exc)
                self._count("failures")
                return None
            try:
                result = future.result(timeout=self.tuning.inference_timeout_s)
                return _normalize_result(result)
            except FutureTimeoutError:
                future.cancel()
                self._count("timeouts")
                logger.warning(
                    "Inference timed out for frame %s (attempt %s/%s)", frame.sequence, attempt, attempts
                )
            except Exception as exc:
                self._count("failures")
                logger.warning(
                    "Inference failed for frame %s (attempt %s/%s): %s", frame.sequence, attempt, attempts, exc
                )
        return None

    def _usable(self, joints: Mapping[JointName, JointSample]) -> int:
        threshold = self.tuning.joint_confidence_threshold
        return sum(1 for sample in joints.values() if sample.confidence >= threshold)

    def _fallback(self, frame: Frame) -> Dict[JointName, JointSample]:
        penalty = self.tuning.fallback_confidence_penalty
        self._count("fallbacks")
        return {name: sample.with_confidence(sample.confidence * penalty) for name, sample in frame.joints.items()}

    def refine(self, frame: Frame, profile: PerformanceProfile) -> RefinedSkeleton:
        refined_flag = False
        if self.inference is None:
            joints: Dict[JointName, JointSample] = dict(frame.joints)
            self._count("passthrough")
        else:
            result = self._call_inference(frame, profile.accelerated_inference)
            if result is None:
                joints = self._fallback(frame)
            else:
                joints = {**frame.joints, **result}
                refined_usable = self._usable(joints)
                if refined_usable >= self.tuning.min_joint_count:
                    refined_flag = True
                    self._count("refined")
                else:
                    logger.warning(
                        "Inference for frame %s left %s usable joints; using raw joints",
                        frame.sequence,
                        refined_usable,
                    )
                    joints = self._fallback(frame)

        usable = self._usable(joints)
        if usable < self.tuning.min_joint_count:
            self._count("unavailable")
            raise MLInferenceUnavailable(
                f"Frame {frame.sequence} has {usable} usable joints after refinement; "
                f"{self.tuning.min_joint_count} required."
            )
        return RefinedSkeleton(
            joints=joints,
            confidence=skeleton_confidence(joints),
            timestamp=frame.timestamp,
            refined=refined_flag,
        )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


__all__ = ["LandmarkRefiner", "RefinementStats", "skeleton_confidence"]
