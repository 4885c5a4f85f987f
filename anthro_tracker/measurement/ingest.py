from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from anthro_tracker.models import (
    Frame,
    JointName,
    JointSample,
    JointSnapshot,
    MalformedFrameError,
    MotionSample,
    TrackingLost,
    ValidationError,
)

from .config import PipelineTuning

logger = logging.getLogger(__name__)

# Stamps never repeat; successive frames are at least this far apart.
MIN_FRAME_SPACING_S = 1e-6


@dataclass
class IngestStats:
    frames: int = 0
    malformed: int = 0
    clock_stamped: int = 0


def _parse_joint(key: Any, value: Any) -> JointSample:
    if isinstance(value, JointSample):
        if key is not None and JointName.parse(key) != value.joint:
            raise ValidationError(f"Joint key {key!r} does not match sample joint {value.joint.value!r}.")
        return value
    joint = JointName.parse(key)
    if isinstance(value, Mapping):
        position = value.get("position")
        if position is None:
            position = (value.get("x"), value.get("y"), value.get("z"))
        return JointSample(
            joint=joint,
            position=position,
            confidence=value.get("confidence", 1.0),
            timestamp=value.get("timestamp", 0.0),
        )
    if isinstance(value, (list, tuple)):
        if len(value) == 4 and not isinstance(value[0], (list, tuple)):
            x, y, z, confidence = value
            return JointSample(joint=joint, position=(x, y, z), confidence=confidence)
        if len(value) in (2, 3) and isinstance(value[0], (list, tuple)):
            timestamp = value[2] if len(value) == 3 else 0.0
            return JointSample(joint=joint, position=value[0], confidence=value[1], timestamp=timestamp)
    raise ValidationError(f"Unsupported joint payload for {key!r}: {value!r}.")


def parse_joints(snapshot: JointSnapshot) -> Dict[JointName, JointSample]:
    """Turn a host snapshot into a joint mapping, raising MalformedFrameError on bad input."""
    joints: Dict[JointName, JointSample] = {}
    try:
        if isinstance(snapshot, Mapping):
            items = [(key, value) for key, value in snapshot.items()]
        elif isinstance(snapshot, (list, tuple)):
            items = [(None, value) for value in snapshot]
        else:
            raise ValidationError(f"Unsupported snapshot type {type(snapshot).__name__}.")
        for key, value in items:
            if key is None and not isinstance(value, JointSample):
                raise ValidationError("Sequence snapshots must contain JointSample items.")
            sample = _parse_joint(key, value)
            if sample.joint in joints:
                raise ValidationError(f"Duplicate joint {sample.joint.value!r} in snapshot.")
            joints[sample.joint] = sample
    except (ValidationError, TypeError, ValueError) as exc:
        raise MalformedFrameError(str(exc)) from exc
    return joints


def parse_motion(raw: Any) -> Optional[MotionSample]:
    if raw is None or isinstance(raw, MotionSample):
        return raw
    if isinstance(raw, Mapping):
        try:
            return MotionSample(
                attitude=raw.get("attitude", (0.0, 0.0, 0.0)),
                acceleration=raw.get("acceleration", (0.0, 0.0, 0.0)),
                timestamp=raw.get("timestamp", 0.0),
            )
        except (ValidationError, TypeError, ValueError) as exc:
            raise MalformedFrameError(f"Invalid motion sample: {exc}") from exc
    raise MalformedFrameError(f"Unsupported motion payload {raw!r}.")


class FrameIngestAdapter:
    """Normalises raw joint snapshots into monotonic, validated frames."""

    def __init__(
        self,
        tuning: PipelineTuning | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tuning = tuning or PipelineTuning.from_env()
        self._clock = clock
        self._lock = threading.Lock()
        self._sequence = 0
        self._last_timestamp: Optional[float] = None
        self.stats = IngestStats()

    def normalize(self, snapshot: JointSnapshot, motion: Any = None) -> Frame:
        try:
            joints = parse_joints(snapshot)
            motion_sample = parse_motion(motion)
            if len(joints) < self.tuning.min_joint_count:
                raise MalformedFrameError(
                    f"Snapshot has {len(joints)} joints; at least {self.tuning.min_joint_count} are required."
                )
        except MalformedFrameError as exc:
            with self._lock:
                self.stats.malformed += 1
            logger.debug("Rejected snapshot: %s", exc)
            raise

        host_stamp = max((sample.timestamp for sample in joints.values()), default=0.0)
        with self._lock:
            if host_stamp > 0:
                timestamp = host_stamp
            else:
                timestamp = float(self._clock())
                self.stats.clock_stamped += 1
            if self._last_timestamp is not None and timestamp < self._last_timestamp + MIN_FRAME_SPACING_S:
                timestamp = self._last_timestamp + MIN_FRAME_SPACING_S
            self._last_timestamp = timestamp
            self._sequence += 1
            self.stats.frames += 1
            sequence = self._sequence
        return Frame(sequence=sequence, timestamp=timestamp, joints=joints, motion=motion_sample)

    def reset(self) -> None:
        with self._lock:
            self._sequence = 0
            self._last_timestamp = None
            self.stats = IngestStats()


def frame_from_record(
    record: Mapping[str, Any],
) -> Union[TrackingLost, Tuple[Dict[JointName, JointSample], Optional[MotionSample]]]:
    """Parse one JSONL replay record.

    ``{"tracking_lost": true}`` yields a TrackingLost marker; otherwise the record
    must hold ``joints`` (name -> {position, confidence}) and may hold ``motion``
    and a record-level ``timestamp`` applied to joints without their own.
    """
    if not isinstance(record, Mapping):
        raise MalformedFrameError(f"Record must be an object; received {type(record).__name__}.")
    timestamp = record.get("timestamp")
    if record.get("tracking_lost"):
        return TrackingLost(timestamp=float(timestamp) if timestamp is not None else None)
    raw_joints = record.get("joints")
    if not isinstance(raw_joints, Mapping):
        raise MalformedFrameError("Record is missing a 'joints' object.")
    if timestamp is not None:
        raw_joints = {
            key: ({**value, "timestamp": value.get("timestamp", timestamp)} if isinstance(value, Mapping) else value)
            for key, value in raw_joints.items()
        }
    return parse_joints(raw_joints), parse_motion(record.get("motion"))


def frame_to_record(
    joints: Mapping[JointName, JointSample],
    motion: Optional[MotionSample] = None,
    timestamp: Optional[float] = None,
) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "joints": {
            name.value: {"position": list(sample.position), "confidence": sample.confidence}
            for name, sample in joints.items()
        }
    }
    if timestamp is not None:
        record["timestamp"] = timestamp
    if motion is not None:
        record["motion"] = {"attitude": list(motion.attitude), "acceleration": list(motion.acceleration)}
    return record


__all__ = [
    "FrameIngestAdapter",
    "IngestStats",
    "frame_from_record",
    "frame_to_record",
    "parse_joints",
    "parse_motion",
]
