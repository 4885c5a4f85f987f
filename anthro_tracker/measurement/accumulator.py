from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

import numpy as np

from anthro_tracker.config import SessionConfig
from anthro_tracker.models import MeasurementCandidate, MeasurementSnapshot, MeasurementType, ValidatedMeasurement

from .filtering import TemporalFilter
from .validation import quality_tier

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
OUTLIER = "outlier"
DISQUALIFIED = "disqualified"
STALE = "stale"
IGNORED = "ignored"


@dataclass(frozen=True)
class AccumulatorUpdate:
    status: str
    snapshot: MeasurementSnapshot
    validated: Optional[ValidatedMeasurement] = None


class MeasurementAccumulator:
    """Tracks one measurement type from first candidate to validation.

    Updates are serialised by an internal lock and applied in timestamp order;
    ``snapshot`` can be read from any thread without blocking. With several
    workers a frame that finishes after a newer one loses its candidates as
    stale; each discard is counted and logged at info level.
    """

    def __init__(self, measurement: MeasurementType, config: SessionConfig | None = None) -> None:
        self.measurement = measurement
        self.config = config or SessionConfig()
        self.filter = TemporalFilter(
            self.config.tuning,
            enable_smoothing=self.config.enable_temporal_smoothing,
            enable_outlier_detection=self.config.enable_outlier_detection,
        )
        self._lock = threading.Lock()
        history_size = max(self.config.tuning.filter_window, self.config.validation_frames)
        self._history: Deque[float] = deque(maxlen=history_size)
        self._streak = 0
        self._samples = 0
        self._outliers = 0
        self._stale = 0
        self._last_timestamp: Optional[float] = None
        self._last_confidence = 0.0
        self._validated: Optional[ValidatedMeasurement] = None
        self._snapshot = MeasurementSnapshot(type=measurement)

    @property
    def snapshot(self) -> MeasurementSnapshot:
        return self._snapshot

    @property
    def validated(self) -> Optional[ValidatedMeasurement]:
        return self._validated

    @property
    def is_validated(self) -> bool:
        return self._validated is not None

    @property
    def stale_count(self) -> int:
        return self._stale

    def _window_variance(self) -> Optional[float]:
        needed = self.config.validation_frames
        if len(self._history) < needed:
            return None
        recent = np.asarray(list(self._history)[-needed:], dtype=float)
        return float(np.var(recent))

    def _publish(self, timestamp: Optional[float]) -> MeasurementSnapshot:
        snapshot = MeasurementSnapshot(
            type=self.measurement,
            value=self.filter.estimate,
            confidence=self._last_confidence,
            validated=self._validated is not None,
            streak=self._streak,
            samples=self._samples,
            outliers=self._outliers,
            quality=quality_tier(self._last_confidence),
            timestamp=timestamp,
        )
        self._snapshot = snapshot
        return snapshot

    def submit(self, candidate: MeasurementCandidate) -> AccumulatorUpdate:
        if candidate.type != self.measurement:
            raise ValueError(f"Accumulator for {self.measurement.value} received {candidate.type.value}.")
        with self._lock:
            if self._validated is not None:
                return AccumulatorUpdate(IGNORED, self._snapshot)
            if self._last_timestamp is not None and candidate.timestamp < self._last_timestamp:
                self._stale += 1
                logger.info(
                    "Discarding stale %s candidate at %.6f (last applied %.6f)",
                    self.measurement.value,
                    candidate.timestamp,
                    self._last_timestamp,
                )
                return AccumulatorUpdate(STALE, self._snapshot)
            self._last_timestamp = candidate.timestamp

            result = self.filter.update(candidate.value, candidate.confidence, candidate.timestamp)
            if result.outlier:
                self._outliers += 1
                return AccumulatorUpdate(OUTLIER, self._publish(candidate.timestamp))

            self._samples += 1
            self._last_confidence = candidate.confidence
            if candidate.confidence < self.config.confidence_threshold:
                self._streak = 0
                return AccumulatorUpdate(DISQUALIFIED, self._publish(candidate.timestamp))

            self._streak += 1
            self._history.append(candidate.value)
            validated: Optional[ValidatedMeasurement] = None
            if self._streak >= self.config.validation_frames:
                variance = self._window_variance()
                if variance is not None and variance < self.config.measurement_accuracy and result.value is not None:
                    validated = ValidatedMeasurement(
                        type=self.measurement,
                        value=result.value,
                        confidence=candidate.confidence,
                        timestamp=candidate.timestamp,
                    )
                    self._validated = validated
                    logger.info(
                        "Validated %s = %.2f cm (confidence %.2f, variance %.4f)",
                        self.measurement.value,
                        validated.value,
                        validated.confidence,
                        variance,
                    )
            return AccumulatorUpdate(ACCEPTED, self._publish(candidate.timestamp), validated)

    def reset(self) -> None:
        with self._lock:
            self.filter.reset()
            self._history.clear()
            self._streak = 0
            self._samples = 0
            self._outliers = 0
            self._stale = 0
            self._last_timestamp = None
            self._last_confidence = 0.0
            self._validated = None
            self._snapshot = MeasurementSnapshot(type=self.measurement)


__all__ = [
    "ACCEPTED",
    "AccumulatorUpdate",
    "DISQUALIFIED",
    "IGNORED",
    "MeasurementAccumulator",
    "OUTLIER",
    "STALE",
]
