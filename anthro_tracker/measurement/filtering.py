"""Temporal smoothing and outlier rejection for per-type measurement streams.

A robust median/MAD gate keeps tracking glitches out of the estimate, and a
confidence-weighted exponential moving average smooths what remains.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

import numpy as np
from scipy.stats import median_abs_deviation

from .config import PipelineTuning


@dataclass(frozen=True)
class FilterResult:
    value: Optional[float]
    confidence: float
    outlier: bool
    timestamp: float


@dataclass(frozen=True)
class FilterTraceEntry:
    timestamp: float
    raw: float
    smoothed: Optional[float]
    confidence: float
    outlier: bool


def robust_outlier(
    window: np.ndarray,
    value: float,
    *,
    k: float,
    min_spread: float,
) -> bool:
    """True when ``value`` lies more than ``k`` robust spreads from the window median."""
    median = float(np.median(window))
    mad = float(median_abs_deviation(window, scale=1.0))
    spread = max(mad, min_spread)
    return abs(float(value) - median) > k * spread


class TemporalFilter:
    """Windowed outlier gate plus EMA smoother for one measurement type.

    The window holds the most recent raw values, flagged or not.

    Not thread-safe; the owning accumulator serialises calls.
    """

    def __init__(
        self,
        tuning: PipelineTuning | None = None,
        *,
        enable_smoothing: bool = True,
        enable_outlier_detection: bool = True,
    ) -> None:
        self.tuning = tuning or PipelineTuning.from_env()
        self.enable_smoothing = enable_smoothing
        self.enable_outlier_detection = enable_outlier_detection
        self._window: Deque[float] = deque(maxlen=max(1, self.tuning.filter_window))
        self._trace: Deque[FilterTraceEntry] = deque(maxlen=max(1, self.tuning.trace_size))
        self._estimate: Optional[float] = None

    @property
    def estimate(self) -> Optional[float]:
        return self._estimate

    @property
    def window(self) -> List[float]:
        return list(self._window)

    @property
    def trace(self) -> List[FilterTraceEntry]:
        return list(self._trace)

    def is_outlier(self, value: float) -> bool:
        if not self.enable_outlier_detection:
            return False
        if len(self._window) < self.tuning.outlier_min_samples:
            return False
        return robust_outlier(
            np.asarray(self._window, dtype=float),
            value,
            k=self.tuning.outlier_k,
            min_spread=self.tuning.outlier_min_spread,
        )

    def update(self, value: float, confidence: float, timestamp: float) -> FilterResult:
        value = float(value)
        outlier = self.is_outlier(value)
        # Flagged values enter the window but never move the estimate.
        self._window.append(value)
        if outlier:
            self._trace.append(FilterTraceEntry(timestamp, value, self._estimate, confidence, True))
            return FilterResult(value=self._estimate, confidence=confidence, outlier=True, timestamp=timestamp)

        if not self.enable_smoothing or self._estimate is None:
            self._estimate = value
        else:
            alpha = self.tuning.ema_alpha * confidence
            self._estimate = self._estimate + alpha * (value - self._estimate)
        self._trace.append(FilterTraceEntry(timestamp, value, self._estimate, confidence, False))
        return FilterResult(value=self._estimate, confidence=confidence, outlier=False, timestamp=timestamp)

    def reset(self) -> None:
        self._window.clear()
        self._trace.clear()
        self._estimate = None


__all__ = ["FilterResult", "FilterTraceEntry", "TemporalFilter", "robust_outlier"]
