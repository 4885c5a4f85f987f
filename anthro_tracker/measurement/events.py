"""Typed publish/subscribe channels for session notifications."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, TypeVar

from anthro_tracker.models import PerformanceProfile, SessionState, ValidatedMeasurement

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StateChange:
    old: SessionState
    new: SessionState
    reason: Optional[str] = None


class Channel(Generic[T]):
    """Fan-out of one event type to subscriber callbacks.

    A subscriber that raises is logged and skipped; delivery to the rest continues.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: T) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r on channel %s raised; continuing.", callback, self.name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


class SessionEvents:
    def __init__(self) -> None:
        self.measurement_validated: Channel[ValidatedMeasurement] = Channel("measurement_validated")
        self.session_state_changed: Channel[StateChange] = Channel("session_state_changed")
        self.profile_changed: Channel[PerformanceProfile] = Channel("profile_changed")


__all__ = ["Channel", "SessionEvents", "StateChange"]
