"""anthro_tracker package."""

from importlib import metadata
from typing import Any

try:
    __version__ = metadata.version("anthro-tracker")
except metadata.PackageNotFoundError:  # pragma: no cover - fallback for local edits
    __version__ = "0.0.0"

__all__ = ["app", "__version__", "measurement", "MeasurementSession", "SessionConfig"]


def __getattr__(name: str) -> Any:  # pragma: no cover - exercised indirectly
    if name == "app":
        from .cli import app

        return app
    if name == "measurement":
        from . import measurement

        return measurement
    if name == "MeasurementSession":
        from .measurement.session import MeasurementSession

        return MeasurementSession
    if name == "SessionConfig":
        from .config import SessionConfig

        return SessionConfig
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
