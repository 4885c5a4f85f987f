from __future__ import annotations

import json
import math
import tempfile
from dataclasses import asdict, is_dataclass
from enum import Enum
from importlib import metadata
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .measurement.filtering import FilterTraceEntry
from .measurement.session import SessionSnapshot
from .models import MeasurementType

SNAPSHOT_COLUMNS = [
    "measurement",
    "value_cm",
    "confidence",
    "quality",
    "validated",
    "validated_value_cm",
    "streak",
    "samples",
    "outliers",
    "timestamp",
]


def _safe_float(value: Any) -> Optional[float]:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num):
        return None
    return float(num)


def _json_safe(value: Any) -> Any:
    if value is None:
        return None

    if isinstance(value, Enum):
        return _json_safe(value.value)

    if isinstance(value, (str, bool, int)):
        return value

    if isinstance(value, float):
        return value if math.isfinite(value) else None

    if isinstance(value, Path):
        return str(value)

    if isinstance(value, np.generic):
        return _json_safe(value.item())

    if isinstance(value, pd.DataFrame):
        records = value.to_dict(orient="records")
        return [_json_safe(rec) for rec in records]

    if isinstance(value, np.ndarray):
        return _json_safe(value.tolist())

    if isinstance(value, Mapping):
        return {str(_json_safe(k)): _json_safe(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]

    if is_dataclass(value) and not isinstance(value, type):
        return _json_safe(asdict(value))

    return str(value)


def snapshot_to_dataframe(snapshot: SessionSnapshot) -> pd.DataFrame:
    """One row per measurement type, in declaration order."""
    rows = []
    for measurement in MeasurementType:
        current = snapshot.measurements.get(measurement)
        validated = snapshot.validated.get(measurement)
        if current is None and validated is None:
            continue
        rows.append(
            {
                "measurement": measurement.value,
                "value_cm": _safe_float(current.value) if current else None,
                "confidence": current.confidence if current else None,
                "quality": current.quality if current else None,
                "validated": validated is not None,
                "validated_value_cm": validated.value if validated else None,
                "streak": current.streak if current else 0,
                "samples": current.samples if current else 0,
                "outliers": current.outliers if current else 0,
                "timestamp": current.timestamp if current else None,
            }
        )
    return pd.DataFrame(rows, columns=SNAPSHOT_COLUMNS)


def trace_to_dataframe(trace: Iterable[FilterTraceEntry]) -> pd.DataFrame:
    records = [asdict(entry) for entry in trace]
    return pd.DataFrame(records, columns=["timestamp", "raw", "smoothed", "confidence", "outlier"])


def export_snapshot(snapshot: SessionSnapshot, destination: Path) -> Path:
    """Write a snapshot as JSON (full payload) or CSV (measurement table)."""
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    suffix = destination.suffix.lower()
    if suffix == ".json":
        payload = _json_safe(snapshot.to_dict())
        destination.write_text(json.dumps(payload, indent=2, allow_nan=False), encoding="utf-8")
    elif suffix == ".csv":
        snapshot_to_dataframe(snapshot).to_csv(destination, index=False)
    else:
        raise ValueError(f"Unsupported export format for {destination}; expected .json or .csv.")
    return destination


def plot_filter_trace(
    trace: Sequence[FilterTraceEntry],
    title: str = "Temporal filter",
    unit: str = "cm",
):
    """Plot raw vs smoothed values, marking rejected outliers."""
    import matplotlib.pyplot as plt

    df = trace_to_dataframe(trace)
    fig, ax = plt.subplots()
    if not df.empty:
        inliers = df[~df["outlier"]]
        outliers = df[df["outlier"]]
        ax.plot(inliers["timestamp"], inliers["raw"], "o", alpha=0.4, label="raw")
        ax.plot(df["timestamp"], df["smoothed"], "-", linewidth=2, color="#1F3C88", label="smoothed")
        if not outliers.empty:
            ax.plot(outliers["timestamp"], outliers["raw"], "x", color="#C92A2A", markersize=8, label="outlier")
    ax.set_xlabel("Time (s)")
    ax.set_ylabel(f"Value ({unit})")
    ax.set_title(title)
    ax.legend()
    ax.grid(True, alpha=0.3)
    return fig


def _app_version() -> str:
    try:
        return metadata.version("anthro-tracker")
    except metadata.PackageNotFoundError:  # pragma: no cover - local checkout
        return "0.0.0"


def _format_value(value: Optional[float], fmt: str = "{:.1f}") -> str:
    return fmt.format(value) if value is not None and math.isfinite(value) else "n/a"


def write_pdf_report(
    snapshot: SessionSnapshot,
    destination: Path,
    traces: Mapping[MeasurementType, Sequence[FilterTraceEntry]] | None = None,
) -> Path:
    """Render a one-session PDF with the measurement table, warnings and filter plots."""
    import matplotlib.pyplot as plt

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    styles = getSampleStyleSheet()
    story: list[Any] = []

    story.append(Paragraph("Body Measurement Session", styles["Title"]))
    reason = f" ({snapshot.failure_reason.value})" if snapshot.failure_reason else ""
    story.append(Paragraph(f"State: <b>{snapshot.state.value}</b>{reason}", styles["BodyText"]))
    if snapshot.profile is not None:
        story.append(
            Paragraph(
                f"Profile: {snapshot.profile.target_frame_rate} fps, "
                f"{snapshot.profile.max_processing_threads} threads | "
                f"Thermal: {snapshot.thermal_state.value if snapshot.thermal_state else 'n/a'}",
                styles["BodyText"],
            )
        )
    story.append(Paragraph(f"App v{_app_version()}", styles["BodyText"]))
    story.append(Spacer(1, 0.2 * inch))

    df = snapshot_to_dataframe(snapshot)
    table_data = [["Measurement", "Value (cm)", "Confidence", "Quality", "Validated"]]
    for row in df.itertuples(index=False):
        table_data.append(
            [
                str(row.measurement).replace("_", " ").title(),
                _format_value(_safe_float(row.validated_value_cm) or _safe_float(row.value_cm)),
                _format_value(_safe_float(row.confidence), "{:.2f}"),
                str(row.quality or "n/a"),
                "yes" if row.validated else "no",
            ]
        )
    table = Table(table_data, hAlign="LEFT", colWidths=[1.8 * inch, 1.2 * inch, 1.1 * inch, 1.0 * inch, 0.9 * inch])
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1F3C88")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("ALIGN", (1, 1), (2, -1), "RIGHT"),
                ("BACKGROUND", (0, 1), (-1, -1), colors.whitesmoke),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
            ]
        )
    )
    story.append(table)
    story.append(Spacer(1, 0.3 * inch))

    if snapshot.warnings:
        story.append(Paragraph("Proportion Warnings", styles["Heading2"]))
        for message in snapshot.warnings:
            story.append(Paragraph(message, styles["BodyText"]))
        story.append(Spacer(1, 0.2 * inch))

    with tempfile.TemporaryDirectory() as tmp_dir:
        for measurement, trace in (traces or {}).items():
            if not trace:
                continue
            fig = plot_filter_trace(trace, title=measurement.value.replace("_", " ").title())
            plot_path = Path(tmp_dir) / f"trace_{measurement.value}.png"
            fig.tight_layout()
            fig.savefig(plot_path, dpi=120)
            plt.close(fig)
            story.append(Image(str(plot_path), width=5.5 * inch, height=3.3 * inch))
            story.append(Spacer(1, 0.2 * inch))
        doc = SimpleDocTemplate(str(destination), pagesize=letter)
        doc.build(story)
    return destination


__all__ = [
    "export_snapshot",
    "plot_filter_trace",
    "snapshot_to_dataframe",
    "trace_to_dataframe",
    "write_pdf_report",
]
