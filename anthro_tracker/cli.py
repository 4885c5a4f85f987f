from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.progress import Progress

from .config import SessionConfig, as_dict as config_as_dict, get_config, load_session_config, recommended_config
from .measurement.ingest import frame_from_record
from .measurement.readiness import deployment_readiness_check, parse_capabilities
from .measurement.session import MeasurementSession, SessionSnapshot
from .models import (
    DeviceCapabilities,
    MalformedFrameError,
    MeasurementType,
    ThermalState,
    TrackingLost,
    ValidationError,
)
from .reports import export_snapshot, write_pdf_report
from .simulation import BodyProfile, IdentityInference, StaticMonitor, SyntheticMotion, SyntheticTracking

logger = logging.getLogger(__name__)

app = typer.Typer(help="Stream synthetic or recorded joint data through the body-measurement pipeline.")


def _fail(message: str, *, code: int = 1) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level for pipeline diagnostics (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Configure logging for every command."""
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        _fail(f"Unknown log level '{log_level}'.")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_config(config_path: Optional[Path], validation_frames: Optional[int]) -> SessionConfig:
    try:
        config = load_session_config(config_path) if config_path else get_config()
        if validation_frames is not None:
            config = config.with_overrides(validation_frames=validation_frames)
    except (OSError, ValueError) as exc:
        _fail(f"Invalid configuration: {exc}")
    return config


def render_measurement_table(snapshot: SessionSnapshot) -> str:
    """Render a fixed-width table of the snapshot's measurements."""
    headers = ("measurement", "value_cm", "confidence", "quality", "validated", "streak", "outliers")
    rows: List[Dict[str, str]] = []
    for measurement in MeasurementType:
        current = snapshot.measurements.get(measurement)
        validated = snapshot.validated.get(measurement)
        if current is None or (current.value is None and validated is None):
            continue
        value = validated.value if validated else current.value
        rows.append(
            {
                "measurement": measurement.value,
                "value_cm": f"{value:.1f}" if value is not None else "n/a",
                "confidence": f"{current.confidence:.2f}",
                "quality": current.quality,
                "validated": "yes" if validated else "no",
                "streak": str(current.streak),
                "outliers": str(current.outliers),
            }
        )
    widths = {header: max([len(header)] + [len(row[header]) for row in rows]) for header in headers}
    lines = ["  ".join(header.ljust(widths[header]) for header in headers)]
    lines.append("  ".join("-" * widths[header] for header in headers))
    for row in rows:
        lines.append("  ".join(row[header].ljust(widths[header]) for header in headers))
    return "\n".join(lines)


def _echo_result(session: MeasurementSession, export: Optional[Path], pdf: Optional[Path]) -> SessionSnapshot:
    snapshot = session.snapshot()
    reason = f" ({snapshot.failure_reason.value})" if snapshot.failure_reason else ""
    typer.echo(f"Session state: {snapshot.state.value}{reason}")
    typer.echo(render_measurement_table(snapshot))
    for message in snapshot.warnings:
        typer.secho(f"Warning: {message}", fg=typer.colors.YELLOW)
    diagnostics = snapshot.diagnostics
    typer.echo(
        f"Frames: {diagnostics.get('frames_processed', 0)} processed, "
        f"{diagnostics.get('dropped_malformed', 0)} malformed, "
        f"{diagnostics.get('dropped_inference', 0)} inference drops, "
        f"{diagnostics.get('outliers', 0)} outliers."
    )
    if export is not None:
        try:
            path = export_snapshot(snapshot, export)
        except ValueError as exc:
            _fail(str(exc))
        typer.echo(f"Snapshot written to {path}")
    if pdf is not None:
        path = write_pdf_report(snapshot, pdf, traces=session.filter_traces())
        typer.echo(f"PDF report written to {path}")
    return snapshot


@app.command()
def simulate(
    frames: int = typer.Option(90, "--frames", "-n", min=1, help="Number of synthetic frames to stream."),
    fps: float = typer.Option(30.0, "--fps", help="Synthetic capture rate (frames per second)."),
    height: float = typer.Option(172.0, "--height", help="Simulated body height in cm."),
    shoulder_width: float = typer.Option(42.0, "--shoulder-width", help="Simulated shoulder width in cm."),
    noise_cm: float = typer.Option(0.3, "--noise", help="Gaussian joint jitter (cm)."),
    seed: int = typer.Option(7, "--seed", help="Random seed for reproducible streams."),
    outlier_every: int = typer.Option(0, "--outlier-every", min=0, help="Inject a gross outlier every N frames (0 = never)."),
    thermal: str = typer.Option("nominal", "--thermal", help="Thermal state reported by the simulated device."),
    tilt: float = typer.Option(5.0, "--tilt", help="Simulated device tilt in degrees during calibration."),
    validation_frames: Optional[int] = typer.Option(None, "--validation-frames", min=1, help="Override validation_frames."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="TOML/JSON session config file."),
    export: Optional[Path] = typer.Option(None, "--export", help="Write the final snapshot (.json or .csv)."),
    pdf: Optional[Path] = typer.Option(None, "--pdf", help="Write a PDF session report."),
) -> None:
    """
    Run a deterministic synthetic session through the full pipeline.
    """
    try:
        thermal_state = ThermalState.parse(thermal)
    except ValidationError as exc:
        _fail(str(exc))
    config = _load_config(config_path, validation_frames)
    outliers = set(range(outlier_every - 1, frames, outlier_every)) if outlier_every else set()
    stream = SyntheticTracking(
        frames=frames,
        fps=fps,
        body=BodyProfile(height_cm=height, shoulder_width_cm=shoulder_width),
        noise_cm=noise_cm,
        seed=seed,
        outlier_frames=outliers,
    )
    session = MeasurementSession(
        inference=IdentityInference(),
        monitor=StaticMonitor(thermal=thermal_state),
        motion=SyntheticMotion(tilt_deg=tilt),
    )
    session.start(config)
    with Progress() as progress:
        task = progress.add_task("Measuring", total=frames)
        for item in stream:
            if not session.state.is_active:
                break
            if isinstance(item, TrackingLost):
                session.tracking_lost()
            else:
                session.tracking_resumed()
                session.process(item)
            progress.update(task, advance=1)
    session.stop()
    _echo_result(session, export, pdf)


@app.command()
def replay(
    source: Path = typer.Option(..., "--source", "-s", help="JSONL file of recorded frames."),
    validation_frames: Optional[int] = typer.Option(None, "--validation-frames", min=1, help="Override validation_frames."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="TOML/JSON session config file."),
    export: Optional[Path] = typer.Option(None, "--export", help="Write the final snapshot (.json or .csv)."),
    pdf: Optional[Path] = typer.Option(None, "--pdf", help="Write a PDF session report."),
) -> None:
    """
    Replay a recorded JSONL frame stream (one record per line).
    """
    if not source.exists():
        _fail(f"Source file not found: {source}")
    config = _load_config(config_path, validation_frames)
    records: List[Any] = []
    with source.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as exc:
                _fail(f"{source}:{line_number}: invalid JSON ({exc.msg}).")

    replay_time = {"now": 0.0}
    session = MeasurementSession(clock=lambda: replay_time["now"])
    session.start(config)
    skipped = 0
    with Progress() as progress:
        task = progress.add_task(f"Replaying {source.name}", total=len(records))
        for record in records:
            if not session.state.is_active:
                break
            try:
                item = frame_from_record(record)
                if isinstance(record, dict) and record.get("timestamp") is not None:
                    replay_time["now"] = float(record["timestamp"])
            except (MalformedFrameError, TypeError, ValueError) as exc:
                skipped += 1
                logger.warning("Skipping record: %s", exc)
                progress.update(task, advance=1)
                continue
            if isinstance(item, TrackingLost):
                session.tracking_lost()
                session.check_liveness()
            else:
                session.tracking_resumed()
                joints, motion = item
                session.process(joints, motion)
            progress.update(task, advance=1)
    session.stop()
    if skipped:
        typer.secho(f"Skipped {skipped} unreadable records.", fg=typer.colors.YELLOW)
    _echo_result(session, export, pdf)


@app.command()
def readiness(
    capabilities_path: Optional[Path] = typer.Option(
        None, "--capabilities", help="JSON file with a device capability report."
    ),
    model: str = typer.Option("unknown", "--model", help="Device model name."),
    neural_engine: bool = typer.Option(False, "--neural-engine/--no-neural-engine", help="Neural engine available."),
    shaders: bool = typer.Option(False, "--shaders/--no-shaders", help="Accelerated shaders available."),
    memory_gb: float = typer.Option(4.0, "--memory", help="Available memory in GB."),
    cores: int = typer.Option(4, "--cores", min=1, help="Processor cores."),
    max_frame_rate: int = typer.Option(60, "--max-frame-rate", min=1, help="Maximum camera frame rate."),
    as_json: bool = typer.Option(False, "--json", help="Emit the report as JSON."),
) -> None:
    """
    Check whether a device meets deployment requirements and show the recommended preset.
    """
    try:
        if capabilities_path is not None:
            if not capabilities_path.exists():
                _fail(f"Capabilities file not found: {capabilities_path}")
            caps = parse_capabilities(json.loads(capabilities_path.read_text(encoding="utf-8")))
        else:
            caps = DeviceCapabilities(
                model=model,
                neural_engine=neural_engine,
                accelerated_shaders=shaders,
                available_memory_gb=memory_gb,
                processor_cores=cores,
                max_frame_rate=max_frame_rate,
            )
    except (ValueError, json.JSONDecodeError) as exc:
        _fail(f"Invalid capabilities: {exc}")
    report = deployment_readiness_check(caps)
    preset = recommended_config(caps)
    if as_json:
        payload = report.to_dict()
        payload["recommended_config"] = {
            key: value for key, value in preset.as_dict().items() if key != "tuning"
        }
        typer.echo(json.dumps(payload, indent=2))
        return
    typer.echo(f"Device: {caps.model} (tier: {report.tier})")
    typer.echo(f"Deployment ready: {'yes' if report.ready else 'no'}")
    if report.missing_required:
        typer.echo("Missing required: " + ", ".join(report.missing_required))
    if report.missing_recommended:
        typer.echo("Missing recommended: " + ", ".join(report.missing_recommended))
    typer.echo(
        "Recommended: "
        f"accuracy={preset.measurement_accuracy}, confidence={preset.confidence_threshold}, "
        f"validation_frames={preset.validation_frames}, fps={preset.target_frame_rate}, "
        f"threads={preset.max_processing_threads}"
    )


@app.command("config")
def config_show(
    as_json: bool = typer.Option(False, "--json", help="Emit the full configuration as JSON."),
) -> None:
    """
    Show the effective session configuration.
    """
    try:
        config = config_as_dict()
    except (OSError, ValueError) as exc:
        _fail(f"Invalid configuration: {exc}")
    if as_json:
        typer.echo(json.dumps(config, indent=2))
        return
    typer.echo(f"Config source: {config.get('source')}")
    typer.echo(f"Target frame rate: {config['target_frame_rate']} fps, threads: {config['max_processing_threads']}")
    typer.echo(
        f"Validation: {config['validation_frames']} frames, confidence >= {config['confidence_threshold']}, "
        f"variance < {config['measurement_accuracy']}"
    )
    typer.echo("Required measurements: " + ", ".join(config.get("required_measurements", [])))
    typer.echo(
        f"Smoothing: {'on' if config['enable_temporal_smoothing'] else 'off'}, "
        f"outlier detection: {'on' if config['enable_outlier_detection'] else 'off'}"
    )
