from __future__ import annotations

import json

from typer.testing import CliRunner

from anthro_tracker.cli import app
from anthro_tracker.measurement.ingest import frame_to_record
from anthro_tracker.simulation import build_skeleton


def test_cli_simulate_smoke(tmp_path, monkeypatch):
    monkeypatch.setenv("MPLBACKEND", "Agg")
    runner = CliRunner()
    export_path = tmp_path / "exports" / "session.json"
    pdf_path = tmp_path / "exports" / "session.pdf"

    result = runner.invoke(
        app,
        [
            "simulate",
            "--frames",
            "60",
            "--validation-frames",
            "5",
            "--seed",
            "11",
            "--export",
            str(export_path),
            "--pdf",
            str(pdf_path),
        ],
    )
    assert result.exit_code == 0, result.stdout
    assert "Session state: completed" in result.stdout
    assert "height" in result.stdout
    assert "shoulder_width" in result.stdout

    payload = json.loads(export_path.read_text(encoding="utf-8"))
    assert payload["state"] == "completed"
    assert abs(payload["validated"]["height"]["value"] - 172.0) < 1.0
    assert pdf_path.exists() and pdf_path.stat().st_size > 0


def test_cli_simulate_rejects_bad_thermal():
    runner = CliRunner()
    result = runner.invoke(app, ["simulate", "--thermal", "lava"])
    assert result.exit_code == 1


def test_cli_replay_with_tracking_gap(tmp_path):
    source = tmp_path / "frames.jsonl"
    lines = []
    for index in range(8):
        timestamp = round(0.1 * (index + 1), 3)
        if index == 2:
            # Short dropout, well inside the grace period.
            lines.append(json.dumps({"tracking_lost": True, "timestamp": timestamp - 0.05}))
        lines.append(json.dumps(frame_to_record(build_skeleton(timestamp=timestamp), timestamp=timestamp)))
    source.write_text("\n".join(lines) + "\n", encoding="utf-8")

    runner = CliRunner()
    csv_path = tmp_path / "session.csv"
    result = runner.invoke(
        app,
        ["replay", "--source", str(source), "--validation-frames", "3", "--export", str(csv_path)],
    )
    assert result.exit_code == 0, result.stdout
    assert "Session state: completed" in result.stdout
    header = csv_path.read_text(encoding="utf-8").splitlines()[0]
    assert header.startswith("measurement,value_cm")

    bad = tmp_path / "bad.jsonl"
    bad.write_text("{not json\n", encoding="utf-8")
    bad_result = runner.invoke(app, ["replay", "--source", str(bad)])
    assert bad_result.exit_code == 1

    missing_result = runner.invoke(app, ["replay", "--source", str(tmp_path / "missing.jsonl")])
    assert missing_result.exit_code == 1


def test_cli_readiness_and_config(tmp_path, monkeypatch):
    runner = CliRunner()
    ready = runner.invoke(app, ["readiness", "--neural-engine", "--shaders", "--memory", "6", "--cores", "8"])
    assert ready.exit_code == 0, ready.stdout
    assert "Deployment ready: yes" in ready.stdout
    assert "tier: ultra-high" in ready.stdout

    caps_path = tmp_path / "caps.json"
    caps_path.write_text(
        json.dumps({"deviceModel": "tablet", "hasNeuralEngine": True, "availableMemory": 6, "processorCount": 6}),
        encoding="utf-8",
    )
    report = runner.invoke(app, ["readiness", "--capabilities", str(caps_path), "--json"])
    assert report.exit_code == 0, report.stdout
    payload = json.loads(report.stdout)
    assert payload["ready"] is True
    assert payload["tier"] == "high"
    assert payload["missing_recommended"] == ["accelerated_shaders"]
    assert payload["recommended_config"]["validation_frames"] == 12

    not_ready = runner.invoke(app, ["readiness", "--memory", "2", "--cores", "2"])
    assert not_ready.exit_code == 0, not_ready.stdout
    assert "Deployment ready: no" in not_ready.stdout
    assert "neural_engine" in not_ready.stdout

    monkeypatch.delenv("ANTHRO_TRACKER_CONFIG", raising=False)
    shown = runner.invoke(app, ["config"])
    assert shown.exit_code == 0, shown.stdout
    assert "Required measurements: height, shoulder_width" in shown.stdout
