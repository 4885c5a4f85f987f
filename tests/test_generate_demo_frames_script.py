from __future__ import annotations

import json
from pathlib import Path


def test_generate_demo_frames_writes_replayable_jsonl(tmp_path: Path) -> None:
    import scripts.generate_demo_frames as gen

    from anthro_tracker.measurement.ingest import frame_from_record
    from anthro_tracker.models import TrackingLost

    output = tmp_path / "frames.jsonl"
    gen.main(["--frames", "12", "--lost", "3,4", "--outliers", "7", "--output", str(output)])

    records = [json.loads(line) for line in output.read_text(encoding="utf-8").splitlines()]
    assert len(records) == 12
    assert records[3] == {"tracking_lost": True, "timestamp": records[3]["timestamp"]}

    parsed = [frame_from_record(record) for record in records]
    assert sum(isinstance(item, TrackingLost) for item in parsed) == 2
    joints, motion = parsed[0]
    assert len(joints) == 16
    assert motion is not None
    timestamps = [record["timestamp"] for record in records]
    assert timestamps == sorted(timestamps)


def test_parse_indices_ignores_blanks() -> None:
    import scripts.generate_demo_frames as gen

    assert gen._parse_indices("1, 2,,5") == {1, 2, 5}
