from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Iterable, Sequence

from anthro_tracker.measurement.ingest import frame_to_record
from anthro_tracker.models import TrackingLost
from anthro_tracker.simulation import BodyProfile, SyntheticMotion, SyntheticTracking

ROOT = Path(__file__).resolve().parents[1]
DEFAULT_JSONL = ROOT / "demo" / "demo_frames.jsonl"


def _parse_indices(raw: str) -> set[int]:
    return {int(part) for part in raw.split(",") if part.strip()}


def _build_records(
    frames: int,
    fps: float,
    seed: int,
    body: BodyProfile,
    noise_cm: float,
    tilt_deg: float,
    outlier_frames: Iterable[int] = (),
    lost_frames: Iterable[int] = (),
) -> list[dict[str, Any]]:
    stream = SyntheticTracking(
        frames=frames,
        fps=fps,
        body=body,
        noise_cm=noise_cm,
        seed=seed,
        outlier_frames=set(outlier_frames),
        lost_frames=set(lost_frames),
    )
    motion = iter(SyntheticMotion(tilt_deg=tilt_deg))
    records: list[dict[str, Any]] = []
    for index, item in enumerate(stream):
        timestamp = round((index + 1) / fps, 6)
        if isinstance(item, TrackingLost):
            records.append({"tracking_lost": True, "timestamp": timestamp})
            continue
        records.append(frame_to_record(item, next(motion), timestamp=timestamp))
    return records


def _write_jsonl(path: Path, records: Iterable[dict[str, Any]]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8") as handle:
        for record in records:
            handle.write(json.dumps(record) + "\n")
            count += 1
    return count


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Generate a synthetic JSONL frame stream for `anthro-tracker replay`.")
    parser.add_argument("--frames", type=int, default=90, help="Number of frames to generate.")
    parser.add_argument("--fps", type=float, default=30.0, help="Capture rate used for timestamps.")
    parser.add_argument("--seed", type=int, default=7, help="Random seed for reproducibility.")
    parser.add_argument("--height", type=float, default=172.0, help="Body height in cm.")
    parser.add_argument("--shoulder-width", type=float, default=42.0, help="Shoulder width in cm.")
    parser.add_argument("--noise", type=float, default=0.3, help="Gaussian joint jitter in cm.")
    parser.add_argument("--tilt", type=float, default=5.0, help="Device tilt in degrees.")
    parser.add_argument(
        "--outliers",
        type=_parse_indices,
        default=set(),
        help="Comma-separated frame indices that receive a gross height outlier.",
    )
    parser.add_argument(
        "--lost",
        type=_parse_indices,
        default=set(),
        help="Comma-separated frame indices emitted as tracking-lost markers.",
    )
    parser.add_argument("--output", type=Path, default=DEFAULT_JSONL, help="Destination .jsonl file.")
    args = parser.parse_args(argv)

    records = _build_records(
        frames=args.frames,
        fps=args.fps,
        seed=args.seed,
        body=BodyProfile(height_cm=args.height, shoulder_width_cm=args.shoulder_width),
        noise_cm=args.noise,
        tilt_deg=args.tilt,
        outlier_frames=args.outliers,
        lost_frames=args.lost,
    )
    count = _write_jsonl(args.output, records)
    print(f"Wrote {count} frames to {args.output}")


if __name__ == "__main__":
    main()
