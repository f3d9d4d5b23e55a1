"""
Veritas Liveness - Session Replay Launcher
==========================================
Replays a recorded liveness session through the LivenessEngine and prints
every stage transition plus the final result.

The manifest is JSONL, one frame per line:

  {"image": "frames/0001.png", "euler": [yaw, pitch, roll],
   "eyes": [left_open, right_open], "box": [x, y, w, h], "t": 0.033}

`image` is resolved relative to the manifest; `box`, `eyes` and `t` are
optional (missing `t` uses the frame index at 30 FPS).

Usage:
  python start_veritas.py session.jsonl
  python start_veritas.py session.jsonl --model m1.onnx --scale 2.7 \\
                                        --model m2.onnx --scale 4.0
  python start_veritas.py session.jsonl --config my.yaml --audit
  python start_veritas.py session.jsonl --model m1.onnx --calibration calib.json

Exit code: 0 passed, 1 failed, 2 manifest ended before a decision.
"""

import argparse
import json
import os
import sys

import cv2

from veritas_engine import LivenessEngine
from veritas_scorer import ConfidenceCalibrator, OnnxFaceScorer, ScaleModel
from veritas_types import Completed, describe_stage
from veritas_utils_core import load_config

DEFAULT_FPS = 30.0
DEFAULT_SCALES = [2.7, 4.0]


def read_manifest(path: str) -> list[dict]:
    records = []
    with open(path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({e})") from e
            if "image" not in record:
                raise ValueError(f"{path}:{line_no}: missing 'image'")
            records.append(record)
    return records


def replay(engine: LivenessEngine, records: list[dict], base_dir: str, verbose: bool = True):
    """Feed every record to the engine; stops early once the session completes."""
    last_name = None
    stage = engine.stage
    for index, record in enumerate(records):
        image_path = os.path.join(base_dir, record["image"])
        frame = cv2.imread(image_path, cv2.IMREAD_COLOR)
        if frame is None:
            print(f"[VERITAS] Skipping unreadable frame: {image_path}")
            continue

        stage = engine.process_frame(
            frame,
            eye_openness=record.get("eyes"),
            euler_angles=record.get("euler", (0.0, 0.0, 0.0)),
            face_box=record.get("box"),
            timestamp=float(record.get("t", index / DEFAULT_FPS)),
        )
        if verbose and stage.name != last_name:
            print(f"[VERITAS] frame {index:4d}: {json.dumps(describe_stage(stage))}")
            last_name = stage.name
        if isinstance(stage, Completed):
            break
    return stage


def build_scorer(models: list[str], scales: list[float], temperature: float):
    if not models:
        return None
    if scales and len(scales) != len(models):
        raise ValueError("--scale must be given once per --model")
    if not scales:
        scales = [DEFAULT_SCALES[min(i, len(DEFAULT_SCALES) - 1)] for i in range(len(models))]
    return OnnxFaceScorer(
        [ScaleModel(scale=s, path=m) for m, s in zip(models, scales)],
        temperature=temperature,
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Veritas Liveness session replay")
    parser.add_argument("manifest", help="JSONL manifest of recorded frames")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml (default: repo config.yaml)")
    parser.add_argument("--model", action="append", default=[], help="ONNX anti-spoof model (repeatable)")
    parser.add_argument("--scale", action="append", type=float, default=[], help="Crop scale per --model")
    parser.add_argument("--temperature", type=float, default=1.0, help="Softmax temperature for the CNN")
    parser.add_argument("--calibration", type=str, default=None,
                        help="JSON file with a fitted {\"temperature\": T}; overrides --temperature")
    parser.add_argument("--audit", action="store_true", help="Write logs/veritas_audit_session.jsonl")
    parser.add_argument("--serial", action="store_true", help="Run analyzers without the thread pool")
    parser.add_argument("--quiet", action="store_true", help="Only print the final result")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    overrides = {}
    if args.audit:
        overrides["audit_log_path"] = "logs/veritas_audit_session.jsonl"
    if args.serial:
        overrides["parallel_analyzers"] = False
    if overrides:
        config = config.override(**overrides)

    records = read_manifest(args.manifest)
    temperature = args.temperature
    if args.calibration:
        temperature = ConfidenceCalibrator.from_file(args.calibration).temperature
    scorer = build_scorer(args.model, args.scale, temperature)

    if not args.quiet:
        print("=" * 60)
        print("  Veritas Liveness - Session Replay")
        print(f"  Manifest: {args.manifest} ({len(records)} frames)")
        print(f"  CNN:      {', '.join(args.model) if args.model else 'disabled (neutral 0.5)'}")
        print(f"  Frames:   {config.required_frames} passive, {config.required_blinks} blinks")
        print("=" * 60)

    with LivenessEngine(config, scorer=scorer) as engine:
        stage = replay(engine, records, os.path.dirname(os.path.abspath(args.manifest)),
                       verbose=not args.quiet)
        summary = engine.get_summary()

    if not isinstance(stage, Completed):
        print(json.dumps({"decision": None, **summary}, indent=2))
        return 2

    print(json.dumps(stage.result.to_dict(), indent=2))
    return 0 if stage.result.passed else 1


if __name__ == "__main__":
    sys.exit(main())
