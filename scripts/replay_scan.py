#!/usr/bin/env python3
"""Replay a recorded OCR session through the serial scan pipeline.

Input is JSON lines, one frame per line:

    {"t": 0.0, "candidates": [{"text": "C02JQ8XYZ01", "confidence": 0.93}],
     "motion": {"acceleration": [0.01, 0.0, 0.02], "rotation": [0.0, 0.01, 0.0]}}

Candidate keys other than ``text`` and ``confidence`` are optional:
``inverted``, ``rank``, ``pass`` ("fast"/"accurate"), ``image``.
``motion`` is optional; frames without it leave the last reading in place.

Usage:
    python scripts/replay_scan.py session.jsonl
    python scripts/replay_scan.py session.jsonl --strict --stop-on-lock
    python scripts/replay_scan.py session.jsonl --log frames.csv --verbose
"""

import argparse
import csv
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Iterator, List, Tuple

# Add src to path for local imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from serialscan.candidates import RawCandidate, SourcePass
from serialscan.config import ScannerConfig
from serialscan.events import EventBus, LoggingObserver, ScanStats
from serialscan.motion import ImuMotionSource, MotionReading
from serialscan.pipeline import SerialScanPipeline


def load_frames(path: Path) -> Iterator[Tuple[float, List[RawCandidate], Dict]]:
    """Yield (timestamp, candidates, motion) per non-empty line."""
    with open(path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            record = json.loads(line)
            candidates = [
                RawCandidate(
                    text=c["text"],
                    ocr_confidence=float(c.get("confidence", 1.0)),
                    source_pass=SourcePass(c.get("pass", "fast")),
                    image_index=int(c.get("image", 0)),
                    is_inverted=bool(c.get("inverted", False)),
                    alternative_rank=int(c.get("rank", 0)),
                    observation_index=i,
                )
                for i, c in enumerate(record.get("candidates", []))
            ]
            yield float(record.get("t", line_no)), candidates, record.get("motion") or {}


def main():
    parser = argparse.ArgumentParser(
        description="Replay recorded OCR observations through the serial scan pipeline"
    )
    parser.add_argument("session", type=str, help="Path to JSON lines session file")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Only accept 12-character serials",
    )
    parser.add_argument(
        "--window",
        type=float,
        default=1.0,
        help="Seconds a majority must hold before locking (default: 1.0)",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=0.8,
        help="Cluster stability needed to start stabilizing (default: 0.8)",
    )
    parser.add_argument(
        "--stop-on-lock",
        action="store_true",
        help="Stop replaying at the first lock",
    )
    parser.add_argument(
        "--log",
        type=str,
        default=None,
        help="Write a per-frame CSV log to this path",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log pipeline events to stderr",
    )
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )

    config = ScannerConfig(
        use_strict_validation=args.strict,
        stability_window_duration=args.window,
        confidence_threshold=args.threshold,
    )
    events = EventBus()
    stats = ScanStats()
    events.attach(stats)
    if args.verbose:
        events.attach(LoggingObserver())

    motion = ImuMotionSource()
    pipeline = SerialScanPipeline(config, motion_source=motion, events=events)

    log_file = open(args.log, "w", newline="") if args.log else None
    log_writer = None
    if log_file is not None:
        log_writer = csv.writer(log_file)
        log_writer.writerow(
            ["t", "status", "state", "candidate", "confidence", "should_lock", "best_raw"]
        )

    print("=" * 70)
    print("Serial Scan Replay")
    print("=" * 70)
    print(f"Session:   {args.session}")
    print(f"Mode:      {'strict' if args.strict else 'flexible'}")
    print(f"Window:    {args.window:.2f}s  threshold {args.threshold:.2f}")
    print()

    locked_serial = None
    try:
        for t, candidates, motion_record in load_frames(Path(args.session)):
            if motion_record:
                motion.update(
                    MotionReading(
                        user_acceleration=tuple(motion_record.get("acceleration", (0.0, 0.0, 0.0))),
                        rotation_rate=tuple(motion_record.get("rotation", (0.0, 0.0, 0.0))),
                        timestamp=t,
                    )
                )

            result = pipeline.process_frame(candidates, now=t)
            stability = result.stability
            best = result.validation.best if result.validation else None
            best_raw = best.raw.text if best else ""

            print(
                f"{t:8.3f}  {stability.state.value:<12} "
                f"{stability.stable_candidate or '-':<14} "
                f"{stability.confidence:.2f}  {stability.guidance_message}"
            )
            if log_writer is not None:
                log_writer.writerow(
                    [
                        f"{t:.3f}",
                        result.status.value,
                        stability.state.value,
                        stability.stable_candidate or "",
                        f"{stability.confidence:.3f}",
                        stability.should_lock,
                        best_raw,
                    ]
                )

            if stability.should_lock and locked_serial is None:
                locked_serial = stability.stable_candidate
                if args.stop_on_lock:
                    break
    finally:
        if log_file is not None:
            log_file.close()

    summary = stats.get_stats()
    print()
    print("=" * 70)
    print("Summary")
    print("=" * 70)
    print(f"Locked serial:       {locked_serial or 'none'}")
    print(f"Frames:              {summary['frames']}")
    print(f"Corrected:           {summary['corrected']}")
    print(f"Rejected:            {summary['rejected']}")
    for reason, count in stats.rejection_reasons.most_common():
        print(f"  {reason:<18} {count}")
    print(f"Locks:               {summary['locks']}")
    print(f"Mean frames to lock: {summary['mean_frames_to_lock']:.1f}")

    return 0 if locked_serial else 1


if __name__ == "__main__":
    sys.exit(main())
