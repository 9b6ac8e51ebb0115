#!/usr/bin/env python3
"""
Media Repair — Entry Point.

Usage:
    python main.py -o repaired/ broken1.mp4 broken2.mov
    python main.py --analyze-only suspicious.mp4
    python main.py -o out/ --jobs 2 --log-file repair.log -v *.mp4
"""

APP_VERSION = "1.1.0"

import os
import sys
import json
import logging
import argparse
import dataclasses

from mediarepair.config import DEFAULT_CONFIG
from mediarepair.errors import MediaRepairError
from mediarepair.logging_setup import configure_logging
from mediarepair.manager import RepairManager

logger = logging.getLogger("mediarepair")


def analyze_mode(manager: RepairManager, inputs: list[str]) -> int:
    reports = []
    status = 0
    for path in inputs:
        try:
            reports.append(manager.analyze(path).to_dict())
        except MediaRepairError as e:
            logger.error("%s: %s", path, e)
            reports.append({"file": path, "error": str(e)})
            status = 2
    print(json.dumps(reports, indent=2))
    return status


def repair_mode(manager: RepairManager, inputs: list[str], output_dir: str,
                work_dir: str) -> int:
    os.makedirs(output_dir, exist_ok=True)
    jobs = []
    seen = set()
    for path in inputs:
        out = os.path.join(output_dir, os.path.basename(path))
        if out in seen:
            logger.error("Duplicate output name for %s, skipping", path)
            continue
        seen.add(out)
        jobs.append((path, out))

    report = manager.repair_batch(jobs, work_dir or None)

    print()
    print("=" * 60)
    print(f"  🎬 Media Repair v{APP_VERSION} — summary")
    print("=" * 60)
    print(f"  Total:     {report.total}")
    print(f"  Repaired:  {report.processed}")
    print(f"  Skipped:   {report.skipped}")
    print(f"  Failed:    {report.errors}")
    for outcome in report.outcomes:
        print(f"    {os.path.basename(outcome.input_path)}: {outcome.summary}")
    print()
    return 2 if report.errors or len(jobs) != len(inputs) else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Analyse and repair damaged video files.")
    parser.add_argument("inputs", nargs="+", metavar="INPUT", help="Media files")
    parser.add_argument("-o", "--output", default="repaired",
                        help="Output directory (default: ./repaired)")
    parser.add_argument("--work-dir", default="",
                        help="Directory for temporary files (default: system temp)")
    parser.add_argument("--timeout", type=float, default=DEFAULT_CONFIG.tool_timeout,
                        help="Timeout for one ffmpeg run, seconds")
    parser.add_argument("--jobs", type=int, default=DEFAULT_CONFIG.max_concurrent_files,
                        help="Files repaired concurrently")
    parser.add_argument("--log-file", default="", help="Also write the log here")
    parser.add_argument("--ffmpeg", default="", help="Path to the ffmpeg binary")
    parser.add_argument("--analyze-only", action="store_true",
                        help="Print the damage assessment as JSON, repair nothing")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Log every repair attempt")
    parser.add_argument("--version", action="version", version=APP_VERSION)
    args = parser.parse_args(argv)

    backup = configure_logging(verbose=args.verbose, log_file=args.log_file or None)
    if backup:
        logger.info("Previous log moved to %s", backup)

    config = dataclasses.replace(
        DEFAULT_CONFIG,
        tool_timeout=args.timeout,
        max_concurrent_files=max(1, args.jobs),
        ffmpeg_path=args.ffmpeg,
    )
    manager = RepairManager(config)

    if args.analyze_only:
        return analyze_mode(manager, args.inputs)
    return repair_mode(manager, args.inputs, args.output, args.work_dir)


if __name__ == "__main__":
    sys.exit(main())
