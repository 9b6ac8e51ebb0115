"""
Repair Manager — analysis, the per-file repair session and the batch driver.

Per file:
  1. skip if the output already exists
  2. open read-only, analyse (signatures → structure → units → corruption
     → assessment)
  3. run the planned strategies in order; verify each candidate as it
     appears; the first one that passes is moved to the output path
  4. remove the per-file work directory, whatever happened

Every outcome is one of skipped / success / failed.  Nothing raised while
repairing one file reaches the batch loop.
"""

from __future__ import annotations

import os
import re
import time
import shutil
import logging
import tempfile
import threading
from contextlib import closing
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .box_walker import BoxWalk, walk_boxes
from .config import DEFAULT_CONFIG, RepairConfig
from .damage_detector import CorruptionScan, detect_corruption
from .errors import UnreadableInputError
from .ffmpeg_tool import MediaTool
from .file_repair import RepairContext, run_strategy
from .logging_setup import RECOVERY_DETAIL, SUMMARY, for_file
from .mmap_reader import MediaFile, MediaReader, open_media_file
from .nal_scanner import StreamUnit, scan_stream_units
from .planner import RecoveryAssessment, assess
from .signatures import SignatureReport, scan_signatures
from .verifier import VerificationResult, verify_candidate

logger = logging.getLogger(__name__)


class ResultCode(str, Enum):
    SKIPPED = "skipped"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class MediaAnalysis:
    """Everything derived from one MediaFile before repair."""
    media: MediaFile
    signatures: SignatureReport
    structure: Optional[BoxWalk]
    units: list[StreamUnit]
    corruption: CorruptionScan
    assessment: RecoveryAssessment

    def to_dict(self) -> dict:
        report = {
            "file": self.media.path,
            "size": self.media.size,
            "stream_units": len(self.units),
            "corrupted_regions": len(self.corruption.regions),
            "corrupted_bytes": self.corruption.corrupted_bytes,
            "valid_regions": len(self.corruption.valid_regions),
        }
        if self.structure is not None:
            report["boxes"] = {
                "valid": self.structure.valid_count,
                "invalid": self.structure.invalid_count,
                "top_level": [b.type_str for b in self.structure.blocks if b.is_valid],
            }
        report.update(self.assessment.to_dict())
        return report


@dataclass
class RepairAttempt:
    strategy: str
    label: str
    path: str
    success: bool
    verification: Optional[VerificationResult] = None


@dataclass
class RepairOutcome:
    input_path: str
    output_path: str
    code: ResultCode
    strategy: str = ""
    reason: str = ""
    input_size: int = 0
    output_size: int = 0
    attempts: list[RepairAttempt] = field(default_factory=list)
    analysis: Optional[MediaAnalysis] = None

    @property
    def size_change(self) -> int:
        return self.output_size - self.input_size

    @property
    def summary(self) -> str:
        if self.code == ResultCode.SUCCESS:
            return f"Repaired with {self.strategy} ({_fmt_size(self.input_size)} → {_fmt_size(self.output_size)})"
        if self.code == ResultCode.SKIPPED:
            return "Already processed"
        return f"Repair failed: {self.reason}"


@dataclass
class BatchReport:
    total: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    outcomes: list[RepairOutcome] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def failed(self) -> list[RepairOutcome]:
        return [o for o in self.outcomes if o.code == ResultCode.FAILED]


def analyze_media(media: MediaFile, reader: MediaReader,
                  config: RepairConfig = DEFAULT_CONFIG) -> MediaAnalysis:
    signatures = scan_signatures(reader, config)
    structure = walk_boxes(reader, config) if signatures.container == "mp4" else None
    units = scan_stream_units(reader, signatures.video_codec, config)
    corruption = detect_corruption(reader, signatures.container, config, structure)
    assessment = assess(signatures, structure, units, corruption, config)
    return MediaAnalysis(media, signatures, structure, units, corruption, assessment)


def _safe_stem(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    return re.sub(r"[^A-Za-z0-9._-]+", "_", stem)[:64] or "media"


def _promote(candidate: str, output_path: str):
    """Move a verified candidate into place; the final name appears atomically."""
    folder = os.path.dirname(os.path.abspath(output_path))
    os.makedirs(folder, exist_ok=True)
    partial = os.path.join(folder, f".{os.path.basename(output_path)}.partial")
    try:
        shutil.move(candidate, partial)
        os.replace(partial, output_path)
    except OSError:
        if os.path.exists(partial):
            os.remove(partial)
        raise


class RepairManager:
    """High-level manager for media analysis and repair."""

    def __init__(self, config: RepairConfig = DEFAULT_CONFIG,
                 tool: Optional[MediaTool] = None):
        self.config = config
        self._tool = tool
        self._lock = threading.Lock()

    @property
    def tool(self) -> MediaTool:
        with self._lock:
            if self._tool is None:
                self._tool = MediaTool.from_config(self.config)
            return self._tool

    def analyze(self, path: str) -> MediaAnalysis:
        """Analyse one file. Raises UnreadableInputError."""
        media = open_media_file(path)
        with MediaReader.open(media) as reader:
            return analyze_media(media, reader, self.config)

    def repair(self, input_path: str, output_path: str,
               work_dir: Optional[str] = None) -> RepairOutcome:
        """Repair one file into output_path. Never raises."""
        log = for_file(logger, os.path.basename(input_path))
        outcome = RepairOutcome(input_path, output_path, ResultCode.FAILED)

        if os.path.exists(output_path):
            log.info("Output already exists, skipping: %s", output_path)
            outcome.code = ResultCode.SKIPPED
            return outcome

        try:
            media = open_media_file(input_path)
        except UnreadableInputError as e:
            log.error("%s", e)
            outcome.reason = str(e)
            return outcome
        outcome.input_size = media.size

        tmp_dir = None
        try:
            tool = self.tool
            base = work_dir or tempfile.gettempdir()
            os.makedirs(base, exist_ok=True)
            tmp_dir = tempfile.mkdtemp(prefix=f"{_safe_stem(input_path)}-", dir=base)

            with MediaReader.open(media) as reader:
                analysis = analyze_media(media, reader, self.config)
                outcome.analysis = analysis
                a = analysis.assessment
                log.info("Severity %s, tags [%s], %.2f%% corrupted",
                         a.level.label, ", ".join(sorted(a.tags)) or "none",
                         a.corruption_ratio * 100)
                log.log(RECOVERY_DETAIL, "Strategy order: %s", ", ".join(a.strategy_names))

                ext = os.path.splitext(output_path)[1].lower() or ".mp4"
                ctx = RepairContext(media, reader, analysis, tmp_dir, ext, self.config, tool)
                if self._run_strategies(ctx, outcome, log):
                    return outcome

            outcome.reason = f"all {len(analysis.assessment.strategies)} strategies failed"
            log.error("Repair failed: %s", outcome.reason)
        except Exception as e:
            log.exception("Repair failed: %s", e)
            outcome.code = ResultCode.FAILED
            outcome.reason = str(e) or type(e).__name__
        finally:
            if tmp_dir:
                shutil.rmtree(tmp_dir, ignore_errors=True)
        return outcome

    def _run_strategies(self, ctx: RepairContext, outcome: RepairOutcome, log) -> bool:
        for strategy in ctx.analysis.assessment.strategies:
            log.log(RECOVERY_DETAIL, "Trying %s (priority %d)", strategy.name, strategy.priority)
            try:
                if self._try_strategy(strategy, ctx, outcome, log):
                    return True
            except Exception as e:
                log.warning("%s aborted: %s", strategy.name, e, exc_info=True)
                continue
            log.log(RECOVERY_DETAIL, "%s produced no playable candidate", strategy.name)
        return False

    def _try_strategy(self, strategy, ctx: RepairContext, outcome: RepairOutcome, log) -> bool:
        with closing(run_strategy(strategy, ctx)) as candidates:
            for cand in candidates:
                result = verify_candidate(cand.path, ctx.tool, self.config)
                outcome.attempts.append(RepairAttempt(
                    cand.strategy, cand.label, cand.path, result.passed, result))
                log.log(RECOVERY_DETAIL, "%s %s/%s: %s", result.status_icon,
                        cand.strategy, cand.label, result.reason)
                if not result.passed:
                    if os.path.exists(cand.path):
                        os.remove(cand.path)
                    continue

                _promote(cand.path, outcome.output_path)
                outcome.code = ResultCode.SUCCESS
                outcome.strategy = cand.strategy
                outcome.output_size = os.path.getsize(outcome.output_path)
                log.info("Repaired with %s/%s (%.2fs playable)",
                         cand.strategy, cand.label, result.duration)
                log.info("Size change: %s → %s (%+d bytes)",
                         _fmt_size(outcome.input_size), _fmt_size(outcome.output_size),
                         outcome.size_change)
                return True
        return False

    def repair_batch(self, jobs: list[tuple[str, str]],
                     work_dir: Optional[str] = None) -> BatchReport:
        """Repair (input, output) pairs; output paths must be unique."""
        report = BatchReport(total=len(jobs), start_time=time.time())
        lock = threading.Lock()
        logger.info("Processing %d file(s)", report.total)

        def run(job: tuple[str, str]):
            outcome = self.repair(job[0], job[1], work_dir)
            with lock:
                report.outcomes.append(outcome)
                if outcome.code == ResultCode.SUCCESS:
                    report.processed += 1
                elif outcome.code == ResultCode.SKIPPED:
                    report.skipped += 1
                else:
                    report.errors += 1
                done = len(report.outcomes)
                if done % self.config.progress_every == 0:
                    logger.info("Progress: %d/%d files", done, report.total)

        if self.config.max_concurrent_files > 1 and len(jobs) > 1:
            with ThreadPoolExecutor(max_workers=self.config.max_concurrent_files) as pool:
                list(pool.map(run, jobs))
        else:
            for job in jobs:
                run(job)

        report.end_time = time.time()
        logger.log(SUMMARY, "Total: %d, repaired: %d, skipped: %d, failed: %d (%.1fs)",
                   report.total, report.processed, report.skipped, report.errors,
                   report.duration)
        return report


def _fmt_size(n: int) -> str:
    s = float(n)
    for u in ("B", "KB", "MB", "GB"):
        if s < 1024:
            return f"{s:.1f} {u}"
        s /= 1024
    return f"{s:.1f} TB"
