"""
Corruption Detector — find the byte ranges that can't be trusted.

One sequential pass over the file in 1 MB chunks, tracking two signatures:
  1. Zero runs          — ≥ 1024 consecutive 0x00 bytes (wiped / TRIM'd /
                          never-written sectors inside a media file)
  2. Invalid size field — (ISO BMFF only) a 4-byte-aligned big-endian word
                          with a value in 1..7: smaller than any box header,
                          so it can't be a box size.  Only bytes outside the
                          valid top-level boxes are checked; inside a
                          valid box such words are ordinary payload.

Findings are sorted and merged (start ≤ previous end → one region), then
the complement inside [0, file size) gives the valid regions, dropping
fragments below 1 KB.

Region tracking is capped.  Past the cap the scan stops and the result is
flagged `overflowed` — the planner then assumes the worst tier outright.
"""

from __future__ import annotations

import re
import bisect
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .box_walker import BoxWalk
    from .config import RepairConfig
    from .mmap_reader import MediaReader

logger = logging.getLogger(__name__)

ZERO_RUN = "zero-run"
INVALID_SIZE_FIELD = "invalid-size-field"
MIXED = "mixed"

SIZE_FIELD_REGION = 8

_SMALL_SIZE_FIELD = re.compile(rb"\x00\x00\x00[\x01-\x07]")


@dataclass(frozen=True)
class CorruptedRegion:
    start: int
    end: int
    kind: str

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"empty region [{self.start}, {self.end})")

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class ValidRegion:
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class CorruptionScan:
    """Merged corruption findings for one file."""
    file_size: int
    regions: list[CorruptedRegion] = field(default_factory=list)
    valid_regions: list[ValidRegion] = field(default_factory=list)
    raw_findings: int = 0
    overflowed: bool = False

    @property
    def corrupted_bytes(self) -> int:
        return sum(r.size for r in self.regions)

    @property
    def corruption_ratio(self) -> float:
        if self.file_size <= 0:
            return 0.0
        return self.corrupted_bytes / self.file_size

    @property
    def kinds(self) -> set[str]:
        return {r.kind for r in self.regions}


# ══════════════════════════════════════════════════════════════
#  Region algebra
# ══════════════════════════════════════════════════════════════

def merge_regions(raw: Iterable[CorruptedRegion]) -> list[CorruptedRegion]:
    """Sort by start and merge overlapping or touching regions.

    A merge of regions of different kinds is labelled "mixed".
    """
    merged: list[CorruptedRegion] = []
    for region in sorted(raw, key=lambda r: (r.start, r.end)):
        if merged and region.start <= merged[-1].end:
            prev = merged[-1]
            kind = prev.kind if prev.kind == region.kind else MIXED
            merged[-1] = CorruptedRegion(prev.start, max(prev.end, region.end), kind)
        else:
            merged.append(region)
    return merged


def complement_regions(regions: list[CorruptedRegion], length: int,
                       min_size: int = 0) -> list[ValidRegion]:
    """Valid ranges = [0, length) minus the (merged, sorted) regions."""
    valid = []
    pos = 0
    for region in regions:
        if region.start > pos:
            valid.append(ValidRegion(pos, min(region.start, length)))
        pos = max(pos, region.end)
    if pos < length:
        valid.append(ValidRegion(pos, length))
    return [v for v in valid if v.size > 0 and v.size >= min_size]


# ══════════════════════════════════════════════════════════════
#  Main entry point
# ══════════════════════════════════════════════════════════════

class _RegionOverflow(Exception):
    pass


def detect_corruption(reader: "MediaReader", container: Optional[str],
                      config: "RepairConfig",
                      structure: Optional["BoxWalk"] = None) -> CorruptionScan:
    """Scan the whole file for zero runs and impossible box sizes."""
    scan = CorruptionScan(file_size=reader.size)
    raw: list[CorruptedRegion] = []
    threshold = config.zero_run_threshold
    zero_run = re.compile(rb"\x00{%d,}" % threshold)
    check_sizes = container == "mp4"
    chunk_size = max(4, config.detector_chunk_size // 4 * 4)

    valid_ranges = structure.valid_ranges() if structure is not None else []
    range_starts = [s for s, _ in valid_ranges]

    def record(start: int, end: int, kind: str):
        if len(raw) >= config.max_corrupted_regions:
            raise _RegionOverflow()
        raw.append(CorruptedRegion(start, end, kind))

    def inside_valid_box(offset: int) -> bool:
        i = bisect.bisect_right(range_starts, offset) - 1
        return i >= 0 and offset + 4 <= valid_ranges[i][1]

    carry_start = -1        # zero run still open at the end of the last chunk
    try:
        for base, chunk in reader.iter_chunks(block_size=chunk_size):
            length = len(chunk)
            lo = 0

            # Close (or extend) a zero run carried over from the previous chunk
            if carry_start >= 0:
                leading = length - len(chunk.lstrip(b"\x00"))
                if leading == length:
                    continue
                if base + leading - carry_start >= threshold:
                    record(carry_start, base + leading, ZERO_RUN)
                carry_start = -1
                lo = leading

            trailing = length - len(chunk.rstrip(b"\x00"))
            hi = length - trailing
            if hi > lo:
                for m in zero_run.finditer(chunk, lo, hi):
                    record(base + m.start(), base + m.end(), ZERO_RUN)
            if trailing:
                carry_start = base + max(hi, lo)

            if check_sizes:
                for m in _SMALL_SIZE_FIELD.finditer(chunk):
                    offset = base + m.start()
                    if offset % 4 or inside_valid_box(offset):
                        continue
                    record(offset, min(offset + SIZE_FIELD_REGION, reader.size),
                           INVALID_SIZE_FIELD)

        if carry_start >= 0 and reader.size - carry_start >= threshold:
            record(carry_start, reader.size, ZERO_RUN)
    except _RegionOverflow:
        scan.overflowed = True
        logger.warning(
            "More than %d corrupted regions — treating file as critically damaged",
            config.max_corrupted_regions)

    scan.raw_findings = len(raw)
    scan.regions = merge_regions(raw)
    scan.valid_regions = complement_regions(
        scan.regions, reader.size, config.min_valid_region)

    logger.debug("Corruption scan: %d raw findings → %d regions, %.2f%% corrupted",
                 scan.raw_findings, len(scan.regions), scan.corruption_ratio * 100)
    return scan
