"""
Repair Executors — turn one planned strategy into candidate files.

Strategy → executor:
  • QuickFix                 stream-copy remux, then again with tolerant
                             demux flags
  • ContainerReconstruction  ftyp + mdat + moov, reusing a surviving moov
                             (offsets relocated) or synthesizing one from
                             the length-prefixed samples in mdat
  • StreamExtraction         raw elementary stream (first parameter sets up front)
                             plus audio, remuxed into the output container
  • GopReconstruction        only GOPs that start at a clean keyframe;
                             a GOP is cut at its first damaged unit
  • DeepRecovery             each valid byte range demuxed on its own,
                             the pieces concatenated
  • AggressiveFallback       lenient remux → fixed-length segments →
                             full re-encode

Every executor is a generator: it yields each candidate as soon as it is
written, so the caller can verify it and stop early.  A failed attempt
yields nothing; no executor raises for an ffmpeg failure.  The input file
is only ever read.
"""

from __future__ import annotations

import os
import bisect
import shutil
import struct
import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, TYPE_CHECKING

from .box_walker import validate_moov
from .damage_detector import CorruptedRegion
from .ffmpeg_tool import TOLERANT_INPUT_ARGS, RELAXED_INPUT_ARGS
from .logging_setup import RECOVERY_DETAIL
from .mp4_builder import (
    SampleTable, build_ftyp, build_video_moov, mdat_header,
    relocate_chunk_offsets,
)
from .nal_scanner import (
    StreamUnit, AvccScan, H264_SPS, H264_PPS, START_CODE_4,
    is_keyframe, is_parameter_set, is_vcl, parameter_set_order,
    parse_h264_sps, read_unit_payload, scan_avcc_samples,
)
from .planner import (
    Strategy, QuickFix, ContainerReconstruction, StreamExtraction,
    GopReconstruction, DeepRecovery, AggressiveFallback,
)
from .signatures import ANNEXB_CODECS, RAW_STREAM_FORMATS

if TYPE_CHECKING:
    from .config import RepairConfig
    from .ffmpeg_tool import MediaTool
    from .manager import MediaAnalysis
    from .mmap_reader import MediaFile, MediaReader

logger = logging.getLogger(__name__)

_FASTSTART_EXTS = {".mp4", ".m4v", ".mov"}

# Raw demuxers whose name differs from the muxer
_RAW_DEMUXERS = {"mpeg2video": "mpegvideo"}


@dataclass(frozen=True)
class Candidate:
    """One repaired file waiting for verification."""
    strategy: str
    label: str
    path: str


@dataclass
class RepairContext:
    """Everything an executor may touch for one input file."""
    media: "MediaFile"
    reader: "MediaReader"
    analysis: "MediaAnalysis"
    work_dir: str
    output_ext: str
    config: "RepairConfig"
    tool: "MediaTool"

    def path(self, name: str) -> str:
        return os.path.join(self.work_dir, name)

    def output_args(self) -> list[str]:
        if self.output_ext in _FASTSTART_EXTS:
            return ["-movflags", "+faststart"]
        return []


def run_strategy(strategy: Strategy, ctx: RepairContext) -> Iterator[Candidate]:
    """Dispatch a strategy to its executor."""
    if isinstance(strategy, QuickFix):
        yield from quick_fix(strategy, ctx)
    elif isinstance(strategy, ContainerReconstruction):
        yield from reconstruct_container(strategy, ctx)
    elif isinstance(strategy, StreamExtraction):
        yield from extract_streams(strategy, ctx)
    elif isinstance(strategy, GopReconstruction):
        yield from reconstruct_gops(strategy, ctx)
    elif isinstance(strategy, DeepRecovery):
        yield from deep_recovery(strategy, ctx)
    elif isinstance(strategy, AggressiveFallback):
        yield from aggressive_fallback(strategy, ctx)
    else:
        raise TypeError(f"Unknown strategy: {strategy!r}")


# ══════════════════════════════════════════════════════════════
#  Shared helpers
# ══════════════════════════════════════════════════════════════

def _raw_demuxer(codec: str) -> str:
    fmt = RAW_STREAM_FORMATS[codec]
    return _RAW_DEMUXERS.get(fmt, fmt)


def _nonempty(path: str) -> bool:
    try:
        return os.path.getsize(path) > 0
    except OSError:
        return False


def _discard(path: str):
    try:
        os.remove(path)
    except OSError:
        pass


def _ffmpeg_to(ctx: RepairContext, args: Sequence[str], out: str, what: str) -> bool:
    """Run ffmpeg writing `out`; True if it exited cleanly with output."""
    result = ctx.tool.run([*args, out])
    if result.ok and _nonempty(out):
        return True
    tail = result.stderr.strip().splitlines()[-1:] if result.stderr else []
    logger.log(RECOVERY_DETAIL, "%s failed (rc=%s%s)%s", what, result.returncode,
               ", timed out" if result.timed_out else "",
               f": {tail[0]}" if tail else "")
    _discard(out)
    return False


def _remux_raw_video(ctx: RepairContext, raw: str, codec: str, out: str,
                     audio: Optional[str] = None) -> bool:
    """Wrap a raw elementary stream (+ optional audio) into the output container."""
    args = [
        "-fflags", "+genpts",
        "-f", _raw_demuxer(codec), "-framerate", str(ctx.config.default_fps),
        "-i", raw,
    ]
    maps = ["-map", "0:v:0"]
    if audio:
        args += ["-i", audio]
        maps += ["-map", "1:a:0?"]
    return _ffmpeg_to(ctx, [*args, *maps, "-c", "copy", *ctx.output_args()],
                      out, f"remux of {os.path.basename(raw)}")


def _concat(ctx: RepairContext, pieces: list[str], out: str, what: str) -> bool:
    """Join pieces with the concat demuxer (stream copy)."""
    list_path = ctx.path(f"{what}-concat.txt")
    with open(list_path, "w", encoding="utf-8") as f:
        for piece in pieces:
            escaped = os.path.abspath(piece).replace("'", "'\\''")
            f.write(f"file '{escaped}'\n")
    return _ffmpeg_to(ctx, [
        *TOLERANT_INPUT_ARGS, "-f", "concat", "-safe", "0", "-i", list_path,
        "-map", "0:v?", "-map", "0:a?", "-c", "copy", *ctx.output_args(),
    ], out, f"{what} concat")


def _corruption_index(regions: list[CorruptedRegion]):
    starts = [r.start for r in regions]

    def overlaps(start: int, end: int) -> bool:
        i = bisect.bisect_right(starts, end - 1) - 1
        return i >= 0 and regions[i].end > start

    return overlaps


# ══════════════════════════════════════════════════════════════
#  QuickFix
# ══════════════════════════════════════════════════════════════

def quick_fix(strategy: QuickFix, ctx: RepairContext) -> Iterator[Candidate]:
    src = ctx.media.path
    maps = ["-map", "0:v?", "-map", "0:a?", "-c", "copy", *ctx.output_args()]

    out = ctx.path(f"quick-fix{ctx.output_ext}")
    if _ffmpeg_to(ctx, ["-i", src, *maps], out, "stream-copy remux"):
        yield Candidate(strategy.name, "remux", out)

    if strategy.permissive_retry:
        out = ctx.path(f"quick-fix-tolerant{ctx.output_ext}")
        if _ffmpeg_to(ctx, [*TOLERANT_INPUT_ARGS, "-i", src, *maps], out,
                      "tolerant remux"):
            yield Candidate(strategy.name, "tolerant-remux", out)


# ══════════════════════════════════════════════════════════════
#  ContainerReconstruction
# ══════════════════════════════════════════════════════════════

def _media_data_range(ctx: RepairContext) -> Optional[tuple[int, int]]:
    """Where the sample bytes live: a valid mdat, else a damaged one."""
    structure = ctx.analysis.structure
    if structure is not None:
        mdat = structure.find(b"mdat")
        if mdat is not None:
            return mdat.payload_offset, mdat.end
    for match in ctx.analysis.signatures.matches_for("mp4"):
        if match.name != "mdat" or match.offset < 4:
            continue
        start = match.offset + 4
        declared = struct.unpack(">I", ctx.reader.read_at(match.offset - 4, 4))[0]
        if declared == 1:
            start += 8
        if start < ctx.reader.size:
            return start, ctx.reader.size
    return None


def _find_avcc_record(reader: "MediaReader", limit: int) -> Optional[tuple[bytes, bytes]]:
    """First parseable avcC decoder record in the file → (sps, pps)."""
    for pos in reader.find_all(b"avcC", end=limit):
        rec = reader.read_at(pos + 4, 1024)
        if len(rec) < 8 or rec[0] != 1:
            continue
        if rec[5] & 0x1F < 1:
            continue
        sps_len = struct.unpack_from(">H", rec, 6)[0]
        sps = rec[8:8 + sps_len]
        at = 8 + sps_len
        if len(sps) != sps_len or at + 3 > len(rec) or rec[at] & 0x1F < 1:
            continue
        pps_len = struct.unpack_from(">H", rec, at + 1)[0]
        pps = rec[at + 3:at + 3 + pps_len]
        if len(pps) == pps_len and pps and _usable_sps(sps):
            return sps, pps
    return None


def _usable_sps(sps: Optional[bytes]) -> bool:
    return bool(sps) and len(sps) >= 4 and parse_h264_sps(sps) is not None


def _parameter_sets(ctx: RepairContext, avcc: Optional[AvccScan]) -> Optional[tuple[bytes, bytes]]:
    """SPS/PPS from in-band samples, a surviving avcC, or Annex-B units."""
    if avcc is not None and avcc.pps:
        sps = next((s for s in avcc.sps if _usable_sps(s)), None)
        if sps is not None:
            return sps, avcc.pps[0]
    record = _find_avcc_record(ctx.reader, ctx.config.codec_scan_limit)
    if record is not None:
        return record
    # Start codes inside length-prefixed data are mostly false hits:
    # only trust an SPS that parses
    sps = pps = None
    for unit in ctx.analysis.units:
        if unit.unit_type == H264_SPS and sps is None:
            payload = read_unit_payload(ctx.reader, unit)
            if payload and _usable_sps(payload.rstrip(b"\x00")):
                sps = payload.rstrip(b"\x00")
        elif unit.unit_type == H264_PPS and pps is None:
            payload = read_unit_payload(ctx.reader, unit)
            if payload:
                pps = payload.rstrip(b"\x00")
        if sps and pps:
            return sps, pps
    return None


def _ftyp_bytes(ctx: RepairContext) -> bytes:
    structure = ctx.analysis.structure
    ftyp = structure.find(b"ftyp") if structure is not None else None
    if ftyp is not None and ftyp.size <= 4096:
        return ctx.reader.read_at(ftyp.offset, ftyp.size)
    return build_ftyp()


def _write_reused_index(ctx: RepairContext, data: tuple[int, int], out: str) -> bool:
    structure = ctx.analysis.structure
    moov_block = structure.find(b"moov") if structure is not None else None
    if moov_block is None:
        return False
    moov = ctx.reader.read_at(moov_block.offset, moov_block.size)
    if not validate_moov(moov):
        logger.log(RECOVERY_DETAIL, "Surviving moov is inconsistent, not reusing it")
        return False

    start, end = data
    ftyp = _ftyp_bytes(ctx)
    header = mdat_header(end - start)
    delta = len(ftyp) + len(header) - start
    moov = relocate_chunk_offsets(moov, delta)
    if moov is None:
        logger.log(RECOVERY_DETAIL, "Chunk offsets of the old moov cannot be relocated")
        return False

    with open(out, "wb") as f:
        f.write(ftyp)
        f.write(header)
        ctx.reader.copy_range(f, start, end)
        f.write(moov)
    return True


def _write_synthesized_index(ctx: RepairContext, data: Optional[tuple[int, int]],
                             out: str) -> bool:
    # Without a codec signature the mdat may still hold length-prefixed H.264
    codec = ctx.analysis.signatures.video_codec
    if codec not in (None, "h264"):
        logger.log(RECOVERY_DETAIL, "Index synthesis supports H.264 only (found %s)", codec)
        return False

    avcc = scan_avcc_samples(ctx.reader, *data) if data is not None else None
    params = _parameter_sets(ctx, avcc)
    if params is None:
        logger.log(RECOVERY_DETAIL, "No SPS/PPS found, cannot describe the stream")
        return False
    sps, pps = params
    info = parse_h264_sps(sps)
    width = info.width if info else ctx.config.default_width
    height = info.height if info else ctx.config.default_height

    ftyp = _ftyp_bytes(ctx)
    table = SampleTable()

    if avcc is not None and avcc.samples:
        start, end = data
        header = mdat_header(end - start)
        base = len(ftyp) + len(header) - start
        for s in avcc.samples:
            table.add(s.offset + base, s.size, s.is_sync)
        with open(out, "wb") as f:
            f.write(ftyp)
            f.write(header)
            ctx.reader.copy_range(f, start, end)
            f.write(build_video_moov(table, sps, pps, width, height,
                                     ctx.config.default_fps, ctx.config.movie_timescale))
        return True

    samples = _annexb_samples(ctx)
    if not samples:
        logger.log(RECOVERY_DETAIL, "No video samples found for a new index")
        return False
    payload_size = sum(len(s) for s, _ in samples)
    header = mdat_header(payload_size)
    pos = len(ftyp) + len(header)
    with open(out, "wb") as f:
        f.write(ftyp)
        f.write(header)
        for sample, sync in samples:
            f.write(sample)
            table.add(pos, len(sample), sync)
            pos += len(sample)
        f.write(build_video_moov(table, sps, pps, width, height,
                                 ctx.config.default_fps, ctx.config.movie_timescale))
    return True


def _annexb_samples(ctx: RepairContext) -> list[tuple[bytes, bool]]:
    """Start-code units → length-prefixed samples, one per VCL unit.

    Non-VCL units (SEI, AUD) ride along with the next picture; parameter
    sets are left out because they travel in avcC.
    """
    codec = "h264"
    samples: list[tuple[bytes, bool]] = []
    pending = b""
    for unit in ctx.analysis.units:
        if not unit.is_valid or is_parameter_set(codec, unit.unit_type):
            continue
        payload = read_unit_payload(ctx.reader, unit)
        if payload is None:
            continue
        payload = payload.rstrip(b"\x00") or payload
        nal = struct.pack(">I", len(payload)) + payload
        if is_vcl(codec, unit.unit_type):
            samples.append((pending + nal, is_keyframe(codec, unit.unit_type)))
            pending = b""
        else:
            pending += nal
    return samples


def reconstruct_container(strategy: ContainerReconstruction,
                          ctx: RepairContext) -> Iterator[Candidate]:
    data = _media_data_range(ctx)

    if strategy.reuse_index and data is not None:
        out = ctx.path("rebuilt-reused.mp4")
        if _write_reused_index(ctx, data, out):
            yield from _as_output(ctx, strategy, "reused-index", out)

    out = ctx.path("rebuilt-synth.mp4")
    if _write_synthesized_index(ctx, data, out):
        yield from _as_output(ctx, strategy, "synthesized-index", out)


def _as_output(ctx: RepairContext, strategy: Strategy, label: str,
               mp4: str) -> Iterator[Candidate]:
    """Yield an MP4 candidate, remuxed first if the output is another container."""
    if ctx.output_ext == ".mp4":
        yield Candidate(strategy.name, label, mp4)
        return
    out = os.path.splitext(mp4)[0] + ctx.output_ext
    if _ffmpeg_to(ctx, ["-i", mp4, "-map", "0:v?", "-map", "0:a?", "-c", "copy",
                        *ctx.output_args()], out, f"{label} remux"):
        yield Candidate(strategy.name, label, out)


# ══════════════════════════════════════════════════════════════
#  StreamExtraction
# ══════════════════════════════════════════════════════════════

def _write_units(ctx: RepairContext, units: Sequence[StreamUnit], out: str) -> int:
    """Write units with 4-byte start codes; returns how many were written."""
    written = 0
    with open(out, "wb") as f:
        for unit in units:
            payload = read_unit_payload(ctx.reader, unit)
            if payload is None:
                continue
            f.write(START_CODE_4)
            f.write(payload)
            written += 1
    return written


def _ordered_for_decoding(codec: str, units: Sequence[StreamUnit]) -> list[StreamUnit]:
    """First VPS, SPS and PPS (in that order) up front, everything else by offset."""
    hoisted = []
    for unit_type in parameter_set_order(codec):
        first = next((u for u in units if u.unit_type == unit_type), None)
        if first is not None:
            hoisted.append(first)
    return hoisted + [u for u in units if not any(u is h for h in hoisted)]


def _extract_audio(ctx: RepairContext) -> Optional[str]:
    codec = ctx.analysis.signatures.audio_codec
    if codec not in RAW_STREAM_FORMATS:
        return None
    fmt = RAW_STREAM_FORMATS[codec]
    out = ctx.path(f"audio.{'aac' if fmt == 'adts' else fmt}")
    if _ffmpeg_to(ctx, [*TOLERANT_INPUT_ARGS, "-i", ctx.media.path, "-vn",
                        "-map", "0:a:0", "-c:a", "copy", "-f", fmt], out,
                  "audio extraction"):
        return out
    return None


def extract_streams(strategy: StreamExtraction, ctx: RepairContext) -> Iterator[Candidate]:
    codec = ctx.analysis.signatures.video_codec
    if codec not in RAW_STREAM_FORMATS:
        return
    raw = ctx.path(f"video.{RAW_STREAM_FORMATS[codec]}")

    if codec in ANNEXB_CODECS and ctx.analysis.units:
        count = _write_units(ctx, _ordered_for_decoding(codec, ctx.analysis.units), raw)
        if count == 0:
            _discard(raw)
            return
        logger.log(RECOVERY_DETAIL, "Extracted %d %s units", count, codec)
    elif not _ffmpeg_to(ctx, [*TOLERANT_INPUT_ARGS, "-i", ctx.media.path, "-an",
                              "-map", "0:v:0", "-c:v", "copy",
                              "-f", RAW_STREAM_FORMATS[codec]], raw,
                        "raw video extraction"):
        return

    audio = _extract_audio(ctx) if strategy.include_audio else None
    out = ctx.path(f"extracted{ctx.output_ext}")
    if _remux_raw_video(ctx, raw, codec, out, audio):
        yield Candidate(strategy.name, "with-audio" if audio else "video-only", out)
    elif audio and _remux_raw_video(ctx, raw, codec, out):
        yield Candidate(strategy.name, "video-only", out)


# ══════════════════════════════════════════════════════════════
#  GopReconstruction
# ══════════════════════════════════════════════════════════════

def select_gop_units(codec: str, units: Sequence[StreamUnit],
                     damaged, readable) -> list[StreamUnit]:
    """Keep parameter sets plus every GOP that opens on a clean keyframe.

    `damaged(unit)` and `readable(unit)` are predicates.  A GOP whose
    keyframe is damaged is dropped whole; otherwise it is kept up to (not
    including) its first damaged or unreadable unit.
    """
    kept: list[StreamUnit] = []
    in_gop = False
    for unit in units:
        if not readable(unit):
            in_gop = False
            continue
        if is_parameter_set(codec, unit.unit_type):
            if not damaged(unit):
                kept.append(unit)
            continue
        if is_keyframe(codec, unit.unit_type):
            in_gop = not damaged(unit)
            if in_gop:
                kept.append(unit)
            continue
        if not in_gop:
            continue
        if damaged(unit):
            in_gop = False
            continue
        kept.append(unit)
    return kept


def reconstruct_gops(strategy: GopReconstruction, ctx: RepairContext) -> Iterator[Candidate]:
    codec = ctx.analysis.signatures.video_codec
    units = ctx.analysis.units
    if codec not in ANNEXB_CODECS or not units:
        return

    overlaps = _corruption_index(ctx.analysis.corruption.regions)

    def damaged(unit: StreamUnit) -> bool:
        if strategy.drop_corrupted_units and overlaps(unit.offset, unit.end):
            return True
        return not unit.is_valid

    def readable(unit: StreamUnit) -> bool:
        return unit.end <= ctx.reader.size and unit.payload_size > 0

    kept = select_gop_units(codec, units, damaged, readable)
    if not any(is_keyframe(codec, u.unit_type) for u in kept):
        logger.log(RECOVERY_DETAIL, "No clean keyframe, no GOP to keep")
        return
    logger.log(RECOVERY_DETAIL, "Keeping %d of %d units", len(kept), len(units))

    raw = ctx.path(f"gops.{RAW_STREAM_FORMATS[codec]}")
    if _write_units(ctx, _ordered_for_decoding(codec, kept), raw) == 0:
        _discard(raw)
        return
    out = ctx.path(f"gops{ctx.output_ext}")
    if _remux_raw_video(ctx, raw, codec, out):
        yield Candidate(strategy.name, "keyframe-anchored", out)


# ══════════════════════════════════════════════════════════════
#  DeepRecovery
# ══════════════════════════════════════════════════════════════

def deep_recovery(strategy: DeepRecovery, ctx: RepairContext) -> Iterator[Candidate]:
    regions = [r for r in ctx.analysis.corruption.valid_regions
               if r.size >= strategy.min_segment_size]
    if not regions:
        return
    codec = ctx.analysis.signatures.video_codec
    forced = _raw_demuxer(codec) if codec in RAW_STREAM_FORMATS else None

    pieces = []
    for i, region in enumerate(regions):
        seg = ctx.path(f"region-{i:04d}.bin")
        with open(seg, "wb") as f:
            ctx.reader.copy_range(f, region.start, region.end)
        ts = ctx.path(f"region-{i:04d}.ts")
        copy = ["-map", "0:v?", "-map", "0:a?", "-c", "copy", "-f", "mpegts"]
        ok = _ffmpeg_to(ctx, [*TOLERANT_INPUT_ARGS, "-i", seg, *copy], ts,
                        f"region {region.start}-{region.end}")
        if not ok and forced:
            ok = _ffmpeg_to(ctx, [*RELAXED_INPUT_ARGS, "-f", forced, "-i", seg, *copy],
                            ts, f"region {region.start}-{region.end} as {forced}")
        _discard(seg)
        if ok:
            pieces.append(ts)

    logger.log(RECOVERY_DETAIL, "%d of %d valid regions demuxed", len(pieces), len(regions))
    if not pieces:
        return
    out = ctx.path(f"deep{ctx.output_ext}")
    if _concat(ctx, pieces, out, "deep"):
        yield Candidate(strategy.name, f"{len(pieces)}-regions", out)


# ══════════════════════════════════════════════════════════════
#  AggressiveFallback
# ══════════════════════════════════════════════════════════════

def aggressive_fallback(strategy: AggressiveFallback, ctx: RepairContext) -> Iterator[Candidate]:
    src = ctx.media.path
    maps = ["-map", "0:v?", "-map", "0:a?"]

    out = ctx.path(f"fallback-lenient{ctx.output_ext}")
    if _ffmpeg_to(ctx, [*RELAXED_INPUT_ARGS, "-i", src, *maps, "-c", "copy",
                        "-ignore_unknown", *ctx.output_args()], out, "lenient remux"):
        yield Candidate(strategy.name, "lenient-remux", out)

    seg_dir = ctx.path("segments")
    os.makedirs(seg_dir, exist_ok=True)
    pattern = os.path.join(seg_dir, "seg-%05d.ts")
    result = ctx.tool.run([
        *TOLERANT_INPUT_ARGS, "-i", src, *maps, "-c", "copy",
        "-f", "segment", "-segment_time", str(strategy.segment_seconds),
        "-reset_timestamps", "1", pattern,
    ])
    pieces = sorted(
        os.path.join(seg_dir, name) for name in os.listdir(seg_dir)
        if _nonempty(os.path.join(seg_dir, name))
    )
    if pieces:
        out = ctx.path(f"fallback-segments{ctx.output_ext}")
        if _concat(ctx, pieces, out, "segments"):
            yield Candidate(strategy.name, f"{len(pieces)}-segments", out)
    else:
        logger.log(RECOVERY_DETAIL, "Segmentation produced nothing (rc=%s)", result.returncode)
    shutil.rmtree(seg_dir, ignore_errors=True)

    out = ctx.path(f"fallback-reencode{ctx.output_ext}")
    if _ffmpeg_to(ctx, [
        *RELAXED_INPUT_ARGS, "-max_error_rate", "1", "-flags2", "+showall",
        "-i", src, *maps, *ctx.config.encode.ffmpeg_args(), *ctx.output_args(),
    ], out, "re-encode"):
        yield Candidate(strategy.name, "re-encode", out)
