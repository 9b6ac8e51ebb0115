"""
Elementary-Stream Unit Scanner — H.264 / H.265 NAL units.

Two views of the same bitstream:

  1. Annex-B (raw .h264/.hevc, MPEG-TS payloads, carved fragments):
     units are delimited by 00 00 01 / 00 00 00 01 start codes.
     scan_stream_units() finds every start code in the whole file,
     classifies the unit from the header byte after it, and sizes each
     unit as the distance to the next one.

  2. AVCC (inside an MP4 'mdat'): every NAL is prefixed with a 4-byte
     big-endian length.  scan_avcc_samples() walks that chain, groups NALs
     into access units (samples) and resynchronises over bytes that are
     not video (interleaved audio, zeroed sectors).

The start-code search runs over overlapping chunks, so a start code split
across two read buffers is still found exactly once.

Also: a small H.264 SPS parser to recover the coded picture size.
"""

from __future__ import annotations

import struct
import logging
from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .config import RepairConfig
    from .mmap_reader import MediaReader

logger = logging.getLogger(__name__)

START_CODE_3 = b"\x00\x00\x01"
START_CODE_4 = b"\x00\x00\x00\x01"

# ── H.264 NAL unit types ──
H264_SLICE = 1
H264_IDR = 5
H264_SPS = 7
H264_PPS = 8

# ── H.265 NAL unit types ──
H265_IRAP_FIRST = 16
H265_IRAP_LAST = 21
H265_VPS = 32
H265_SPS = 33
H265_PPS = 34


@dataclass(frozen=True)
class StreamUnit:
    """One start-code-delimited unit."""
    offset: int                 # offset of the start code
    start_code_length: int      # 3 or 4
    unit_type: int
    size: int                   # start code + payload (+ trailing zeros)
    is_valid: bool = True       # forbidden_zero_bit clear

    @property
    def payload_offset(self) -> int:
        return self.offset + self.start_code_length

    @property
    def payload_size(self) -> int:
        return self.size - self.start_code_length

    @property
    def end(self) -> int:
        return self.offset + self.size


# ══════════════════════════════════════════════════════════════
#  Unit classification
# ══════════════════════════════════════════════════════════════

def nal_unit_type(codec: str, header: int) -> int:
    if codec == "h265":
        return (header >> 1) & 0x3F
    return header & 0x1F


def is_keyframe(codec: str, unit_type: int) -> bool:
    if codec == "h265":
        return H265_IRAP_FIRST <= unit_type <= H265_IRAP_LAST
    return unit_type == H264_IDR


def is_parameter_set(codec: str, unit_type: int) -> bool:
    if codec == "h265":
        return unit_type in (H265_VPS, H265_SPS, H265_PPS)
    return unit_type in (H264_SPS, H264_PPS)


def is_vcl(codec: str, unit_type: int) -> bool:
    if codec == "h265":
        return unit_type < 32
    return 1 <= unit_type <= 5


def parameter_set_order(codec: str) -> tuple[int, ...]:
    """Parameter set types in the order a decoder needs them."""
    if codec == "h265":
        return (H265_VPS, H265_SPS, H265_PPS)
    return (H264_SPS, H264_PPS)


# ══════════════════════════════════════════════════════════════
#  Annex-B scan
# ══════════════════════════════════════════════════════════════

def scan_stream_units(reader: "MediaReader", codec: Optional[str],
                      config: "RepairConfig") -> list[StreamUnit]:
    """Locate every start-code-delimited unit in the file.

    Returns [] for codecs without NAL structure.
    """
    if codec not in ("h264", "h265"):
        return []

    total = reader.size
    found: list[tuple[int, int, int, bool]] = []   # offset, sc_len, type, valid

    for pos in reader.find_all(START_CODE_3, block_size=config.unit_buffer_size):
        if pos + 3 >= total:
            break
        if pos > 0:
            around = reader.read_at(pos - 1, 5)
            four_byte = around[0] == 0
            header = around[4]
        else:
            four_byte = False
            header = reader.read_at(pos + 3, 1)[0]

        sc_len = 4 if four_byte else 3
        offset = pos - 1 if four_byte else pos
        found.append((offset, sc_len, nal_unit_type(codec, header),
                      (header & 0x80) == 0))

    units = []
    for i, (offset, sc_len, unit_type, valid) in enumerate(found):
        nxt = found[i + 1][0] if i + 1 < len(found) else total
        units.append(StreamUnit(
            offset=offset, start_code_length=sc_len, unit_type=unit_type,
            size=nxt - offset, is_valid=valid,
        ))

    logger.debug("Stream unit scan (%s): %d units", codec, len(units))
    return units


def read_unit_payload(reader: "MediaReader", unit: StreamUnit) -> Optional[bytes]:
    """Read a unit's bytes after the start code; None if cut short by EOF."""
    data = reader.read_at(unit.payload_offset, unit.payload_size)
    if len(data) < unit.payload_size or not data:
        return None
    return data


# ══════════════════════════════════════════════════════════════
#  AVCC (length-prefixed) sample scan
# ══════════════════════════════════════════════════════════════

_AVCC_NAL_TYPES = set(range(1, 13))
_RESYNC_WINDOW = 1024 * 1024
_MAX_RESYNC_BYTES = 32 * 1024 * 1024


@dataclass(frozen=True)
class AvccSample:
    offset: int         # absolute offset of the first length field
    size: int
    is_sync: bool


@dataclass
class AvccScan:
    samples: list[AvccSample] = field(default_factory=list)
    sps: list[bytes] = field(default_factory=list)
    pps: list[bytes] = field(default_factory=list)
    resyncs: int = 0
    skipped_bytes: int = 0


def _plausible_nal(buf: bytes, i: int, limit: int) -> int:
    """Length of a plausible length-prefixed H.264 NAL at buf[i], else 0."""
    if i + 5 > len(buf):
        return 0
    length = struct.unpack_from(">I", buf, i)[0]
    if length < 2 or length > limit:
        return 0
    header = buf[i + 4]
    if header & 0x80 or (header & 0x1F) not in _AVCC_NAL_TYPES:
        return 0
    return length


def _resync(reader: "MediaReader", pos: int, end: int) -> int:
    """Find the next offset where two chained NALs parse. -1 if none."""
    scanned = 0
    while pos < end and scanned < _MAX_RESYNC_BYTES:
        buf = reader.read_at(pos, min(_RESYNC_WINDOW + 16, end - pos))
        for i in range(0, max(0, len(buf) - 16)):
            length = _plausible_nal(buf, i, end - (pos + i) - 4)
            if not length:
                continue
            nxt = pos + i + 4 + length
            if nxt == end:
                return pos + i
            follow = reader.read_at(nxt, 5)
            if _plausible_nal(follow, 0, end - nxt - 4):
                return pos + i
        advance = max(1, len(buf) - 16)
        pos += advance
        scanned += advance
    return -1


def scan_avcc_samples(reader: "MediaReader", start: int, end: int) -> AvccScan:
    """Group the length-prefixed H.264 NALs in [start, end) into samples."""
    scan = AvccScan()
    pos = start
    sample_start = -1
    sample_sync = False
    sample_has_vcl = False

    def close_sample(at: int):
        nonlocal sample_start, sample_sync, sample_has_vcl
        if sample_start >= 0 and sample_has_vcl:
            scan.samples.append(AvccSample(sample_start, at - sample_start, sample_sync))
        sample_start = -1
        sample_sync = False
        sample_has_vcl = False

    while end - pos >= 5:
        head = reader.read_at(pos, 6)
        length = _plausible_nal(head, 0, end - pos - 4)
        if not length:
            close_sample(pos)
            nxt = _resync(reader, pos + 1, end)
            if nxt < 0:
                scan.skipped_bytes += end - pos
                break
            scan.resyncs += 1
            scan.skipped_bytes += nxt - pos
            pos = nxt
            continue

        nal_type = head[4] & 0x1F
        vcl = 1 <= nal_type <= 5
        first_slice = vcl and len(head) > 5 and bool(head[5] & 0x80)

        if sample_start >= 0 and sample_has_vcl and (not vcl or first_slice):
            close_sample(pos)
        if sample_start < 0:
            sample_start = pos
        if vcl:
            sample_has_vcl = True
            if nal_type == H264_IDR:
                sample_sync = True
        elif nal_type in (H264_SPS, H264_PPS):
            payload = reader.read_at(pos + 4, length)
            target = scan.sps if nal_type == H264_SPS else scan.pps
            if payload not in target:
                target.append(payload)
        pos += 4 + length

    close_sample(pos)
    logger.debug("AVCC scan: %d samples, %d resyncs, %d bytes skipped",
                 len(scan.samples), scan.resyncs, scan.skipped_bytes)
    return scan


# ══════════════════════════════════════════════════════════════
#  H.264 SPS parsing
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SpsInfo:
    profile_idc: int
    constraint_flags: int
    level_idc: int
    width: int
    height: int


class _BitReader:
    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    def bit(self) -> int:
        byte = self._pos >> 3
        if byte >= len(self._data):
            raise ValueError("SPS truncated")
        value = (self._data[byte] >> (7 - (self._pos & 7))) & 1
        self._pos += 1
        return value

    def bits(self, n: int) -> int:
        value = 0
        for _ in range(n):
            value = (value << 1) | self.bit()
        return value

    def ue(self) -> int:
        zeros = 0
        while self.bit() == 0:
            zeros += 1
            if zeros > 31:
                raise ValueError("bad exp-Golomb code")
        return (1 << zeros) - 1 + self.bits(zeros)

    def se(self) -> int:
        k = self.ue()
        return (k + 1) // 2 if k & 1 else -(k // 2)


def _skip_scaling_list(br: _BitReader, size: int):
    last = nxt = 8
    for _ in range(size):
        if nxt != 0:
            nxt = (last + br.se() + 256) % 256
        last = nxt if nxt != 0 else last


def parse_h264_sps(nal: bytes) -> Optional[SpsInfo]:
    """Parse an SPS NAL (header byte included) for profile/level/size."""
    if len(nal) < 4 or (nal[0] & 0x1F) != H264_SPS:
        return None
    rbsp = nal[1:].replace(b"\x00\x00\x03", b"\x00\x00")
    br = _BitReader(rbsp)
    try:
        profile_idc = br.bits(8)
        constraint = br.bits(8)
        level_idc = br.bits(8)
        br.ue()                                  # seq_parameter_set_id
        chroma_format_idc = 1
        if profile_idc in (100, 110, 122, 244, 44, 83, 86, 118, 128, 138, 139, 134, 135):
            chroma_format_idc = br.ue()
            if chroma_format_idc == 3:
                br.bit()                         # separate_colour_plane_flag
            br.ue()                              # bit_depth_luma_minus8
            br.ue()                              # bit_depth_chroma_minus8
            br.bit()                             # qpprime_y_zero_transform_bypass
            if br.bit():                         # seq_scaling_matrix_present
                for i in range(8 if chroma_format_idc != 3 else 12):
                    if br.bit():
                        _skip_scaling_list(br, 16 if i < 6 else 64)
        br.ue()                                  # log2_max_frame_num_minus4
        poc_type = br.ue()
        if poc_type == 0:
            br.ue()
        elif poc_type == 1:
            br.bit()
            br.se()
            br.se()
            for _ in range(br.ue()):
                br.se()
        br.ue()                                  # max_num_ref_frames
        br.bit()                                 # gaps_in_frame_num_allowed
        width_mbs = br.ue() + 1
        height_units = br.ue() + 1
        frame_mbs_only = br.bit()
        if not frame_mbs_only:
            br.bit()                             # mb_adaptive_frame_field
        br.bit()                                 # direct_8x8_inference
        crop = (0, 0, 0, 0)
        if br.bit():
            crop = (br.ue(), br.ue(), br.ue(), br.ue())
    except ValueError:
        return None

    sub_w, sub_h = {0: (1, 1), 1: (2, 2), 2: (2, 1), 3: (1, 1)}.get(chroma_format_idc, (2, 2))
    crop_x = 1 if chroma_format_idc == 0 else sub_w
    crop_y = (1 if chroma_format_idc == 0 else sub_h) * (2 - frame_mbs_only)
    width = width_mbs * 16 - crop_x * (crop[0] + crop[1])
    height = (2 - frame_mbs_only) * height_units * 16 - crop_y * (crop[2] + crop[3])
    if width <= 0 or height <= 0:
        return None
    return SpsInfo(profile_idc, constraint, level_idc, width, height)
