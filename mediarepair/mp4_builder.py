"""
ISO BMFF writer — ftyp / mdat headers and a minimal video 'moov'.

BoxWriter writes boxes into an in-memory buffer.  A box is opened with a
placeholder size; when its body is complete the writer seeks back and
patches the real size in.  Nested boxes therefore never need their
children's sizes up front.

The synthesized index describes one H.264 video track:

  moov
   ├─ mvhd
   └─ trak
       ├─ tkhd
       └─ mdia
           ├─ mdhd
           ├─ hdlr ('vide')
           └─ minf
               ├─ vmhd
               ├─ dinf / dref / 'url '
               └─ stbl: stsd(avc1 + avcC), stts, stss, stsc, stsz, stco|co64

Sample offsets are absolute file offsets; the caller decides the layout.
"""

from __future__ import annotations

import io
import struct
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from .box_walker import iter_boxes_recursive

logger = logging.getLogger(__name__)

UNITY_MATRIX = (0x00010000, 0, 0, 0, 0x00010000, 0, 0, 0, 0x40000000)
LANGUAGE_UND = 0x55C4
MAX_U32 = 0xFFFFFFFF


class BoxWriter:
    """Append-only box writer with back-patched sizes."""

    def __init__(self):
        self._buf = io.BytesIO()

    @contextmanager
    def box(self, box_type: bytes) -> Iterator["BoxWriter"]:
        start = self._buf.tell()
        self._buf.write(b"\x00\x00\x00\x00" + box_type)
        yield self
        end = self._buf.tell()
        self._buf.seek(start)
        self._buf.write(struct.pack(">I", end - start))
        self._buf.seek(end)

    @contextmanager
    def full_box(self, box_type: bytes, version: int = 0,
                 flags: int = 0) -> Iterator["BoxWriter"]:
        with self.box(box_type):
            self.u32((version << 24) | (flags & 0xFFFFFF))
            yield self

    def write(self, data: bytes):
        self._buf.write(data)

    def zeros(self, n: int):
        self._buf.write(b"\x00" * n)

    def u16(self, v: int):
        self._buf.write(struct.pack(">H", v))

    def i16(self, v: int):
        self._buf.write(struct.pack(">h", v))

    def u32(self, v: int):
        self._buf.write(struct.pack(">I", v))

    def u64(self, v: int):
        self._buf.write(struct.pack(">Q", v))

    def getvalue(self) -> bytes:
        return self._buf.getvalue()


# ══════════════════════════════════════════════════════════════
#  ftyp / mdat
# ══════════════════════════════════════════════════════════════

def build_ftyp(major: bytes = b"isom", minor: int = 0x200,
               compatible: tuple[bytes, ...] = (b"isom", b"iso2", b"avc1", b"mp41")) -> bytes:
    w = BoxWriter()
    with w.box(b"ftyp"):
        w.write(major)
        w.u32(minor)
        for brand in compatible:
            w.write(brand)
    return w.getvalue()


def mdat_header(payload_size: int) -> bytes:
    """8-byte header, or the 16-byte large-size form when it won't fit."""
    if payload_size + 8 <= MAX_U32:
        return struct.pack(">I4s", payload_size + 8, b"mdat")
    return struct.pack(">I4sQ", 1, b"mdat", payload_size + 16)


# ══════════════════════════════════════════════════════════════
#  Sample table
# ══════════════════════════════════════════════════════════════

@dataclass
class SampleTable:
    """Video samples laid out in chunks of contiguous bytes."""
    sizes: list[int] = field(default_factory=list)
    sync: list[bool] = field(default_factory=list)
    chunks: list[tuple[int, int]] = field(default_factory=list)   # (offset, sample count)
    _chunk_end: int = -1

    def add(self, offset: int, size: int, is_sync: bool):
        """Append a sample; contiguous samples share a chunk."""
        if self.chunks and offset == self._chunk_end:
            first, count = self.chunks[-1]
            self.chunks[-1] = (first, count + 1)
        else:
            self.chunks.append((offset, 1))
        self.sizes.append(size)
        self.sync.append(is_sync)
        self._chunk_end = offset + size

    @property
    def sample_count(self) -> int:
        return len(self.sizes)


def _stsc_entries(table: SampleTable) -> list[tuple[int, int]]:
    """(first_chunk, samples_per_chunk) runs, 1-based chunk numbers."""
    entries: list[tuple[int, int]] = []
    for i, (_, count) in enumerate(table.chunks, start=1):
        if not entries or entries[-1][1] != count:
            entries.append((i, count))
    return entries


def build_avcc(sps: bytes, pps: bytes) -> bytes:
    """AVCDecoderConfigurationRecord with 4-byte NAL lengths."""
    return (
        struct.pack(">BBBBBB", 1, sps[1], sps[2], sps[3], 0xFF, 0xE1)
        + struct.pack(">H", len(sps)) + sps
        + struct.pack(">BH", 1, len(pps)) + pps
    )


def build_video_moov(table: SampleTable, sps: bytes, pps: bytes,
                     width: int, height: int, fps: int,
                     movie_timescale: int = 1000) -> bytes:
    """Minimal single-track H.264 'moov' for the given sample table."""
    media_timescale = fps * 1000
    sample_delta = 1000
    media_duration = table.sample_count * sample_delta
    movie_duration = table.sample_count * movie_timescale // max(fps, 1)
    use_co64 = any(off > MAX_U32 for off, _ in table.chunks)

    w = BoxWriter()
    with w.box(b"moov"):
        with w.full_box(b"mvhd"):
            w.u32(0)
            w.u32(0)
            w.u32(movie_timescale)
            w.u32(movie_duration)
            w.u32(0x00010000)           # rate 1.0
            w.u16(0x0100)               # volume 1.0
            w.zeros(10)
            w.write(struct.pack(">9I", *UNITY_MATRIX))
            w.zeros(24)
            w.u32(2)                    # next_track_ID

        with w.box(b"trak"):
            with w.full_box(b"tkhd", flags=3):
                w.u32(0)
                w.u32(0)
                w.u32(1)                # track_ID
                w.zeros(4)
                w.u32(movie_duration)
                w.zeros(8)
                w.u16(0)                # layer
                w.u16(0)                # alternate_group
                w.u16(0)                # volume
                w.zeros(2)
                w.write(struct.pack(">9I", *UNITY_MATRIX))
                w.u32(width << 16)
                w.u32(height << 16)

            with w.box(b"mdia"):
                with w.full_box(b"mdhd"):
                    w.u32(0)
                    w.u32(0)
                    w.u32(media_timescale)
                    w.u32(media_duration)
                    w.u16(LANGUAGE_UND)
                    w.u16(0)
                with w.full_box(b"hdlr"):
                    w.zeros(4)
                    w.write(b"vide")
                    w.zeros(12)
                    w.write(b"VideoHandler\x00")

                with w.box(b"minf"):
                    with w.full_box(b"vmhd", flags=1):
                        w.u16(0)
                        w.zeros(6)
                    with w.box(b"dinf"):
                        with w.full_box(b"dref"):
                            w.u32(1)
                            with w.full_box(b"url ", flags=1):
                                pass
                    _write_stbl(w, table, sps, pps, width, height, sample_delta, use_co64)
    return w.getvalue()


def _write_stbl(w: BoxWriter, table: SampleTable, sps: bytes, pps: bytes,
                width: int, height: int, sample_delta: int, use_co64: bool):
    with w.box(b"stbl"):
        with w.full_box(b"stsd"):
            w.u32(1)
            with w.box(b"avc1"):
                w.zeros(6)
                w.u16(1)                # data_reference_index
                w.zeros(16)
                w.u16(width)
                w.u16(height)
                w.u32(0x00480000)       # 72 dpi
                w.u32(0x00480000)
                w.zeros(4)
                w.u16(1)                # frame_count
                w.zeros(32)             # compressorname
                w.u16(0x0018)
                w.i16(-1)
                with w.box(b"avcC"):
                    w.write(build_avcc(sps, pps))

        with w.full_box(b"stts"):
            w.u32(1)
            w.u32(table.sample_count)
            w.u32(sample_delta)

        sync_numbers = [i + 1 for i, s in enumerate(table.sync) if s]
        if sync_numbers and len(sync_numbers) < table.sample_count:
            with w.full_box(b"stss"):
                w.u32(len(sync_numbers))
                for n in sync_numbers:
                    w.u32(n)

        entries = _stsc_entries(table)
        with w.full_box(b"stsc"):
            w.u32(len(entries))
            for first_chunk, per_chunk in entries:
                w.u32(first_chunk)
                w.u32(per_chunk)
                w.u32(1)

        with w.full_box(b"stsz"):
            w.u32(0)
            w.u32(table.sample_count)
            for size in table.sizes:
                w.u32(size)

        with w.full_box(b"co64" if use_co64 else b"stco"):
            w.u32(len(table.chunks))
            for offset, _ in table.chunks:
                if use_co64:
                    w.u64(offset)
                else:
                    w.u32(offset)


# ══════════════════════════════════════════════════════════════
#  Reusing a surviving 'moov'
# ══════════════════════════════════════════════════════════════

def relocate_chunk_offsets(moov: bytes, delta: int) -> Optional[bytes]:
    """Shift every stco/co64 entry by `delta` bytes.

    Returns None when a shifted offset would be negative or no longer fit
    a 32-bit stco entry.
    """
    if delta == 0:
        return moov
    out = bytearray(moov)
    for _, box in iter_boxes_recursive(moov):
        if box.box_type not in (b"stco", b"co64"):
            continue
        wide = box.box_type == b"co64"
        entry_size = 8 if wide else 4
        fmt = ">Q" if wide else ">I"
        count_at = box.payload_offset + 4
        if count_at + 4 > box.end:
            return None
        count = struct.unpack_from(">I", moov, count_at)[0]
        first = count_at + 4
        if first + count * entry_size > box.end:
            return None
        for i in range(count):
            pos = first + i * entry_size
            value = struct.unpack_from(fmt, moov, pos)[0] + delta
            if value < 0 or (not wide and value > MAX_U32):
                return None
            struct.pack_into(fmt, out, pos, value)
    return bytes(out)
