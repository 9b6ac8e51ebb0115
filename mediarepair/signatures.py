"""
Signature Scanner — what container / codec is this (probably)?

DESIGN RATIONALE
────────────────
A damaged file can't be trusted to start with its magic bytes, so every
signature is searched for anywhere inside a bounded prefix:
  • Containers    (ISO BMFF, Matroska, RIFF/AVI) — first 1 MB
  • Video codecs  (H.264, H.265, MPEG-2, MPEG-4 Part 2) — first 10 MB
  • Audio codecs  (AAC, MP3) — first 10 MB

Each kind has several sub-signatures (e.g. ftyp / moov / mdat for MP4).
The kind with the most *distinct* sub-signatures found wins, so
ftyp+moov+mdat beats a lone RIFF tag that happens to appear in mdat.

Exported:
  • SignaturePattern  — one searchable byte pattern
  • ALL_SIGNATURES    — the default table (immutable tuple)
  • scan_signatures() — run the scan, returns a SignatureReport
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .config import RepairConfig
    from .mmap_reader import MediaReader

logger = logging.getLogger(__name__)

CONTAINER = "container"
VIDEO_CODEC = "video-codec"
AUDIO_CODEC = "audio-codec"


@dataclass(frozen=True)
class SignaturePattern:
    """One byte pattern that is evidence for a container or codec."""
    category: str       # container | video-codec | audio-codec
    kind: str           # mp4, matroska, avi, h264, h265, mpeg2, mpeg4, aac, mp3
    name: str           # sub-signature label (ftyp, moov, sps, ...)
    pattern: bytes


@dataclass(frozen=True)
class SignatureMatch:
    category: str
    kind: str
    offset: int
    pattern: bytes
    name: str = ""


@dataclass
class SignatureReport:
    """Everything the signature pass learned about a file."""
    matches: list[SignatureMatch] = field(default_factory=list)
    container: Optional[str] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None

    @property
    def format_known(self) -> bool:
        return self.container is not None or self.video_codec is not None

    def matches_for(self, kind: str) -> list[SignatureMatch]:
        return [m for m in self.matches if m.kind == kind]


# ══════════════════════════════════════════════════════════════
#  C O N T A I N E R S
# ══════════════════════════════════════════════════════════════

_MP4 = (
    SignaturePattern(CONTAINER, "mp4", "ftyp", b"ftyp"),
    SignaturePattern(CONTAINER, "mp4", "moov", b"moov"),
    SignaturePattern(CONTAINER, "mp4", "mdat", b"mdat"),
    SignaturePattern(CONTAINER, "mp4", "moof", b"moof"),
)

_MATROSKA = (
    SignaturePattern(CONTAINER, "matroska", "ebml", b"\x1A\x45\xDF\xA3"),
    SignaturePattern(CONTAINER, "matroska", "doctype", b"matroska"),
    SignaturePattern(CONTAINER, "matroska", "webm", b"webm"),
    SignaturePattern(CONTAINER, "matroska", "segment", b"\x18\x53\x80\x67"),
    SignaturePattern(CONTAINER, "matroska", "cluster", b"\x1F\x43\xB6\x75"),
)

_AVI = (
    SignaturePattern(CONTAINER, "avi", "riff", b"RIFF"),
    SignaturePattern(CONTAINER, "avi", "avi", b"AVI "),
    SignaturePattern(CONTAINER, "avi", "movi", b"movi"),
    SignaturePattern(CONTAINER, "avi", "idx1", b"idx1"),
)

# ══════════════════════════════════════════════════════════════
#  V I D E O   C O D E C S
# ══════════════════════════════════════════════════════════════

_H264 = (
    SignaturePattern(VIDEO_CODEC, "h264", "avc1", b"avc1"),
    SignaturePattern(VIDEO_CODEC, "h264", "avcC", b"avcC"),
    SignaturePattern(VIDEO_CODEC, "h264", "sps", b"\x00\x00\x01\x67"),
    SignaturePattern(VIDEO_CODEC, "h264", "pps", b"\x00\x00\x01\x68"),
    SignaturePattern(VIDEO_CODEC, "h264", "idr", b"\x00\x00\x01\x65"),
)

_H265 = (
    SignaturePattern(VIDEO_CODEC, "h265", "hvc1", b"hvc1"),
    SignaturePattern(VIDEO_CODEC, "h265", "hev1", b"hev1"),
    SignaturePattern(VIDEO_CODEC, "h265", "hvcC", b"hvcC"),
    SignaturePattern(VIDEO_CODEC, "h265", "vps", b"\x00\x00\x01\x40\x01"),
    SignaturePattern(VIDEO_CODEC, "h265", "sps", b"\x00\x00\x01\x42\x01"),
)

_MPEG2 = (
    SignaturePattern(VIDEO_CODEC, "mpeg2", "sequence", b"\x00\x00\x01\xB3"),
    SignaturePattern(VIDEO_CODEC, "mpeg2", "gop", b"\x00\x00\x01\xB8"),
    SignaturePattern(VIDEO_CODEC, "mpeg2", "pack", b"\x00\x00\x01\xBA"),
)

_MPEG4 = (
    SignaturePattern(VIDEO_CODEC, "mpeg4", "mp4v", b"mp4v"),
    SignaturePattern(VIDEO_CODEC, "mpeg4", "vos", b"\x00\x00\x01\xB0"),
    SignaturePattern(VIDEO_CODEC, "mpeg4", "vop", b"\x00\x00\x01\xB6"),
    SignaturePattern(VIDEO_CODEC, "mpeg4", "xvid", b"XVID"),
)

# ══════════════════════════════════════════════════════════════
#  A U D I O   C O D E C S
# ══════════════════════════════════════════════════════════════

_AAC = (
    SignaturePattern(AUDIO_CODEC, "aac", "mp4a", b"mp4a"),
    SignaturePattern(AUDIO_CODEC, "aac", "esds", b"esds"),
    SignaturePattern(AUDIO_CODEC, "aac", "adts", b"\xFF\xF1"),
)

_MP3 = (
    SignaturePattern(AUDIO_CODEC, "mp3", "id3", b"ID3\x03"),
    SignaturePattern(AUDIO_CODEC, "mp3", "id3v24", b"ID3\x04"),
    SignaturePattern(AUDIO_CODEC, "mp3", "frame", b"\xFF\xFB"),
    SignaturePattern(AUDIO_CODEC, "mp3", "lame", b"LAME"),
)

ALL_SIGNATURES: tuple[SignaturePattern, ...] = (
    _MP4 + _MATROSKA + _AVI
    + _H264 + _H265 + _MPEG2 + _MPEG4
    + _AAC + _MP3
)

# Codecs that the NAL unit scanner understands
ANNEXB_CODECS = ("h264", "h265")

# ffmpeg raw-stream muxer / demuxer names per codec
RAW_STREAM_FORMATS = {
    "h264": "h264",
    "h265": "hevc",
    "mpeg2": "mpeg2video",
    "mpeg4": "m4v",
    "aac": "adts",
    "mp3": "mp3",
}


def _find_all(data: bytes, pattern: bytes, limit: int) -> list[int]:
    """Find up to `limit` occurrences of pattern in data."""
    positions = []
    start = 0
    while len(positions) < limit:
        idx = data.find(pattern, start)
        if idx == -1:
            break
        positions.append(idx)
        start = idx + 1
    return positions


def _declare(matches: list[SignatureMatch], category: str) -> Optional[str]:
    """Pick the kind with the most distinct sub-signatures in a category.

    Ties go to the kind whose earliest match comes first in the file.
    """
    evidence: dict[str, set[str]] = {}
    first_seen: dict[str, int] = {}
    for m in matches:
        if m.category != category:
            continue
        evidence.setdefault(m.kind, set()).add(m.name)
        first_seen[m.kind] = min(first_seen.get(m.kind, m.offset), m.offset)
    if not evidence:
        return None
    return min(evidence, key=lambda k: (-len(evidence[k]), first_seen[k]))


def scan_signatures(reader: "MediaReader", config: "RepairConfig") -> SignatureReport:
    """Search the bounded file prefix for every known signature."""
    report = SignatureReport()
    prefix = reader.read_at(0, max(config.container_scan_limit, config.codec_scan_limit))
    container_window = prefix[:config.container_scan_limit]
    codec_window = prefix[:config.codec_scan_limit]

    for sig in config.signatures:
        window = container_window if sig.category == CONTAINER else codec_window
        for offset in _find_all(window, sig.pattern, config.max_matches_per_pattern):
            report.matches.append(SignatureMatch(
                category=sig.category, kind=sig.kind, offset=offset,
                pattern=sig.pattern, name=sig.name,
            ))

    report.matches.sort(key=lambda m: m.offset)
    report.container = _declare(report.matches, CONTAINER)
    report.video_codec = _declare(report.matches, VIDEO_CODEC)
    report.audio_codec = _declare(report.matches, AUDIO_CODEC)

    logger.debug(
        "Signatures: %d matches, container=%s video=%s audio=%s",
        len(report.matches), report.container,
        report.video_codec, report.audio_codec,
    )
    return report
