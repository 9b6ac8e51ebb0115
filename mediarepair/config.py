"""
Repair configuration — one immutable value per run.

Everything that used to be a module-level knob (scan windows, thresholds,
timeouts, encoder settings) lives here.  Build it once at startup, override
fields with ``dataclasses.replace``, and hand the same instance to every
component.  Nothing mutates it afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .signatures import ALL_SIGNATURES, SignaturePattern

KIB = 1024
MIB = 1024 * 1024


@dataclass(frozen=True)
class EncodeSettings:
    """Conservative re-encode profile used by the last fallback step."""
    video_codec: str = "libx264"
    preset: str = "veryslow"
    crf: int = 18
    profile: str = "high"
    level: str = "4.2"
    pix_fmt: str = "yuv420p"
    audio_codec: str = "aac"
    audio_bitrate: str = "384k"
    audio_rate: int = 48000

    def ffmpeg_args(self) -> list[str]:
        return [
            "-c:v", self.video_codec,
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-profile:v", self.profile,
            "-level", self.level,
            "-pix_fmt", self.pix_fmt,
            "-c:a", self.audio_codec,
            "-b:a", self.audio_bitrate,
            "-ar", str(self.audio_rate),
        ]


@dataclass(frozen=True)
class RepairConfig:
    """Configuration for analysis and repair."""
    # Signature scanning
    signatures: tuple[SignaturePattern, ...] = ALL_SIGNATURES
    container_scan_limit: int = 1 * MIB
    codec_scan_limit: int = 10 * MIB
    max_matches_per_pattern: int = 5

    # Structure / stream walking
    min_block_size: int = 8
    required_boxes: tuple[bytes, ...] = (b"ftyp", b"moov", b"mdat")
    max_box_steps: int = 2_000_000
    unit_buffer_size: int = 8 * KIB

    # Corruption detection
    detector_chunk_size: int = 1 * MIB
    zero_run_threshold: int = 1024
    min_valid_region: int = 1 * KIB
    max_corrupted_regions: int = 100_000

    # Planner thresholds (fraction of file size)
    severe_ratio: float = 0.50
    moderate_ratio: float = 0.20

    # External tool
    ffmpeg_path: str = ""
    ffprobe_path: str = ""
    tool_timeout: float = 3600.0
    probe_timeout: float = 120.0
    verify_frames: int = 5
    segment_seconds: int = 10
    encode: EncodeSettings = field(default_factory=EncodeSettings)

    # Index synthesis defaults
    default_fps: int = 30
    default_width: int = 1920
    default_height: int = 1080
    movie_timescale: int = 1000

    # Batch
    max_concurrent_files: int = 1
    progress_every: int = 10


DEFAULT_CONFIG = RepairConfig()
