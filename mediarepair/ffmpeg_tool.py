"""
External media tool — one place that runs ffmpeg / ffprobe.

Every subprocess call in the package goes through MediaTool.run(), which
enforces a timeout and never raises for a failed or hung run: the caller
gets a ToolResult and decides.  Binary lookup order:

  1. explicit path from RepairConfig
  2. the binary bundled with imageio-ffmpeg
  3. ffmpeg on PATH

ffprobe is optional — when it can't be found, probing falls back to
parsing the banner that `ffmpeg -i` prints on stderr.
"""

from __future__ import annotations

import os
import re
import json
import shutil
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .errors import MediaToolError

logger = logging.getLogger(__name__)

# Demuxer flags that keep going past broken packets / timestamps
TOLERANT_INPUT_ARGS = [
    "-err_detect", "ignore_err",
    "-fflags", "+genpts+igndts+discardcorrupt",
    "-analyzeduration", "200M",
    "-probesize", "200M",
]

RELAXED_INPUT_ARGS = [
    "-err_detect", "ignore_err",
    "-fflags", "+genpts+igndts+ignidx+discardcorrupt",
    "-analyzeduration", "400M",
    "-probesize", "400M",
]

# Substrings in decoder stderr that mean the output is not usable
HARD_ERRORS = (
    "invalid data",
    "error while decoding",
    "no such file",
    "could not open",
    "invalid return value",
    "moov atom not found",
)

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_STREAM_RE = re.compile(r"Stream #\d+:\d+.*?:\s*(Video|Audio):\s*([A-Za-z0-9_]+)")
_INPUT_RE = re.compile(r"Input #0,\s*([^,]+(?:,[^,]+)*?),\s*from")


@dataclass
class ToolResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def hard_error(self) -> Optional[str]:
        text = self.stderr.lower()
        for pattern in HARD_ERRORS:
            if pattern in text:
                return pattern
        return None


@dataclass
class StreamInfo:
    codec_type: str
    codec_name: str


@dataclass
class ProbeInfo:
    duration: float = 0.0
    format_name: str = ""
    streams: list[StreamInfo] = field(default_factory=list)


def find_ffmpeg(configured: str = "") -> Optional[str]:
    """Find an ffmpeg binary: configured path, imageio-ffmpeg bundle, or PATH."""
    if configured:
        return configured if os.path.isfile(configured) else shutil.which(configured)
    try:
        import imageio_ffmpeg
        return imageio_ffmpeg.get_ffmpeg_exe()
    except (ImportError, RuntimeError) as e:
        logger.debug("imageio-ffmpeg binary unavailable: %s", e)
    return shutil.which("ffmpeg")


def find_ffprobe(ffmpeg: Optional[str], configured: str = "") -> Optional[str]:
    """ffprobe from config, next to ffmpeg, or on PATH (may be None)."""
    if configured:
        return configured if os.path.isfile(configured) else shutil.which(configured)
    if ffmpeg:
        folder = os.path.dirname(ffmpeg)
        for name in ("ffprobe", "ffprobe.exe"):
            candidate = os.path.join(folder, name)
            if os.path.isfile(candidate):
                return candidate
    return shutil.which("ffprobe")


class MediaTool:
    """Thin, timeout-bounded wrapper around the ffmpeg command line."""

    def __init__(self, ffmpeg: str, ffprobe: Optional[str] = None,
                 timeout: float = 3600.0, probe_timeout: float = 120.0):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.timeout = timeout
        self.probe_timeout = probe_timeout

    @classmethod
    def from_config(cls, config) -> "MediaTool":
        ffmpeg = find_ffmpeg(config.ffmpeg_path)
        if not ffmpeg:
            raise MediaToolError(
                "ffmpeg not found — install imageio-ffmpeg or put ffmpeg on PATH")
        ffprobe = find_ffprobe(ffmpeg, config.ffprobe_path)
        logger.debug("Using ffmpeg=%s ffprobe=%s", ffmpeg, ffprobe or "(none)")
        return cls(ffmpeg, ffprobe, config.tool_timeout, config.probe_timeout)

    def _exec(self, cmd: list[str], timeout: float) -> ToolResult:
        logger.debug("exec: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, errors="replace",
                timeout=timeout, stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired as e:
            stderr = e.stderr or ""
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", "replace")
            logger.warning("%s timed out after %.0fs", os.path.basename(cmd[0]), timeout)
            return ToolResult(returncode=-1, stderr=stderr, timed_out=True)
        except OSError as e:
            logger.warning("Cannot run %s: %s", cmd[0], e)
            return ToolResult(returncode=-1, stderr=str(e))
        return ToolResult(proc.returncode, proc.stdout, proc.stderr)

    def run(self, args: Sequence[str], timeout: Optional[float] = None) -> ToolResult:
        """Run ffmpeg with `args` (no binary, -y / -hide_banner are added)."""
        cmd = [self.ffmpeg, "-hide_banner", "-nostdin", "-y", *args]
        return self._exec(cmd, timeout if timeout is not None else self.timeout)

    def probe(self, path: str) -> Optional[ProbeInfo]:
        """Container duration + stream list, or None if unreadable."""
        if self.ffprobe:
            result = self._exec([
                self.ffprobe, "-v", "quiet", "-print_format", "json",
                "-show_format", "-show_streams", path,
            ], self.probe_timeout)
            if result.ok:
                info = _parse_ffprobe_json(result.stdout)
                if info is not None:
                    return info
        result = self._exec([self.ffmpeg, "-hide_banner", "-nostdin", "-i", path],
                            self.probe_timeout)
        # `ffmpeg -i` with no output always exits non-zero; only stderr matters
        if result.timed_out:
            return None
        return _parse_ffmpeg_banner(result.stderr)

    def decode_check(self, path: str, frames: int) -> ToolResult:
        """Decode the first `frames` video frames to the null muxer."""
        cmd = [self.ffmpeg, "-hide_banner", "-nostdin", "-v", "error",
               "-i", path, "-frames:v", str(frames), "-f", "null", "-"]
        return self._exec(cmd, self.probe_timeout)


def _parse_ffprobe_json(text: str) -> Optional[ProbeInfo]:
    try:
        data = json.loads(text or "{}")
    except ValueError:
        return None
    fmt = data.get("format") or {}
    streams = [
        StreamInfo(s.get("codec_type", ""), s.get("codec_name", ""))
        for s in data.get("streams") or []
    ]
    if not fmt and not streams:
        return None
    try:
        duration = float(fmt.get("duration") or 0.0)
    except (TypeError, ValueError):
        duration = 0.0
    return ProbeInfo(duration, fmt.get("format_name", ""), streams)


def _parse_ffmpeg_banner(stderr: str) -> Optional[ProbeInfo]:
    streams = [
        StreamInfo(kind.lower(), codec)
        for kind, codec in _STREAM_RE.findall(stderr or "")
    ]
    m = _DURATION_RE.search(stderr or "")
    if not m and not streams:
        return None
    duration = 0.0
    if m:
        hours, minutes, seconds = m.groups()
        duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    fmt = _INPUT_RE.search(stderr or "")
    return ProbeInfo(duration, fmt.group(1).strip() if fmt else "", streams)
