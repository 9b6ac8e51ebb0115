"""
Verifier — is a repair candidate actually playable?

A candidate passes only if all of these hold:
  1. the file exists and is non-empty
  2. the probe reports a container with a positive duration
  3. decoding the first few video frames exits cleanly and prints none
     of the hard decoder errors

The verdict depends only on the candidate's bytes and the tool, never on
how the candidate was produced.
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import RepairConfig
    from .ffmpeg_tool import MediaTool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    passed: bool
    duration: float = 0.0
    reason: str = ""

    @property
    def status_icon(self) -> str:
        return "✓" if self.passed else "✗"


def verify_candidate(path: str, tool: "MediaTool",
                     config: "RepairConfig") -> VerificationResult:
    """Probe + short decode of one candidate file."""
    try:
        size = os.path.getsize(path)
    except OSError:
        return VerificationResult(False, reason="candidate missing")
    if size == 0:
        return VerificationResult(False, reason="candidate is empty")

    info = tool.probe(path)
    if info is None:
        return VerificationResult(False, reason="probe failed")
    if info.duration <= 0:
        return VerificationResult(False, reason="no positive duration")

    result = tool.decode_check(path, config.verify_frames)
    if result.timed_out:
        return VerificationResult(False, info.duration, "decode timed out")
    if result.returncode != 0:
        return VerificationResult(
            False, info.duration, f"decode exited with {result.returncode}")
    err = result.hard_error()
    if err:
        return VerificationResult(False, info.duration, f"decode error: {err}")

    logger.debug("Verified %s: %.2fs", os.path.basename(path), info.duration)
    return VerificationResult(True, info.duration, "playable")
