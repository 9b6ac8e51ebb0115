"""
Recovery Planner — severity tier + ordered repair strategies.

Decision table (all matching rows apply; tags accumulate):

  Condition                                   Tag                   Floor
  ─────────────────────────────────────────   ───────────────────   ─────
  required ISO BMFF box missing               missing-atoms           2
  H.264/H.265 but no NAL units found          no-stream-units         3
  corrupted bytes > 50% of file               severe-corruption       4
  20% < corrupted ≤ 50%                       moderate-corruption     2
  0% < corrupted ≤ 20%                        minor-corruption        1
  too many corrupted regions to track         region-overflow         4
  no container and no codec recognised        unknown-format          4

Severity = highest floor reached (none < light < standard < heavy <
critical).  The severity expands into a strategy list, tag-specific
strategies and a container-specific rebuild are added, and the whole
list is sorted by priority — cheapest / least destructive first.

Strategies are a closed set of frozen dataclasses, one per kind, each
carrying its own parameters.  Executors dispatch on the type.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import ClassVar, Optional, TYPE_CHECKING

from .signatures import ANNEXB_CODECS

if TYPE_CHECKING:
    from .box_walker import BoxWalk
    from .config import RepairConfig
    from .damage_detector import CorruptionScan
    from .nal_scanner import StreamUnit
    from .signatures import SignatureReport

logger = logging.getLogger(__name__)

# ── Corruption-type tags ──
MISSING_ATOMS = "missing-atoms"
NO_STREAM_UNITS = "no-stream-units"
SEVERE_CORRUPTION = "severe-corruption"
MODERATE_CORRUPTION = "moderate-corruption"
MINOR_CORRUPTION = "minor-corruption"
REGION_OVERFLOW = "region-overflow"
UNKNOWN_FORMAT = "unknown-format"

MAX_PRIORITY = 5


class Severity(IntEnum):
    NONE = 0
    LIGHT = 1
    STANDARD = 2
    HEAVY = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()


class StrategyKind(str, Enum):
    QUICK_FIX = "quick-fix"
    CONTAINER_RECONSTRUCTION = "container-reconstruction"
    STREAM_EXTRACTION = "stream-extraction"
    GOP_RECONSTRUCTION = "gop-reconstruction"
    DEEP_RECOVERY = "deep-recovery"
    AGGRESSIVE_FALLBACK = "aggressive-fallback"


# ══════════════════════════════════════════════════════════════
#  Strategy variants
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Strategy:
    kind: ClassVar[StrategyKind]
    tier: ClassVar[int]
    priority: int = 0

    @property
    def name(self) -> str:
        return self.kind.value


@dataclass(frozen=True)
class QuickFix(Strategy):
    """Stream-copy remux; retried with permissive demux flags."""
    kind: ClassVar[StrategyKind] = StrategyKind.QUICK_FIX
    tier: ClassVar[int] = 1
    permissive_retry: bool = True


@dataclass(frozen=True)
class ContainerReconstruction(Strategy):
    """Rebuild ftyp + moov + mdat from what survives."""
    kind: ClassVar[StrategyKind] = StrategyKind.CONTAINER_RECONSTRUCTION
    tier: ClassVar[int] = 2
    reuse_index: bool = True


@dataclass(frozen=True)
class StreamExtraction(Strategy):
    """Pull raw video (+ audio) streams out and remux them."""
    kind: ClassVar[StrategyKind] = StrategyKind.STREAM_EXTRACTION
    tier: ClassVar[int] = 3
    include_audio: bool = True


@dataclass(frozen=True)
class GopReconstruction(Strategy):
    """Emit only GOPs anchored on a readable keyframe."""
    kind: ClassVar[StrategyKind] = StrategyKind.GOP_RECONSTRUCTION
    tier: ClassVar[int] = 3
    drop_corrupted_units: bool = True


@dataclass(frozen=True)
class DeepRecovery(Strategy):
    """Demux each valid byte range on its own, then concatenate."""
    kind: ClassVar[StrategyKind] = StrategyKind.DEEP_RECOVERY
    tier: ClassVar[int] = 4
    min_segment_size: int = 1024


@dataclass(frozen=True)
class AggressiveFallback(Strategy):
    """Lenient remux → fixed-interval segmentation → full re-encode."""
    kind: ClassVar[StrategyKind] = StrategyKind.AGGRESSIVE_FALLBACK
    tier: ClassVar[int] = 5
    segment_seconds: int = 10


_KIND_ORDER = {kind: i for i, kind in enumerate(StrategyKind)}

# Strategies implied by each severity tier
LEVEL_STRATEGIES: dict[Severity, tuple[type[Strategy], ...]] = {
    Severity.NONE: (QuickFix,),
    Severity.LIGHT: (QuickFix,),
    Severity.STANDARD: (QuickFix, ContainerReconstruction),
    Severity.HEAVY: (QuickFix, ContainerReconstruction, StreamExtraction, GopReconstruction),
    Severity.CRITICAL: (QuickFix, StreamExtraction, GopReconstruction, DeepRecovery),
}

# Structural rebuild appended for each container family
CONTAINER_STRATEGIES: dict[str, type[Strategy]] = {
    "mp4": ContainerReconstruction,
    "matroska": QuickFix,
    "avi": QuickFix,
}


@dataclass(frozen=True)
class RecoveryAssessment:
    """Outcome of analysis. Never mutated; re-analysis builds a new one."""
    level: Severity
    strategies: tuple[Strategy, ...]
    tags: frozenset[str] = field(default_factory=frozenset)
    corruption_ratio: float = 0.0
    missing_boxes: tuple[str, ...] = ()
    container: Optional[str] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self.strategies]

    def to_dict(self) -> dict:
        return {
            "level": self.level.label,
            "tags": sorted(self.tags),
            "strategies": [
                {"name": s.name, "priority": s.priority} for s in self.strategies
            ],
            "corruption_ratio": round(self.corruption_ratio, 6),
            "missing_boxes": list(self.missing_boxes),
            "container": self.container,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
        }


def _build(cls: type[Strategy], priority: int, config: "RepairConfig") -> Strategy:
    if cls is DeepRecovery:
        return DeepRecovery(priority=priority, min_segment_size=config.min_valid_region)
    if cls is AggressiveFallback:
        return AggressiveFallback(priority=priority, segment_seconds=config.segment_seconds)
    return cls(priority=priority)


def order_strategies(strategies: list[Strategy]) -> tuple[Strategy, ...]:
    """One entry per kind (lowest priority kept), ascending priority."""
    best: dict[StrategyKind, Strategy] = {}
    for s in strategies:
        current = best.get(s.kind)
        if current is None or s.priority < current.priority:
            best[s.kind] = s
    return tuple(sorted(best.values(), key=lambda s: (s.priority, _KIND_ORDER[s.kind])))


def assess(signatures: "SignatureReport", structure: Optional["BoxWalk"],
           units: list["StreamUnit"], corruption: "CorruptionScan",
           config: "RepairConfig") -> RecoveryAssessment:
    """Map analysis findings to a severity tier and a strategy list."""
    tags: set[str] = set()
    floor = 0
    candidates: list[Strategy] = []
    missing: list[bytes] = []

    def require(tag: str, level: int, cls: Optional[type[Strategy]] = None):
        nonlocal floor
        tags.add(tag)
        floor = max(floor, level)
        if cls is not None:
            candidates.append(_build(cls, level, config))

    if signatures.container == "mp4" and structure is not None:
        missing = structure.missing(config.required_boxes)
        if missing:
            require(MISSING_ATOMS, 2, ContainerReconstruction)

    if signatures.video_codec in ANNEXB_CODECS and not units:
        require(NO_STREAM_UNITS, 3, StreamExtraction)

    ratio = corruption.corruption_ratio
    if ratio > config.severe_ratio:
        require(SEVERE_CORRUPTION, 4, DeepRecovery)
    elif ratio > config.moderate_ratio:
        require(MODERATE_CORRUPTION, 2)
    elif ratio > 0:
        require(MINOR_CORRUPTION, 1)

    if corruption.overflowed:
        require(REGION_OVERFLOW, 4, DeepRecovery)

    fallback = _build(AggressiveFallback, MAX_PRIORITY, config)
    if not signatures.format_known:
        require(UNKNOWN_FORMAT, 4)
        strategies = (fallback,)
    else:
        level = Severity(floor)
        candidates.extend(_build(cls, cls.tier, config) for cls in LEVEL_STRATEGIES[level])
        container_cls = CONTAINER_STRATEGIES.get(signatures.container or "")
        if container_cls is not None:
            candidates.append(_build(container_cls, min(floor + 1, MAX_PRIORITY), config))
        candidates.append(fallback)

        if signatures.video_codec not in ANNEXB_CODECS:
            candidates = [c for c in candidates if not isinstance(c, GopReconstruction)]
        if signatures.video_codec is None:
            candidates = [c for c in candidates if not isinstance(c, StreamExtraction)]
        if signatures.container != "mp4":
            candidates = [c for c in candidates if not isinstance(c, ContainerReconstruction)]
        strategies = order_strategies(candidates)

    assessment = RecoveryAssessment(
        level=Severity(floor),
        strategies=strategies,
        tags=frozenset(tags),
        corruption_ratio=ratio,
        missing_boxes=tuple(t.decode("latin-1") for t in missing),
        container=signatures.container,
        video_codec=signatures.video_codec,
        audio_codec=signatures.audio_codec,
    )
    logger.debug("Assessment: level=%s tags=%s strategies=%s",
                 assessment.level.label, sorted(tags), assessment.strategy_names)
    return assessment
