"""
Container Structure Walker — ISO Base Media (MP4/MOV) top-level boxes.

Walk rules:
  • read a 4-byte big-endian size + 4-byte type
  • size == 1 → 64-bit large size follows the type
  • size < header or size > bytes remaining → box is INVALID, step 8 bytes
  • otherwise the box is VALID, step `size` bytes
  • stop when fewer than 8 bytes remain

Consecutive invalid steps are folded into one invalid Block so a long
garbage region costs one record, not one per 8 bytes.  Every step moves
forward by at least 8 bytes, so the walk is bounded by N/8 + 1 steps.

Also here: in-memory walking of nested boxes, used to decide whether a
surviving 'moov' is internally sound enough to reuse.
"""

from __future__ import annotations

import struct
import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .config import RepairConfig
    from .mmap_reader import MediaReader

logger = logging.getLogger(__name__)

BOX_HEADER_SIZE = 8
LARGE_BOX_HEADER_SIZE = 16

# Boxes whose payload is nothing but child boxes
CONTAINER_BOXES = {
    b"moov", b"trak", b"mdia", b"minf", b"stbl",
    b"edts", b"dinf", b"mvex", b"moof", b"traf",
}

# Full-box header (version + flags) precedes children in these
_FULLBOX_CONTAINERS = {b"meta": 4}


@dataclass(frozen=True)
class Block:
    """One top-level box (or a run of unparseable bytes)."""
    box_type: bytes
    offset: int
    size: int               # bytes covered by this block (never 0)
    declared_size: int      # raw size field as read from the file
    is_valid: bool
    header_size: int = BOX_HEADER_SIZE

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def payload_offset(self) -> int:
        return self.offset + self.header_size

    @property
    def payload_size(self) -> int:
        return self.size - self.header_size

    @property
    def type_str(self) -> str:
        return self.box_type.decode("latin-1")


@dataclass
class BoxWalk:
    """Ordered top-level block sequence of one file."""
    blocks: list[Block] = field(default_factory=list)
    steps: int = 0
    truncated_walk: bool = False

    @property
    def valid_count(self) -> int:
        return sum(1 for b in self.blocks if b.is_valid)

    @property
    def invalid_count(self) -> int:
        return sum(1 for b in self.blocks if not b.is_valid)

    def find(self, box_type: bytes) -> Optional[Block]:
        """First VALID block of the given type."""
        for b in self.blocks:
            if b.is_valid and b.box_type == box_type:
                return b
        return None

    def has(self, box_type: bytes) -> bool:
        return self.find(box_type) is not None

    def missing(self, required: tuple[bytes, ...]) -> list[bytes]:
        return [t for t in required if not self.has(t)]

    def valid_ranges(self) -> list[tuple[int, int]]:
        return [(b.offset, b.end) for b in self.blocks if b.is_valid]


def walk_boxes(reader: "MediaReader", config: "RepairConfig") -> BoxWalk:
    """Walk the top-level boxes of the whole file."""
    walk = BoxWalk()
    total = reader.size
    step = config.min_block_size
    pos = 0
    run_start = -1          # start of the current invalid run

    def close_run(end: int):
        nonlocal run_start
        if run_start >= 0:
            walk.blocks.append(Block(
                box_type=b"????", offset=run_start, size=end - run_start,
                declared_size=0, is_valid=False,
            ))
            run_start = -1

    while total - pos >= BOX_HEADER_SIZE:
        if walk.steps >= config.max_box_steps:
            logger.warning("Box walk stopped after %d steps at offset %d",
                           walk.steps, pos)
            walk.truncated_walk = True
            break
        walk.steps += 1

        header = reader.read_at(pos, LARGE_BOX_HEADER_SIZE)
        size, box_type = struct.unpack(">I4s", header[:8])
        declared = size
        header_size = BOX_HEADER_SIZE
        remaining = total - pos

        if size == 1 and len(header) >= LARGE_BOX_HEADER_SIZE:
            size = struct.unpack(">Q", header[8:16])[0]
            header_size = LARGE_BOX_HEADER_SIZE

        if size < header_size or size > remaining:
            if run_start < 0:
                run_start = pos
            pos += step
            continue

        close_run(pos)
        walk.blocks.append(Block(
            box_type=box_type, offset=pos, size=size,
            declared_size=declared, is_valid=True, header_size=header_size,
        ))
        pos += size

    if walk.truncated_walk:
        if run_start < 0:
            run_start = pos
        close_run(total)
    else:
        close_run(pos)

    logger.debug("Box walk: %d valid, %d invalid blocks in %d steps",
                 walk.valid_count, walk.invalid_count, walk.steps)
    return walk


# ══════════════════════════════════════════════════════════════
#  Nested (in-memory) box walking
# ══════════════════════════════════════════════════════════════

def iter_child_boxes(data: bytes, start: int = 0,
                     end: Optional[int] = None) -> Iterator[Block]:
    """Yield boxes laid out in data[start:end].

    Stops at the first box whose size is impossible; the caller can
    compare the last yielded end against `end` to tell if the children
    tiled the payload exactly.
    """
    if end is None:
        end = len(data)
    pos = start
    while end - pos >= BOX_HEADER_SIZE:
        size, box_type = struct.unpack_from(">I4s", data, pos)
        declared = size
        header_size = BOX_HEADER_SIZE
        if size == 1:
            if end - pos < LARGE_BOX_HEADER_SIZE:
                return
            size = struct.unpack_from(">Q", data, pos + 8)[0]
            header_size = LARGE_BOX_HEADER_SIZE
        elif size == 0:
            size = end - pos
        if size < header_size or pos + size > end:
            return
        yield Block(box_type, pos, size, declared, True, header_size)
        pos += size


def iter_boxes_recursive(data: bytes, start: int = 0,
                         end: Optional[int] = None,
                         path: tuple[bytes, ...] = ()) -> Iterator[tuple[tuple[bytes, ...], Block]]:
    """Depth-first walk through container boxes. Yields (path, box)."""
    for box in iter_child_boxes(data, start, end):
        box_path = path + (box.box_type,)
        yield box_path, box
        if box.box_type in CONTAINER_BOXES:
            yield from iter_boxes_recursive(data, box.payload_offset, box.end, box_path)
        elif box.box_type in _FULLBOX_CONTAINERS:
            skip = _FULLBOX_CONTAINERS[box.box_type]
            yield from iter_boxes_recursive(data, box.payload_offset + skip, box.end, box_path)


def _children_tile(data: bytes, start: int, end: int) -> Optional[list[Block]]:
    children = list(iter_child_boxes(data, start, end))
    covered = children[-1].end if children else start
    if covered != end:
        return None
    return children


def validate_moov(moov: bytes) -> bool:
    """Check that a 'moov' box is internally consistent.

    Requires: children exactly tile the payload, an 'mvhd', at least one
    'trak', and for every track a sample table with the boxes a demuxer
    needs to locate samples.
    """
    if len(moov) < BOX_HEADER_SIZE or moov[4:8] != b"moov":
        return False
    top = iter_child_boxes(moov)
    moov_box = next(top, None)
    if moov_box is None or moov_box.end != len(moov):
        return False

    children = _children_tile(moov, moov_box.payload_offset, moov_box.end)
    if children is None:
        return False
    types = [c.box_type for c in children]
    if b"mvhd" not in types or b"trak" not in types:
        return False

    for trak in (c for c in children if c.box_type == b"trak"):
        found = set()
        for path, box in iter_boxes_recursive(moov, trak.payload_offset, trak.end, (b"trak",)):
            if box.box_type in CONTAINER_BOXES and \
                    _children_tile(moov, box.payload_offset, box.end) is None:
                return False
            found.add(box.box_type)
        if b"tkhd" not in found or b"stsd" not in found:
            return False
        if not ({b"stsz", b"stz2"} & found) or not ({b"stco", b"co64"} & found):
            return False
        if b"stsc" not in found or b"stts" not in found:
            return False
    return True
