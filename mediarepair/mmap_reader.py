"""
Read-only Media Reader — mmap + overlapped chunk iteration.

PROFESSIONAL APPROACH
─────────────────────
1. The input file is opened read-only and never modified; every repair
   output goes to a new file.
2. Memory-mapped I/O (mmap) for zero-copy slicing — the OS handles paging.
3. Fallback to plain seek()+read() if mmap fails (empty files, exotic FS).
4. Chunk iteration with overlap so byte patterns that straddle a chunk
   boundary are still found — exactly once.
"""

from __future__ import annotations

import os
import mmap
import stat
import logging
from dataclasses import dataclass
from typing import Iterator, Optional, BinaryIO

from .errors import UnreadableInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaFile:
    """The file being repaired. Immutable once opened for analysis."""
    path: str
    size: int
    mtime: float

    @property
    def name(self) -> str:
        return os.path.basename(self.path)


def open_media_file(path: str) -> MediaFile:
    """Stat and sanity-check an input file.

    Raises UnreadableInputError for missing, empty, non-regular or
    unreadable files.
    """
    try:
        st = os.stat(path)
    except FileNotFoundError:
        raise UnreadableInputError(f"File not found: {path}") from None
    except OSError as e:
        raise UnreadableInputError(f"Cannot stat {path}: {e}") from e

    if not stat.S_ISREG(st.st_mode):
        raise UnreadableInputError(f"Not a regular file: {path}")
    if st.st_size == 0:
        raise UnreadableInputError(f"File is empty: {path}")
    if not os.access(path, os.R_OK):
        raise UnreadableInputError(f"Permission denied: {path}")

    return MediaFile(path=os.path.abspath(path), size=st.st_size, mtime=st.st_mtime)


class MediaReader:
    """
    Read-only random access to a MediaFile.

    Usage:
        with MediaReader.open(media) as reader:
            header = reader.read_at(0, 8)
            for offset, chunk in reader.iter_chunks(block_size=1024 * 1024):
                ...
    """

    def __init__(self, fd: BinaryIO, total_size: int, use_mmap: bool = True):
        self._fd = fd
        self._size = total_size
        self._mmap: Optional[mmap.mmap] = None
        self._using_mmap = False

        if use_mmap and total_size > 0:
            self._try_mmap()

    @classmethod
    def open(cls, media: MediaFile, use_mmap: bool = True) -> "MediaReader":
        try:
            fd = open(media.path, "rb")
        except OSError as e:
            raise UnreadableInputError(f"Cannot open {media.path}: {e}") from e
        return cls(fd, media.size, use_mmap=use_mmap)

    def _try_mmap(self):
        try:
            self._mmap = mmap.mmap(self._fd.fileno(), 0, access=mmap.ACCESS_READ)
            self._using_mmap = True
        except (OSError, ValueError, OverflowError) as e:
            logger.info("mmap unavailable (%s), using buffered reads", e)
            self._mmap = None
            self._using_mmap = False

    @property
    def size(self) -> int:
        return self._size

    def read_at(self, offset: int, size: int) -> bytes:
        """
        Read up to `size` bytes starting at `offset`.

        Short reads happen only at end of file.
        """
        if offset < 0 or offset >= self._size:
            return b""
        size = min(size, self._size - offset)
        if size <= 0:
            return b""

        if self._using_mmap and self._mmap is not None:
            return self._mmap[offset:offset + size]

        self._fd.seek(offset)
        return self._fd.read(size)

    def iter_chunks(
        self,
        start: int = 0,
        end: int = 0,
        block_size: int = 1024 * 1024,
        overlap: int = 0,
    ) -> Iterator[tuple[int, bytes]]:
        """
        Iterate over the file in chunks, yielding (offset, data) tuples.

        Args:
            start:      Starting byte offset.
            end:        Ending byte offset (0 = end of file).
            block_size: Bytes per read.
            overlap:    Bytes re-read from the end of the previous chunk.
        """
        if end <= 0:
            end = self._size
        end = min(end, self._size)
        if overlap >= block_size:
            raise ValueError("overlap must be smaller than block_size")

        offset = start
        while offset < end:
            read_size = min(block_size, end - offset)
            chunk = self.read_at(offset, read_size)
            if not chunk:
                break

            yield offset, chunk

            if offset + len(chunk) >= end:
                break
            offset += len(chunk) - overlap

    def find_all(
        self,
        pattern: bytes,
        start: int = 0,
        end: int = 0,
        block_size: int = 1024 * 1024,
    ) -> Iterator[int]:
        """Yield every absolute offset of `pattern`, in increasing order.

        Consecutive chunks overlap by len(pattern) - 1 bytes, so a match
        spanning a chunk boundary is seen in exactly one chunk.
        """
        overlap = len(pattern) - 1
        block_size = max(block_size, len(pattern) * 2)
        next_allowed = start
        for offset, chunk in self.iter_chunks(start, end, block_size, overlap):
            idx = chunk.find(pattern)
            while idx != -1:
                absolute = offset + idx
                if absolute >= next_allowed:
                    yield absolute
                    next_allowed = absolute + 1
                idx = chunk.find(pattern, idx + 1)

    def copy_range(self, out: BinaryIO, start: int, end: int,
                   block_size: int = 4 * 1024 * 1024) -> int:
        """Copy bytes [start, end) into `out`. Returns bytes written."""
        written = 0
        if end <= start:
            return 0
        for _, chunk in self.iter_chunks(start, end, block_size):
            out.write(chunk)
            written += len(chunk)
        return written

    def close(self):
        if self._mmap is not None:
            try:
                self._mmap.close()
            except (BufferError, ValueError):
                pass
            self._mmap = None
            self._using_mmap = False
        self._fd.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
