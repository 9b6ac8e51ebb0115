"""Pytest configuration: a scripted stand-in for ffmpeg and context builders."""
import itertools

import pytest

from mediarepair.config import DEFAULT_CONFIG
from mediarepair.ffmpeg_tool import MediaTool, ProbeInfo, StreamInfo, ToolResult
from mediarepair.file_repair import RepairContext
from mediarepair.manager import analyze_media
from mediarepair.mmap_reader import MediaReader, open_media_file


class FakeMediaTool(MediaTool):
    """Records every ffmpeg call; 'succeeds' by writing a small output file."""

    def __init__(self, returncode=0, duration=2.0, decode_returncode=0, decode_stderr=""):
        super().__init__("ffmpeg", None, timeout=5, probe_timeout=5)
        self.returncode = returncode
        self.duration = duration
        self.decode_returncode = decode_returncode
        self.decode_stderr = decode_stderr
        self.calls = []
        self.probed = []

    def run(self, args, timeout=None):
        args = list(args)
        self.calls.append(args)
        if self.returncode != 0:
            return ToolResult(self.returncode, stderr="Invalid data found when processing input")
        with open(args[-1], "wb") as f:
            f.write(b"fake media output")
        return ToolResult(0)

    def probe(self, path):
        self.probed.append(path)
        if self.duration is None:
            return None
        return ProbeInfo(self.duration, "mov,mp4", [StreamInfo("video", "h264")])

    def decode_check(self, path, frames):
        return ToolResult(self.decode_returncode, stderr=self.decode_stderr)


@pytest.fixture
def tool_factory():
    return FakeMediaTool


@pytest.fixture
def fake_tool():
    return FakeMediaTool()


@pytest.fixture
def make_context(tmp_path):
    """Build a RepairContext for in-memory bytes written to tmp_path."""
    readers = []
    counter = itertools.count()

    def factory(data, tool, ext=".mp4", config=DEFAULT_CONFIG):
        src = tmp_path / f"input-{next(counter)}{ext}"
        src.write_bytes(data)
        media = open_media_file(str(src))
        reader = MediaReader.open(media)
        readers.append(reader)
        analysis = analyze_media(media, reader, config)
        work = tmp_path / f"work-{len(readers)}"
        work.mkdir()
        return RepairContext(media, reader, analysis, str(work), ext, config, tool)

    yield factory
    for reader in readers:
        reader.close()
