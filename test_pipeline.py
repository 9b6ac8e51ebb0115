"""
Pipeline tests — per-file repair session, batch driver, logging and CLI.

Most tests drive the manager with a scripted ffmpeg; the last ones use
the real binary and skip when none can be found.
"""
import os
import json
import struct
import logging
import dataclasses

import pytest

import main as cli
from mediarepair.box_walker import iter_child_boxes
from mediarepair.config import DEFAULT_CONFIG
from mediarepair.errors import MediaToolError
from mediarepair.ffmpeg_tool import MediaTool, ToolResult
from mediarepair.logging_setup import SUMMARY, rotate_existing_log, configure_logging
from mediarepair.manager import RepairManager, ResultCode, _fmt_size
from mediarepair.planner import MISSING_ATOMS, NO_STREAM_UNITS, UNKNOWN_FORMAT, Severity


def filler(n, seed=0):
    return bytes(0x28 + (i + seed) % 200 for i in range(n))


def box(box_type, payload):
    return struct.pack(">I", 8 + len(payload)) + box_type + payload


def mp4_bytes():
    return (box(b"ftyp", b"isom" + struct.pack(">I", 0x200) + b"isomiso2")
            + box(b"moov", box(b"mvhd", filler(92)))
            + box(b"mdat", filler(4000)))


@pytest.fixture
def dirs(tmp_path):
    paths = {name: tmp_path / name for name in ("in", "out", "work")}
    for p in paths.values():
        p.mkdir()
    return paths


def media(dirs, name, data):
    path = dirs["in"] / name
    path.write_bytes(data)
    return str(path)


# ══════════════════════════════════════════════════════════════
#  Single file
# ══════════════════════════════════════════════════════════════

def test_repair_then_skip(dirs, fake_tool):
    src = media(dirs, "clip.mp4", mp4_bytes())
    out = str(dirs["out"] / "clip.mp4")
    manager = RepairManager(tool=fake_tool)

    first = manager.repair(src, out, str(dirs["work"]))
    assert first.code == ResultCode.SUCCESS
    assert first.strategy == "quick-fix"
    assert first.input_size == len(mp4_bytes())
    assert first.output_size == os.path.getsize(out)
    assert [a.label for a in first.attempts] == ["remux"]
    assert os.listdir(dirs["work"]) == []
    assert not any(n.endswith(".partial") for n in os.listdir(dirs["out"]))

    calls = len(fake_tool.calls)
    second = manager.repair(src, out, str(dirs["work"]))
    assert second.code == ResultCode.SKIPPED
    assert len(fake_tool.calls) == calls


def test_input_is_never_modified(dirs, fake_tool):
    data = mp4_bytes()
    src = media(dirs, "clip.mp4", data)
    RepairManager(tool=fake_tool).repair(src, str(dirs["out"] / "clip.mp4"), str(dirs["work"]))
    with open(src, "rb") as f:
        assert f.read() == data


@pytest.mark.parametrize("data", [None, b""])
def test_unreadable_input_fails(dirs, fake_tool, data):
    src = str(dirs["in"] / "broken.mp4")
    if data is not None:
        media(dirs, "broken.mp4", data)
    outcome = RepairManager(tool=fake_tool).repair(src, str(dirs["out"] / "broken.mp4"))
    assert outcome.code == ResultCode.FAILED
    assert outcome.reason
    assert fake_tool.calls == []


def test_all_strategies_exhausted(dirs, tool_factory):
    tool = tool_factory(duration=None)
    src = media(dirs, "clip.mp4", mp4_bytes())
    out = str(dirs["out"] / "clip.mp4")

    outcome = RepairManager(tool=tool).repair(src, out, str(dirs["work"]))
    assert outcome.code == ResultCode.FAILED
    assert outcome.reason.startswith("all ")
    assert outcome.attempts and not any(a.success for a in outcome.attempts)
    assert all(a.verification.reason == "probe failed" for a in outcome.attempts)
    assert not os.path.exists(out)
    assert os.listdir(dirs["work"]) == []


def test_unknown_format_goes_straight_to_fallback(dirs, tool_factory):
    tool = tool_factory(duration=None)
    src = media(dirs, "mystery.bin", filler(5000))
    outcome = RepairManager(tool=tool).repair(src, str(dirs["out"] / "mystery.mp4"),
                                              str(dirs["work"]))
    assert UNKNOWN_FORMAT in outcome.analysis.assessment.tags
    assert [a.label for a in outcome.attempts] == ["lenient-remux", "1-segments", "re-encode"]
    assert {a.strategy for a in outcome.attempts} == {"aggressive-fallback"}


def test_later_strategy_wins_when_earlier_ones_fail(dirs, tool_factory):
    tool = tool_factory()
    verdicts = iter([None, None])
    original_probe = tool.probe

    def probe(path):
        # quick-fix's two candidates are rejected, everything after passes
        if next(verdicts, "pass") is None:
            return None
        return original_probe(path)

    tool.probe = probe
    ftyp = box(b"ftyp", b"isom" + struct.pack(">I", 0x200) + b"isomiso2")
    sps = bytes.fromhex("6742001EF40A0FC8")
    pps = bytes.fromhex("68CE3880")
    payload = b"".join(struct.pack(">I", len(n)) + n
                       for n in (sps, pps, b"\x65\x88" + filler(40), b"\x41\x9A" + filler(30)))
    src = media(dirs, "no-index.mp4", ftyp + box(b"mdat", payload))

    outcome = RepairManager(tool=tool).repair(src, str(dirs["out"] / "no-index.mp4"),
                                              str(dirs["work"]))
    assert MISSING_ATOMS in outcome.analysis.assessment.tags
    assert outcome.code == ResultCode.SUCCESS
    assert outcome.strategy == "container-reconstruction"
    assert [a.success for a in outcome.attempts] == [False, False, True]
    with open(dirs["out"] / "no-index.mp4", "rb") as f:
        rebuilt = f.read()
    assert [b.box_type for b in iter_child_boxes(rebuilt)] == [b"ftyp", b"mdat", b"moov"]


def test_error_in_one_strategy_moves_on_to_the_next(dirs, fake_tool, monkeypatch, caplog):
    calls = []
    original_run = fake_tool.run

    def explode_once(args, timeout=None):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return original_run(args, timeout)

    monkeypatch.setattr(fake_tool, "run", explode_once)
    src = media(dirs, "clip.mp4", mp4_bytes())
    with caplog.at_level(logging.WARNING):
        outcome = RepairManager(tool=fake_tool).repair(src, str(dirs["out"] / "clip.mp4"),
                                                       str(dirs["work"]))
    assert outcome.code == ResultCode.SUCCESS
    assert outcome.strategy == "aggressive-fallback"
    assert [a.label for a in outcome.attempts] == ["lenient-remux"]
    assert os.listdir(dirs["work"]) == []
    assert any("[clip.mp4]" in r.getMessage() and "boom" in r.getMessage()
               for r in caplog.records)


def test_error_in_every_strategy_fails_the_file(dirs, fake_tool, monkeypatch):
    def explode(args, timeout=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(fake_tool, "run", explode)
    src = media(dirs, "clip.mp4", mp4_bytes())
    outcome = RepairManager(tool=fake_tool).repair(src, str(dirs["out"] / "clip.mp4"),
                                                   str(dirs["work"]))
    assert outcome.code == ResultCode.FAILED
    assert outcome.reason.startswith("all ")
    assert os.listdir(dirs["work"]) == []


def test_truncated_parameter_set_does_not_stop_the_chain(dirs, tool_factory):
    tool = tool_factory()
    original_run = tool.run
    runs = []

    def run(args, timeout=None):
        # quick-fix's two remuxes fail
        runs.append(args)
        if len(runs) <= 2:
            return ToolResult(1, stderr="moov atom not found")
        return original_run(args, timeout)

    tool.run = run
    ftyp = box(b"ftyp", b"isom" + struct.pack(">I", 0x200) + b"isomiso2")
    payload = b"".join(struct.pack(">I", len(n)) + n
                       for n in (b"\x67\x42", bytes.fromhex("68CE3880"),
                                 b"\x65\x88" + filler(40), b"\x41\x9A" + filler(30)))
    src = media(dirs, "short-sps.mp4", ftyp + box(b"mdat", payload))

    outcome = RepairManager(tool=tool).repair(src, str(dirs["out"] / "short-sps.mp4"),
                                              str(dirs["work"]))
    assert outcome.code == ResultCode.SUCCESS
    assert outcome.strategy == "aggressive-fallback"


def test_empty_extraction_moves_on_to_the_next_strategy(dirs, tool_factory):
    tool = tool_factory()
    original_run = tool.run
    outputs = []

    def run(args, timeout=None):
        # quick-fix remuxes and the raw bitstream copy both fail
        name = os.path.basename(args[-1])
        outputs.append(name)
        if name.startswith("quick-fix") or name == "video.h264":
            return ToolResult(1, stderr="Invalid data found when processing input")
        return original_run(args, timeout)

    tool.run = run
    data = (box(b"ftyp", b"isom" + struct.pack(">I", 0x200) + b"isomavc1")
            + box(b"moov", box(b"mvhd", filler(92)))
            + box(b"mdat", filler(4000)))
    src = media(dirs, "no-units.mp4", data)

    outcome = RepairManager(tool=tool).repair(src, str(dirs["out"] / "no-units.mp4"),
                                              str(dirs["work"]))
    assessment = outcome.analysis.assessment
    assert outcome.analysis.signatures.video_codec == "h264"
    assert outcome.analysis.units == []
    assert NO_STREAM_UNITS in assessment.tags
    names = list(assessment.strategy_names)
    assert names.index("stream-extraction") < names.index("aggressive-fallback")

    assert "video.h264" in outputs
    assert outcome.code == ResultCode.SUCCESS
    assert outcome.strategy == "aggressive-fallback"
    assert not any(a.strategy == "stream-extraction" for a in outcome.attempts)


def test_missing_ffmpeg_fails_the_file(dirs, monkeypatch):
    def no_tool(cls, config):
        raise MediaToolError("ffmpeg not found")

    monkeypatch.setattr(MediaTool, "from_config", classmethod(no_tool))
    src = media(dirs, "clip.mp4", mp4_bytes())
    outcome = RepairManager().repair(src, str(dirs["out"] / "clip.mp4"), str(dirs["work"]))
    assert outcome.code == ResultCode.FAILED
    assert "ffmpeg not found" in outcome.reason


# ══════════════════════════════════════════════════════════════
#  Batch
# ══════════════════════════════════════════════════════════════

@pytest.mark.parametrize("jobs", [1, 3])
def test_batch_counters(dirs, fake_tool, jobs, caplog):
    good = media(dirs, "good.mp4", mp4_bytes())
    done = media(dirs, "done.mp4", mp4_bytes())
    (dirs["out"] / "done.mp4").write_bytes(b"already repaired")
    missing = str(dirs["in"] / "missing.mp4")

    config = dataclasses.replace(DEFAULT_CONFIG, max_concurrent_files=jobs, progress_every=1)
    manager = RepairManager(config, tool=fake_tool)
    batch = [(p, str(dirs["out"] / os.path.basename(p))) for p in (good, done, missing)]
    with caplog.at_level(logging.INFO):
        report = manager.repair_batch(batch, str(dirs["work"]))

    assert (report.total, report.processed, report.skipped, report.errors) == (3, 1, 1, 1)
    assert len(report.outcomes) == 3
    assert [o.input_path for o in report.failed] == [missing]
    assert report.duration >= 0
    assert (dirs["out"] / "done.mp4").read_bytes() == b"already repaired"
    assert any(r.levelno == SUMMARY for r in caplog.records)
    assert any("Progress: 3/3" in r.getMessage() for r in caplog.records)


def test_analyze_reports_assessment(dirs):
    src = media(dirs, "clip.mp4", mp4_bytes())
    report = RepairManager().analyze(src).to_dict()
    assert report["container"] == "mp4"
    assert report["level"] == "none"
    assert report["boxes"]["top_level"] == ["ftyp", "moov", "mdat"]
    json.dumps(report)


def test_fmt_size():
    assert _fmt_size(512) == "512.0 B"
    assert _fmt_size(1536) == "1.5 KB"
    assert _fmt_size(5 * 1024 ** 3) == "5.0 GB"


# ══════════════════════════════════════════════════════════════
#  Logging and CLI
# ══════════════════════════════════════════════════════════════

def test_existing_log_is_rotated(tmp_path):
    log = tmp_path / "repair.log"
    assert rotate_existing_log(str(log)) is None
    log.write_text("old run\n")
    first = rotate_existing_log(str(log))
    assert not log.exists()
    with open(first, encoding="utf-8") as f:
        assert f.read() == "old run\n"

    log.write_text("second run\n")
    os.utime(log, (os.path.getmtime(first), os.path.getmtime(first)))
    second = rotate_existing_log(str(log))
    assert second != first
    assert os.path.exists(first) and os.path.exists(second)


def test_configure_logging_writes_log_file(tmp_path):
    log = tmp_path / "logs" / "run.log"
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        assert configure_logging(log_file=str(log)) is None
        logging.getLogger("mediarepair.test").log(SUMMARY, "Total: %d", 3)
        for h in root.handlers:
            h.flush()
        text = log.read_text(encoding="utf-8")
        assert "[SUMMARY] Total: 3" in text
        assert text.startswith("[")
    finally:
        for h in root.handlers[:]:
            root.removeHandler(h)
            h.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_cli_analyze_only(dirs, capsys):
    src = media(dirs, "clip.mp4", mp4_bytes())
    missing = str(dirs["in"] / "missing.mp4")
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        status = cli.main(["--analyze-only", src, missing])
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
    reports = json.loads(capsys.readouterr().out)
    assert status == 2
    assert reports[0]["file"] == src
    assert reports[0]["level"] == "none"
    assert "error" in reports[1]


def test_cli_repair_prints_summary(dirs, fake_tool, monkeypatch, capsys):
    monkeypatch.setattr(MediaTool, "from_config", classmethod(lambda cls, config: fake_tool))
    src = media(dirs, "clip.mp4", mp4_bytes())
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        status = cli.main(["-v", "-o", str(dirs["out"]), "--work-dir", str(dirs["work"]), src])
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
    captured = capsys.readouterr()
    assert status == 0
    assert "clip.mp4: Repaired with quick-fix" in captured.out
    assert "[clip.mp4] ✓ quick-fix/remux: playable" in captured.err
    assert (dirs["out"] / "clip.mp4").exists()


# ══════════════════════════════════════════════════════════════
#  Real ffmpeg
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def real_tool():
    try:
        return MediaTool.from_config(DEFAULT_CONFIG)
    except MediaToolError:
        pytest.skip("ffmpeg not available")


def make_clip(tool, path, *codec_args):
    result = tool.run(["-f", "lavfi", "-i", "testsrc=duration=2:size=320x240:rate=25",
                       *codec_args, "-pix_fmt", "yuv420p", str(path)], timeout=120)
    if not result.ok or not os.path.exists(path):
        pytest.skip("ffmpeg cannot create the test clip")


def test_real_ffmpeg_intact_clip(dirs, real_tool):
    src = dirs["in"] / "intact.mp4"
    make_clip(real_tool, src, "-c:v", "libx264", "-bf", "0")
    manager = RepairManager(tool=real_tool)
    assert manager.analyze(str(src)).assessment.level == Severity.NONE
    out = str(dirs["out"] / "intact.mp4")

    outcome = manager.repair(str(src), out, str(dirs["work"]))
    assert outcome.code == ResultCode.SUCCESS
    assert outcome.strategy == "quick-fix"
    source = real_tool.probe(str(src))
    repaired = real_tool.probe(out)
    assert "video" in [s.codec_type for s in repaired.streams]
    assert repaired.duration == pytest.approx(source.duration, abs=0.1)


def test_real_ffmpeg_damaged_index(dirs, real_tool):
    clean = dirs["work"] / "clean.mp4"
    make_clip(real_tool, clean, "-c:v", "libx264", "-bf", "0")
    data = clean.read_bytes()
    top = {b.box_type: b for b in iter_child_boxes(data)}
    if b"moov" not in top or b"mdat" not in top or top[b"moov"].offset < top[b"mdat"].offset:
        pytest.skip("unexpected box layout")
    moov = top[b"moov"]
    stts = data.find(b"stts", moov.offset)
    if stts < 0:
        pytest.skip("no sample table in clip")
    os.remove(clean)

    # Cut through the index: codec config survives, sample tables do not
    src = media(dirs, "damaged.mp4", data[:stts])
    manager = RepairManager(tool=real_tool)
    assert MISSING_ATOMS in manager.analyze(src).assessment.tags

    out = str(dirs["out"] / "damaged.mp4")
    outcome = manager.repair(src, out, str(dirs["work"]))
    assert outcome.code == ResultCode.SUCCESS
    assert real_tool.probe(out).duration > 0
