"""
Analysis tests — signature scan, box walk, NAL unit scan and corruption
detection against small synthetic files built with struct.
"""
import random
import struct
import dataclasses

import pytest

from mediarepair.box_walker import walk_boxes
from mediarepair.config import DEFAULT_CONFIG
from mediarepair.damage_detector import (
    CorruptedRegion, ZERO_RUN, INVALID_SIZE_FIELD, MIXED,
    merge_regions, complement_regions, detect_corruption,
)
from mediarepair.errors import UnreadableInputError
from mediarepair.mmap_reader import MediaReader, open_media_file
from mediarepair.nal_scanner import (
    scan_stream_units, parse_h264_sps, scan_avcc_samples,
    H264_SPS, H264_PPS, H264_IDR, H264_SLICE,
)
from mediarepair.signatures import scan_signatures

# Baseline-profile SPS for 320x240, level 3.0
SPS_320x240 = bytes.fromhex("6742001EF40A0FC8")
PPS = bytes.fromhex("68CE3880")


def filler(n, seed=0):
    """Bytes 0x28..0xEF: no zeros, no start codes, no known signatures."""
    return bytes(0x28 + (i + seed) % 200 for i in range(n))


def box(box_type, payload):
    return struct.pack(">I", 8 + len(payload)) + box_type + payload


def simple_mp4():
    ftyp = box(b"ftyp", b"isom" + struct.pack(">I", 0x200) + b"isomavc1")
    moov = box(b"moov", box(b"mvhd", filler(92)))
    mdat = box(b"mdat", filler(4000))
    return ftyp + moov + mdat


def write(tmp_path, data, name="sample.bin"):
    path = tmp_path / name
    path.write_bytes(data)
    return str(path)


def open_reader(path):
    return MediaReader.open(open_media_file(path))


# ══════════════════════════════════════════════════════════════
#  Input checks
# ══════════════════════════════════════════════════════════════

def test_open_media_file_rejects_missing_and_empty(tmp_path):
    with pytest.raises(UnreadableInputError):
        open_media_file(str(tmp_path / "nope.mp4"))
    with pytest.raises(UnreadableInputError):
        open_media_file(write(tmp_path, b"", "empty.mp4"))
    with pytest.raises(UnreadableInputError):
        open_media_file(str(tmp_path))


def test_find_all_is_chunk_size_independent(tmp_path):
    data = filler(50) + b"\x00\x00\x01" + filler(13) + b"\x00\x00\x01\x00\x00\x01" + filler(20)
    path = write(tmp_path, data)
    expected = [50, 66, 69]
    with open_reader(path) as reader:
        for block in (6, 7, 8, 16, 1024):
            assert list(reader.find_all(b"\x00\x00\x01", block_size=block)) == expected


# ══════════════════════════════════════════════════════════════
#  Signature scanner
# ══════════════════════════════════════════════════════════════

def test_signatures_declare_mp4(tmp_path):
    path = write(tmp_path, simple_mp4())
    with open_reader(path) as reader:
        report = scan_signatures(reader, DEFAULT_CONFIG)
    assert report.container == "mp4"
    assert {m.name for m in report.matches_for("mp4")} >= {"ftyp", "moov", "mdat"}


def test_signatures_declare_matroska(tmp_path):
    data = b"\x1A\x45\xDF\xA3" + filler(20) + b"matroska" + filler(100)
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        report = scan_signatures(reader, DEFAULT_CONFIG)
    assert report.container == "matroska"


def test_signatures_h264_elementary_stream(tmp_path):
    data = (b"\x00\x00\x00\x01" + SPS_320x240 + b"\x00\x00\x00\x01" + PPS
            + b"\x00\x00\x01\x65\x88" + filler(200))
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        report = scan_signatures(reader, DEFAULT_CONFIG)
    assert report.container is None
    assert report.video_codec == "h264"
    assert report.format_known


def test_signatures_unknown_format(tmp_path):
    path = write(tmp_path, filler(5000))
    with open_reader(path) as reader:
        report = scan_signatures(reader, DEFAULT_CONFIG)
    assert report.container is None
    assert report.video_codec is None
    assert report.audio_codec is None
    assert not report.format_known


def test_signature_matches_are_capped(tmp_path):
    path = write(tmp_path, (b"ftyp" + filler(10)) * 20)
    with open_reader(path) as reader:
        report = scan_signatures(reader, DEFAULT_CONFIG)
    ftyp = [m for m in report.matches if m.name == "ftyp"]
    assert len(ftyp) == DEFAULT_CONFIG.max_matches_per_pattern


# ══════════════════════════════════════════════════════════════
#  Box walker
# ══════════════════════════════════════════════════════════════

def test_walk_well_formed_boxes_tile_the_file(tmp_path):
    data = simple_mp4()
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        walk = walk_boxes(reader, DEFAULT_CONFIG)
    assert [b.box_type for b in walk.blocks] == [b"ftyp", b"moov", b"mdat"]
    assert walk.invalid_count == 0
    assert walk.blocks[-1].end == len(data)
    for prev, nxt in zip(walk.blocks, walk.blocks[1:]):
        assert prev.end == nxt.offset
    assert walk.missing(DEFAULT_CONFIG.required_boxes) == []


@pytest.mark.parametrize("fill", [b"\x00", b"\xFF"])
def test_walk_terminates_on_garbage(tmp_path, fill):
    n = 4096 + 5
    path = write(tmp_path, fill * n)
    with open_reader(path) as reader:
        walk = walk_boxes(reader, DEFAULT_CONFIG)
    assert walk.steps <= n // 8 + 1
    assert all(b.size > 0 for b in walk.blocks)
    assert walk.valid_count == 0
    assert len(walk.blocks) == 1


def test_walk_large_size_box(tmp_path):
    payload = filler(100)
    mdat = struct.pack(">I4sQ", 1, b"mdat", 16 + len(payload)) + payload
    path = write(tmp_path, box(b"ftyp", b"isom\x00\x00\x02\x00") + mdat)
    with open_reader(path) as reader:
        walk = walk_boxes(reader, DEFAULT_CONFIG)
    mdat_block = walk.find(b"mdat")
    assert mdat_block is not None
    assert mdat_block.header_size == 16
    assert mdat_block.payload_size == 100


def test_walk_truncated_mdat_is_invalid(tmp_path):
    data = box(b"ftyp", b"isom\x00\x00\x02\x00") + struct.pack(">I4s", 10000, b"mdat") + filler(200)
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        walk = walk_boxes(reader, DEFAULT_CONFIG)
    assert walk.has(b"ftyp")
    assert walk.missing(DEFAULT_CONFIG.required_boxes) == [b"moov", b"mdat"]
    assert walk.invalid_count == 1
    assert walk.blocks[-1].end == len(data)


def test_walk_step_cap(tmp_path):
    config = dataclasses.replace(DEFAULT_CONFIG, max_box_steps=10)
    path = write(tmp_path, b"\x00" * 4096)
    with open_reader(path) as reader:
        walk = walk_boxes(reader, config)
    assert walk.truncated_walk
    assert walk.steps == 10
    assert walk.blocks[-1].end == 4096


# ══════════════════════════════════════════════════════════════
#  Stream unit scanner
# ══════════════════════════════════════════════════════════════

def h264_stream():
    return (
        filler(100)
        + b"\x00\x00\x00\x01" + SPS_320x240
        + b"\x00\x00\x00\x01" + PPS
        + b"\x00\x00\x01\x65\x88" + filler(300, seed=1)
        + b"\x00\x00\x01\x41\x9A" + filler(50, seed=2)
    )


def test_scan_units_classifies_and_sizes(tmp_path):
    data = h264_stream()
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        units = scan_stream_units(reader, "h264", DEFAULT_CONFIG)

    assert [u.unit_type for u in units] == [H264_SPS, H264_PPS, H264_IDR, H264_SLICE]
    assert [u.start_code_length for u in units] == [4, 4, 3, 3]
    assert units[0].offset == 100
    for prev, nxt in zip(units, units[1:]):
        assert prev.offset < nxt.offset
        assert prev.end == nxt.offset
    assert units[-1].end == len(data)
    assert all(u.size >= 0 for u in units)


def test_scan_units_independent_of_buffer_size(tmp_path):
    path = write(tmp_path, h264_stream())
    with open_reader(path) as reader:
        baseline = scan_stream_units(reader, "h264", DEFAULT_CONFIG)
        for size in (6, 7, 9, 16, 101):
            config = dataclasses.replace(DEFAULT_CONFIG, unit_buffer_size=size)
            assert scan_stream_units(reader, "h264", config) == baseline


def test_scan_units_skips_non_nal_codecs(tmp_path):
    path = write(tmp_path, h264_stream())
    with open_reader(path) as reader:
        assert scan_stream_units(reader, "mpeg2", DEFAULT_CONFIG) == []
        assert scan_stream_units(reader, None, DEFAULT_CONFIG) == []


def test_parse_sps_dimensions():
    info = parse_h264_sps(SPS_320x240)
    assert info is not None
    assert (info.width, info.height) == (320, 240)
    assert info.profile_idc == 66
    assert info.level_idc == 30
    assert parse_h264_sps(PPS) is None


def test_avcc_samples_group_access_units(tmp_path):
    def nal(body):
        return struct.pack(">I", len(body)) + body

    idr = b"\x65\x88" + filler(40)
    p1 = b"\x41\x9A" + filler(30, seed=3)
    p2 = b"\x41\x9A" + filler(20, seed=4)
    payload = nal(SPS_320x240) + nal(PPS) + nal(idr) + nal(p1) + nal(p2)
    path = write(tmp_path, filler(16) + payload)
    with open_reader(path) as reader:
        scan = scan_avcc_samples(reader, 16, 16 + len(payload))

    assert [s.is_sync for s in scan.samples] == [True, False, False]
    assert scan.samples[0].offset == 16
    assert sum(s.size for s in scan.samples) == len(payload)
    assert scan.sps == [SPS_320x240]
    assert scan.pps == [PPS]
    assert scan.resyncs == 0


# ══════════════════════════════════════════════════════════════
#  Corruption detector
# ══════════════════════════════════════════════════════════════

def test_zero_run_region_scenario(tmp_path):
    data = bytearray(filler(1_000_000))
    data[10_000:14_096] = b"\x00" * 4096
    path = write(tmp_path, bytes(data))
    with open_reader(path) as reader:
        for chunk in (4096, DEFAULT_CONFIG.detector_chunk_size):
            config = dataclasses.replace(DEFAULT_CONFIG, detector_chunk_size=chunk)
            scan = detect_corruption(reader, None, config)
            assert scan.regions == [CorruptedRegion(10_000, 14_096, ZERO_RUN)]
            assert scan.corruption_ratio == pytest.approx(0.004096)
            assert not scan.overflowed


def test_short_zero_run_is_ignored(tmp_path):
    data = filler(3000) + b"\x00" * 1000 + filler(3000)
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        scan = detect_corruption(reader, None, DEFAULT_CONFIG)
    assert scan.regions == []
    assert len(scan.valid_regions) == 1


def test_zero_run_at_end_of_file(tmp_path):
    data = filler(3000) + b"\x00" * 2048
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        scan = detect_corruption(reader, None, DEFAULT_CONFIG)
    assert scan.regions == [CorruptedRegion(3000, 5048, ZERO_RUN)]


def test_all_zero_file_is_fully_corrupted(tmp_path):
    path = write(tmp_path, b"\x00" * 10_000)
    with open_reader(path) as reader:
        scan = detect_corruption(reader, None, DEFAULT_CONFIG)
    assert scan.corruption_ratio == 1.0
    assert scan.valid_regions == []


def test_invalid_size_field_only_aligned_words(tmp_path):
    data = filler(64) + b"\x00\x00\x00\x05" + filler(61) + b"\x00\x00\x00\x02" + filler(100)
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        scan = detect_corruption(reader, "mp4", DEFAULT_CONFIG)
        assert scan.regions == [CorruptedRegion(64, 72, INVALID_SIZE_FIELD)]
        # Not an ISO BMFF file: no size-field check at all
        assert detect_corruption(reader, None, DEFAULT_CONFIG).regions == []


def test_size_words_inside_valid_boxes_are_not_corruption(tmp_path):
    payload = struct.pack(">IIII", 1, 2, 3, 4) + filler(200)
    data = box(b"ftyp", b"isom\x00\x00\x02\x00") + box(b"moov", payload) + box(b"mdat", filler(500))
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        structure = walk_boxes(reader, DEFAULT_CONFIG)
        assert detect_corruption(reader, "mp4", DEFAULT_CONFIG, structure).regions == []
        assert detect_corruption(reader, "mp4", DEFAULT_CONFIG).regions != []


def test_region_cap_flags_overflow(tmp_path):
    data = (filler(500) + b"\x00" * 1100) * 10
    config = dataclasses.replace(DEFAULT_CONFIG, max_corrupted_regions=3)
    path = write(tmp_path, data)
    with open_reader(path) as reader:
        scan = detect_corruption(reader, None, config)
    assert scan.overflowed
    assert len(scan.regions) <= 3


def _covered(regions):
    points = set()
    for r in regions:
        points.update(range(r.start, r.end))
    return points


def test_merge_is_sorted_disjoint_and_preserves_union():
    rng = random.Random(7)
    for _ in range(50):
        raw = []
        for _ in range(rng.randint(1, 20)):
            start = rng.randint(0, 500)
            raw.append(CorruptedRegion(start, start + rng.randint(1, 40),
                                       rng.choice([ZERO_RUN, INVALID_SIZE_FIELD])))
        merged = merge_regions(raw)
        for prev, nxt in zip(merged, merged[1:]):
            assert prev.end < nxt.start
        assert _covered(merged) == _covered(raw)


def test_merge_kinds():
    same = merge_regions([CorruptedRegion(0, 10, ZERO_RUN), CorruptedRegion(10, 20, ZERO_RUN)])
    assert same == [CorruptedRegion(0, 20, ZERO_RUN)]
    mixed = merge_regions([CorruptedRegion(5, 30, ZERO_RUN), CorruptedRegion(0, 8, INVALID_SIZE_FIELD)])
    assert mixed == [CorruptedRegion(0, 30, MIXED)]


def test_complement_covers_file_exactly_once():
    rng = random.Random(11)
    length = 600
    for _ in range(50):
        raw = []
        for _ in range(rng.randint(0, 10)):
            start = rng.randint(0, length - 1)
            raw.append(CorruptedRegion(start, min(length, start + rng.randint(1, 60)), ZERO_RUN))
        merged = merge_regions(raw)
        valid = complement_regions(merged, length)
        covered = sorted([(r.start, r.end) for r in merged] + [(v.start, v.end) for v in valid])
        pos = 0
        for start, end in covered:
            assert start == pos
            pos = end
        assert pos == length


def test_complement_drops_small_fragments():
    regions = [CorruptedRegion(100, 200, ZERO_RUN), CorruptedRegion(300, 5000, ZERO_RUN)]
    valid = complement_regions(regions, 8000, min_size=1024)
    assert [(v.start, v.end) for v in valid] == [(5000, 8000)]


def test_region_rejects_empty_range():
    with pytest.raises(ValueError):
        CorruptedRegion(10, 10, ZERO_RUN)
