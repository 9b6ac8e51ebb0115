# mediarepair — Corrupted Video Analysis & Repair Engine
# Pure-Python format reasoning; ffmpeg does the actual demux/decode/encode.
#
# Architecture (bottom → top):
#   config          — Immutable thresholds, limits, timeouts, encode settings
#   errors          — Exception taxonomy
#   logging_setup   — Extra levels, per-file log prefix, log rotation
#   mmap_reader     — Read-only mmap I/O + overlapped chunk iteration
#   signatures      — Container / video codec / audio codec byte signatures
#   box_walker      — ISO BMFF top-level box walk (validity per box)
#   nal_scanner     — Annex-B start code scan, NAL classification, SPS parse
#   damage_detector — Zero runs + impossible box sizes → corrupted regions
#   planner         — Severity tier + ordered repair strategies
#   mp4_builder     — Box writer with patched size fields, index synthesis
#   ffmpeg_tool     — External media tool (probe / remux / encode / concat)
#   file_repair     — One executor per strategy
#   verifier        — Probe + decode check of repair candidates
#   manager         — Per-file repair session and batch driver

__version__ = "1.1.0"
