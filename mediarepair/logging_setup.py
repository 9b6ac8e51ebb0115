"""
Logging setup — levels, per-file prefixes and the run log.

Two extra levels sit between the standard ones:
  RECOVERY_DETAIL (15)  per-attempt detail, shown with --verbose
  SUMMARY         (25)  end-of-run totals, always shown

An existing log file is never appended to: it is renamed with a
timestamp suffix first, so each run gets a clean log.
"""

from __future__ import annotations

import os
import time
import logging
from typing import Optional

RECOVERY_DETAIL = 15
SUMMARY = 25

logging.addLevelName(RECOVERY_DETAIL, "DETAIL")
logging.addLevelName(SUMMARY, "SUMMARY")

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class FileLoggerAdapter(logging.LoggerAdapter):
    """Prefix every record with the name of the file being repaired."""

    def process(self, msg, kwargs):
        return f"[{self.extra['file']}] {msg}", kwargs


def for_file(logger: logging.Logger, name: str) -> FileLoggerAdapter:
    return FileLoggerAdapter(logger, {"file": name})


def rotate_existing_log(path: str) -> Optional[str]:
    """Move an existing log aside as <name>.<YYYYmmdd-HHMMSS>. Returns the new name."""
    if not os.path.exists(path):
        return None
    stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(os.path.getmtime(path)))
    backup = f"{path}.{stamp}"
    n = 1
    while os.path.exists(backup):
        backup = f"{path}.{stamp}-{n}"
        n += 1
    os.replace(path, backup)
    return backup


def configure_logging(verbose: bool = False, log_file: Optional[str] = None,
                      debug: bool = False) -> Optional[str]:
    """Console (and optional file) logging for a run.

    Returns the backup path if an old log file was rotated.
    """
    level = logging.DEBUG if debug else RECOVERY_DETAIL if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    backup = None
    if log_file:
        folder = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(folder, exist_ok=True)
        backup = rotate_existing_log(log_file)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    return backup
