"""Exceptions raised inside the repair engine.

None of these escape ``RepairManager.repair``; they are turned into a
failed outcome there.
"""


class MediaRepairError(Exception):
    """Base class for repair engine errors."""


class UnreadableInputError(MediaRepairError):
    """Input is missing, empty, not a regular file, or not readable."""


class MediaToolError(MediaRepairError):
    """No usable ffmpeg binary could be located."""
