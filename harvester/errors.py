"""
errors.py - Exception hierarchy for the harvester pipeline.

Run-scoped errors (ConfigError, StorageError during pre-flight) abort a run.
List-scoped errors (NetworkError, ArchiveError, ExtractionError) are caught
at the list boundary in pipeline.process_list and recorded as a failure.
"""
from __future__ import annotations


class HarvesterError(Exception):
    """Base class for all harvester errors."""


class ConfigError(HarvesterError):
    """Invalid or unreadable configuration. Fatal, raised before any download."""


class NetworkError(HarvesterError):
    """Download failed: timeout, connection/TLS error, bad status or redirect."""


class ArchiveError(HarvesterError):
    """Raw artifact could not be turned into text."""


class CorruptArchiveError(ArchiveError):
    """Malformed gzip stream or tar structure."""


class MemberNotFoundError(ArchiveError):
    """The configured archive member is absent from the tar archive."""

    def __init__(self, member: str) -> None:
        super().__init__(f"member not found in archive: {member}")
        self.member = member


class TooLargeError(ArchiveError):
    """Decompressed content exceeded the configured size or ratio limit."""


class EncodingError(ArchiveError):
    """Content is not valid UTF-8 text."""


class ExtractionError(HarvesterError):
    """A line of the decompressed text is malformed."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class StorageError(HarvesterError):
    """Cache or output directory could not be read or written."""
