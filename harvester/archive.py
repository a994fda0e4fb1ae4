"""
archive.py - Bounded decompression of downloaded lists.

Archive content is untrusted. Gzip output is produced in fixed size chunks and
checked against ArchiveLimits as it grows, so a decompression bomb fails with
TooLargeError long before it can exhaust memory.

Supported formats:
    None    bytes are UTF-8 text
    Gz      one gzip stream
    TarGz   gzip stream holding a tar archive; one member is read by exact name
"""
from __future__ import annotations

import io
import tarfile
import zlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from harvester.errors import (
    CorruptArchiveError,
    EncodingError,
    MemberNotFoundError,
    TooLargeError,
)

if TYPE_CHECKING:
    from harvester.config import Compression, RunSettings

# gzip header and trailer, maximum window
GZIP_WBITS: Final = 16 + zlib.MAX_WBITS

DECOMPRESS_CHUNK_SIZE: Final = 64 * 1024

#: Ratio checks only start once this much output exists; tiny files can
#: legitimately compress far beyond any sane ratio.
RATIO_CHECK_THRESHOLD: Final = 1024 * 1024


@dataclass(frozen=True)
class ArchiveLimits:
    """Upper bounds applied while unpacking one artifact."""

    max_bytes: int = 256 * 1024 * 1024
    max_ratio: float = 200.0

    @classmethod
    def from_settings(cls, settings: RunSettings) -> "ArchiveLimits":
        return cls(
            max_bytes=settings.max_decompressed_bytes,
            max_ratio=settings.max_compression_ratio,
        )

    def check(self, produced: int, consumed: int) -> None:
        """
        Raise TooLargeError if produced output breaks a limit.

        Args:
            produced: Decompressed bytes so far
            consumed: Size of the compressed input
        """
        if produced > self.max_bytes:
            raise TooLargeError(f"decompressed size exceeds {self.max_bytes} bytes")
        if produced > RATIO_CHECK_THRESHOLD and produced > self.max_ratio * max(consumed, 1):
            raise TooLargeError(
                f"compression ratio exceeds {self.max_ratio:g}:1 "
                f"({produced} bytes from {consumed})"
            )


def gunzip(data: bytes, limits: ArchiveLimits) -> bytes:
    """
    Decompress a single gzip stream within limits.

    Bytes after the end of the first stream are ignored.

    Raises:
        CorruptArchiveError: not gzip, damaged or truncated
        TooLargeError: output exceeds limits
    """
    if not data:
        raise CorruptArchiveError("empty gzip stream")

    decompressor = zlib.decompressobj(GZIP_WBITS)
    output = bytearray()
    pending = data
    try:
        while not decompressor.eof:
            chunk = decompressor.decompress(pending, DECOMPRESS_CHUNK_SIZE)
            if not chunk and decompressor.unconsumed_tail == pending:
                # zlib wants more input than there is
                break
            pending = decompressor.unconsumed_tail
            output += chunk
            limits.check(len(output), len(data))
    except zlib.error as e:
        raise CorruptArchiveError(f"invalid gzip data: {e}") from e

    if not decompressor.eof:
        raise CorruptArchiveError("truncated gzip stream")
    return bytes(output)


def read_tar_member(data: bytes, member: str, limits: ArchiveLimits) -> bytes:
    """
    Return the content of the tar member named exactly `member`.

    Raises:
        MemberNotFoundError: no member with that name
        CorruptArchiveError: malformed tar, or the member is not a regular file
        TooLargeError: member larger than limits.max_bytes
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as archive:
            for info in archive:
                if info.name != member:
                    continue
                if not info.isfile():
                    raise CorruptArchiveError(f"archive member is not a regular file: {member}")
                if info.size > limits.max_bytes:
                    raise TooLargeError(
                        f"archive member {member} has {info.size} bytes, "
                        f"limit is {limits.max_bytes}"
                    )
                handle = archive.extractfile(info)
                if handle is None:
                    raise CorruptArchiveError(f"cannot read archive member: {member}")
                return handle.read()
            # tarfile stops quietly at a bad header after the first one
            if data[archive.offset:].strip(b"\0"):
                raise CorruptArchiveError(
                    f"invalid tar archive: unreadable header at offset {archive.offset}"
                )
    except tarfile.TarError as e:
        raise CorruptArchiveError(f"invalid tar archive: {e}") from e
    raise MemberNotFoundError(member)


def decode_text(data: bytes) -> str:
    """Strict UTF-8 decoding; a leading byte order mark is dropped."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise EncodingError(f"content is not valid UTF-8 (byte {e.start}): {e.reason}") from e


def read_artifact(data: bytes, compression: Compression, limits: ArchiveLimits) -> str:
    """
    Turn raw artifact bytes into text according to the list's compression.

    Raises:
        ArchiveError: any of its subclasses, see module docstring
    """
    kind = compression.type
    if kind == "None":
        return decode_text(data)
    if kind == "Gz":
        return decode_text(gunzip(data, limits))
    if kind == "TarGz":
        tar_bytes = gunzip(data, limits)
        return decode_text(read_tar_member(tar_bytes, compression.archive_member_path, limits))
    raise CorruptArchiveError(f"unsupported compression: {kind}")
