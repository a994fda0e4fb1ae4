"""
extract.py - Regex based entry extraction.

Each line of a list is searched once with the list's compiled pattern. The
entry is the first capture group, or the whole match for patterns without
groups. Lines that do not match are skipped silently.

Example:
    >>> pattern = re.compile(r"^0\\.0\\.0\\.0 (.*)")
    >>> match_line(pattern, "0.0.0.0 malicious.com")
    'malicious.com'
    >>> match_line(pattern, "# comment") is None
    True
"""
from __future__ import annotations

import re
from typing import Iterator, NamedTuple

from harvester.errors import ExtractionError

DEFAULT_MAX_LINE_LENGTH = 4096


class ExtractedEntry(NamedTuple):
    """One extracted value and the list it came from."""

    value: str
    list_id: str


def match_line(pattern: re.Pattern[str], line: str) -> str | None:
    """
    Apply pattern to a single line.

    Returns:
        The extracted value with trailing whitespace removed, or None if the
        line does not match, the group did not participate or the value is empty
    """
    match = pattern.search(line)
    if match is None:
        return None
    value = match.group(1) if pattern.groups else match.group(0)
    if value is None:
        return None
    return value.rstrip() or None


class ExtractedEntries:
    """
    Lazy view of the entries of one list.

    Every iteration re-reads the text from the start, so the sequence can be
    consumed more than once and always yields the same entries in file order.
    ExtractionError is raised from the iteration itself when a malformed line
    is reached.
    """

    def __init__(
        self,
        text: str,
        pattern: re.Pattern[str],
        list_id: str,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    ) -> None:
        self.text = text
        self.pattern = pattern
        self.list_id = list_id
        self.max_line_length = max_line_length

    def __iter__(self) -> Iterator[ExtractedEntry]:
        for number, line in enumerate(self.text.split("\n"), start=1):
            if line.endswith("\r"):
                line = line[:-1]
            if len(line) > self.max_line_length:
                raise ExtractionError(
                    f"line length {len(line)} exceeds {self.max_line_length}", number
                )
            if "\x00" in line:
                raise ExtractionError("NUL byte in line, content looks binary", number)
            value = match_line(self.pattern, line)
            if value is not None:
                yield ExtractedEntry(value, self.list_id)

    def values(self) -> frozenset[str]:
        return frozenset(entry.value for entry in self)


def extract_entries(
    text: str,
    pattern: re.Pattern[str],
    list_id: str,
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
) -> ExtractedEntries:
    return ExtractedEntries(text, pattern, list_id, max_line_length)
