"""
output.py - Render aggregated sets and write them to disk.

Rendering is pure: the same entries always give the same text. Writing goes
through a temporary file in the target directory followed by os.replace, so a
crash mid-write never leaves a truncated document behind.
"""
from __future__ import annotations

import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Callable, Final, Iterable

#: Address every blocked host resolves to in hosts file output
BLOCK_ADDRESS: Final = "0.0.0.0"

_LUA_ESCAPES: Final = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


class OutputFormat(str, Enum):
    """Result formats for the merged lists."""

    HOSTSFILE = "Hostsfile"
    LUA = "Lua"

    @property
    def extension(self) -> str:
        return ".lua" if self is OutputFormat.LUA else ".txt"


def render_hostsfile(entries: Iterable[str]) -> str:
    """
    Hosts file format as found in /etc/hosts.

    Example:
        >>> render_hostsfile(["evil.net", "malicious.com"])
        '0.0.0.0 evil.net\\n0.0.0.0 malicious.com\\n'
    """
    return "".join(f"{BLOCK_ADDRESS} {entry}\n" for entry in entries)


def lua_quote(value: str) -> str:
    """Quote value as a Lua string literal."""
    parts = []
    for char in value:
        if char in _LUA_ESCAPES:
            parts.append(_LUA_ESCAPES[char])
        elif ord(char) < 0x20 or ord(char) == 0x7F:
            # three digits so a following digit is not swallowed
            parts.append(f"\\{ord(char):03d}")
        else:
            parts.append(char)
    return '"' + "".join(parts) + '"'


def render_lua(entries: Iterable[str]) -> str:
    """
    Lua module returning a table of strings.

    Example:
        >>> print(render_lua(["evil.net", "malicious.com"]), end="")
        return {
          "evil.net",
          "malicious.com",
        }
    """
    lines = ["return {\n"]
    lines.extend(f"  {lua_quote(entry)},\n" for entry in entries)
    lines.append("}\n")
    return "".join(lines)


RENDERERS: Final[dict[OutputFormat, Callable[[Iterable[str]], str]]] = {
    OutputFormat.HOSTSFILE: render_hostsfile,
    OutputFormat.LUA: render_lua,
}


def render(output_format: OutputFormat, entries: Iterable[str]) -> str:
    return RENDERERS[OutputFormat(output_format)](entries)


def output_filename(tag: str, output_format: OutputFormat) -> str:
    return f"{tag}{OutputFormat(output_format).extension}"


def write_atomic(path: Path, text: str) -> None:
    """
    Replace path with text in one step.

    The temporary file lives next to the target so os.replace never crosses
    file systems. It is removed again if anything fails.
    """
    path = Path(path)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(text.encode("utf-8"))
            f.flush()
            os.fsync(f.fileno())
        # mkstemp creates 0600 files; outputs are meant to be published
        os.chmod(temp_name, 0o644)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise
