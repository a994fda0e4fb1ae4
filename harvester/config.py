"""
config.py - Typed configuration for the harvester.

The JSON configuration is decoded once at the boundary into frozen pydantic
models. Everything past load_config() works on validated FilterList objects:
regexes are already compiled, compression is one of three closed variants and
ids/tags are safe to use as file names.

Example configuration:
    {
        "tmp_dir": "/var/cache/harvester",
        "out_dir": "./out",
        "out_format": "Hostsfile",
        "lists": [
            {
                "id": "urlhaus",
                "source": "https://urlhaus.abuse.ch/downloads/hostfile/",
                "regex": "^127\\\\.0\\\\.0\\\\.1\\\\s+(\\\\S+)",
                "tags": ["security"]
            },
            {
                "id": "bundle",
                "source": "https://example.org/lists.tar.gz",
                "compression": {"type": "TarGz", "archive_member_path": "lists/ads.txt"},
                "regex": "^(\\\\S+)$",
                "tags": ["ads"]
            }
        ]
    }
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Annotated, Any, Final, Literal, Union
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from harvester.aggregate import Normalization
from harvester.downloader import CachePolicy
from harvester.errors import ConfigError
from harvester.extract import DEFAULT_MAX_LINE_LENGTH
from harvester.output import OutputFormat, write_atomic

logger = logging.getLogger(__name__)

#: Config of the previous run, kept in tmp_dir to detect changed lists
LAST_CONFIG_FILE: Final = "last_conf.json"

DEFAULT_MAX_DECOMPRESSED_BYTES: Final = 256 * 1024 * 1024
DEFAULT_MAX_COMPRESSION_RATIO: Final = 200.0

_UNSAFE_NAME_CHARS: Final = frozenset("/\\\x00")


def _check_file_name(value: str, what: str) -> str:
    """Reject values that cannot be used verbatim as a single path component."""
    if not value or value.strip() != value:
        raise ValueError(f"{what} must be non-empty without surrounding whitespace: {value!r}")
    if value.startswith(".") or _UNSAFE_NAME_CHARS & set(value):
        raise ValueError(f"{what} is not usable as a file name: {value!r}")
    return value


# =============================================================================
# COMPRESSION VARIANTS
# =============================================================================

class NoCompression(BaseModel):
    """Plain text list."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["None"] = "None"


class Gz(BaseModel):
    """Single gzip stream."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["Gz"] = "Gz"


class TarGz(BaseModel):
    """Gzipped tar archive; only the member at archive_member_path is read."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["TarGz"] = "TarGz"
    archive_member_path: str = Field(
        min_length=1,
        validation_alias=AliasChoices("archive_member_path", "archive_list_file"),
    )


Compression = Annotated[Union[NoCompression, Gz, TarGz], Field(discriminator="type")]


# =============================================================================
# LIST DESCRIPTOR
# =============================================================================

class FilterList(BaseModel):
    """One configured block list and the rules to extract entries from it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    source: str
    compression: Compression = Field(default_factory=NoCompression)
    regex: re.Pattern[str]
    tags: tuple[str, ...]
    comment: str | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        return _check_file_name(value, "list id")

    @field_validator("source")
    @classmethod
    def _validate_source(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"source must be an http(s) URL: {value!r}")
        return value

    @field_validator("compression", mode="before")
    @classmethod
    def _null_compression(cls, value: Any) -> Any:
        # "compression": null is the same as leaving it out
        if value is None:
            return {"type": "None"}
        return value

    @field_validator("tags")
    @classmethod
    def _validate_tags(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("at least one tag is required")
        unique: dict[str, None] = {}
        for tag in value:
            unique[_check_file_name(tag, "tag")] = None
        return tuple(unique)


# =============================================================================
# RUN SETTINGS AND TOP LEVEL CONFIG
# =============================================================================

class RunSettings(BaseModel):
    """Tunables for a run. All have defaults; the CLI may override them."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_concurrency: int = Field(default=8, ge=1)
    timeout: float = Field(default=30.0, gt=0)
    cache_policy: CachePolicy = CachePolicy.TRUST
    stale_fallback: bool = False
    allow_insecure_redirects: bool = False
    max_decompressed_bytes: int = Field(default=DEFAULT_MAX_DECOMPRESSED_BYTES, ge=1)
    max_compression_ratio: float = Field(default=DEFAULT_MAX_COMPRESSION_RATIO, gt=1)
    max_line_length: int = Field(default=DEFAULT_MAX_LINE_LENGTH, ge=1)
    normalization: Normalization = Normalization.NONE


class Config(BaseModel):
    """Validated configuration of a whole run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tmp_dir: Path = Field(validation_alias=AliasChoices("tmp_dir", "cache_dir"))
    out_dir: Path = Field(validation_alias=AliasChoices("out_dir", "output_dir"))
    out_format: OutputFormat = Field(
        validation_alias=AliasChoices("out_format", "output_format"),
    )
    lists: tuple[FilterList, ...] = Field(min_length=1)
    settings: RunSettings = Field(default_factory=RunSettings)

    @model_validator(mode="after")
    def _unique_ids(self) -> "Config":
        seen: set[str] = set()
        for filter_list in self.lists:
            if filter_list.id in seen:
                raise ValueError(f"duplicate list id: {filter_list.id!r}")
            seen.add(filter_list.id)
        return self

    def tags(self) -> list[str]:
        """All configured tags in order of first appearance."""
        tags: dict[str, None] = {}
        for filter_list in self.lists:
            for tag in filter_list.tags:
                tags.setdefault(tag, None)
        return list(tags)

    def lists_with_tag(self, tag: str) -> list[FilterList]:
        return [filter_list for filter_list in self.lists if tag in filter_list.tags]


# =============================================================================
# LOADING
# =============================================================================

def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "<root>"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


def parse_config(data: Any) -> Config:
    """
    Validate decoded JSON into a Config.

    Raises:
        ConfigError: on any schema violation, duplicate id or bad regex
    """
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a JSON object")
    try:
        return Config.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {_format_validation_error(exc)}") from exc


def load_config(path: Path) -> Config:
    """Read and validate a JSON configuration file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in {path}: {exc}") from exc
    return parse_config(data)


def load_last_config(tmp_dir: Path) -> Config | None:
    """Return the configuration saved by the previous run, if usable."""
    path = Path(tmp_dir) / LAST_CONFIG_FILE
    if not path.exists():
        logger.debug("no cached config found")
        return None
    try:
        return load_config(path)
    except ConfigError as exc:
        logger.warning("Ignoring unusable %s: %s", LAST_CONFIG_FILE, exc)
        return None


def save_last_config(config: Config) -> Path:
    """Write config to tmp_dir for comparison on the next run."""
    path = Path(config.tmp_dir) / LAST_CONFIG_FILE
    payload = config.model_dump(mode="json")
    write_atomic(path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
    return path


def changed_list_ids(current: Config, previous: Config) -> set[str]:
    """
    Ids of lists whose download or unpacking rules differ from the last run.

    Lists that are new in this run are not reported; they have no cache entry.
    """
    before = {filter_list.id: filter_list for filter_list in previous.lists}
    changed = set()
    for filter_list in current.lists:
        old = before.get(filter_list.id)
        if old is None:
            continue
        if (
            old.source != filter_list.source
            or old.compression.model_dump() != filter_list.compression.model_dump()
        ):
            changed.add(filter_list.id)
    return changed
