"""
pipeline.py

Main processing pipeline for block list harvesting.

Pipeline stages:
1. Per list, concurrently: fetch -> decompress -> extract
2. Barrier: wait until every list is DONE or FAILED
3. Aggregate entries per tag
4. Render and write one document per tag

A failing list is recorded and contributes nothing; it never stops the other
lists or the output phase. Every configured tag gets a document, even when all
of its lists failed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

import aiohttp

from harvester.aggregate import Contribution, aggregate
from harvester.archive import ArchiveLimits, read_artifact
from harvester.config import (
    Config,
    FilterList,
    RunSettings,
    changed_list_ids,
    load_last_config,
    save_last_config,
)
from harvester.downloader import ArtifactCache, Fetcher, RawArtifact
from harvester.errors import HarvesterError, StorageError
from harvester.extract import extract_entries
from harvester.output import OutputFormat, output_filename, render, write_atomic

logger = logging.getLogger(__name__)


class ListState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    DECOMPRESSING = "decompressing"
    EXTRACTING = "extracting"
    DONE = "done"
    FAILED = "failed"


class ArtifactSource(Protocol):
    async def fetch(self, filter_list: FilterList) -> RawArtifact: ...


@dataclass(frozen=True)
class ListOutcome:
    """Terminal state of one list."""

    list_id: str
    state: ListState
    entries: frozenset[str] = frozenset()
    error: BaseException | None = None
    failed_stage: ListState | None = None
    from_cache: bool = False
    warning: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is ListState.DONE


@dataclass
class RunSummary:
    """Everything a caller needs to report on a run."""

    outcomes: list[ListOutcome]
    aggregated: dict[str, tuple[str, ...]] = field(default_factory=dict)
    written: list[Path] = field(default_factory=list)
    write_errors: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[ListOutcome]:
        return [outcome for outcome in self.outcomes if outcome.ok]

    @property
    def failed(self) -> list[ListOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def all_failed(self) -> bool:
        return bool(self.outcomes) and not self.succeeded


# =============================================================================
# Stage 1: per-list processing
# =============================================================================

async def process_list(
    filter_list: FilterList,
    fetcher: ArtifactSource,
    settings: RunSettings,
) -> ListOutcome:
    """
    Drive one list from FETCHING to DONE.

    Errors scoped to this list are caught here and returned as a FAILED
    outcome naming the stage that failed. Unexpected exceptions are logged
    with their traceback and recorded the same way.
    """
    state = ListState.FETCHING
    try:
        artifact = await fetcher.fetch(filter_list)
        from_cache, warning = artifact.from_cache, artifact.warning

        state = ListState.DECOMPRESSING
        text = read_artifact(
            artifact.data, filter_list.compression, ArchiveLimits.from_settings(settings)
        )
        del artifact  # raw bytes are not needed past this point

        state = ListState.EXTRACTING
        entries = extract_entries(
            text, filter_list.regex, filter_list.id, settings.max_line_length
        ).values()
    except HarvesterError as e:
        logger.error("List %s failed while %s: %s", filter_list.id, state.value, e)
        return ListOutcome(filter_list.id, ListState.FAILED, error=e, failed_stage=state)
    except Exception as e:
        logger.exception("Unexpected error in list %s while %s", filter_list.id, state.value)
        return ListOutcome(filter_list.id, ListState.FAILED, error=e, failed_stage=state)

    if not entries:
        logger.warning("No lines matched in list %s", filter_list.id)
    else:
        logger.debug("%s: %d entries extracted", filter_list.id, len(entries))
    return ListOutcome(
        filter_list.id,
        ListState.DONE,
        entries=entries,
        from_cache=from_cache,
        warning=warning,
    )


async def process_all(config: Config, fetcher: ArtifactSource) -> list[ListOutcome]:
    """
    Process every list with at most max_concurrency in flight.

    Returns only once every list has reached DONE or FAILED. Outcomes are in
    configuration order whatever order the lists finished in.
    """
    settings = config.settings
    semaphore = asyncio.Semaphore(settings.max_concurrency)

    async def process_with_semaphore(filter_list: FilterList) -> ListOutcome:
        async with semaphore:
            return await process_list(filter_list, fetcher, settings)

    # process_list records its own failures; anything escaping it has no stage
    tasks = [process_with_semaphore(filter_list) for filter_list in config.lists]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    outcomes = []
    for filter_list, result in zip(config.lists, results):
        if isinstance(result, BaseException):
            logger.error(
                "Unexpected error processing list %s",
                filter_list.id,
                exc_info=(type(result), result, result.__traceback__),
            )
            outcomes.append(ListOutcome(filter_list.id, ListState.FAILED, error=result))
        else:
            outcomes.append(result)
    return outcomes


# =============================================================================
# Stages 3 and 4: aggregate, render, write
# =============================================================================

def write_outputs(
    aggregated: dict[str, tuple[str, ...]],
    out_dir: Path,
    output_format: OutputFormat,
) -> tuple[list[Path], dict[str, str]]:
    """
    Write one document per tag.

    A failed write is recorded for its tag and the remaining tags are still
    written.

    Returns:
        (written paths, {tag: error message})
    """
    written: list[Path] = []
    errors: dict[str, str] = {}
    for tag, entries in aggregated.items():
        path = Path(out_dir) / output_filename(tag, output_format)
        try:
            write_atomic(path, render(output_format, entries))
        except OSError as e:
            logger.error("Could not write %s: %s", path, e)
            errors[tag] = str(e)
            continue
        logger.info("Wrote %s (%d entries)", path, len(entries))
        written.append(path)
    return written, errors


async def run_pipeline(config: Config, fetcher: ArtifactSource) -> RunSummary:
    """Run all stages with an already prepared fetcher."""
    outcomes = await process_all(config, fetcher)

    contributions = [
        Contribution(filter_list.id, filter_list.tags, outcome.entries)
        for filter_list, outcome in zip(config.lists, outcomes)
        if outcome.ok
    ]
    aggregated = aggregate(contributions, config.tags(), config.settings.normalization)

    written, write_errors = write_outputs(aggregated, config.out_dir, config.out_format)
    return RunSummary(
        outcomes=outcomes,
        aggregated=aggregated,
        written=written,
        write_errors=write_errors,
    )


def prepare_directories(config: Config) -> ArtifactCache:
    """Create tmp_dir and out_dir. Failure aborts the run."""
    try:
        Path(config.out_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError(f"cannot create output directory {config.out_dir}: {e}") from e
    cache = ArtifactCache(config.tmp_dir)
    cache.prepare()
    return cache


def invalidate_changed(config: Config, cache: ArtifactCache) -> set[str]:
    """Drop cache entries of lists whose source or compression changed since the last run."""
    previous = load_last_config(config.tmp_dir)
    if previous is None:
        return set()
    changed = changed_list_ids(config, previous)
    for list_id in sorted(changed):
        logger.info("Configuration of %s changed, dropping cached copy", list_id)
        cache.invalidate(list_id)
    return changed


async def run(config: Config, fetcher: ArtifactSource | None = None) -> RunSummary:
    """
    Run the full pipeline for a validated configuration.

    Args:
        config: Validated configuration
        fetcher: Artifact source to use instead of downloading over HTTP

    Raises:
        StorageError: tmp_dir or out_dir cannot be created
    """
    cache = prepare_directories(config)
    invalidate_changed(config, cache)

    if fetcher is not None:
        summary = await run_pipeline(config, fetcher)
    else:
        settings = config.settings
        connector = aiohttp.TCPConnector(limit=settings.max_concurrency, limit_per_host=2)
        async with aiohttp.ClientSession(connector=connector) as session:
            summary = await run_pipeline(config, Fetcher(session, cache, settings))

    try:
        save_last_config(config)
    except OSError as e:
        logger.error("Error writing last config: %s", e)
    return summary
