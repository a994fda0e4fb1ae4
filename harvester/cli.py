#!/usr/bin/env python3
"""
cli.py

Command line entry point.

Usage:
    harvester --config config.json [--log-level info] [--cache-policy validate]
    python -m harvester --config config.json

Exit status:
    0  at least one list succeeded and every output document was written
    1  every list failed, an output could not be written, or a fatal error
    2  usage error
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time
from pathlib import Path

from pydantic import ValidationError

from harvester import __version__
from harvester.aggregate import Normalization
from harvester.config import Config, RunSettings, load_config
from harvester.downloader import CachePolicy
from harvester.errors import ConfigError, HarvesterError
from harvester.pipeline import RunSummary, run

LOG_LEVEL_ENV = "HV_LOG_LEVEL"
LOG_LEVELS = ("debug", "info", "warning", "error")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harvester",
        description="Download block lists, extract entries and merge them per tag",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", default="config.json", help="Path to the JSON configuration")
    parser.add_argument(
        "-l",
        "--log-level",
        choices=LOG_LEVELS,
        default=os.environ.get(LOG_LEVEL_ENV, "warning").lower(),
        help=f"Log level (default: ${LOG_LEVEL_ENV} or warning)",
    )
    parser.add_argument("--concurrency", type=int, help="Max lists processed at once")
    parser.add_argument("--timeout", type=float, help="Request timeout in seconds")
    parser.add_argument(
        "--cache-policy",
        choices=[policy.value for policy in CachePolicy],
        help="When a cached download may be reused",
    )
    parser.add_argument(
        "--stale-fallback",
        action="store_true",
        default=None,
        help="Use the cached copy when a download fails",
    )
    parser.add_argument(
        "--normalize",
        choices=[mode.value for mode in Normalization],
        help="Entry normalization before deduplication",
    )
    return parser


def configure_logging(level: str) -> None:
    if level not in LOG_LEVELS:
        level = "warning"
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Return config with settings replaced by any command line overrides."""
    overrides = {
        "max_concurrency": args.concurrency,
        "timeout": args.timeout,
        "cache_policy": CachePolicy(args.cache_policy) if args.cache_policy else None,
        "stale_fallback": args.stale_fallback,
        "normalization": Normalization(args.normalize) if args.normalize else None,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if not overrides:
        return config
    try:
        settings = RunSettings.model_validate({**config.settings.model_dump(), **overrides})
    except ValidationError as e:
        raise ConfigError(f"invalid command line override: {e.errors()[0]['msg']}") from e
    return config.model_copy(update={"settings": settings})


def print_summary(summary: RunSummary) -> None:
    """Print formatted summary."""
    print("\n" + "=" * 60)
    print("📊 HARVEST SUMMARY")
    print("=" * 60)

    succeeded = summary.succeeded
    cached = sum(1 for outcome in succeeded if outcome.from_cache)
    print(f"\n📥 Lists: {len(succeeded)}/{len(summary.outcomes)} ok (cached: {cached})")

    for outcome in succeeded:
        if outcome.warning:
            print(f"   ⚠️  {outcome.list_id}: {outcome.warning}")

    if summary.failed:
        print(f"\n⚠️  Failed: {len(summary.failed)}")
        for outcome in summary.failed:
            stage = outcome.failed_stage.value if outcome.failed_stage else "processing"
            print(f"   - {outcome.list_id} ({stage}): {outcome.error}")

    print("\n📦 Output:")
    for tag, entries in summary.aggregated.items():
        marker = "❌" if tag in summary.write_errors else "  "
        print(f" {marker} {tag:<24} {len(entries):>10,} entries")
    for tag, error in summary.write_errors.items():
        print(f"   - {tag}: {error}")


def exit_status(summary: RunSummary) -> int:
    if summary.all_failed or summary.write_errors:
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = apply_overrides(load_config(Path(args.config)), args)
    except HarvesterError as e:
        print(f"\n❌ ERROR: {e}", file=sys.stderr)
        return 1

    try:
        print(f"🚀 Harvesting {len(config.lists)} lists...")
        print("-" * 60)

        start_time = time.time()
        summary = asyncio.run(run(config))
        total_time = time.time() - start_time
    except HarvesterError as e:
        print(f"\n❌ ERROR: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n🛑 Interrupted", file=sys.stderr)
        return 130

    print_summary(summary)
    print(f"\n⏱️  Total time: {total_time:.1f}s")
    status = exit_status(summary)
    if status == 0:
        print("✅ Harvest completed successfully!")
    return status


if __name__ == "__main__":
    sys.exit(main())
