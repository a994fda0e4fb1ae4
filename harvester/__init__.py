"""
harvester package - Block List Harvester

Modules:
    config: Typed configuration model and JSON loading
    errors: Exception hierarchy shared by all stages
    downloader: Async downloads with an on-disk artifact cache
    archive: Bounded gzip / tar.gz decompression
    extract: Regex based line extraction
    aggregate: Per-tag merging and deduplication
    output: Hosts file and Lua renderers, atomic writes
    pipeline: Concurrent per-list processing and the output phase
    cli: Command line entry point
"""

__version__ = "1.0.0"
