"""Shared fixtures: config factory, in-memory fetcher and archive builders."""

from __future__ import annotations

import asyncio
import gzip
import io
import tarfile
from pathlib import Path
from typing import Any, Callable

import pytest

from harvester.config import Config, FilterList, parse_config
from harvester.downloader import RawArtifact, fingerprint
from harvester.errors import NetworkError

HOSTS_REGEX = r"^0\.0\.0\.0 (.*)"


def gzip_bytes(text: str) -> bytes:
    return gzip.compress(text.encode("utf-8"), mtime=0)


def tar_gz_bytes(members: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in members.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class FakeFetcher:
    """Serves artifacts from memory; a value that is an exception is raised instead."""

    def __init__(
        self,
        payloads: dict[str, bytes | BaseException],
        delays: dict[str, float] | None = None,
    ) -> None:
        self.payloads = payloads
        self.delays = delays or {}
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, filter_list: FilterList) -> RawArtifact:
        self.calls.append(filter_list.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(filter_list.id, 0))
            payload = self.payloads.get(filter_list.id)
            if payload is None:
                raise NetworkError(f"HTTP 404 for {filter_list.source}")
            if isinstance(payload, BaseException):
                raise payload
            return RawArtifact(filter_list.id, payload, fingerprint(payload))
        finally:
            self.in_flight -= 1


@pytest.fixture
def list_spec() -> Callable[..., dict[str, Any]]:
    """Build the JSON form of one list descriptor."""

    def factory(list_id: str, tags: list[str] | None = None, **overrides: Any) -> dict[str, Any]:
        spec: dict[str, Any] = {
            "id": list_id,
            "source": f"https://lists.example.org/{list_id}.txt",
            "regex": HOSTS_REGEX,
            "tags": tags if tags is not None else ["security"],
        }
        spec.update(overrides)
        return spec

    return factory


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Build a validated Config rooted in tmp_path."""

    def factory(
        lists: list[dict[str, Any]],
        out_format: str = "Hostsfile",
        **settings: Any,
    ) -> Config:
        data: dict[str, Any] = {
            "tmp_dir": str(tmp_path / "cache"),
            "out_dir": str(tmp_path / "out"),
            "out_format": out_format,
            "lists": lists,
        }
        if settings:
            data["settings"] = settings
        return parse_config(data)

    return factory
