from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

from harvester import pipeline
from harvester.config import LAST_CONFIG_FILE
from harvester.downloader import ArtifactCache, RawArtifact, fingerprint
from harvester.errors import MemberNotFoundError, NetworkError, StorageError
from harvester.pipeline import ListState, process_all, run
from tests.conftest import FakeFetcher, gzip_bytes, tar_gz_bytes

SECURITY_LIST = b"0.0.0.0 malicious.com\n0.0.0.0 evil.net\n# comment\n"


def _run(config, fetcher):
    return asyncio.run(run(config, fetcher))


def test_hostsfile_output(make_config, list_spec) -> None:
    config = make_config([list_spec("L1", tags=["security"])])

    summary = _run(config, FakeFetcher({"L1": SECURITY_LIST}))

    out = config.out_dir / "security.txt"
    assert out.read_text(encoding="utf-8") == "0.0.0.0 evil.net\n0.0.0.0 malicious.com\n"
    assert summary.written == [out]
    assert [outcome.state for outcome in summary.outcomes] == [ListState.DONE]


def test_lua_output_merges_gz_lists(make_config, list_spec) -> None:
    config = make_config(
        [
            list_spec("L1", tags=["ads"], regex=r"^(\S+)$"),
            list_spec("L2", tags=["ads"], regex=r"^(\S+)$", compression={"type": "Gz"}),
        ],
        out_format="Lua",
    )
    fetcher = FakeFetcher({"L1": b"b.com\na.com\n", "L2": gzip_bytes("a.com\nc.com\n")})

    _run(config, fetcher)

    assert (config.out_dir / "ads.lua").read_text(encoding="utf-8") == (
        'return {\n  "a.com",\n  "b.com",\n  "c.com",\n}\n'
    )


def test_missing_archive_member_fails_only_that_list(make_config, list_spec) -> None:
    config = make_config(
        [
            list_spec("packed", tags=["ads"], compression={"type": "TarGz", "archive_member_path": "ads.txt"}),
            list_spec("plain", tags=["security"]),
        ]
    )
    fetcher = FakeFetcher(
        {
            "packed": tar_gz_bytes({"other.txt": "0.0.0.0 x.example\n"}),
            "plain": SECURITY_LIST,
        }
    )

    summary = _run(config, fetcher)

    packed, plain = summary.outcomes
    assert packed.state is ListState.FAILED
    assert packed.failed_stage is ListState.DECOMPRESSING
    assert isinstance(packed.error, MemberNotFoundError)
    assert plain.ok
    assert (config.out_dir / "ads.txt").read_text(encoding="utf-8") == ""
    assert (config.out_dir / "security.txt").read_text(encoding="utf-8").count("\n") == 2


def test_failed_list_does_not_affect_others(make_config, list_spec) -> None:
    config = make_config(
        [list_spec("down", tags=["security"]), list_spec("up", tags=["security"])]
    )

    summary = _run(config, FakeFetcher({"up": b"0.0.0.0 only.example\n"}))

    down, up = summary.outcomes
    assert down.failed_stage is ListState.FETCHING
    assert isinstance(down.error, NetworkError)
    assert up.ok
    assert not summary.all_failed
    assert summary.aggregated == {"security": ("only.example",)}


def test_all_lists_failed_still_writes_empty_documents(make_config, list_spec) -> None:
    config = make_config([list_spec("a", tags=["ads"]), list_spec("b", tags=["tracking"])])

    summary = _run(config, FakeFetcher({}))

    assert summary.all_failed
    assert (config.out_dir / "ads.txt").read_text(encoding="utf-8") == ""
    assert (config.out_dir / "tracking.txt").read_text(encoding="utf-8") == ""


def test_overlong_line_fails_at_extraction(make_config, list_spec) -> None:
    config = make_config([list_spec("wide")], max_line_length=20)

    summary = _run(config, FakeFetcher({"wide": b"0.0.0.0 " + b"x" * 100 + b"\n"}))

    assert summary.outcomes[0].failed_stage is ListState.EXTRACTING


def test_list_without_matches_succeeds_empty(make_config, list_spec) -> None:
    config = make_config([list_spec("quiet")])

    summary = _run(config, FakeFetcher({"quiet": b"# nothing here\n"}))

    assert summary.outcomes[0].ok
    assert summary.outcomes[0].entries == frozenset()


def test_output_is_deterministic(make_config, list_spec) -> None:
    config = make_config(
        [list_spec("a", tags=["security", "ads"]), list_spec("b", tags=["ads"])]
    )
    payloads = {
        "a": b"0.0.0.0 z.example\n0.0.0.0 m.example\n",
        "b": b"0.0.0.0 m.example\n0.0.0.0 a.example\n",
    }

    _run(config, FakeFetcher(payloads))
    first = {p.name: p.read_bytes() for p in config.out_dir.iterdir()}
    _run(config, FakeFetcher(payloads, delays={"a": 0.05}))
    second = {p.name: p.read_bytes() for p in config.out_dir.iterdir()}

    assert first == second
    assert first["ads.txt"] == b"0.0.0.0 a.example\n0.0.0.0 m.example\n0.0.0.0 z.example\n"


def test_completion_order_does_not_matter(make_config, list_spec) -> None:
    config = make_config([list_spec(name) for name in ("slow", "medium", "fast")])
    payloads = {name: f"0.0.0.0 {name}.example\n".encode() for name in ("slow", "medium", "fast")}
    delays = {"slow": 0.06, "medium": 0.03, "fast": 0}

    summary = _run(config, FakeFetcher(payloads, delays))

    assert [outcome.list_id for outcome in summary.outcomes] == ["slow", "medium", "fast"]
    assert summary.aggregated["security"] == ("fast.example", "medium.example", "slow.example")


def test_concurrency_is_bounded(make_config, list_spec) -> None:
    names = [f"l{i}" for i in range(6)]
    config = make_config([list_spec(name) for name in names], max_concurrency=2)
    fetcher = FakeFetcher(
        {name: b"0.0.0.0 x.example\n" for name in names},
        delays={name: 0.02 for name in names},
    )

    asyncio.run(process_all(config, fetcher))

    assert fetcher.max_in_flight == 2
    assert sorted(fetcher.calls) == names


def test_unexpected_exception_is_captured(make_config, list_spec) -> None:
    config = make_config([list_spec("boom"), list_spec("fine")])
    fetcher = FakeFetcher({"boom": RuntimeError("bug"), "fine": b"0.0.0.0 fine.example\n"})

    summary = _run(config, fetcher)

    boom, fine = summary.outcomes
    assert boom.state is ListState.FAILED
    assert isinstance(boom.error, RuntimeError)
    assert boom.failed_stage is ListState.FETCHING
    assert fine.ok


def test_write_failure_is_isolated_per_tag(make_config, list_spec, monkeypatch) -> None:
    config = make_config([list_spec("a", tags=["ads", "security"])])
    real_replace = os.replace

    def failing_replace(src, dst):
        if str(dst).endswith("ads.txt"):
            raise PermissionError("read-only")
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", failing_replace)
    summary = _run(config, FakeFetcher({"a": SECURITY_LIST}))

    assert set(summary.write_errors) == {"ads"}
    assert summary.written == [config.out_dir / "security.txt"]
    assert sorted(p.name for p in config.out_dir.iterdir()) == ["security.txt"]


def test_last_config_is_saved(make_config, list_spec) -> None:
    config = make_config([list_spec("a")])

    _run(config, FakeFetcher({"a": SECURITY_LIST}))

    saved = json.loads((config.tmp_dir / LAST_CONFIG_FILE).read_text(encoding="utf-8"))
    assert [item["id"] for item in saved["lists"]] == ["a"]


def test_changed_source_invalidates_cache(make_config, list_spec) -> None:
    before = make_config([list_spec("a"), list_spec("b")])
    _run(before, FakeFetcher({"a": SECURITY_LIST, "b": SECURITY_LIST}))

    cache = ArtifactCache(before.tmp_dir)
    for list_id in ("a", "b"):
        data = b"0.0.0.0 cached.example\n"
        asyncio.run(cache.store(RawArtifact(list_id, data, fingerprint(data)), "x"))

    moved = make_config([list_spec("a", source="https://mirror.example.org/a.txt"), list_spec("b")])
    _run(moved, FakeFetcher({"a": SECURITY_LIST, "b": SECURITY_LIST}))

    assert not cache.data_path("a").exists()
    assert cache.data_path("b").exists()


def test_unwritable_output_dir_is_fatal(make_config, list_spec, tmp_path: Path) -> None:
    (tmp_path / "out").write_text("a file, not a directory", encoding="utf-8")
    config = make_config([list_spec("a")])
    fetcher = FakeFetcher({"a": SECURITY_LIST})

    with pytest.raises(StorageError):
        _run(config, fetcher)
    assert fetcher.calls == []


def test_unexpected_exception_keeps_its_stage(make_config, list_spec, monkeypatch) -> None:
    config = make_config([list_spec("a")])

    def broken_extract(*args, **kwargs):
        raise RuntimeError("bug")

    monkeypatch.setattr(pipeline, "extract_entries", broken_extract)
    summary = _run(config, FakeFetcher({"a": SECURITY_LIST}))

    assert summary.outcomes[0].failed_stage is ListState.EXTRACTING
    assert isinstance(summary.outcomes[0].error, RuntimeError)
