"""
downloader.py - Async Block List Downloader with an On-Disk Artifact Cache

Fetches the raw bytes of one configured list. Every list owns exactly one
cache entry under <tmp_dir>, so concurrent downloads of different lists
never touch the same file:

    raw/<id>         raw bytes as served (possibly compressed)
    meta/<id>.json   sidecar with ETag/Last-Modified, fingerprint and source

Cache policies:
    trust     cached bytes are reused without any request (default)
    validate  conditional GET; 304 Not Modified reuses the cached bytes
    refresh   always download

Redirects are followed by hand so an HTTPS source is never redirected to a
plain HTTP URL. Lists with Gz or TarGz compression are requested with
Accept-Encoding: identity and stored without transport decoding.
"""
from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import aiohttp
from aiohttp import hdrs
from yarl import URL

from harvester.errors import NetworkError, StorageError

if TYPE_CHECKING:
    from harvester.config import FilterList, RunSettings

logger = logging.getLogger(__name__)

# Sub directories of tmp_dir holding downloaded lists and their sidecars
RAW_DIR = "raw"
META_DIR = "meta"

READ_CHUNK_SIZE = 64 * 1024

MAX_REDIRECTS = 10
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


class CachePolicy(str, Enum):
    """When a cached download may be used instead of a new request."""

    TRUST = "trust"
    VALIDATE = "validate"
    REFRESH = "refresh"


@dataclass(frozen=True)
class RawArtifact:
    """Bytes retrieved for one list."""

    list_id: str
    data: bytes
    fingerprint: str
    from_cache: bool = False
    etag: str | None = None
    last_modified: str | None = None
    warning: str | None = None


def fingerprint(data: bytes) -> str:
    """Content fingerprint stored next to every cached artifact."""
    return hashlib.sha256(data).hexdigest()


async def _write_atomic(path: Path, data: bytes) -> None:
    temp_path = path.with_name(f".{path.name}.tmp")
    try:
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)
            await f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


# =============================================================================
# CACHE
# =============================================================================

class ArtifactCache:
    """Per-list storage of downloaded artifacts below tmp_dir."""

    def __init__(self, cache_dir: Path) -> None:
        self.root = Path(cache_dir) / RAW_DIR
        self.meta_root = Path(cache_dir) / META_DIR

    def prepare(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.meta_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"cannot create cache directory {self.root.parent}: {e}") from e

    def data_path(self, list_id: str) -> Path:
        return self.root / list_id

    def meta_path(self, list_id: str) -> Path:
        return self.meta_root / f"{list_id}.json"

    def _load_meta(self, list_id: str) -> dict[str, Any]:
        path = self.meta_path(list_id)
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                meta = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load cache metadata for %s: %s", list_id, e)
            return {}
        return meta if isinstance(meta, dict) else {}

    async def load(self, list_id: str, source: str | None = None) -> RawArtifact | None:
        """
        Return the cached artifact for list_id, or None.

        An entry recorded for a different source URL, or whose bytes no longer
        match the stored fingerprint, is dropped and treated as a miss.
        """
        data_path = self.data_path(list_id)
        if not data_path.exists():
            return None
        meta = self._load_meta(list_id)
        if source is not None and meta.get("source") not in (None, source):
            logger.info("Cached copy of %s belongs to another source, dropping it", list_id)
            self.invalidate(list_id)
            return None
        try:
            async with aiofiles.open(data_path, "rb") as f:
                data = await f.read()
        except OSError as e:
            logger.warning("Could not read cached copy of %s: %s", list_id, e)
            return None
        digest = fingerprint(data)
        if meta.get("fingerprint") not in (None, digest):
            logger.warning("Cached copy of %s is damaged, dropping it", list_id)
            self.invalidate(list_id)
            return None
        return RawArtifact(
            list_id=list_id,
            data=data,
            fingerprint=digest,
            from_cache=True,
            etag=meta.get("etag"),
            last_modified=meta.get("last_modified"),
        )

    async def store(self, artifact: RawArtifact, source: str) -> None:
        """Write artifact bytes and sidecar, each replaced atomically."""
        meta = {
            "source": source,
            "fingerprint": artifact.fingerprint,
            "fetched_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        if artifact.etag:
            meta["etag"] = artifact.etag
        if artifact.last_modified:
            meta["last_modified"] = artifact.last_modified
        try:
            await _write_atomic(self.data_path(artifact.list_id), artifact.data)
            await _write_atomic(
                self.meta_path(artifact.list_id),
                json.dumps(meta, indent=2, sort_keys=True).encode("utf-8"),
            )
        except OSError as e:
            raise StorageError(f"cannot write cache entry for {artifact.list_id}: {e}") from e

    def invalidate(self, list_id: str) -> None:
        for path in (self.data_path(list_id), self.meta_path(list_id)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"cannot remove cache entry {path}: {e}") from e


# =============================================================================
# FETCHER
# =============================================================================

class Fetcher:
    """Download lists through a shared aiohttp session, consulting the cache first."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        cache: ArtifactCache,
        settings: RunSettings,
    ) -> None:
        self.session = session
        self.cache = cache
        self.policy = CachePolicy(settings.cache_policy)
        self.timeout = settings.timeout
        self.stale_fallback = settings.stale_fallback
        self.allow_insecure_redirects = settings.allow_insecure_redirects
        self.max_bytes = settings.max_decompressed_bytes

    async def fetch(self, filter_list: FilterList) -> RawArtifact:
        """
        Return the raw artifact for filter_list.

        Raises:
            NetworkError: the download failed and no usable fallback exists
            StorageError: the downloaded bytes could not be cached
        """
        cached = None
        if self.policy is not CachePolicy.REFRESH:
            cached = await self.cache.load(filter_list.id, filter_list.source)

        if cached is not None and self.policy is CachePolicy.TRUST:
            logger.info("Unchanged: %s (cached)", filter_list.id)
            return cached

        headers = {}
        if cached is not None:
            if cached.etag:
                headers["If-None-Match"] = cached.etag
            if cached.last_modified:
                headers["If-Modified-Since"] = cached.last_modified

        try:
            artifact = await self._download(filter_list, headers, cached)
        except NetworkError as e:
            if not self.stale_fallback:
                raise
            fallback = cached or await self.cache.load(filter_list.id, filter_list.source)
            if fallback is None:
                raise
            logger.warning("%s: %s, using cached version", filter_list.id, e)
            return dataclasses.replace(fallback, warning=f"{e}, using cached version")

        if artifact.from_cache:
            logger.info("Unchanged: %s (not modified)", filter_list.id)
        else:
            logger.info("Updated: %s", filter_list.id)
            await self.cache.store(artifact, filter_list.source)
        return artifact

    async def _download(
        self,
        filter_list: FilterList,
        headers: dict[str, str],
        cached: RawArtifact | None,
    ) -> RawArtifact:
        url = filter_list.source
        # Compressed lists are stored exactly as served; the archive reader unpacks them
        raw_body = filter_list.compression.type != "None"
        if raw_body:
            headers = {**headers, "Accept-Encoding": "identity"}
        # Two passes at most: a 304 without cached bytes is retried unconditionally
        for _ in range(2):
            try:
                response = await self._follow_redirects(url, headers, raw_body)
                async with response:
                    if response.status == 304:
                        if cached is not None:
                            return cached
                        headers = {
                            key: value
                            for key, value in headers.items()
                            if key not in ("If-None-Match", "If-Modified-Since")
                        }
                        continue

                    if not 200 <= response.status < 300:
                        raise NetworkError(f"HTTP {response.status} for {url}")

                    content = await self._read_body(response)
                    return RawArtifact(
                        list_id=filter_list.id,
                        data=content,
                        fingerprint=fingerprint(content),
                        etag=response.headers.get("ETag"),
                        last_modified=response.headers.get("Last-Modified"),
                    )
            except asyncio.TimeoutError as e:
                raise NetworkError(f"timeout after {self.timeout:g}s for {url}") from e
            except aiohttp.ClientError as e:
                raise NetworkError(f"{type(e).__name__} for {url}: {e}") from e

        raise NetworkError(f"HTTP 304 without a cached copy for {url}")

    async def _follow_redirects(
        self,
        url: str,
        headers: dict[str, str],
        raw_body: bool,
    ) -> aiohttp.ClientResponse:
        """
        GET url, following redirects by hand.

        Every Location is checked before it is requested, so a refused
        target never receives a request.
        """
        target = URL(url)
        for _ in range(MAX_REDIRECTS + 1):
            response = await self.session.get(
                target,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                allow_redirects=False,
                auto_decompress=not raw_body,
            )
            location = response.headers.get(hdrs.LOCATION)
            if response.status not in REDIRECT_STATUSES or not location:
                return response
            response.release()

            next_target = target.join(URL(location))
            self._check_redirect(url, next_target)
            logger.debug("%s redirected to %s", target, next_target)
            target = next_target
        raise NetworkError(f"more than {MAX_REDIRECTS} redirects for {url}")

    def _check_redirect(self, url: str, target: URL) -> None:
        if target.scheme not in ("http", "https"):
            raise NetworkError(f"refusing redirect from {url} to unsupported URL {target}")
        if target.scheme == "https" or self.allow_insecure_redirects:
            return
        if URL(url).scheme == "https":
            raise NetworkError(f"refusing redirect from {url} to non-HTTPS {target}")

    async def _read_body(self, response: aiohttp.ClientResponse) -> bytes:
        if response.content_length is not None and response.content_length > self.max_bytes:
            raise NetworkError(
                f"response of {response.content_length} bytes exceeds limit of {self.max_bytes}"
            )
        body = bytearray()
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            body += chunk
            if len(body) > self.max_bytes:
                raise NetworkError(f"response exceeds limit of {self.max_bytes} bytes")
        return bytes(body)
