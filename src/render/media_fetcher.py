"""Resolve layer sources to local files inside an attempt's working directory.

Supported sources:
- ``http://`` / ``https://``: streamed download with a size cap
- ``storage://<key>``: copied out of the configured object store
- ``file://<path>`` or a plain path: used in place
"""

import hashlib
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

import httpx

from src.config import get_settings
from src.exceptions import JobCancelledError, MediaFetchError
from src.services.storage_service import STORAGE_SCHEME, StorageService

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def _asset_filename(source: str) -> str:
    digest = hashlib.sha1(source.encode("utf-8")).hexdigest()[:16]
    suffix = Path(urlparse(source).path).suffix
    return f"{digest}{suffix}"


class MediaFetcher:
    """Fetches each distinct source at most once per working directory."""

    def __init__(
        self,
        assets_dir: str | Path,
        storage: StorageService | None = None,
        timeout_s: float | None = None,
        max_bytes: int | None = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        client: httpx.Client | None = None,
    ):
        settings = get_settings()
        self.assets_dir = Path(assets_dir)
        self.assets_dir.mkdir(parents=True, exist_ok=True)
        self.storage = storage
        self.timeout_s = timeout_s if timeout_s is not None else settings.media_fetch_timeout_s
        self.max_bytes = max_bytes if max_bytes is not None else settings.media_max_download_mb * 1024 * 1024
        self._cancel_check = cancel_check
        self._client = client
        self._resolved: dict[str, str] = {}
        self._lock = threading.Lock()

    def _check_cancelled(self) -> None:
        if self._cancel_check is not None and self._cancel_check():
            raise JobCancelledError()

    def fetch(self, source: str, layer_id: str | None = None) -> str:
        """Return a local path for ``source``, downloading it if needed.

        Raises:
            MediaFetchError: the source is unreachable, missing or too large
        """
        with self._lock:
            if source in self._resolved:
                return self._resolved[source]
            self._check_cancelled()
            path = self._fetch_uncached(source, layer_id)
            self._resolved[source] = path
            return path

    def fetch_all(self, sources: Iterable[tuple[str, str | None]]) -> dict[str, str]:
        """Fetch (source, layer_id) pairs in order; returns source -> path."""
        return {source: self.fetch(source, layer_id) for source, layer_id in sources}

    def _fetch_uncached(self, source: str, layer_id: str | None) -> str:
        scheme = urlparse(source).scheme.lower()
        if scheme in ("http", "https"):
            return self._download_http(source, layer_id)
        if source.startswith(STORAGE_SCHEME):
            return self._copy_from_storage(source, layer_id)
        return self._resolve_local(source, layer_id)

    def _download_http(self, url: str, layer_id: str | None) -> str:
        target = self.assets_dir / _asset_filename(url)
        logger.info(f"[FETCH] Downloading {url} for layer {layer_id}")
        received = 0
        try:
            opener = self._client if self._client is not None else httpx
            with opener.stream("GET", url, timeout=self.timeout_s, follow_redirects=True) as response:
                response.raise_for_status()
                with open(target, "wb") as f:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        received += len(chunk)
                        if received > self.max_bytes:
                            raise MediaFetchError(
                                f"Source {url} exceeds the {self.max_bytes} byte download limit",
                                layer_id=layer_id,
                            )
                        f.write(chunk)
                        self._check_cancelled()
        except httpx.HTTPError as e:
            target.unlink(missing_ok=True)
            raise MediaFetchError(f"Failed to fetch {url}: {e}", layer_id=layer_id) from e
        except (MediaFetchError, JobCancelledError):
            target.unlink(missing_ok=True)
            raise

        if received == 0:
            target.unlink(missing_ok=True)
            raise MediaFetchError(f"Source {url} returned an empty body", layer_id=layer_id)
        logger.info(f"[FETCH] Downloaded {url}: {received} bytes")
        return str(target)

    def _copy_from_storage(self, source: str, layer_id: str | None) -> str:
        key = source[len(STORAGE_SCHEME):]
        if self.storage is None:
            raise MediaFetchError(f"No object store configured for {source}", layer_id=layer_id)
        target = self.assets_dir / _asset_filename(source)
        try:
            self.storage.download_file(key, str(target))
        except Exception as e:
            target.unlink(missing_ok=True)
            raise MediaFetchError(f"Failed to fetch {source}: {e}", layer_id=layer_id) from e
        return str(target)

    def _resolve_local(self, source: str, layer_id: str | None) -> str:
        path = source[len("file://"):] if source.startswith("file://") else source
        if not os.path.isfile(path):
            raise MediaFetchError(f"Source file not found: {source}", layer_id=layer_id)
        return os.path.abspath(path)
