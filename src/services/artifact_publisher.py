"""Uploads finished renders to the object store under a collision-free key."""

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from src.constants.presets import FORMAT_CODECS
from src.exceptions import PublishError
from src.services.storage_service import StorageService

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class PublishedArtifact:
    key: str
    url: str
    size: int


def build_output_key(project_id: str, job_id: str, extension: str, now_ms: int | None = None) -> str:
    """renders/<project>/<project>_<unix-ms>_<job8>.<ext>

    The job id suffix keeps keys distinct for jobs finishing in the same
    millisecond.
    """
    safe_project = _UNSAFE_KEY_CHARS.sub("_", project_id) or "project"
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"renders/{safe_project}/{safe_project}_{timestamp}_{job_id[:8]}.{extension}"


class ArtifactPublisher:
    def __init__(self, storage: StorageService):
        self.storage = storage

    def publish(self, local_path: str | Path, project_id: str, job_id: str, output_format: str) -> PublishedArtifact:
        """Upload one rendered file and return its key, URL and size.

        Raises:
            PublishError: the file is missing or the store rejected the upload
        """
        path = Path(local_path)
        try:
            size = path.stat().st_size
        except OSError as e:
            raise PublishError(f"Render output missing before upload: {path.name}") from e

        key = build_output_key(project_id, job_id, output_format)
        content_type = FORMAT_CODECS.get(output_format, {}).get("content_type", "application/octet-stream")

        logger.info(f"[PUBLISH] Uploading {path.name} ({size} bytes) to {key}")
        url = self.storage.upload_file(str(path), key, content_type=content_type)
        logger.info(f"[PUBLISH] Job {job_id} published: {url}")
        return PublishedArtifact(key=key, url=url, size=size)
