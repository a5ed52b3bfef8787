"""Poster-frame thumbnails for rendered videos."""

import logging
import shutil
import tempfile
import uuid
from pathlib import Path

from PIL import Image, ImageOps

from src.config import Settings, get_settings
from src.exceptions import ExecutionError
from src.render.media_fetcher import MediaFetcher
from src.render.pipeline import run_ffmpeg, validate_output
from src.services.storage_service import StorageService
from src.utils.media_info import get_media_duration

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = (320, 180)
THUMBNAIL_TIMEOUT_S = 60.0


class ThumbnailService:
    def __init__(self, storage: StorageService, app_settings: Settings | None = None):
        self.storage = storage
        self.app_settings = app_settings or get_settings()

    def _clamp_timestamp(self, video_path: str, timestamp: float) -> float:
        try:
            duration = get_media_duration(video_path, self.app_settings.ffprobe_path)
        except ExecutionError as e:
            logger.warning(f"[THUMBNAIL] Could not probe duration, using {timestamp}s as-is: {e.message}")
            return timestamp
        # Grabbing at or after the end yields no frame
        return max(0.0, min(timestamp, duration - 0.1))

    def generate(self, video_url: str, timestamp: float = 0.0) -> str:
        """Grab a frame at ``timestamp``, fit it to 320x180 and store it as PNG.

        Returns:
            URL of the stored thumbnail
        """
        work_dir = Path(tempfile.mkdtemp(prefix="scenecast_thumb_", dir=self.app_settings.render_temp_dir or None))
        try:
            fetcher = MediaFetcher(work_dir / "assets", storage=self.storage)
            video_path = fetcher.fetch(video_url)
            timestamp = self._clamp_timestamp(video_path, timestamp)

            frame_path = work_dir / "frame.png"
            cmd = [
                self.app_settings.ffmpeg_path,
                "-y",
                "-hide_banner",
                "-nostdin",
                "-ss", f"{timestamp:.3f}",
                "-i", video_path,
                "-frames:v", "1",
                str(frame_path),
            ]
            run_ffmpeg(cmd, timeout=THUMBNAIL_TIMEOUT_S, log_path=work_dir / "thumbnail.log")
            validate_output(frame_path)

            thumb_path = work_dir / "thumbnail.png"
            try:
                with Image.open(frame_path) as frame:
                    ImageOps.fit(frame.convert("RGB"), THUMBNAIL_SIZE, Image.Resampling.LANCZOS).save(thumb_path, "PNG")
            except OSError as e:
                raise ExecutionError(f"Could not decode grabbed frame: {e}") from e

            key = f"thumbnails/{uuid.uuid4().hex}.png"
            url = self.storage.upload_file(str(thumb_path), key, content_type="image/png")
            logger.info(f"[THUMBNAIL] {video_url} @ {timestamp:.2f}s -> {key}")
            return url
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
