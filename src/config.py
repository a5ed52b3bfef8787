import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "SceneCast Render API"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database (job table)
    database_url: str = "sqlite:///./scenecast.db"
    database_echo: bool = False

    # Local storage for development (when GCS is not configured)
    use_local_storage: bool = True  # Set to False in production
    local_storage_path: str = "/tmp/scenecast-storage"
    public_base_url: str = "http://localhost:8000"

    # Google Cloud Storage
    gcs_bucket_name: str = "scenecast-renders"
    gcs_project_id: str = ""
    gcs_signed_urls: bool = True
    gcs_signed_url_expiration_minutes: int = 1440

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "http://localhost:3000"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    render_ffmpeg_threads: int = 2
    render_font_path: str = ""  # Empty = fontconfig default

    # Worker pool (embedded in the API process unless disabled)
    render_embedded_workers: bool = True
    render_worker_concurrency: int = 2
    render_scene_concurrency: int = 2
    render_poll_interval_s: float = 1.0
    render_heartbeat_interval_s: float = 10.0
    # A processing job whose heartbeat is older than this, claimed by a worker
    # not live in this process, is requeued. 0 = requeue every orphan at startup
    # only (single worker process deployments).
    render_orphan_stale_after_s: float = 60.0
    render_temp_dir: str = ""  # Empty = system temp dir

    # Retry policy
    render_max_attempts: int = 3
    render_retry_base_delay_s: float = 5.0
    publish_max_attempts: int = 3
    publish_retry_base_delay_s: float = 2.0
    state_write_max_attempts: int = 3
    state_write_retry_delay_s: float = 0.5

    # Per-invocation timeout: max(min, duration * per_second)
    render_min_timeout_s: float = 60.0
    render_timeout_per_second: float = 10.0

    # Queued jobs gain one priority level per this many seconds of waiting
    render_priority_aging_s: float = 60.0

    # Remote media
    media_fetch_timeout_s: float = 30.0
    media_max_download_mb: int = 500

    # Development - requests without X-User-Id are attributed to this user
    dev_user_id: str = "dev-user-123"


@lru_cache
def get_settings() -> Settings:
    return Settings()
