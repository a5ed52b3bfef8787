import logging
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Protocol

from src.config import Settings, get_settings
from src.exceptions import PublishError

logger = logging.getLogger(__name__)

STORAGE_SCHEME = "storage://"


class StorageService(Protocol):
    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str: ...

    def download_file(self, storage_key: str, local_path: str) -> str: ...

    def file_exists(self, storage_key: str) -> bool: ...

    def get_public_url(self, storage_key: str) -> str: ...


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, base_path: str | None = None, public_base_url: str | None = None) -> None:
        settings = get_settings()
        self.base_path = Path(base_path or settings.local_storage_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if not full_path.is_relative_to(self.base_path):
            raise ValueError(f"Storage key escapes the storage root: {storage_key}")
        return full_path

    def get_public_url(self, storage_key: str) -> str:
        """Get URL for accessing the file."""
        return f"{self.public_base_url}/api/storage/files/{storage_key}"

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Copy a local file into the store."""
        try:
            full_path = self._get_full_path(storage_key)
            full_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, str(full_path))
        except (OSError, ValueError) as e:
            raise PublishError(f"Local storage upload failed for {storage_key}: {e}") from e
        return self.get_public_url(storage_key)

    def download_file(self, storage_key: str, local_path: str) -> str:
        """Copy file to local path."""
        full_path = self._get_full_path(storage_key)
        shutil.copyfile(str(full_path), local_path)
        return local_path

    def file_exists(self, storage_key: str) -> bool:
        return self._get_full_path(storage_key).is_file()

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(
        self,
        bucket_name: str | None = None,
        project_id: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        from google.cloud import storage

        settings = settings or get_settings()
        self._storage = storage
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None
        self.bucket_name = bucket_name or settings.gcs_bucket_name
        self.project_id = project_id if project_id is not None else settings.gcs_project_id
        self.signed_urls = settings.gcs_signed_urls
        self.signed_url_expiration_minutes = settings.gcs_signed_url_expiration_minutes

    @property
    def client(self):
        if self._client is None:
            if self.project_id:
                self._client = self._storage.Client(project=self.project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.bucket_name)
        return self._bucket

    def get_public_url(self, storage_key: str) -> str:
        """Get the public URL for a stored file."""
        return f"https://storage.googleapis.com/{self.bucket_name}/{storage_key}"

    def generate_download_url(self, storage_key: str, expires_minutes: int | None = None) -> str:
        """Generate a V4 signed URL for downloading a file."""
        blob = self.bucket.blob(storage_key)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(minutes=expires_minutes or self.signed_url_expiration_minutes),
            method="GET",
        )

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload a local file to GCS."""
        from google.api_core import exceptions as gcloud_exceptions

        try:
            blob = self.bucket.blob(storage_key)
            if content_type:
                blob.upload_from_filename(local_path, content_type=content_type)
            else:
                blob.upload_from_filename(local_path)
            if self.signed_urls:
                return self.generate_download_url(storage_key)
        except (gcloud_exceptions.GoogleAPIError, OSError) as e:
            raise PublishError(f"GCS upload failed for {storage_key}: {e}") from e
        return self.get_public_url(storage_key)

    def download_file(self, storage_key: str, local_path: str) -> str:
        """Download a file from GCS to local path."""
        blob = self.bucket.blob(storage_key)
        blob.download_to_filename(local_path)
        return local_path

    def file_exists(self, storage_key: str) -> bool:
        blob = self.bucket.blob(storage_key)
        return blob.exists()


def create_storage_service(settings: Settings | None = None) -> StorageService:
    """Use LocalStorageService or GCSStorageService based on config."""
    settings = settings or get_settings()
    if settings.use_local_storage:
        return LocalStorageService(settings.local_storage_path, settings.public_base_url)
    return GCSStorageService(settings.gcs_bucket_name, settings.gcs_project_id, settings)

