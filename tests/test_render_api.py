"""Tests for the render HTTP API."""

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from src.main import create_app
from tests.conftest import project_payload, scene, settings_payload, text_layer


def render_body(**overrides) -> dict:
    body = project_payload()
    body["settings"] = settings_payload()
    body.update(overrides)
    return body


@pytest.fixture
def client(make_settings, fake_ffmpeg, database, storage):
    settings = make_settings(ffmpeg_path=str(fake_ffmpeg.path), render_embedded_workers=False)
    app = create_app(settings, database=database, storage_service=storage)
    with TestClient(app) as test_client:
        yield test_client


def queue_job(client, body=None, user="user-1") -> str:
    response = client.post("/api/render/queue", json=body or render_body(), headers={"X-User-Id": user})
    assert response.status_code == 201, response.text
    return response.json()["jobId"]


class TestQueueEndpoint:
    """Tests for POST /api/render/queue."""

    def test_queue_returns_job_id(self, client):
        response = client.post("/api/render/queue", json=render_body())
        assert response.status_code == 201
        data = response.json()
        assert data["jobId"]
        assert data["estimatedTime"] == "2 minutes"

    def test_missing_payload_is_400_with_location(self, client):
        """Layers without content are rejected with the offending layer."""
        body = render_body(scenes=[scene("intro", layers=[text_layer("title", content="")])])
        response = client.post("/api/render/queue", json=body)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "MISSING_LAYER_PAYLOAD"
        assert error["retryable"] is False
        assert error["location"] == {"field": "content", "sceneId": "intro", "layerId": "title"}
        assert "suggestedFix" in error

    def test_schema_violation_is_422(self, client):
        body = render_body()
        del body["scenes"]
        assert client.post("/api/render/queue", json=body).status_code == 422

    def test_nothing_queued_on_rejection(self, client):
        body = render_body(scenes=[scene("s1", layers=[text_layer("t", content=" ")])])
        client.post("/api/render/queue", json=body)
        assert client.get("/api/render/queue/stats").json()["total"] == 0


class TestStatusEndpoint:
    """Tests for GET /api/render/status/{job_id}."""

    def test_status_of_queued_job(self, client):
        job_id = queue_job(client)
        response = client.get(f"/api/render/status/{job_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == job_id
        assert data["projectId"] == "proj-1"
        assert data["status"] == "queued"
        assert data["progress"] == 0
        assert data["attempts"] == 0
        assert data["outputUrl"] is None

    def test_unknown_job_is_404(self, client):
        response = client.get("/api/render/status/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "JOB_NOT_FOUND"


class TestCancelEndpoint:
    """Tests for DELETE /api/render/cancel/{job_id}."""

    def test_cancel_then_conflict(self, client):
        """A queued job cancels at once; cancelling again is a conflict."""
        job_id = queue_job(client)

        response = client.delete(f"/api/render/cancel/{job_id}")
        assert response.status_code == 200
        assert response.json() == {"success": True, "jobId": job_id, "status": "cancelled"}
        assert client.get(f"/api/render/status/{job_id}").json()["status"] == "cancelled"

        again = client.delete(f"/api/render/cancel/{job_id}")
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "JOB_ALREADY_TERMINAL"

    def test_cancel_unknown(self, client):
        assert client.delete("/api/render/cancel/missing").status_code == 404


class TestListingEndpoints:
    """Tests for jobs, stats, presets and health."""

    def test_jobs_are_per_user(self, client):
        mine = queue_job(client, user="alice")
        queue_job(client, user="bob")
        response = client.get("/api/render/jobs", headers={"X-User-Id": "alice"})
        assert response.status_code == 200
        assert [job["id"] for job in response.json()] == [mine]
        assert response.json()[0]["sceneCount"] == 1

    def test_jobs_limit_validated(self, client):
        assert client.get("/api/render/jobs?limit=0").status_code == 422

    def test_queue_stats(self, client):
        queue_job(client)
        data = client.get("/api/render/queue/stats").json()
        assert data == {"waiting": 1, "active": 0, "completed": 0, "failed": 0, "cancelled": 0, "total": 1}

    def test_presets(self, client):
        data = client.get("/api/render/presets").json()
        assert {"quality", "formats", "aspectRatios"} <= data.keys()

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["workers"] == 0
        assert data["queue"]["total"] == 0


class TestStorageEndpoint:
    """Tests for serving local storage files."""

    def test_serves_stored_file(self, client, storage, media_dir):
        storage.upload_file(str(media_dir / "clip.mp4"), "renders/p/out.mp4", content_type="video/mp4")
        response = client.get("/api/storage/files/renders/p/out.mp4")
        assert response.status_code == 200
        assert response.content == b"video-bytes"
        assert response.headers["content-type"] == "video/mp4"

    def test_missing_file(self, client):
        assert client.get("/api/storage/files/renders/none.mp4").status_code == 404

    def test_path_outside_root(self, client):
        assert client.get("/api/storage/files/..%2F..%2Fetc%2Fpasswd").status_code == 404


class TestThumbnailEndpoint:
    """Tests for POST /api/render/thumbnail."""

    @pytest.fixture
    def thumb_client(self, make_settings, make_fake_ffmpeg, database, storage, tmp_path):
        frame = tmp_path / "frame.png"
        Image.new("RGB", (1280, 720), (200, 30, 30)).save(frame)
        ffmpeg = make_fake_ffmpeg(payload=frame)
        settings = make_settings(ffmpeg_path=str(ffmpeg.path), render_embedded_workers=False)
        app = create_app(settings, database=database, storage_service=storage)
        with TestClient(app) as test_client:
            yield test_client

    def test_thumbnail_is_320x180_png(self, thumb_client, storage, media_dir):
        response = thumb_client.post(
            "/api/render/thumbnail",
            json={"videoUrl": str(media_dir / "clip.mp4"), "timestamp": 1.5},
        )
        assert response.status_code == 200, response.text
        url = response.json()["thumbnailUrl"]
        key = url.split("/api/storage/files/", 1)[1]
        assert key.startswith("thumbnails/")
        with Image.open(storage.get_file_path(key)) as thumb:
            assert thumb.size == (320, 180)
            assert thumb.format == "PNG"

    def test_unreachable_video(self, thumb_client, tmp_path):
        response = thumb_client.post("/api/render/thumbnail", json={"videoUrl": str(tmp_path / "nope.mp4")})
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "MEDIA_FETCH_FAILED"
