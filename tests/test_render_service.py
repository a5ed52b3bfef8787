"""Tests for render control operations."""

import pytest

from src.exceptions import JobAlreadyTerminalError, JobNotFoundError, ValidationError
from src.models.render_job import CANCELLED, QUEUED
from src.schemas.project import Project, RenderSettings
from src.services.render_service import RenderService, estimate_time
from tests.conftest import project_payload, scene, text_layer


class RecordingPool:
    """Stands in for WorkerPool.cancel."""

    def __init__(self):
        self.cancelled = []

    def cancel(self, job_id):
        self.cancelled.append(job_id)
        return True


@pytest.fixture
def service(queue):
    return RenderService(queue)


def project(**overrides) -> Project:
    return Project.model_validate(project_payload(**overrides))


class TestEnqueue:
    """Tests for RenderService.enqueue."""

    def test_snapshot_and_priority(self, service, queue):
        """The job stores the project and settings it will render."""
        job = service.enqueue(project(), RenderSettings(quality="ultra"), "user-1")
        stored = queue.get(job.id)
        assert stored.status == QUEUED
        assert stored.priority == 4
        assert stored.user_id == "user-1"
        assert stored.scene_count == 1
        assert Project.model_validate(stored.project_snapshot) == project()
        assert RenderSettings.model_validate(stored.render_settings).quality == "ultra"

    def test_snapshot_unaffected_by_later_edits(self, service, queue):
        """Editing the project after enqueue does not change what the job renders."""
        source = project()
        job = service.enqueue(source, RenderSettings(), "user-1")

        source.scenes[0].layers[0].content = "Edited"
        source.scenes.append(source.scenes[0].model_copy(update={"id": "s2"}))
        source.width = 640

        stored = Project.model_validate(queue.get(job.id).project_snapshot)
        assert stored == project()
        assert stored.scenes[0].layers[0].content == "Hello"
        assert len(stored.scenes) == 1
        assert stored.width == 1280

    def test_invalid_project_not_queued(self, service, queue):
        """A project that cannot be planned never reaches the queue."""
        bad = project(scenes=[scene("s1", layers=[text_layer("t", content="")])])
        with pytest.raises(ValidationError):
            service.enqueue(bad, RenderSettings(), "user-1")
        assert queue.stats().total == 0


class TestStatusAndCancel:
    """Tests for status lookup and cancellation."""

    def test_unknown_job(self, service):
        with pytest.raises(JobNotFoundError):
            service.get_status("missing")

    def test_cancel_queued(self, service):
        job = service.enqueue(project(), RenderSettings(), "user-1")
        assert service.cancel(job.id) == CANCELLED
        assert service.get_status(job.id).status == CANCELLED

    def test_cancel_processing_signals_pool(self, queue):
        """Cancelling a running job flags it and signals the local worker."""
        pool = RecordingPool()
        service = RenderService(queue, pool)
        job = service.enqueue(project(), RenderSettings(), "user-1")
        queue.claim_next("w0")

        assert service.cancel(job.id) == "cancelling"
        assert pool.cancelled == [job.id]
        assert service.get_status(job.id).cancel_requested

    def test_cancel_terminal(self, service, queue):
        job = service.enqueue(project(), RenderSettings(), "user-1")
        queue.claim_next("w0")
        queue.mark_completed(job.id, "k", "u")

        with pytest.raises(JobAlreadyTerminalError) as exc_info:
            service.cancel(job.id)
        assert exc_info.value.job_status == "completed"
        assert exc_info.value.status_code == 409

    def test_cancel_unknown(self, service):
        with pytest.raises(JobNotFoundError):
            service.cancel("missing")


class TestReads:
    """Tests for listing, stats and presets."""

    def test_list_jobs(self, service):
        service.enqueue(project(), RenderSettings(), "alice")
        service.enqueue(project(), RenderSettings(), "bob")
        assert [job.user_id for job in service.list_jobs("alice")] == ["alice"]

    def test_queue_stats(self, service):
        service.enqueue(project(), RenderSettings(), "alice")
        assert service.queue_stats().waiting == 1

    def test_presets(self):
        presets = RenderService.presets()
        assert [p["id"] for p in presets["quality"]] == ["draft", "standard", "high", "ultra"]
        assert {f["id"] for f in presets["formats"]} == {"mp4", "webm", "mov", "avi"}

    def test_estimate_time(self):
        many = project(scenes=[scene(f"s{i}", layers=[text_layer("t")]) for i in range(3)])
        assert estimate_time(many) == "6 minutes"
