"""Control operations behind the render HTTP API."""

import logging
import math
from typing import Any

from src.constants.presets import RENDER_PRESETS
from src.exceptions import JobAlreadyTerminalError, JobNotFoundError
from src.models.render_job import CANCELLED, PROCESSING, QUEUED, RenderJob
from src.render.layer_compositor import plan_project
from src.schemas.project import Project, RenderSettings
from src.services.job_queue import JobQueue, QueueStats
from src.services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def estimate_time(project: Project) -> str:
    """Rough wall-clock estimate shown to the editor: two minutes per scene."""
    return f"{math.ceil(len(project.scenes) * 2)} minutes"


class RenderService:
    def __init__(self, queue: JobQueue, pool: WorkerPool | None = None):
        self.queue = queue
        self.pool = pool

    def enqueue(self, project: Project, settings: RenderSettings, user_id: str) -> RenderJob:
        """Validate and persist a job; returns the queued record.

        Raises:
            ValidationError: a scene cannot be planned (missing payload)
        """
        # Raises before anything is persisted
        plan_project(project, settings)

        return self.queue.enqueue(
            user_id=user_id,
            project_id=project.id,
            project_snapshot=project.model_dump(mode="json"),
            render_settings=settings.model_dump(mode="json"),
            priority=settings.priority,
            scene_count=len(project.scenes),
        )

    def get_status(self, job_id: str) -> RenderJob:
        job = self.queue.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def cancel(self, job_id: str) -> str:
        """Cancel a job. Returns ``cancelled`` or, for a running job, ``cancelling``.

        Raises:
            JobNotFoundError: unknown job id
            JobAlreadyTerminalError: the job already finished
        """
        job = self.get_status(job_id)

        if job.status == QUEUED and self.queue.cancel_queued(job_id):
            return CANCELLED

        # Lost a race with a worker claiming it, or it was already running
        if job.status in (QUEUED, PROCESSING) and self.queue.request_cancel(job_id):
            if self.pool is not None:
                self.pool.cancel(job_id)
            return "cancelling"

        job = self.get_status(job_id)
        raise JobAlreadyTerminalError(job_id, job.status)

    def list_jobs(self, user_id: str, limit: int = 50) -> list[RenderJob]:
        return self.queue.list_for_user(user_id, limit=limit)

    def queue_stats(self) -> QueueStats:
        return self.queue.stats()

    @staticmethod
    def presets() -> dict[str, Any]:
        return RENDER_PRESETS
