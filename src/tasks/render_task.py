"""Render task: drives one claimed job from plan to published artifact."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from src.config import Settings, get_settings
from src.exceptions import (
    ExecutionError,
    JobCancelledError,
    PublishError,
    ScenecastError,
    ValidationError,
)
from src.models.render_job import CANCELLED, COMPLETED, FAILED, QUEUED, RenderJob
from src.render.layer_compositor import ScenePlan, plan_project
from src.render.media_fetcher import MediaFetcher
from src.render.pipeline import RenderPipeline, attempt_workspace
from src.schemas.project import Project, RenderSettings
from src.services.artifact_publisher import ArtifactPublisher, PublishedArtifact
from src.services.job_queue import JobQueue
from src.services.storage_service import StorageService

logger = logging.getLogger(__name__)

# Progress stages (percent, stage name)
PROGRESS_PLANNING = (5, "planning")
PROGRESS_FETCHING = (10, "fetching_media")
PROGRESS_CONCATENATING = (85, "concatenating")
PROGRESS_UPLOADING = (90, "uploading")
SCENES_START = 10
SCENES_END = 85


def backoff_delay(base_delay_s: float, retry_number: int) -> float:
    """Exponential backoff before retry ``retry_number`` (1-based)."""
    return base_delay_s * (2 ** (retry_number - 1))


def _validation_message(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid project snapshot at {location}: {first.get('msg')}"


class RenderTask:
    """Runs claimed jobs to a terminal state.

    Policy:
    - validation errors fail the job at once, no retry
    - render failures (scene, fetch, concat, timeout) retry the whole render
      in a fresh workspace, up to ``render_max_attempts``
    - upload failures retry the upload only, up to ``publish_max_attempts``
    - a cancel request ends the job as cancelled after cleanup
    """

    def __init__(
        self,
        queue: JobQueue,
        publisher: ArtifactPublisher,
        storage: StorageService | None = None,
        app_settings: Settings | None = None,
    ):
        self.queue = queue
        self.publisher = publisher
        self.storage = storage if storage is not None else publisher.storage
        self.app_settings = app_settings or get_settings()

    def _progress(self, job_id: str, stage: tuple[int, str]) -> None:
        progress, name = stage
        self.queue.update_progress(job_id, progress, name)

    def run(
        self,
        job: RenderJob,
        cancel_event: threading.Event,
        interrupt_event: threading.Event | None = None,
    ) -> str:
        """Process ``job`` and return the status it reached.

        ``cancel_event`` stops the render. When ``interrupt_event`` is also
        set and nobody asked to cancel the job, the worker is shutting down:
        the job goes back to the queue instead of ending cancelled.
        """
        job_id = job.id
        logger.info(f"[RENDER] Job {job_id} started (project {job.project_id})")
        try:
            self._progress(job_id, PROGRESS_PLANNING)
            project, settings, plans = self._plan(job)

            final_artifact = self._render_and_publish(job_id, project, settings, plans, cancel_event)

        except JobCancelledError:
            interrupted = interrupt_event is not None and interrupt_event.is_set()
            if interrupted and not self.queue.is_cancel_requested(job_id):
                logger.info(f"[RENDER] Job {job_id} interrupted by shutdown")
                self._settle(self.queue.release, job_id)
                return QUEUED
            self._settle(self.queue.mark_cancelled, job_id)
            return CANCELLED
        except ValidationError as e:
            logger.error(f"[RENDER] Job {job_id} rejected: {e.message}")
            self._settle(self.queue.mark_failed, job_id, e.message, e.code)
            return FAILED
        except ScenecastError as e:
            self._settle(self.queue.mark_failed, job_id, e.message, e.code)
            return FAILED
        except Exception as e:
            logger.exception(f"[RENDER] Job {job_id} crashed")
            self._settle(self.queue.mark_failed, job_id, f"Unexpected error: {e}", "INTERNAL_ERROR")
            return FAILED

        self._settle(
            self.queue.mark_completed,
            job_id,
            output_key=final_artifact.key,
            output_url=final_artifact.url,
            output_size=final_artifact.size,
        )
        return COMPLETED

    def _settle(self, write: Callable[..., bool], job_id: str, *args, **kwargs) -> bool:
        """Record a job transition, retrying transient database errors.

        Raises:
            SQLAlchemyError: the write kept failing
        """
        attempts = max(1, self.app_settings.state_write_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return write(job_id, *args, **kwargs)
            except SQLAlchemyError as e:
                if attempt == attempts:
                    raise
                logger.warning(f"[RENDER] Job {job_id} state write failed ({e}); retrying")
                time.sleep(backoff_delay(self.app_settings.state_write_retry_delay_s, attempt))
        return False

    # ------------------------------------------------------------------

    def _plan(self, job: RenderJob) -> tuple[Project, RenderSettings, list[ScenePlan]]:
        """Rebuild the job's inputs from its snapshot and plan every scene."""
        try:
            project = Project.model_validate(job.project_snapshot)
            settings = RenderSettings.model_validate(job.render_settings)
        except PydanticValidationError as e:
            raise ValidationError(_validation_message(e)) from e
        return project, settings, plan_project(project, settings)

    def _render_and_publish(
        self,
        job_id: str,
        project: Project,
        settings: RenderSettings,
        plans: list[ScenePlan],
        cancel_event: threading.Event,
    ) -> PublishedArtifact:
        max_attempts = max(1, self.app_settings.render_max_attempts)
        last_error: ScenecastError | None = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = backoff_delay(self.app_settings.render_retry_base_delay_s, attempt - 1)
                logger.warning(
                    f"[RENDER] Job {job_id} attempt {attempt - 1}/{max_attempts} failed: "
                    f"{last_error.message if last_error else 'unknown error'}; retrying in {delay:.1f}s"
                )
                if cancel_event.wait(delay):
                    raise JobCancelledError()
            if cancel_event.is_set():
                raise JobCancelledError()

            self.queue.record_attempt(job_id, attempt - 1)
            try:
                with attempt_workspace(job_id, attempt, self.app_settings.render_temp_dir) as work_dir:
                    final_path = self._render_attempt(job_id, project, settings, plans, work_dir, cancel_event)
                    if cancel_event.is_set():
                        raise JobCancelledError()
                    # Publish while the workspace still holds the file; upload
                    # failures never trigger a re-render
                    return self._publish(job_id, project.id, settings, final_path, cancel_event)
            except (JobCancelledError, PublishError):
                raise
            except ScenecastError as e:
                if not e.retryable:
                    raise
                last_error = e
            except OSError as e:
                last_error = ExecutionError(f"Workspace error: {e}")

        last_error.message = f"{last_error.message} (after {max_attempts} attempts)"
        raise last_error

    def _render_attempt(
        self,
        job_id: str,
        project: Project,
        settings: RenderSettings,
        plans: list[ScenePlan],
        work_dir: Path,
        cancel_event: threading.Event,
    ) -> Path:
        # Set when a sibling scene fails so the rest stop early
        abort = threading.Event()

        def should_stop() -> bool:
            return cancel_event.is_set() or abort.is_set()

        fetcher = MediaFetcher(work_dir / "assets", storage=self.storage, cancel_check=should_stop)
        pipeline = RenderPipeline(
            settings,
            work_dir,
            fetcher=fetcher,
            cancel_check=should_stop,
            app_settings=self.app_settings,
        )

        self._progress(job_id, PROGRESS_FETCHING)
        pipeline.fetch_inputs(plans)

        scene_files = self._render_scenes(job_id, pipeline, plans, abort)
        if cancel_event.is_set():
            raise JobCancelledError()

        self._progress(job_id, PROGRESS_CONCATENATING)
        return pipeline.concatenate(scene_files, project.total_duration)

    def _render_scenes(
        self,
        job_id: str,
        pipeline: RenderPipeline,
        plans: list[ScenePlan],
        abort: threading.Event,
    ) -> list[Path]:
        """Render scenes concurrently and return their files in scene order."""
        total = len(plans)
        results: list[Path | None] = [None] * total
        first_error: Exception | None = None
        done = 0

        max_workers = max(1, min(self.app_settings.render_scene_concurrency, total))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"scene-{job_id[:8]}") as executor:
            futures = {executor.submit(pipeline.render_scene, plan, index): index for index, plan in enumerate(plans)}
            for future in as_completed(futures):
                index = futures[future]
                try:
                    results[index] = future.result()
                except Exception as e:
                    if first_error is None:
                        first_error = e
                        abort.set()
                    continue
                done += 1
                progress = SCENES_START + int((SCENES_END - SCENES_START) * done / total)
                self.queue.update_progress(job_id, progress, f"rendering_scenes {done}/{total}")

        if first_error is not None:
            raise first_error
        return [path for path in results if path is not None]

    def _publish(
        self,
        job_id: str,
        project_id: str,
        settings: RenderSettings,
        final_path: Path,
        cancel_event: threading.Event,
    ) -> PublishedArtifact:
        self._progress(job_id, PROGRESS_UPLOADING)
        max_attempts = max(1, self.app_settings.publish_max_attempts)
        last_error: PublishError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                return self.publisher.publish(final_path, project_id, job_id, settings.output_format)
            except PublishError as e:
                last_error = e
            if attempt < max_attempts:
                delay = backoff_delay(self.app_settings.publish_retry_base_delay_s, attempt)
                logger.warning(
                    f"[PUBLISH] Job {job_id} upload attempt {attempt}/{max_attempts} failed: "
                    f"{last_error.message}; retrying in {delay:.1f}s"
                )
                if cancel_event.wait(delay):
                    raise JobCancelledError()

        raise PublishError(f"{last_error.message} (after {max_attempts} upload attempts)")
