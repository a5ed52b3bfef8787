"""Render queue API endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Query, status
from pydantic import ValidationError as PydanticValidationError

from src.api.deps import CurrentUserId, RenderServiceDep, ThumbnailServiceDep
from src.exceptions import ValidationError
from src.schemas.render import (
    CancelResponse,
    EnqueueResponse,
    QueueStatsResponse,
    RenderJobStatus,
    RenderJobSummary,
    RenderRequest,
    ThumbnailRequest,
    ThumbnailResponse,
)
from src.services.render_service import estimate_time

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/queue", response_model=EnqueueResponse, status_code=status.HTTP_201_CREATED)
def queue_render(
    render_request: RenderRequest,
    user_id: CurrentUserId,
    service: RenderServiceDep,
) -> EnqueueResponse:
    """Queue a render job for the submitted project."""
    try:
        project = render_request.to_project()
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise ValidationError(f"Invalid project: {first.get('msg')}") from e
    settings = render_request.effective_settings()

    job = service.enqueue(project, settings, user_id)
    logger.info(f"[RENDER] User {user_id} queued job {job.id} ({len(project.scenes)} scenes)")
    return EnqueueResponse(job_id=job.id, estimated_time=estimate_time(project))


@router.get("/status/{job_id}", response_model=RenderJobStatus)
def get_render_status(job_id: str, service: RenderServiceDep) -> RenderJobStatus:
    """Current status, progress and output of a job."""
    return RenderJobStatus.from_job(service.get_status(job_id))


@router.delete("/cancel/{job_id}", response_model=CancelResponse)
def cancel_render(job_id: str, service: RenderServiceDep) -> CancelResponse:
    """Cancel a queued job at once, or ask the worker running it to stop."""
    new_status = service.cancel(job_id)
    return CancelResponse(success=True, job_id=job_id, status=new_status)


@router.get("/jobs", response_model=list[RenderJobSummary])
def list_render_jobs(
    user_id: CurrentUserId,
    service: RenderServiceDep,
    limit: int = Query(default=50, ge=1, le=200),
) -> list[RenderJobSummary]:
    """The caller's jobs, newest first."""
    return [RenderJobSummary.from_job(job) for job in service.list_jobs(user_id, limit=limit)]


@router.get("/queue/stats", response_model=QueueStatsResponse)
def get_queue_stats(service: RenderServiceDep) -> QueueStatsResponse:
    return QueueStatsResponse(**service.queue_stats().to_dict())


@router.get("/presets")
def get_render_presets(service: RenderServiceDep) -> dict[str, Any]:
    return service.presets()


@router.post("/thumbnail", response_model=ThumbnailResponse)
def create_thumbnail(body: ThumbnailRequest, thumbnails: ThumbnailServiceDep) -> ThumbnailResponse:
    """Grab a 320x180 PNG poster frame from a video."""
    url = thumbnails.generate(body.video_url, body.timestamp)
    return ThumbnailResponse(thumbnail_url=url)
