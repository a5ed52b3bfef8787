from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from src.constants.presets import OutputFormat, QualityTier
from src.models.base import as_utc
from src.models.render_job import RenderJob
from src.schemas.project import Project, RenderSettings, Scene


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RenderRequest(CamelModel):
    """Body of POST /api/render/queue."""

    project_id: str = Field(..., alias="projectId", min_length=1)
    scenes: list[Scene] = Field(..., min_length=1)
    settings: RenderSettings = Field(default_factory=RenderSettings)
    # Top-level shortcuts; when sent they win over the same keys in settings
    output_format: OutputFormat | None = Field(default=None, alias="outputFormat")
    quality: QualityTier | None = None
    # Editor canvas the layer coordinates refer to; defaults to the output size
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)
    frame_rate: float | None = Field(default=None, alias="frameRate", gt=0)

    def effective_settings(self) -> RenderSettings:
        overrides = {}
        if self.output_format is not None:
            overrides["output_format"] = self.output_format
        if self.quality is not None:
            overrides["quality"] = self.quality
        return self.settings.model_copy(update=overrides)

    def to_project(self) -> Project:
        settings = self.effective_settings()
        return Project(
            id=self.project_id,
            width=self.width or settings.width,
            height=self.height or settings.height,
            frame_rate=self.frame_rate or settings.frame_rate,
            scenes=self.scenes,
        )


class EnqueueResponse(CamelModel):
    job_id: str = Field(..., alias="jobId")
    estimated_time: str = Field(..., alias="estimatedTime")


class RenderJobStatus(CamelModel):
    id: str
    project_id: str = Field(..., alias="projectId")
    status: str
    progress: int
    current_stage: str | None = Field(default=None, alias="currentStage")
    output_url: str | None = Field(default=None, alias="outputUrl")
    output_size: int | None = Field(default=None, alias="outputSize")
    failed_reason: str | None = Field(default=None, alias="failedReason")
    error_code: str | None = Field(default=None, alias="errorCode")
    cancel_requested: bool = Field(default=False, alias="cancelRequested")
    attempts: int = 0
    created_at: datetime | None = Field(default=None, alias="createdAt")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")

    @classmethod
    def from_job(cls, job: RenderJob) -> "RenderJobStatus":
        return cls(
            id=job.id,
            project_id=job.project_id,
            status=job.status,
            progress=job.progress,
            current_stage=job.current_stage,
            output_url=job.output_url,
            output_size=job.output_size,
            failed_reason=job.error_message,
            error_code=job.error_code,
            cancel_requested=bool(job.cancel_requested),
            attempts=job.retry_count + 1 if job.started_at else job.retry_count,
            created_at=as_utc(job.created_at),
            started_at=as_utc(job.started_at),
            finished_at=as_utc(job.completed_at),
        )


class RenderJobSummary(CamelModel):
    id: str
    project_id: str = Field(..., alias="projectId")
    status: str
    progress: int
    scene_count: int = Field(default=0, alias="sceneCount")
    output_url: str | None = Field(default=None, alias="outputUrl")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")

    @classmethod
    def from_job(cls, job: RenderJob) -> "RenderJobSummary":
        return cls(
            id=job.id,
            project_id=job.project_id,
            status=job.status,
            progress=job.progress,
            scene_count=job.scene_count,
            output_url=job.output_url,
            created_at=as_utc(job.created_at),
            finished_at=as_utc(job.completed_at),
        )


class QueueStatsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    cancelled: int
    total: int


class CancelResponse(CamelModel):
    success: bool
    job_id: str = Field(..., alias="jobId")
    status: str


class ThumbnailRequest(CamelModel):
    video_url: str = Field(..., alias="videoUrl", min_length=1)
    timestamp: float = Field(default=0.0, ge=0.0)


class ThumbnailResponse(CamelModel):
    thumbnail_url: str = Field(..., alias="thumbnailUrl")
