import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api import render, storage
from src.config import Settings, get_settings
from src.constants.error_codes import get_error_spec
from src.exceptions import ScenecastError
from src.logging_config import configure_logging
from src.models.database import Database
from src.schemas.envelope import ErrorInfo
from src.services.artifact_publisher import ArtifactPublisher
from src.services.job_queue import JobQueue
from src.services.render_service import RenderService
from src.services.storage_service import StorageService, create_storage_service
from src.services.thumbnail_service import ThumbnailService
from src.services.worker_pool import WorkerPool
from src.tasks.render_task import RenderTask

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    storage_service: StorageService | None = None,
) -> FastAPI:
    """Build the API app. Services are wired on startup in the lifespan."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        configure_logging(settings.log_level)
        db = database or Database(settings.database_url, echo=settings.database_echo)
        db.init_db()
        store = storage_service or create_storage_service(settings)

        queue = JobQueue(db, aging_s=settings.render_priority_aging_s)
        pool = None
        if settings.render_embedded_workers:
            task = RenderTask(queue, ArtifactPublisher(store), storage=store, app_settings=settings)
            pool = WorkerPool(
                queue,
                task,
                concurrency=settings.render_worker_concurrency,
                poll_interval_s=settings.render_poll_interval_s,
                heartbeat_interval_s=settings.render_heartbeat_interval_s,
                orphan_stale_after_s=settings.render_orphan_stale_after_s,
            )
            pool.start()

        app.state.storage = store
        app.state.queue = queue
        app.state.worker_pool = pool
        app.state.render_service = RenderService(queue, pool)
        app.state.thumbnail_service = ThumbnailService(store, app_settings=settings)
        logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")
        yield
        # Shutdown
        if pool is not None:
            pool.stop(timeout=30, interrupt_running=True)
        if database is None:
            db.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ScenecastError)
    async def scenecast_exception_handler(request: Request, exc: ScenecastError) -> JSONResponse:
        error = exc.to_error_info()
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": error.model_dump(by_alias=True, exclude_none=True)},
        )

    # Global exception handler to ensure errors return proper JSON
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception: {exc}")
        spec = get_error_spec("INTERNAL_ERROR")
        error = ErrorInfo(
            code="INTERNAL_ERROR",
            message="Internal server error",
            retryable=spec.get("retryable", False),
            suggested_fix=spec.get("suggested_fix"),
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error": error.model_dump(by_alias=True, exclude_none=True)},
        )

    app.include_router(render.router, prefix="/api/render", tags=["render"])
    app.include_router(storage.router, prefix="/api/storage", tags=["storage"])

    @app.get("/health")
    def health_check(request: Request) -> dict:
        stats = request.app.state.queue.stats()
        pool = request.app.state.worker_pool
        return {
            "status": "healthy",
            "version": settings.app_version,
            "workers": pool.concurrency if pool is not None and pool.running else 0,
            "queue": stats.to_dict(),
        }

    return app


app = create_app()
