from typing import Annotated

from fastapi import Depends, Header, Request

from src.config import get_settings
from src.services.render_service import RenderService
from src.services.storage_service import StorageService
from src.services.thumbnail_service import ThumbnailService


def get_current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Caller identity from the X-User-Id header.

    Authentication happens upstream; without the header the request is
    attributed to the development user.
    """
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return get_settings().dev_user_id


def get_render_service(request: Request) -> RenderService:
    return request.app.state.render_service


def get_thumbnail_service(request: Request) -> ThumbnailService:
    return request.app.state.thumbnail_service


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


CurrentUserId = Annotated[str, Depends(get_current_user_id)]
RenderServiceDep = Annotated[RenderService, Depends(get_render_service)]
ThumbnailServiceDep = Annotated[ThumbnailService, Depends(get_thumbnail_service)]
StorageDep = Annotated[StorageService, Depends(get_storage)]
