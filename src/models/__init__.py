from src.models.base import Base
from src.models.render_job import RenderJob

__all__ = [
    "Base",
    "RenderJob",
]
