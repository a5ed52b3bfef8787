from src.render.layer_compositor import ScenePlan, ScenePlanner, plan_project
from src.render.pipeline import RenderPipeline, attempt_workspace, build_scene_command, run_ffmpeg

__all__ = [
    "RenderPipeline",
    "ScenePlan",
    "ScenePlanner",
    "attempt_workspace",
    "build_scene_command",
    "plan_project",
    "run_ffmpeg",
]
