"""
Media executor: runs FFmpeg for scene plans and assembles the final file.

Each job attempt gets a private working directory:

    <tmp>/scenecast_<job>_a<attempt>_xxxx/
        assets/            fetched layer sources
        scenes/            one encoded file per scene, plus ffmpeg logs
        concat_list.txt
        final_output.<ext>

The directory is removed when the attempt ends, whatever the outcome.
Subprocesses are polled so a timeout or a cancellation request terminates
FFmpeg promptly instead of waiting for it to exit.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional

from src.config import Settings, get_settings
from src.exceptions import ConcatenationError, ExecutionError, JobCancelledError
from src.render.audio_mixer import silence_source
from src.render.layer_compositor import ScenePlan, build_filter_complex
from src.render.media_fetcher import MediaFetcher
from src.schemas.project import RenderSettings

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.25
TERMINATE_GRACE_S = 5.0
AUDIO_BITRATE = "192k"

# Containers that support moving the index to the front
FASTSTART_FORMATS = ("mp4", "mov")

CancelCheck = Optional[Callable[[], bool]]


# ============================================================================
# Subprocess handling
# ============================================================================


def compute_timeout(duration_s: float, app_settings: Settings | None = None) -> float:
    """Timeout for one FFmpeg invocation covering ``duration_s`` of media."""
    app_settings = app_settings or get_settings()
    return max(app_settings.render_min_timeout_s, duration_s * app_settings.render_timeout_per_second)


def _terminate(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE_S)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _last_line(raw: bytes) -> str:
    lines = [line.strip() for line in raw.decode("utf-8", errors="replace").splitlines() if line.strip()]
    return lines[-1] if lines else "no output"


def run_ffmpeg(
    cmd: list[str],
    timeout: float,
    cancel_check: CancelCheck = None,
    log_path: str | Path | None = None,
    error_cls: type[ExecutionError] | type[ConcatenationError] = ExecutionError,
) -> None:
    """Run an FFmpeg command to completion.

    Raises:
        JobCancelledError: cancel_check returned True while the process ran
        error_cls: the process timed out (code EXECUTION_TIMEOUT), could not
            be started, or exited non-zero
    """
    logger.debug(f"[FFMPEG] {' '.join(cmd)}")

    # stderr goes to a file; a pipe nobody reads can fill up and stall ffmpeg
    log_file = open(log_path, "w+b") if log_path else tempfile.TemporaryFile()
    with log_file:
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=log_file,
            )
        except OSError as e:
            raise error_cls(f"Failed to start {cmd[0]}: {e}") from e

        deadline = time.monotonic() + timeout
        while True:
            try:
                returncode = proc.wait(timeout=POLL_INTERVAL_S)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel_check is not None and cancel_check():
                logger.info(f"[FFMPEG] Cancel requested, terminating pid {proc.pid}")
                _terminate(proc)
                raise JobCancelledError()

            if time.monotonic() >= deadline:
                logger.warning(f"[FFMPEG] Timed out after {timeout:.0f}s, terminating pid {proc.pid}")
                _terminate(proc)
                raise error_cls(
                    f"ffmpeg timed out after {timeout:.0f}s",
                    code="EXECUTION_TIMEOUT",
                )

        if returncode != 0:
            log_file.seek(0)
            tail = _last_line(log_file.read())
            raise error_cls(f"ffmpeg exited with code {returncode}: {tail}")


def validate_output(
    path: str | Path,
    error_cls: type[ExecutionError] | type[ConcatenationError] = ExecutionError,
) -> Path:
    """An output file counts only if it exists and is non-empty."""
    path = Path(path)
    if not path.is_file():
        raise error_cls(f"ffmpeg produced no output file: {path.name}")
    if path.stat().st_size == 0:
        raise error_cls(f"ffmpeg produced an empty output file: {path.name}")
    return path


@contextmanager
def attempt_workspace(job_id: str, attempt: int, base_dir: str | None = None) -> Iterator[Path]:
    """Private temp directory for one job attempt, removed on exit."""
    base_dir = base_dir if base_dir is not None else get_settings().render_temp_dir
    if base_dir:
        os.makedirs(base_dir, exist_ok=True)
    work_dir = Path(tempfile.mkdtemp(prefix=f"scenecast_{job_id}_a{attempt}_", dir=base_dir or None))
    logger.info(f"[RENDER] Job {job_id} attempt {attempt}: workspace {work_dir}")
    try:
        yield work_dir
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)
        if work_dir.exists():
            logger.warning(f"[RENDER] Job {job_id}: could not remove workspace {work_dir}")


# ============================================================================
# Command building
# ============================================================================


def build_scene_command(
    plan: ScenePlan,
    settings: RenderSettings,
    input_paths: Mapping[str, str],
    output_path: str,
    ffmpeg_path: str = "ffmpeg",
    threads: int = 2,
    font_path: str = "",
) -> list[str]:
    """Build the FFmpeg command for one scene without executing it.

    Args:
        plan: planned scene
        settings: job render settings (size, rate, codecs, bitrate)
        input_paths: source -> local file for every entry of ``plan.inputs``
        output_path: encoded scene file

    Returns:
        FFmpeg command as list[str]
    """
    codecs = settings.codecs
    sample_rate = settings.output_sample_rate
    duration = f"{plan.duration:.6f}"

    cmd = [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-nostdin",
        "-f", "lavfi",
        "-i", plan.canvas.lavfi_source(),
        "-f", "lavfi",
        "-i", silence_source(sample_rate, plan.duration),
    ]

    for media in plan.inputs:
        path = input_paths[media.source]
        if media.kind == "image":
            # Still images become a stream long enough to cover the scene
            cmd.extend(["-loop", "1", "-framerate", str(settings.frame_rate), "-t", duration])
        cmd.extend(["-i", path])

    cmd.extend([
        "-filter_complex",
        build_filter_complex(plan, sample_rate, pix_fmt=codecs["pix_fmt"], font_path=font_path),
        "-map", "[vout]",
        "-map", "[aout]",
        "-c:v", codecs["video"],
    ])
    if codecs["video"] == "libx264":
        cmd.extend(["-preset", "medium"])
    cmd.extend([
        "-b:v", settings.video_bitrate,
        "-pix_fmt", codecs["pix_fmt"],
        "-r", str(settings.frame_rate),
        "-c:a", codecs["audio"],
        "-b:a", AUDIO_BITRATE,
        "-ar", str(sample_rate),
        "-ac", "2",
        "-t", duration,
        "-threads", str(threads),
        # Identical inputs and settings give byte-identical scene files
        "-fflags", "+bitexact",
        "-flags:v", "+bitexact",
        "-flags:a", "+bitexact",
        "-map_metadata", "-1",
        output_path,
    ])
    return cmd


def _escape_concat_path(path: str) -> str:
    return path.replace("'", "'\\''")


def build_concat_command(
    concat_list_path: str,
    output_path: str,
    output_format: str,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    cmd = [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-nostdin",
        "-f", "concat",
        "-safe", "0",
        "-i", concat_list_path,
        "-c", "copy",
        "-map_metadata", "-1",
    ]
    if output_format in FASTSTART_FORMATS:
        cmd.extend(["-movflags", "+faststart"])
    cmd.append(output_path)
    return cmd


# ============================================================================
# Pipeline
# ============================================================================


class RenderPipeline:
    """Executes scene plans for one job attempt inside ``work_dir``."""

    def __init__(
        self,
        settings: RenderSettings,
        work_dir: str | Path,
        fetcher: MediaFetcher | None = None,
        cancel_check: CancelCheck = None,
        app_settings: Settings | None = None,
    ):
        self.settings = settings
        self.app_settings = app_settings or get_settings()
        self.work_dir = Path(work_dir)
        self.scenes_dir = self.work_dir / "scenes"
        self.scenes_dir.mkdir(parents=True, exist_ok=True)
        self.fetcher = fetcher or MediaFetcher(self.work_dir / "assets", cancel_check=cancel_check)
        self.ffmpeg_path = self.app_settings.ffmpeg_path
        self._cancel_check = cancel_check

    def _check_cancelled(self) -> None:
        if self._cancel_check is not None and self._cancel_check():
            raise JobCancelledError()

    def fetch_inputs(self, plans: list[ScenePlan]) -> dict[str, str]:
        """Fetch every distinct source the plans reference."""
        sources: list[tuple[str, str | None]] = []
        for plan in plans:
            layer_by_input = _layer_ids_by_input(plan)
            for media in plan.inputs:
                sources.append((media.source, layer_by_input.get(media.index)))
        return self.fetcher.fetch_all(sources)

    def render_scene(self, plan: ScenePlan, index: int) -> Path:
        """Encode one scene into ``scenes/scene_<index>.<ext>``."""
        self._check_cancelled()

        layer_by_input = _layer_ids_by_input(plan)
        input_paths = {
            media.source: self.fetcher.fetch(media.source, layer_by_input.get(media.index))
            for media in plan.inputs
        }

        output_path = self.scenes_dir / f"scene_{index:04d}.{self.settings.file_extension}"
        cmd = build_scene_command(
            plan,
            self.settings,
            input_paths,
            str(output_path),
            ffmpeg_path=self.ffmpeg_path,
            threads=self.app_settings.render_ffmpeg_threads,
            font_path=self.app_settings.render_font_path,
        )
        timeout = compute_timeout(plan.duration, self.app_settings)
        logger.info(
            f"[RENDER] Scene {plan.scene_id} ({index}): {len(plan.visual_operations)} visual, "
            f"{len(plan.audio_operations)} audio ops, timeout {timeout:.0f}s"
        )

        try:
            run_ffmpeg(
                cmd,
                timeout=timeout,
                cancel_check=self._cancel_check,
                log_path=self.scenes_dir / f"scene_{index:04d}.log",
            )
        except ExecutionError as e:
            raise ExecutionError(f"Scene '{plan.scene_id}': {e.message}", code=e.code) from e
        return validate_output(output_path)

    def concatenate(self, scene_files: list[Path], total_duration: float) -> Path:
        """Join scene files in order into ``final_output.<ext>`` without re-encoding."""
        self._check_cancelled()
        if not scene_files:
            raise ConcatenationError("No scene outputs to concatenate")

        output_path = self.work_dir / f"final_output.{self.settings.file_extension}"

        if len(scene_files) == 1:
            # Single scene - just copy
            try:
                shutil.copyfile(scene_files[0], output_path)
            except OSError as e:
                raise ConcatenationError(f"Failed to copy scene output: {e}") from e
            return validate_output(output_path, ConcatenationError)

        concat_list_path = self.work_dir / "concat_list.txt"
        with open(concat_list_path, "w", encoding="utf-8") as f:
            for scene_file in scene_files:
                # FFmpeg concat requires escaped paths
                f.write(f"file '{_escape_concat_path(str(scene_file))}'\n")

        cmd = build_concat_command(
            str(concat_list_path),
            str(output_path),
            self.settings.output_format,
            ffmpeg_path=self.ffmpeg_path,
        )
        logger.info(f"[CONCAT] Joining {len(scene_files)} scenes into {output_path.name}")
        run_ffmpeg(
            cmd,
            timeout=compute_timeout(total_duration, self.app_settings),
            cancel_check=self._cancel_check,
            log_path=self.work_dir / "concat.log",
            error_cls=ConcatenationError,
        )
        return validate_output(output_path, ConcatenationError)


def _layer_ids_by_input(plan: ScenePlan) -> dict[int, str]:
    """First layer id using each input, for error locations."""
    mapping: dict[int, str] = {}
    for op in (*plan.visual_operations, *plan.audio_operations):
        index = getattr(op, "input_index", None)
        if index is not None and index not in mapping:
            mapping[index] = op.layer_id
    return mapping
