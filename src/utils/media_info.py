"""Media file information utilities using FFprobe."""

import json
import subprocess
from dataclasses import dataclass

from src.config import get_settings
from src.exceptions import ExecutionError

PROBE_TIMEOUT_S = 30


@dataclass
class MediaInfo:
    """Media file information."""

    duration_s: float | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    sample_rate: int | None = None
    has_video: bool = False
    has_audio: bool = False


def _run_ffprobe(file_path: str, *args, ffprobe_path: str | None = None) -> dict:
    """Run ffprobe and return parsed JSON."""
    cmd = [
        ffprobe_path or get_settings().ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT_S)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ExecutionError(f"ffprobe failed: {e}") from e
    if result.returncode != 0:
        raise ExecutionError(f"ffprobe failed: {result.stderr.strip() or result.returncode}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ExecutionError(f"Failed to parse ffprobe output: {e}") from e


def _parse_rate(rate: str | None) -> float | None:
    if not rate or rate == "0/0":
        return None
    if "/" in rate:
        num, den = rate.split("/", 1)
        return float(num) / float(den) if float(den) else None
    return float(rate)


def get_media_info(file_path: str, ffprobe_path: str | None = None) -> MediaInfo:
    """Probe format and streams of a media file."""
    data = _run_ffprobe(file_path, "-show_format", "-show_streams", ffprobe_path=ffprobe_path)
    info = MediaInfo()

    duration = data.get("format", {}).get("duration")
    if duration is not None:
        info.duration_s = float(duration)

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and not info.has_video:
            info.has_video = True
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.fps = _parse_rate(stream.get("avg_frame_rate") or stream.get("r_frame_rate"))
            info.video_codec = stream.get("codec_name")
        elif codec_type == "audio" and not info.has_audio:
            info.has_audio = True
            info.audio_codec = stream.get("codec_name")
            if stream.get("sample_rate"):
                info.sample_rate = int(stream["sample_rate"])

    return info


def get_media_duration(file_path: str, ffprobe_path: str | None = None) -> float:
    """
    Get media file duration in seconds.

    Raises:
        ExecutionError: If ffprobe fails or duration not found
    """
    info = get_media_info(file_path, ffprobe_path)
    if info.duration_s is None:
        raise ExecutionError(f"Duration not found in: {file_path}")
    return info.duration_s
