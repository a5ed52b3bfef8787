"""Quality tiers, output formats and the presets catalog served to the editor."""

from typing import Any, Literal

QualityTier = Literal["draft", "standard", "high", "ultra"]
OutputFormat = Literal["mp4", "mov", "webm", "avi"]

QUALITY_BITRATES: dict[str, str] = {
    "draft": "500k",
    "standard": "2000k",
    "high": "5000k",
    "ultra": "10000k",
}

# Higher quality renders are dequeued first
QUALITY_PRIORITIES: dict[str, int] = {
    "draft": 1,
    "standard": 2,
    "high": 3,
    "ultra": 4,
}

# Codec parameters per container. Every scene of a job is encoded with the
# same parameters so the final concat can stream-copy.
FORMAT_CODECS: dict[str, dict[str, Any]] = {
    "mp4": {"video": "libx264", "audio": "aac", "pix_fmt": "yuv420p", "content_type": "video/mp4"},
    "mov": {"video": "libx264", "audio": "aac", "pix_fmt": "yuv420p", "content_type": "video/quicktime"},
    "avi": {"video": "libx264", "audio": "aac", "pix_fmt": "yuv420p", "content_type": "video/x-msvideo"},
    # libopus only encodes 48 kHz family rates
    "webm": {
        "video": "libvpx-vp9",
        "audio": "libopus",
        "pix_fmt": "yuv420p",
        "content_type": "video/webm",
        "sample_rate": 48000,
    },
}

RENDER_PRESETS: dict[str, list[dict[str, Any]]] = {
    "quality": [
        {
            "id": "draft",
            "name": "Draft Quality",
            "description": "Fast rendering for previews",
            "settings": {"width": 640, "height": 360, "frameRate": 24, "bitrate": "500k"},
        },
        {
            "id": "standard",
            "name": "Standard Quality",
            "description": "Good quality for most use cases",
            "settings": {"width": 1280, "height": 720, "frameRate": 30, "bitrate": "2000k"},
        },
        {
            "id": "high",
            "name": "High Quality",
            "description": "High quality for professional use",
            "settings": {"width": 1920, "height": 1080, "frameRate": 30, "bitrate": "5000k"},
        },
        {
            "id": "ultra",
            "name": "Ultra Quality",
            "description": "Maximum quality for premium content",
            "settings": {"width": 1920, "height": 1080, "frameRate": 60, "bitrate": "10000k"},
        },
    ],
    "formats": [
        {"id": "mp4", "name": "MP4", "description": "Most compatible format", "extension": "mp4"},
        {"id": "webm", "name": "WebM", "description": "Web-optimized format", "extension": "webm"},
        {"id": "mov", "name": "QuickTime", "description": "High quality format", "extension": "mov"},
        {"id": "avi", "name": "AVI", "description": "Legacy desktop format", "extension": "avi"},
    ],
    "aspectRatios": [
        {"name": "16:9 (Landscape)", "width": 1920, "height": 1080},
        {"name": "9:16 (Portrait)", "width": 1080, "height": 1920},
        {"name": "1:1 (Square)", "width": 1080, "height": 1080},
        {"name": "4:3 (Classic)", "width": 1280, "height": 960},
    ],
}
