"""Declarative project model consumed by the renderer.

Accepts snake_case input. camelCase aliases match the editor's wire format.
Layers are a tagged union keyed by ``type``; each variant carries only the
fields its kind needs.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.constants.presets import (
    FORMAT_CODECS,
    QUALITY_BITRATES,
    QUALITY_PRIORITIES,
    OutputFormat,
    QualityTier,
)

COLOR_PATTERN = r"^(#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?|[A-Za-z]+)$"


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Layer styles
# =============================================================================


class LayerStyle(WireModel):
    """Stacking and blending for visual layers."""

    z_index: int = Field(default=0, alias="zIndex")
    opacity: float = Field(default=1.0, ge=0.0, le=1.0)


class TextStyle(LayerStyle):
    font_size: int = Field(default=24, alias="fontSize", ge=1, le=1000)
    color: str = Field(default="white", pattern=COLOR_PATTERN)
    font_family: str | None = Field(default=None, alias="fontFamily")


class AudioStyle(WireModel):
    z_index: int = Field(default=0, alias="zIndex")
    volume: float = Field(default=1.0, ge=0.0, le=4.0)


# =============================================================================
# Layers
# =============================================================================


class BaseLayer(WireModel):
    id: str = Field(..., min_length=1)
    start_time: float = Field(default=0.0, alias="startTime", ge=0.0)
    duration: float = Field(..., gt=0.0)
    x: float = 0.0
    y: float = 0.0
    width: float | None = None
    height: float | None = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    @property
    def z_index(self) -> int:
        return self.style.z_index  # type: ignore[attr-defined]


class VisualLayer(BaseLayer):
    style: LayerStyle = Field(default_factory=LayerStyle)

    @model_validator(mode="after")
    def _require_rect(self) -> "VisualLayer":
        if self.width is None or self.height is None:
            raise ValueError(f"layer {self.id}: width and height are required for visual layers")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"layer {self.id}: width and height must be positive")
        return self


class VideoLayer(VisualLayer):
    type: Literal["video"] = "video"
    source: str = ""


class ImageLayer(VisualLayer):
    type: Literal["image"] = "image"
    source: str = ""


class TextLayer(VisualLayer):
    type: Literal["text"] = "text"
    content: str = ""
    style: TextStyle = Field(default_factory=TextStyle)


class AudioLayer(BaseLayer):
    type: Literal["audio"] = "audio"
    source: str = ""
    style: AudioStyle = Field(default_factory=AudioStyle)


Layer = Annotated[
    Union[VideoLayer, ImageLayer, TextLayer, AudioLayer],
    Field(discriminator="type"),
]


# =============================================================================
# Scenes and project
# =============================================================================


class Transition(WireModel):
    type: Literal["fade", "cut", "slide", "zoom", "wipe"]
    duration: float = Field(..., gt=0.0)


class Scene(WireModel):
    id: str = Field(..., min_length=1)
    duration: float = Field(..., gt=0.0)
    layers: list[Layer] = Field(default_factory=list)
    transition_in: Transition | None = Field(default=None, alias="transitionIn")
    transition_out: Transition | None = Field(default=None, alias="transitionOut")

    @model_validator(mode="before")
    @classmethod
    def _map_transition_list(cls, data: Any) -> Any:
        # The editor sends transitions as [in, out]
        if isinstance(data, dict) and "transitions" in data:
            data = dict(data)
            transitions = data.pop("transitions") or []
            if len(transitions) > 0 and "transitionIn" not in data and "transition_in" not in data:
                data["transition_in"] = transitions[0]
            if len(transitions) > 1 and "transitionOut" not in data and "transition_out" not in data:
                data["transition_out"] = transitions[1]
        return data

    @field_validator("layers")
    @classmethod
    def _unique_layer_ids(cls, layers: list[Any]) -> list[Any]:
        seen: set[str] = set()
        for layer in layers:
            if layer.id in seen:
                raise ValueError(f"duplicate layer id: {layer.id}")
            seen.add(layer.id)
        return layers


class Project(WireModel):
    id: str = Field(..., alias="projectId", min_length=1)
    width: int = Field(default=1920, gt=0)
    height: int = Field(default=1080, gt=0)
    frame_rate: float = Field(default=30, alias="frameRate", gt=0)
    scenes: list[Scene] = Field(..., min_length=1)

    @field_validator("scenes")
    @classmethod
    def _unique_scene_ids(cls, scenes: list[Scene]) -> list[Scene]:
        seen: set[str] = set()
        for scene in scenes:
            if scene.id in seen:
                raise ValueError(f"duplicate scene id: {scene.id}")
            seen.add(scene.id)
        return scenes

    @property
    def total_duration(self) -> float:
        return sum(scene.duration for scene in self.scenes)


class RenderSettings(WireModel):
    width: int = Field(default=1920, gt=0, le=7680)
    height: int = Field(default=1080, gt=0, le=4320)
    frame_rate: float = Field(default=30, alias="frameRate", gt=0, le=240)
    quality: QualityTier = "standard"
    audio_sample_rate: int = Field(default=44100, alias="audioSampleRate", ge=8000, le=192000)
    output_format: OutputFormat = Field(default="mp4", alias="outputFormat")
    bitrate: str | None = Field(default=None, pattern=r"^\d+[kKmM]?$")

    @property
    def video_bitrate(self) -> str:
        return self.bitrate or QUALITY_BITRATES[self.quality]

    @property
    def priority(self) -> int:
        return QUALITY_PRIORITIES[self.quality]

    @property
    def codecs(self) -> dict[str, Any]:
        return FORMAT_CODECS[self.output_format]

    @property
    def output_sample_rate(self) -> int:
        return self.codecs.get("sample_rate", self.audio_sample_rate)

    @property
    def file_extension(self) -> str:
        return self.output_format
