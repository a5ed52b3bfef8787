"""Scene compositing planner.

Turns one scene's layer list into an ordered operation plan and renders that
plan as an FFmpeg filter_complex graph.

Paint order (bottom to top):
    base canvas (solid black, scene duration)
    layers sorted by (start_time, z_index, id)

Every visual operation is active on the half-open window
[start, min(start + duration, scene.duration)); audio layers become extra
inputs summed by amix rather than overlays.
"""

import logging
from dataclasses import dataclass, field
from typing import Union

from src.exceptions import ValidationError
from src.render.audio_mixer import AudioMixOperation, build_audio_mix_filter
from src.schemas.project import (
    AudioLayer,
    ImageLayer,
    Project,
    RenderSettings,
    Scene,
    TextLayer,
    VideoLayer,
)

logger = logging.getLogger(__name__)

# Inputs 0 and 1 are the lavfi color canvas and the silent audio bed
CANVAS_INPUT_INDEX = 0
SILENCE_INPUT_INDEX = 1
MEDIA_INPUT_OFFSET = 2

# Characters the filtergraph parser treats as syntax
_GRAPH_SPECIAL = "\\'[],;"


# ============================================================================
# Escaping
# ============================================================================


def _quote_option_value(value: str) -> str:
    """Quote a value for the filter option parser (':' and '=' separated)."""
    return "'" + value.replace("'", "'\\''") + "'"


def _escape_graph_level(value: str) -> str:
    """Escape a filter argument string for the filtergraph parser."""
    return "".join(f"\\{c}" if c in _GRAPH_SPECIAL else c for c in value)


def escape_drawtext_text(text: str) -> str:
    """Escape literal text for a drawtext ``text=`` option inside filter_complex.

    FFmpeg unescapes filter arguments twice (graph level, then option level),
    so the value is quoted for the option parser first and the result is
    escaped for the graph parser. Quotes, apostrophes, colons, commas and
    brackets in the text come through literally.
    """
    return _escape_graph_level(_quote_option_value(text))


# ============================================================================
# Plan types
# ============================================================================


@dataclass(frozen=True)
class TimeWindow:
    """Half-open activity window in scene-relative seconds."""

    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, t: float) -> bool:
        return self.start <= t < self.end

    def enable_expr(self) -> str:
        # Inclusive start, exclusive end: no flash on the boundary frame
        return f"gte(t,{self.start:.6f})*lt(t,{self.end:.6f})"


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class MediaInput:
    """One ffmpeg ``-i`` input fed from a layer source."""

    index: int
    kind: str  # video, image, audio
    source: str


@dataclass(frozen=True)
class CanvasOperation:
    width: int
    height: int
    frame_rate: float
    duration: float
    color: str = "black"

    def lavfi_source(self) -> str:
        return f"color=c={self.color}:s={self.width}x{self.height}:r={self.frame_rate}:d={self.duration:.6f}"


@dataclass(frozen=True)
class OverlayOperation:
    """Scale an image/video input to the layer rect and overlay it."""

    layer_id: str
    kind: str
    input_index: int
    rect: Rect
    window: TimeWindow
    z_index: int = 0
    opacity: float = 1.0


@dataclass(frozen=True)
class DrawTextOperation:
    """Draw text directly onto the running composite."""

    layer_id: str
    text: str
    x: int
    y: int
    font_size: int
    color: str
    window: TimeWindow
    z_index: int = 0
    font_family: str | None = None


VisualOperation = Union[OverlayOperation, DrawTextOperation]


@dataclass(frozen=True)
class ScenePlan:
    scene_id: str
    duration: float
    canvas: CanvasOperation
    visual_operations: tuple[VisualOperation, ...] = ()
    audio_operations: tuple[AudioMixOperation, ...] = ()
    inputs: tuple[MediaInput, ...] = ()
    fade_in: float = 0.0
    fade_out: float = 0.0
    skipped_layer_ids: tuple[str, ...] = ()

    @property
    def operations(self) -> tuple:
        """All operations in execution order, canvas first."""
        return (self.canvas, *self.visual_operations, *self.audio_operations)

    @property
    def layer_order(self) -> list[str]:
        """Visual layer ids bottom to top."""
        return [op.layer_id for op in self.visual_operations]


# ============================================================================
# Planner
# ============================================================================


def layer_sort_key(layer) -> tuple[float, int, str]:
    return (layer.start_time, layer.z_index, layer.id)


def _validate_payload(scene: Scene) -> None:
    for layer in scene.layers:
        if isinstance(layer, (VideoLayer, ImageLayer, AudioLayer)):
            if not layer.source or not layer.source.strip():
                raise ValidationError(
                    f"Scene '{scene.id}': {layer.type} layer '{layer.id}' has no source",
                    scene_id=scene.id,
                    layer_id=layer.id,
                    field="source",
                    code="MISSING_LAYER_PAYLOAD",
                )
        elif isinstance(layer, TextLayer):
            if not layer.content or not layer.content.strip():
                raise ValidationError(
                    f"Scene '{scene.id}': text layer '{layer.id}' has no content",
                    scene_id=scene.id,
                    layer_id=layer.id,
                    field="content",
                    code="MISSING_LAYER_PAYLOAD",
                )


def _fade_duration(transition, scene_duration: float) -> float:
    if transition is None or transition.type == "cut":
        return 0.0
    # slide/zoom/wipe need the neighbouring scene; each scene is rendered on
    # its own, so they fall back to a fade through black
    return min(transition.duration, scene_duration)


class ScenePlanner:
    """Pure function from (scene, settings) to a ScenePlan."""

    def __init__(
        self,
        settings: RenderSettings,
        canvas_size: tuple[int, int] | None = None,
    ):
        self.settings = settings
        source_w, source_h = canvas_size or (settings.width, settings.height)
        self.scale_x = settings.width / source_w
        self.scale_y = settings.height / source_h

    def _rect(self, layer) -> Rect:
        return Rect(
            x=int(round(layer.x * self.scale_x)),
            y=int(round(layer.y * self.scale_y)),
            width=max(1, int(round(layer.width * self.scale_x))),
            height=max(1, int(round(layer.height * self.scale_y))),
        )

    def plan_scene(self, scene: Scene) -> ScenePlan:
        """Build the operation plan for one scene.

        Raises:
            ValidationError: a media layer has no source or a text layer no content
        """
        _validate_payload(scene)

        settings = self.settings
        canvas = CanvasOperation(
            width=settings.width,
            height=settings.height,
            frame_rate=settings.frame_rate,
            duration=scene.duration,
        )

        inputs: list[MediaInput] = []
        input_by_key: dict[tuple[str, str], int] = {}

        def input_for(kind: str, source: str) -> int:
            key = (kind, source)
            if key not in input_by_key:
                index = MEDIA_INPUT_OFFSET + len(inputs)
                inputs.append(MediaInput(index=index, kind=kind, source=source))
                input_by_key[key] = index
            return input_by_key[key]

        visual_ops: list[VisualOperation] = []
        audio_ops: list[AudioMixOperation] = []
        skipped: list[str] = []

        for layer in sorted(scene.layers, key=layer_sort_key):
            if layer.start_time >= scene.duration:
                logger.info(
                    f"[PLAN] Scene {scene.id}: layer {layer.id} starts at {layer.start_time}s, "
                    f"after scene end {scene.duration}s; skipped"
                )
                skipped.append(layer.id)
                continue

            end = layer.end_time
            if end > scene.duration:
                logger.warning(
                    f"[PLAN] Scene {scene.id}: layer {layer.id} ends at {end}s, "
                    f"clipped to scene duration {scene.duration}s"
                )
                end = scene.duration
            window = TimeWindow(start=layer.start_time, end=end)

            if isinstance(layer, AudioLayer):
                audio_ops.append(
                    AudioMixOperation(
                        layer_id=layer.id,
                        input_index=input_for("audio", layer.source),
                        start=window.start,
                        end=window.end,
                        volume=layer.style.volume,
                    )
                )
            elif isinstance(layer, TextLayer):
                visual_ops.append(
                    DrawTextOperation(
                        layer_id=layer.id,
                        text=layer.content,
                        x=int(round(layer.x * self.scale_x)),
                        y=int(round(layer.y * self.scale_y)),
                        font_size=max(1, int(round(layer.style.font_size * self.scale_y))),
                        color=layer.style.color,
                        window=window,
                        z_index=layer.style.z_index,
                        font_family=layer.style.font_family,
                    )
                )
            else:
                visual_ops.append(
                    OverlayOperation(
                        layer_id=layer.id,
                        kind=layer.type,
                        input_index=input_for(layer.type, layer.source),
                        rect=self._rect(layer),
                        window=window,
                        z_index=layer.style.z_index,
                        opacity=layer.style.opacity,
                    )
                )

        return ScenePlan(
            scene_id=scene.id,
            duration=scene.duration,
            canvas=canvas,
            visual_operations=tuple(visual_ops),
            audio_operations=tuple(audio_ops),
            inputs=tuple(inputs),
            fade_in=_fade_duration(scene.transition_in, scene.duration),
            fade_out=_fade_duration(scene.transition_out, scene.duration),
            skipped_layer_ids=tuple(skipped),
        )


def plan_project(project: Project, settings: RenderSettings) -> list[ScenePlan]:
    """Plan every scene up front so bad data fails before any work starts."""
    planner = ScenePlanner(settings, canvas_size=(project.width, project.height))
    return [planner.plan_scene(scene) for scene in project.scenes]


# ============================================================================
# filter_complex
# ============================================================================


def _overlay_filter(op: OverlayOperation, base_label: str, output_label: str) -> str:
    src_label = f"s{op.input_index}_{output_label}"
    chain = [
        f"trim=duration={op.window.duration:.6f}",
        f"setpts=PTS-STARTPTS+{op.window.start:.6f}/TB",
        f"scale={op.rect.width}:{op.rect.height}",
    ]
    if op.opacity < 1.0:
        chain.append(f"format=rgba,colorchannelmixer=aa={op.opacity}")
    return (
        f"[{op.input_index}:v]" + ",".join(chain) + f"[{src_label}];\n"
        f"[{base_label}][{src_label}]overlay=x={op.rect.x}:y={op.rect.y}:eof_action=pass:"
        f"enable='{op.window.enable_expr()}'[{output_label}]"
    )


def _drawtext_filter(
    op: DrawTextOperation,
    base_label: str,
    output_label: str,
    font_path: str = "",
) -> str:
    options = [
        f"text={escape_drawtext_text(op.text)}",
        "expansion=none",
        f"x={op.x}",
        f"y={op.y}",
        f"fontsize={op.font_size}",
        f"fontcolor={op.color}",
    ]
    if font_path:
        options.append(f"fontfile={escape_drawtext_text(font_path)}")
    elif op.font_family:
        options.append(f"font={escape_drawtext_text(op.font_family)}")
    options.append(f"enable='{op.window.enable_expr()}'")
    return f"[{base_label}]drawtext=" + ":".join(options) + f"[{output_label}]"


def build_video_filter(plan: ScenePlan, pix_fmt: str = "yuv420p", font_path: str = "") -> str:
    """Video half of the scene graph, ending in [vout]."""
    parts: list[str] = []
    current = f"{CANVAS_INPUT_INDEX}:v"

    for k, op in enumerate(plan.visual_operations):
        output_label = f"v{k}"
        if isinstance(op, DrawTextOperation):
            parts.append(_drawtext_filter(op, current, output_label, font_path))
        else:
            parts.append(_overlay_filter(op, current, output_label))
        current = output_label

    tail: list[str] = []
    if plan.fade_in > 0:
        tail.append(f"fade=t=in:st=0:d={plan.fade_in:.6f}")
    if plan.fade_out > 0:
        tail.append(f"fade=t=out:st={plan.duration - plan.fade_out:.6f}:d={plan.fade_out:.6f}")
    tail.append(f"format={pix_fmt}")
    parts.append(f"[{current}]" + ",".join(tail) + "[vout]")
    return ";\n".join(parts)


def build_filter_complex(
    plan: ScenePlan,
    sample_rate: int,
    pix_fmt: str = "yuv420p",
    font_path: str = "",
) -> str:
    """Complete scene graph producing [vout] and [aout]."""
    video = build_video_filter(plan, pix_fmt=pix_fmt, font_path=font_path)
    audio = build_audio_mix_filter(
        plan.audio_operations,
        silence_label=f"{SILENCE_INPUT_INDEX}:a",
        sample_rate=sample_rate,
        duration=plan.duration,
        fade_in=plan.fade_in,
        fade_out=plan.fade_out,
    )
    return f"{video};\n{audio}"
