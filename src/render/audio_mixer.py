"""
Scene audio mixing for FFmpeg filter graphs.

Every scene has a silent stereo bed covering its full duration so the output
always carries an audio stream of the right length, even with no audio
layers. Audio layers are trimmed to their window, scaled by volume, delayed
to their start time and summed onto the bed.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class AudioMixOperation:
    """One audio layer contribution to the scene mix."""

    layer_id: str
    input_index: int
    start: float  # scene-relative seconds
    end: float
    volume: float = 1.0

    @property
    def duration(self) -> float:
        return self.end - self.start


def silence_source(sample_rate: int, duration: float) -> str:
    """lavfi source for the silent bed."""
    return f"anullsrc=r={sample_rate}:cl=stereo:d={duration:.6f}"


def _clip_filter(op: AudioMixOperation, sample_rate: int, output_label: str) -> str:
    parts = [
        f"atrim=duration={op.duration:.6f}",
        "asetpts=PTS-STARTPTS",  # Reset timestamps after trim
        f"aresample={sample_rate}",
        "aformat=channel_layouts=stereo",
    ]
    if op.volume != 1.0:
        parts.append(f"volume={op.volume}")
    if op.start > 0:
        delay_samples = int(round(op.start * sample_rate))
        parts.append(f"adelay={delay_samples}S:all=1")
    return f"[{op.input_index}:a]" + ",".join(parts) + f"[{output_label}]"


def build_audio_mix_filter(
    operations: tuple[AudioMixOperation, ...] | list[AudioMixOperation],
    silence_label: str,
    sample_rate: int,
    duration: float,
    fade_in: float = 0.0,
    fade_out: float = 0.0,
) -> str:
    """Audio half of the scene graph, ending in [aout].

    The silent bed is the first amix input and ``duration=first`` pins the
    mix length to it, so overlong sources never extend the scene.
    """
    filters: list[str] = []
    labels = [silence_label]

    for i, op in enumerate(operations):
        label = f"a{i}"
        filters.append(_clip_filter(op, sample_rate, label))
        labels.append(label)

    tail: list[str] = []
    if fade_in > 0:
        tail.append(f"afade=t=in:st=0:d={fade_in:.6f}")
    if fade_out > 0:
        tail.append(f"afade=t=out:st={duration - fade_out:.6f}:d={fade_out:.6f}")

    if len(labels) == 1:
        head = "anull"
    else:
        head = f"amix=inputs={len(labels)}:duration=first:dropout_transition=0:normalize=0"

    mix_inputs = "".join(f"[{label}]" for label in labels)
    filters.append(mix_inputs + ",".join([head, *tail]) + "[aout]")
    return ";\n".join(filters)
