"""Single-pass ffmpeg argument construction for avmux."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from domain.media_mux import (
    INVALID_PLAN_CODE,
    EncoderChoice,
    HardwareNvenc,
    MixSpec,
    PlaybackPlan,
    RateControlMode,
    SoftwareH264,
    ValidationError,
    validate_nvenc_preset,
    validate_quality,
)
from service.media_tools import NVENC_ENCODER
from service.process_runner import validate_command

SOFTWARE_ENCODER = "libx264"
PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
LOOP_FOREVER = "-1"
VOICE_TAG = "v"
MUSIC_TAG = "m"
MIX_TAG = "aout"
FILTER_OPTION_SPECIALS = "\\':="
FILTER_GRAPH_SPECIALS = "\\'[],;"


@dataclass(frozen=True)
class MuxInputs:
    """Files taking part in the final mux."""

    video_path: str
    voice_path: str
    music_path: str
    subtitle_path: str
    output_path: str

    def __post_init__(self) -> None:
        for name, value in (
            ("video_path", self.video_path),
            ("voice_path", self.voice_path),
            ("music_path", self.music_path),
            ("subtitle_path", self.subtitle_path),
            ("output_path", self.output_path),
        ):
            if not value.strip():
                raise ValidationError(INVALID_PLAN_CODE, f"{name} must be non-empty")


@dataclass(frozen=True)
class EncoderRequest:
    """What the user asked for; availability decides the final choice."""

    use_hardware: bool
    preset: str
    rate_control: RateControlMode
    quality: int

    def __post_init__(self) -> None:
        validate_nvenc_preset(self.preset)
        validate_quality(self.quality)


@dataclass(frozen=True)
class AssemblyPlan:
    """Everything the mux invocation needs, in argument order."""

    arguments: Tuple[str, ...]
    encoder: EncoderChoice
    subtitle_path: str
    output_path: str
    output_duration_seconds: float

    def command(self, ffmpeg_bin: str) -> Tuple[str, ...]:
        return validate_command((ffmpeg_bin, *self.arguments))


def select_encoder(request: EncoderRequest, hardware_available: bool) -> EncoderChoice:
    """Use NVENC only when requested and present; otherwise libx264."""
    if request.use_hardware and hardware_available:
        return HardwareNvenc(
            preset=request.preset,
            rate_control=request.rate_control,
            quality=request.quality,
        )
    return SoftwareH264(quality=request.quality)


def format_seconds(seconds: float) -> str:
    return f"{seconds:.3f}"


def format_gain(gain: float) -> str:
    return f"{gain:g}"


def escape_characters(value: str, specials: str) -> str:
    escaped = []
    for character in value:
        if character in specials:
            escaped.append("\\")
        escaped.append(character)
    return "".join(escaped)


def escape_filter_path(path: str) -> str:
    """Escape a path for use as a filter option value inside a filtergraph.

    ffmpeg unescapes the value twice: once when splitting the graph into
    filters and again when splitting the filter's options.
    """
    option_value = escape_characters(path, FILTER_OPTION_SPECIALS)
    return escape_characters(option_value, FILTER_GRAPH_SPECIALS)


def build_input_args(media_path: str, plan: PlaybackPlan) -> Tuple[str, ...]:
    """Loop directive (positional, next input only), seek, then the input."""
    args: list[str] = []
    if plan.must_loop:
        args.extend(["-stream_loop", LOOP_FOREVER])
    args.extend(["-ss", format_seconds(plan.start_offset_seconds), "-i", media_path])
    return tuple(args)


def build_audio_filter(mix: MixSpec) -> str:
    """Build the voice/music mix graph producing the ``[aout]`` stream."""
    normalize = (
        "aresample=async=1:first_pts=0,"
        f"aformat=sample_rates={mix.sample_rate}:channel_layouts={mix.channel_layout}"
    )
    return (
        f"[1:a]volume={format_gain(mix.voice_gain)},{normalize}[{VOICE_TAG}];"
        f"[2:a]volume={format_gain(mix.music_gain)},{normalize}[{MUSIC_TAG}];"
        f"[{VOICE_TAG}][{MUSIC_TAG}]amix=inputs=2:duration=first:dropout_transition=0,"
        f"aresample=async=1[{MIX_TAG}]"
    )


def build_encoder_args(encoder: EncoderChoice) -> Tuple[str, ...]:
    """Build video codec arguments for the chosen encoder."""
    quality = str(encoder.quality)
    if isinstance(encoder, HardwareNvenc):
        args = [
            "-c:v",
            NVENC_ENCODER,
            "-preset",
            encoder.preset,
            "-pix_fmt",
            PIXEL_FORMAT,
        ]
        if encoder.rate_control == RateControlMode.CONSTQP:
            args.extend(["-rc", "constqp", "-qp", quality])
        elif encoder.rate_control == RateControlMode.VBR:
            args.extend(["-rc", "vbr", "-cq", quality, "-b:v", "0"])
        else:
            args.extend(["-rc", "vbr_hq", "-cq", quality, "-b:v", "0", "-tune", "hq"])
        return tuple(args)
    return (
        "-c:v",
        SOFTWARE_ENCODER,
        "-preset",
        encoder.preset,
        "-crf",
        quality,
        "-pix_fmt",
        PIXEL_FORMAT,
    )


def build_assembly_plan(
    inputs: MuxInputs,
    voice_duration: float,
    video_plan: PlaybackPlan,
    music_plan: PlaybackPlan,
    mix: MixSpec,
    encoder: EncoderChoice,
) -> AssemblyPlan:
    """Build the ffmpeg arguments that seek, loop, trim, mix and encode.

    Input order is fixed: 0 = video, 1 = voice, 2 = music. The output is
    trimmed to the voice duration so looping in either track never
    changes the output length.
    """
    if voice_duration <= 0:
        raise ValidationError(INVALID_PLAN_CODE, "voice duration must be positive")

    args: list[str] = ["-y"]
    args.extend(build_input_args(inputs.video_path, video_plan))
    args.extend(["-i", inputs.voice_path])
    args.extend(build_input_args(inputs.music_path, music_plan))
    args.extend(["-vf", f"ass={escape_filter_path(inputs.subtitle_path)}"])
    args.extend(["-t", format_seconds(voice_duration)])
    args.extend(["-filter_complex", build_audio_filter(mix)])
    args.extend(["-map", "0:v:0", "-map", f"[{MIX_TAG}]"])
    args.extend(build_encoder_args(encoder))
    args.extend(["-c:a", AUDIO_CODEC, "-b:a", AUDIO_BITRATE])
    args.extend(["-movflags", "+faststart", inputs.output_path])

    return AssemblyPlan(
        arguments=validate_command(args),
        encoder=encoder,
        subtitle_path=inputs.subtitle_path,
        output_path=inputs.output_path,
        output_duration_seconds=voice_duration,
    )
