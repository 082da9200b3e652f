"""Unit tests for the single-pass ffmpeg argument builder."""

from __future__ import annotations

from pathlib import Path
import re
import shutil
import subprocess
from typing import Sequence, Tuple

import pytest

from domain.media_mux import (
    HardwareNvenc,
    MixSpec,
    PlaybackPlan,
    RateControlMode,
    SoftwareH264,
    ValidationError,
)
from service.mux_plan import (
    EncoderRequest,
    MuxInputs,
    build_assembly_plan,
    build_audio_filter,
    escape_filter_path,
    select_encoder,
)
from service.subtitle_generation import GENERATOR_ARTIFACT_NAME

INPUTS = MuxInputs(
    video_path="bg.mp4",
    voice_path="story.wav",
    music_path="music.mp3",
    subtitle_path="/work/out.ass",
    output_path="out.mp4",
)
NO_LOOP = PlaybackPlan(start_offset_seconds=0.0, must_loop=False)
LOOP = PlaybackPlan(start_offset_seconds=0.0, must_loop=True)
FILTER_WHITESPACE = " \n\t\r"
MINIMAL_ASS = """\
[Script Info]
ScriptType: v4.00+
PlayResX: 64
PlayResY: 64

[V4+ Styles]
Format: Name, Fontname, Fontsize, PrimaryColour, BackColour, Bold, Italic, \
BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding
Style: Default,Arial,20,&H00FFFFFF,&H00000000,0,0,1,1,0,2,10,10,10,1

[Events]
Format: Layer, Start, End, Style, Text
Dialogue: 0,0:00:00.00,0:00:01.00,Default,hi
"""


def index_of_input(args: Sequence[str], media_path: str) -> int:
    """Return the index of ``-i media_path``."""
    for index in range(len(args) - 1):
        if args[index] == "-i" and args[index + 1] == media_path:
            return index
    raise AssertionError(f"input not found: {media_path}")


def hardware_request(mode: RateControlMode) -> EncoderRequest:
    return EncoderRequest(use_hardware=True, preset="p4", rate_control=mode, quality=23)


def test_scenario_arguments_in_order() -> None:
    """Build the full argument list for a looping video and fitting music."""
    plan = build_assembly_plan(
        INPUTS,
        12.0,
        LOOP,
        NO_LOOP,
        MixSpec(),
        SoftwareH264(quality=19),
    )

    assert plan.arguments == (
        "-y",
        "-stream_loop",
        "-1",
        "-ss",
        "0.000",
        "-i",
        "bg.mp4",
        "-i",
        "story.wav",
        "-ss",
        "0.000",
        "-i",
        "music.mp3",
        "-vf",
        "ass=/work/out.ass",
        "-t",
        "12.000",
        "-filter_complex",
        build_audio_filter(MixSpec()),
        "-map",
        "0:v:0",
        "-map",
        "[aout]",
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-crf",
        "19",
        "-pix_fmt",
        "yuv420p",
        "-c:a",
        "aac",
        "-b:a",
        "192k",
        "-movflags",
        "+faststart",
        "out.mp4",
    )
    assert plan.output_duration_seconds == 12.0


def test_loop_directive_precedes_only_its_input() -> None:
    """Place each loop directive right before the seek of the input it loops."""
    plan = build_assembly_plan(
        INPUTS,
        30.0,
        NO_LOOP,
        PlaybackPlan(start_offset_seconds=3.25, must_loop=True),
        MixSpec(),
        SoftwareH264(quality=19),
    )
    args = plan.arguments

    assert args.count("-stream_loop") == 1
    music_index = index_of_input(args, "music.mp3")
    assert args[music_index - 4 : music_index] == ("-stream_loop", "-1", "-ss", "3.250")
    voice_index = index_of_input(args, "story.wav")
    assert args[voice_index - 1] != "-ss"
    assert voice_index < music_index


def test_audio_filter_mixes_voice_first() -> None:
    """Tag voice and music, mix with voice-bounded duration, and resample."""
    graph = build_audio_filter(MixSpec(voice_gain=1.0, music_gain=0.25))

    assert graph == (
        "[1:a]volume=1,aresample=async=1:first_pts=0,"
        "aformat=sample_rates=44100:channel_layouts=stereo[v];"
        "[2:a]volume=0.25,aresample=async=1:first_pts=0,"
        "aformat=sample_rates=44100:channel_layouts=stereo[m];"
        "[v][m]amix=inputs=2:duration=first:dropout_transition=0,"
        "aresample=async=1[aout]"
    )


def test_missing_hardware_falls_back_to_software() -> None:
    """Never reference NVENC when it is unavailable."""
    for use_hardware in (True, False):
        request = EncoderRequest(
            use_hardware=use_hardware,
            preset="p7",
            rate_control=RateControlMode.VBR_HQ,
            quality=28,
        )
        encoder = select_encoder(request, hardware_available=False)
        plan = build_assembly_plan(INPUTS, 5.0, NO_LOOP, NO_LOOP, MixSpec(), encoder)

        assert encoder == SoftwareH264(quality=28)
        assert "h264_nvenc" not in plan.arguments
        crf_index = plan.arguments.index("-crf")
        assert plan.arguments[crf_index + 1] == "28"


def test_hardware_not_requested_stays_software() -> None:
    """Ignore an available NVENC encoder unless it was requested."""
    request = EncoderRequest(
        use_hardware=False, preset="p1", rate_control=RateControlMode.VBR, quality=19
    )

    assert isinstance(select_encoder(request, hardware_available=True), SoftwareH264)


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        (RateControlMode.CONSTQP, ("-rc", "constqp", "-qp", "23")),
        (RateControlMode.VBR, ("-rc", "vbr", "-cq", "23", "-b:v", "0")),
        (
            RateControlMode.VBR_HQ,
            ("-rc", "vbr_hq", "-cq", "23", "-b:v", "0", "-tune", "hq"),
        ),
    ],
)
def test_hardware_rate_control_flags(
    mode: RateControlMode, expected: tuple[str, ...]
) -> None:
    """Map the quality number onto the flag for each rate control mode."""
    encoder = select_encoder(hardware_request(mode), hardware_available=True)
    plan = build_assembly_plan(INPUTS, 5.0, NO_LOOP, NO_LOOP, MixSpec(), encoder)
    args = plan.arguments

    assert isinstance(encoder, HardwareNvenc)
    codec_index = args.index("-c:v")
    assert args[codec_index : codec_index + 6] == (
        "-c:v",
        "h264_nvenc",
        "-preset",
        "p4",
        "-pix_fmt",
        "yuv420p",
    )
    assert args[codec_index + 6 : codec_index + 6 + len(expected)] == expected


def test_plan_keeps_final_subtitle_path() -> None:
    """Burn the caller's subtitle path, never the generator's temporary name."""
    plan = build_assembly_plan(
        INPUTS, 5.0, NO_LOOP, NO_LOOP, MixSpec(), SoftwareH264(quality=19)
    )

    assert plan.subtitle_path == "/work/out.ass"
    assert "ass=/work/out.ass" in plan.arguments
    assert not any(GENERATOR_ARTIFACT_NAME in token for token in plan.arguments)


def read_filter_token(text_value: str, terminators: str) -> Tuple[str, str]:
    """Read one token the way ffmpeg's av_get_token does; return it and the rest."""
    position = len(text_value) - len(text_value.lstrip(FILTER_WHITESPACE))
    token: list[str] = []
    kept_length = 0
    while position < len(text_value) and text_value[position] not in terminators:
        character = text_value[position]
        position += 1
        if character == "\\" and position < len(text_value):
            token.append(text_value[position])
            position += 1
            kept_length = len(token)
        elif character == "'":
            while position < len(text_value) and text_value[position] != "'":
                token.append(text_value[position])
                position += 1
            if position < len(text_value):
                position += 1
                kept_length = len(token)
        else:
            token.append(character)
    while len(token) > kept_length and token[-1] in FILTER_WHITESPACE:
        token.pop()
    return "".join(token), text_value[position:]


def parse_ass_filename(filter_text: str) -> str:
    """Recover the ass filename the way ffmpeg reads ``-vf ass=<value>``."""
    name, rest = filter_text.split("=", 1)
    assert name == "ass"
    option_text, graph_rest = read_filter_token(rest, "[],;")
    assert graph_rest == ""
    assert not re.match(r"^[A-Za-z0-9_./-]+=", option_text)
    filename, option_rest = read_filter_token(option_text, ":")
    assert option_rest == ""
    return filename


@pytest.mark.parametrize(
    "subtitle_path",
    [
        "/work/plain.ass",
        "/home/u/John's clips/out.ass",
        "/tmp/a:b.ass",
        "/tmp/a,b;c[d].ass",
        "/tmp/key=value.ass",
        "C:\\subs\\out.ass",
        "/tmp/it's:[a],b;c\\d.ass",
    ],
)
def test_subtitle_path_survives_filter_parsing(subtitle_path: str) -> None:
    """Escape so both of ffmpeg's unescaping passes yield the original path."""
    inputs = MuxInputs(
        video_path="bg.mp4",
        voice_path="story.wav",
        music_path="music.mp3",
        subtitle_path=subtitle_path,
        output_path="out.mp4",
    )
    plan = build_assembly_plan(
        inputs, 5.0, NO_LOOP, NO_LOOP, MixSpec(), SoftwareH264(quality=19)
    )
    filter_text = plan.arguments[plan.arguments.index("-vf") + 1]

    assert parse_ass_filename(filter_text) == subtitle_path
    assert plan.subtitle_path == subtitle_path


def ffmpeg_has_ass_filter(ffmpeg_bin: str) -> bool:
    result = subprocess.run(
        [ffmpeg_bin, "-hide_banner", "-filters"],
        text=True,
        capture_output=True,
        check=False,
    )
    return any(line.split()[1:2] == ["ass"] for line in result.stdout.splitlines())


@pytest.mark.parametrize("file_name", ["plain.ass", "a,b.ass", "a:b.ass", "it's.ass"])
def test_ffmpeg_opens_escaped_subtitle_path(tmp_path: Path, file_name: str) -> None:
    """Burn subtitles from awkward paths with a real ffmpeg when one is installed."""
    ffmpeg_bin = shutil.which("ffmpeg")
    if ffmpeg_bin is None or not ffmpeg_has_ass_filter(ffmpeg_bin):
        pytest.skip("ffmpeg with the ass filter is not available")
    subtitle_path = tmp_path / file_name
    subtitle_path.write_text(MINIMAL_ASS, encoding="utf-8")

    result = subprocess.run(
        [
            ffmpeg_bin,
            "-v",
            "error",
            "-f",
            "lavfi",
            "-i",
            "color=c=black:s=64x64:d=0.2",
            "-vf",
            f"ass={escape_filter_path(str(subtitle_path))}",
            "-frames:v",
            "1",
            "-f",
            "null",
            "-",
        ],
        text=True,
        capture_output=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr


def test_command_prepends_binary() -> None:
    """Prefix the ffmpeg binary to the planned arguments."""
    plan = build_assembly_plan(
        INPUTS, 5.0, NO_LOOP, NO_LOOP, MixSpec(), SoftwareH264(quality=19)
    )

    assert plan.command("/opt/ffmpeg/bin/ffmpeg")[0] == "/opt/ffmpeg/bin/ffmpeg"
    assert plan.command("ffmpeg")[1:] == plan.arguments


def test_zero_voice_duration_is_rejected() -> None:
    """Refuse to build a plan that would trim output to nothing."""
    with pytest.raises(ValidationError):
        build_assembly_plan(
            INPUTS, 0.0, NO_LOOP, NO_LOOP, MixSpec(), SoftwareH264(quality=19)
        )


def test_invalid_mix_and_quality_are_rejected() -> None:
    """Validate gains and quality when the values are constructed."""
    with pytest.raises(ValidationError):
        MixSpec(music_gain=-0.1)
    with pytest.raises(ValidationError):
        SoftwareH264(quality=52)
    with pytest.raises(ValidationError):
        HardwareNvenc(preset="fast", rate_control=RateControlMode.VBR, quality=19)


@pytest.mark.parametrize("use_hardware", [True, False])
def test_encoder_request_rejects_bad_preset(use_hardware: bool) -> None:
    """Reject an unknown NVENC preset even when software encoding is chosen."""
    with pytest.raises(ValidationError):
        EncoderRequest(
            use_hardware=use_hardware,
            preset="fast",
            rate_control=RateControlMode.VBR,
            quality=19,
        )
