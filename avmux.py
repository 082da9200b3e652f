#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = []
# ///
"""Synthesize a story, burn word-level subtitles, and mux it over video and music."""

from __future__ import annotations

import argparse
from contextlib import contextmanager
from dataclasses import dataclass
import functools
import logging
import os
import shutil
import sys
from typing import Iterator, Mapping, Sequence

from domain.media_mux import (
    GENERATOR_MISSING_CODE,
    INPUT_MUSIC_CODE,
    INPUT_STORY_CODE,
    INPUT_VIDEO_CODE,
    INVALID_CONFIG_CODE,
    OUTPUT_PATH_CODE,
    TTS_MISSING_CODE,
    AvmuxError,
    MediaAsset,
    MixSpec,
    PipelineRun,
    PipelineStage,
    ProcessTimeoutError,
    ValidationError,
    normalize_story_text,
    parse_quality,
    parse_rate_control_mode,
    parse_timeout_seconds,
)
from service.media_tools import (
    NVENC_ENCODER,
    ensure_tool_callable,
    has_encoder,
    probe_duration_seconds,
)
from service.mux_plan import (
    EncoderRequest,
    MuxInputs,
    build_assembly_plan,
    select_encoder,
)
from service.playback_plan import (
    AUTO_OFFSET,
    OffsetRequest,
    build_rng,
    plan_playback,
)
from service.process_runner import raise_for_outcome, run_process
from service.speech_synthesis import SpeechRequest, synthesize_speech
from service.subtitle_generation import (
    SubtitleGeneratorConfig,
    default_subtitle_path,
    generate_subtitles,
)

LOGGER = logging.getLogger("avmux")

FFMPEG_BIN_ENV = "AVMUX_FFMPEG_BIN"
FFPROBE_BIN_ENV = "AVMUX_FFPROBE_BIN"
LOG_LEVEL_ENV = "AVMUX_LOG_LEVEL"
TIMEOUT_ENV = "AVMUX_TIMEOUT_SECONDS"
BUILD_ENV = "AVMUX_BUILD"
PIPELINE_IO_CODE = "avmux.pipeline.io_error"
UNHANDLED_CODE = "avmux.unhandled_error"

STAGE_MESSAGES = {
    PipelineStage.SYNTHESIZING: "unable to synthesize speech",
    PipelineStage.PROBING: "unable to probe media durations",
    PipelineStage.PLANNING: "unable to plan playback",
    PipelineStage.GENERATING_SUBTITLES: "unable to generate subtitles",
    PipelineStage.ASSEMBLING: "unable to merge video+background music",
}


class StageFailure(AvmuxError):
    """A pipeline stage failed; keeps the cause's code."""

    def __init__(self, stage: PipelineStage, code: str, message: str) -> None:
        super().__init__(code, message)
        self.stage = stage


@dataclass(frozen=True)
class ToolSettings:
    """Executables resolved from the environment."""

    ffmpeg_bin: str
    ffprobe_bin: str


@dataclass(frozen=True)
class PipelineRequest:
    """Parsed CLI request and runtime options."""

    video_path: str
    music_path: str
    story_file: str
    output_path: str
    subtitle_path: str
    voice_path: str
    mix: MixSpec
    music_loop: bool
    video_offset: OffsetRequest
    music_offset: OffsetRequest
    seed: int
    timeout_seconds: float
    encoder: EncoderRequest
    generator: SubtitleGeneratorConfig
    tts_bin: str
    tts_model: str
    tts_speaker: str
    tts_speaker_wav: str
    tts_language: str
    tts_cuda: bool
    tools: ToolSettings
    debug: bool


def configure_logging(env: Mapping[str, str]) -> None:
    """Configure logging for CLI output."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(message)s")


def read_env_text(env: Mapping[str, str], key: str, fallback: str) -> str:
    """Read a non-empty string from the environment."""
    raw_value = env.get(key, "").strip()
    return raw_value or fallback


def load_tool_settings(env: Mapping[str, str]) -> ToolSettings:
    return ToolSettings(
        ffmpeg_bin=read_env_text(env, FFMPEG_BIN_ENV, "ffmpeg"),
        ffprobe_bin=read_env_text(env, FFPROBE_BIN_ENV, "ffprobe"),
    )


def format_version(env: Mapping[str, str]) -> str:
    build = env.get(BUILD_ENV, "").strip()
    if not build:
        return "avmux (dev)"
    return f"avmux {build}"


def build_parser() -> argparse.ArgumentParser:
    """Build the avmux argument parser."""
    parser = argparse.ArgumentParser(prog="avmux.py", add_help=True)
    parser.add_argument("--video", default="", help="background video file (required)")
    parser.add_argument("--music", default="", help="background music file (required)")
    parser.add_argument("--story-file", default="", help="UTF-8 story text (required)")
    parser.add_argument("--out", default="out.mp4")

    parser.add_argument("--music-vol", type=float, default=0.25)
    parser.add_argument("--voice-vol", type=float, default=1.0)
    parser.add_argument(
        "--music-loop", action=argparse.BooleanOptionalAction, default=True
    )

    parser.add_argument("--video-start", type=float, default=AUTO_OFFSET)
    parser.add_argument("--music-start", type=float, default=AUTO_OFFSET)
    parser.add_argument(
        "--rand-video", action=argparse.BooleanOptionalAction, default=True
    )
    parser.add_argument(
        "--rand-music", action=argparse.BooleanOptionalAction, default=True
    )
    parser.add_argument("--seed", type=int, default=0, help="0 -> time-based")
    parser.add_argument(
        "--timeout-seconds",
        "--timeout",
        dest="timeout",
        default=None,
        help="overall timeout, seconds or e.g. 5m; 0 disables",
    )

    parser.add_argument("--use-gpu", action="store_true")
    parser.add_argument("--gpu-preset", default="p1", help="NVENC preset p1..p7")
    parser.add_argument("--gpu-rc", default="vbr_hq", help="vbr|vbr_hq|constqp")
    parser.add_argument("--gpu-cq", default="19", help="quality 0..51")

    parser.add_argument("--ass-out", default="")
    parser.add_argument("--python", default=".venv/bin/python")
    parser.add_argument("--py-script", default="scripts/make_ass_words.py")
    parser.add_argument("--whisper-model", default="small")
    parser.add_argument("--whisper-compute", default="float16")

    parser.add_argument("--tts-bin", default="tts")
    parser.add_argument("--voice-out", default="story.wav")
    parser.add_argument("--tts-model", default="tts_models/en/vctk/vits")
    parser.add_argument("--tts-speaker", default="p376")
    parser.add_argument("--tts-speaker-wav", default="")
    parser.add_argument("--tts-lang", default="")
    parser.add_argument(
        "--tts-cuda", action=argparse.BooleanOptionalAction, default=True
    )

    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--version", action="store_true")
    return parser


def parse_args(argv: Sequence[str], env: Mapping[str, str]) -> PipelineRequest:
    """Parse CLI arguments into a PipelineRequest."""
    return build_request(build_parser().parse_args(list(argv)), env)


def build_request(
    parsed: argparse.Namespace, env: Mapping[str, str]
) -> PipelineRequest:
    """Validate parsed flags and assemble the request."""
    raw_timeout = parsed.timeout
    if raw_timeout is None:
        raw_timeout = env.get(TIMEOUT_ENV, "").strip() or "0"
    timeout_seconds = parse_timeout_seconds(raw_timeout)

    output_path = parsed.out.strip()
    if not output_path:
        raise ValidationError(OUTPUT_PATH_CODE, "output path missing")
    subtitle_path = parsed.ass_out.strip() or default_subtitle_path(output_path)

    encoder = EncoderRequest(
        use_hardware=parsed.use_gpu,
        preset=parsed.gpu_preset.strip(),
        rate_control=parse_rate_control_mode(parsed.gpu_rc),
        quality=parse_quality(parsed.gpu_cq),
    )
    generator = SubtitleGeneratorConfig(
        python_bin=parsed.python,
        script_path=parsed.py_script,
        whisper_model=parsed.whisper_model.strip(),
        whisper_compute=parsed.whisper_compute.strip().lower(),
    )

    return PipelineRequest(
        video_path=parsed.video.strip(),
        music_path=parsed.music.strip(),
        story_file=parsed.story_file.strip(),
        output_path=output_path,
        subtitle_path=subtitle_path,
        voice_path=parsed.voice_out,
        mix=MixSpec(voice_gain=parsed.voice_vol, music_gain=parsed.music_vol),
        music_loop=parsed.music_loop,
        video_offset=OffsetRequest(parsed.video_start, parsed.rand_video),
        music_offset=OffsetRequest(parsed.music_start, parsed.rand_music),
        seed=parsed.seed,
        timeout_seconds=timeout_seconds,
        encoder=encoder,
        generator=generator,
        tts_bin=parsed.tts_bin,
        tts_model=parsed.tts_model,
        tts_speaker=parsed.tts_speaker.strip(),
        tts_speaker_wav=parsed.tts_speaker_wav.strip(),
        tts_language=parsed.tts_lang.strip(),
        tts_cuda=parsed.tts_cuda,
        tools=load_tool_settings(env),
        debug=parsed.debug,
    )


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except OSError as exc:
        raise ValidationError(
            INPUT_STORY_CODE, f"story file unreadable: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise ValidationError(
            INPUT_STORY_CODE,
            f"story file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def ensure_tts_present(tts_bin: str) -> None:
    if os.path.isfile(tts_bin) or shutil.which(tts_bin):
        return
    raise ValidationError(TTS_MISSING_CODE, f"tts not found at {tts_bin}")


def validate_inputs(request: PipelineRequest) -> str:
    """Check inputs and tools; return the trimmed story text."""
    ensure_tool_callable(request.tools.ffmpeg_bin, "-version")
    ensure_tool_callable(request.tools.ffprobe_bin, "-version")
    if not request.video_path or not os.path.isfile(request.video_path):
        raise ValidationError(INPUT_VIDEO_CODE, "no background video")
    if not request.music_path or not os.path.isfile(request.music_path):
        raise ValidationError(INPUT_MUSIC_CODE, "no background music")
    if not request.story_file or not os.path.isfile(request.story_file):
        raise ValidationError(INPUT_STORY_CODE, "no story text")
    ensure_tts_present(request.tts_bin)
    ensure_tool_callable(request.generator.python_bin, "--version")
    if not os.path.isfile(request.generator.script_path):
        raise ValidationError(
            GENERATOR_MISSING_CODE,
            f"subtitle generator not found at {request.generator.script_path}",
        )
    if not request.voice_path.strip():
        raise ValidationError(INVALID_CONFIG_CODE, "voice output path missing")
    return normalize_story_text(read_utf8_text_strict(request.story_file))


def describe_failure(stage: PipelineStage, exc: Exception) -> str:
    """Short user-facing message for a failed stage."""
    detail = str(exc).strip()
    prefix = STAGE_MESSAGES.get(stage)
    if prefix is None:
        return detail
    if isinstance(exc, ProcessTimeoutError):
        return f"{prefix}: timed out ({detail})"
    return f"{prefix}: {detail}"


@contextmanager
def pipeline_stage(run: PipelineRun, stage: PipelineStage) -> Iterator[None]:
    """Enter a stage; any failure inside moves the run to FAILED."""
    run.advance(stage)
    LOGGER.debug("avmux.stage: %s", stage.value)
    try:
        yield
    except AvmuxError as exc:
        run.advance(PipelineStage.FAILED)
        raise StageFailure(stage, exc.code, describe_failure(stage, exc)) from exc
    except OSError as exc:
        run.advance(PipelineStage.FAILED)
        raise StageFailure(
            stage, PIPELINE_IO_CODE, describe_failure(stage, exc)
        ) from exc
    except BaseException:
        run.advance(PipelineStage.FAILED)
        raise


def log_decisions(
    request: PipelineRequest,
    run: PipelineRun,
    voice_duration: float,
    video_duration: float,
    music_duration: float,
) -> None:
    """Log the parsed options and planning decisions at debug level."""
    LOGGER.debug("== parsed flags ==")
    LOGGER.debug(
        "  video=%r music=%r out=%r",
        request.video_path,
        request.music_path,
        request.output_path,
    )
    LOGGER.debug(
        "  music_vol=%.3f voice_vol=%.3f music_loop=%s",
        request.mix.music_gain,
        request.mix.voice_gain,
        request.music_loop,
    )
    LOGGER.debug(
        "  ass_out=%r python=%r py_script=%r",
        request.subtitle_path,
        request.generator.python_bin,
        request.generator.script_path,
    )
    LOGGER.debug(
        "  whisper_model=%r whisper_compute=%r",
        request.generator.whisper_model,
        request.generator.whisper_compute,
    )
    LOGGER.debug(
        "  tts_bin=%r tts_model=%r tts_speaker=%r tts_speaker_wav=%r "
        "tts_lang=%r tts_cuda=%s",
        request.tts_bin,
        request.tts_model,
        request.tts_speaker,
        request.tts_speaker_wav,
        request.tts_language,
        request.tts_cuda,
    )
    LOGGER.debug("  timeout=%ss", request.timeout_seconds)
    LOGGER.debug(
        "  voice: %.3fs, video: %.3fs, music: %.3fs",
        voice_duration,
        video_duration,
        music_duration,
    )
    LOGGER.debug(
        "  seed=%d (effective %d) rand_video=%s rand_music=%s",
        request.seed,
        run.seed,
        request.video_offset.randomize,
        request.music_offset.randomize,
    )
    LOGGER.debug(
        "  chosen offsets: video_start=%.3fs (loop=%s) music_start=%.3fs (loop=%s)",
        run.video_plan.start_offset_seconds,
        run.video_plan.must_loop,
        run.music_plan.start_offset_seconds,
        run.music_plan.must_loop,
    )
    LOGGER.debug("  encoder: %s", run.encoder)
    LOGGER.debug("===================")


def run_pipeline(request: PipelineRequest) -> PipelineRun:
    """Run every stage in order and return the finished run."""
    tools = request.tools
    run = PipelineRun(
        video=MediaAsset(request.video_path),
        music=MediaAsset(request.music_path),
        voice=MediaAsset(request.voice_path),
        mix=request.mix,
        output_path=request.output_path,
        subtitle_path=request.subtitle_path,
    )

    with pipeline_stage(run, PipelineStage.VALIDATING):
        story_text = validate_inputs(request)

    with pipeline_stage(run, PipelineStage.SYNTHESIZING):
        speech_request = SpeechRequest(
            text=story_text,
            model_name=request.tts_model,
            output_path=request.voice_path,
            speaker=request.tts_speaker,
            speaker_wav=request.tts_speaker_wav,
            language=request.tts_language,
            use_cuda=request.tts_cuda,
        )
        synthesize_speech(request.tts_bin, speech_request, request.timeout_seconds)

    with pipeline_stage(run, PipelineStage.PROBING):
        probe = functools.partial(probe_duration_seconds, tools.ffprobe_bin)
        voice_duration = run.voice.duration_seconds(probe)
        video_duration = run.video.duration_seconds(probe)
        music_duration = run.music.duration_seconds(probe)

    with pipeline_stage(run, PipelineStage.PLANNING):
        rng, run.seed = build_rng(request.seed)
        run.video_plan, run.music_plan = plan_playback(
            rng,
            voice_duration,
            video_duration,
            music_duration,
            request.video_offset,
            request.music_offset,
            request.music_loop,
        )
        hardware_available = request.encoder.use_hardware and has_encoder(
            tools.ffmpeg_bin, NVENC_ENCODER
        )
        if request.encoder.use_hardware and not hardware_available:
            LOGGER.info(
                "avmux.encoder.fallback: %s unavailable, using libx264", NVENC_ENCODER
            )
        run.encoder = select_encoder(request.encoder, hardware_available)
        if request.debug:
            log_decisions(request, run, voice_duration, video_duration, music_duration)

    with pipeline_stage(run, PipelineStage.GENERATING_SUBTITLES):
        run.subtitle_path = generate_subtitles(
            request.generator,
            run.voice.path,
            run.subtitle_path,
            request.timeout_seconds,
        )

    with pipeline_stage(run, PipelineStage.ASSEMBLING):
        plan = build_assembly_plan(
            MuxInputs(
                video_path=run.video.path,
                voice_path=run.voice.path,
                music_path=run.music.path,
                subtitle_path=run.subtitle_path,
                output_path=run.output_path,
            ),
            voice_duration,
            run.video_plan,
            run.music_plan,
            run.mix,
            run.encoder,
        )
        result = run_process(
            plan.command(tools.ffmpeg_bin), timeout_seconds=request.timeout_seconds
        )
        raise_for_outcome(result, "ffmpeg", request.timeout_seconds)

    run.advance(PipelineStage.DONE)
    return run


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)
    arguments = list(sys.argv[1:] if argv is None else argv)

    try:
        parsed = build_parser().parse_args(arguments)
        if parsed.version:
            print(format_version(env))
            return 0
        request = build_request(parsed, env)
        if request.debug:
            logging.getLogger().setLevel(logging.DEBUG)
        run = run_pipeline(request)
        LOGGER.info("done: %s", run.output_path)
        return 0
    except AvmuxError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("%s: %s", UNHANDLED_CODE, str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
