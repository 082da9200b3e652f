"""Word-level ASS subtitle generator adapter."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from domain.media_mux import (
    INVALID_CONFIG_CODE,
    SUBTITLE_OUTPUT_CODE,
    WHISPER_COMPUTE_VALUES,
    SubtitleOutputMissing,
    ValidationError,
)
from service.process_runner import raise_for_outcome, run_process
from service.speech_synthesis import remove_stale_file

LOGGER = logging.getLogger("avmux.subtitles")

# the generator always writes this file into its working directory
GENERATOR_ARTIFACT_NAME = "subs.ass"
GENERATOR_DEVICE = "cuda"


@dataclass(frozen=True)
class SubtitleGeneratorConfig:
    """How to invoke the subtitle generator script."""

    python_bin: str
    script_path: str
    whisper_model: str = "small"
    whisper_compute: str = "float16"
    device: str = GENERATOR_DEVICE

    def __post_init__(self) -> None:
        if not self.whisper_model.strip():
            raise ValidationError(
                INVALID_CONFIG_CODE, "whisper model must be non-empty"
            )
        if self.whisper_compute not in WHISPER_COMPUTE_VALUES:
            raise ValidationError(
                INVALID_CONFIG_CODE,
                f"invalid whisper compute type: {self.whisper_compute!r}",
            )


def default_subtitle_path(output_path: str) -> str:
    """Place the subtitles next to the output video, with an .ass suffix."""
    stem, _ = os.path.splitext(output_path)
    return stem + ".ass"


def build_generator_env(config: SubtitleGeneratorConfig) -> dict[str, str]:
    return {
        "WHISPER_MODEL": config.whisper_model,
        "WHISPER_COMPUTE": config.whisper_compute,
        "DEVICE": config.device,
    }


def generate_subtitles(
    config: SubtitleGeneratorConfig,
    voice_path: str,
    final_path: str,
    timeout_seconds: float = 0.0,
) -> str:
    """Run the generator and move its artifact to ``final_path``.

    Returns the absolute final path.
    """
    final_path = os.path.abspath(final_path)
    work_dir = os.path.dirname(final_path)
    artifact_path = os.path.join(work_dir, GENERATOR_ARTIFACT_NAME)
    remove_stale_file(artifact_path)
    remove_stale_file(final_path)

    # the generator runs inside work_dir, so relative inputs must be pinned
    python_bin = config.python_bin
    if os.sep in python_bin:
        python_bin = os.path.abspath(python_bin)
    command = [
        python_bin,
        os.path.abspath(config.script_path),
        os.path.abspath(voice_path),
    ]
    result = run_process(
        command,
        cwd=work_dir,
        env_overrides=build_generator_env(config),
        timeout_seconds=timeout_seconds,
    )
    raise_for_outcome(result, "subtitle generator", timeout_seconds)
    if not os.path.isfile(artifact_path):
        raise SubtitleOutputMissing(
            SUBTITLE_OUTPUT_CODE, f"subtitle generator did not produce {artifact_path}"
        )
    os.replace(artifact_path, final_path)
    LOGGER.info("avmux.subtitles.written: %s", final_path)
    return final_path
