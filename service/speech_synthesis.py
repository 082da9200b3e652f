"""Coqui TTS CLI adapter."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Tuple

from domain.media_mux import (
    INVALID_CONFIG_CODE,
    SYNTHESIS_OUTPUT_CODE,
    SynthesisOutputMissing,
    ValidationError,
    normalize_story_text,
)
from service.process_runner import raise_for_outcome, run_process

LOGGER = logging.getLogger("avmux.tts")


@dataclass(frozen=True)
class SpeechRequest:
    """Inputs for one synthesis run."""

    text: str
    model_name: str
    output_path: str
    speaker: str = ""
    speaker_wav: str = ""
    language: str = ""
    use_cuda: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "text", normalize_story_text(self.text))
        if not self.model_name.strip():
            raise ValidationError(INVALID_CONFIG_CODE, "tts model must be non-empty")
        if not self.output_path.strip():
            raise ValidationError(
                INVALID_CONFIG_CODE, "voice output path must be non-empty"
            )


def build_tts_args(request: SpeechRequest) -> Tuple[str, ...]:
    """Build TTS flags; optional voice flags only appear when set."""
    args = [
        "--text",
        request.text,
        "--model_name",
        request.model_name,
        "--out_path",
        request.output_path,
    ]
    if request.speaker:
        args.extend(["--speaker_idx", request.speaker])
    if request.speaker_wav:
        args.extend(["--speaker_wav", request.speaker_wav])
    if request.language:
        args.extend(["--language_idx", request.language])
    args.extend(["--use_cuda", "true" if request.use_cuda else "false"])
    return tuple(args)


def remove_stale_file(path: str) -> None:
    """Delete a leftover artifact so a later existence check is meaningful."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    LOGGER.debug("avmux.fs.removed_stale: %s", path)


def synthesize_speech(
    tts_bin: str, request: SpeechRequest, timeout_seconds: float = 0.0
) -> str:
    """Run the TTS CLI and return the path of the produced audio."""
    remove_stale_file(request.output_path)
    result = run_process(
        [tts_bin, *build_tts_args(request)], timeout_seconds=timeout_seconds
    )
    raise_for_outcome(result, "tts", timeout_seconds)
    if not os.path.isfile(request.output_path):
        raise SynthesisOutputMissing(
            SYNTHESIS_OUTPUT_CODE, f"tts did not produce {request.output_path}"
        )
    return request.output_path
