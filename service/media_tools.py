"""ffprobe/ffmpeg queries used to plan an avmux run."""

from __future__ import annotations

import logging
import math

from domain.media_mux import (
    PROBE_FAILED_CODE,
    PROBE_NEGATIVE_CODE,
    PROBE_UNPARSEABLE_CODE,
    TOOL_UNAVAILABLE_CODE,
    ExecutionError,
    ProbeError,
    ValidationError,
)
from service.process_runner import ProcessOutcome, run_process

LOGGER = logging.getLogger("avmux.media")
NVENC_ENCODER = "h264_nvenc"


def probe_duration_seconds(ffprobe_bin: str, media_path: str) -> float:
    """Return the container duration of a media file in seconds."""
    try:
        result = run_process(
            [
                ffprobe_bin,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                media_path,
            ],
            capture_output=True,
        )
    except ExecutionError as exc:
        raise ProbeError(PROBE_FAILED_CODE, str(exc)) from exc
    if result.outcome != ProcessOutcome.SUCCESS:
        stderr_text = (result.stderr or "").strip()
        raise ProbeError(
            PROBE_FAILED_CODE, f"ffprobe failed for {media_path}: {stderr_text}"
        )

    raw_value = (result.stdout or "").strip()
    try:
        duration_seconds = float(raw_value)
    except ValueError as exc:
        raise ProbeError(
            PROBE_UNPARSEABLE_CODE,
            f"ffprobe returned no duration for {media_path}: {raw_value!r}",
        ) from exc
    if not math.isfinite(duration_seconds):
        raise ProbeError(
            PROBE_UNPARSEABLE_CODE,
            f"ffprobe returned no duration for {media_path}: {raw_value!r}",
        )
    if duration_seconds < 0:
        raise ProbeError(
            PROBE_NEGATIVE_CODE, f"negative duration for {media_path}: {raw_value}"
        )
    return duration_seconds


def has_encoder(ffmpeg_bin: str, encoder_name: str) -> bool:
    """Return True when ffmpeg lists the encoder. Any failure means no."""
    try:
        result = run_process(
            [ffmpeg_bin, "-hide_banner", "-encoders"], capture_output=True
        )
    except ExecutionError as exc:
        LOGGER.debug("avmux.media.encoders_unavailable: %s", exc)
        return False
    if result.outcome != ProcessOutcome.SUCCESS:
        return False

    wanted = encoder_name.strip().lower()
    for line in (result.stdout or "").splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[1].lower() == wanted:
            return True
    return False


def ensure_tool_callable(binary: str, version_flag: str) -> None:
    """Run ``binary version_flag`` and fail validation when it does not work."""
    try:
        result = run_process([binary, version_flag], capture_output=True)
    except ExecutionError as exc:
        raise ValidationError(
            TOOL_UNAVAILABLE_CODE, f"{binary} not callable: {exc}"
        ) from exc
    if result.outcome != ProcessOutcome.SUCCESS:
        output_text = ((result.stdout or "") + (result.stderr or "")).strip()
        raise ValidationError(
            TOOL_UNAVAILABLE_CODE,
            f"{binary} {version_flag} failed with status {result.return_code}: "
            f"{output_text}",
        )
