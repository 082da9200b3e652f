"""Domain types and parsing for avmux."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import math
import re
from typing import Callable, Tuple, Union

INPUT_VIDEO_CODE = "avmux.input.video_missing"
INPUT_MUSIC_CODE = "avmux.input.music_missing"
INPUT_STORY_CODE = "avmux.input.story_missing"
EMPTY_STORY_CODE = "avmux.input.empty_story"
OUTPUT_PATH_CODE = "avmux.input.output_missing"
INVALID_CONFIG_CODE = "avmux.input.invalid_config"
INVALID_TIMEOUT_CODE = "avmux.input.invalid_timeout"
INVALID_RATE_CONTROL_CODE = "avmux.input.invalid_rate_control"
TOOL_UNAVAILABLE_CODE = "avmux.input.tool_unavailable"
TTS_MISSING_CODE = "avmux.input.tts_missing"
GENERATOR_MISSING_CODE = "avmux.input.generator_missing"
INVALID_PLAN_CODE = "avmux.plan.invalid"
PROBE_FAILED_CODE = "avmux.probe.failed"
PROBE_UNPARSEABLE_CODE = "avmux.probe.unparseable"
PROBE_NEGATIVE_CODE = "avmux.probe.negative_duration"
SYNTHESIS_OUTPUT_CODE = "avmux.tts.output_missing"
SUBTITLE_OUTPUT_CODE = "avmux.subtitles.output_missing"
PROCESS_FAILED_CODE = "avmux.process.failed"
PROCESS_TIMEOUT_CODE = "avmux.process.timed_out"
PROCESS_NOT_FOUND_CODE = "avmux.process.not_found"
INVALID_COMMAND_CODE = "avmux.process.invalid_command"
INVALID_STAGE_CODE = "avmux.pipeline.invalid_transition"

TARGET_SAMPLE_RATE = 44100
TARGET_CHANNEL_LAYOUT = "stereo"
DEFAULT_VOICE_GAIN = 1.0
DEFAULT_MUSIC_GAIN = 0.25
QUALITY_MIN = 0
QUALITY_MAX = 51
SOFTWARE_PRESET = "veryfast"
NVENC_PRESET_PATTERN = re.compile(r"^p[1-7]$")
WHISPER_COMPUTE_VALUES = ("float16", "int8_float16", "float32")
DURATION_PATTERN = re.compile(r"(?P<value>\d+(?:\.\d+)?)(?P<unit>ms|h|m|s)")
DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


class AvmuxError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class ValidationError(AvmuxError):
    """A required input, tool or option is missing or invalid."""


class ProbeError(AvmuxError):
    """A media duration could not be determined."""


class SynthesisOutputMissing(AvmuxError):
    """The speech synthesizer exited cleanly without writing audio."""


class SubtitleOutputMissing(AvmuxError):
    """The subtitle generator exited cleanly without writing its artifact."""


class ExecutionError(AvmuxError):
    """An external tool could not be started or exited non-zero."""


class ProcessTimeoutError(AvmuxError):
    """An external tool exceeded its deadline and was terminated."""


class RateControlMode(str, Enum):
    """NVENC rate control strategies."""

    CONSTQP = "constqp"
    VBR = "vbr"
    VBR_HQ = "vbr_hq"


class PipelineStage(str, Enum):
    """Stages of a single avmux run, in execution order."""

    IDLE = "idle"
    VALIDATING = "validating"
    SYNTHESIZING = "synthesizing"
    PROBING = "probing"
    PLANNING = "planning"
    GENERATING_SUBTITLES = "generating_subtitles"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"


STAGE_ORDER: Tuple[PipelineStage, ...] = (
    PipelineStage.IDLE,
    PipelineStage.VALIDATING,
    PipelineStage.SYNTHESIZING,
    PipelineStage.PROBING,
    PipelineStage.PLANNING,
    PipelineStage.GENERATING_SUBTITLES,
    PipelineStage.ASSEMBLING,
    PipelineStage.DONE,
)
TERMINAL_STAGES = frozenset({PipelineStage.DONE, PipelineStage.FAILED})


@dataclass
class MediaAsset:
    """A media file whose duration is probed at most once."""

    path: str
    _duration_seconds: float | None = field(default=None, init=False, repr=False)

    @property
    def is_probed(self) -> bool:
        return self._duration_seconds is not None

    def duration_seconds(self, probe: Callable[[str], float]) -> float:
        """Return the cached duration, probing the file on first use."""
        if self._duration_seconds is None:
            value = probe(self.path)
            if value < 0 or not math.isfinite(value):
                raise ProbeError(
                    PROBE_NEGATIVE_CODE, f"invalid duration {value!r} for {self.path}"
                )
            self._duration_seconds = value
        return self._duration_seconds


@dataclass(frozen=True)
class PlaybackPlan:
    """Where a track starts and whether it must wrap to cover the voice."""

    start_offset_seconds: float
    must_loop: bool

    def __post_init__(self) -> None:
        if self.start_offset_seconds < 0 or not math.isfinite(
            self.start_offset_seconds
        ):
            raise ValidationError(
                INVALID_PLAN_CODE, "start offset must be a non-negative number"
            )


@dataclass(frozen=True)
class MixSpec:
    """Voice/music mix settings. Output format is fixed."""

    voice_gain: float = DEFAULT_VOICE_GAIN
    music_gain: float = DEFAULT_MUSIC_GAIN
    sample_rate: int = TARGET_SAMPLE_RATE
    channel_layout: str = TARGET_CHANNEL_LAYOUT

    def __post_init__(self) -> None:
        for name, gain in (("voice", self.voice_gain), ("music", self.music_gain)):
            if gain < 0 or not math.isfinite(gain):
                raise ValidationError(
                    INVALID_CONFIG_CODE, f"{name} gain must be a non-negative number"
                )
        if self.sample_rate != TARGET_SAMPLE_RATE:
            raise ValidationError(
                INVALID_CONFIG_CODE, f"sample rate is fixed at {TARGET_SAMPLE_RATE}"
            )
        if self.channel_layout != TARGET_CHANNEL_LAYOUT:
            raise ValidationError(
                INVALID_CONFIG_CODE,
                f"channel layout is fixed at {TARGET_CHANNEL_LAYOUT}",
            )


def validate_quality(quality: int) -> None:
    """Validate an encoder quality number."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise ValidationError(INVALID_CONFIG_CODE, "quality must be an integer")
    if quality < QUALITY_MIN or quality > QUALITY_MAX:
        raise ValidationError(
            INVALID_CONFIG_CODE,
            f"quality must be between {QUALITY_MIN} and {QUALITY_MAX}",
        )


def validate_nvenc_preset(preset: str) -> None:
    if not NVENC_PRESET_PATTERN.fullmatch(preset):
        raise ValidationError(INVALID_CONFIG_CODE, f"invalid NVENC preset: {preset!r}")


@dataclass(frozen=True)
class SoftwareH264:
    """libx264 with a constant rate factor."""

    quality: int
    preset: str = SOFTWARE_PRESET

    def __post_init__(self) -> None:
        validate_quality(self.quality)


@dataclass(frozen=True)
class HardwareNvenc:
    """h264_nvenc with an explicit rate control mode."""

    preset: str
    rate_control: RateControlMode
    quality: int

    def __post_init__(self) -> None:
        validate_quality(self.quality)
        validate_nvenc_preset(self.preset)
        if not isinstance(self.rate_control, RateControlMode):
            raise ValidationError(
                INVALID_RATE_CONTROL_CODE, "rate_control is invalid"
            )


EncoderChoice = Union[SoftwareH264, HardwareNvenc]


@dataclass
class PipelineRun:
    """State owned by one invocation of the pipeline."""

    video: MediaAsset
    music: MediaAsset
    voice: MediaAsset
    mix: MixSpec
    output_path: str
    subtitle_path: str
    stage: PipelineStage = PipelineStage.IDLE
    video_plan: PlaybackPlan | None = None
    music_plan: PlaybackPlan | None = None
    encoder: EncoderChoice | None = None
    seed: int | None = None

    def advance(self, next_stage: PipelineStage) -> None:
        """Move to the next stage; only forward single steps or FAILED are legal."""
        if self.stage in TERMINAL_STAGES:
            raise AvmuxError(
                INVALID_STAGE_CODE, f"run already finished in {self.stage.value}"
            )
        if next_stage == PipelineStage.FAILED:
            self.stage = next_stage
            return
        current_index = STAGE_ORDER.index(self.stage)
        if STAGE_ORDER.index(next_stage) != current_index + 1:
            raise AvmuxError(
                INVALID_STAGE_CODE,
                f"cannot move from {self.stage.value} to {next_stage.value}",
            )
        self.stage = next_stage


def parse_rate_control_mode(value: str) -> RateControlMode:
    """Parse an NVENC rate control name."""
    normalized = value.strip().lower()
    try:
        return RateControlMode(normalized)
    except ValueError as exc:
        raise ValidationError(
            INVALID_RATE_CONTROL_CODE, f"invalid rate control mode: {value!r}"
        ) from exc


def parse_quality(value: str) -> int:
    """Parse the shared CQ/QP/CRF quality number."""
    try:
        quality = int(value.strip())
    except ValueError as exc:
        raise ValidationError(
            INVALID_CONFIG_CODE, f"quality must be an integer: {value!r}"
        ) from exc
    validate_quality(quality)
    return quality


def parse_timeout_seconds(value: str) -> float:
    """Parse a timeout as plain seconds or a duration such as ``1h30m``."""
    normalized = value.strip().lower()
    if not normalized:
        raise ValidationError(INVALID_TIMEOUT_CODE, "timeout must be non-empty")
    try:
        seconds = float(normalized)
    except ValueError:
        position = 0
        seconds = 0.0
        for match in DURATION_PATTERN.finditer(normalized):
            if match.start() != position:
                break
            seconds += float(match.group("value")) * DURATION_UNITS[match.group("unit")]
            position = match.end()
        if position == 0 or position != len(normalized):
            raise ValidationError(
                INVALID_TIMEOUT_CODE, f"invalid timeout: {value!r}"
            ) from None
    if seconds < 0 or not math.isfinite(seconds):
        raise ValidationError(INVALID_TIMEOUT_CODE, "timeout must be non-negative")
    return seconds


def normalize_story_text(text_value: str) -> str:
    """Trim story text and reject empty input."""
    stripped = text_value.replace("\ufeff", "").strip()
    if not stripped:
        raise ValidationError(EMPTY_STORY_CODE, "no story text")
    return stripped
