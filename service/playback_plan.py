"""Start offset and loop planning for the video and music tracks."""

from __future__ import annotations

from dataclasses import dataclass
import random
import time
from typing import Tuple

from domain.media_mux import INVALID_PLAN_CODE, PlaybackPlan, ValidationError

AUTO_OFFSET = -1.0


@dataclass(frozen=True)
class OffsetRequest:
    """User controls for one track's start offset."""

    explicit_offset_seconds: float = AUTO_OFFSET
    randomize: bool = True

    @property
    def is_explicit(self) -> bool:
        return self.explicit_offset_seconds >= 0


def build_rng(seed: int) -> Tuple[random.Random, int]:
    """Create the run's generator; seed 0 derives one from the clock."""
    effective_seed = seed if seed != 0 else time.time_ns()
    return random.Random(effective_seed), effective_seed


def random_range(rng: random.Random, low: float, high: float) -> float:
    """Draw uniformly from [low, high); collapse to low for empty ranges."""
    if high <= low:
        return low
    return low + rng.random() * (high - low)


def validate_durations(voice_duration: float, track_duration: float) -> None:
    if voice_duration < 0 or track_duration < 0:
        raise ValidationError(INVALID_PLAN_CODE, "durations must be non-negative")


def choose_offset(
    rng: random.Random,
    request: OffsetRequest,
    voice_duration: float,
    track_duration: float,
    must_loop: bool,
) -> float:
    """Pick a start offset for a track given its loop decision."""
    if request.is_explicit:
        return request.explicit_offset_seconds
    if not request.randomize:
        return 0.0
    if must_loop:
        # playback wraps, so any point in the source is a valid start
        return random_range(rng, 0.0, track_duration)
    return random_range(rng, 0.0, max(track_duration - voice_duration, 0.0))


def plan_video_playback(
    rng: random.Random,
    voice_duration: float,
    video_duration: float,
    request: OffsetRequest,
) -> PlaybackPlan:
    """Plan the video track. Video always loops when it is too short."""
    validate_durations(voice_duration, video_duration)
    must_loop = voice_duration > video_duration
    offset = choose_offset(rng, request, voice_duration, video_duration, must_loop)
    return PlaybackPlan(start_offset_seconds=offset, must_loop=must_loop)


def plan_music_playback(
    rng: random.Random,
    voice_duration: float,
    music_duration: float,
    request: OffsetRequest,
    loop_preference: bool,
) -> PlaybackPlan:
    """Plan the music track.

    Looping is opt-in for music: without ``loop_preference`` a short track
    keeps the non-looping window and simply ends before the voice does.
    """
    validate_durations(voice_duration, music_duration)
    must_loop = loop_preference and voice_duration > music_duration
    offset = choose_offset(rng, request, voice_duration, music_duration, must_loop)
    return PlaybackPlan(start_offset_seconds=offset, must_loop=must_loop)


def plan_playback(
    rng: random.Random,
    voice_duration: float,
    video_duration: float,
    music_duration: float,
    video_request: OffsetRequest,
    music_request: OffsetRequest,
    music_loop: bool,
) -> Tuple[PlaybackPlan, PlaybackPlan]:
    """Plan both tracks, drawing for video before music."""
    video_plan = plan_video_playback(rng, voice_duration, video_duration, video_request)
    music_plan = plan_music_playback(
        rng, voice_duration, music_duration, music_request, music_loop
    )
    return video_plan, music_plan
