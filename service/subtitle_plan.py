"""Subtitle cue timing for narration with a known audio duration."""

from __future__ import annotations

import math
import re
from typing import Tuple

from domain.script_video import (
    INVALID_CONFIG_CODE,
    ScriptValidationError,
    SubtitleCue,
)

MIN_CUE_SECONDS = 0.5
CLAMP_TRIGGER_RATIO = 0.8
CLAMP_RATIO = 0.5
MIN_SLOT_SECONDS = 0.05
WRAP_THRESHOLD = 20

DISPLAY_UNIT_BOUNDARY_PATTERN = re.compile(r"(?<=[。！？!?，,])|\n|(?<=\.)(?=\s)")


def split_display_units(text_value: str) -> Tuple[str, ...]:
    """Split narration into trimmed display units on sentence and comma punctuation."""
    normalized = text_value.replace("\r\n", "\n")
    units = (
        segment.strip() for segment in DISPLAY_UNIT_BOUNDARY_PATTERN.split(normalized)
    )
    return tuple(unit for unit in units if unit)


def soft_wrap(unit: str, threshold: int = WRAP_THRESHOLD) -> str:
    """Break a long display unit at its midpoint for presentation."""
    if len(unit) <= threshold:
        return unit
    midpoint = math.ceil(len(unit) / 2)
    return f"{unit[:midpoint]}\n{unit[midpoint:]}"


def allocate_unit_durations(
    unit_lengths: Tuple[int, ...], audio_duration_seconds: float
) -> Tuple[float, ...]:
    """Return the end time of each unit; the last end equals the audio duration."""
    total_characters = sum(unit_lengths)
    average_char_seconds = audio_duration_seconds / total_characters
    end_times: list[float] = []
    elapsed = 0.0
    last_index = len(unit_lengths) - 1
    for position, unit_length in enumerate(unit_lengths):
        if position == last_index:
            end_times.append(audio_duration_seconds)
            break
        remaining = audio_duration_seconds - elapsed
        units_left = len(unit_lengths) - position
        duration = max(unit_length * average_char_seconds, MIN_CUE_SECONDS)
        if duration > remaining * CLAMP_TRIGGER_RATIO:
            duration = remaining * CLAMP_RATIO
        if remaining - duration < MIN_SLOT_SECONDS * (units_left - 1):
            # Later units could no longer get a usable slot; share what is left.
            share = remaining / units_left
            end_times.extend(elapsed + share * step for step in range(1, units_left))
            end_times.append(audio_duration_seconds)
            break
        elapsed += duration
        end_times.append(elapsed)
    return tuple(end_times)


def generate_cues(
    text_value: str, audio_duration_seconds: float
) -> Tuple[SubtitleCue, ...]:
    """Generate contiguous subtitle cues spanning the whole audio duration."""
    if audio_duration_seconds <= 0 or not math.isfinite(audio_duration_seconds):
        raise ScriptValidationError(
            INVALID_CONFIG_CODE, "audio duration must be a positive number"
        )
    units = split_display_units(text_value)
    if not units:
        return ()

    end_times = allocate_unit_durations(
        tuple(len(unit) for unit in units), audio_duration_seconds
    )
    cues: list[SubtitleCue] = []
    start_seconds = 0.0
    for position, (unit, end_seconds) in enumerate(zip(units, end_times), start=1):
        cues.append(
            SubtitleCue(
                index=position,
                start_seconds=start_seconds,
                end_seconds=end_seconds,
                text=soft_wrap(unit),
            )
        )
        start_seconds = end_seconds
    return tuple(cues)
