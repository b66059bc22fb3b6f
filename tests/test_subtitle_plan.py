"""Unit tests for subtitle cue timing."""

from __future__ import annotations

import math

import pytest

from domain.script_video import ScriptValidationError, build_srt, parse_srt
from service.subtitle_plan import (
    MIN_CUE_SECONDS,
    MIN_SLOT_SECONDS,
    generate_cues,
    soft_wrap,
    split_display_units,
)


def assert_contiguous(cues, duration_seconds: float) -> None:
    """Assert cues start at zero, touch end to start, and end at the duration."""
    assert cues[0].start_seconds == 0.0
    for previous, current in zip(cues, cues[1:]):
        assert previous.end_seconds == current.start_seconds
    assert cues[-1].end_seconds == duration_seconds
    assert all(cue.end_seconds > cue.start_seconds for cue in cues)


def test_generate_cues_two_sentences_split_evenly() -> None:
    """Two equal units share a 4 second narration evenly."""
    cues = generate_cues("你好。世界！", 4.0)
    assert [cue.text for cue in cues] == ["你好。", "世界！"]
    assert math.isclose(cues[0].end_seconds, 2.0)
    assert cues[1].start_seconds == cues[0].end_seconds
    assert cues[1].end_seconds == 4.0
    assert [cue.index for cue in cues] == [1, 2]


def test_generate_cues_single_unit_spans_duration() -> None:
    """A single unit becomes one cue covering the whole audio."""
    cues = generate_cues("只有一句话", 3.25)
    assert len(cues) == 1
    assert cues[0].start_seconds == 0.0
    assert cues[0].end_seconds == 3.25


def test_generate_cues_empty_text_yields_no_cues() -> None:
    """Whitespace-only narration has no display units."""
    assert generate_cues("  \n\n ", 5.0) == ()


def test_generate_cues_rejects_non_positive_duration() -> None:
    """A zero duration is a configuration error."""
    with pytest.raises(ScriptValidationError):
        generate_cues("你好。", 0.0)


def test_generate_cues_applies_minimum_floor() -> None:
    """Short units are held on screen for at least the floor duration."""
    text_value = "好。" + "这是一个相当长的句子用来占据大部分的时间预算。"
    cues = generate_cues(text_value, 5.0)
    assert math.isclose(cues[0].duration_seconds, MIN_CUE_SECONDS)
    assert_contiguous(cues, 5.0)


def test_generate_cues_clamps_long_non_final_unit() -> None:
    """A unit wanting over 80% of the remaining time gets half of it."""
    text_value = "这是一个非常非常非常长的开头句子，短。"
    cues = generate_cues(text_value, 10.0)
    assert len(cues) == 2
    assert math.isclose(cues[0].end_seconds, 5.0)
    assert cues[1].end_seconds == 10.0


def test_generate_cues_are_contiguous_for_tiny_durations() -> None:
    """Very short audio still yields strictly increasing contiguous cues."""
    text_value = "一，二，三，四，五。"
    cues = generate_cues(text_value, 0.3)
    assert len(cues) == 5
    assert_contiguous(cues, 0.3)


def test_generate_cues_many_units_stay_contiguous() -> None:
    """Rounding drift is absorbed by the final cue."""
    text_value = "第一句话。第二句，稍长一点的话！第三句？\n第四句在新的一行"
    cues = generate_cues(text_value, 7.3)
    assert len(cues) == 5
    assert_contiguous(cues, 7.3)


def test_split_display_units_handles_punctuation_and_newlines() -> None:
    """Units break after sentence and comma punctuation and at newlines."""
    units = split_display_units("你好，世界。Hello, world. Next line!\n最后")
    assert units == ("你好，", "世界。", "Hello,", "world.", "Next line!", "最后")


def test_split_display_units_keeps_decimal_points() -> None:
    """A period inside a number does not split the unit."""
    assert split_display_units("版本3.5发布了。") == ("版本3.5发布了。",)


def test_soft_wrap_breaks_long_units_at_midpoint() -> None:
    """Units above the threshold wrap once near the middle."""
    unit = "一二三四五六七八九十一二三四五六七八九十一"
    wrapped = soft_wrap(unit)
    assert wrapped == "一二三四五六七八九十一\n二三四五六七八九十一"
    assert soft_wrap("短句") == "短句"


def test_soft_wrap_does_not_change_timing() -> None:
    """Timing uses unwrapped character counts."""
    long_unit = "一" * 30 + "。"
    cues = generate_cues(long_unit + "二" * 31, 6.1)
    assert "\n" in cues[0].text
    assert math.isclose(cues[0].end_seconds, 3.05)


def test_generate_cues_survive_sustained_clamping() -> None:
    """Many floor-bound units after the budget runs low still get positive slots."""
    cues = generate_cues("啊，" * 100, 10.0)
    assert len(cues) == 100
    assert_contiguous(cues, 10.0)
    assert min(cue.duration_seconds for cue in cues) >= MIN_SLOT_SECONDS - 1e-9


def test_generate_cues_round_trip_through_srt() -> None:
    """Cues written to SRT re-parse with the same millisecond timings."""
    cues = generate_cues("啊，" * 40, 10.0)
    parsed = parse_srt(build_srt(cues))
    assert len(parsed) == len(cues)
    for original, restored in zip(cues, parsed):
        assert restored.end_seconds > restored.start_seconds
        assert math.isclose(restored.start_seconds, original.start_seconds, abs_tol=0.0006)
        assert math.isclose(restored.end_seconds, original.end_seconds, abs_tol=0.0006)
    assert parsed[-1].end_seconds == 10.0
