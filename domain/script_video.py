"""Domain types, error codes and subtitle formats for render_script_video."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
from typing import Sequence, Tuple

INPUT_FILE_CODE = "script_video.input.file_error"
EMPTY_CONTENT_CODE = "script_video.input.empty_content"
MISSING_ASSETS_CODE = "script_video.input.missing_assets"
ASSET_SHORTFALL_CODE = "script_video.input.asset_shortfall"
INVALID_CONFIG_CODE = "script_video.input.invalid_config"
INVALID_CUE_CODE = "script_video.input.invalid_cue"
INVALID_SRT_CODE = "script_video.input.invalid_srt"

SRT_TIME_RANGE_PATTERN = re.compile(
    r"^(?P<start>\d{2}:\d{2}:\d{2},\d{3})\s*-->\s*(?P<end>\d{2}:\d{2}:\d{2},\d{3})$"
)
SRT_TIMECODE_PATTERN = re.compile(r"^(\d{2}):(\d{2}):(\d{2}),(\d{3})$")

ASS_PRIMARY_COLOUR = "&H00FFFFFF"
ASS_OUTLINE_COLOUR = "&H00000000"
ASS_OUTLINE_WIDTH = 1
ASS_BOTTOM_CENTER_ALIGNMENT = 2


class ScriptValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class ScriptPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Meta:
    """Script metadata; the duration is advisory only."""

    title: str
    duration_seconds: int
    platforms: Tuple[str, ...]
    style: str
    date: str


@dataclass(frozen=True)
class TTSConfig:
    """Voice settings requested by the script."""

    voice: str
    speed: float
    pitch: str


@dataclass(frozen=True)
class Scene:
    """A narrated scene; index is the block position in the narration section."""

    index: int
    title: str
    image_prompt: str
    narration: str

    def __post_init__(self) -> None:
        if self.index <= 0:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "scene index must be positive"
            )
        if not self.narration.strip():
            raise ScriptValidationError(
                EMPTY_CONTENT_CODE, f"scene {self.index} has no narration"
            )


@dataclass(frozen=True)
class ImagePrompt:
    """A cleaned image-generation prompt."""

    index: int
    name: str
    prompt: str
    aspect_ratio: str


@dataclass(frozen=True)
class ScriptDocument:
    """Parsed narration script."""

    meta: Meta
    tts_config: TTSConfig
    scenes: Tuple[Scene, ...]
    image_prompts: Tuple[ImagePrompt, ...]

    def full_narration(self) -> str:
        """Return the narration of every scene separated by blank lines."""
        return "\n\n".join(scene.narration for scene in self.scenes)


@dataclass(frozen=True)
class SubtitleCue:
    """A timed subtitle entry."""

    index: int
    start_seconds: float
    end_seconds: float
    text: str

    def __post_init__(self) -> None:
        if self.index <= 0:
            raise ScriptValidationError(INVALID_CUE_CODE, "cue index must be positive")
        if self.start_seconds < 0:
            raise ScriptValidationError(
                INVALID_CUE_CODE, "cue start time must be non-negative"
            )
        if self.end_seconds <= self.start_seconds:
            raise ScriptValidationError(
                INVALID_CUE_CODE, "cue end time must be after start time"
            )
        if not self.text.strip():
            raise ScriptValidationError(INVALID_CUE_CODE, "cue text is empty")

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass(frozen=True)
class SubtitleStyle:
    """Subtitle overlay styling for one platform."""

    font_name: str
    font_size: int
    margin_v: int
    box_height: int
    box_opacity: float

    def __post_init__(self) -> None:
        if self.font_size <= 0 or self.box_height <= 0 or self.margin_v < 0:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "subtitle style dimensions are invalid"
            )
        if not 0.0 <= self.box_opacity <= 1.0:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "subtitle box opacity must be within [0, 1]"
            )


@dataclass(frozen=True)
class PlatformProfile:
    """Canvas and subtitle styling for one output target."""

    name: str
    width: int
    height: int
    aspect_ratio: str
    subtitle_style: SubtitleStyle

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "canvas width and height must be positive"
            )
        if self.width % 2 or self.height % 2:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "canvas width and height must be even"
            )


@dataclass(frozen=True)
class ComposeRequest:
    """Inputs for composing one platform video."""

    images: Tuple[Path, ...]
    audio_path: Path
    subtitle_path: Path
    output_path: Path
    profile: PlatformProfile
    audio_duration_seconds: float

    def __post_init__(self) -> None:
        if not self.images:
            raise ScriptValidationError(
                MISSING_ASSETS_CODE, "compose request has no images"
            )
        if self.audio_duration_seconds <= 0:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "audio duration must be positive"
            )


def seconds_to_milliseconds(seconds: float) -> int:
    """Round seconds to whole milliseconds."""
    return int(round(seconds * 1000))


def format_srt_timestamp(seconds: float) -> str:
    """Format seconds as an SRT timestamp."""
    milliseconds = seconds_to_milliseconds(seconds)
    if milliseconds < 0:
        raise ScriptValidationError(
            INVALID_CUE_CODE, "timestamp must be non-negative"
        )
    total_seconds, millis = divmod(milliseconds, 1000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def parse_timecode(timecode_value: str) -> float:
    """Parse an SRT timecode into seconds."""
    match = SRT_TIMECODE_PATTERN.fullmatch(timecode_value.strip())
    if not match:
        raise ScriptValidationError(
            INVALID_SRT_CODE, f"invalid timecode: {timecode_value!r}"
        )
    hours, minutes, seconds, millis = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds + millis / 1000.0


def format_ass_timestamp(seconds: float) -> str:
    """Format seconds as an ASS timestamp (centisecond precision)."""
    centiseconds = int(round(seconds * 100))
    if centiseconds < 0:
        raise ScriptValidationError(
            INVALID_CUE_CODE, "timestamp must be non-negative"
        )
    total_seconds, cs = divmod(centiseconds, 100)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}.{cs:02d}"


def build_srt(cues: Sequence[SubtitleCue]) -> str:
    """Build SRT content from subtitle cues."""
    lines: list[str] = []
    for cue in cues:
        lines.append(str(cue.index))
        lines.append(
            f"{format_srt_timestamp(cue.start_seconds)} --> "
            f"{format_srt_timestamp(cue.end_seconds)}"
        )
        lines.append(cue.text)
        lines.append("")
    if not lines:
        return ""
    return "\n".join(lines).strip() + "\n"


def parse_srt(text_value: str) -> Tuple[SubtitleCue, ...]:
    """Parse SRT content into subtitle cues."""
    normalized = text_value.replace("\ufeff", "").replace("\r\n", "\n").strip()
    if not normalized:
        return ()

    cues: list[SubtitleCue] = []
    for block in re.split(r"\n\s*\n", normalized):
        lines = [line.strip() for line in block.splitlines() if line.strip()]
        if not lines:
            continue
        if lines[0].isdigit():
            lines = lines[1:]
        if not lines:
            raise ScriptValidationError(INVALID_SRT_CODE, "SRT block missing timecode")

        match = SRT_TIME_RANGE_PATTERN.fullmatch(lines[0])
        if not match:
            raise ScriptValidationError(
                INVALID_SRT_CODE, f"invalid time range: {lines[0]!r}"
            )
        if len(lines) < 2:
            raise ScriptValidationError(INVALID_SRT_CODE, "SRT block missing text")

        cues.append(
            SubtitleCue(
                index=len(cues) + 1,
                start_seconds=parse_timecode(match.group("start")),
                end_seconds=parse_timecode(match.group("end")),
                text="\n".join(lines[1:]),
            )
        )
    return tuple(cues)


def build_ass(cues: Sequence[SubtitleCue], profile: PlatformProfile) -> str:
    """Build ASS content styled for a platform canvas."""
    style = profile.subtitle_style
    header = "\n".join(
        [
            "[Script Info]",
            "Title: Auto Generated Subtitle",
            "ScriptType: v4.00+",
            f"PlayResX: {profile.width}",
            f"PlayResY: {profile.height}",
            "WrapStyle: 0",
            "",
            "[V4+ Styles]",
            "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, "
            "OutlineColour, BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, "
            "ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, Alignment, "
            "MarginL, MarginR, MarginV, Encoding",
            f"Style: Default,{style.font_name},{style.font_size},"
            f"{ASS_PRIMARY_COLOUR},&H000000FF,{ASS_OUTLINE_COLOUR},&H00000000,"
            f"0,0,0,0,100,100,0,0,1,{ASS_OUTLINE_WIDTH},0,"
            f"{ASS_BOTTOM_CENTER_ALIGNMENT},10,10,{style.margin_v},1",
            "",
            "[Events]",
            "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, "
            "Effect, Text",
        ]
    )
    events: list[str] = []
    for cue in cues:
        ass_text = cue.text.replace("\n", "\\N")
        events.append(
            f"Dialogue: 0,{format_ass_timestamp(cue.start_seconds)},"
            f"{format_ass_timestamp(cue.end_seconds)},Default,,0,0,0,,"
            f"{{\\an{ASS_BOTTOM_CENTER_ALIGNMENT}}}{ass_text}"
        )
    return header + "\n" + "\n".join(events) + ("\n" if events else "")
