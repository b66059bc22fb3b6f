"""Tokenizer and grammar for narration script documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
import re
from typing import Callable, Iterable, Sequence, Tuple

from domain.script_video import ImagePrompt, Meta, Scene, ScriptDocument, TTSConfig

DEFAULT_TITLE = "未命名视频"
DEFAULT_DURATION_SECONDS = 60
DEFAULT_PLATFORMS = ("抖音",)
DEFAULT_STYLE = "图文混排+配音"
DEFAULT_VOICE = "zh-CN-XiaoyiNeural"
DEFAULT_SPEED = 1.0
DEFAULT_PITCH = "+0%"
DEFAULT_ASPECT_RATIO = "9:16"

SECTION_PATTERN = re.compile(r"^##(?!#)\s*(?P<title>.*?)\s*$")
BLOCK_PATTERN = re.compile(
    r"^###(?!#)\s*(?P<kind>[^\d：:]*?)\s*(?P<number>\d+)?\s*(?:[：:]\s*(?P<title>.*?))?\s*$"
)
FIELD_PATTERN = re.compile(
    r"^(?:[-*+]\s+)?\*\*(?P<label>[^*：:]+?)\s*(?:[：:]\s*\*\*|\*\*\s*[：:])\s*(?P<value>.*?)\s*$"
)
QUOTE_PATTERN = re.compile(r"^>\s?(?P<value>.*)$")
RULE_PATTERN = re.compile(r"^(?:-{3,}|\*{3,})$")
DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")
ASPECT_RATIO_PATTERN = re.compile(r"--ar\s+([\d:.]+)")
DIRECTIVE_PATTERNS = (
    re.compile(r"--ar\s+[\d:.]+"),
    re.compile(r"--style\s+\w+"),
    re.compile(r"--v\s+[\d.]+"),
    re.compile(r"--seed\s+\d+"),
    re.compile(r"--q\s+[\d.]+"),
)
PLATFORM_SEPARATOR_PATTERN = re.compile(r"[,，、]")
NUMBER_PATTERN = re.compile(r"[-+]?\d+(?:\.\d+)?")

META_LABELS = {
    "标题": "title",
    "title": "title",
    "时长": "duration",
    "duration": "duration",
    "平台": "platforms",
    "platform": "platforms",
    "platforms": "platforms",
    "风格": "style",
    "style": "style",
    "语音": "voice",
    "voice": "voice",
    "语速": "speed",
    "speed": "speed",
    "音调": "pitch",
    "pitch": "pitch",
}
SCENE_FIELD_LABELS = {
    "配图提示词": "image_prompt",
    "image prompt": "image_prompt",
    "配音文案": "narration",
    "narration": "narration",
    "voiceover": "narration",
}
PROMPT_FIELD_LABELS = {
    "英文提示词": "prompt",
    "english prompt": "prompt",
    "prompt": "prompt",
}
MULTILINE_FIELDS = frozenset({"narration"})
NARRATION_SECTION_PREFIXES = ("分镜脚本", "storyboard", "scenes")
PROMPT_SECTION_PREFIXES = ("配图提示词", "image prompts")
SCENE_BLOCK_KINDS = frozenset({"场景", "scene"})
PROMPT_BLOCK_KINDS = frozenset({"图", "image"})
IGNORED_BLOCK_KIND = "ignored"


class LineKind(str, Enum):
    """Classification of a single document line."""

    SECTION = "section"
    BLOCK = "block"
    FIELD = "field"
    QUOTE = "quote"
    RULE = "rule"
    TEXT = "text"
    BLANK = "blank"


class SectionKind(str, Enum):
    """Top-level sections recognized by the grammar."""

    PREAMBLE = "preamble"
    NARRATION = "narration"
    PROMPTS = "prompts"
    OTHER = "other"


@dataclass(frozen=True)
class Token:
    """A classified line; label/value meaning depends on the kind."""

    kind: LineKind
    label: str = ""
    value: str = ""


@dataclass
class BlockBuffer:
    """Raw fields collected for one ### block."""

    kind: str
    position: int
    title: str
    fields: dict[str, list[str]] = field(default_factory=dict)


def normalize_label(label: str) -> str:
    """Lower-case and trim a field or heading label."""
    return " ".join(label.strip().lower().split())


def tokenize_line(line: str) -> Token:
    """Classify one document line."""
    stripped = line.strip()
    if not stripped:
        return Token(LineKind.BLANK)
    if RULE_PATTERN.fullmatch(stripped):
        return Token(LineKind.RULE)

    block_match = BLOCK_PATTERN.fullmatch(stripped)
    if block_match:
        return Token(
            LineKind.BLOCK,
            label=normalize_label(block_match.group("kind") or ""),
            value=(block_match.group("title") or "").strip(),
        )
    section_match = SECTION_PATTERN.fullmatch(stripped)
    if section_match:
        return Token(LineKind.SECTION, value=section_match.group("title"))

    field_match = FIELD_PATTERN.fullmatch(stripped)
    if field_match:
        return Token(
            LineKind.FIELD,
            label=normalize_label(field_match.group("label")),
            value=field_match.group("value"),
        )
    quote_match = QUOTE_PATTERN.fullmatch(stripped)
    if quote_match:
        return Token(LineKind.QUOTE, value=quote_match.group("value"))
    return Token(LineKind.TEXT, value=stripped)


def tokenize(text_value: str) -> Tuple[Token, ...]:
    """Split a document into classified line tokens."""
    normalized = text_value.replace("\ufeff", "").replace("\r\n", "\n").replace("\r", "\n")
    return tuple(tokenize_line(line) for line in normalized.split("\n"))


def classify_section(title: str) -> SectionKind:
    """Map a ## heading title to the section it opens."""
    normalized = normalize_label(title)
    if normalized.startswith(NARRATION_SECTION_PREFIXES):
        return SectionKind.NARRATION
    if normalized.startswith(PROMPT_SECTION_PREFIXES):
        return SectionKind.PROMPTS
    return SectionKind.OTHER


def strip_quote_markers(line: str) -> str:
    """Remove leading block-quote markers from a narration line."""
    return re.sub(r"^(?:>\s?)+", "", line.strip()).strip()


def clean_prompt(prompt: str) -> str:
    """Remove image-service directives and collapse whitespace."""
    cleaned = prompt
    for pattern in DIRECTIVE_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return " ".join(cleaned.split())


def extract_aspect_ratio(prompt: str, default: str = DEFAULT_ASPECT_RATIO) -> str:
    """Return the --ar directive value of a prompt."""
    match = ASPECT_RATIO_PATTERN.search(prompt)
    return match.group(1) if match else default


def extract_date(*candidates: str | None) -> str | None:
    """Return the first YYYY-MM-DD found in the candidates."""
    for candidate in candidates:
        if not candidate:
            continue
        match = DATE_PATTERN.search(candidate)
        if match:
            return match.group(0)
    return None


def parse_platforms(raw_value: str) -> Tuple[str, ...]:
    """Split a comma separated platform list into lower-cased identifiers."""
    platforms = tuple(
        item.strip().lower()
        for item in PLATFORM_SEPARATOR_PATTERN.split(raw_value)
        if item.strip()
    )
    return platforms or DEFAULT_PLATFORMS


def parse_leading_number(raw_value: str | None) -> float | None:
    """Return the first number in a labeled value."""
    if raw_value is None:
        return None
    match = NUMBER_PATTERN.search(raw_value)
    if not match:
        return None
    return float(match.group(0))


class _Grammar:
    """Single pass over tokens that collects metadata and ### blocks."""

    def __init__(self) -> None:
        self.meta_fields: dict[str, str] = {}
        self.scene_blocks: list[BlockBuffer] = []
        self.prompt_blocks: list[BlockBuffer] = []
        self.section = SectionKind.PREAMBLE
        self.block: BlockBuffer | None = None
        self.field_labels: dict[str, str] = {}
        self.open_field: str | None = None

    def feed(self, tokens: Iterable[Token]) -> None:
        for token in tokens:
            if token.kind == LineKind.SECTION:
                self._close_block()
                self.section = classify_section(token.value)
            elif token.kind == LineKind.BLOCK:
                self._close_block()
                self._open_block(token)
            elif token.kind == LineKind.FIELD:
                self._on_field(token)
            elif token.kind == LineKind.RULE:
                self.open_field = None
            elif token.kind in (LineKind.QUOTE, LineKind.TEXT):
                if self.block is not None and self.open_field in MULTILINE_FIELDS:
                    self.block.fields[self.open_field].append(token.value)
        self._close_block()

    def _open_block(self, token: Token) -> None:
        if self.section == SectionKind.NARRATION and token.label in SCENE_BLOCK_KINDS:
            target = self.scene_blocks
            self.field_labels = SCENE_FIELD_LABELS
        elif self.section == SectionKind.PROMPTS and token.label in PROMPT_BLOCK_KINDS:
            target = self.prompt_blocks
            self.field_labels = PROMPT_FIELD_LABELS
        else:
            # Unrecognized headings still end the previous block.
            self.block = BlockBuffer(kind=IGNORED_BLOCK_KIND, position=0, title=token.value)
            self.field_labels = {}
            return
        self.block = BlockBuffer(
            kind=token.label, position=len(target) + 1, title=token.value
        )
        target.append(self.block)

    def _close_block(self) -> None:
        self.block = None
        self.field_labels = {}
        self.open_field = None

    def _on_field(self, token: Token) -> None:
        if self.block is None or self.block.kind == IGNORED_BLOCK_KIND:
            name = META_LABELS.get(token.label)
            if name is not None:
                self.meta_fields.setdefault(name, token.value.strip())
            self.open_field = None
            return
        name = self.field_labels.get(token.label)
        if name is None or name in self.block.fields:
            self.open_field = None
            return
        self.block.fields[name] = [token.value] if token.value else []
        self.open_field = name


def build_meta(
    meta_fields: dict[str, str],
    text_value: str,
    source_name: str | None,
    today: Callable[[], date],
) -> Meta:
    """Build Meta from labeled fields, falling back to defaults."""
    duration = parse_leading_number(meta_fields.get("duration"))
    platforms_value = meta_fields.get("platforms")
    return Meta(
        title=meta_fields.get("title") or DEFAULT_TITLE,
        duration_seconds=int(duration) if duration and duration > 0 else DEFAULT_DURATION_SECONDS,
        platforms=parse_platforms(platforms_value) if platforms_value else DEFAULT_PLATFORMS,
        style=meta_fields.get("style") or DEFAULT_STYLE,
        date=extract_date(text_value, source_name) or today().isoformat(),
    )


def build_tts_config(meta_fields: dict[str, str]) -> TTSConfig:
    """Build TTSConfig from labeled fields, falling back to defaults."""
    speed = parse_leading_number(meta_fields.get("speed"))
    return TTSConfig(
        voice=meta_fields.get("voice") or DEFAULT_VOICE,
        speed=speed if speed and speed > 0 else DEFAULT_SPEED,
        pitch=meta_fields.get("pitch") or DEFAULT_PITCH,
    )


def build_scenes(blocks: Sequence[BlockBuffer]) -> Tuple[Scene, ...]:
    """Build scenes from blocks, dropping those without narration."""
    scenes: list[Scene] = []
    for block in blocks:
        narration_lines = (
            strip_quote_markers(line) for line in block.fields.get("narration", [])
        )
        narration = "\n".join(line for line in narration_lines if line)
        if not narration:
            continue
        image_prompt = " ".join(block.fields.get("image_prompt", []))
        scenes.append(
            Scene(
                index=block.position,
                title=block.title or f"场景{block.position}",
                image_prompt=clean_prompt(image_prompt),
                narration=narration,
            )
        )
    return tuple(scenes)


def build_image_prompts(blocks: Sequence[BlockBuffer]) -> Tuple[ImagePrompt, ...]:
    """Build image prompts from blocks, dropping those without a prompt line."""
    prompts: list[ImagePrompt] = []
    for block in blocks:
        raw_prompt = " ".join(block.fields.get("prompt", [])).strip()
        if not raw_prompt:
            continue
        prompts.append(
            ImagePrompt(
                index=block.position,
                name=block.title or f"图{block.position}",
                prompt=clean_prompt(raw_prompt),
                aspect_ratio=extract_aspect_ratio(raw_prompt),
            )
        )
    return tuple(prompts)


def parse_script(
    text_value: str,
    source_name: str | None = None,
    today: Callable[[], date] = date.today,
) -> ScriptDocument:
    """Parse a narration script; absent optional content takes defaults."""
    grammar = _Grammar()
    grammar.feed(tokenize(text_value))
    return ScriptDocument(
        meta=build_meta(grammar.meta_fields, text_value, source_name, today),
        tts_config=build_tts_config(grammar.meta_fields),
        scenes=build_scenes(grammar.scene_blocks),
        image_prompts=build_image_prompts(grammar.prompt_blocks),
    )
