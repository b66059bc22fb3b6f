#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10",
#   "edge-tts>=6.1",
#   "aiohttp>=3.8",
#   "requests>=2.31"
# ]
# ///
"""Render a narration script into narrated, subtitled videos per platform."""

from __future__ import annotations

import argparse
from concurrent import futures
from dataclasses import dataclass
from datetime import date
from enum import Enum
import logging
import os
from pathlib import Path
import re
import shutil
import sys
import tempfile
from typing import Callable, Mapping, Sequence, Tuple

from domain.platforms import lookup_profile, resolve_profiles
from domain.script_parser import parse_script
from domain.script_video import (
    ASSET_SHORTFALL_CODE,
    EMPTY_CONTENT_CODE,
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    MISSING_ASSETS_CODE,
    ComposeRequest,
    PlatformProfile,
    ScriptDocument,
    ScriptPipelineError,
    ScriptValidationError,
    SubtitleCue,
    build_ass,
    build_srt,
)
from service.media_tool import (
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    FfmpegTool,
    resolve_binary,
)
from service.subtitle_plan import generate_cues, split_display_units
from service.video_composer import DEFAULT_FPS, VideoComposer
from service.voice_synthesis import (
    EDGE_PROVIDER,
    SpeechSynthesizer,
    build_synthesizer,
    describe_voices,
)

LOGGER = logging.getLogger("render_script_video")

LOG_LEVEL_ENV = "SCRIPT_VIDEO_LOG_LEVEL"
ASSETS_ROOT_ENV = "SCRIPT_VIDEO_ASSETS_ROOT"
ASSET_POLICY_ENV = "SCRIPT_VIDEO_ASSET_POLICY"
MAX_WORKERS_ENV = "SCRIPT_VIDEO_MAX_WORKERS"
TOOL_TIMEOUT_ENV = "SCRIPT_VIDEO_TOOL_TIMEOUT_SECONDS"
TTS_PROVIDER_ENV = "TTS_PROVIDER"

DEFAULT_ASSETS_ROOT = Path("content") / "assets"
DEFAULT_MAX_WORKERS = 1
VIDEO_DIR_NAME = "video"
AUDIO_FILE_NAME = "audio.mp3"
SRT_FILE_NAME = "subtitle.srt"
IMAGE_SUFFIXES = frozenset({".png", ".jpg", ".jpeg"})
UNHANDLED_ERROR_CODE = "script_video.unhandled_error"


class SubtitleFormat(str, Enum):
    """Subtitle file handed to the burn-in stage."""

    SRT = "srt"
    ASS = "ass"


class AssetPolicy(str, Enum):
    """Handling when fewer images than scenes are available."""

    DEGRADE = "degrade"
    STRICT = "strict"


@dataclass(frozen=True)
class PipelineConfig:
    """Resolved runtime configuration."""

    script_path: Path
    platforms: Tuple[str, ...]
    images_dir: Path | None
    assets_root: Path
    subtitle_format: SubtitleFormat
    asset_policy: AssetPolicy
    max_workers: int
    tool_timeout_seconds: float
    tts_provider: str
    fps: int


@dataclass(frozen=True)
class PlatformOutcome:
    """Result of composing one platform."""

    platform: str
    output_path: Path
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error_code is None


@dataclass(frozen=True)
class RunReport:
    """Artifacts and per-platform outcomes of one script run."""

    output_dir: Path
    audio_path: Path
    subtitle_path: Path
    audio_duration_seconds: float
    cues: Tuple[SubtitleCue, ...]
    outcomes: Tuple[PlatformOutcome, ...]

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Render a narration script into platform videos."
    )
    parser.add_argument("script", nargs="?", help="Path to the script markdown file.")
    parser.add_argument(
        "--platform",
        action="append",
        default=None,
        help="Target platform (repeatable); defaults to the script's platform list.",
    )
    parser.add_argument("--images-dir", default=None)
    parser.add_argument("--assets-root", default=None)
    parser.add_argument(
        "--subtitle-format",
        choices=[item.value for item in SubtitleFormat],
        default=SubtitleFormat.SRT.value,
    )
    parser.add_argument(
        "--asset-policy",
        choices=[item.value for item in AssetPolicy],
        default=None,
    )
    parser.add_argument("--max-workers", type=int, default=None)
    parser.add_argument("--tool-timeout-seconds", type=float, default=None)
    parser.add_argument("--tts-provider", default=None)
    parser.add_argument("--fps", type=int, default=DEFAULT_FPS)
    parser.add_argument(
        "--list-voices",
        action="store_true",
        help="Print the available voices and exit.",
    )
    return parser.parse_args(list(argv))


def configure_logging(env: Mapping[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def parse_positive_int(raw_value: str, field_name: str) -> int:
    """Parse a positive integer from a string."""
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise ScriptValidationError(
            INVALID_CONFIG_CODE, f"{field_name} must be an integer"
        ) from exc
    if parsed <= 0:
        raise ScriptValidationError(INVALID_CONFIG_CODE, f"{field_name} must be positive")
    return parsed


def parse_positive_float(raw_value: str, field_name: str) -> float:
    """Parse a positive float from a string."""
    try:
        parsed = float(raw_value)
    except ValueError as exc:
        raise ScriptValidationError(
            INVALID_CONFIG_CODE, f"{field_name} must be a number"
        ) from exc
    if parsed <= 0:
        raise ScriptValidationError(INVALID_CONFIG_CODE, f"{field_name} must be positive")
    return parsed


def read_env_int(
    env: Mapping[str, str], key: str, field_name: str, fallback: int
) -> int:
    """Read an integer from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_int(raw_value, field_name)


def read_env_float(
    env: Mapping[str, str], key: str, field_name: str, fallback: float
) -> float:
    """Read a float from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_float(raw_value, field_name)


def parse_asset_policy(raw_value: str) -> AssetPolicy:
    """Parse an asset policy name."""
    try:
        return AssetPolicy(raw_value.strip().lower())
    except ValueError as exc:
        raise ScriptValidationError(
            INVALID_CONFIG_CODE,
            f"asset policy must be one of: "
            f"{', '.join(item.value for item in AssetPolicy)}",
        ) from exc


def load_config(args: argparse.Namespace, env: Mapping[str, str]) -> PipelineConfig:
    """Load pipeline configuration from args and environment."""
    if not args.script:
        raise ScriptValidationError(INPUT_FILE_CODE, "script path is required")

    max_workers = read_env_int(env, MAX_WORKERS_ENV, "max-workers", DEFAULT_MAX_WORKERS)
    if args.max_workers is not None:
        max_workers = parse_positive_int(str(args.max_workers), "max-workers")

    tool_timeout = read_env_float(
        env, TOOL_TIMEOUT_ENV, "tool-timeout-seconds", DEFAULT_TOOL_TIMEOUT_SECONDS
    )
    if args.tool_timeout_seconds is not None:
        tool_timeout = parse_positive_float(
            str(args.tool_timeout_seconds), "tool-timeout-seconds"
        )

    asset_policy_value = args.asset_policy or env.get(ASSET_POLICY_ENV, "").strip()
    asset_policy = (
        parse_asset_policy(asset_policy_value)
        if asset_policy_value
        else AssetPolicy.DEGRADE
    )

    assets_root_value = args.assets_root or env.get(ASSETS_ROOT_ENV, "").strip()
    assets_root = Path(assets_root_value) if assets_root_value else DEFAULT_ASSETS_ROOT

    tts_provider = (
        args.tts_provider or env.get(TTS_PROVIDER_ENV, "").strip() or EDGE_PROVIDER
    )
    platforms = tuple(
        value.strip() for value in (args.platform or []) if value and value.strip()
    )

    return PipelineConfig(
        script_path=Path(args.script),
        platforms=platforms,
        images_dir=Path(args.images_dir) if args.images_dir else None,
        assets_root=assets_root,
        subtitle_format=SubtitleFormat(args.subtitle_format),
        asset_policy=asset_policy,
        max_workers=max_workers,
        tool_timeout_seconds=tool_timeout,
        tts_provider=tts_provider,
        fps=parse_positive_int(str(args.fps), "fps"),
    )


def read_utf8_text_strict(file_path: Path) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        file_bytes = file_path.read_bytes()
    except FileNotFoundError as exc:
        raise ScriptValidationError(
            INPUT_FILE_CODE, f"script file not found: {file_path}"
        ) from exc
    except OSError as exc:
        raise ScriptValidationError(
            INPUT_FILE_CODE, f"script file could not be read: {file_path}: {exc}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise ScriptValidationError(
            INPUT_FILE_CODE,
            f"script file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def natural_sort_key(path: Path) -> Tuple[object, ...]:
    """Sort key that orders embedded numbers numerically."""
    parts = re.split(r"(\d+)", path.name.lower())
    return tuple(int(part) if part.isdigit() else part for part in parts)


def find_images(image_dir: Path, scene_count: int) -> Tuple[Path, ...]:
    """Return image files in order, at most one per scene."""
    if not image_dir.is_dir():
        return ()
    images = sorted(
        (
            entry
            for entry in image_dir.iterdir()
            if entry.is_file() and entry.suffix.lower() in IMAGE_SUFFIXES
        ),
        key=natural_sort_key,
    )
    return tuple(images[:scene_count])


def resolve_target_profiles(
    requested: Sequence[str],
) -> Tuple[PlatformProfile, ...]:
    """Resolve platform identifiers, warning on unknown ones."""
    for identifier in requested:
        if lookup_profile(identifier) is None:
            LOGGER.warning(
                "script_video.platform.unknown platform=%s fallback=default",
                identifier,
            )
    return resolve_profiles(requested)


def check_assets(
    images: Tuple[Path, ...],
    scene_count: int,
    image_dir: Path,
    policy: AssetPolicy,
) -> None:
    """Reject missing images and apply the shortfall policy."""
    if not images:
        raise ScriptValidationError(
            MISSING_ASSETS_CODE,
            f"no images found in {image_dir}; generate them with generate_script_images.py",
        )
    if len(images) >= scene_count:
        return
    message = f"found {len(images)} images for {scene_count} scenes in {image_dir}"
    if policy == AssetPolicy.STRICT:
        raise ScriptValidationError(ASSET_SHORTFALL_CODE, message)
    LOGGER.warning("script_video.assets.shortfall %s", message)


def ass_file_name(profile: PlatformProfile) -> str:
    return f"subtitle-{profile.name}.ass"


def synthesize_narration(
    document: ScriptDocument,
    synthesizer: SpeechSynthesizer,
    profiles: Sequence[PlatformProfile],
    subtitle_format: SubtitleFormat,
    output_dir: Path,
) -> Tuple[float, Tuple[SubtitleCue, ...]]:
    """Synthesize audio and subtitles in staging, then publish them together."""
    narration = document.full_narration()
    if not split_display_units(narration):
        raise ScriptValidationError(EMPTY_CONTENT_CODE, "narration has no text")
    staging_dir = Path(tempfile.mkdtemp(prefix="synthesis-"))
    try:
        staged_audio = staging_dir / AUDIO_FILE_NAME
        synthesizer.synthesize(narration, document.tts_config, staged_audio)
        duration_seconds = synthesizer.get_duration(staged_audio)
        LOGGER.info(
            "script_video.audio.ready provider=%s duration=%.3f",
            synthesizer.name,
            duration_seconds,
        )
        cues = generate_cues(narration, duration_seconds)
        (staging_dir / SRT_FILE_NAME).write_text(build_srt(cues), encoding="utf-8")
        if subtitle_format == SubtitleFormat.ASS:
            for profile in profiles:
                (staging_dir / ass_file_name(profile)).write_text(
                    build_ass(cues, profile), encoding="utf-8"
                )
        output_dir.mkdir(parents=True, exist_ok=True)
        for staged_file in sorted(staging_dir.iterdir()):
            shutil.move(str(staged_file), str(output_dir / staged_file.name))
    finally:
        shutil.rmtree(staging_dir, ignore_errors=True)
    return duration_seconds, cues


def compose_platform(composer: VideoComposer, request: ComposeRequest) -> PlatformOutcome:
    """Compose one platform, converting failures into an outcome."""
    try:
        output_path = composer.compose(request)
    except (ScriptPipelineError, ScriptValidationError) as exc:
        LOGGER.error(
            "script_video.platform.failed platform=%s %s: %s",
            request.profile.name,
            exc.code,
            str(exc).strip(),
        )
        return PlatformOutcome(
            platform=request.profile.name,
            output_path=request.output_path,
            error_code=exc.code,
            error_message=str(exc).strip(),
        )
    LOGGER.info(
        "script_video.platform.done platform=%s output=%s",
        request.profile.name,
        output_path,
    )
    return PlatformOutcome(platform=request.profile.name, output_path=output_path)


def compose_all(
    composer: VideoComposer,
    compose_requests: Sequence[ComposeRequest],
    max_workers: int,
) -> Tuple[PlatformOutcome, ...]:
    """Compose every platform, sequentially or on a bounded thread pool."""
    if max_workers <= 1 or len(compose_requests) <= 1:
        return tuple(compose_platform(composer, request) for request in compose_requests)
    with futures.ThreadPoolExecutor(
        max_workers=min(max_workers, len(compose_requests)),
        thread_name_prefix="compose",
    ) as executor:
        return tuple(
            executor.map(lambda request: compose_platform(composer, request), compose_requests)
        )


def run_script_video(
    config: PipelineConfig,
    synthesizer: SpeechSynthesizer,
    composer: VideoComposer,
    today: Callable[[], date] = date.today,
) -> RunReport:
    """Parse, synthesize, time subtitles and compose each platform for one script."""
    text_value = read_utf8_text_strict(config.script_path)
    document = parse_script(text_value, config.script_path.name, today)
    LOGGER.info(
        "script_video.parsed title=%s scenes=%d prompts=%d date=%s",
        document.meta.title,
        len(document.scenes),
        len(document.image_prompts),
        document.meta.date,
    )
    if not document.scenes:
        raise ScriptValidationError(
            EMPTY_CONTENT_CODE, f"no narrated scenes in {config.script_path}"
        )

    date_dir = config.assets_root / document.meta.date
    image_dir = config.images_dir or date_dir
    images = find_images(image_dir, len(document.scenes))
    check_assets(images, len(document.scenes), image_dir, config.asset_policy)

    profiles = resolve_target_profiles(config.platforms or document.meta.platforms)
    output_dir = date_dir / VIDEO_DIR_NAME
    duration_seconds, cues = synthesize_narration(
        document, synthesizer, profiles, config.subtitle_format, output_dir
    )
    audio_path = output_dir / AUDIO_FILE_NAME
    srt_path = output_dir / SRT_FILE_NAME

    compose_requests = [
        ComposeRequest(
            images=images,
            audio_path=audio_path,
            subtitle_path=(
                output_dir / ass_file_name(profile)
                if config.subtitle_format == SubtitleFormat.ASS
                else srt_path
            ),
            output_path=output_dir / f"{profile.name}.mp4",
            profile=profile,
            audio_duration_seconds=duration_seconds,
        )
        for profile in profiles
    ]
    outcomes = compose_all(composer, compose_requests, config.max_workers)
    report = RunReport(
        output_dir=output_dir,
        audio_path=audio_path,
        subtitle_path=srt_path,
        audio_duration_seconds=duration_seconds,
        cues=cues,
        outcomes=outcomes,
    )
    LOGGER.info(
        "script_video.run.complete succeeded=%d failed=%d output_dir=%s",
        report.succeeded,
        report.failed,
        output_dir,
    )
    return report


def main() -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)

    try:
        args = parse_args(sys.argv[1:])
        if args.list_voices:
            for line in describe_voices():
                print(line)
            return 0
        config = load_config(args, env)
        resolve_binary("ffmpeg")
        resolve_binary("ffprobe")
        synthesizer = build_synthesizer(
            config.tts_provider, env, timeout_seconds=config.tool_timeout_seconds
        )
        composer = VideoComposer(
            FfmpegTool(timeout_seconds=config.tool_timeout_seconds),
            fps=config.fps,
        )
        report = run_script_video(config, synthesizer, composer)
        return 0 if report.failed == 0 else 1
    except ScriptValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except ScriptPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("%s: %s", UNHANDLED_ERROR_CODE, str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
