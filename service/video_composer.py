"""Per-platform video composition: normalize, slideshow, mux, subtitle burn-in."""

from __future__ import annotations

from enum import Enum
import logging
from pathlib import Path
import shutil
import tempfile
from typing import Callable, Sequence, Tuple, TypeVar

from PIL import Image, ImageOps

from domain.script_video import (
    ASS_BOTTOM_CENTER_ALIGNMENT,
    ASS_OUTLINE_COLOUR,
    ASS_OUTLINE_WIDTH,
    ASS_PRIMARY_COLOUR,
    ComposeRequest,
    PlatformProfile,
    ScriptPipelineError,
)
from service.media_tool import MediaInvocation, MediaTool, MediaToolError

LOGGER = logging.getLogger("video_composer")

COMPOSE_STAGE_CODE = "script_video.compose.stage_failed"

DEFAULT_FPS = 30
H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
PAD_COLOR = (0, 0, 0)
CONCAT_LIST_NAME = "slideshow.txt"
SLIDESHOW_NAME = "slideshow.mp4"
MUXED_NAME = "muxed.mp4"
FINAL_NAME = "final.mp4"

T = TypeVar("T")


class ComposeStage(str, Enum):
    """States of one compose invocation."""

    NORMALIZING = "normalizing"
    ASSEMBLING = "assembling"
    MUXING = "muxing"
    BURNING_SUBTITLES = "burning_subtitles"
    DONE = "done"
    FAILED = "failed"


class ComposeStageError(ScriptPipelineError):
    """A composer stage failed; the invocation's temporaries are already removed."""

    def __init__(self, stage: ComposeStage, message: str) -> None:
        super().__init__(COMPOSE_STAGE_CODE, message)
        self.stage = stage


StageListener = Callable[[PlatformProfile, ComposeStage], None]


def compute_image_durations(
    audio_duration_seconds: float, image_count: int
) -> Tuple[float, ...]:
    """Split the audio duration evenly across the available images."""
    if image_count <= 0:
        raise ValueError("image_count must be positive")
    share = audio_duration_seconds / image_count
    return tuple(share for _ in range(image_count))


def quote_concat_path(path: Path) -> str:
    """Quote a path for an ffmpeg concat list entry."""
    return "'" + str(path).replace("'", "'\\''") + "'"


def build_concat_list(images: Sequence[Path], durations: Sequence[float]) -> str:
    """Build a concat demuxer list; the last image repeats so its duration holds."""
    lines: list[str] = []
    for image_path, duration_seconds in zip(images, durations):
        lines.append(f"file {quote_concat_path(image_path)}")
        lines.append(f"duration {duration_seconds:.3f}")
    lines.append(f"file {quote_concat_path(images[-1])}")
    return "\n".join(lines) + "\n"


def escape_filter_path(path: Path) -> str:
    """Escape a path for use inside a quoted filtergraph option value."""
    return (
        str(path)
        .replace("\\", "\\\\")
        .replace(":", "\\:")
        .replace(",", "\\,")
        .replace("'", "\\'")
    )


def build_force_style(profile: PlatformProfile) -> str:
    """Build the libass force_style override for SRT input."""
    style = profile.subtitle_style
    return ",".join(
        [
            f"FontName={style.font_name}",
            f"FontSize={style.font_size}",
            f"PrimaryColour={ASS_PRIMARY_COLOUR}",
            f"OutlineColour={ASS_OUTLINE_COLOUR}",
            f"Outline={ASS_OUTLINE_WIDTH}",
            f"Alignment={ASS_BOTTOM_CENTER_ALIGNMENT}",
            f"MarginV={style.margin_v}",
        ]
    )


def build_burn_filter(profile: PlatformProfile, subtitle_path: Path) -> str:
    """Build the drawbox plus subtitles filter chain for burn-in."""
    style = profile.subtitle_style
    drawbox = (
        f"drawbox=y=ih-{style.box_height}:w=iw:h={style.box_height}"
        f":color=black@{style.box_opacity:g}:t=fill"
    )
    subtitles = f"subtitles=filename='{escape_filter_path(subtitle_path)}'"
    if subtitle_path.suffix.lower() != ".ass":
        subtitles += f":force_style='{build_force_style(profile)}'"
    return f"{drawbox},{subtitles}"


def normalize_image(source_path: Path, profile: PlatformProfile, output_path: Path) -> Path:
    """Fit an image inside the canvas and letterbox it with black bars."""
    with Image.open(source_path) as image:
        rgb_image = ImageOps.exif_transpose(image).convert("RGB")
    padded = ImageOps.pad(
        rgb_image,
        (profile.width, profile.height),
        method=Image.Resampling.LANCZOS,
        color=PAD_COLOR,
    )
    padded.save(output_path, format="PNG")
    return output_path


class VideoComposer:
    """Compose one platform video per call; calls share no mutable state."""

    def __init__(
        self,
        media_tool: MediaTool,
        fps: int = DEFAULT_FPS,
        temp_root: Path | None = None,
        stage_listener: StageListener | None = None,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self.media_tool = media_tool
        self.fps = fps
        self.temp_root = temp_root
        self.stage_listener = stage_listener

    def _notify(self, profile: PlatformProfile, stage: ComposeStage) -> None:
        LOGGER.info(
            "script_video.compose.stage platform=%s stage=%s",
            profile.name,
            stage.value,
        )
        if self.stage_listener is not None:
            self.stage_listener(profile, stage)

    def _run_stage(
        self,
        profile: PlatformProfile,
        stage: ComposeStage,
        action: Callable[[], T],
    ) -> T:
        self._notify(profile, stage)
        try:
            return action()
        except MediaToolError as exc:
            raise ComposeStageError(
                stage, f"{profile.name} {stage.value} failed: {exc.code}: {exc}"
            ) from exc
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise ComposeStageError(
                stage, f"{profile.name} {stage.value} failed: {exc}"
            ) from exc

    def compose(self, request: ComposeRequest) -> Path:
        """Run all stages for one platform and return the output video path."""
        profile = request.profile
        temp_dir = Path(
            tempfile.mkdtemp(prefix=f"compose-{profile.name}-", dir=self.temp_root)
        )
        try:
            frames = self._run_stage(
                profile,
                ComposeStage.NORMALIZING,
                lambda: self.normalize(request, temp_dir),
            )
            slideshow_path = self._run_stage(
                profile,
                ComposeStage.ASSEMBLING,
                lambda: self.assemble(request, frames, temp_dir),
            )
            muxed_path = self._run_stage(
                profile,
                ComposeStage.MUXING,
                lambda: self.mux(request, slideshow_path, temp_dir),
            )
            self._run_stage(
                profile,
                ComposeStage.BURNING_SUBTITLES,
                lambda: self.burn_subtitles(request, muxed_path, temp_dir),
            )
        except ComposeStageError:
            shutil.rmtree(temp_dir, ignore_errors=True)
            self._notify(profile, ComposeStage.FAILED)
            raise
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
        self._notify(profile, ComposeStage.DONE)
        return request.output_path

    def normalize(self, request: ComposeRequest, temp_dir: Path) -> Tuple[Path, ...]:
        frames: list[Path] = []
        for position, image_path in enumerate(request.images, start=1):
            frame_path = temp_dir / f"frame_{position:04d}.png"
            frames.append(normalize_image(image_path, request.profile, frame_path))
        return tuple(frames)

    def assemble(
        self, request: ComposeRequest, frames: Sequence[Path], temp_dir: Path
    ) -> Path:
        durations = compute_image_durations(request.audio_duration_seconds, len(frames))
        list_path = temp_dir / CONCAT_LIST_NAME
        list_path.write_text(build_concat_list(frames, durations), encoding="utf-8")
        slideshow_path = temp_dir / SLIDESHOW_NAME
        self.media_tool.run(
            MediaInvocation(
                stage=ComposeStage.ASSEMBLING.value,
                args=(
                    "-f",
                    "concat",
                    "-safe",
                    "0",
                    "-i",
                    str(list_path),
                    "-c:v",
                    H264_CODEC,
                    "-pix_fmt",
                    H264_PIXEL_FORMAT,
                    "-r",
                    str(self.fps),
                    "-t",
                    f"{request.audio_duration_seconds:.3f}",
                    str(slideshow_path),
                ),
                output_path=slideshow_path,
            )
        )
        return slideshow_path

    def mux(self, request: ComposeRequest, slideshow_path: Path, temp_dir: Path) -> Path:
        muxed_path = temp_dir / MUXED_NAME
        self.media_tool.run(
            MediaInvocation(
                stage=ComposeStage.MUXING.value,
                args=(
                    "-i",
                    str(slideshow_path),
                    "-i",
                    str(request.audio_path),
                    "-map",
                    "0:v:0",
                    "-map",
                    "1:a:0",
                    "-c:v",
                    "copy",
                    "-c:a",
                    AUDIO_CODEC,
                    "-b:a",
                    AUDIO_BITRATE,
                    "-shortest",
                    str(muxed_path),
                ),
                output_path=muxed_path,
            )
        )
        return muxed_path

    def burn_subtitles(
        self, request: ComposeRequest, muxed_path: Path, temp_dir: Path
    ) -> Path:
        staged_subtitle = temp_dir / f"subtitles{request.subtitle_path.suffix.lower()}"
        shutil.copyfile(request.subtitle_path, staged_subtitle)
        final_path = temp_dir / FINAL_NAME
        self.media_tool.run(
            MediaInvocation(
                stage=ComposeStage.BURNING_SUBTITLES.value,
                args=(
                    "-i",
                    str(muxed_path),
                    "-vf",
                    build_burn_filter(request.profile, staged_subtitle),
                    "-c:v",
                    H264_CODEC,
                    "-pix_fmt",
                    H264_PIXEL_FORMAT,
                    "-c:a",
                    "copy",
                    str(final_path),
                ),
                output_path=final_path,
            )
        )
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(final_path), str(request.output_path))
        return request.output_path
