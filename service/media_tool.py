"""ffmpeg and ffprobe invocation with timeouts and coded failures."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Protocol, Sequence, Tuple

from domain.script_video import ScriptPipelineError

LOGGER = logging.getLogger("media_tool")

MEDIA_NOT_FOUND_CODE = "script_video.media.not_found"
MEDIA_PROCESS_CODE = "script_video.media.process_failed"
MEDIA_TIMEOUT_CODE = "script_video.media.timeout"
MEDIA_MISSING_OUTPUT_CODE = "script_video.media.missing_output"
MEDIA_PROBE_CODE = "script_video.media.probe_error"

DEFAULT_TOOL_TIMEOUT_SECONDS = 600.0
FFMPEG_BASE_ARGS = ("-y", "-hide_banner", "-loglevel", "error")
STDERR_TAIL_CHARS = 2000

ProcessRunner = Callable[..., "subprocess.CompletedProcess[str]"]


class MediaToolError(ScriptPipelineError):
    """External media tool failure."""


@dataclass(frozen=True)
class MediaInvocation:
    """One external tool call and the artifact it must produce."""

    stage: str
    args: Tuple[str, ...]
    output_path: Path


class MediaTool(Protocol):
    """Runs media invocations to completion or raises MediaToolError."""

    def run(self, invocation: MediaInvocation) -> None:
        ...


def resolve_binary(binary_name: str) -> str:
    """Return the absolute path of a binary on PATH."""
    binary_path = shutil.which(binary_name)
    if not binary_path:
        raise MediaToolError(MEDIA_NOT_FOUND_CODE, f"{binary_name} not on PATH")
    return binary_path


def tail_text(text_value: str | None) -> str:
    """Return the trailing part of tool output for error messages."""
    if not text_value:
        return ""
    return text_value.strip()[-STDERR_TAIL_CHARS:]


class FfmpegTool:
    """MediaTool backed by the ffmpeg binary."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        binary_name: str = "ffmpeg",
        runner: ProcessRunner = subprocess.run,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.binary_name = binary_name
        self.runner = runner

    def build_command(self, invocation: MediaInvocation) -> list[str]:
        return [
            resolve_binary(self.binary_name),
            *FFMPEG_BASE_ARGS,
            *invocation.args,
        ]

    def run(self, invocation: MediaInvocation) -> None:
        command = self.build_command(invocation)
        LOGGER.debug(
            "media_tool.run stage=%s command=%s", invocation.stage, " ".join(command)
        )
        try:
            result = self.runner(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise MediaToolError(
                MEDIA_TIMEOUT_CODE,
                f"{invocation.stage} timed out after {self.timeout_seconds:g}s",
            ) from exc
        except OSError as exc:
            raise MediaToolError(
                MEDIA_NOT_FOUND_CODE,
                f"{self.binary_name} could not be executed: {exc}",
            ) from exc
        if result.returncode != 0:
            raise MediaToolError(
                MEDIA_PROCESS_CODE,
                f"{invocation.stage} exited with {result.returncode}: "
                f"{tail_text(result.stderr)}",
            )
        if not invocation.output_path.is_file():
            raise MediaToolError(
                MEDIA_MISSING_OUTPUT_CODE,
                f"{invocation.stage} did not produce {invocation.output_path}",
            )


def probe_duration_seconds(
    media_path: Path,
    timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
    runner: ProcessRunner = subprocess.run,
) -> float:
    """Return the container duration of a media file in seconds."""
    if not media_path.is_file():
        raise MediaToolError(MEDIA_PROBE_CODE, f"media file not found: {media_path}")
    command: Sequence[str] = [
        resolve_binary("ffprobe"),
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(media_path),
    ]
    try:
        result = runner(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        raise MediaToolError(
            MEDIA_TIMEOUT_CODE, f"ffprobe timed out after {timeout_seconds:g}s"
        ) from exc
    if result.returncode != 0:
        raise MediaToolError(
            MEDIA_PROBE_CODE, f"ffprobe failed: {tail_text(result.stderr)}"
        )
    try:
        duration_seconds = float(result.stdout.strip())
    except ValueError as exc:
        raise MediaToolError(
            MEDIA_PROBE_CODE, f"duration unavailable for {media_path}"
        ) from exc
    if duration_seconds <= 0:
        raise MediaToolError(
            MEDIA_PROBE_CODE, f"duration invalid for {media_path}: {duration_seconds}"
        )
    return duration_seconds
