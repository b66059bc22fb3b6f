"""Tests for the render_script_video pipeline orchestrator and CLI."""

from __future__ import annotations

import argparse
import sys
import tempfile
from datetime import date
from pathlib import Path

import pytest
from PIL import Image

import render_script_video
from domain.script_parser import parse_script
from domain.script_video import (
    ASSET_SHORTFALL_CODE,
    EMPTY_CONTENT_CODE,
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    MISSING_ASSETS_CODE,
    ComposeRequest,
    ScriptValidationError,
    TTSConfig,
    parse_srt,
)
from render_script_video import (
    AssetPolicy,
    PipelineConfig,
    SubtitleFormat,
    find_images,
    load_config,
    parse_args,
    read_utf8_text_strict,
    run_script_video,
    synthesize_narration,
)
from service.media_tool import MediaInvocation
from service.video_composer import (
    COMPOSE_STAGE_CODE,
    ComposeStage,
    ComposeStageError,
    VideoComposer,
)
from service.voice_synthesis import TTS_FAILED_CODE, SynthesisError

SCRIPT_TEXT = """**标题**：测试视频
**平台**：抖音, B站

## 分镜脚本

### 场景1：开场
**配音文案**：
> 你好，世界。

### 场景2：结尾
**配音文案**：再见！
"""

AUDIO_DURATION = 6.0


class FakeSynthesizer:
    """Synthesizer fake that writes a placeholder audio file."""

    name = "fake"

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, TTSConfig, Path]] = []

    def synthesize(self, text_value: str, tts_config: TTSConfig, output_path: Path) -> Path:
        self.calls.append((text_value, tts_config, output_path))
        output_path.write_bytes(b"partial audio")
        if self.error is not None:
            raise self.error
        return output_path

    def get_duration(self, audio_path: Path) -> float:
        return AUDIO_DURATION


class RecordingMediaTool:
    """MediaTool fake that writes placeholder outputs."""

    def __init__(self) -> None:
        self.invocations: list[MediaInvocation] = []

    def run(self, invocation: MediaInvocation) -> None:
        self.invocations.append(invocation)
        invocation.output_path.write_bytes(b"video")


class SelectiveComposer:
    """Composer fake that fails for selected platforms."""

    def __init__(self, failing: set[str]) -> None:
        self.failing = failing
        self.requests: list[ComposeRequest] = []

    def compose(self, request: ComposeRequest) -> Path:
        self.requests.append(request)
        if request.profile.name in self.failing:
            raise ComposeStageError(ComposeStage.MUXING, "mux failed")
        request.output_path.write_bytes(b"video")
        return request.output_path


def fixed_today() -> date:
    """Return a fixed date for scripts without one."""
    return date(2026, 3, 4)


def write_script(tmp_path: Path, text_value: str = SCRIPT_TEXT) -> Path:
    """Write a dated script file."""
    script_path = tmp_path / "2026-01-01-video-test.md"
    script_path.write_text(text_value, encoding="utf-8")
    return script_path


def write_images(image_dir: Path, count: int) -> list[Path]:
    """Write small numbered PNG images."""
    image_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for position in range(1, count + 1):
        path = image_dir / f"{position}-scene.png"
        Image.new("RGB", (64, 48), "blue").save(path)
        paths.append(path)
    return paths


def build_config(tmp_path: Path, **overrides: object) -> PipelineConfig:
    """Build a pipeline config rooted in tmp_path."""
    values: dict[str, object] = {
        "script_path": tmp_path / "2026-01-01-video-test.md",
        "platforms": (),
        "images_dir": None,
        "assets_root": tmp_path / "assets",
        "subtitle_format": SubtitleFormat.SRT,
        "asset_policy": AssetPolicy.DEGRADE,
        "max_workers": 1,
        "tool_timeout_seconds": 30.0,
        "tts_provider": "edge",
        "fps": 30,
    }
    values.update(overrides)
    return PipelineConfig(**values)  # type: ignore[arg-type]


@pytest.fixture
def isolated_tempdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Route tempfile.mkdtemp into a dedicated directory."""
    temp_dir = tmp_path / "system-tmp"
    temp_dir.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(temp_dir))
    return temp_dir


def test_run_script_video_produces_all_artifacts(
    tmp_path: Path, isolated_tempdir: Path
) -> None:
    """A full run writes audio, subtitles and one video per platform."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 2)
    synthesizer = FakeSynthesizer()
    tool = RecordingMediaTool()
    report = run_script_video(
        build_config(tmp_path), synthesizer, VideoComposer(tool), fixed_today
    )
    output_dir = tmp_path / "assets" / "2026-01-01" / "video"
    assert report.output_dir == output_dir
    assert sorted(path.name for path in output_dir.iterdir()) == [
        "audio.mp3",
        "bilibili.mp4",
        "douyin.mp4",
        "subtitle.srt",
    ]
    assert report.succeeded == 2
    assert report.failed == 0
    assert synthesizer.calls[0][0] == "你好，世界。\n\n再见！"
    cues = parse_srt((output_dir / "subtitle.srt").read_text(encoding="utf-8"))
    assert [cue.text for cue in cues] == ["你好，", "世界。", "再见！"]
    assert cues[-1].end_seconds == AUDIO_DURATION
    assert len(tool.invocations) == 6
    assert list(isolated_tempdir.iterdir()) == []


def test_synthesis_failure_leaves_no_partial_outputs(
    tmp_path: Path, isolated_tempdir: Path
) -> None:
    """A backend failure aborts the run with no audio, subtitles or staging left."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 2)
    composer = SelectiveComposer(set())
    synthesizer = FakeSynthesizer(SynthesisError(TTS_FAILED_CODE, "backend down"))
    with pytest.raises(SynthesisError):
        run_script_video(build_config(tmp_path), synthesizer, composer, fixed_today)
    assert not (tmp_path / "assets" / "2026-01-01" / "video").exists()
    assert list(isolated_tempdir.iterdir()) == []
    assert composer.requests == []


def test_missing_images_fail_before_synthesis(tmp_path: Path) -> None:
    """Zero images is reported before any audio is synthesized."""
    write_script(tmp_path)
    synthesizer = FakeSynthesizer()
    with pytest.raises(ScriptValidationError) as exc_info:
        run_script_video(
            build_config(tmp_path), synthesizer, SelectiveComposer(set()), fixed_today
        )
    assert exc_info.value.code == MISSING_ASSETS_CODE
    assert synthesizer.calls == []


def test_script_without_scenes_is_empty_content(tmp_path: Path) -> None:
    """A script with no narrated scenes stops before synthesis."""
    write_script(tmp_path, "**标题**：空\n\n## 分镜脚本\n\n### 场景1：无\n**配图提示词**：x\n")
    write_images(tmp_path / "assets" / "2026-01-01", 1)
    synthesizer = FakeSynthesizer()
    with pytest.raises(ScriptValidationError) as exc_info:
        run_script_video(
            build_config(tmp_path), synthesizer, SelectiveComposer(set()), fixed_today
        )
    assert exc_info.value.code == EMPTY_CONTENT_CODE
    assert synthesizer.calls == []


def test_strict_policy_rejects_image_shortfall(tmp_path: Path) -> None:
    """Fewer images than scenes fails under the strict policy."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 1)
    synthesizer = FakeSynthesizer()
    with pytest.raises(ScriptValidationError) as exc_info:
        run_script_video(
            build_config(tmp_path, asset_policy=AssetPolicy.STRICT),
            synthesizer,
            SelectiveComposer(set()),
            fixed_today,
        )
    assert exc_info.value.code == ASSET_SHORTFALL_CODE
    assert synthesizer.calls == []


def test_degrade_policy_composes_with_available_images(
    tmp_path: Path, isolated_tempdir: Path
) -> None:
    """Under the degrade policy the available images are stretched over the audio."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 1)
    composer = SelectiveComposer(set())
    report = run_script_video(
        build_config(tmp_path, platforms=("douyin",)),
        FakeSynthesizer(),
        composer,
        fixed_today,
    )
    assert report.succeeded == 1
    assert len(composer.requests[0].images) == 1
    assert composer.requests[0].audio_duration_seconds == AUDIO_DURATION


def test_platform_failures_are_isolated(tmp_path: Path, isolated_tempdir: Path) -> None:
    """One failing platform does not prevent the others from completing."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 2)
    composer = SelectiveComposer({"douyin"})
    report = run_script_video(
        build_config(tmp_path), FakeSynthesizer(), composer, fixed_today
    )
    outcomes = {outcome.platform: outcome for outcome in report.outcomes}
    assert outcomes["douyin"].error_code == COMPOSE_STAGE_CODE
    assert outcomes["bilibili"].succeeded
    assert report.succeeded == 1
    assert report.failed == 1
    assert (report.output_dir / "bilibili.mp4").exists()


def test_parallel_compose_matches_sequential_outcomes(
    tmp_path: Path, isolated_tempdir: Path
) -> None:
    """A thread pool composes every platform and keeps request order."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 2)
    report = run_script_video(
        build_config(tmp_path, max_workers=4),
        FakeSynthesizer(),
        SelectiveComposer(set()),
        fixed_today,
    )
    assert [outcome.platform for outcome in report.outcomes] == ["douyin", "bilibili"]
    assert report.failed == 0


def test_platform_override_and_aliases_are_deduplicated(
    tmp_path: Path, isolated_tempdir: Path
) -> None:
    """CLI platforms replace the script list and aliases collapse to one target."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 2)
    composer = SelectiveComposer(set())
    run_script_video(
        build_config(tmp_path, platforms=("B站", "bilibili", "youtube")),
        FakeSynthesizer(),
        composer,
        fixed_today,
    )
    assert [request.profile.name for request in composer.requests] == [
        "bilibili",
        "douyin",
    ]


def test_ass_format_writes_per_platform_subtitles(
    tmp_path: Path, isolated_tempdir: Path
) -> None:
    """The ASS option writes a styled file per platform and burns it in."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 2)
    composer = SelectiveComposer(set())
    report = run_script_video(
        build_config(tmp_path, subtitle_format=SubtitleFormat.ASS),
        FakeSynthesizer(),
        composer,
        fixed_today,
    )
    douyin_ass = report.output_dir / "subtitle-douyin.ass"
    assert "PlayResX: 1080" in douyin_ass.read_text(encoding="utf-8")
    assert (report.output_dir / "subtitle-bilibili.ass").exists()
    assert (report.output_dir / "subtitle.srt").exists()
    assert composer.requests[0].subtitle_path == douyin_ass


def test_explicit_images_dir_is_used(tmp_path: Path, isolated_tempdir: Path) -> None:
    """An explicit image directory overrides the dated assets folder."""
    write_script(tmp_path)
    custom_dir = tmp_path / "custom"
    write_images(custom_dir, 3)
    composer = SelectiveComposer(set())
    run_script_video(
        build_config(tmp_path, images_dir=custom_dir, platforms=("douyin",)),
        FakeSynthesizer(),
        composer,
        fixed_today,
    )
    assert [path.parent for path in composer.requests[0].images] == [custom_dir] * 2


def test_find_images_sorts_naturally_and_caps(tmp_path: Path) -> None:
    """Images sort by embedded number and are capped at the scene count."""
    for name in ["10-end.png", "2-middle.JPG", "1-start.jpeg", "notes.txt"]:
        (tmp_path / name).write_bytes(b"x")
    assert [path.name for path in find_images(tmp_path, 5)] == [
        "1-start.jpeg",
        "2-middle.JPG",
        "10-end.png",
    ]
    assert len(find_images(tmp_path, 2)) == 2
    assert find_images(tmp_path / "missing", 2) == ()


def test_read_utf8_text_strict_rejects_invalid_bytes(tmp_path: Path) -> None:
    """Invalid UTF-8 is reported with the byte offset."""
    script_path = tmp_path / "bad.md"
    script_path.write_bytes(b"ok\xff")
    with pytest.raises(ScriptValidationError) as exc_info:
        read_utf8_text_strict(script_path)
    assert exc_info.value.code == INPUT_FILE_CODE
    assert "offset 2" in str(exc_info.value)


def test_load_config_prefers_flags_over_environment(tmp_path: Path) -> None:
    """Flags override environment values, which override defaults."""
    env = {
        "SCRIPT_VIDEO_MAX_WORKERS": "3",
        "SCRIPT_VIDEO_ASSET_POLICY": "strict",
        "SCRIPT_VIDEO_ASSETS_ROOT": str(tmp_path / "env-assets"),
        "SCRIPT_VIDEO_TOOL_TIMEOUT_SECONDS": "45",
        "TTS_PROVIDER": "siliconflow",
    }
    config = load_config(parse_args(["script.md"]), env)
    assert config.max_workers == 3
    assert config.asset_policy == AssetPolicy.STRICT
    assert config.assets_root == tmp_path / "env-assets"
    assert config.tool_timeout_seconds == 45.0
    assert config.tts_provider == "siliconflow"

    args = parse_args(
        [
            "script.md",
            "--max-workers",
            "2",
            "--asset-policy",
            "degrade",
            "--tts-provider",
            "edge",
            "--platform",
            "douyin",
            "--platform",
            "b站",
            "--subtitle-format",
            "ass",
        ]
    )
    config = load_config(args, env)
    assert config.max_workers == 2
    assert config.asset_policy == AssetPolicy.DEGRADE
    assert config.tts_provider == "edge"
    assert config.platforms == ("douyin", "b站")
    assert config.subtitle_format == SubtitleFormat.ASS


def test_load_config_defaults(tmp_path: Path) -> None:
    """Without flags or environment the documented defaults apply."""
    config = load_config(parse_args(["script.md"]), {})
    assert config.assets_root == Path("content") / "assets"
    assert config.asset_policy == AssetPolicy.DEGRADE
    assert config.max_workers == 1
    assert config.tool_timeout_seconds == 600.0
    assert config.tts_provider == "edge"
    assert config.fps == 30
    assert config.platforms == ()


def test_load_config_rejects_invalid_environment() -> None:
    """Malformed environment values are configuration errors."""
    with pytest.raises(ScriptValidationError) as exc_info:
        load_config(parse_args(["script.md"]), {"SCRIPT_VIDEO_MAX_WORKERS": "many"})
    assert exc_info.value.code == INVALID_CONFIG_CODE
    with pytest.raises(ScriptValidationError):
        load_config(parse_args(["script.md"]), {"SCRIPT_VIDEO_ASSET_POLICY": "lenient"})


def test_main_lists_voices(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    """The voice listing exits successfully without a script."""
    monkeypatch.setattr(sys, "argv", ["render_script_video.py", "--list-voices"])
    assert render_script_video.main() == 0
    assert "zh-CN-YunxiNeural" in capsys.readouterr().out


def test_main_reports_missing_script(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A missing script logs the input error code and exits 1."""
    monkeypatch.setattr(
        sys, "argv", ["render_script_video.py", str(tmp_path / "missing.md")]
    )
    monkeypatch.setattr(render_script_video, "resolve_binary", lambda name: name)
    assert render_script_video.main() == 1
    assert INPUT_FILE_CODE in caplog.text


def test_parse_args_namespace_shape() -> None:
    """Parsed arguments expose every configurable option."""
    args = parse_args([])
    assert isinstance(args, argparse.Namespace)
    assert args.script is None
    assert args.subtitle_format == "srt"
    assert args.list_voices is False


def test_image_decode_failures_stay_per_platform(
    tmp_path: Path, isolated_tempdir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An image Pillow refuses to open fails each platform without aborting the run."""
    write_script(tmp_path)
    write_images(tmp_path / "assets" / "2026-01-01", 2)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    report = run_script_video(
        build_config(tmp_path),
        FakeSynthesizer(),
        VideoComposer(RecordingMediaTool()),
        fixed_today,
    )
    assert [outcome.platform for outcome in report.outcomes] == ["douyin", "bilibili"]
    assert all(outcome.error_code == COMPOSE_STAGE_CODE for outcome in report.outcomes)
    assert report.failed == 2
    assert list(isolated_tempdir.iterdir()) == []


def test_synthesize_narration_rejects_empty_narration_before_backend(
    tmp_path: Path, isolated_tempdir: Path
) -> None:
    """Narration without display units never reaches the voice backend."""
    document = parse_script("**标题**：空\n", "empty.md", fixed_today)
    synthesizer = FakeSynthesizer()
    with pytest.raises(ScriptValidationError) as exc_info:
        synthesize_narration(
            document, synthesizer, (), SubtitleFormat.SRT, tmp_path / "video"
        )
    assert exc_info.value.code == EMPTY_CONTENT_CODE
    assert synthesizer.calls == []
    assert not (tmp_path / "video").exists()
    assert list(isolated_tempdir.iterdir()) == []
