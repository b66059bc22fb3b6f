"""Narration synthesis backends (Edge TTS, SiliconFlow CosyVoice) behind one contract."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
from pathlib import Path
import re
from typing import Callable, Mapping, Protocol, Tuple

import aiohttp
import edge_tts
from edge_tts.exceptions import (
    NoAudioReceived,
    UnexpectedResponse,
    UnknownResponse,
    WebSocketError,
)
import requests

from domain.script_video import (
    EMPTY_CONTENT_CODE,
    INVALID_CONFIG_CODE,
    ScriptPipelineError,
    ScriptValidationError,
    TTSConfig,
)
from service.media_tool import DEFAULT_TOOL_TIMEOUT_SECONDS, probe_duration_seconds

LOGGER = logging.getLogger("voice_synthesis")

TTS_FAILED_CODE = "script_video.tts.failed"
TTS_TIMEOUT_CODE = "script_video.tts.timeout"
TTS_UNKNOWN_PROVIDER_CODE = "script_video.tts.unknown_provider"

EDGE_TTS_ERRORS = (
    NoAudioReceived,
    UnexpectedResponse,
    UnknownResponse,
    WebSocketError,
    aiohttp.ClientError,
    OSError,
    ValueError,
)

EDGE_PROVIDER = "edge"
SILICONFLOW_PROVIDER = "siliconflow"
PROVIDER_ALIASES: Mapping[str, str] = {
    "edge": EDGE_PROVIDER,
    "edge-tts": EDGE_PROVIDER,
    "siliconflow": SILICONFLOW_PROVIDER,
    "cosyvoice": SILICONFLOW_PROVIDER,
}

SILICONFLOW_API_BASE = "https://api.siliconflow.cn/v1"
SILICONFLOW_SPEECH_PATH = "/audio/speech"
COSYVOICE_MODEL = "FunAudioLLM/CosyVoice2-0.5B"
COSYVOICE_SAMPLE_RATE = 32000
DEFAULT_COSYVOICE_VOICE = "alex"

API_KEY_ENV = "SILICONFLOW_API_KEY"
SILICONFLOW_VOICE_ENV = "SILICONFLOW_TTS_VOICE"

PERCENT_PITCH_PATTERN = re.compile(r"([+-]?\d+)%")
HZ_PITCH_PATTERN = re.compile(r"^[+-]?\d+Hz$")
NEUTRAL_PITCH = "+0Hz"


class SynthesisError(ScriptPipelineError):
    """Voice backend failure; aborts the run."""


@dataclass(frozen=True)
class VoiceInfo:
    """A selectable voice for a provider."""

    provider: str
    voice_id: str
    description: str


VOICE_CATALOGUE: Tuple[VoiceInfo, ...] = (
    VoiceInfo(EDGE_PROVIDER, "zh-CN-YunxiNeural", "mature male voice"),
    VoiceInfo(EDGE_PROVIDER, "zh-CN-XiaomoNeural", "mature female voice"),
    VoiceInfo(EDGE_PROVIDER, "zh-CN-YunyangNeural", "news anchor, male"),
    VoiceInfo(EDGE_PROVIDER, "zh-CN-XiaoyiNeural", "young lively female voice"),
    VoiceInfo(EDGE_PROVIDER, "zh-CN-XiaoxiaoNeural", "news anchor, female"),
    VoiceInfo(EDGE_PROVIDER, "zh-CN-XiaohanNeural", "gentle female voice"),
    VoiceInfo(EDGE_PROVIDER, "zh-CN-YunjianNeural", "steady male voice"),
    VoiceInfo(SILICONFLOW_PROVIDER, "alex", "mature male voice"),
    VoiceInfo(SILICONFLOW_PROVIDER, "anna", "mature female voice"),
    VoiceInfo(SILICONFLOW_PROVIDER, "bella", "gentle female voice"),
    VoiceInfo(SILICONFLOW_PROVIDER, "benjamin", "steady male voice"),
    VoiceInfo(SILICONFLOW_PROVIDER, "charles", "young male voice"),
    VoiceInfo(SILICONFLOW_PROVIDER, "claire", "intellectual female voice"),
    VoiceInfo(SILICONFLOW_PROVIDER, "david", "energetic male voice"),
    VoiceInfo(SILICONFLOW_PROVIDER, "diana", "sweet female voice"),
)


class SpeechSynthesizer(Protocol):
    """Backend-agnostic narration synthesis."""

    name: str

    def synthesize(self, text_value: str, tts_config: TTSConfig, output_path: Path) -> Path:
        ...

    def get_duration(self, audio_path: Path) -> float:
        ...


DurationProbe = Callable[[Path], float]


def format_rate(speed: float) -> str:
    """Convert a speed multiplier into an Edge TTS rate such as +20%."""
    percentage = int(math.floor((speed - 1.0) * 100 + 0.5))
    if percentage >= 0:
        return f"+{percentage}%"
    return f"{percentage}%"


def format_pitch(pitch: str) -> str:
    """Convert a pitch setting into an Edge TTS pitch such as +5Hz."""
    normalized = pitch.strip()
    if HZ_PITCH_PATTERN.fullmatch(normalized):
        if normalized[0] in "+-":
            return normalized
        return f"+{normalized}"
    match = PERCENT_PITCH_PATTERN.search(normalized)
    if match:
        value = match.group(1)
        if value[0] in "+-":
            return f"{value}Hz"
        return f"+{value}Hz"
    return NEUTRAL_PITCH


def ensure_text(text_value: str) -> str:
    """Return trimmed narration text or raise when empty."""
    trimmed = text_value.strip()
    if not trimmed:
        raise ScriptValidationError(EMPTY_CONTENT_CODE, "narration text is empty")
    return trimmed


def default_duration_probe(timeout_seconds: float) -> DurationProbe:
    """Build an ffprobe-backed duration probe."""

    def probe(audio_path: Path) -> float:
        return probe_duration_seconds(audio_path, timeout_seconds=timeout_seconds)

    return probe


def ensure_audio_written(audio_path: Path, provider_name: str) -> None:
    """Raise when a backend reported success without producing audio."""
    if not audio_path.is_file() or audio_path.stat().st_size == 0:
        raise SynthesisError(
            TTS_FAILED_CODE, f"{provider_name} produced no audio at {audio_path}"
        )


class EdgeTTSSynthesizer:
    """Synthesizer using the edge-tts package."""

    name = EDGE_PROVIDER

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        communicate_factory: Callable[..., edge_tts.Communicate] = edge_tts.Communicate,
        duration_probe: DurationProbe | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.communicate_factory = communicate_factory
        self.duration_probe = duration_probe or default_duration_probe(timeout_seconds)

    async def _save(self, communicate: edge_tts.Communicate, output_path: Path) -> None:
        await asyncio.wait_for(
            communicate.save(str(output_path)), timeout=self.timeout_seconds
        )

    def synthesize(self, text_value: str, tts_config: TTSConfig, output_path: Path) -> Path:
        text_value = ensure_text(text_value)
        rate = format_rate(tts_config.speed)
        pitch = format_pitch(tts_config.pitch)
        LOGGER.info(
            "voice_synthesis.edge voice=%s rate=%s pitch=%s chars=%d",
            tts_config.voice,
            rate,
            pitch,
            len(text_value),
        )
        try:
            communicate = self.communicate_factory(
                text_value, tts_config.voice, rate=rate, pitch=pitch
            )
            asyncio.run(self._save(communicate, output_path))
        except asyncio.TimeoutError as exc:
            raise SynthesisError(
                TTS_TIMEOUT_CODE,
                f"edge-tts timed out after {self.timeout_seconds:g}s",
            ) from exc
        except EDGE_TTS_ERRORS as exc:
            raise SynthesisError(TTS_FAILED_CODE, f"edge-tts failed: {exc}") from exc
        ensure_audio_written(output_path, self.name)
        return output_path

    def get_duration(self, audio_path: Path) -> float:
        return self.duration_probe(audio_path)


class SiliconFlowSynthesizer:
    """Synthesizer using the SiliconFlow CosyVoice2 speech endpoint."""

    name = SILICONFLOW_PROVIDER

    def __init__(
        self,
        api_key: str,
        voice: str = DEFAULT_COSYVOICE_VOICE,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        duration_probe: DurationProbe | None = None,
        api_base: str = SILICONFLOW_API_BASE,
        gain: float = 0.0,
    ) -> None:
        if not api_key.strip():
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, f"{API_KEY_ENV} is required for siliconflow"
            )
        self.api_key = api_key.strip()
        self.voice = voice
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.duration_probe = duration_probe or default_duration_probe(timeout_seconds)
        self.api_base = api_base.rstrip("/")
        self.gain = gain

    def build_payload(self, text_value: str, tts_config: TTSConfig) -> dict[str, object]:
        return {
            "model": COSYVOICE_MODEL,
            "input": text_value,
            "voice": f"{COSYVOICE_MODEL}:{self.voice}",
            "response_format": "mp3",
            "sample_rate": COSYVOICE_SAMPLE_RATE,
            "stream": False,
            "speed": tts_config.speed,
            "gain": self.gain,
        }

    def synthesize(self, text_value: str, tts_config: TTSConfig, output_path: Path) -> Path:
        # CosyVoice has its own voice ids; the script's Edge voice does not apply.
        text_value = ensure_text(text_value)
        LOGGER.info(
            "voice_synthesis.siliconflow voice=%s speed=%s chars=%d",
            self.voice,
            tts_config.speed,
            len(text_value),
        )
        try:
            response = self.session.post(
                f"{self.api_base}{SILICONFLOW_SPEECH_PATH}",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=self.build_payload(text_value, tts_config),
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise SynthesisError(
                TTS_TIMEOUT_CODE,
                f"siliconflow speech timed out after {self.timeout_seconds:g}s",
            ) from exc
        except requests.RequestException as exc:
            raise SynthesisError(
                TTS_FAILED_CODE, f"siliconflow speech request failed: {exc}"
            ) from exc
        if not 200 <= response.status_code < 300:
            raise SynthesisError(
                TTS_FAILED_CODE,
                f"siliconflow speech returned {response.status_code}: "
                f"{response.text[:500]}",
            )
        output_path.write_bytes(response.content)
        ensure_audio_written(output_path, self.name)
        LOGGER.info(
            "voice_synthesis.siliconflow.done bytes=%d", output_path.stat().st_size
        )
        return output_path

    def get_duration(self, audio_path: Path) -> float:
        return self.duration_probe(audio_path)


def normalize_provider_name(provider_name: str) -> str:
    """Map a provider name or alias to its canonical name."""
    canonical = PROVIDER_ALIASES.get(provider_name.strip().lower())
    if canonical is None:
        raise SynthesisError(
            TTS_UNKNOWN_PROVIDER_CODE,
            f"unknown TTS provider {provider_name!r}; "
            f"expected one of {', '.join(sorted(PROVIDER_ALIASES))}",
        )
    return canonical


def build_synthesizer(
    provider_name: str,
    env: Mapping[str, str],
    timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
) -> SpeechSynthesizer:
    """Resolve a provider name into a configured synthesizer."""
    canonical = normalize_provider_name(provider_name)
    if canonical == SILICONFLOW_PROVIDER:
        voice = env.get(SILICONFLOW_VOICE_ENV, "").strip() or DEFAULT_COSYVOICE_VOICE
        return SiliconFlowSynthesizer(
            api_key=env.get(API_KEY_ENV, ""),
            voice=voice,
            timeout_seconds=timeout_seconds,
        )
    return EdgeTTSSynthesizer(timeout_seconds=timeout_seconds)


def describe_voices() -> list[str]:
    """Return printable lines for every known voice grouped by provider."""
    lines: list[str] = []
    current_provider: str | None = None
    for voice in VOICE_CATALOGUE:
        if voice.provider != current_provider:
            if lines:
                lines.append("")
            lines.append(f"[{voice.provider}]")
            current_provider = voice.provider
        lines.append(f"  {voice.voice_id}: {voice.description}")
    return lines
