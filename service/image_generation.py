"""Image generation backends and batch generation over a script's image prompts."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import logging
from pathlib import Path
import re
import time
from typing import Callable, Mapping, Protocol, Tuple

import requests

from domain.script_video import (
    INVALID_CONFIG_CODE,
    ScriptDocument,
    ScriptPipelineError,
    ScriptValidationError,
)

LOGGER = logging.getLogger("image_generation")

IMAGE_FAILED_CODE = "script_video.image.failed"
IMAGE_UNKNOWN_PROVIDER_CODE = "script_video.image.unknown_provider"

GEMINI3_PROVIDER = "gemini3"
SILICONFLOW_PROVIDER = "siliconflow"
GEMINI_PROVIDER = "gemini"
ZHIPU_PROVIDER = "zhipu"
DEFAULT_IMAGE_PROVIDER = SILICONFLOW_PROVIDER

SILICONFLOW_API_BASE = "https://api.siliconflow.cn/v1"
SILICONFLOW_MODELS: Mapping[str, str] = {
    "flux-schnell": "black-forest-labs/FLUX.1-schnell",
    "flux-dev": "black-forest-labs/FLUX.1-dev",
    "sd-xl": "stabilityai/stable-diffusion-xl-base-1.0",
    "sd-3": "stabilityai/stable-diffusion-3-medium",
}
DEFAULT_SILICONFLOW_MODEL = "flux-schnell"
SILICONFLOW_IMAGE_SIZES: Mapping[str, str] = {
    "1:1": "1024x1024",
    "3:4": "768x1024",
    "4:3": "1024x768",
    "9:16": "576x1024",
    "16:9": "1024x576",
    "2:1": "1024x512",
    "2.35:1": "1024x436",
}

ZHIPU_API_BASE = "https://open.bigmodel.cn/api/paas/v4"
ZHIPU_MODEL = "cogview-3-flash"
ZHIPU_IMAGE_SIZES: Mapping[str, str] = {
    "1:1": "1024x1024",
    "3:4": "768x1024",
    "4:3": "1024x768",
    "9:16": "720x1280",
    "16:9": "1280x720",
    "2:1": "1024x512",
    "2.35:1": "1024x436",
}
FALLBACK_IMAGE_SIZE = "1024x1024"

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
GEMINI_MODEL = "gemini-2.0-flash-exp-image-generation"
GEMINI3_API_BASE = "https://chatapi.onechats.ai/v1beta/models"
GEMINI3_MODEL = "gemini-3-pro-image"
# Ratios the relay accepts; wider ones are approximated.
GEMINI3_ASPECT_RATIOS: Mapping[str, str] = {
    "1:1": "1:1",
    "3:4": "3:4",
    "4:3": "4:3",
    "9:16": "9:16",
    "16:9": "16:9",
    "2:1": "16:9",
    "2.35:1": "16:9",
}
FALLBACK_ASPECT_RATIO = "1:1"

SILICONFLOW_API_KEY_ENV = "SILICONFLOW_API_KEY"
SILICONFLOW_MODEL_ENV = "SILICONFLOW_MODEL"
ZHIPU_API_KEY_ENV = "ZHIPU_API_KEY"
GEMINI_API_KEY_ENV = "GEMINI_API_KEY"
GEMINI3_API_KEY_ENV = "GEMINI3_API_KEY"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 120.0
DEFAULT_PAUSE_SECONDS = 2.0
MAX_IMAGE_NAME_CHARS = 50
UNSAFE_NAME_PATTERN = re.compile(r"[^A-Za-z0-9_\u4e00-\u9fa5\-]")


class ImageGenerationError(ScriptPipelineError):
    """Image backend failure for one prompt."""


@dataclass(frozen=True)
class ProviderInfo:
    """Listing entry for an image provider."""

    name: str
    display_name: str
    description: str
    api_key_env: str


PROVIDERS: Tuple[ProviderInfo, ...] = (
    ProviderInfo(
        GEMINI3_PROVIDER,
        "Gemini 3 (relay)",
        "best text rendering; recommended",
        GEMINI3_API_KEY_ENV,
    ),
    ProviderInfo(
        SILICONFLOW_PROVIDER,
        "SiliconFlow",
        "FLUX and Stable Diffusion models; flux-schnell is free",
        SILICONFLOW_API_KEY_ENV,
    ),
    ProviderInfo(
        GEMINI_PROVIDER,
        "Google Gemini",
        "official API; paid account, honors HTTPS_PROXY",
        GEMINI_API_KEY_ENV,
    ),
    ProviderInfo(
        ZHIPU_PROVIDER,
        "Zhipu AI",
        "CogView-3 flash model",
        ZHIPU_API_KEY_ENV,
    ),
)


class ImageGenerator(Protocol):
    """Turns one prompt into encoded image bytes."""

    name: str

    def generate(self, prompt: str, aspect_ratio: str) -> bytes:
        ...


@dataclass(frozen=True)
class ImageBatchResult:
    """Outcome of generating every prompt of a script."""

    succeeded: int
    failed: int
    paths: Tuple[Path, ...]


def require_api_key(env: Mapping[str, str], key: str, provider_name: str) -> str:
    """Return an API key from the environment or raise when it is missing."""
    api_key = env.get(key, "").strip()
    if not api_key:
        raise ScriptValidationError(
            INVALID_CONFIG_CODE, f"{key} is required for {provider_name}"
        )
    return api_key


class HttpImageGenerator:
    """Shared request and download handling for JSON image APIs."""

    name = ""

    def __init__(
        self,
        api_key: str,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def post_json(self, url: str, payload: dict[str, object]) -> dict[str, object]:
        try:
            response = self.session.post(
                url,
                headers={**self.auth_headers(), "Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ImageGenerationError(
                IMAGE_FAILED_CODE, f"{self.name} request failed: {exc}"
            ) from exc
        if not 200 <= response.status_code < 300:
            raise ImageGenerationError(
                IMAGE_FAILED_CODE,
                f"{self.name} returned {response.status_code}: {response.text[:500]}",
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ImageGenerationError(
                IMAGE_FAILED_CODE, f"{self.name} returned invalid JSON"
            ) from exc
        if not isinstance(data, dict):
            raise ImageGenerationError(
                IMAGE_FAILED_CODE, f"{self.name} returned an unexpected payload"
            )
        return data

    def first_image_url(self, data: dict[str, object], list_key: str) -> str:
        entries = data.get(list_key)
        if isinstance(entries, list) and entries:
            first = entries[0]
            if isinstance(first, dict) and isinstance(first.get("url"), str):
                return first["url"]
        raise ImageGenerationError(
            IMAGE_FAILED_CODE, f"{self.name} response contains no image"
        )

    def download(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise ImageGenerationError(
                IMAGE_FAILED_CODE, f"image download failed: {exc}"
            ) from exc
        if not 200 <= response.status_code < 300:
            raise ImageGenerationError(
                IMAGE_FAILED_CODE, f"image download returned {response.status_code}"
            )
        if not response.content:
            raise ImageGenerationError(IMAGE_FAILED_CODE, "image download was empty")
        return response.content


class SiliconFlowImageGenerator(HttpImageGenerator):
    """SiliconFlow /images/generations backend."""

    name = SILICONFLOW_PROVIDER

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_SILICONFLOW_MODEL,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        api_base: str = SILICONFLOW_API_BASE,
    ) -> None:
        super().__init__(api_key, session=session, timeout_seconds=timeout_seconds)
        self.model = model if model in SILICONFLOW_MODELS else DEFAULT_SILICONFLOW_MODEL
        self.api_base = api_base.rstrip("/")

    @property
    def model_id(self) -> str:
        return SILICONFLOW_MODELS[self.model]

    def build_payload(self, prompt: str, aspect_ratio: str) -> dict[str, object]:
        return {
            "model": self.model_id,
            "prompt": prompt,
            "image_size": SILICONFLOW_IMAGE_SIZES.get(aspect_ratio, FALLBACK_IMAGE_SIZE),
            "num_inference_steps": 20,
            "guidance_scale": 7.5,
            "num_images": 1,
        }

    def generate(self, prompt: str, aspect_ratio: str) -> bytes:
        data = self.post_json(
            f"{self.api_base}/images/generations",
            self.build_payload(prompt, aspect_ratio),
        )
        return self.download(self.first_image_url(data, "images"))


class ZhipuImageGenerator(HttpImageGenerator):
    """Zhipu CogView backend."""

    name = ZHIPU_PROVIDER

    def __init__(
        self,
        api_key: str,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        api_base: str = ZHIPU_API_BASE,
    ) -> None:
        super().__init__(api_key, session=session, timeout_seconds=timeout_seconds)
        self.api_base = api_base.rstrip("/")

    def generate(self, prompt: str, aspect_ratio: str) -> bytes:
        data = self.post_json(
            f"{self.api_base}/images/generations",
            {
                "model": ZHIPU_MODEL,
                "prompt": prompt,
                "size": ZHIPU_IMAGE_SIZES.get(aspect_ratio, FALLBACK_IMAGE_SIZE),
            },
        )
        return self.download(self.first_image_url(data, "data"))


def decode_inline_image(data: dict[str, object], provider_name: str) -> bytes:
    """Return the first base64 inline image of a generateContent response."""
    error = data.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else None
        raise ImageGenerationError(
            IMAGE_FAILED_CODE, f"{provider_name} error: {message or error}"
        )
    candidates = data.get("candidates")
    for candidate in (candidates if isinstance(candidates, list) else []):
        content = candidate.get("content") if isinstance(candidate, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        for part in (parts if isinstance(parts, list) else []):
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and isinstance(inline.get("data"), str):
                try:
                    return base64.b64decode(inline["data"], validate=True)
                except binascii.Error as exc:
                    raise ImageGenerationError(
                        IMAGE_FAILED_CODE, f"{provider_name} returned invalid base64"
                    ) from exc
    raise ImageGenerationError(
        IMAGE_FAILED_CODE, f"{provider_name} response contains no image"
    )


class GeminiImageGenerator(HttpImageGenerator):
    """Official Gemini generateContent backend with inline image output."""

    name = GEMINI_PROVIDER

    def __init__(
        self,
        api_key: str,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        api_base: str = GEMINI_API_BASE,
        model: str = GEMINI_MODEL,
    ) -> None:
        super().__init__(api_key, session=session, timeout_seconds=timeout_seconds)
        self.api_base = api_base.rstrip("/")
        self.model = model

    def auth_headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    def build_payload(self, prompt: str, aspect_ratio: str) -> dict[str, object]:
        return {
            "contents": [
                {"role": "user", "parts": [{"text": f"Generate an image: {prompt}"}]}
            ],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }

    def generate(self, prompt: str, aspect_ratio: str) -> bytes:
        data = self.post_json(
            f"{self.api_base}/{self.model}:generateContent",
            self.build_payload(prompt, aspect_ratio),
        )
        return decode_inline_image(data, self.name)


class Gemini3ImageGenerator(GeminiImageGenerator):
    """Gemini 3 image model reached through a bearer-token relay."""

    name = GEMINI3_PROVIDER

    def __init__(
        self,
        api_key: str,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        api_base: str = GEMINI3_API_BASE,
        model: str = GEMINI3_MODEL,
    ) -> None:
        super().__init__(
            api_key,
            session=session,
            timeout_seconds=timeout_seconds,
            api_base=api_base,
            model=model,
        )

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def build_payload(self, prompt: str, aspect_ratio: str) -> dict[str, object]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {
                    "aspectRatio": GEMINI3_ASPECT_RATIOS.get(
                        aspect_ratio, FALLBACK_ASPECT_RATIO
                    )
                },
            },
        }


def build_image_generator(
    provider_name: str,
    env: Mapping[str, str],
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> ImageGenerator:
    """Resolve a provider name into a configured image generator."""
    normalized = provider_name.strip().lower()
    if normalized == SILICONFLOW_PROVIDER:
        model = env.get(SILICONFLOW_MODEL_ENV, "").strip() or DEFAULT_SILICONFLOW_MODEL
        if model not in SILICONFLOW_MODELS:
            LOGGER.warning(
                "image_generation.unknown_model model=%s fallback=%s",
                model,
                DEFAULT_SILICONFLOW_MODEL,
            )
        return SiliconFlowImageGenerator(
            api_key=require_api_key(env, SILICONFLOW_API_KEY_ENV, normalized),
            model=model,
            timeout_seconds=timeout_seconds,
        )
    if normalized == ZHIPU_PROVIDER:
        return ZhipuImageGenerator(
            api_key=require_api_key(env, ZHIPU_API_KEY_ENV, normalized),
            timeout_seconds=timeout_seconds,
        )
    if normalized == GEMINI_PROVIDER:
        return GeminiImageGenerator(
            api_key=require_api_key(env, GEMINI_API_KEY_ENV, normalized),
            timeout_seconds=timeout_seconds,
        )
    if normalized == GEMINI3_PROVIDER:
        return Gemini3ImageGenerator(
            api_key=require_api_key(env, GEMINI3_API_KEY_ENV, normalized),
            timeout_seconds=timeout_seconds,
        )
    available = ", ".join(provider.name for provider in PROVIDERS)
    raise ImageGenerationError(
        IMAGE_UNKNOWN_PROVIDER_CODE,
        f"unknown image provider {provider_name!r}; available: {available}",
    )


def sanitize_image_name(raw_name: str) -> str:
    """Make a prompt name safe for use as a file name."""
    dashed = re.sub(r"[：:]", "-", raw_name)
    return UNSAFE_NAME_PATTERN.sub("", dashed)[:MAX_IMAGE_NAME_CHARS]


def generate_script_images(
    document: ScriptDocument,
    generator: ImageGenerator,
    output_dir: Path,
    pause_seconds: float = DEFAULT_PAUSE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> ImageBatchResult:
    """Generate one image per prompt; a failed prompt does not stop the rest."""
    prompts = document.image_prompts
    output_dir.mkdir(parents=True, exist_ok=True)
    succeeded = 0
    failed = 0
    paths: list[Path] = []
    for position, image_prompt in enumerate(prompts, start=1):
        file_name = sanitize_image_name(f"{position}-{image_prompt.name}") or str(position)
        target_path = output_dir / f"{file_name}.png"
        LOGGER.info(
            "image_generation.generate position=%d total=%d name=%s ratio=%s",
            position,
            len(prompts),
            image_prompt.name,
            image_prompt.aspect_ratio,
        )
        try:
            image_bytes = generator.generate(
                image_prompt.prompt, image_prompt.aspect_ratio
            )
            target_path.write_bytes(image_bytes)
        except (ImageGenerationError, OSError) as exc:
            failed += 1
            LOGGER.error(
                "image_generation.failed position=%d name=%s error=%s",
                position,
                image_prompt.name,
                exc,
            )
        else:
            succeeded += 1
            paths.append(target_path)
            LOGGER.info("image_generation.saved path=%s", target_path)
        if position < len(prompts):
            sleep(pause_seconds)
    return ImageBatchResult(succeeded=succeeded, failed=failed, paths=tuple(paths))
