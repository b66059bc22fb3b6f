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
"""Generate the images listed in a script's image-prompt section."""

from __future__ import annotations

import argparse
from datetime import date
import logging
import os
from pathlib import Path
import sys
from typing import Callable, Mapping, Sequence

from domain.script_parser import parse_script
from domain.script_video import (
    INPUT_FILE_CODE,
    ScriptPipelineError,
    ScriptValidationError,
)
from render_script_video import (
    ASSETS_ROOT_ENV,
    DEFAULT_ASSETS_ROOT,
    UNHANDLED_ERROR_CODE,
    configure_logging,
    read_utf8_text_strict,
)
from service.image_generation import (
    DEFAULT_IMAGE_PROVIDER,
    DEFAULT_PAUSE_SECONDS,
    PROVIDERS,
    ImageBatchResult,
    ImageGenerator,
    build_image_generator,
    generate_script_images,
)

LOGGER = logging.getLogger("generate_script_images")

IMAGE_PROVIDER_ENV = "IMAGE_PROVIDER"


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Generate images for every prompt in a narration script."
    )
    parser.add_argument("scripts", nargs="*", help="Script markdown files.")
    parser.add_argument("--provider", default=None)
    parser.add_argument("--assets-root", default=None)
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Directory for the images; defaults to <assets-root>/<script date>.",
    )
    parser.add_argument("--pause-seconds", type=float, default=DEFAULT_PAUSE_SECONDS)
    parser.add_argument(
        "-l",
        "--list",
        action="store_true",
        help="Print the available image providers and exit.",
    )
    return parser.parse_args(list(argv))


def describe_providers() -> list[str]:
    """Return printable lines describing each image provider."""
    lines: list[str] = []
    for position, provider in enumerate(PROVIDERS, start=1):
        lines.append(f"{position}. {provider.name} ({provider.display_name})")
        lines.append(f"   {provider.description}; key: {provider.api_key_env}")
    lines.append(f"Select one with --provider or {IMAGE_PROVIDER_ENV}.")
    return lines


def generate_for_script(
    script_path: Path,
    generator: ImageGenerator,
    assets_root: Path,
    output_dir: Path | None = None,
    pause_seconds: float = DEFAULT_PAUSE_SECONDS,
    today: Callable[[], date] = date.today,
) -> ImageBatchResult:
    """Generate every prompt of one script into its dated assets folder."""
    document = parse_script(read_utf8_text_strict(script_path), script_path.name, today)
    if not document.image_prompts:
        LOGGER.warning("image_generation.no_prompts script=%s", script_path)
        return ImageBatchResult(succeeded=0, failed=0, paths=())
    target_dir = output_dir or assets_root / document.meta.date
    result = generate_script_images(
        document, generator, target_dir, pause_seconds=pause_seconds
    )
    LOGGER.info(
        "image_generation.script.complete script=%s succeeded=%d failed=%d",
        script_path.name,
        result.succeeded,
        result.failed,
    )
    return result


def resolve_assets_root(raw_value: str | None, env: Mapping[str, str]) -> Path:
    """Resolve the assets root from the flag or environment."""
    value = raw_value or env.get(ASSETS_ROOT_ENV, "").strip()
    return Path(value) if value else DEFAULT_ASSETS_ROOT


def main() -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)

    try:
        args = parse_args(sys.argv[1:])
        if args.list:
            for line in describe_providers():
                print(line)
            return 0
        if not args.scripts:
            LOGGER.error("%s: at least one script is required", INPUT_FILE_CODE)
            return 1
        provider_name = (
            args.provider or env.get(IMAGE_PROVIDER_ENV, "").strip() or DEFAULT_IMAGE_PROVIDER
        )
        generator = build_image_generator(provider_name, env)
        assets_root = resolve_assets_root(args.assets_root, env)
        output_dir = Path(args.output_dir) if args.output_dir else None
        failed = 0
        for script_value in args.scripts:
            result = generate_for_script(
                Path(script_value),
                generator,
                assets_root,
                output_dir=output_dir,
                pause_seconds=args.pause_seconds,
            )
            failed += result.failed
        return 0 if failed == 0 else 1
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
