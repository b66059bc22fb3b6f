"""Platform profile registry: identifier or alias to canvas and subtitle styling."""

from __future__ import annotations

from typing import Iterable, Mapping, Tuple

from domain.script_video import PlatformProfile, SubtitleStyle

DEFAULT_FONT_NAME = "Helvetica"

DOUYIN_PROFILE = PlatformProfile(
    name="douyin",
    width=1080,
    height=1920,
    aspect_ratio="9:16",
    subtitle_style=SubtitleStyle(
        font_name=DEFAULT_FONT_NAME,
        font_size=22,
        margin_v=25,
        box_height=80,
        box_opacity=0.6,
    ),
)

BILIBILI_PROFILE = PlatformProfile(
    name="bilibili",
    width=1920,
    height=1080,
    aspect_ratio="16:9",
    subtitle_style=SubtitleStyle(
        font_name=DEFAULT_FONT_NAME,
        font_size=20,
        margin_v=20,
        box_height=60,
        box_opacity=0.6,
    ),
)

PROFILES: Mapping[str, PlatformProfile] = {
    DOUYIN_PROFILE.name: DOUYIN_PROFILE,
    BILIBILI_PROFILE.name: BILIBILI_PROFILE,
}

PLATFORM_ALIASES: Mapping[str, str] = {
    "抖音": "douyin",
    "douyin": "douyin",
    "b站": "bilibili",
    "哔哩哔哩": "bilibili",
    "bilibili": "bilibili",
}

DEFAULT_PROFILE = DOUYIN_PROFILE


def normalize_platform_identifier(identifier: str) -> str:
    """Case-fold and strip whitespace from a platform identifier."""
    return "".join(identifier.split()).casefold()


def lookup_profile(identifier: str) -> PlatformProfile | None:
    """Return the profile for an identifier or alias, or None when unknown."""
    canonical = PLATFORM_ALIASES.get(normalize_platform_identifier(identifier))
    if canonical is None:
        return None
    return PROFILES[canonical]


def resolve_profile(identifier: str) -> PlatformProfile:
    """Resolve an identifier; unknown identifiers fall back to the default profile."""
    return lookup_profile(identifier) or DEFAULT_PROFILE


def resolve_profiles(identifiers: Iterable[str]) -> Tuple[PlatformProfile, ...]:
    """Resolve identifiers in order, keeping one entry per canonical profile."""
    seen: set[str] = set()
    profiles: list[PlatformProfile] = []
    for identifier in identifiers:
        profile = resolve_profile(identifier)
        if profile.name in seen:
            continue
        seen.add(profile.name)
        profiles.append(profile)
    return tuple(profiles)
