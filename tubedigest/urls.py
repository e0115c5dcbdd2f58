"""YouTube URL parsing helpers used when resolving locators and items."""

from __future__ import annotations

import re

VIDEO_ID_PATTERN = re.compile(r"(?:v=|/)([\w-]{11})(?:\?|&|$)")
VIDEO_URL_PATTERN = re.compile(r"^(https?://)?(www\.youtube\.com|m\.youtube\.com|youtu\.?be)/.+$")
CHANNEL_URL_PATTERN = re.compile(r"^https?://(www\.)?youtube\.com/(channel/|c/|user/|@)[\w\-.]+")
CHANNEL_ID_PATTERN = re.compile(r"channel/(UC[\w-]+)")
HANDLE_PATTERN = re.compile(r"@([\w\-.]+)")
LEGACY_NAME_PATTERN = re.compile(r"(?:c/|user/)([\w\-.]+)")


def extract_video_id(url: str | None) -> str | None:
    """Return the 11-character video id embedded in ``url``, if any."""
    if not url:
        return None
    match = VIDEO_ID_PATTERN.search(url.strip())
    return match.group(1) if match else None


def extract_channel_id(url: str | None) -> str | None:
    if not url:
        return None
    match = CHANNEL_ID_PATTERN.search(url)
    return match.group(1) if match else None


def is_video_url(url: str) -> bool:
    return bool(VIDEO_URL_PATTERN.match(url.strip()))


def is_channel_url(url: str) -> bool:
    return bool(CHANNEL_URL_PATTERN.match(url.strip()))


def channel_identifier(url: str) -> tuple[str, str] | None:
    """Map a channel URL to the YouTube Data API lookup parameter it implies."""
    handle = HANDLE_PATTERN.search(url)
    if handle:
        return "forHandle", f"@{handle.group(1)}"
    channel_id = extract_channel_id(url)
    if channel_id:
        return "id", channel_id
    legacy = LEGACY_NAME_PATTERN.search(url)
    if legacy:
        return "forUsername", legacy.group(1)
    return None


def parse_input_lines(text: str) -> list[str]:
    """Split pasted text into trimmed, non-empty lines."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def default_thumbnail(video_id: str) -> str:
    return f"https://img.youtube.com/vi/{video_id}/mqdefault.jpg"
