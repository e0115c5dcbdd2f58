"""YouTube Data API channel lookup used to validate channel URLs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config import AppConfig, secret_value
from ..errors import FetchUnavailable
from ..urls import channel_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChannelDetails:
    external_id: str
    name: str
    thumbnail_url: str | None = None
    subscriber_count: str = "0"


def format_subscriber_count(count: int | str | None) -> str:
    try:
        value = int(count or 0)
    except (TypeError, ValueError):
        return "0"
    if value >= 1_000_000:
        return f"{round(value / 1_000_000, 1)}M"
    if value >= 1_000:
        return f"{round(value / 1_000, 1)}K"
    return str(value)


def _build_client(api_key: str):
    return build("youtube", "v3", developerKey=api_key, cache_discovery=False)


def _best_thumbnail(snippet: dict[str, Any]) -> str | None:
    thumbnails = snippet.get("thumbnails") or {}
    for size in ("high", "medium", "default"):
        url = (thumbnails.get(size) or {}).get("url")
        if url:
            return url
    return None


class YouTubeChannelDirectory:
    """Resolves channel URLs (``/@handle``, ``/channel/UC..``, ``/c/``, ``/user/``) to channel details."""

    def __init__(self, api_key: str | None, *, client: Any = None) -> None:
        self.api_key = api_key
        self._client = client

    @classmethod
    def from_config(cls, config: AppConfig) -> "YouTubeChannelDirectory":
        return cls(secret_value(config.youtube_api_key))

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def client(self):
        if self._client is None:
            if not self.api_key:
                raise FetchUnavailable("YOUTUBE_API_KEY is not configured")
            self._client = _build_client(self.api_key)
        return self._client

    def lookup(self, url: str) -> ChannelDetails | None:
        identifier = channel_identifier(url)
        if identifier is None:
            return None
        if not self.enabled:
            logger.warning("YouTube API key missing; cannot verify channel %s.", url)
            return None
        param, value = identifier
        try:
            response = self.client().channels().list(part="snippet,statistics", **{param: value}).execute()
        except HttpError as exc:
            logger.warning("YouTube channel lookup failed for %s: %s", url, exc)
            return None
        items = response.get("items", [])
        if not items:
            logger.info("No YouTube channel found for %s", url)
            return None
        channel = items[0]
        snippet = channel.get("snippet", {})
        return ChannelDetails(
            external_id=channel["id"],
            name=snippet.get("title") or "Unknown Channel",
            thumbnail_url=_best_thumbnail(snippet),
            subscriber_count=format_subscriber_count(channel.get("statistics", {}).get("subscriberCount")),
        )

