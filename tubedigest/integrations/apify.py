"""Apify transcript actor client (run-sync-get-dataset-items)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import httpx

from ..config import AppConfig, secret_value
from ..errors import FetchUnavailable
from ..models import ContentItem, ContentLocator
from ..transcripts import fragments_from_raw, parse_duration
from ..urls import default_thumbnail, extract_channel_id, extract_video_id
from . import FetchOptions

logger = logging.getLogger(__name__)


def _parse_published_at(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        if value.endswith("Z"):
            value = value.replace("Z", "+00:00")
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def item_from_raw(raw: Mapping[str, Any]) -> ContentItem | None:
    """Normalise one actor dataset row; rows without a recognisable video id are dropped."""
    url = str(raw.get("url") or raw.get("videoUrl") or "")
    content_id = extract_video_id(url)
    if not content_id:
        return None

    captions = raw.get("transcript") or raw.get("subtitles")
    full_text = raw.get("fullText")
    if isinstance(captions, str):
        full_text = full_text or captions
        captions = None

    channel_url = raw.get("channelUrl") or None
    return ContentItem(
        content_id=content_id,
        url=url,
        title=str(raw.get("title") or "Unknown Title"),
        thumbnail_url=raw.get("thumbnailUrl") or raw.get("thumbnail") or default_thumbnail(content_id),
        fragments=fragments_from_raw(captions),
        full_text=full_text or None,
        channel_name=raw.get("channel") or raw.get("channelName") or raw.get("author"),
        channel_url=channel_url,
        channel_external_id=raw.get("channelId") or extract_channel_id(channel_url),
        duration_hint=parse_duration(raw.get("duration") or raw.get("lengthSeconds")),
        published_at=_parse_published_at(raw.get("publishedAt") or raw.get("uploadDate")),
    )


class ApifyTranscriptFetcher:
    """Fetches videos plus captions for channel or video locators in one blocking call."""

    name = "apify"

    def __init__(
        self,
        token: str | None,
        *,
        actor: str = "leandrocb88~youtube-video-transcript-actor",
        base_url: str = "https://api.apify.com/v2",
        timeout: float = 300.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.token = token
        self.actor = actor
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0))

    @classmethod
    def from_config(cls, config: AppConfig) -> "ApifyTranscriptFetcher":
        return cls(
            secret_value(config.apify_token),
            actor=config.apify_actor,
            base_url=config.apify_base_url,
            timeout=config.fetch_timeout_seconds,
        )

    def _endpoint(self) -> tuple[str, dict[str, Any]]:
        params: dict[str, Any] = {"token": self.token} if self.token else {}
        # standby actors are addressed by their container URL and manage their own timeout
        if self.actor.startswith("http"):
            return self.actor, params
        params["timeout"] = int(self.timeout)
        return f"{self.base_url}/acts/{self.actor}/run-sync-get-dataset-items", params

    @staticmethod
    def build_input(
        locators: Sequence[ContentLocator],
        per_locator_limit: int,
        options: FetchOptions,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "downloadSubtitles": options.include_captions,
            "enableSummary": False,
            "includeTimestamps": True,
            "preferAutoSubtitles": False,
        }
        channels = [locator.ref for locator in locators if locator.kind == "channel"]
        videos = [locator.ref for locator in locators if locator.kind == "url"]
        if channels:
            payload.update(
                {
                    "channelUrls": channels,
                    "maxVideosPerChannel": per_locator_limit,
                    "maxShortsPerChannel": 0,
                    "maxStreamsPerChannel": 0,
                }
            )
        if videos:
            payload["startUrls"] = videos
        if options.days_back is not None:
            payload["dateFilterMode"] = "relative"
            payload["daysBack"] = int(options.days_back)
        if options.sort:
            payload["sortBy"] = options.sort
        return payload

    def fetch(
        self,
        locators: Sequence[ContentLocator],
        per_locator_limit: int,
        options: FetchOptions,
    ) -> list[ContentItem]:
        if not locators:
            return []
        if not self.token and not self.actor.startswith("http"):
            raise FetchUnavailable("APIFY_API_TOKEN is not configured")

        url, params = self._endpoint()
        payload = self.build_input(locators, per_locator_limit, options)
        try:
            response = self._client.post(url, params=params, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Apify run failed for actor %s with status %s",
                self.actor,
                exc.response.status_code,
            )
            raise FetchUnavailable(f"Apify returned {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Apify connection error for actor %s: %s", self.actor, exc)
            raise FetchUnavailable(f"Apify request failed: {exc}") from exc

        # standby actors wrap the dataset as {"items": [...]}
        if isinstance(data, Mapping):
            data = data.get("items") or []
        if not isinstance(data, list):
            raise FetchUnavailable("Apify returned an unexpected payload")

        items = [item for item in (item_from_raw(row) for row in data if isinstance(row, Mapping)) if item]
        logger.info("Fetched %d items from Apify across %d locators.", len(items), len(locators))
        return items

    def close(self) -> None:
        self._client.close()
