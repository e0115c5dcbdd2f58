"""Match fetched items back to the owner's subscribed channels."""

from __future__ import annotations

from typing import Iterable

from .models import Channel


def _norm(value: str | None) -> str:
    return (value or "").strip()


def _url_contains(left: str, right: str) -> bool:
    left, right = left.rstrip("/"), right.rstrip("/")
    if not left or not right:
        return False
    return left in right or right in left


def match_channel(
    channels: Iterable[Channel],
    *,
    channel_url: str | None = None,
    channel_name: str | None = None,
    external_id: str | None = None,
) -> Channel | None:
    """First subscribed channel matching by id, then URL, then name.

    Each rule is tried across every candidate before falling through to the
    next one, so an id match always beats an earlier URL or name match.
    """
    candidates = list(channels)
    external_id = _norm(external_id)
    url = _norm(channel_url)
    name = _norm(channel_name).lower()

    if external_id:
        for channel in candidates:
            if channel.external_id and channel.external_id == external_id:
                return channel
    if url:
        for channel in candidates:
            if _url_contains(_norm(channel.url), url):
                return channel
    if name:
        for channel in candidates:
            candidate = _norm(channel.name).lower()
            if candidate and (candidate in name or name in candidate):
                return channel
    return None
