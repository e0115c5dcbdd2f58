"""Source fetchers that turn content locators into raw content items."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from ..models import ContentItem, ContentLocator


@dataclass(frozen=True, slots=True)
class FetchOptions:
    """Per-invocation fetch knobs; ``days_back=None`` means no date window."""

    days_back: int | None = None
    include_captions: bool = True
    sort: str | None = None


class SourceFetcher(Protocol):
    name: str

    def fetch(
        self,
        locators: Sequence[ContentLocator],
        per_locator_limit: int,
        options: FetchOptions,
    ) -> list[ContentItem]:
        """Return fetched items; raise :class:`FetchUnavailable` when the source is down."""
        ...


__all__ = ["FetchOptions", "SourceFetcher"]
