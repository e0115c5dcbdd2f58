"""Domain records shared across the ledger, merger, scheduler and pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

PlanTier = Literal["free", "plus", "pro"]
LocatorKind = Literal["channel", "url"]
RunSource = Literal["digest", "custom_digest", "channel_analysis", "url_batch"]

GUEST_OWNER_PREFIX = "guest:"


class SummaryState(str, Enum):
    """Lifecycle of an entity's summary; only enrichment outcomes advance it."""

    PENDING = "pending"
    IN_PROGRESS = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DetailLevel(str, Enum):
    SHORT = "short"
    DETAILED = "detailed"


@dataclass(slots=True)
class Account:
    """A paying or free account row as seen by the ledger."""

    id: int
    email: str
    tier: PlanTier = "free"
    consumed: int = 0
    last_reset: datetime | None = None
    billing_anchor_day: int | None = None

    @property
    def owner_id(self) -> str:
        return str(self.id)


@dataclass(frozen=True, slots=True)
class ReservationTicket:
    """Proof of an optimistic reservation; settled exactly once."""

    ticket_id: str
    holder: str
    period_key: str
    amount: int
    created_at: datetime


@dataclass(frozen=True, slots=True)
class ContentLocator:
    """A source identity plus an upper bound on the items to retrieve from it."""

    ref: str
    max_items: int
    kind: LocatorKind = "channel"


@dataclass(frozen=True, slots=True)
class TranscriptSegment:
    text: str
    start: float
    duration: float

    def as_dict(self) -> dict[str, Any]:
        return {"text": self.text, "start": self.start, "duration": self.duration}


@dataclass(slots=True)
class ContentItem:
    """Raw fetched unit handed over by a source fetcher."""

    content_id: str
    url: str
    title: str = "Unknown Title"
    thumbnail_url: str | None = None
    fragments: list[TranscriptSegment] = field(default_factory=list)
    full_text: str | None = None
    channel_name: str | None = None
    channel_url: str | None = None
    channel_external_id: str | None = None
    duration_hint: int | None = None
    published_at: datetime | None = None


@dataclass(slots=True)
class Channel:
    """A subscribed channel belonging to one owner."""

    id: int
    owner_id: str
    url: str
    name: str
    external_id: str | None = None
    thumbnail_url: str | None = None
    is_paused: bool = False


@dataclass(slots=True)
class Entity:
    """The durable enriched record produced for one content item in one run."""

    id: int
    owner_id: str
    content_id: str
    batch_key: str
    run_token: str
    title: str
    source: str
    transcript: list[TranscriptSegment] = field(default_factory=list)
    thumbnail_url: str | None = None
    channel_id: int | None = None
    channel_title: str | None = None
    duration: int | None = None
    summary: str | None = None
    summary_short: str | None = None
    summary_state: SummaryState = SummaryState.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.content_id}"

    @property
    def full_text(self) -> str:
        return " ".join(segment.text for segment in self.transcript).strip()

    def summary_for(self, detail_level: DetailLevel) -> str | None:
        return self.summary_short if detail_level is DetailLevel.SHORT else self.summary


@dataclass(slots=True)
class RunRecord:
    """Summary of one pipeline invocation, created after settlement."""

    owner_id: str
    run_token: str
    source: str
    item_count: int
    total_duration: int
    total_words: int = 0
    read_time_seconds: int = 0
    time_saved_seconds: int = 0
    artifact_statuses: dict[str, str] = field(default_factory=dict)
    digest_id: int | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class DigestSchedule:
    owner_id: str
    preferred_time: str
    is_active: bool = True


@dataclass(slots=True)
class CustomDigest:
    """A named digest over a subset of an owner's channels."""

    id: int
    owner_id: str
    name: str
    channel_ids: tuple[int, ...] = ()
    custom_prompt: str | None = None
    frequency: Literal["daily", "weekly"] = "daily"
    scheduled_at: str = "08:00"
    day_of_week: str | None = None
    is_active: bool = True


def guest_owner_id(fingerprint: str) -> str:
    return f"{GUEST_OWNER_PREFIX}{fingerprint}"


__all__ = [
    "Account",
    "Channel",
    "ContentItem",
    "ContentLocator",
    "CustomDigest",
    "DetailLevel",
    "DigestSchedule",
    "Entity",
    "GUEST_OWNER_PREFIX",
    "PlanTier",
    "ReservationTicket",
    "RunRecord",
    "RunSource",
    "SummaryState",
    "TranscriptSegment",
    "guest_owner_id",
]
