"""Best-effort delivery of finished runs to the owner."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .config import AppConfig
from .db import DatabaseManager
from .models import Entity, RunRecord
from .reconciler import RunMetrics, format_duration

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def deliver(self, record: RunRecord, entities: Sequence[Entity]) -> None:
        """Deliver a finished run; failures are raised and logged by the caller."""
        ...


@dataclass(slots=True)
class DigestItem:
    title: str
    video_url: str
    thumbnail: str | None
    summary: str | None
    channel_name: str | None


@dataclass(slots=True)
class DigestMessage:
    """Rendered payload shared by every sink."""

    owner_id: str
    run_token: str
    source: str
    date_label: str
    metrics: dict[str, Any]
    items: list[DigestItem] = field(default_factory=list)

    @classmethod
    def build(cls, record: RunRecord, entities: Sequence[Entity]) -> "DigestMessage":
        completed = record.completed_at or datetime.now(timezone.utc)
        metrics = RunMetrics(
            item_count=record.item_count,
            total_duration=record.total_duration,
            total_words=record.total_words,
            read_time_seconds=record.read_time_seconds,
            time_saved_seconds=record.time_saved_seconds,
        )
        return cls(
            owner_id=record.owner_id,
            run_token=record.run_token,
            source=record.source,
            date_label=completed.strftime("%B %d, %Y"),
            metrics=metrics.formatted(),
            items=[
                DigestItem(
                    title=entity.title,
                    video_url=entity.url,
                    thumbnail=entity.thumbnail_url,
                    summary=entity.summary,
                    channel_name=entity.channel_title,
                )
                for entity in entities
            ],
        )

    def as_text(self) -> str:
        lines = [
            f"Your digest for {self.date_label}",
            f"{self.metrics['total_videos']} videos, {self.metrics['total_duration']} of watching "
            f"in {self.metrics['read_time']} of reading (saved {self.metrics['time_saved']})",
            "",
        ]
        for item in self.items:
            header = f"- {item.title}"
            if item.channel_name:
                header += f" ({item.channel_name})"
            lines.append(header)
            lines.append(f"  {item.video_url}")
        return "\n".join(lines)


class LogNotificationSink:
    """Records deliveries in the operational log table."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    def deliver(self, record: RunRecord, entities: Sequence[Entity]) -> None:
        message = DigestMessage.build(record, entities)
        logger.info(
            "Digest ready for %s: %d items, %s saved",
            record.owner_id,
            record.item_count,
            format_duration(record.time_saved_seconds),
        )
        self.db.log_event(
            "INFO",
            "notifications",
            f"Digest {record.run_token} ready",
            {"owner_id": record.owner_id, "metrics": message.metrics, "items": len(message.items)},
        )


def is_retryable_delivery_error(exc: BaseException) -> bool:
    """Transport errors, throttling and 5xx answers are retried; other rejections are final."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TransportError)


class WebhookNotificationSink:
    """POSTs the rendered digest as JSON to an HTTP endpoint."""

    def __init__(self, url: str, *, timeout: float = 20.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0))

    @retry(
        retry=retry_if_exception(is_retryable_delivery_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2, max=20),
        reraise=True,
    )
    def deliver(self, record: RunRecord, entities: Sequence[Entity]) -> None:
        message = DigestMessage.build(record, entities)
        response = self._client.post(self.url, json={**asdict(message), "text": message.as_text()})
        response.raise_for_status()
        logger.info("Digest %s delivered to webhook", record.run_token)


def build_notification_sink(config: AppConfig, db: DatabaseManager) -> NotificationSink:
    if config.notification_webhook_url:
        return WebhookNotificationSink(config.notification_webhook_url)
    return LogNotificationSink(db)
