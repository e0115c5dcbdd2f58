"""Settle a run's reservation against what was actually produced."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol, Sequence

from .db import DatabaseManager
from .logging_utils import log_event
from .models import Entity, ReservationTicket, RunRecord

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
DERIVED_ARTIFACTS = ("pdf", "audio")

_WORD_RE = re.compile(r"[A-Za-z'-]+")
_TAG_RE = re.compile(r"<[^>]+>")


class SettlingLedger(Protocol):
    def settle(self, ticket: ReservationTicket, actual_amount: int) -> int:
        ...

    def release(self, ticket: ReservationTicket) -> int:
        ...

    def is_open(self, ticket: ReservationTicket) -> bool:
        ...


@dataclass(frozen=True, slots=True)
class RunMetrics:
    item_count: int
    total_duration: int
    total_words: int
    read_time_seconds: int
    time_saved_seconds: int

    def formatted(self) -> dict[str, str | int]:
        return {
            "total_videos": self.item_count,
            "total_duration": format_duration(self.total_duration),
            "read_time": format_duration(self.read_time_seconds),
            "time_saved": format_duration(self.time_saved_seconds),
        }


def count_words(text: str | None) -> int:
    if not text:
        return 0
    return len(_WORD_RE.findall(_TAG_RE.sub(" ", text)))


def format_duration(seconds: int) -> str:
    """``45s``, ``12m`` or ``1h 5m``."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def compute_metrics(entities: Sequence[Entity]) -> RunMetrics:
    total_duration = sum(entity.duration or 0 for entity in entities)
    total_words = sum(count_words(entity.summary) for entity in entities)
    read_time = math.ceil(total_words / WORDS_PER_MINUTE * 60)
    return RunMetrics(
        item_count=len(entities),
        total_duration=total_duration,
        total_words=total_words,
        read_time_seconds=read_time,
        time_saved_seconds=max(0, total_duration - read_time),
    )


class RunReconciler:
    """Turns a ticket plus produced entities into a settled ledger and a RunRecord."""

    def __init__(self, ledger: SettlingLedger, db: DatabaseManager) -> None:
        self.ledger = ledger
        self.db = db

    def settle(
        self,
        ticket: ReservationTicket,
        produced: Sequence[Entity],
        unproduced: Sequence[str] = (),
        *,
        owner_id: str,
        run_token: str,
        source: str,
        digest_id: int | None = None,
    ) -> RunRecord | None:
        actual = len(produced)
        refunded = self.ledger.settle(ticket, actual)
        log_event(
            logger,
            logging.INFO,
            "run.reconciled",
            run=run_token,
            reserved=ticket.amount,
            produced=actual,
            unproduced=len(unproduced),
            refunded=refunded,
        )
        if actual == 0:
            return None

        metrics = compute_metrics(produced)
        record = RunRecord(
            owner_id=owner_id,
            run_token=run_token,
            source=source,
            item_count=metrics.item_count,
            total_duration=metrics.total_duration,
            total_words=metrics.total_words,
            read_time_seconds=metrics.read_time_seconds,
            time_saved_seconds=metrics.time_saved_seconds,
            artifact_statuses={name: "pending" for name in DERIVED_ARTIFACTS},
            digest_id=digest_id,
            completed_at=datetime.now(timezone.utc),
        )
        self.db.insert_run_record(record)
        return record
