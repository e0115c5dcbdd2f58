"""Recurring work: digest dispatch and history pruning."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .billing import PlanCatalog
from .db import DatabaseManager
from .ledger import local_now
from .logging_utils import log_event
from .models import Account
from .pipeline import BatchPipeline, PipelineOutcome

logger = logging.getLogger(__name__)

GLOBAL_RETENTION_DAYS = 90


@dataclass(frozen=True, slots=True)
class PruneReport:
    guests: int
    expired: int
    by_plan: int
    guest_counters: int

    @property
    def total(self) -> int:
        return self.guests + self.expired + self.by_plan


def resolve_account(db: DatabaseManager, identifier: str) -> Account | None:
    if identifier.isdigit():
        return db.get_account(int(identifier))
    return db.get_account_by_email(identifier)


def dispatch_daily_digests(
    pipeline: BatchPipeline,
    db: DatabaseManager,
    *,
    now: Optional[datetime] = None,
    force: bool = False,
    user: str | None = None,
    limit: int | None = None,
    sort: str | None = None,
    days_back: int = 1,
) -> list[PipelineOutcome]:
    """Run the scheduled digest for every account whose preferred hour is now.

    ``user`` (id or email) bypasses the schedule lookup entirely; ``force``
    ignores the preferred hour but still requires an active schedule.
    """
    now = now or local_now()
    if user is not None:
        account = resolve_account(db, user)
        accounts = [account] if account else []
    else:
        hour = None if force else now.strftime("%H")
        accounts = []
        for schedule in db.active_digest_schedules(hour):
            account = db.get_account(int(schedule.owner_id))
            if account is not None:
                accounts.append(account)

    if not accounts:
        logger.info("No active users found." if force or user else "No users scheduled for this hour.")
        return []

    outcomes: list[PipelineOutcome] = []
    for account in accounts:
        try:
            outcome = pipeline.run_digest(account, limit=limit, sort=sort, days_back=days_back)
        except Exception:
            logger.exception("Digest run crashed for account %s", account.id)
            continue
        log_event(
            logger,
            logging.INFO,
            "jobs.digest_dispatched",
            account=account.id,
            stage=outcome.stage.value,
            status=outcome.status.value,
        )
        outcomes.append(outcome)
    return outcomes


def dispatch_custom_digests(
    pipeline: BatchPipeline,
    db: DatabaseManager,
    *,
    now: Optional[datetime] = None,
    force: bool = False,
    digest_id: int | None = None,
) -> list[PipelineOutcome]:
    """Run custom digests scheduled for this minute (daily, or weekly on today's weekday)."""
    now = now or local_now()
    if digest_id is not None:
        digest = db.get_custom_digest(digest_id)
        digests = [digest] if digest is not None and digest.is_active else []
    elif force:
        digests = db.due_custom_digests(None, None)
    else:
        digests = db.due_custom_digests(now.strftime("%H:%M"), now.strftime("%a").lower())

    outcomes: list[PipelineOutcome] = []
    for digest in digests:
        try:
            outcome = pipeline.run_custom_digest(digest)
        except Exception:
            logger.exception("Custom digest %s crashed", digest.id)
            continue
        log_event(
            logger,
            logging.INFO,
            "jobs.custom_digest_dispatched",
            digest=digest.id,
            stage=outcome.stage.value,
            status=outcome.status.value,
        )
        outcomes.append(outcome)
    return outcomes


def prune_history(
    db: DatabaseManager,
    catalog: PlanCatalog,
    *,
    now: Optional[datetime] = None,
) -> PruneReport:
    """Apply retention: guests keep today only, everyone else per plan, nothing past 90 days."""
    now = now or local_now()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

    guests = db.prune_guest_entities(start_of_day)
    expired = db.prune_entities(now - timedelta(days=GLOBAL_RETENTION_DAYS))
    by_plan = 0
    for account in db.list_accounts():
        retention = catalog.get(account.tier).retention_days
        if retention < GLOBAL_RETENTION_DAYS:
            by_plan += db.prune_entities(now - timedelta(days=retention), owner_id=account.owner_id)
    counters = db.purge_expired_guest_usage(now)

    report = PruneReport(guests=guests, expired=expired, by_plan=by_plan, guest_counters=counters)
    log_event(
        logger,
        logging.INFO,
        "jobs.pruned",
        guests=report.guests,
        expired=report.expired,
        by_plan=report.by_plan,
        guest_counters=report.guest_counters,
    )
    return report
