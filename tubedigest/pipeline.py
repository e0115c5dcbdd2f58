"""Batch orchestration: resolve, reserve, fetch, persist, enrich, settle, notify.

Every invocation kind (scheduled digest, custom digest, channel analysis and URL
batch) resolves its inputs into a :class:`RunPlan` and then runs through the same
state machine in :meth:`BatchPipeline._execute`. :meth:`BatchPipeline.summarize_entity`
re-summarises one stored entity under the same reserve and settle contract.
Capacity, fetch, enrichment and validation failures come back as a
:class:`PipelineOutcome`; they are never raised.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence

from .attribution import match_channel
from .billing import BillingOracle
from .config import AppConfig
from .db import DatabaseManager
from .enrichment import EnrichmentRequest, EnrichmentResult, EnrichmentScheduler
from .errors import FetchUnavailable, InsufficientCapacity, InvalidRequest
from .integrations import FetchOptions, SourceFetcher
from .integrations.youtube_channels import YouTubeChannelDirectory
from .ledger import GuestLedger, QuotaLedger
from .logging_utils import log_event
from .models import (
    Account,
    Channel,
    ContentItem,
    ContentLocator,
    CustomDigest,
    DetailLevel,
    Entity,
    ReservationTicket,
    RunRecord,
    SummaryState,
    guest_owner_id,
)
from .notifications import NotificationSink
from .providers import EnrichmentProvider
from .reconciler import RunReconciler
from .transcripts import build_transcript, resolve_duration
from .urls import extract_video_id, is_channel_url, is_video_url, parse_input_lines

logger = logging.getLogger(__name__)

DATE_RANGE_DAYS: dict[str, int | None] = {
    "any": None,
    "today": 1,
    "week": 7,
    "month": 30,
    "year": 365,
}
SORT_ORDERS = frozenset({"date", "viewCount", "rating", "relevance", "title", "videoCount"})


class PipelineStage(str, Enum):
    RESOLVING_SOURCES = "resolving_sources"
    RESERVING = "reserving"
    FETCHING = "fetching"
    MERGING_PERSISTING = "merging_persisting"
    ENRICHING = "enriching"
    SETTLING = "settling"
    NOTIFYING = "notifying"
    DONE = "done"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    EMPTY_RESULT = "empty_result"
    NOTHING_TO_DO = "nothing_to_do"
    CACHED = "cached"
    INSUFFICIENT_CAPACITY = "insufficient_capacity"
    FETCH_UNAVAILABLE = "fetch_unavailable"
    INVALID_REQUEST = "invalid_request"
    ENRICHMENT_FAILED = "enrichment_failed"


@dataclass(slots=True)
class PipelineOutcome:
    """Terminal state of one invocation."""

    stage: PipelineStage
    status: OutcomeStatus
    run_token: str
    source: str
    record: RunRecord | None = None
    entities: list[Entity] = field(default_factory=list)
    cached: list[Entity] = field(default_factory=list)
    reserved: int = 0
    refunded: int = 0
    error: str | None = None
    stages: list[PipelineStage] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.stage is PipelineStage.DONE

    @property
    def failed_entities(self) -> list[Entity]:
        return [entity for entity in self.entities if entity.summary_state is SummaryState.FAILED]


@dataclass(slots=True)
class RunPlan:
    """Everything :meth:`BatchPipeline._execute` needs, resolved up front."""

    owner_id: str
    source: str
    locators: list[ContentLocator]
    per_locator_limit: int
    estimate: int
    options: FetchOptions
    chunk_size: int
    reserve: Callable[[int], ReservationTicket]
    reconciler: RunReconciler
    run_token: str = field(default_factory=lambda: str(uuid.uuid4()))
    distinct_per_run: bool = False
    instructions: str | None = None
    channels: list[Channel] = field(default_factory=list)
    digest_id: int | None = None
    cached: list[Entity] = field(default_factory=list)

    @property
    def batch_key(self) -> str:
        return self.run_token if self.distinct_per_run else ""


def per_locator_allowance(
    remaining: int,
    locators: int,
    *,
    cap: int,
    requested_total: int | None = None,
) -> int:
    """Items to request per locator so that ``allowance * locators <= remaining``."""
    if locators <= 0:
        return 0
    affordable = remaining // locators
    if requested_total:
        allowance = math.ceil(requested_total / locators)
    else:
        allowance = min(cap, affordable)
    return max(0, min(allowance, affordable))


class BatchPipeline:
    """Runs metered enrichment batches for accounts and guests."""

    def __init__(
        self,
        config: AppConfig,
        db: DatabaseManager,
        ledger: QuotaLedger,
        guest_ledger: GuestLedger,
        oracle: BillingOracle,
        fetcher: SourceFetcher,
        provider: EnrichmentProvider,
        notifier: NotificationSink,
        *,
        channel_directory: YouTubeChannelDirectory | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.db = db
        self.ledger = ledger
        self.guest_ledger = guest_ledger
        self.oracle = oracle
        self.fetcher = fetcher
        self.provider = provider
        self.notifier = notifier
        self.channel_directory = channel_directory
        self._sleep = sleep
        self.reconciler = RunReconciler(ledger, db)
        self.guest_reconciler = RunReconciler(guest_ledger, db)

    # ------------------------------------------------------------------ #
    # Invocation kinds
    # ------------------------------------------------------------------ #

    def run_digest(
        self,
        account: Account,
        *,
        limit: int | None = None,
        sort: str | None = None,
        days_back: int = 1,
    ) -> PipelineOutcome:
        """Scheduled digest over every non-paused subscribed channel."""
        source = "digest"
        channels = self.db.list_channels(account.owner_id, include_paused=False)
        if not channels:
            logger.info("Account %s has no active channels; skipping digest.", account.id)
            return self._early(PipelineStage.DONE, OutcomeStatus.NOTHING_TO_DO, source)

        remaining = self.ledger.remaining_capacity(account)
        per_channel = per_locator_allowance(
            remaining,
            len(channels),
            cap=self.config.digest_max_per_channel,
            requested_total=limit,
        )
        if per_channel <= 0:
            return self._insufficient(source, account.owner_id, len(channels), remaining)

        plan = RunPlan(
            owner_id=account.owner_id,
            source=source,
            locators=[ContentLocator(channel.url, per_channel) for channel in channels],
            per_locator_limit=per_channel,
            estimate=per_channel * len(channels),
            options=FetchOptions(days_back=days_back, sort=sort),
            chunk_size=self.config.digest_chunk_size,
            reserve=lambda amount: self.ledger.reserve(account, amount),
            reconciler=self.reconciler,
            distinct_per_run=True,
            channels=channels,
        )
        return self._execute(plan)

    def run_custom_digest(self, digest: CustomDigest) -> PipelineOutcome:
        """Named digest over a subset of channels with optional custom instructions."""
        source = "custom_digest"
        account = self.db.get_account(int(digest.owner_id))
        if account is None:
            return self._invalid(source, f"Owner {digest.owner_id} of digest {digest.id} does not exist")
        channels = [
            channel
            for channel in self.db.channels_by_ids(digest.channel_ids)
            if channel.owner_id == digest.owner_id and not channel.is_paused
        ]
        if not channels:
            logger.warning("Digest '%s' has no active sources; skipping.", digest.name)
            return self._early(PipelineStage.DONE, OutcomeStatus.NOTHING_TO_DO, source)

        remaining = self.ledger.remaining_capacity(account)
        per_source = per_locator_allowance(remaining, len(channels), cap=self.config.custom_digest_max_per_source)
        if per_source <= 0:
            return self._insufficient(source, account.owner_id, len(channels), remaining)

        plan = RunPlan(
            owner_id=account.owner_id,
            source=source,
            locators=[ContentLocator(channel.url, per_source) for channel in channels],
            per_locator_limit=per_source,
            estimate=per_source * len(channels),
            options=FetchOptions(days_back=1),
            chunk_size=self.config.custom_chunk_size,
            reserve=lambda amount: self.ledger.reserve(account, amount),
            reconciler=self.reconciler,
            instructions=(digest.custom_prompt or "").strip() or None,
            channels=channels,
            digest_id=digest.id,
        )
        return self._execute(plan)

    def run_channel_analysis(
        self,
        account: Account,
        urls: Sequence[str] | str,
        *,
        max_videos: int,
        date_range: str = "any",
        sort: str = "date",
    ) -> PipelineOutcome:
        """Ad-hoc analysis of up to ten channels; paid tiers only."""
        source = "channel_analysis"
        try:
            channel_urls = self._validate_channel_analysis(account, urls, max_videos, date_range, sort)
        except InvalidRequest as exc:
            return self._invalid(source, str(exc))

        count = len(channel_urls)
        per_channel = max_videos
        remaining = self.ledger.remaining_capacity(account)
        if remaining < per_channel * count:
            per_channel = remaining // count
        if per_channel <= 0:
            return self._insufficient(source, account.owner_id, count, remaining)

        plan = RunPlan(
            owner_id=account.owner_id,
            source=source,
            locators=[ContentLocator(url, per_channel) for url in channel_urls],
            per_locator_limit=per_channel,
            estimate=per_channel * count,
            options=FetchOptions(days_back=DATE_RANGE_DAYS[date_range], sort=sort),
            chunk_size=self.config.digest_chunk_size,
            reserve=lambda amount: self.ledger.reserve(account, amount),
            reconciler=self.reconciler,
            distinct_per_run=True,
            channels=self.db.list_channels(account.owner_id),
        )
        return self._execute(plan)

    def run_url_batch(
        self,
        urls: Sequence[str] | str,
        *,
        account: Account | None = None,
        guest: tuple[str, str] | None = None,
    ) -> PipelineOutcome:
        """Summarise individual video URLs; already-held content is served from the store."""
        source = "url_batch"
        if account is None and guest is None:
            raise ValueError("run_url_batch needs an account or a guest (ip, user_agent)")

        lines = parse_input_lines(urls) if isinstance(urls, str) else [u.strip() for u in urls if u.strip()]
        video_urls = list(dict.fromkeys(url for url in lines if is_video_url(url)))
        if not video_urls:
            return self._invalid(source, "Please provide at least one valid YouTube URL.")

        paid = account is not None and self.oracle.plan_of(account).is_paid
        batch_limit = self.config.paid_url_batch_limit if paid else self.config.free_url_batch_limit
        if len(video_urls) > batch_limit:
            if paid:
                return self._invalid(source, f"Batch limit exceeded (Max {batch_limit}).")
            return self._invalid(source, f"Free plan is limited to {batch_limit} video at a time.")

        owner_id, reserve, reconciler = self._bind_owner(account, guest)
        ids = {url: extract_video_id(url) for url in video_urls}
        cached = self.db.find_owned_content(owner_id, [vid for vid in ids.values() if vid])
        held = {entity.content_id for entity in cached}
        to_fetch = [url for url in video_urls if ids[url] is None or ids[url] not in held]
        if not to_fetch:
            outcome = self._early(PipelineStage.DONE, OutcomeStatus.CACHED, source)
            outcome.cached = cached
            return outcome

        plan = RunPlan(
            owner_id=owner_id,
            source=source,
            locators=[ContentLocator(url, 1, kind="url") for url in to_fetch],
            per_locator_limit=1,
            estimate=len(to_fetch),
            options=FetchOptions(),
            chunk_size=self.config.custom_chunk_size,
            reserve=reserve,
            reconciler=reconciler,
            channels=self.db.list_channels(owner_id) if account is not None else [],
            cached=cached,
        )
        return self._execute(plan)

    def summarize_entity(
        self,
        entity_id: int,
        detail_level: DetailLevel = DetailLevel.DETAILED,
        *,
        account: Account | None = None,
        guest: tuple[str, str] | None = None,
    ) -> PipelineOutcome:
        """Regenerate one stored entity's summary at ``detail_level``.

        Costs ``summary_cost`` units, reserved before the provider call and
        refunded in full when no summary comes back. Short and detailed summaries
        are stored side by side; nothing is fetched, recorded or notified.
        """
        source = "summary"
        if account is None and guest is None:
            raise ValueError("summarize_entity needs an account or a guest (ip, user_agent)")
        owner_id, reserve, reconciler = self._bind_owner(account, guest)

        entity = self.db.get_entity(entity_id)
        if entity is None or entity.owner_id != owner_id:
            return self._invalid(source, f"Video {entity_id} was not found.")
        if not entity.full_text:
            return self._invalid(source, "This video has no transcript to summarise.")

        outcome = PipelineOutcome(
            stage=PipelineStage.RESOLVING_SOURCES,
            status=OutcomeStatus.COMPLETED,
            run_token=str(uuid.uuid4()),
            source=source,
            stages=[PipelineStage.RESOLVING_SOURCES],
        )
        self._advance(outcome, PipelineStage.RESERVING)
        try:
            ticket = reserve(self.config.summary_cost)
        except InsufficientCapacity as exc:
            return self._fail(outcome, OutcomeStatus.INSUFFICIENT_CAPACITY, str(exc))
        outcome.reserved = ticket.amount

        try:
            self._advance(outcome, PipelineStage.ENRICHING)
            scheduler = EnrichmentScheduler.from_config(
                self.provider,
                self.config,
                chunk_size=1,
                detail_level=detail_level,
                sleep=self._sleep,
            )
            key = str(entity.id)
            result = scheduler.run([EnrichmentRequest(key=key, text=entity.full_text)])[key]
            if result.ok:
                self.db.store_summary(entity.id, detail_level, result.summary)
            elif detail_level is DetailLevel.DETAILED and entity.summary is None:
                self.db.mark_summary_state(entity.id, SummaryState.FAILED)

            self._advance(outcome, PipelineStage.SETTLING)
            outcome.refunded = reconciler.ledger.settle(ticket, ticket.amount if result.ok else 0)
        except Exception:
            if reconciler.ledger.is_open(ticket):
                reconciler.ledger.release(ticket)
            log_event(logger, logging.ERROR, "pipeline.aborted", run=outcome.run_token, stage=outcome.stage.value)
            raise

        outcome.entities = [self.db.get_entity(entity.id) or entity]
        if not result.ok:
            return self._fail(outcome, OutcomeStatus.ENRICHMENT_FAILED, result.error or "Summary generation failed")
        log_event(
            logger,
            logging.INFO,
            "pipeline.summary_regenerated",
            entity=entity.id,
            owner=owner_id,
            detail=detail_level.value,
        )
        self._advance(outcome, PipelineStage.DONE)
        return outcome

    def _bind_owner(
        self,
        account: Account | None,
        guest: tuple[str, str] | None,
    ) -> tuple[str, Callable[[int], ReservationTicket], RunReconciler]:
        if account is not None:
            return account.owner_id, lambda amount: self.ledger.reserve(account, amount), self.reconciler
        fingerprint = GuestLedger.fingerprint(*guest)
        return (
            guest_owner_id(fingerprint),
            lambda amount: self.guest_ledger.reserve(fingerprint, amount),
            self.guest_reconciler,
        )

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #

    def _execute(self, plan: RunPlan) -> PipelineOutcome:
        outcome = PipelineOutcome(
            stage=PipelineStage.RESOLVING_SOURCES,
            status=OutcomeStatus.COMPLETED,
            run_token=plan.run_token,
            source=plan.source,
            cached=list(plan.cached),
            stages=[PipelineStage.RESOLVING_SOURCES],
        )

        self._advance(outcome, PipelineStage.RESERVING)
        try:
            ticket = plan.reserve(plan.estimate)
        except InsufficientCapacity as exc:
            return self._fail(outcome, OutcomeStatus.INSUFFICIENT_CAPACITY, str(exc))
        outcome.reserved = ticket.amount

        try:
            self._advance(outcome, PipelineStage.FETCHING)
            try:
                items = self.fetcher.fetch(plan.locators, plan.per_locator_limit, plan.options)
            except FetchUnavailable as exc:
                outcome.refunded = plan.reconciler.ledger.settle(ticket, 0)
                return self._fail(outcome, OutcomeStatus.FETCH_UNAVAILABLE, str(exc))
            except Exception as exc:  # noqa: BLE001 - any fetcher error ends the run at Fetching
                logger.exception("Fetcher %s raised for run %s", getattr(self.fetcher, "name", "?"), plan.run_token)
                outcome.refunded = plan.reconciler.ledger.settle(ticket, 0)
                return self._fail(outcome, OutcomeStatus.FETCH_UNAVAILABLE, f"{type(exc).__name__}: {exc}")
            if items is None:
                outcome.refunded = plan.reconciler.ledger.settle(ticket, 0)
                return self._fail(outcome, OutcomeStatus.FETCH_UNAVAILABLE, "Source fetcher returned no result")
            if not items:
                outcome.refunded = plan.reconciler.ledger.settle(ticket, 0)
                outcome.status = OutcomeStatus.EMPTY_RESULT
                log_event(logger, logging.INFO, "pipeline.empty", run=plan.run_token, source=plan.source)
                self._advance(outcome, PipelineStage.DONE)
                return outcome

            self._advance(outcome, PipelineStage.MERGING_PERSISTING)
            entities, requests = self._persist(plan, items)

            self._advance(outcome, PipelineStage.ENRICHING)
            self._enrich(plan, requests)

            self._advance(outcome, PipelineStage.SETTLING)
            refreshed = [self.db.get_entity(entity.id) or entity for entity in entities]
            produced = [entity for entity in refreshed if entity.summary_state is not SummaryState.FAILED]
            unproduced = [entity.content_id for entity in refreshed if entity.summary_state is SummaryState.FAILED]
            outcome.entities = refreshed
            outcome.refunded = max(0, ticket.amount - len(produced))
            outcome.record = plan.reconciler.settle(
                ticket,
                produced,
                unproduced,
                owner_id=plan.owner_id,
                run_token=plan.run_token,
                source=plan.source,
                digest_id=plan.digest_id,
            )
        except Exception:
            if plan.reconciler.ledger.is_open(ticket):
                plan.reconciler.ledger.release(ticket)
            log_event(logger, logging.ERROR, "pipeline.aborted", run=plan.run_token, stage=outcome.stage.value)
            raise

        self._advance(outcome, PipelineStage.NOTIFYING)
        if outcome.record is not None:
            try:
                self.notifier.deliver(outcome.record, produced)
            except Exception:  # noqa: BLE001 - settlement already reflects the work done
                logger.exception("Notification delivery failed for run %s", plan.run_token)

        self._advance(outcome, PipelineStage.DONE)
        return outcome

    def _persist(self, plan: RunPlan, items: Sequence[ContentItem]) -> tuple[list[Entity], list[EnrichmentRequest]]:
        entities: dict[str, Entity] = {}
        requests: list[EnrichmentRequest] = []
        for item in items:
            if item.content_id in entities:
                continue
            transcript = build_transcript(item.fragments, item.full_text)
            channel = match_channel(
                plan.channels,
                channel_url=item.channel_url,
                channel_name=item.channel_name,
                external_id=item.channel_external_id,
            )
            entity = self.db.upsert_entity(
                owner_id=plan.owner_id,
                content_id=item.content_id,
                batch_key=plan.batch_key,
                run_token=plan.run_token,
                source=plan.source,
                title=item.title,
                thumbnail_url=item.thumbnail_url,
                channel_id=channel.id if channel else None,
                channel_title=item.channel_name or (channel.name if channel else None),
                duration=resolve_duration(item.duration_hint, transcript),
                transcript=transcript,
            )
            entities[item.content_id] = entity
            if plan.instructions or entity.summary is None:
                self.db.mark_summary_state(entity.id, SummaryState.IN_PROGRESS)
                requests.append(EnrichmentRequest(key=str(entity.id), text=entity.full_text))

        if len(entities) > plan.estimate:
            log_event(
                logger,
                logging.WARNING,
                "pipeline.surplus_items",
                run=plan.run_token,
                reserved=plan.estimate,
                fetched=len(entities),
            )
        return list(entities.values()), requests

    def _enrich(self, plan: RunPlan, requests: Sequence[EnrichmentRequest]) -> None:
        if not requests:
            return
        scheduler = EnrichmentScheduler.from_config(
            self.provider,
            self.config,
            chunk_size=plan.chunk_size,
            sleep=self._sleep,
        )

        def record_chunk(results: dict[str, EnrichmentResult]) -> None:
            for key, result in results.items():
                if result.ok:
                    self.db.mark_summary_state(int(key), SummaryState.COMPLETED, summary=result.summary)
                else:
                    self.db.mark_summary_state(int(key), SummaryState.FAILED)

        scheduler.run(requests, plan.instructions, on_chunk_settled=record_chunk)

    # ------------------------------------------------------------------ #
    # Validation and outcome helpers
    # ------------------------------------------------------------------ #

    def _validate_channel_analysis(
        self,
        account: Account,
        urls: Sequence[str] | str,
        max_videos: int,
        date_range: str,
        sort: str,
    ) -> list[str]:
        if not self.oracle.plan_of(account).is_paid:
            raise InvalidRequest("Channel analysis is only available for paid members.")
        if not 1 <= max_videos <= self.config.analysis_max_videos:
            raise InvalidRequest(f"max_videos must be between 1 and {self.config.analysis_max_videos}")
        if date_range not in DATE_RANGE_DAYS:
            raise InvalidRequest(f"Unsupported date range: {date_range}")
        if sort not in SORT_ORDERS:
            raise InvalidRequest(f"Unsupported sort order: {sort}")

        lines = parse_input_lines(urls) if isinstance(urls, str) else [u.strip() for u in urls if u.strip()]
        valid: list[str] = []
        invalid: list[str] = []
        verify = self.channel_directory is not None and self.channel_directory.enabled
        for url in lines:
            if not is_channel_url(url):
                invalid.append(f"{url} (Invalid Format)")
            elif verify and self.channel_directory.lookup(url) is None:
                invalid.append(f"{url} (Not Found)")
            else:
                valid.append(url)
        if invalid:
            raise InvalidRequest("The following URL(s) are invalid: " + ", ".join(invalid))
        if not valid:
            raise InvalidRequest("Please provide at least one valid YouTube Channel URL.")
        if len(valid) > self.config.analysis_max_channels:
            raise InvalidRequest(f"Channel Batch limit exceeded (Max {self.config.analysis_max_channels}).")
        return valid

    def _advance(self, outcome: PipelineOutcome, stage: PipelineStage) -> None:
        outcome.stage = stage
        outcome.stages.append(stage)
        log_event(logger, logging.DEBUG, "pipeline.stage", run=outcome.run_token, stage=stage.value)

    def _fail(self, outcome: PipelineOutcome, status: OutcomeStatus, error: str) -> PipelineOutcome:
        failed_at = outcome.stage
        outcome.status = status
        outcome.error = error
        self._advance(outcome, PipelineStage.FAILED)
        log_event(
            logger,
            logging.WARNING,
            "pipeline.failed",
            run=outcome.run_token,
            source=outcome.source,
            stage=failed_at.value,
            status=status.value,
            error=error,
        )
        return outcome

    def _early(self, stage: PipelineStage, status: OutcomeStatus, source: str, error: str | None = None) -> PipelineOutcome:
        return PipelineOutcome(
            stage=stage,
            status=status,
            run_token=str(uuid.uuid4()),
            source=source,
            error=error,
            stages=[PipelineStage.RESOLVING_SOURCES, stage],
        )

    def _invalid(self, source: str, error: str) -> PipelineOutcome:
        log_event(logger, logging.INFO, "pipeline.invalid_request", source=source, error=error)
        return self._early(PipelineStage.FAILED, OutcomeStatus.INVALID_REQUEST, source, error)

    def _insufficient(self, source: str, owner_id: str, locators: int, remaining: int) -> PipelineOutcome:
        error = f"Insufficient capacity for {owner_id}: need at least {locators}, remaining {remaining}"
        log_event(logger, logging.INFO, "pipeline.insufficient", source=source, owner=owner_id, remaining=remaining)
        outcome = self._early(PipelineStage.FAILED, OutcomeStatus.INSUFFICIENT_CAPACITY, source, error)
        outcome.stages = [PipelineStage.RESOLVING_SOURCES, PipelineStage.RESERVING, PipelineStage.FAILED]
        return outcome
