"""Application controller wiring config, persistence, ledgers and recurring jobs."""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass
from types import FrameType
from typing import Any, Callable, Final, Literal, Optional

from .billing import AccountBillingOracle, PlanCatalog
from .config import AppConfig, load_config
from .db import DatabaseManager
from .integrations import SourceFetcher
from .integrations.apify import ApifyTranscriptFetcher
from .integrations.youtube_channels import YouTubeChannelDirectory
from .jobs import dispatch_custom_digests, dispatch_daily_digests, prune_history
from .ledger import GuestLedger, QuotaLedger
from .logging_utils import configure_logging, log_event
from .notifications import build_notification_sink
from .pipeline import BatchPipeline
from .providers import EnrichmentProvider, build_provider
from .scheduler import SchedulerManager

logger = logging.getLogger(__name__)

JobTrigger = Literal["interval", "cron"]


@dataclass(frozen=True, slots=True)
class JobSpec:
    """A recurring job and the config fields that drive its cadence."""

    func: Callable[["TubeDigestApp"], Any]
    trigger: JobTrigger
    job_id: str
    schedule_fields: tuple[tuple[str, str], ...] = ()
    fixed_schedule: tuple[tuple[str, str], ...] = ()

    def build_schedule_kwargs(self, config: AppConfig) -> dict[str, Any]:
        kwargs: dict[str, Any] = dict(self.fixed_schedule)
        kwargs.update({key: getattr(config, attr) for key, attr in self.schedule_fields})
        return kwargs


def _daily_digest_job(app: "TubeDigestApp") -> None:
    dispatch_daily_digests(app.pipeline, app.db)


def _custom_digest_job(app: "TubeDigestApp") -> None:
    dispatch_custom_digests(app.pipeline, app.db)


def _prune_job(app: "TubeDigestApp") -> None:
    prune_history(app.db, app.catalog)


JOB_SPECS: Final[tuple[JobSpec, ...]] = (
    JobSpec(_daily_digest_job, "cron", "daily_digests", (("minute", "digest_dispatch_minute"),)),
    JobSpec(_custom_digest_job, "cron", "custom_digests", fixed_schedule=(("minute", "*"),)),
    JobSpec(_prune_job, "cron", "prune_history", (("hour", "prune_hour"),), (("minute", "15"),)),
)


def build_fetcher(config: AppConfig) -> SourceFetcher:
    """Transcripts only come from the actor; the Data API is used for channel lookup."""
    return ApifyTranscriptFetcher.from_config(config)


class TubeDigestApp:
    """Owns the long-lived services and runs the scheduler until stopped."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        db: DatabaseManager | None = None,
        provider: EnrichmentProvider | None = None,
        fetcher: SourceFetcher | None = None,
        configure_logs: bool = True,
    ) -> None:
        self.config = config or load_config()
        if configure_logs:
            configure_logging(self.config)
        self.db = db or DatabaseManager(self.config)
        self.catalog = PlanCatalog.from_config(self.config)
        self.oracle = AccountBillingOracle(self.catalog, self.db)
        self.ledger = QuotaLedger(self.db, self.oracle)
        self.guest_ledger = GuestLedger(self.db, self.config.effective_guest_limit)
        self.channel_directory = YouTubeChannelDirectory.from_config(self.config)
        self.pipeline = BatchPipeline(
            self.config,
            self.db,
            self.ledger,
            self.guest_ledger,
            self.oracle,
            fetcher or build_fetcher(self.config),
            provider or build_provider(self.config),
            build_notification_sink(self.config, self.db),
            channel_directory=self.channel_directory,
        )
        self.scheduler = SchedulerManager(self.db)
        self._stop_event = threading.Event()
        self._lifecycle_lock = threading.Lock()
        self._is_running = False
        self._signals_installed = False
        self._configure_jobs()
        log_event(logger, logging.INFO, "app.initialized", environment=self.config.environment)

    def _configure_jobs(self) -> None:
        for spec in JOB_SPECS:
            schedule_kwargs = spec.build_schedule_kwargs(self.config)
            try:
                self.scheduler.add_recurring_job(
                    lambda spec=spec: spec.func(self),
                    trigger=spec.trigger,
                    id=spec.job_id,
                    **schedule_kwargs,
                )
            except Exception as exc:  # pragma: no cover - unexpected scheduler failure
                log_event(
                    logger,
                    logging.CRITICAL,
                    "app.job_registration_failed",
                    job_id=spec.job_id,
                    schedule=schedule_kwargs,
                    error=str(exc),
                )
                raise RuntimeError(f"Failed to register job {spec.job_id}") from exc
            log_event(logger, logging.DEBUG, "app.job_registered", job_id=spec.job_id, schedule=schedule_kwargs)

    def _install_signal_handlers(self) -> None:
        if self._signals_installed:
            return
        if threading.current_thread() is not threading.main_thread():
            log_event(logger, logging.WARNING, "app.signal_handlers_skipped", reason="not_main_thread")
            return
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)
        self._signals_installed = True

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        log_event(logger, logging.WARNING, "app.signal_received", signal=signum)
        self.stop()

    def start(self) -> None:
        """Start the scheduler and block until a stop is requested."""
        with self._lifecycle_lock:
            if self._is_running:
                log_event(logger, logging.INFO, "app.start_ignored", reason="already_running")
                return
            self._is_running = True
            self._stop_event.clear()

        self._install_signal_handlers()
        try:
            self.scheduler.start()
            log_event(logger, logging.INFO, "app.started", jobs=len(JOB_SPECS))
            self._stop_event.wait()
        except Exception as exc:
            log_event(logger, logging.CRITICAL, "app.start_failed", error=str(exc))
            raise
        finally:
            self._shutdown_resources()

    def _shutdown_resources(self) -> None:
        try:
            self.scheduler.shutdown()
        except Exception as exc:
            log_event(logger, logging.ERROR, "app.scheduler_shutdown_failed", error=str(exc))
        finally:
            with self._lifecycle_lock:
                self._is_running = False
        self.db.close()
        self._stop_event.clear()

    def stop(self) -> None:
        with self._lifecycle_lock:
            if not self._is_running or self._stop_event.is_set():
                return
            self._stop_event.set()
            log_event(logger, logging.WARNING, "app.stop_requested")

    def health_snapshot(self) -> dict[str, Any]:
        snapshot = self.scheduler.snapshot()
        return {
            "environment": self.config.environment,
            "provider": self.pipeline.provider.name,
            "scheduler": {
                "total_jobs": snapshot.total_jobs,
                "running": snapshot.running,
                "next_runs": snapshot.next_runs,
            },
        }
