"""Shared fixtures: tmp_path databases, a frozen clock and in-memory collaborators."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from tubedigest.billing import AccountBillingOracle, PlanCatalog
from tubedigest.config import AppConfig
from tubedigest.db import DatabaseManager
from tubedigest.errors import ProviderRejectedError, ProviderTransientError
from tubedigest.ledger import GuestLedger, QuotaLedger
from tubedigest.models import ContentItem, DetailLevel, TranscriptSegment
from tubedigest.pipeline import BatchPipeline

_ENV_KEYS = (
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
    "APIFY_API_TOKEN",
    "YOUTUBE_API_KEY",
    "AI_SERVICE_PROVIDER",
    "APP_ENVIRONMENT",
    "APP_ENV",
    "APP_GUEST_DAILY_LIMIT",
    "APP_NOTIFICATION_WEBHOOK_URL",
)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class FakeProvider:
    """Summarises deterministically; failures are keyed on transcript text."""

    name = "fake"
    context_budget = 10_000

    def __init__(self, *, reject=(), transient=None) -> None:
        self.reject = set(reject)
        self.transient = dict(transient or {})
        self.calls: list[tuple[str, str | None]] = []
        self.detail_levels: list[DetailLevel] = []
        self._lock = threading.Lock()

    def summarize(self, text, detail_level, instructions=None):
        with self._lock:
            self.calls.append((text, instructions))
            self.detail_levels.append(detail_level)
            remaining_failures = self.transient.get(text, 0)
            if remaining_failures:
                self.transient[text] = remaining_failures - 1
        if text in self.reject:
            raise ProviderRejectedError("content policy", status_code=400)
        if remaining_failures:
            raise ProviderTransientError("rate limited", status_code=429)
        if detail_level is DetailLevel.SHORT:
            return f"Gist: {text}"
        return f"Summary: {text}"


class FakeFetcher:
    name = "fake"

    def __init__(self, items=None, *, error: Exception | None = None) -> None:
        self.items = list(items or [])
        self.error = error
        self.calls: list[tuple[list, int, object]] = []

    def fetch(self, locators, per_locator_limit, options):
        self.calls.append((list(locators), per_locator_limit, options))
        if self.error is not None:
            raise self.error
        return list(self.items)


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.deliveries = []
        self.fail = fail

    def deliver(self, record, entities):
        if self.fail:
            raise RuntimeError("smtp down")
        self.deliveries.append((record, list(entities)))


def make_item(index: int, *, channel_url: str | None = "https://www.youtube.com/@alpha", duration: int = 600) -> ContentItem:
    content_id = f"vid{index:08d}"
    return ContentItem(
        content_id=content_id,
        url=f"https://www.youtube.com/watch?v={content_id}",
        title=f"Video {index}",
        fragments=[
            TranscriptSegment(f"transcript {index}", 0.0, 2.0),
            TranscriptSegment("continues", 0.05, 1.0),
        ],
        channel_name="Alpha",
        channel_url=channel_url,
        duration_hint=duration,
    )


@pytest.fixture
def config(tmp_path, monkeypatch) -> AppConfig:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("APP_DATABASE_PATH", str(tmp_path / "tubedigest.db"))
    monkeypatch.setenv("APP_LOG_PATH", str(tmp_path / "logs" / "tubedigest.log"))
    (tmp_path / "logs").mkdir(exist_ok=True)
    return AppConfig(_env_file=None)


@pytest.fixture
def db(config):
    manager = DatabaseManager(config)
    yield manager
    manager.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 15, 10, 30, tzinfo=timezone.utc))


@pytest.fixture
def catalog(config) -> PlanCatalog:
    return PlanCatalog.from_config(config)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def build_pipeline(config, db, catalog, sleeps):
    """Factory wiring a BatchPipeline around the given fakes."""

    def _build(fetcher=None, provider=None, notifier=None, *, app_config=None, guest_clock=None):
        cfg = app_config or config
        oracle = AccountBillingOracle(catalog, db)
        return BatchPipeline(
            cfg,
            db,
            QuotaLedger(db, oracle),
            GuestLedger(db, cfg.effective_guest_limit, clock=guest_clock),
            oracle,
            fetcher or FakeFetcher(),
            provider or FakeProvider(),
            notifier or RecordingNotifier(),
            sleep=sleeps.append,
        )

    return _build
