"""Chunked scatter-gather summarisation with per-item retry and failure isolation."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import AppConfig
from .errors import EnrichmentFailed, ProviderTransientError
from .logging_utils import log_event
from .models import DetailLevel
from .providers import EnrichmentProvider

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[Mapping[str, "EnrichmentResult"]], None]


@dataclass(frozen=True, slots=True)
class EnrichmentRequest:
    key: str
    text: str


@dataclass(frozen=True, slots=True)
class EnrichmentResult:
    """Either a summary or the reason none could be produced."""

    key: str
    summary: str | None = None
    error: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.summary is not None


def chunked(items: Sequence[EnrichmentRequest], size: int) -> list[Sequence[EnrichmentRequest]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [items[i : i + size] for i in range(0, len(items), size)]


class EnrichmentScheduler:
    """Runs summarisation requests chunk by chunk against one provider.

    Every request in a chunk is issued concurrently; the next chunk starts only
    after all of them have settled and the cooldown has elapsed. Transient
    provider errors are retried with exponential backoff, rejections are not.
    """

    def __init__(
        self,
        provider: EnrichmentProvider,
        *,
        chunk_size: int = 10,
        cooldown_seconds: float = 1.0,
        retry_attempts: int = 3,
        backoff_seconds: float = 2.0,
        backoff_max_seconds: float = 20.0,
        detail_level: DetailLevel = DetailLevel.DETAILED,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.provider = provider
        self.chunk_size = chunk_size
        self.cooldown_seconds = cooldown_seconds
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.detail_level = detail_level
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        provider: EnrichmentProvider,
        config: AppConfig,
        *,
        chunk_size: int,
        detail_level: DetailLevel = DetailLevel.DETAILED,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "EnrichmentScheduler":
        return cls(
            provider,
            chunk_size=chunk_size,
            cooldown_seconds=config.chunk_cooldown_seconds,
            retry_attempts=config.retry_attempts,
            backoff_seconds=config.retry_backoff_seconds,
            backoff_max_seconds=config.retry_backoff_max_seconds,
            detail_level=detail_level,
            sleep=sleep,
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception_type(ProviderTransientError),
            sleep=self._sleep,
            reraise=True,
        )

    def _enrich_one(self, request: EnrichmentRequest, instructions: str | None) -> EnrichmentResult:
        if not request.text.strip():
            return EnrichmentResult(key=request.key, error="No transcript text available")
        retrying = self._retrying()
        try:
            summary = retrying(self.provider.summarize, request.text, self.detail_level, instructions)
        except Exception as exc:  # noqa: BLE001 - one item's failure never aborts its siblings
            failure = EnrichmentFailed(request.key, str(exc) or type(exc).__name__)
            attempts = retrying.statistics.get("attempt_number", 1)
            logger.warning("%s after %d attempt(s)", failure, attempts)
            return EnrichmentResult(key=request.key, error=failure.reason, attempts=attempts)
        return EnrichmentResult(
            key=request.key,
            summary=summary,
            attempts=retrying.statistics.get("attempt_number", 1),
        )

    def run(
        self,
        requests: Sequence[EnrichmentRequest],
        instructions: str | None = None,
        *,
        on_chunk_settled: ChunkCallback | None = None,
    ) -> dict[str, EnrichmentResult]:
        """Summarise ``requests``; returns one result per request key.

        ``on_chunk_settled`` is invoked on the calling thread with each chunk's
        results once the chunk barrier has been passed.
        """
        results: dict[str, EnrichmentResult] = {}
        chunks = chunked(list(requests), self.chunk_size)
        for index, chunk in enumerate(chunks):
            chunk_results: dict[str, EnrichmentResult] = {}
            with ThreadPoolExecutor(max_workers=len(chunk), thread_name_prefix="enrich") as pool:
                futures = {pool.submit(self._enrich_one, request, instructions): request.key for request in chunk}
                wait(futures)
            for future, key in futures.items():
                chunk_results[key] = future.result()
            results.update(chunk_results)
            log_event(
                logger,
                logging.INFO,
                "enrichment.chunk_settled",
                provider=self.provider.name,
                chunk=index + 1,
                chunks=len(chunks),
                succeeded=sum(1 for result in chunk_results.values() if result.ok),
                failed=sum(1 for result in chunk_results.values() if not result.ok),
            )
            if on_chunk_settled is not None:
                on_chunk_settled(chunk_results)
            if index < len(chunks) - 1 and self.cooldown_seconds > 0:
                self._sleep(self.cooldown_seconds)
        return results
