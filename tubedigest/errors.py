"""Exception taxonomy shared by the ledger, providers and pipeline."""

from __future__ import annotations


class TubeDigestError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(TubeDigestError, RuntimeError):
    """Raised when configuration cannot be loaded safely."""


class InvalidRequest(TubeDigestError, ValueError):
    """Raised when an invocation's inputs are rejected before any quota is touched."""


class InsufficientCapacity(TubeDigestError):
    """Raised when a reservation would exceed the holder's remaining capacity."""

    def __init__(self, holder: str, requested: int, remaining: int) -> None:
        super().__init__(
            f"Insufficient capacity for {holder}: requested {requested}, remaining {remaining}"
        )
        self.holder = holder
        self.requested = requested
        self.remaining = remaining


class TicketAlreadySettled(TubeDigestError):
    """Raised when a reservation ticket is settled or released a second time."""


class FetchUnavailable(TubeDigestError):
    """Raised when the external source fetch fails outright."""


class PersistenceConflict(TubeDigestError):
    """Raised when a natural-key upsert cannot be resolved."""


class EnrichmentFailed(TubeDigestError):
    """Per-item failure recorded when a summary could not be produced."""

    def __init__(self, item_key: str, reason: str) -> None:
        super().__init__(f"Enrichment failed for {item_key}: {reason}")
        self.item_key = item_key
        self.reason = reason


class ProviderError(TubeDigestError):
    """Base class for enrichment provider failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """Connection failure, rate limit or server error; safe to retry."""


class ProviderRejectedError(ProviderError):
    """The provider refused the request (4xx); retrying will not help."""
