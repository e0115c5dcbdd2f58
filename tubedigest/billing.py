"""Plan catalogue and the billing oracle consulted by the quota ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Protocol

from .config import AppConfig, PeriodName
from .db import DatabaseManager
from .models import Account, PlanTier

logger = logging.getLogger(__name__)

PAID_TIERS: frozenset[str] = frozenset({"plus", "pro"})


@dataclass(frozen=True, slots=True)
class PlanInfo:
    tier: PlanTier
    period: PeriodName
    limit: int
    retention_days: int

    @property
    def is_paid(self) -> bool:
        return self.tier in PAID_TIERS


class BillingOracle(Protocol):
    def plan_of(self, account: Account) -> PlanInfo:
        """Return the active plan for ``account``."""
        ...


class PlanCatalog:
    """Tier name to plan mapping built from configuration."""

    def __init__(self, plans: Mapping[str, PlanInfo]) -> None:
        if "free" not in plans:
            raise ValueError("Plan catalogue must define a free tier")
        self._plans = dict(plans)

    @classmethod
    def from_config(cls, config: AppConfig) -> "PlanCatalog":
        return cls(
            {
                "free": PlanInfo("free", config.plan_free_period, config.plan_free_limit, config.retention_free_days),
                "plus": PlanInfo("plus", config.plan_plus_period, config.plan_plus_limit, config.retention_plus_days),
                "pro": PlanInfo("pro", config.plan_pro_period, config.plan_pro_limit, config.retention_pro_days),
            }
        )

    def get(self, tier: str) -> PlanInfo:
        plan = self._plans.get(tier)
        if plan is None:
            # unknown paid price ids fall back to the lower paid tier
            logger.warning("Unknown plan tier %r; falling back to plus", tier)
            return self._plans.get("plus", self._plans["free"])
        return plan

    @property
    def free(self) -> PlanInfo:
        return self._plans["free"]


class AccountBillingOracle:
    """Resolves plans from the tier recorded on the account row."""

    def __init__(self, catalog: PlanCatalog, db: DatabaseManager | None = None) -> None:
        self.catalog = catalog
        self.db = db

    def plan_of(self, account: Account) -> PlanInfo:
        tier = account.tier
        if self.db is not None:
            fresh = self.db.get_account(account.id)
            if fresh is not None:
                tier = fresh.tier
        return self.catalog.get(tier)
