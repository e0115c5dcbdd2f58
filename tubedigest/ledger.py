"""Capacity metering: reserve before the real cost is known, settle exactly once after.

Two ledgers share the same reserve/settle/release contract:

* :class:`QuotaLedger` meters accounts. Limits and periods come from the
  billing oracle; the counter lives on the account row.
* :class:`GuestLedger` meters unauthenticated callers by fingerprint with a fixed
  daily period, backed by an expiring ``guest_usage`` row.

Period rollover is lazy: every read or write first checks whether the last reset
predates the current period boundary and, if so, zeroes the counter before the
requested operation runs. Every counter mutation is a single conditional SQL
statement, so concurrent invocations for one account never lose updates.
"""

from __future__ import annotations

import calendar
import hashlib
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable

from .billing import BillingOracle, PlanInfo
from .db import DatabaseManager
from .errors import InsufficientCapacity, TicketAlreadySettled
from .logging_utils import log_event
from .models import Account, ReservationTicket

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _anniversary(year: int, month: int, anchor_day: int, like: datetime) -> datetime:
    day = min(anchor_day, calendar.monthrange(year, month)[1])
    return _start_of_day(like).replace(year=year, month=month, day=day)


def period_start(period: str, now: datetime, anchor_day: int | None = None) -> datetime:
    """Most recent period boundary at or before ``now``.

    ``daily`` resets at local midnight. ``monthly`` resets on the billing anchor
    day (clamped to the month's last day), or on the first of the month when the
    plan has no anchor. An anniversary later this month resolves to last month's.
    """
    if period == "daily":
        return _start_of_day(now)
    if period != "monthly":
        raise ValueError(f"Unsupported period: {period}")
    if anchor_day is None:
        return _start_of_day(now).replace(day=1)
    boundary = _anniversary(now.year, now.month, anchor_day, now)
    if boundary > now:
        year, month = (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)
        boundary = _anniversary(year, month, anchor_day, now)
    return boundary


def period_key(period: str, boundary: datetime) -> str:
    return f"{period}:{boundary.date().isoformat()}"


class _TicketBook:
    """Tracks open tickets so each one settles at most once."""

    def __init__(self) -> None:
        self._open: dict[str, ReservationTicket] = {}
        self._lock = threading.Lock()

    def _issue(self, holder: str, key: str, amount: int, now: datetime) -> ReservationTicket:
        ticket = ReservationTicket(
            ticket_id=uuid.uuid4().hex,
            holder=holder,
            period_key=key,
            amount=amount,
            created_at=now,
        )
        with self._lock:
            self._open[ticket.ticket_id] = ticket
        return ticket

    def _close(self, ticket: ReservationTicket) -> None:
        with self._lock:
            if self._open.pop(ticket.ticket_id, None) is None:
                raise TicketAlreadySettled(f"Ticket {ticket.ticket_id} was already settled or is unknown")

    def is_open(self, ticket: ReservationTicket) -> bool:
        with self._lock:
            return ticket.ticket_id in self._open

    @staticmethod
    def _refund_amount(ticket: ReservationTicket, actual_amount: int) -> int:
        if actual_amount < 0:
            raise ValueError("actual_amount must be >= 0")
        if actual_amount > ticket.amount:
            log_event(
                logger,
                logging.WARNING,
                "ledger.overshoot",
                holder=ticket.holder,
                reserved=ticket.amount,
                actual=actual_amount,
                unbilled=actual_amount - ticket.amount,
            )
        return max(0, ticket.amount - actual_amount)


class QuotaLedger(_TicketBook):
    """Per-account capacity ledger."""

    def __init__(self, db: DatabaseManager, oracle: BillingOracle, *, clock: Clock | None = None) -> None:
        super().__init__()
        self.db = db
        self.oracle = oracle
        self.clock = clock or local_now

    def _resolve(self, account: Account) -> tuple[Account, PlanInfo]:
        """Re-read the account row so the plan and the billing anchor come from one state."""
        fresh = self.db.get_account(account.id) or account
        return fresh, self.oracle.plan_of(fresh)

    def _rollover(self, account: Account, plan: PlanInfo) -> str:
        now = self.clock()
        boundary = period_start(plan.period, now, account.billing_anchor_day)
        if self.db.reset_usage_if_stale(account.id, boundary, now):
            log_event(logger, logging.INFO, "ledger.rollover", account=account.id, period=plan.period)
        return period_key(plan.period, boundary)

    def remaining_capacity(self, account: Account) -> int:
        account, plan = self._resolve(account)
        self._rollover(account, plan)
        return max(0, plan.limit - self.db.consumed_usage(account.id))

    def consumed(self, account: Account) -> int:
        account, plan = self._resolve(account)
        self._rollover(account, plan)
        return self.db.consumed_usage(account.id)

    def reserve(self, account: Account, amount: int) -> ReservationTicket:
        """Optimistically charge an upper-bound estimate and hand back a ticket."""
        if amount <= 0:
            raise ValueError("Reservation amount must be positive")
        account, plan = self._resolve(account)
        key = self._rollover(account, plan)
        if not self.db.try_reserve_usage(account.id, amount, plan.limit):
            remaining = max(0, plan.limit - self.db.consumed_usage(account.id))
            log_event(
                logger,
                logging.INFO,
                "ledger.insufficient",
                account=account.id,
                requested=amount,
                remaining=remaining,
            )
            raise InsufficientCapacity(account.owner_id, amount, remaining)
        ticket = self._issue(account.owner_id, key, amount, self.clock())
        log_event(logger, logging.INFO, "ledger.reserved", account=account.id, amount=amount, ticket=ticket.ticket_id)
        return ticket

    def settle(self, ticket: ReservationTicket, actual_amount: int) -> int:
        """Refund the unused part of a reservation; returns the refunded amount."""
        refund = self._refund_amount(ticket, actual_amount)
        self._close(ticket)
        account = self.db.get_account(int(ticket.holder))
        if account is None:
            logger.warning("Settling ticket %s for missing account %s", ticket.ticket_id, ticket.holder)
            return 0
        plan = self.oracle.plan_of(account)
        key = self._rollover(account, plan)
        if key != ticket.period_key:
            # the reservation's period was already wiped by a rollover
            log_event(logger, logging.INFO, "ledger.settle_stale_period", account=account.id, ticket=ticket.ticket_id)
            return 0
        if refund:
            self.db.refund_usage(account.id, refund)
        log_event(
            logger,
            logging.INFO,
            "ledger.settled",
            account=account.id,
            reserved=ticket.amount,
            actual=actual_amount,
            refunded=refund,
        )
        return refund

    def release(self, ticket: ReservationTicket) -> int:
        return self.settle(ticket, 0)


class GuestLedger(_TicketBook):
    """Fingerprint-keyed daily ledger for unauthenticated callers."""

    def __init__(
        self,
        db: DatabaseManager,
        limit: int,
        *,
        service: str = "youtube",
        clock: Clock | None = None,
    ) -> None:
        super().__init__()
        self.db = db
        self.limit = limit
        self.service = service
        self.clock = clock or local_now

    @staticmethod
    def fingerprint(ip: str, user_agent: str) -> str:
        return hashlib.md5(f"{ip}{user_agent}".encode("utf-8")).hexdigest()

    def _key(self, fingerprint: str) -> str:
        return f"guest_quota:{self.service}:{fingerprint}"

    def _window(self) -> tuple[datetime, datetime]:
        now = self.clock()
        return now, _start_of_day(now) + timedelta(days=1)

    def remaining_capacity(self, fingerprint: str) -> int:
        now, _ = self._window()
        return max(0, self.limit - self.db.guest_usage(self._key(fingerprint), now))

    def reserve(self, fingerprint: str, amount: int) -> ReservationTicket:
        if amount <= 0:
            raise ValueError("Reservation amount must be positive")
        now, expires_at = self._window()
        key = self._key(fingerprint)
        if not self.db.try_reserve_guest_usage(key, amount, self.limit, now, expires_at):
            remaining = max(0, self.limit - self.db.guest_usage(key, now))
            raise InsufficientCapacity(key, amount, remaining)
        ticket = self._issue(key, period_key("daily", _start_of_day(now)), amount, now)
        log_event(logger, logging.INFO, "ledger.guest_reserved", amount=amount, ticket=ticket.ticket_id)
        return ticket

    def settle(self, ticket: ReservationTicket, actual_amount: int) -> int:
        refund = self._refund_amount(ticket, actual_amount)
        self._close(ticket)
        now, _ = self._window()
        if period_key("daily", _start_of_day(now)) != ticket.period_key:
            return 0
        if refund:
            self.db.refund_guest_usage(ticket.holder, refund, now)
        log_event(logger, logging.INFO, "ledger.guest_settled", reserved=ticket.amount, refunded=refund)
        return refund

    def release(self, ticket: ReservationTicket) -> int:
        return self.settle(ticket, 0)
