"""Command line entry points for running TubeDigest jobs by hand."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from .billing import AccountBillingOracle, PlanCatalog
from .config import load_config
from .db import DatabaseManager
from .errors import TubeDigestError
from .jobs import dispatch_custom_digests, dispatch_daily_digests, prune_history, resolve_account
from .ledger import QuotaLedger
from .logging_utils import configure_logging
from .models import Account, DetailLevel
from .pipeline import PipelineOutcome

logger = logging.getLogger(__name__)


def _outcome_payload(outcome: PipelineOutcome) -> dict[str, Any]:
    return {
        "run_token": outcome.run_token,
        "source": outcome.source,
        "stage": outcome.stage.value,
        "status": outcome.status.value,
        "error": outcome.error,
        "reserved": outcome.reserved,
        "refunded": outcome.refunded,
        "items": [
            {"content_id": entity.content_id, "title": entity.title, "state": entity.summary_state.value}
            for entity in outcome.entities
        ],
        "cached": [entity.content_id for entity in outcome.cached],
        "record": None
        if outcome.record is None
        else {
            "item_count": outcome.record.item_count,
            "total_duration": outcome.record.total_duration,
            "time_saved_seconds": outcome.record.time_saved_seconds,
        },
    }


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _require_account(db: DatabaseManager, identifier: str) -> Account:
    account = resolve_account(db, identifier)
    if account is None:
        raise TubeDigestError(f"Unknown account: {identifier}")
    return account


def _read_urls(values: Sequence[str]) -> list[str]:
    urls: list[str] = []
    for value in values:
        if value == "-":
            urls.extend(line.strip() for line in sys.stdin if line.strip())
        else:
            urls.append(value)
    return urls


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tubedigest", description="Metered YouTube transcript digests")
    parser.add_argument("--env-file", type=Path, default=None, help="Optional .env file to load")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the recurring job scheduler until interrupted")

    digest = sub.add_parser("digest", help="Dispatch scheduled digests")
    digest.add_argument("--force", action="store_true", help="Ignore the preferred hour")
    digest.add_argument("--user", help="Only this account (id or email)")
    digest.add_argument("--limit", type=int, help="Total max videos across all channels")
    digest.add_argument("--sort", help="Sort order passed to the fetcher")
    digest.add_argument("--days-back", type=int, default=1)

    custom = sub.add_parser("custom-digest", help="Dispatch custom digests")
    custom.add_argument("--force", action="store_true", help="Run every active digest now")
    custom.add_argument("--digest", type=int, help="Only this digest id")

    analyze = sub.add_parser("analyze", help="Analyse channels for a paid account")
    analyze.add_argument("--account", required=True)
    analyze.add_argument("--max-videos", type=int, default=10)
    analyze.add_argument("--date-range", default="any", choices=["any", "today", "week", "month", "year"])
    analyze.add_argument("--sort", default="date")
    analyze.add_argument("urls", nargs="+", help="Channel URLs, or - to read them from stdin")

    fetch = sub.add_parser("fetch", help="Summarise individual video URLs")
    owner = fetch.add_mutually_exclusive_group(required=True)
    owner.add_argument("--account")
    owner.add_argument("--guest-ip")
    fetch.add_argument("--guest-agent", default="tubedigest-cli")
    fetch.add_argument("urls", nargs="+", help="Video URLs, or - to read them from stdin")

    summarize = sub.add_parser("summarize", help="Regenerate the summary of one stored video")
    summarizer = summarize.add_mutually_exclusive_group(required=True)
    summarizer.add_argument("--account")
    summarizer.add_argument("--guest-ip")
    summarize.add_argument("--guest-agent", default="tubedigest-cli")
    summarize.add_argument("--detail", default="detailed", choices=[level.value for level in DetailLevel])
    summarize.add_argument("entity_id", type=int)

    sub.add_parser("prune", help="Apply history retention")

    remaining = sub.add_parser("remaining", help="Show remaining capacity for an account")
    remaining.add_argument("--account", required=True)
    return parser


def run(args: argparse.Namespace) -> int:
    config = load_config(args.env_file)
    configure_logging(config)

    if args.command in ("prune", "remaining"):
        db = DatabaseManager(config)
        catalog = PlanCatalog.from_config(config)
        if args.command == "prune":
            report = prune_history(db, catalog)
            _emit({"guests": report.guests, "expired": report.expired, "by_plan": report.by_plan})
            return 0
        account = _require_account(db, args.account)
        oracle = AccountBillingOracle(catalog, db)
        plan = oracle.plan_of(account)
        ledger = QuotaLedger(db, oracle)
        _emit(
            {
                "account": account.id,
                "tier": plan.tier,
                "period": plan.period,
                "limit": plan.limit,
                "remaining": ledger.remaining_capacity(account),
            }
        )
        return 0

    # imported lazily so ``prune`` and ``remaining`` work without provider credentials
    from .app import TubeDigestApp

    app = TubeDigestApp(config, configure_logs=False)
    if args.command == "serve":
        app.start()
        return 0
    if args.command == "digest":
        outcomes = dispatch_daily_digests(
            app.pipeline,
            app.db,
            force=args.force,
            user=args.user,
            limit=args.limit,
            sort=args.sort,
            days_back=args.days_back,
        )
        _emit([_outcome_payload(outcome) for outcome in outcomes])
        return 0
    if args.command == "custom-digest":
        outcomes = dispatch_custom_digests(app.pipeline, app.db, force=args.force, digest_id=args.digest)
        _emit([_outcome_payload(outcome) for outcome in outcomes])
        return 0
    if args.command == "analyze":
        account = _require_account(app.db, args.account)
        outcome = app.pipeline.run_channel_analysis(
            account,
            _read_urls(args.urls),
            max_videos=args.max_videos,
            date_range=args.date_range,
            sort=args.sort,
        )
        _emit(_outcome_payload(outcome))
        return 0 if outcome.ok else 1
    if args.command == "fetch":
        urls = _read_urls(args.urls)
        if args.account:
            outcome = app.pipeline.run_url_batch(urls, account=_require_account(app.db, args.account))
        else:
            outcome = app.pipeline.run_url_batch(urls, guest=(args.guest_ip, args.guest_agent))
        _emit(_outcome_payload(outcome))
        return 0 if outcome.ok else 1
    if args.command == "summarize":
        detail = DetailLevel(args.detail)
        if args.account:
            account = _require_account(app.db, args.account)
            outcome = app.pipeline.summarize_entity(args.entity_id, detail, account=account)
        else:
            outcome = app.pipeline.summarize_entity(args.entity_id, detail, guest=(args.guest_ip, args.guest_agent))
        payload = _outcome_payload(outcome)
        payload["summary"] = outcome.entities[0].summary_for(detail) if outcome.entities else None
        _emit(payload)
        return 0 if outcome.ok else 1
    raise TubeDigestError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return run(args)
    except TubeDigestError as exc:
        logger.error("%s", exc)
        sys.stderr.write(f"error: {exc}\n")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
