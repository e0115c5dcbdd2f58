"""Entry point for the TubeDigest digest service."""

from __future__ import annotations

import logging
import os
import socket
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Final, Sequence

from tubedigest.cli import main as cli_main
from tubedigest.logging_utils import log_event

LOGGER = logging.getLogger(__name__)
_RUN_GUARD: Final[threading.Lock] = threading.Lock()
_IS_RUNNING = False


@dataclass(frozen=True, slots=True)
class RunContext:
    """Trace metadata for one process invocation."""

    trace_id: str
    instance_id: str
    wall_clock_ns: int

    @property
    def started_at_iso(self) -> str:
        seconds = self.wall_clock_ns / 1_000_000_000
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _build_run_context() -> RunContext:
    return RunContext(
        trace_id=os.getenv("TUBEDIGEST_TRACE_ID") or uuid.uuid4().hex,
        instance_id=os.getenv("TUBEDIGEST_INSTANCE_ID") or socket.gethostname(),
        wall_clock_ns=time.time_ns(),
    )


def _log_event(level: int, event: str, context: RunContext, **fields: Any) -> None:
    log_event(
        LOGGER,
        level,
        event,
        trace_id=context.trace_id,
        instance_id=context.instance_id,
        started_at=context.started_at_iso,
        **fields,
    )


def _acquire_run_guard() -> bool:
    """Refuse a second invocation inside the same process."""
    global _IS_RUNNING
    with _RUN_GUARD:
        if _IS_RUNNING:
            return False
        _IS_RUNNING = True
        return True


def _release_run_guard() -> None:
    global _IS_RUNNING
    with _RUN_GUARD:
        _IS_RUNNING = False


def main(argv: Sequence[str] | None = None) -> int:
    """Run a CLI command; with no arguments, start the scheduler."""
    args = list(sys.argv[1:] if argv is None else argv) or ["serve"]
    context = _build_run_context()
    if not _acquire_run_guard():
        _log_event(logging.INFO, "tubedigest.already_running", context, detail="duplicate_main_invocation")
        return 0

    start_ns = time.perf_counter_ns()
    try:
        _log_event(logging.INFO, "tubedigest.invoked", context, command=args[0])
        code = cli_main(args)
        runtime_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
        _log_event(logging.INFO, "tubedigest.completed", context, exit_code=code, duration_ms=round(runtime_ms, 2))
        return code
    except KeyboardInterrupt:
        _log_event(logging.WARNING, "tubedigest.interrupted", context, signal="SIGINT")
        return 130
    except Exception as exc:
        _log_event(
            logging.CRITICAL,
            "tubedigest.run_failed",
            context,
            error_type=type(exc).__name__,
            error_message=str(exc),
        )
        raise
    finally:
        _release_run_guard()


if __name__ == "__main__":
    raise SystemExit(main())
