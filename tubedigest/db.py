"""SQLite persistence for accounts, ledgers, entities and run records."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

from .config import AppConfig
from .errors import PersistenceConflict
from .models import (
    GUEST_OWNER_PREFIX,
    Account,
    Channel,
    CustomDigest,
    DetailLevel,
    DigestSchedule,
    Entity,
    RunRecord,
    SummaryState,
    TranscriptSegment,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    level TEXT NOT NULL,
    component TEXT NOT NULL,
    message TEXT NOT NULL,
    payload TEXT
);

CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    tier TEXT NOT NULL DEFAULT 'free',
    consumed INTEGER NOT NULL DEFAULT 0 CHECK (consumed >= 0),
    last_reset TEXT,
    billing_anchor_day INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS guest_usage (
    key TEXT PRIMARY KEY,
    consumed INTEGER NOT NULL DEFAULT 0 CHECK (consumed >= 0),
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    url TEXT NOT NULL,
    name TEXT NOT NULL,
    external_id TEXT,
    thumbnail_url TEXT,
    is_paused INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_channels_owner ON channels(owner_id);

CREATE TABLE IF NOT EXISTS digest_schedules (
    owner_id TEXT PRIMARY KEY,
    preferred_time TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS custom_digests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    custom_prompt TEXT,
    frequency TEXT NOT NULL DEFAULT 'daily',
    scheduled_at TEXT NOT NULL DEFAULT '08:00',
    day_of_week TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS digest_channels (
    digest_id INTEGER NOT NULL REFERENCES custom_digests(id) ON DELETE CASCADE,
    channel_id INTEGER NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
    PRIMARY KEY (digest_id, channel_id)
);

CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    content_id TEXT NOT NULL,
    batch_key TEXT NOT NULL DEFAULT '',
    run_token TEXT NOT NULL,
    source TEXT NOT NULL,
    title TEXT NOT NULL,
    thumbnail_url TEXT,
    channel_id INTEGER,
    channel_title TEXT,
    duration INTEGER,
    transcript TEXT,
    summary TEXT,
    summary_short TEXT,
    summary_state TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (owner_id, content_id, batch_key)
);
CREATE INDEX IF NOT EXISTS idx_entities_run ON entities(run_token);
CREATE INDEX IF NOT EXISTS idx_entities_created ON entities(created_at);

CREATE TABLE IF NOT EXISTS run_records (
    run_token TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    source TEXT NOT NULL,
    digest_id INTEGER,
    item_count INTEGER NOT NULL,
    total_duration INTEGER NOT NULL DEFAULT 0,
    total_words INTEGER NOT NULL DEFAULT 0,
    read_time_seconds INTEGER NOT NULL DEFAULT 0,
    time_saved_seconds INTEGER NOT NULL DEFAULT 0,
    artifact_statuses TEXT,
    completed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_run_records_owner ON run_records(owner_id);

CREATE TABLE IF NOT EXISTS job_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    duration_ms REAL NOT NULL,
    error TEXT
);
"""


def to_storage_time(value: datetime) -> str:
    """Serialise to a fixed-width UTC ISO string so text comparison orders correctly."""
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_storage_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _utcnow() -> str:
    return to_storage_time(datetime.now(timezone.utc))


class DatabaseManager:
    """Thread-safe SQLite manager for TubeDigest."""

    def __init__(self, config: AppConfig | None = None, *, path: Path | str | None = None) -> None:
        if path is None and config is None:
            raise ValueError("DatabaseManager needs a config or an explicit path")
        self.path = Path(path) if path is not None else Path(config.database_path)
        self._local = threading.local()
        self._init_schema_once()

    # ------------------------------------------------------------------ #
    # Connection handling
    # ------------------------------------------------------------------ #

    def _get_conn(self) -> sqlite3.Connection:
        """Return a per-thread connection to the database."""
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
            logger.debug("Opened thread-local DB connection at %s", self.path)
        return self._local.conn

    def _init_schema_once(self) -> None:
        """Ensure the schema exists once at startup."""
        conn = sqlite3.connect(self.path)
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA)
        conn.commit()
        conn.close()
        logger.debug("Database schema ensured at %s", self.path)

    # ------------------------------------------------------------------ #
    # Context managers
    # ------------------------------------------------------------------ #

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        """Provide a cursor whose statements each commit on their own."""
        conn = self._get_conn()
        cur = conn.cursor()
        try:
            yield cur
        except Exception:
            logger.exception("Database operation failed.")
            raise
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Provide a write-locked transactional cursor (``BEGIN IMMEDIATE``)."""
        conn = self._get_conn()
        cur = conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            yield cur
            cur.execute("COMMIT")
        except Exception:
            cur.execute("ROLLBACK")
            logger.exception("Database transaction failed; rolled back.")
            raise
        finally:
            cur.close()

    # ------------------------------------------------------------------ #
    # Accounts and usage counters
    # ------------------------------------------------------------------ #

    def create_account(
        self,
        email: str,
        *,
        tier: str = "free",
        billing_anchor_day: int | None = None,
        consumed: int = 0,
        last_reset: datetime | None = None,
    ) -> Account:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO accounts(email, tier, consumed, last_reset, billing_anchor_day, created_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    email,
                    tier,
                    consumed,
                    to_storage_time(last_reset) if last_reset else None,
                    billing_anchor_day,
                    _utcnow(),
                ),
            )
            account_id = cur.lastrowid
        account = self.get_account(account_id)
        assert account is not None
        return account

    def get_account(self, account_id: int) -> Account | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
            row = cur.fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Account | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM accounts WHERE email = ?", (email,))
            row = cur.fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self) -> list[Account]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM accounts ORDER BY id")
            rows = cur.fetchall()
        return [self._row_to_account(row) for row in rows]

    def set_account_plan(self, account_id: int, tier: str, billing_anchor_day: int | None) -> None:
        with self.cursor() as cur:
            cur.execute(
                "UPDATE accounts SET tier = ?, billing_anchor_day = ? WHERE id = ?",
                (tier, billing_anchor_day, account_id),
            )

    def reset_usage_if_stale(self, account_id: int, boundary: datetime, now: datetime) -> bool:
        """Zero the counter when the last reset predates ``boundary``."""
        with self.cursor() as cur:
            cur.execute(
                """
                UPDATE accounts
                SET consumed = 0, last_reset = ?
                WHERE id = ? AND (last_reset IS NULL OR last_reset < ?)
                """,
                (to_storage_time(now), account_id, to_storage_time(boundary)),
            )
            return cur.rowcount > 0

    def try_reserve_usage(self, account_id: int, amount: int, limit: int) -> bool:
        """Atomically add ``amount`` unless that would pass ``limit``."""
        with self.cursor() as cur:
            cur.execute(
                "UPDATE accounts SET consumed = consumed + ? WHERE id = ? AND consumed + ? <= ?",
                (amount, account_id, amount, limit),
            )
            return cur.rowcount > 0

    def refund_usage(self, account_id: int, amount: int) -> None:
        """Atomically subtract ``amount``, flooring the counter at zero."""
        with self.cursor() as cur:
            cur.execute(
                "UPDATE accounts SET consumed = MAX(0, consumed - ?) WHERE id = ?",
                (amount, account_id),
            )

    def consumed_usage(self, account_id: int) -> int:
        with self.cursor() as cur:
            cur.execute("SELECT consumed FROM accounts WHERE id = ?", (account_id,))
            row = cur.fetchone()
        return int(row["consumed"]) if row else 0

    # ------------------------------------------------------------------ #
    # Guest usage (TTL keyed counters)
    # ------------------------------------------------------------------ #

    def guest_usage(self, key: str, now: datetime) -> int:
        with self.cursor() as cur:
            cur.execute(
                "SELECT consumed FROM guest_usage WHERE key = ? AND expires_at > ?",
                (key, to_storage_time(now)),
            )
            row = cur.fetchone()
        return int(row["consumed"]) if row else 0

    def try_reserve_guest_usage(
        self, key: str, amount: int, limit: int, now: datetime, expires_at: datetime
    ) -> bool:
        with self.transaction() as cur:
            cur.execute(
                "DELETE FROM guest_usage WHERE key = ? AND expires_at <= ?",
                (key, to_storage_time(now)),
            )
            cur.execute(
                "INSERT OR IGNORE INTO guest_usage(key, consumed, expires_at) VALUES(?, 0, ?)",
                (key, to_storage_time(expires_at)),
            )
            cur.execute(
                "UPDATE guest_usage SET consumed = consumed + ? WHERE key = ? AND consumed + ? <= ?",
                (amount, key, amount, limit),
            )
            return cur.rowcount > 0

    def refund_guest_usage(self, key: str, amount: int, now: datetime) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                UPDATE guest_usage SET consumed = MAX(0, consumed - ?)
                WHERE key = ? AND expires_at > ?
                """,
                (amount, key, to_storage_time(now)),
            )

    def purge_expired_guest_usage(self, now: datetime) -> int:
        with self.cursor() as cur:
            cur.execute("DELETE FROM guest_usage WHERE expires_at <= ?", (to_storage_time(now),))
            return cur.rowcount

    # ------------------------------------------------------------------ #
    # Channels and digest definitions
    # ------------------------------------------------------------------ #

    def add_channel(
        self,
        owner_id: str,
        url: str,
        name: str,
        *,
        external_id: str | None = None,
        thumbnail_url: str | None = None,
        is_paused: bool = False,
    ) -> Channel:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO channels(owner_id, url, name, external_id, thumbnail_url, is_paused)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (owner_id, url, name, external_id, thumbnail_url, int(is_paused)),
            )
            channel_id = cur.lastrowid
        return Channel(
            id=channel_id,
            owner_id=owner_id,
            url=url,
            name=name,
            external_id=external_id,
            thumbnail_url=thumbnail_url,
            is_paused=is_paused,
        )

    def list_channels(self, owner_id: str, *, include_paused: bool = True) -> list[Channel]:
        query = "SELECT * FROM channels WHERE owner_id = ?"
        if not include_paused:
            query += " AND is_paused = 0"
        with self.cursor() as cur:
            cur.execute(query + " ORDER BY id", (owner_id,))
            rows = cur.fetchall()
        return [self._row_to_channel(row) for row in rows]

    def set_digest_schedule(self, owner_id: str, preferred_time: str, *, is_active: bool = True) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO digest_schedules(owner_id, preferred_time, is_active) VALUES(?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    preferred_time = excluded.preferred_time,
                    is_active = excluded.is_active
                """,
                (owner_id, preferred_time, int(is_active)),
            )

    def active_digest_schedules(self, hour: str | None = None) -> list[DigestSchedule]:
        """Active schedules, optionally restricted to a two-digit preferred hour."""
        query = "SELECT * FROM digest_schedules WHERE is_active = 1"
        params: tuple[Any, ...] = ()
        if hour is not None:
            query += " AND preferred_time LIKE ?"
            params = (f"{hour}:%",)
        with self.cursor() as cur:
            cur.execute(query + " ORDER BY owner_id", params)
            rows = cur.fetchall()
        return [
            DigestSchedule(owner_id=row["owner_id"], preferred_time=row["preferred_time"], is_active=bool(row["is_active"]))
            for row in rows
        ]

    def create_custom_digest(
        self,
        owner_id: str,
        name: str,
        channel_ids: Sequence[int],
        *,
        custom_prompt: str | None = None,
        frequency: str = "daily",
        scheduled_at: str = "08:00",
        day_of_week: str | None = None,
        is_active: bool = True,
    ) -> CustomDigest:
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO custom_digests(owner_id, name, custom_prompt, frequency, scheduled_at,
                                           day_of_week, is_active)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                (owner_id, name, custom_prompt, frequency, scheduled_at, day_of_week, int(is_active)),
            )
            digest_id = cur.lastrowid
            cur.executemany(
                "INSERT INTO digest_channels(digest_id, channel_id) VALUES(?, ?)",
                [(digest_id, channel_id) for channel_id in channel_ids],
            )
        digest = self.get_custom_digest(digest_id)
        assert digest is not None
        return digest

    def get_custom_digest(self, digest_id: int) -> CustomDigest | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM custom_digests WHERE id = ?", (digest_id,))
            row = cur.fetchone()
            if row is None:
                return None
            cur.execute(
                "SELECT channel_id FROM digest_channels WHERE digest_id = ? ORDER BY channel_id",
                (digest_id,),
            )
            channel_ids = tuple(int(r["channel_id"]) for r in cur.fetchall())
        return self._row_to_custom_digest(row, channel_ids)

    def due_custom_digests(self, scheduled_at: str | None, day_of_week: str | None) -> list[CustomDigest]:
        """Active digests due at ``scheduled_at`` on ``day_of_week``; all active when both are None."""
        query = "SELECT id FROM custom_digests WHERE is_active = 1"
        params: tuple[Any, ...] = ()
        if scheduled_at is not None:
            query += (
                " AND scheduled_at = ?"
                " AND (frequency = 'daily' OR (frequency = 'weekly' AND day_of_week = ?))"
            )
            params = (scheduled_at, day_of_week)
        with self.cursor() as cur:
            cur.execute(query + " ORDER BY id", params)
            ids = [int(row["id"]) for row in cur.fetchall()]
        digests = [self.get_custom_digest(digest_id) for digest_id in ids]
        return [digest for digest in digests if digest is not None]

    def channels_by_ids(self, channel_ids: Iterable[int]) -> list[Channel]:
        ids = list(channel_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self.cursor() as cur:
            cur.execute(f"SELECT * FROM channels WHERE id IN ({placeholders}) ORDER BY id", ids)
            rows = cur.fetchall()
        return [self._row_to_channel(row) for row in rows]

    # ------------------------------------------------------------------ #
    # Entities
    # ------------------------------------------------------------------ #

    def upsert_entity(
        self,
        *,
        owner_id: str,
        content_id: str,
        batch_key: str,
        run_token: str,
        source: str,
        title: str,
        thumbnail_url: str | None,
        channel_id: int | None,
        channel_title: str | None,
        duration: int | None,
        transcript: Sequence[TranscriptSegment],
    ) -> Entity:
        """Insert or update by natural key; metadata is last-writer-wins, summaries survive."""
        now = _utcnow()
        payload = json.dumps([segment.as_dict() for segment in transcript])
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO entities(owner_id, content_id, batch_key, run_token, source, title,
                                     thumbnail_url, channel_id, channel_title, duration, transcript,
                                     summary_state, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, content_id, batch_key) DO UPDATE SET
                    run_token = excluded.run_token,
                    source = excluded.source,
                    title = excluded.title,
                    thumbnail_url = excluded.thumbnail_url,
                    channel_id = COALESCE(excluded.channel_id, entities.channel_id),
                    channel_title = excluded.channel_title,
                    duration = excluded.duration,
                    transcript = excluded.transcript,
                    updated_at = excluded.updated_at
                """,
                (
                    owner_id,
                    content_id,
                    batch_key,
                    run_token,
                    source,
                    title,
                    thumbnail_url,
                    channel_id,
                    channel_title,
                    duration,
                    payload,
                    SummaryState.PENDING.value,
                    now,
                    now,
                ),
            )
            cur.execute(
                "SELECT * FROM entities WHERE owner_id = ? AND content_id = ? AND batch_key = ?",
                (owner_id, content_id, batch_key),
            )
            row = cur.fetchone()
        if row is None:  # pragma: no cover - upsert always leaves a row behind
            raise PersistenceConflict(f"Entity {owner_id}/{content_id}/{batch_key} vanished after upsert")
        return self._row_to_entity(row)

    def mark_summary_state(
        self, entity_id: int, state: SummaryState, *, summary: str | None = None
    ) -> None:
        with self.cursor() as cur:
            if summary is not None:
                cur.execute(
                    "UPDATE entities SET summary_state = ?, summary = ?, updated_at = ? WHERE id = ?",
                    (state.value, summary, _utcnow(), entity_id),
                )
            else:
                cur.execute(
                    "UPDATE entities SET summary_state = ?, updated_at = ? WHERE id = ?",
                    (state.value, _utcnow(), entity_id),
                )

    def store_summary(self, entity_id: int, detail_level: DetailLevel, summary: str) -> None:
        """Save a regenerated summary; a short one leaves the batch summary and its state alone."""
        with self.cursor() as cur:
            if detail_level is DetailLevel.SHORT:
                cur.execute(
                    "UPDATE entities SET summary_short = ?, updated_at = ? WHERE id = ?",
                    (summary, _utcnow(), entity_id),
                )
            else:
                cur.execute(
                    "UPDATE entities SET summary = ?, summary_state = ?, updated_at = ? WHERE id = ?",
                    (summary, SummaryState.COMPLETED.value, _utcnow(), entity_id),
                )

    def get_entity(self, entity_id: int) -> Entity | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM entities WHERE id = ?", (entity_id,))
            row = cur.fetchone()
        return self._row_to_entity(row) if row else None

    def entities_for_run(self, run_token: str) -> list[Entity]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM entities WHERE run_token = ? ORDER BY id", (run_token,))
            rows = cur.fetchall()
        return [self._row_to_entity(row) for row in rows]

    def entities_for_owner(self, owner_id: str) -> list[Entity]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM entities WHERE owner_id = ? ORDER BY id", (owner_id,))
            rows = cur.fetchall()
        return [self._row_to_entity(row) for row in rows]

    def find_owned_content(self, owner_id: str, content_ids: Sequence[str]) -> list[Entity]:
        if not content_ids:
            return []
        placeholders = ",".join("?" for _ in content_ids)
        with self.cursor() as cur:
            cur.execute(
                f"SELECT * FROM entities WHERE owner_id = ? AND content_id IN ({placeholders}) ORDER BY id",
                (owner_id, *content_ids),
            )
            rows = cur.fetchall()
        return [self._row_to_entity(row) for row in rows]

    def set_entity_created_at(self, entity_id: int, created_at: datetime) -> None:
        with self.cursor() as cur:
            cur.execute(
                "UPDATE entities SET created_at = ? WHERE id = ?",
                (to_storage_time(created_at), entity_id),
            )

    def prune_guest_entities(self, created_before: datetime) -> int:
        with self.cursor() as cur:
            cur.execute(
                "DELETE FROM entities WHERE owner_id LIKE ? AND created_at < ?",
                (f"{GUEST_OWNER_PREFIX}%", to_storage_time(created_before)),
            )
            return cur.rowcount

    def prune_entities(self, created_before: datetime, *, owner_id: str | None = None) -> int:
        with self.cursor() as cur:
            if owner_id is None:
                cur.execute(
                    "DELETE FROM entities WHERE created_at < ?",
                    (to_storage_time(created_before),),
                )
            else:
                cur.execute(
                    "DELETE FROM entities WHERE owner_id = ? AND created_at < ?",
                    (owner_id, to_storage_time(created_before)),
                )
            return cur.rowcount

    # ------------------------------------------------------------------ #
    # Run records
    # ------------------------------------------------------------------ #

    def insert_run_record(self, record: RunRecord) -> None:
        completed_at = record.completed_at or datetime.now(timezone.utc)
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO run_records(run_token, owner_id, source, digest_id, item_count,
                                        total_duration, total_words, read_time_seconds,
                                        time_saved_seconds, artifact_statuses, completed_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.run_token,
                    record.owner_id,
                    record.source,
                    record.digest_id,
                    record.item_count,
                    record.total_duration,
                    record.total_words,
                    record.read_time_seconds,
                    record.time_saved_seconds,
                    json.dumps(record.artifact_statuses),
                    to_storage_time(completed_at),
                ),
            )

    def get_run_record(self, run_token: str) -> RunRecord | None:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM run_records WHERE run_token = ?", (run_token,))
            row = cur.fetchone()
        if row is None:
            return None
        return RunRecord(
            owner_id=row["owner_id"],
            run_token=row["run_token"],
            source=row["source"],
            item_count=row["item_count"],
            total_duration=row["total_duration"],
            total_words=row["total_words"],
            read_time_seconds=row["read_time_seconds"],
            time_saved_seconds=row["time_saved_seconds"],
            artifact_statuses=json.loads(row["artifact_statuses"] or "{}"),
            digest_id=row["digest_id"],
            completed_at=from_storage_time(row["completed_at"]),
        )

    def count_run_records(self, owner_id: str) -> int:
        with self.cursor() as cur:
            cur.execute("SELECT COUNT(*) AS n FROM run_records WHERE owner_id = ?", (owner_id,))
            return int(cur.fetchone()["n"])

    # ------------------------------------------------------------------ #
    # Operational log
    # ------------------------------------------------------------------ #

    def record_job_run(
        self,
        *,
        job_id: str,
        status: str,
        started_at: datetime,
        duration_ms: float,
        error: str | None = None,
    ) -> None:
        with self.cursor() as cur:
            cur.execute(
                "INSERT INTO job_runs(job_id, status, started_at, duration_ms, error) VALUES(?, ?, ?, ?, ?)",
                (job_id, status, to_storage_time(started_at), duration_ms, error),
            )

    def job_runs(self, job_id: str) -> list[dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM job_runs WHERE job_id = ? ORDER BY id", (job_id,))
            return [dict(row) for row in cur.fetchall()]

    def log_event(self, level: str, component: str, message: str, payload: Any | None = None) -> None:
        with self.cursor() as cur:
            cur.execute(
                "INSERT INTO logs(timestamp, level, component, message, payload) "
                "VALUES(datetime('now'), ?, ?, ?, ?)",
                (
                    str(level),
                    str(component),
                    str(message),
                    self._normalize_payload(payload),
                ),
            )

    def close(self) -> None:
        conn: Optional[sqlite3.Connection] = getattr(self._local, "conn", None)
        if conn:
            conn.close()
            del self._local.conn
            logger.debug("Thread-local database connection closed.")

    # ------------------------------------------------------------------ #
    # Utility
    # ------------------------------------------------------------------ #

    @staticmethod
    def _normalize_payload(payload: Any | None) -> str | None:
        if payload is None:
            return None
        if isinstance(payload, str):
            return payload
        try:
            return json.dumps(payload, default=str)
        except TypeError:
            return str(payload)

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            tier=row["tier"],
            consumed=row["consumed"],
            last_reset=from_storage_time(row["last_reset"]),
            billing_anchor_day=row["billing_anchor_day"],
        )

    @staticmethod
    def _row_to_channel(row: sqlite3.Row) -> Channel:
        return Channel(
            id=row["id"],
            owner_id=row["owner_id"],
            url=row["url"],
            name=row["name"],
            external_id=row["external_id"],
            thumbnail_url=row["thumbnail_url"],
            is_paused=bool(row["is_paused"]),
        )

    @staticmethod
    def _row_to_custom_digest(row: sqlite3.Row, channel_ids: tuple[int, ...]) -> CustomDigest:
        return CustomDigest(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            channel_ids=channel_ids,
            custom_prompt=row["custom_prompt"],
            frequency=row["frequency"],
            scheduled_at=row["scheduled_at"],
            day_of_week=row["day_of_week"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> Entity:
        raw_transcript = json.loads(row["transcript"] or "[]")
        return Entity(
            id=row["id"],
            owner_id=row["owner_id"],
            content_id=row["content_id"],
            batch_key=row["batch_key"],
            run_token=row["run_token"],
            title=row["title"],
            source=row["source"],
            transcript=[
                TranscriptSegment(str(seg.get("text", "")), float(seg.get("start", 0)), float(seg.get("duration", 0)))
                for seg in raw_transcript
            ],
            thumbnail_url=row["thumbnail_url"],
            channel_id=row["channel_id"],
            channel_title=row["channel_title"],
            duration=row["duration"],
            summary=row["summary"],
            summary_short=row["summary_short"],
            summary_state=SummaryState(row["summary_state"]),
            created_at=from_storage_time(row["created_at"]),
            updated_at=from_storage_time(row["updated_at"]),
        )
