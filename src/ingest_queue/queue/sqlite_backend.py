"""SQLite implementation of JobStore and RecordStore.

This module provides the local-first, crash-safe store using:
- sqlite-utils for schema management and simple reads/inserts
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for every status mutation
- Exponential backoff retry for database lock handling
"""

import functools
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from sqlite_utils import Database

from ..errors import StoreError
from .backends import JobStore, RecordStore
from .models import Job, JobStatus, StateTransition
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    input TEXT NOT NULL,
    output TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    created_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at, id);
CREATE INDEX IF NOT EXISTS idx_jobs_status_updated ON jobs(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_jobs_created_by ON jobs(created_by);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS job_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_transitions(job_id, timestamp);

CREATE TABLE IF NOT EXISTS ingest_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    source TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    meta TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS media_assets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    owner TEXT NOT NULL,
    width_px INTEGER,
    height_px INTEGER,
    duration_seconds REAL,
    alt_text TEXT,
    source_url TEXT,
    captions_path TEXT,
    transcript_path TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS decks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    visibility TEXT NOT NULL DEFAULT 'private',
    is_auto INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

-- One auto-generated deck per owner, even with concurrent workers
CREATE UNIQUE INDEX IF NOT EXISTS idx_decks_auto_owner ON decks(owner) WHERE is_auto = 1;

CREATE TABLE IF NOT EXISTS cards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    deck_id INTEGER NOT NULL,
    title TEXT,
    prompt_text TEXT NOT NULL,
    answer_text TEXT NOT NULL,
    bloom_level TEXT,
    difficulty TEXT,
    language_code TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cards_deck ON cards(deck_id);

CREATE TABLE IF NOT EXISTS card_media (
    card_id INTEGER NOT NULL,
    media_asset_id INTEGER NOT NULL,
    role TEXT NOT NULL DEFAULT 'primary',
    PRIMARY KEY (card_id, media_asset_id)
);
"""

JOB_COLUMNS = "id, type, status, input, output, error, created_at, updated_at, created_by"
JOB_COLUMN_NAMES = [c.strip() for c in JOB_COLUMNS.split(",")]

RECORD_TABLES = ("ingest_files", "media_assets", "decks", "cards", "card_media")

AUTO_DECK_TITLE = "Auto-generated Deck"

MEDIA_ASSET_FIELDS = (
    "width_px",
    "height_px",
    "duration_seconds",
    "alt_text",
    "source_url",
    "captions_path",
    "transcript_path",
)

CARD_FIELDS = ("title", "bloom_level", "difficulty", "language_code")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601, so string comparison is chronological."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _is_locked(error: BaseException) -> bool:
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


def _store_errors(fn: Callable[..., T]) -> Callable[..., T]:
    """Serialize access to the shared connection and translate sqlite3 failures."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            with self._lock:
                return fn(self, *args, **kwargs)
        except sqlite3.Error as e:
            logger.error("Store operation %s failed: %s", fn.__name__, e)
            raise StoreError(f"{fn.__name__} failed: {e}") from e

    return wrapper


class SQLiteStore(JobStore, RecordStore):
    """SQLite-based job and record store with ACID guarantees.

    Concurrency safety:
    - Every write runs inside BEGIN IMMEDIATE, taking the write lock up front
    - claim_next() is one UPDATE...RETURNING whose subquery picks the oldest
      queued row, so two connections can never claim the same job
    - Lock contention is retried with exponential backoff
    """

    def __init__(
        self,
        db_path: str,
        busy_retries: int = 3,
        busy_base_delay_s: float = 0.1,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize store database.

        Args:
            db_path: Path to SQLite database file
            busy_retries: Attempts on lock contention
            busy_base_delay_s: First backoff delay in seconds
            clock: Source of "now" (UTC); injected in tests
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_retries = busy_retries
        self.busy_base_delay_s = busy_base_delay_s
        self.clock = clock

        try:
            self._lock = threading.RLock()
            self.db = Database(sqlite3.connect(str(self.db_path), check_same_thread=False))
            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")
            self.db.conn.commit()
            self.db.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store at {self.db_path}: {e}") from e

    @classmethod
    def from_config(cls, config) -> "SQLiteStore":
        return cls(
            config.store.db_path,
            busy_retries=config.store.busy_retries,
            busy_base_delay_s=config.store.busy_base_delay_s,
        )

    def close(self) -> None:
        self.db.conn.close()

    # --- Internals ---

    def _now(self) -> str:
        return format_timestamp(self.clock())

    def _write(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run work inside BEGIN IMMEDIATE, retrying on lock contention."""

        def attempt() -> T:
            with self.db.conn:
                self.db.conn.execute("BEGIN IMMEDIATE")
                return work(self.db.conn)

        return retry_with_backoff(
            attempt,
            max_retries=self.busy_retries - 1,
            base_delay_s=self.busy_base_delay_s,
            retry_on=(sqlite3.OperationalError,),
            should_retry=_is_locked,
        )

    @staticmethod
    def _row_to_job(row: Sequence[Any]) -> Job:
        data = dict(zip(JOB_COLUMN_NAMES, row))
        data["input"] = json.loads(data["input"]) if data["input"] else {}
        data["output"] = json.loads(data["output"]) if data["output"] else None
        return Job.model_validate(data)

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: int,
        from_state: Optional[str],
        to_state: str,
        error: Optional[str] = None,
    ) -> None:
        """Append to the audit trail inside the caller's transaction."""
        conn.execute(
            """
            INSERT INTO job_transitions (job_id, from_state, to_state, timestamp, error_snippet)
            VALUES (?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, self._now(), error[:200] if error else None),
        )

    # --- JobStore ---

    @_store_errors
    def insert_job(
        self,
        job_type: str,
        input: Dict[str, Any],
        created_by: Optional[str],
        ingest_file: Optional[Dict[str, Any]] = None,
    ) -> Job:
        def work(conn):
            now = self._now()
            job_input = dict(input)
            if ingest_file is not None:
                job_input["ingest_file_id"] = conn.execute(
                    """
                    INSERT INTO ingest_files (owner, source, storage_path, mime_type, meta, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        ingest_file["owner"],
                        ingest_file.get("source", "upload"),
                        ingest_file["storage_path"],
                        ingest_file["mime_type"],
                        json.dumps(ingest_file.get("meta") or {}),
                        now,
                    ),
                ).lastrowid
            row = conn.execute(
                f"""
                INSERT INTO jobs (type, status, input, created_at, updated_at, created_by)
                VALUES (?, ?, ?, ?, ?, ?)
                RETURNING {JOB_COLUMNS}
                """,
                (job_type, JobStatus.QUEUED.value, json.dumps(job_input), now, now, created_by),
            ).fetchall()[0]
            self._log_transition(conn, row[0], None, JobStatus.QUEUED.value)
            return self._row_to_job(row)

        return self._write(work)

    @_store_errors
    def claim_next(self) -> Optional[Job]:
        def work(conn):
            rows = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, updated_at = ?
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE status = ?
                    ORDER BY created_at ASC, id ASC
                    LIMIT 1
                )
                AND status = ?
                RETURNING {JOB_COLUMNS}
                """,
                (
                    JobStatus.PROCESSING.value,
                    self._now(),
                    JobStatus.QUEUED.value,
                    JobStatus.QUEUED.value,
                ),
            ).fetchall()
            if not rows:
                return None
            self._log_transition(conn, rows[0][0], JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
            return self._row_to_job(rows[0])

        return self._write(work)

    @_store_errors
    def transition(
        self,
        job_id: int,
        from_status: JobStatus,
        to_status: JobStatus,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[Job]:
        def work(conn):
            rows = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, output = ?, error = ?, updated_at = ?
                WHERE id = ? AND status = ?
                RETURNING {JOB_COLUMNS}
                """,
                (
                    to_status.value,
                    json.dumps(output) if output is not None else None,
                    error,
                    self._now(),
                    job_id,
                    from_status.value,
                ),
            ).fetchall()
            if not rows:
                return None
            self._log_transition(conn, job_id, from_status.value, to_status.value, error)
            return self._row_to_job(rows[0])

        return self._write(work)

    @_store_errors
    def requeue(self, job_id: int) -> Optional[Job]:
        def work(conn):
            now = self._now()
            rows = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, output = NULL, error = NULL, created_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                RETURNING {JOB_COLUMNS}
                """,
                (JobStatus.QUEUED.value, now, now, job_id, JobStatus.FAILED.value),
            ).fetchall()
            if not rows:
                return None
            self._log_transition(conn, job_id, JobStatus.FAILED.value, JobStatus.QUEUED.value)
            return self._row_to_job(rows[0])

        return self._write(work)

    @_store_errors
    def fail_stale(self, updated_before: datetime, reason: str) -> List[int]:
        def work(conn):
            rows = conn.execute(
                """
                UPDATE jobs
                SET status = ?, error = ?, output = NULL, updated_at = ?
                WHERE status = ? AND updated_at < ?
                RETURNING id
                """,
                (
                    JobStatus.FAILED.value,
                    reason,
                    self._now(),
                    JobStatus.PROCESSING.value,
                    format_timestamp(updated_before),
                ),
            ).fetchall()
            for row in rows:
                self._log_transition(
                    conn, row[0], JobStatus.PROCESSING.value, JobStatus.FAILED.value, reason
                )
            return sorted(row[0] for row in rows)

        return self._write(work)

    @_store_errors
    def delete_terminal(self, created_before: datetime) -> int:
        def work(conn):
            cursor = conn.execute(
                "DELETE FROM jobs WHERE status IN (?, ?) AND created_at < ?",
                (JobStatus.DONE.value, JobStatus.FAILED.value, format_timestamp(created_before)),
            )
            deleted = cursor.rowcount
            conn.execute("DELETE FROM job_transitions WHERE job_id NOT IN (SELECT id FROM jobs)")
            return deleted

        return self._write(work)

    @_store_errors
    def get_job(self, job_id: int) -> Optional[Job]:
        row = self.db.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", [job_id]).fetchone()
        return self._row_to_job(row) if row else None

    @staticmethod
    def _job_filters(
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        created_by: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        args: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            args.append(JobStatus(status).value)
        if job_type is not None:
            clauses.append("type = ?")
            args.append(job_type)
        if created_by is not None:
            clauses.append("created_by = ?")
            args.append(created_by)
        if created_after is not None:
            clauses.append("created_at >= ?")
            args.append(format_timestamp(created_after))
        if created_before is not None:
            clauses.append("created_at < ?")
            args.append(format_timestamp(created_before))
        if updated_before is not None:
            clauses.append("updated_at < ?")
            args.append(format_timestamp(updated_before))
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, args

    @_store_errors
    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        created_by: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[Job]:
        where, args = self._job_filters(
            status, job_type, created_by, created_after, created_before, updated_before
        )
        direction = "DESC" if newest_first else "ASC"
        sql = f"SELECT {JOB_COLUMNS} FROM jobs{where} ORDER BY created_at {direction}, id {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        return [self._row_to_job(row) for row in self.db.execute(sql, args).fetchall()]

    @_store_errors
    def count_jobs(
        self,
        status: Optional[JobStatus] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
    ) -> int:
        where, args = self._job_filters(
            status,
            created_after=created_after,
            created_before=created_before,
            updated_before=updated_before,
        )
        return self.db.execute(f"SELECT COUNT(*) FROM jobs{where}", args).fetchone()[0]

    @_store_errors
    def count_by_status_and_type(self) -> List[Tuple[str, str, int]]:
        rows = self.db.execute(
            "SELECT status, type, COUNT(*) FROM jobs GROUP BY status, type ORDER BY status, type"
        ).fetchall()
        return [(status, job_type, count) for status, job_type, count in rows]

    @_store_errors
    def get_transitions(self, job_id: int) -> List[StateTransition]:
        rows = self.db["job_transitions"].rows_where(
            "job_id = ?", [job_id], order_by="id"
        )
        return [StateTransition.model_validate(row) for row in rows]

    @_store_errors
    def ping(self) -> None:
        self.db.execute("SELECT COUNT(*) FROM jobs LIMIT 1").fetchone()

    # --- RecordStore ---

    @_store_errors
    def create_media_asset(
        self, type: str, storage_path: str, mime_type: str, owner: str, **fields: Any
    ) -> int:
        unknown = set(fields) - set(MEDIA_ASSET_FIELDS)
        if unknown:
            raise ValueError(f"Unknown media asset fields: {sorted(unknown)}")
        record = {
            "type": type,
            "storage_path": storage_path,
            "mime_type": mime_type,
            "owner": owner,
            "created_at": self._now(),
        }
        record.update({k: v for k, v in fields.items() if v is not None})
        return self.db["media_assets"].insert(record).last_pk

    @_store_errors
    def get_media_assets(self, asset_ids: Sequence[int]) -> List[Dict[str, Any]]:
        if not asset_ids:
            return []
        placeholders = ", ".join("?" for _ in asset_ids)
        return list(
            self.db["media_assets"].rows_where(
                f"id IN ({placeholders})", [int(i) for i in asset_ids], order_by="id"
            )
        )

    @_store_errors
    def create_deck(
        self, owner: str, title: str, description: str = "", visibility: str = "private"
    ) -> int:
        return self.db["decks"].insert(
            {
                "owner": owner,
                "title": title,
                "description": description,
                "visibility": visibility,
                "is_auto": 0,
                "created_at": self._now(),
            }
        ).last_pk

    @_store_errors
    def get_deck(self, deck_id: int) -> Optional[Dict[str, Any]]:
        rows = list(self.db["decks"].rows_where("id = ?", [deck_id]))
        return rows[0] if rows else None

    @_store_errors
    def get_or_create_default_deck(self, owner: str) -> int:
        def work(conn):
            conn.execute(
                """
                INSERT OR IGNORE INTO decks (owner, title, description, visibility, is_auto, created_at)
                VALUES (?, ?, ?, 'private', 1, ?)
                """,
                (
                    owner,
                    AUTO_DECK_TITLE,
                    "Automatically created deck for processed content",
                    self._now(),
                ),
            )
            return conn.execute(
                "SELECT id FROM decks WHERE owner = ? AND is_auto = 1", (owner,)
            ).fetchone()[0]

        return self._write(work)

    @_store_errors
    def create_card(
        self,
        deck_id: int,
        prompt_text: str,
        answer_text: str,
        is_active: bool,
        **fields: Any,
    ) -> int:
        unknown = set(fields) - set(CARD_FIELDS)
        if unknown:
            raise ValueError(f"Unknown card fields: {sorted(unknown)}")
        record = {
            "deck_id": deck_id,
            "prompt_text": prompt_text,
            "answer_text": answer_text,
            "is_active": 1 if is_active else 0,
            "created_at": self._now(),
        }
        record.update(fields)
        return self.db["cards"].insert(record).last_pk

    @_store_errors
    def link_card_media(self, card_id: int, media_asset_id: int, role: str = "primary") -> None:
        self.db["card_media"].insert(
            {"card_id": card_id, "media_asset_id": media_asset_id, "role": role},
            replace=True,
        )

    @_store_errors
    def list_records(
        self,
        table: str,
        created_after: Optional[datetime] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if table not in RECORD_TABLES:
            raise ValueError(f"Unknown record table: {table}")
        where = None
        args: List[Any] = []
        if created_after is not None and table != "card_media":
            where = "created_at >= ?"
            args.append(format_timestamp(created_after))
        order_by = None
        if table != "card_media":
            order_by = "created_at DESC, id DESC" if newest_first else "created_at, id"
        return list(self.db[table].rows_where(where, args, order_by=order_by, limit=limit))
