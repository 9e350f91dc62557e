"""Database operations for the scrape queue state store."""
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Dict, Any
from contextlib import contextmanager

import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, Json, execute_values

from scrapequeue import settings
from scrapequeue.logging_conf import logger
from scrapequeue.models import (
    QueueItemState,
    WorkItem,
    RateLimitConfig,
    ScrapedRecord,
    DeadLetterEntry,
    ProcessingLogEntry,
    check_transition,
    utcnow,
)

SCHEMA_FILE = Path(__file__).resolve().parent / "schema.sql"

STATE_COLUMNS = (
    "jurisdiction", "cell_id", "source", "category", "status", "priority",
    "attempts", "total_attempts", "terminal", "last_error", "last_result_count",
    "last_duration_ms", "next_retry_at", "queued_at", "started_at", "completed_at",
    "last_attempted_at", "updated_at",
)

RATE_LIMIT_EDITABLE = ("requests_per_second", "throttled", "throttled_until", "throttle_reason")


class StorageError(Exception):
    """Raised when the state store cannot complete a read or write."""


class Database:
    """Database connection and operations for queue state, records and rate limits."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.DATABASE_URL
        self._conn = None

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            try:
                self._conn = psycopg2.connect(self.dsn)
            except psycopg2.Error as e:
                raise StorageError(f"Cannot connect to database: {e}") from e
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
        self._conn = None

    @contextmanager
    def cursor(self):
        """Context manager for cursor with auto-commit/rollback."""
        cur = self.conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cur
            self.conn.commit()
        except psycopg2.Error as e:
            self._rollback()
            raise StorageError(str(e).strip()) from e
        except Exception:
            self._rollback()
            raise
        finally:
            cur.close()

    def _rollback(self):
        try:
            self.conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed, dropping connection: {e}")
            self.close()

    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self.cursor() as cur:
            cur.execute(SCHEMA_FILE.read_text())
        logger.info("Database schema ready")

    # ------------------------------------------------------------------
    # Work-item lifecycle
    # ------------------------------------------------------------------

    def get_queue_item_state(self, item: WorkItem) -> Optional[QueueItemState]:
        with self.cursor() as cur:
            cur.execute("""
                SELECT * FROM queue_item_state
                WHERE jurisdiction = %s AND cell_id = %s AND source = %s AND category = %s
            """, item.key)
            row = cur.fetchone()
        return QueueItemState.from_row(row) if row else None

    def list_queue_item_states(self, jurisdiction: str, source: str, category: str) -> Dict[str, QueueItemState]:
        """All states for one (jurisdiction, source, category) target, keyed by cell."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT * FROM queue_item_state
                WHERE jurisdiction = %s AND source = %s AND category = %s
            """, (jurisdiction, source, category))
            rows = cur.fetchall()
        return {row["cell_id"]: QueueItemState.from_row(row) for row in rows}

    def seed_queue_item_state(self, item: WorkItem) -> QueueItemState:
        """Create the pending row for a work item, or refresh priority on an existing one.

        An existing row keeps its status so the lifecycle never moves backwards.
        """
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO queue_item_state
                    (jurisdiction, cell_id, source, category, status, priority, queued_at, updated_at)
                VALUES (%s, %s, %s, %s, 'pending', %s, NOW(), NOW())
                ON CONFLICT (jurisdiction, cell_id, source, category) DO UPDATE SET
                    priority = EXCLUDED.priority,
                    queued_at = EXCLUDED.queued_at,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            """, (*item.key, item.priority))
            return QueueItemState.from_row(cur.fetchone())

    def upsert_queue_item_state(self, state: QueueItemState) -> None:
        """Write a state transition; the stored status is checked first (read-modify-write)."""
        with self.cursor() as cur:
            self._write_state(cur, state)

    def _write_state(self, cur, state: QueueItemState) -> None:
        cur.execute("""
            SELECT * FROM queue_item_state
            WHERE jurisdiction = %s AND cell_id = %s AND source = %s AND category = %s
            FOR UPDATE
        """, state.key)
        row = cur.fetchone()
        check_transition(QueueItemState.from_row(row) if row else None, state)

        values = {column: getattr(state, column) for column in STATE_COLUMNS}
        values["status"] = state.status.value
        values["updated_at"] = state.updated_at or utcnow()

        columns = sql.SQL(", ").join(sql.Identifier(c) for c in STATE_COLUMNS)
        placeholders = sql.SQL(", ").join(sql.Placeholder(c) for c in STATE_COLUMNS)
        updates = sql.SQL(", ").join(
            sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
            for c in STATE_COLUMNS[4:]
        )
        cur.execute(
            sql.SQL("""
                INSERT INTO queue_item_state ({columns}) VALUES ({placeholders})
                ON CONFLICT (jurisdiction, cell_id, source, category) DO UPDATE SET {updates}
            """).format(columns=columns, placeholders=placeholders, updates=updates),
            values,
        )

    def reset_stuck_processing(self, minutes: Optional[int] = None) -> int:
        """Mark items stuck in 'processing' as retryable failures so they get re-seeded."""
        minutes = settings.STUCK_PROCESSING_MINUTES if minutes is None else minutes
        with self.cursor() as cur:
            cur.execute("""
                UPDATE queue_item_state
                SET status = 'failed',
                    last_error = 'processing interrupted; reset by reconciliation sweep',
                    updated_at = NOW()
                WHERE status = 'processing'
                  AND updated_at < NOW() - %s * INTERVAL '1 minute'
                RETURNING jurisdiction
            """, (minutes,))
            count = len(cur.fetchall())
        if count > 0:
            logger.warning(f"Reset {count} work items stuck in processing")
        return count

    def queue_state_counts(self) -> List[Dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute("""
                SELECT source, jurisdiction, status, terminal, COUNT(*) AS count
                FROM queue_item_state
                GROUP BY source, jurisdiction, status, terminal
                ORDER BY source, jurisdiction, status
            """)
            return [dict(row) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Processing log
    # ------------------------------------------------------------------

    def record_processing_log_entry(self, entry: ProcessingLogEntry) -> None:
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO processing_log
                    (message_id, jurisdiction, cell_id, source, category, outcome,
                     attempt_number, result_count, stored_count, duration_ms,
                     error_message, worker_version, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                entry.message_id, entry.jurisdiction, entry.cell_id, entry.source,
                entry.category, entry.outcome, entry.attempt_number, entry.result_count,
                entry.stored_count, entry.duration_ms, entry.error_message,
                entry.worker_version, entry.created_at,
            ))

    def recent_processing_log(self, limit: int = 20) -> List[ProcessingLogEntry]:
        with self.cursor() as cur:
            cur.execute("""
                SELECT message_id, jurisdiction, cell_id, source, category, outcome,
                       attempt_number, result_count, stored_count, duration_ms,
                       error_message, worker_version, created_at
                FROM processing_log
                ORDER BY created_at DESC
                LIMIT %s
            """, (limit,))
            return [ProcessingLogEntry(**row) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Scraped records
    # ------------------------------------------------------------------

    def upsert_scraped_records(self, records: List[ScrapedRecord]) -> int:
        """Insert or refresh records keyed by (source, native_id). Returns rows written."""
        # One row per key per statement; the last occurrence wins
        unique = {}
        for record in records:
            unique[record.key] = record
        if not unique:
            return 0

        rows = [
            (
                r.source, r.native_id, r.name, r.status, r.company, r.city, r.phone,
                r.email, r.jurisdiction, r.category, r.cell_id, r.source_label,
                Json(r.raw), r.scraped_at, r.scraped_at,
            )
            for r in unique.values()
        ]
        with self.cursor() as cur:
            execute_values(cur, """
                INSERT INTO scraped_records
                    (source, native_id, name, status, company, city, phone, email,
                     jurisdiction, category, cell_id, source_label, raw_data,
                     first_seen_at, last_scraped_at)
                VALUES %s
                ON CONFLICT (source, native_id) DO UPDATE SET
                    name = COALESCE(EXCLUDED.name, scraped_records.name),
                    status = COALESCE(EXCLUDED.status, scraped_records.status),
                    company = COALESCE(EXCLUDED.company, scraped_records.company),
                    city = COALESCE(EXCLUDED.city, scraped_records.city),
                    phone = COALESCE(EXCLUDED.phone, scraped_records.phone),
                    email = COALESCE(EXCLUDED.email, scraped_records.email),
                    jurisdiction = COALESCE(EXCLUDED.jurisdiction, scraped_records.jurisdiction),
                    category = COALESCE(EXCLUDED.category, scraped_records.category),
                    cell_id = COALESCE(EXCLUDED.cell_id, scraped_records.cell_id),
                    source_label = EXCLUDED.source_label,
                    raw_data = EXCLUDED.raw_data,
                    last_scraped_at = EXCLUDED.last_scraped_at
            """, rows)
        return len(rows)

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    def write_dead_letter(self, entry: DeadLetterEntry) -> int:
        """Record a terminal failure; returns the id of the open entry for the work item."""
        with self.cursor() as cur:
            return self._insert_dead_letter(cur, entry)

    def dead_letter_item(self, state: QueueItemState, entry: DeadLetterEntry) -> int:
        """Write the terminal state and its dead letter in one transaction."""
        with self.cursor() as cur:
            self._write_state(cur, state)
            return self._insert_dead_letter(cur, entry)

    def _insert_dead_letter(self, cur, entry: DeadLetterEntry) -> int:
        cur.execute("""
            INSERT INTO dead_letter_queue
                (message_id, message_body, jurisdiction, cell_id, source, category,
                 error_message, error_code, retry_count, worker_version, failed_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (jurisdiction, cell_id, source, category) WHERE NOT resolved
            DO NOTHING
            RETURNING id
        """, (
            entry.message_id, Json(entry.message_body), entry.jurisdiction,
            entry.cell_id, entry.source, entry.category, entry.error_message,
            entry.error_code, entry.retry_count, entry.worker_version, entry.failed_at,
        ))
        row = cur.fetchone()
        if row is None:
            cur.execute("""
                SELECT id FROM dead_letter_queue
                WHERE jurisdiction = %s AND cell_id = %s AND source = %s AND category = %s
                  AND NOT resolved
            """, entry.key)
            row = cur.fetchone()
            logger.info(f"Dead letter already open for {':'.join(entry.key)} (id {row['id']})")
        return row["id"]

    def list_dead_letters(self, resolved: Optional[bool] = False, limit: int = 100) -> List[DeadLetterEntry]:
        with self.cursor() as cur:
            if resolved is None:
                cur.execute("""
                    SELECT * FROM dead_letter_queue ORDER BY failed_at DESC LIMIT %s
                """, (limit,))
            else:
                cur.execute("""
                    SELECT * FROM dead_letter_queue WHERE resolved = %s
                    ORDER BY failed_at DESC LIMIT %s
                """, (resolved, limit))
            return [DeadLetterEntry.from_row(row) for row in cur.fetchall()]

    def resolve_dead_letter(
        self,
        entry_id: int,
        resolved_by: Optional[str] = None,
        notes: Optional[str] = None,
        requeue: bool = False,
    ) -> Optional[DeadLetterEntry]:
        """Mark an entry resolved. With requeue, the work item may be processed again."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE dead_letter_queue
                SET resolved = TRUE, resolved_at = NOW(), resolved_by = %s, resolution_notes = %s
                WHERE id = %s AND NOT resolved
                RETURNING *
            """, (resolved_by, notes, entry_id))
            row = cur.fetchone()
            if row is None:
                return None
            entry = DeadLetterEntry.from_row(row)
            if requeue:
                cur.execute("""
                    UPDATE queue_item_state
                    SET terminal = FALSE, attempts = 0, next_retry_at = NULL, updated_at = NOW()
                    WHERE jurisdiction = %s AND cell_id = %s AND source = %s AND category = %s
                """, entry.key)
        logger.info(f"Resolved dead letter {entry_id} ({':'.join(entry.key)}), requeue={requeue}")
        return entry

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------

    def read_rate_limit_config(self, source: str, scope: str) -> Optional[RateLimitConfig]:
        with self.cursor() as cur:
            cur.execute("""
                SELECT * FROM rate_limit_config WHERE source = %s AND scope = %s
            """, (source, scope))
            row = cur.fetchone()
        return RateLimitConfig.from_row(row) if row else None

    def list_rate_limit_configs(self) -> List[RateLimitConfig]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM rate_limit_config ORDER BY source, scope")
            return [RateLimitConfig.from_row(row) for row in cur.fetchall()]

    def update_rate_limit_usage(self, source: str, scope: str, duration_ms: int) -> None:
        """Count one collaborator request against the (source, scope) window."""
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO rate_limit_config
                    (source, scope, requests_per_second, current_window_count, window_started_at,
                     last_request_at, last_request_duration_ms, total_requests, updated_at)
                VALUES (%s, %s, %s, 1, NOW(), NOW(), %s, 1, NOW())
                ON CONFLICT (source, scope) DO UPDATE SET
                    current_window_count = CASE
                        WHEN rate_limit_config.window_started_at IS NULL
                          OR rate_limit_config.window_started_at < NOW() - INTERVAL '1 second'
                        THEN 1 ELSE rate_limit_config.current_window_count + 1 END,
                    window_started_at = CASE
                        WHEN rate_limit_config.window_started_at IS NULL
                          OR rate_limit_config.window_started_at < NOW() - INTERVAL '1 second'
                        THEN NOW() ELSE rate_limit_config.window_started_at END,
                    last_request_at = NOW(),
                    last_request_duration_ms = EXCLUDED.last_request_duration_ms,
                    total_requests = rate_limit_config.total_requests + 1,
                    updated_at = NOW()
            """, (source, scope, settings.DEFAULT_REQUESTS_PER_SECOND, duration_ms))

    def set_throttle(self, source: str, scope: str, until: datetime, reason: str) -> None:
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO rate_limit_config
                    (source, scope, requests_per_second, throttled, throttled_until, throttle_reason, updated_at)
                VALUES (%s, %s, %s, TRUE, %s, %s, NOW())
                ON CONFLICT (source, scope) DO UPDATE SET
                    throttled = TRUE,
                    throttled_until = GREATEST(EXCLUDED.throttled_until, rate_limit_config.throttled_until),
                    throttle_reason = EXCLUDED.throttle_reason,
                    updated_at = NOW()
            """, (source, scope, settings.DEFAULT_REQUESTS_PER_SECOND, until, reason))
        logger.warning(f"Throttled {source}:{scope} until {until.isoformat()} ({reason})")

    def update_rate_limit_config(self, source: str, scope: str, **changes: Any) -> RateLimitConfig:
        """Administrative edit of ceilings and throttle fields; creates the row if needed."""
        unknown = set(changes) - set(RATE_LIMIT_EDITABLE)
        if unknown:
            raise ValueError(f"Not editable: {', '.join(sorted(unknown))}")

        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO rate_limit_config (source, scope, requests_per_second)
                VALUES (%s, %s, %s)
                ON CONFLICT (source, scope) DO NOTHING
            """, (source, scope, settings.DEFAULT_REQUESTS_PER_SECOND))
            assignments = [
                sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column))
                for column in changes
            ]
            assignments.append(sql.SQL("updated_at = NOW()"))
            cur.execute(
                sql.SQL("""
                    UPDATE rate_limit_config SET {assignments}
                    WHERE source = {source} AND scope = {scope}
                    RETURNING *
                """).format(
                    assignments=sql.SQL(", ").join(assignments),
                    source=sql.Placeholder("source"),
                    scope=sql.Placeholder("scope"),
                ),
                {**changes, "source": source, "scope": scope},
            )
            config = RateLimitConfig.from_row(cur.fetchone())
        logger.info(f"Rate limit config updated for {source}:{scope}: {changes}")
        return config

    def clear_throttle(self, source: str, scope: str) -> RateLimitConfig:
        return self.update_rate_limit_config(
            source, scope, throttled=False, throttled_until=None, throttle_reason=None
        )

    def rate_limit_utilization(self) -> List[Dict[str, Any]]:
        """Current-window usage relative to the ceiling for every (source, scope)."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT source, scope, requests_per_second, throttled, throttled_until,
                       throttle_reason, last_request_at, total_requests,
                       CASE WHEN window_started_at >= NOW() - INTERVAL '1 second'
                            THEN current_window_count ELSE 0 END AS current_window_count
                FROM rate_limit_config
                ORDER BY source, scope
            """)
            rows = cur.fetchall()
        result = []
        for row in rows:
            item = dict(row)
            item["utilization"] = round(item["current_window_count"] / float(item["requests_per_second"]), 3)
            for column in ("throttled_until", "last_request_at"):
                if item[column] is not None:
                    item[column] = item[column].isoformat()
            result.append(item)
        return result
