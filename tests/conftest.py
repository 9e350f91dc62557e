"""Shared fixtures: in-memory doubles for the state store, queue and collaborator."""
import time
from dataclasses import replace
from datetime import timedelta
from typing import Dict, List, Optional

import pytest

from scrapequeue.db import StorageError
from scrapequeue.models import (
    DeadLetterEntry,
    ItemStatus,
    QueueItemState,
    RateLimitConfig,
    ScrapedRecord,
    ScrapeResult,
    WorkItem,
    check_transition,
    utcnow,
)
from scrapequeue.queue.models import QueueMessage
from scrapequeue.scraper_client import CollaboratorError


class InMemoryStateStore:
    """Dict-backed stand-in for Database with the same semantics the callers rely on."""

    def __init__(self):
        self.states: Dict[tuple, QueueItemState] = {}
        self.records: Dict[tuple, ScrapedRecord] = {}
        self.dead_letters: List[DeadLetterEntry] = []
        self.logs = []
        self.rate_limits: Dict[tuple, RateLimitConfig] = {}
        self.failures: Dict[str, int] = {}
        self.upsert_batches: List[int] = []

    def fail(self, method: str, times: int = 1):
        """Make the next `times` calls to `method` raise StorageError."""
        self.failures[method] = times

    def _maybe_fail(self, method: str):
        remaining = self.failures.get(method, 0)
        if remaining:
            self.failures[method] = remaining - 1
            raise StorageError(f"{method} unavailable")

    # Work-item lifecycle

    def get_queue_item_state(self, item):
        self._maybe_fail("get_queue_item_state")
        return self.states.get(item.key)

    def list_queue_item_states(self, jurisdiction, source, category):
        self._maybe_fail("list_queue_item_states")
        return {
            s.cell_id: s for s in self.states.values()
            if s.jurisdiction == jurisdiction and s.source == source and s.category == category
        }

    def seed_queue_item_state(self, item):
        self._maybe_fail("seed_queue_item_state")
        now = utcnow()
        existing = self.states.get(item.key)
        if existing:
            state = replace(existing, priority=item.priority, queued_at=now, updated_at=now)
        else:
            state = QueueItemState.pending(item, now=now)
        self.states[item.key] = state
        return state

    def upsert_queue_item_state(self, state):
        self._maybe_fail("upsert_queue_item_state")
        check_transition(self.states.get(state.key), state)
        self.states[state.key] = state

    def reset_stuck_processing(self, minutes=30):
        cutoff = utcnow() - timedelta(minutes=minutes)
        count = 0
        for key, state in list(self.states.items()):
            if state.status == ItemStatus.PROCESSING and state.updated_at and state.updated_at < cutoff:
                self.states[key] = replace(state, status=ItemStatus.FAILED, updated_at=utcnow())
                count += 1
        return count

    def queue_state_counts(self):
        self._maybe_fail("queue_state_counts")
        counts = {}
        for s in self.states.values():
            key = (s.source, s.jurisdiction, s.status.value, s.terminal)
            counts[key] = counts.get(key, 0) + 1
        return [
            {"source": k[0], "jurisdiction": k[1], "status": k[2], "terminal": k[3], "count": v}
            for k, v in sorted(counts.items())
        ]

    # Processing log

    def record_processing_log_entry(self, entry):
        self._maybe_fail("record_processing_log_entry")
        self.logs.append(entry)

    def recent_processing_log(self, limit=20):
        return list(reversed(self.logs))[:limit]

    # Scraped records

    def upsert_scraped_records(self, records):
        self._maybe_fail("upsert_scraped_records")
        unique = {}
        for record in records:
            unique[record.key] = record
        for key, record in unique.items():
            existing = self.records.get(key)
            if existing:
                merged = {
                    field: getattr(record, field) if getattr(record, field) is not None else getattr(existing, field)
                    for field in ("name", "status", "company", "city", "phone", "email")
                }
                record = replace(record, **merged)
            self.records[key] = record
        self.upsert_batches.append(len(unique))
        return len(unique)

    # Dead letters

    def write_dead_letter(self, entry):
        self._maybe_fail("write_dead_letter")
        for existing in self.dead_letters:
            if existing.key == entry.key and not existing.resolved:
                return existing.id
        entry.id = len(self.dead_letters) + 1
        self.dead_letters.append(entry)
        return entry.id

    def dead_letter_item(self, state, entry):
        self._maybe_fail("dead_letter_item")
        check_transition(self.states.get(state.key), state)
        self.states[state.key] = state
        return self.write_dead_letter(entry)

    def list_dead_letters(self, resolved=False, limit=100):
        self._maybe_fail("list_dead_letters")
        entries = [e for e in self.dead_letters if resolved is None or e.resolved == resolved]
        return list(reversed(entries))[:limit]

    def resolve_dead_letter(self, entry_id, resolved_by=None, notes=None, requeue=False):
        for entry in self.dead_letters:
            if entry.id == entry_id and not entry.resolved:
                entry.resolved = True
                entry.resolved_at = utcnow()
                entry.resolved_by = resolved_by
                entry.resolution_notes = notes
                state = self.states.get(entry.key)
                if requeue and state:
                    self.states[entry.key] = replace(state, terminal=False, attempts=0, next_retry_at=None)
                return entry
        return None

    # Rate limits

    def read_rate_limit_config(self, source, scope):
        self._maybe_fail("read_rate_limit_config")
        return self.rate_limits.get((source, scope))

    def list_rate_limit_configs(self):
        return [self.rate_limits[k] for k in sorted(self.rate_limits)]

    def _config(self, source, scope):
        if (source, scope) not in self.rate_limits:
            self.rate_limits[(source, scope)] = RateLimitConfig(source=source, scope=scope)
        return self.rate_limits[(source, scope)]

    def update_rate_limit_usage(self, source, scope, duration_ms):
        self._maybe_fail("update_rate_limit_usage")
        config = self._config(source, scope)
        config.current_window_count += 1
        config.total_requests += 1
        config.last_request_at = utcnow()
        config.last_request_duration_ms = duration_ms

    def set_throttle(self, source, scope, until, reason):
        self._maybe_fail("set_throttle")
        config = self._config(source, scope)
        config.throttled = True
        config.throttled_until = max(until, config.throttled_until) if config.throttled_until else until
        config.throttle_reason = reason

    def update_rate_limit_config(self, source, scope, **changes):
        unknown = set(changes) - {"requests_per_second", "throttled", "throttled_until", "throttle_reason"}
        if unknown:
            raise ValueError(f"Not editable: {', '.join(sorted(unknown))}")
        config = self._config(source, scope)
        for name, value in changes.items():
            setattr(config, name, value)
        return config

    def clear_throttle(self, source, scope):
        return self.update_rate_limit_config(source, scope, throttled=False, throttled_until=None, throttle_reason=None)

    def rate_limit_utilization(self):
        self._maybe_fail("rate_limit_utilization")
        return [
            {**c.to_dict(), "utilization": round(c.current_window_count / c.requests_per_second, 3)}
            for c in self.list_rate_limit_configs()
        ]


class RecordingQueue:
    """Queue double that records every settlement and redelivers on demand."""

    def __init__(self):
        self.ready: List[QueueMessage] = []
        self.published: List[WorkItem] = []
        self.acked: List[QueueMessage] = []
        self.retries: List[tuple] = []
        self.releases: List[tuple] = []

    def publish(self, item, delay_seconds=0):
        if any(m.item.key == item.key for m in self.ready):
            return False
        self.published.append(item)
        self.ready.append(QueueMessage.create(item))
        return True

    def dequeue_batch(self, max_items=10):
        batch, self.ready = self.ready[:max_items], self.ready[max_items:]
        for message in batch:
            message.attempts += 1
        return batch

    def ack(self, message):
        self.acked.append(message)

    def retry(self, message, delay_seconds):
        self.retries.append((message, delay_seconds))
        self.ready.append(message)

    def release(self, message, delay_seconds=0):
        message.attempts = max(0, message.attempts - 1)
        self.releases.append((message, delay_seconds))
        self.ready.append(message)

    def size(self):
        return {"ready": len(self.ready), "inflight": 0, "bad": 0}


class StubScraper:
    """Collaborator double returning queued responses and recording call times."""

    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = default
        self.calls = []
        self.call_times = []

    def scrape(self, jurisdiction, category, cell_id, source):
        self.calls.append((jurisdiction, category, cell_id, source))
        self.call_times.append(time.monotonic())
        response = self.responses.pop(0) if self.responses else self.default
        if response is None:
            response = ScrapeResult(records=[make_record(source, f"{cell_id}-1", cell_id=cell_id)], source_label="stub")
        if isinstance(response, Exception):
            raise response
        return response


def make_item(cell_id="33101", jurisdiction="FL", source="FL_DBPR", category="real_estate",
              priority=5, scheduled_at=None) -> WorkItem:
    return WorkItem(
        cell_id=cell_id,
        jurisdiction=jurisdiction,
        source=source,
        category=category,
        priority=priority,
        scheduled_at=scheduled_at or utcnow(),
    )


def make_record(source="FL_DBPR", native_id="BK123", cell_id="33101", **fields) -> ScrapedRecord:
    return ScrapedRecord(source=source, native_id=native_id, jurisdiction="FL",
                         category="real_estate", cell_id=cell_id, **fields)


def deliver(queue: RecordingQueue, item: WorkItem) -> QueueMessage:
    """Publish an item and claim it, as a consumer would receive it."""
    queue.publish(item)
    return queue.dequeue_batch(max_items=1)[0]


def timeout_error() -> CollaboratorError:
    return CollaboratorError("TIMEOUT", "no response within 45s")


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def scraper():
    return StubScraper()
