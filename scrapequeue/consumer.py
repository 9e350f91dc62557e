"""Queue consumer: drives the rate-limit, scrape, store cycle for each message.

Per message the flow is::

    received -> rate-limited(wait) -> scraping -> storing
             -> acked | retry-scheduled | dead-lettered | released | skipped

Write ordering keeps the worst case at "stuck in processing": the state goes
to processing before the collaborator call, and records are persisted before
the final state update.
"""
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Dict

from scrapequeue import settings
from scrapequeue.db import StorageError
from scrapequeue.logging_conf import logger
from scrapequeue.models import (
    DeadLetterEntry,
    InvalidTransition,
    ItemStatus,
    ProcessingLogEntry,
    QueueItemState,
    utcnow,
)
from scrapequeue.queue.models import QueueMessage
from scrapequeue.rate_limiter import RateLimiter, RateLimitDecision
from scrapequeue.scraper_client import CollaboratorError

# Collaborator codes that mean the source itself is struggling
THROTTLE_CODES = {"SITE_UNAVAILABLE", "RATE_LIMITED"}


class Outcome(str, Enum):
    ACKED = "acked"
    SKIPPED = "skipped"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    RELEASED = "released"


@dataclass
class RetryPolicy:
    """Exponential backoff with a retry ceiling.

    Attempt N (1-based) that fails is retried after base_delay * 2^(N-1)
    seconds, capped at max_delay, while N <= max_retries.
    """

    max_retries: int = field(default_factory=lambda: settings.MAX_RETRIES)
    base_delay: float = field(default_factory=lambda: settings.RETRY_BASE_DELAY_SECONDS)
    max_delay: float = field(default_factory=lambda: settings.RETRY_MAX_DELAY_SECONDS)

    def delay_for(self, attempts: int) -> float:
        return min(self.base_delay * (2 ** max(0, attempts - 1)), self.max_delay)

    def exhausted(self, attempts: int) -> bool:
        return attempts > self.max_retries


@dataclass
class BatchResult:
    """Per-outcome counts for one batch."""

    counts: Dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in Outcome})

    def add(self, outcome: Outcome) -> None:
        self.counts[outcome.value] += 1

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class Consumer:
    """Processes batches of queue messages against the collaborator."""

    def __init__(
        self,
        store,
        queue,
        rate_limiter: RateLimiter,
        scraper,
        retry_policy: Optional[RetryPolicy] = None,
        max_rate_limit_wait: Optional[float] = None,
        batch_timeout: Optional[float] = None,
        storage_retry_attempts: Optional[int] = None,
        storage_retry_delay: Optional[float] = None,
        worker_version: Optional[str] = None,
    ):
        self.store = store
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.scraper = scraper
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_rate_limit_wait = settings.MAX_RATE_LIMIT_WAIT_SECONDS if max_rate_limit_wait is None else max_rate_limit_wait
        self.batch_timeout = settings.BATCH_TIMEOUT_SECONDS if batch_timeout is None else batch_timeout
        self.storage_retry_attempts = settings.STORAGE_RETRY_ATTEMPTS if storage_retry_attempts is None else storage_retry_attempts
        self.storage_retry_delay = settings.STORAGE_RETRY_DELAY_SECONDS if storage_retry_delay is None else storage_retry_delay
        self.worker_version = worker_version or settings.CONSUMER_VERSION

    def process_batch(self, messages: List[QueueMessage]) -> BatchResult:
        """Process messages sequentially; one message's failure never aborts the rest."""
        result = BatchResult()
        deadline = time.monotonic() + self.batch_timeout
        logger.info(f"Processing queue batch: {len(messages)} messages")

        for index, message in enumerate(messages):
            if time.monotonic() >= deadline:
                remaining = messages[index:]
                logger.warning(f"Batch timeout reached, releasing {len(remaining)} unprocessed messages")
                for pending in remaining:
                    self.queue.release(pending)
                    result.add(Outcome.RELEASED)
                break

            started = time.monotonic()
            try:
                outcome = self.process_message(message, deadline=deadline)
            except Exception as e:
                logger.error(f"Unexpected error processing message {message.id}: {e}", exc_info=True)
                outcome = self._handle_unexpected(message, e, started)
            result.add(outcome)

        logger.info(f"Batch processing complete: {result.counts}")
        return result

    def process_message(self, message: QueueMessage, deadline: Optional[float] = None) -> Outcome:
        item = message.item
        started = time.monotonic()
        logger.info(
            f"Processing message {message.id} (delivery {message.attempts}): {item.label}",
            extra={"source": item.source, "message_id": message.id}
        )

        try:
            state = self._storage(self.store.get_queue_item_state, item)
            if state and state.is_done_for(item):
                logger.info(f"Already {state.status.value} for {item.label}, acknowledging without scrape")
                self.queue.ack(message)
                return Outcome.SKIPPED
            if state is None:
                # Published without a seeded row; create it so the lifecycle stays complete
                state = QueueItemState.pending(item)
                self._storage(self.store.upsert_queue_item_state, state)
            processing = state.begin_attempt()
            self._storage(self.store.upsert_queue_item_state, processing)
        except StorageError as e:
            logger.error(f"State store unavailable for {item.label}, releasing: {e}")
            self.queue.release(message, self.storage_retry_delay)
            return Outcome.RELEASED
        except InvalidTransition as e:
            logger.warning(f"Skipping {item.label}: {e}")
            self.queue.ack(message)
            return Outcome.SKIPPED

        decision = self._wait_for_slot(item.source, item.jurisdiction, deadline)
        if not decision.allowed:
            logger.info(f"Rate limit wait {decision.wait_seconds:.1f}s too long for {item.label}, releasing")
            self.queue.release(message, decision.wait_seconds)
            return Outcome.RELEASED

        scrape_started = time.monotonic()
        try:
            result = self.scraper.scrape(item.jurisdiction, item.category, item.cell_id, item.source)
        except CollaboratorError as e:
            self.rate_limiter.record_request(item.source, item.jurisdiction, _elapsed_ms(scrape_started))
            return self._handle_failure(message, processing, e, started)
        self.rate_limiter.record_request(item.source, item.jurisdiction, _elapsed_ms(scrape_started))

        try:
            stored = self._storage(self.store.upsert_scraped_records, result.records)
            duration_ms = _elapsed_ms(started)
            completed = processing.complete(len(result.records), duration_ms)
            self._storage(self.store.upsert_queue_item_state, completed)
        except StorageError as e:
            logger.error(f"Failed to persist results for {item.label}, releasing: {e}")
            self.queue.release(message, self.storage_retry_delay)
            return Outcome.RELEASED

        self._log_entry(ProcessingLogEntry.for_item(
            item, message.id, Outcome.ACKED.value, message.attempts,
            result_count=len(result.records), stored_count=stored, duration_ms=duration_ms,
            worker_version=self.worker_version,
        ))
        self.queue.ack(message)
        logger.info(f"Successfully processed {item.label}: {stored} stored ({result.source_label})")
        return Outcome.ACKED

    def _handle_unexpected(self, message: QueueMessage, error: Exception, started: float) -> Outcome:
        """Count an unexpected exception as a retryable failed attempt."""
        item = message.item
        try:
            state = self._storage(self.store.get_queue_item_state, item)
            if state and state.is_done_for(item):
                self.queue.ack(message)
                return Outcome.SKIPPED
            if state is None:
                state = QueueItemState.pending(item)
                self._storage(self.store.upsert_queue_item_state, state)
            if state.status != ItemStatus.PROCESSING:
                state = state.begin_attempt()
                self._storage(self.store.upsert_queue_item_state, state)
        except StorageError as e:
            logger.error(f"State store unavailable for {item.label}, releasing: {e}")
            self.queue.release(message, self.storage_retry_delay)
            return Outcome.RELEASED
        except InvalidTransition as e:
            logger.warning(f"Skipping {item.label}: {e}")
            self.queue.ack(message)
            return Outcome.SKIPPED

        failure = CollaboratorError("INTERNAL_ERROR", f"{type(error).__name__}: {error}")
        return self._handle_failure(message, state, failure, started)

    def _handle_failure(self, message: QueueMessage, processing: QueueItemState,
                        error: CollaboratorError, started: float) -> Outcome:
        item = message.item
        duration_ms = _elapsed_ms(started)
        attempts = processing.attempts + 1
        logger.warning(
            f"Scrape failed for {item.label} (attempt {attempts}): {error}",
            extra={"source": item.source, "code": error.code}
        )

        if error.code in THROTTLE_CODES:
            seconds = error.retry_after or settings.SITE_UNAVAILABLE_THROTTLE_SECONDS
            self.rate_limiter.throttle(item.source, item.jurisdiction, seconds, f"collaborator {error.code}")

        if not error.retryable or self.retry_policy.exhausted(attempts):
            return self._dead_letter(message, processing, error, duration_ms)

        delay = self.retry_policy.delay_for(attempts)
        failed = processing.fail(str(error), duration_ms, next_retry_at=utcnow() + timedelta(seconds=delay))
        try:
            self._storage(self.store.upsert_queue_item_state, failed)
        except StorageError as e:
            logger.error(f"Failed to record failure for {item.label}, releasing: {e}")
            self.queue.release(message, self.storage_retry_delay)
            return Outcome.RELEASED

        self._log_entry(ProcessingLogEntry.for_item(
            item, message.id, Outcome.RETRY_SCHEDULED.value, message.attempts,
            duration_ms=duration_ms, error_message=str(error), worker_version=self.worker_version,
        ))
        self.queue.retry(message, delay)
        return Outcome.RETRY_SCHEDULED

    def _dead_letter(self, message: QueueMessage, processing: QueueItemState,
                     error: CollaboratorError, duration_ms: int) -> Outcome:
        item = message.item
        failed = processing.fail(str(error), duration_ms, terminal=True)
        entry = DeadLetterEntry(
            message_id=message.id,
            message_body=item.to_message_body(),
            jurisdiction=item.jurisdiction,
            cell_id=item.cell_id,
            source=item.source,
            category=item.category,
            error_message=error.message,
            error_code=error.code,
            retry_count=failed.attempts,
            worker_version=self.worker_version,
        )
        try:
            entry_id = self._storage(self.store.dead_letter_item, failed, entry)
        except StorageError as e:
            logger.error(f"Failed to dead-letter {item.label}, releasing: {e}")
            self.queue.release(message, self.storage_retry_delay)
            return Outcome.RELEASED

        self._log_entry(ProcessingLogEntry.for_item(
            item, message.id, Outcome.DEAD_LETTERED.value, message.attempts,
            duration_ms=duration_ms, error_message=str(error), worker_version=self.worker_version,
        ))
        self.queue.ack(message)
        logger.error(
            f"Dead-lettered {item.label} after {failed.attempts} attempts (entry {entry_id}): {error}",
            extra={"source": item.source, "code": error.code}
        )
        return Outcome.DEAD_LETTERED

    def _wait_for_slot(self, source: str, scope_key: str, deadline: Optional[float]) -> RateLimitDecision:
        """Sleep through short rate-limit waits; return the denial when the wait is too long."""
        while True:
            decision = self.rate_limiter.try_acquire(source, scope_key)
            if decision.allowed:
                return decision
            wait = decision.wait_seconds
            if wait > self.max_rate_limit_wait:
                return decision
            if deadline is not None and time.monotonic() + wait > deadline:
                return decision
            logger.debug(f"Rate limit hit for {source}:{scope_key}, waiting {decision.wait_ms}ms")
            time.sleep(wait)

    def _storage(self, operation, *args):
        """Run a state-store call, retrying storage errors immediately (at least one try)."""
        tries = max(1, self.storage_retry_attempts)
        for attempt in range(1, tries + 1):
            try:
                return operation(*args)
            except StorageError as e:
                if attempt >= tries:
                    raise
                logger.warning(f"Storage error ({attempt}/{tries}), retrying: {e}")
                time.sleep(self.storage_retry_delay)

    def _log_entry(self, entry: ProcessingLogEntry) -> None:
        try:
            self._storage(self.store.record_processing_log_entry, entry)
        except StorageError as e:
            logger.error(f"Failed to write processing log for {entry.message_id}: {e}")


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)
