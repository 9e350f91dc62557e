"""Seeder: enumerates work items and publishes the ones that need scraping."""
import time
import threading
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import List, Optional, Sequence, Dict

from scrapequeue import settings
from scrapequeue.checkpoint import CheckpointManager
from scrapequeue.db import StorageError
from scrapequeue.logging_conf import logger
from scrapequeue.models import ItemStatus, QueueItemState, WorkItem, utcnow
from scrapequeue.targets import SeedTarget, load_targets


@dataclass
class SeedResult:
    queued: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class Seeder:
    """Publishes WorkItems for every target cell that is not fresh or terminal."""

    def __init__(self, store, queue, checkpoint: Optional[CheckpointManager] = None,
                 freshness_hours: Optional[float] = None, batch_size: Optional[int] = None,
                 batch_pause: Optional[float] = None):
        self.store = store
        self.queue = queue
        self.checkpoint = checkpoint
        self.freshness = timedelta(hours=settings.SEED_FRESHNESS_HOURS if freshness_hours is None else freshness_hours)
        self.batch_size = batch_size or settings.SEED_PUBLISH_BATCH_SIZE
        self.batch_pause = settings.SEED_BATCH_PAUSE_SECONDS if batch_pause is None else batch_pause

    def seed(self, mode: Optional[str] = None, jurisdictions: Optional[Sequence[str]] = None,
             force: bool = False, targets: Optional[List[SeedTarget]] = None) -> SeedResult:
        """
        Enumerate candidate work items and publish the ones that need work.

        Args:
            mode: "test" or "production" built-in cell set
            jurisdictions: Restrict to these jurisdiction codes
            force: Ignore the freshness window (terminal failures are still skipped)
            targets: Explicit targets, bypassing the built-in sets

        Returns:
            SeedResult with queued/skipped/error counts
        """
        mode = mode or settings.SEED_MODE
        if targets is None:
            targets = load_targets(mode, jurisdictions)
        elif jurisdictions:
            wanted = {j.upper() for j in jurisdictions}
            targets = [t for t in targets if t.jurisdiction in wanted]

        result = SeedResult()
        scheduled_at = utcnow()
        candidates: List[WorkItem] = []

        for target in targets:
            try:
                states = self.store.list_queue_item_states(target.jurisdiction, target.source, target.category)
            except StorageError as e:
                logger.error(f"Failed to load states for {target.source}:{target.jurisdiction}: {e}")
                result.errors += len(target.cells)
                continue

            priority = settings.DEFAULT_PRIORITY if target.priority is None else target.priority
            for cell_id in target.cells:
                if self._should_skip(states.get(cell_id), force):
                    result.skipped += 1
                    continue
                candidates.append(WorkItem(
                    cell_id=cell_id,
                    jurisdiction=target.jurisdiction,
                    source=target.source,
                    category=target.category,
                    priority=priority,
                    scheduled_at=scheduled_at,
                ))

        # Higher priority first; sort is stable so target order is kept within a priority
        candidates.sort(key=lambda item: item.priority, reverse=True)
        logger.info(f"Seeding {len(candidates)} work items ({result.skipped} skipped, mode={mode}, force={force})")

        for start in range(0, len(candidates), self.batch_size):
            if start and self.batch_pause:
                time.sleep(self.batch_pause)
            for item in candidates[start:start + self.batch_size]:
                self._publish(item, result)

        logger.info(f"Seed complete: {result.queued} queued, {result.skipped} skipped, {result.errors} errors")
        if self.checkpoint:
            self.checkpoint.save_seed_run(mode, result.to_dict())
        return result

    def _should_skip(self, state: Optional[QueueItemState], force: bool) -> bool:
        if state is None:
            return False
        if state.status == ItemStatus.FAILED and state.terminal:
            return True
        if force:
            return False
        touched = state.updated_at or state.queued_at
        return touched is not None and utcnow() - touched < self.freshness

    def _publish(self, item: WorkItem, result: SeedResult) -> None:
        try:
            # The state row exists before the message so the consumer never sees an unknown item
            self.store.seed_queue_item_state(item)
            if self.queue.publish(item):
                result.queued += 1
            else:
                logger.debug(f"Already queued: {item.label}")
                result.skipped += 1
        except (StorageError, OSError) as e:
            logger.error(f"Failed to seed {item.label}: {e}")
            result.errors += 1


class SeedScheduler:
    """Re-runs the seeder whenever the last seed run is older than the interval."""

    def __init__(self, seeder: Seeder, checkpoint: CheckpointManager,
                 interval_hours: Optional[float] = None, check_interval: int = 60):
        self.seeder = seeder
        self.checkpoint = checkpoint
        self.interval_hours = settings.SEED_INTERVAL_HOURS if interval_hours is None else interval_hours
        self.check_interval = check_interval
        self.running = False
        self.thread = None

    def start(self):
        """Start the scheduler in a background thread."""
        if self.running:
            logger.warning("Seed scheduler is already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, name="seed-scheduler", daemon=True)
        self.thread.start()
        logger.info(f"Seed scheduler started (interval: {self.interval_hours}h)")

    def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("Seed scheduler stopped")

    def run_if_due(self) -> Optional[SeedResult]:
        if not self.checkpoint.is_seed_due(self.interval_hours):
            return None
        return self.seeder.seed()

    def _run(self):
        """Main scheduler loop."""
        logger.info("Seed scheduler thread started")

        while self.running:
            try:
                self.run_if_due()
            except Exception as e:
                logger.error(f"Seed scheduler error: {e}", exc_info=True)

            for _ in range(self.check_interval):
                if not self.running:
                    break
                time.sleep(1)

        logger.info("Seed scheduler thread stopped")
