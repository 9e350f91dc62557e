"""Worker thread that feeds spool batches to the consumer."""
import time
import threading
from typing import Optional

from scrapequeue import settings
from scrapequeue.logging_conf import logger
from scrapequeue.consumer import Consumer, BatchResult


class Worker:
    """Worker that processes scrape messages from the queue."""

    def __init__(self, consumer: Consumer, batch_size: Optional[int] = None,
                 poll_interval: Optional[int] = None):
        self.consumer = consumer
        self.queue = consumer.queue
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self.running = False
        self.thread = None
        self.batches_processed = 0
        self.last_batch: Optional[BatchResult] = None

    def start(self):
        """Start the worker in a background thread."""
        if self.running:
            logger.warning("Worker is already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, name="scrape-worker", daemon=True)
        self.thread.start()
        logger.info(f"Scrape worker started (batch size {self.batch_size}, poll every {self.poll_interval}s)")

    def stop(self):
        """Stop the worker."""
        if not self.running:
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=60)
        logger.info(f"Scrape worker stopped after {self.batches_processed} batches")

    def run_once(self) -> Optional[BatchResult]:
        """Claim and process one batch. Returns None when the queue had nothing ready."""
        batch = self.queue.dequeue_batch(max_items=self.batch_size)
        if not batch:
            return None

        result = self.consumer.process_batch(batch)
        self.batches_processed += 1
        self.last_batch = result
        return result

    def _run(self):
        """Main worker loop."""
        logger.info("Worker thread started")

        while self.running:
            try:
                if self.run_once() is None:
                    # Nothing deliverable yet
                    self._sleep(self.poll_interval)
            except Exception as e:
                logger.error(f"Scrape worker loop error: {e}", exc_info=True)
                self._sleep(5)

        logger.info("Worker thread stopped")

    def _sleep(self, seconds: int):
        for _ in range(max(1, int(seconds))):
            if not self.running:
                break
            time.sleep(1)
