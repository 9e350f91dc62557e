"""Main application - runs the queue worker, seeder and monitoring endpoints."""
import argparse
import signal
import sys
import threading
import time
from typing import Optional, List

from werkzeug.serving import make_server

from scrapequeue.logging_conf import logger
from scrapequeue import settings
from scrapequeue.checkpoint import CheckpointManager
from scrapequeue.consumer import Consumer
from scrapequeue.db import Database, StorageError
from scrapequeue.health import create_app
from scrapequeue.queue.spool_queue import SpoolQueue
from scrapequeue.rate_limiter import build_rate_limiter
from scrapequeue.scraper_client import ScraperClient
from scrapequeue.seeder import Seeder, SeedScheduler
from scrapequeue.worker import Worker


class Application:
    """Wires the worker, seed scheduler and HTTP server together."""

    def __init__(self):
        self.db = Database()
        self.queue = SpoolQueue()
        self.checkpoint = CheckpointManager()
        self.rate_limiter = build_rate_limiter(self.db)
        self.consumer = Consumer(self.db, self.queue, self.rate_limiter, ScraperClient())
        self.worker = Worker(self.consumer)
        self.scheduler = None
        if settings.SEED_SCHEDULE_ENABLED:
            # One connection per thread
            self.scheduler = SeedScheduler(Seeder(Database(), self.queue, self.checkpoint), self.checkpoint)
        self.http_db = Database()
        self.http_server = None
        self.http_thread = None
        self.running = False

    def start(self):
        """Start the application."""
        logger.info("=" * 50)
        logger.info("License Scrape Queue")
        logger.info("=" * 50)
        logger.info(f"Spool: {settings.SPOOL_DIR}")
        logger.info(f"Collaborator: {settings.SCRAPER_BASE_URL}")
        logger.info(f"Batch size: {settings.BATCH_SIZE}, poll interval: {settings.POLL_INTERVAL}s")
        logger.info(f"Seed schedule: {'every ' + str(settings.SEED_INTERVAL_HOURS) + 'h' if self.scheduler else 'disabled'}")
        logger.info("=" * 50)

        settings.validate_config()
        self.running = True

        # Recover work interrupted by a previous crash
        self.queue.requeue_stale_inflight()
        try:
            self.db.reset_stuck_processing()
        except StorageError as e:
            logger.error(f"Startup reconciliation failed: {e}")

        self._start_http()
        self.worker.start()
        if self.scheduler:
            self.scheduler.start()
        logger.info("Started - consuming scrape queue")

    def stop(self):
        """Stop the application."""
        if not self.running:
            return
        self.running = False
        if self.scheduler:
            self.scheduler.stop()
        self.worker.stop()
        if self.http_server:
            self.http_server.shutdown()
        self.db.close()
        self.http_db.close()
        logger.info("Stopped")

    def run(self):
        """Main loop."""
        self.start()
        try:
            while self.running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        self.stop()

    def _start_http(self):
        seeder = Seeder(self.http_db, self.queue, self.checkpoint)
        flask_app = create_app(
            self.http_db,
            queue=self.queue,
            seeder=seeder,
            checkpoint=self.checkpoint,
            rate_limiter=self.rate_limiter.durable,
        )
        self.http_server = make_server(settings.HEALTH_HOST, settings.HEALTH_PORT, flask_app, threaded=False)
        self.http_thread = threading.Thread(target=self.http_server.serve_forever, name="http", daemon=True)
        self.http_thread.start()
        logger.info(f"Monitoring endpoints on http://{settings.HEALTH_HOST}:{settings.HEALTH_PORT}")


def command_seed(mode: Optional[str], jurisdictions: Optional[List[str]], force: bool) -> None:
    db = Database()
    try:
        seeder = Seeder(db, SpoolQueue(), CheckpointManager())
        result = seeder.seed(mode=mode, jurisdictions=jurisdictions, force=force)
        print(f"Queued: {result.queued}  Skipped: {result.skipped}  Errors: {result.errors}")
    finally:
        db.close()


def command_sweep(minutes: Optional[int]) -> None:
    db = Database()
    try:
        requeued = SpoolQueue().requeue_stale_inflight()
        reset = db.reset_stuck_processing(minutes)
        print(f"Requeued in-flight messages: {requeued}  Reset processing rows: {reset}")
    finally:
        db.close()


def command_init_db() -> None:
    db = Database()
    try:
        db.init_schema()
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="License scrape queue")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("run", help="Run the worker and monitoring endpoints (default)")

    seed_parser = sub.add_parser("seed", help="Publish work items for the target cells once")
    seed_parser.add_argument("--mode", choices=["test", "production"], default=None,
                             help="Built-in cell set (default: SEED_MODE)")
    seed_parser.add_argument("--jurisdictions", default=None,
                             help="Comma-separated jurisdiction codes, e.g. FL,TX")
    seed_parser.add_argument("--force", action="store_true",
                             help="Ignore the freshness window (terminal failures are still skipped)")

    sweep_parser = sub.add_parser("sweep", help="Reclaim stale in-flight messages and stuck processing rows")
    sweep_parser.add_argument("--minutes", type=int, default=None,
                              help="Processing age threshold (default: STUCK_PROCESSING_MINUTES)")

    sub.add_parser("init-db", help="Create the database schema")
    return parser


def main(argv: Optional[List[str]] = None):
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.cmd == "seed":
            jurisdictions = [j.strip() for j in args.jurisdictions.split(",")] if args.jurisdictions else None
            command_seed(args.mode, jurisdictions, args.force)
            return
        if args.cmd == "sweep":
            command_sweep(args.minutes)
            return
        if args.cmd == "init-db":
            command_init_db()
            return
    except StorageError as e:
        logger.error(f"Database error: {e}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    app = Application()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        app.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        app.run()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
