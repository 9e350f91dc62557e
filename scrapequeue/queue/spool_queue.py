"""Spool-directory based queue.

Each queued work item is one JSON file named after the work-item key:

* ``<key>.msg``      ready for delivery once its mtime (the not-before time) has passed
* ``<key>.inflight`` claimed by a consumer, awaiting ack / retry / release
* ``<key>.bad``      unreadable payload, parked for inspection

Claiming is an atomic rename, so several consumer processes can share a spool.
"""
import json
import os
import re
import time
from pathlib import Path
from typing import Optional, List, Dict

from scrapequeue import settings
from scrapequeue.logging_conf import logger
from scrapequeue.models import WorkItem
from scrapequeue.queue.models import QueueMessage

READY = ".msg"
INFLIGHT = ".inflight"
BAD = ".bad"


class SpoolQueue:
    """A minimal spool-based queue with delayed redelivery."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir: Path = Path(base_dir or settings.SPOOL_DIR)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def publish(self, item: WorkItem, delay_seconds: float = 0) -> bool:
        """Enqueue an item. Returns False when the same work item is already queued."""
        stem = self._safe_id(item)
        path = self.base_dir / f"{stem}{READY}"
        if (self.base_dir / f"{stem}{INFLIGHT}").exists():
            logger.debug(f"Spool item already in flight {item.label}")
            return False

        message = QueueMessage.create(item)
        # Exclusive create to naturally deduplicate
        try:
            with open(path, "x") as f:
                json.dump(message.to_dict(), f)
        except FileExistsError:
            logger.debug(f"Spool item already present {item.label}")
            return False

        self._set_not_before(path, delay_seconds)
        logger.info(
            f"Spool enqueued {item.label}",
            extra={"source": item.source, "message_id": message.id}
        )
        return True

    def dequeue(self) -> Optional[QueueMessage]:
        """Return the next deliverable message, if any."""
        batch = self.dequeue_batch(max_items=1)
        return batch[0] if batch else None

    def dequeue_batch(self, max_items: int = 10) -> List[QueueMessage]:
        """Claim up to max_items messages whose not-before time has passed."""
        messages = []
        now = time.time()
        for file_path in self._list_files(READY):
            if len(messages) >= max_items:
                break
            if self._mtime(file_path) > now:
                continue
            message = self._claim_file(file_path)
            if message:
                messages.append(message)
        return messages

    def ack(self, message: QueueMessage) -> None:
        """Acknowledge a delivery by deleting its file."""
        if not message.path:
            return
        message.path.unlink(missing_ok=True)
        logger.debug(f"Spool acked {message.item.label}")
        message.path = None

    def retry(self, message: QueueMessage, delay_seconds: float) -> None:
        """Schedule redelivery after delay_seconds; the delivery counts as an attempt."""
        self._return_to_ready(message, delay_seconds)
        logger.info(
            f"Spool retry in ~{int(delay_seconds)}s: {message.item.label} (attempt {message.attempts})",
            extra={"source": message.item.source, "message_id": message.id}
        )

    def release(self, message: QueueMessage, delay_seconds: float = 0) -> None:
        """Hand a delivery back without counting it as an attempt."""
        message.attempts = max(0, message.attempts - 1)
        self._return_to_ready(message, delay_seconds)
        logger.info(
            f"Spool released {message.item.label} (redeliver in ~{delay_seconds:.1f}s)",
            extra={"source": message.item.source, "message_id": message.id}
        )

    def requeue_stale_inflight(self, max_age_seconds: Optional[int] = None) -> int:
        """Return in-flight files older than the visibility timeout to the ready set."""
        max_age = settings.INFLIGHT_VISIBILITY_SECONDS if max_age_seconds is None else max_age_seconds
        now = time.time()
        count = 0
        for file_path in self._list_files(INFLIGHT):
            if now - self._mtime(file_path) < max_age:
                continue
            try:
                os.replace(file_path, file_path.with_suffix(READY))
                count += 1
            except FileNotFoundError:
                continue
        if count > 0:
            logger.warning(f"Requeued {count} stale in-flight messages")
        return count

    def size(self) -> Dict[str, int]:
        """Approximate number of queued files per state."""
        return {
            "ready": len(self._list_files(READY)),
            "inflight": len(self._list_files(INFLIGHT)),
            "bad": len(self._list_files(BAD)),
        }

    def _safe_id(self, item: WorkItem) -> str:
        """Make a safe filename from a work-item key."""
        value = "__".join(item.key)
        return re.sub(r"[^A-Za-z0-9._-]", "_", value)[:200]

    def _list_files(self, suffix: str) -> List[Path]:
        """List files with a given suffix, oldest first."""
        try:
            files = [p for p in self.base_dir.iterdir() if p.is_file() and p.suffix == suffix]
        except FileNotFoundError:
            return []
        files.sort(key=self._mtime)
        return files

    def _mtime(self, path: Path) -> float:
        try:
            return path.stat().st_mtime
        except FileNotFoundError:
            return float("inf")

    def _set_not_before(self, path: Path, delay_seconds: float) -> None:
        not_before = time.time() + max(0.0, delay_seconds)
        os.utime(path, (not_before, not_before))

    def _claim_file(self, file_path: Path) -> Optional[QueueMessage]:
        """Claim a ready file and build its message; None if another consumer won."""
        inflight_path = file_path.with_suffix(INFLIGHT)
        try:
            os.replace(file_path, inflight_path)
        except FileNotFoundError:
            return None

        try:
            with open(inflight_path, "r") as f:
                message = QueueMessage.from_dict(json.load(f), path=inflight_path)
        except (ValueError, KeyError) as e:
            logger.error(f"Unreadable spool message {file_path.name}: {e}")
            os.replace(inflight_path, inflight_path.with_suffix(BAD))
            return None

        message.attempts += 1
        self._write(inflight_path, message)
        return message

    def _return_to_ready(self, message: QueueMessage, delay_seconds: float) -> None:
        if not message.path:
            return
        self._write(message.path, message)
        ready_path = message.path.with_suffix(READY)
        os.replace(message.path, ready_path)
        self._set_not_before(ready_path, delay_seconds)
        message.path = None

    def _write(self, path: Path, message: QueueMessage) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(message.to_dict(), f)
        os.replace(tmp_path, path)
