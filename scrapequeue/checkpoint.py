"""Checkpoint management for tracking seed runs."""
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Any

from scrapequeue import settings
from scrapequeue.logging_conf import logger
from scrapequeue.models import utcnow, parse_timestamp


class CheckpointManager:
    """Persists the outcome of the last seed run."""

    def __init__(self, checkpoint_dir: Optional[Path] = None):
        self.checkpoint_file: Path = Path(checkpoint_dir or settings.CHECKPOINT_DIR) / "last_seed_run.json"
        self.checkpoint_file.parent.mkdir(parents=True, exist_ok=True)

    def get_last_seed_run(self) -> Optional[Dict[str, Any]]:
        """Return the last saved seed run, or None if there is none or it is unreadable."""
        if not self.checkpoint_file.exists():
            return None
        try:
            with open(self.checkpoint_file, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read checkpoint: {e}")
            return None

    def get_last_seed_time(self) -> Optional[datetime]:
        data = self.get_last_seed_run()
        if not data:
            return None
        try:
            return parse_timestamp(data.get("timestamp"))
        except ValueError as e:
            logger.warning(f"Bad checkpoint timestamp: {e}")
            return None

    def is_seed_due(self, interval_hours: Optional[float] = None) -> bool:
        interval = settings.SEED_INTERVAL_HOURS if interval_hours is None else interval_hours
        last = self.get_last_seed_time()
        return last is None or utcnow() - last >= timedelta(hours=interval)

    def save_seed_run(self, mode: str, result: Dict[str, int]) -> None:
        """Save the seed run outcome with the current time."""
        data = {
            "timestamp": utcnow().isoformat(),
            "mode": mode,
            "result": result,
        }
        try:
            with open(self.checkpoint_file, "w") as f:
                json.dump(data, f, indent=2)
            logger.debug(f"Saved checkpoint: {data['timestamp']}")
        except OSError as e:
            logger.error(f"Failed to save checkpoint: {e}", exc_info=True)
