"""Queue data models."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional

from scrapequeue.models import WorkItem, utcnow, parse_timestamp


@dataclass
class QueueMessage:
    """Wire envelope for a work item plus delivery metadata."""

    id: str
    item: WorkItem
    attempts: int = 0  # deliveries so far, including the current one
    enqueued_at: datetime = field(default_factory=utcnow)
    path: Optional[Path] = None  # spool file backing the in-flight delivery

    @classmethod
    def create(cls, item: WorkItem):
        """Factory method to create a fresh, undelivered message."""
        return cls(id=uuid.uuid4().hex, item=item)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "attempts": self.attempts,
            "enqueued_at": self.enqueued_at.isoformat(),
            "body": self.item.to_message_body(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Optional[Path] = None) -> "QueueMessage":
        return cls(
            id=data["id"],
            item=WorkItem.from_message_body(data["body"]),
            attempts=int(data.get("attempts", 0)),
            enqueued_at=parse_timestamp(data.get("enqueued_at")) or utcnow(),
            path=path,
        )
