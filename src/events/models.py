# src/events/models.py
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from src.database.engine import utcnow


class EventAction(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"
    ERROR = "error"


class ScaleEvent(BaseModel):
    """One row of the autoscaler audit trail."""

    id: Optional[int] = None
    worker_name: str
    action: EventAction
    from_workers: int = 0
    to_workers: int = 0
    reason: Optional[str] = None
    queue_depth: int = 0
    latency_seconds: float = 0.0
    metrics_json: Optional[str] = None
    dry_run: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def scaled(self) -> bool:
        return self.action in (EventAction.SCALE_UP, EventAction.SCALE_DOWN)

    @property
    def metrics(self) -> Optional[Dict[str, Any]]:
        if not self.metrics_json:
            return None
        try:
            return json.loads(self.metrics_json)
        except ValueError:
            return None

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump(exclude={"id"})
        row["action"] = self.action.value
        return row
