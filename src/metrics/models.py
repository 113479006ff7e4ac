# src/metrics/models.py
from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from src.database.engine import utcnow


class MetricsSnapshot(BaseModel):
    """Point-in-time view of the job backlog, created fresh for every run."""

    model_config = ConfigDict(frozen=True)

    queue_depth: int = Field(default=0, ge=0)
    oldest_job_age_seconds: float = Field(default=0.0, ge=0.0)
    jobs_completed_per_minute: int = Field(default=0, ge=0)
    claimed_jobs: int = Field(default=0, ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    blocked_jobs: int = Field(default=0, ge=0)
    active_workers: int = Field(default=0, ge=0)
    per_queue_breakdown: Dict[str, int] = Field(default_factory=dict)
    collected_at: datetime = Field(default_factory=utcnow)

    @property
    def idle(self) -> bool:
        return self.queue_depth == 0 and self.claimed_jobs == 0

    @property
    def latency_seconds(self) -> float:
        return self.oldest_job_age_seconds

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
