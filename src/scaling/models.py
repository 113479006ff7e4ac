# src/scaling/models.py
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from src.database.engine import utcnow
from src.metrics.models import MetricsSnapshot


class ScaleAction(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    NO_CHANGE = "no_change"


class Decision(BaseModel):
    """Outcome of one evaluation. Replaced, never edited, when the target is clamped."""

    model_config = ConfigDict(frozen=True)

    action: ScaleAction
    from_workers: int = Field(ge=0)
    to_workers: int = Field(ge=0)
    reason: str

    @property
    def delta(self) -> int:
        return self.to_workers - self.from_workers

    @property
    def scale_up(self) -> bool:
        return self.action == ScaleAction.SCALE_UP

    @property
    def scale_down(self) -> bool:
        return self.action == ScaleAction.SCALE_DOWN

    @property
    def no_change(self) -> bool:
        return self.action == ScaleAction.NO_CHANGE

    def with_target(self, to_workers: int) -> "Decision":
        return self.model_copy(update={"to_workers": to_workers})


class ScaleResult(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    success: bool
    decision: Optional[Decision] = None
    metrics: Optional[MetricsSnapshot] = None
    error: Optional[Exception] = None
    skipped_reason: Optional[str] = None
    executed_at: datetime = Field(default_factory=utcnow)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    @property
    def scaled(self) -> bool:
        return (
            self.success
            and not self.skipped
            and self.decision is not None
            and not self.decision.no_change
        )
