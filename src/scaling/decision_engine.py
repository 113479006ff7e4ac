# src/scaling/decision_engine.py
import math
from typing import Optional

from src.config.models import AutoscalerConfig, ScalingStrategy
from src.metrics.models import MetricsSnapshot
from .models import Decision, ScaleAction

DISABLED_REASON = "Autoscaler is disabled"
IDLE_REASON = "queue is idle (no pending or claimed jobs)"


def _fmt(value: float) -> str:
    return f"{value:g}"


def _seconds(value: float) -> int:
    return int(round(value))


class DecisionEngine:
    """
    Turns a metrics snapshot and the current fleet size into a Decision.

    ``decide`` has no side effects: the same inputs always give the same
    Decision. Scale targets are kept within ``[min_workers, max_workers]``.

    Scale up when the queue is deep OR the oldest job is old. Scale down only
    when the queue is shallow AND jobs are fresh, or when nothing is pending
    or running at all.
    """

    def __init__(self, config: AutoscalerConfig):
        self.config = config

    def decide(
        self,
        metrics: MetricsSnapshot,
        current_workers: int,
        config: Optional[AutoscalerConfig] = None,
    ) -> Decision:
        config = config or self.config

        if not config.enabled:
            return self._no_change(current_workers, DISABLED_REASON)

        if current_workers == 0 and config.scale_from_zero_enabled:
            decision = self._scale_from_zero(metrics, config)
            if decision is not None:
                return decision

        if self._should_scale_up(metrics, current_workers, config):
            target = self._clamp(self._scale_up_target(metrics, current_workers, config), config)
            return Decision(
                action=ScaleAction.SCALE_UP,
                from_workers=current_workers,
                to_workers=target,
                reason=self._scale_up_reason(metrics, current_workers, target, config),
            )

        if self._should_scale_down(metrics, current_workers, config):
            target = self._clamp(self._scale_down_target(metrics, current_workers, config), config)
            return Decision(
                action=ScaleAction.SCALE_DOWN,
                from_workers=current_workers,
                to_workers=target,
                reason=self._scale_down_reason(metrics, current_workers, target, config),
            )

        return self._no_change(current_workers, self._no_change_reason(metrics, current_workers, config))

    # Conditions

    def _depth_high(self, metrics: MetricsSnapshot, config: AutoscalerConfig) -> bool:
        return metrics.queue_depth >= config.scale_up_queue_depth

    def _latency_high(self, metrics: MetricsSnapshot, config: AutoscalerConfig) -> bool:
        return metrics.oldest_job_age_seconds >= config.scale_up_latency_seconds

    def _load_low(self, metrics: MetricsSnapshot, config: AutoscalerConfig) -> bool:
        depth_low = metrics.queue_depth <= config.scale_down_queue_depth
        latency_low = metrics.oldest_job_age_seconds <= config.scale_down_latency_seconds
        return (depth_low and latency_low) or metrics.idle

    def _should_scale_up(self, metrics, current_workers: int, config: AutoscalerConfig) -> bool:
        if current_workers >= config.max_workers:
            return False
        return self._depth_high(metrics, config) or self._latency_high(metrics, config)

    def _should_scale_down(self, metrics, current_workers: int, config: AutoscalerConfig) -> bool:
        if current_workers <= config.min_workers:
            return False
        return self._load_low(metrics, config)

    # Scale from zero

    def _scale_from_zero(
        self, metrics: MetricsSnapshot, config: AutoscalerConfig
    ) -> Optional[Decision]:
        """Lower bar for a cold fleet; None means fall through to the normal checks."""
        depth_bar = config.scale_from_zero_queue_depth
        if depth_bar is None:
            depth_bar = 1
        latency_bar = config.scale_from_zero_latency_seconds or 0.0

        if metrics.queue_depth < depth_bar:
            return None

        latency = metrics.oldest_job_age_seconds
        if latency < latency_bar:
            if self._should_scale_up(metrics, 0, config):
                return None
            # Give a peer process the chance to pick up a fresh job first
            return self._no_change(
                0,
                f"scale_from_zero: waiting, oldest job latency={_seconds(latency)}s "
                f"< {_fmt(latency_bar)}s",
            )

        target = self._clamp(min(config.scale_up_increment, config.max_workers), config)
        return Decision(
            action=ScaleAction.SCALE_UP,
            from_workers=0,
            to_workers=target,
            reason=(
                f"scale_from_zero: queue_depth={metrics.queue_depth} >= {depth_bar}, "
                f"latency={_seconds(latency)}s >= {_fmt(latency_bar)}s"
            ),
        )

    # Targets

    def _clamp(self, target: int, config: AutoscalerConfig) -> int:
        return max(config.min_workers, min(target, config.max_workers))

    def _scale_up_target(self, metrics, current_workers: int, config: AutoscalerConfig) -> int:
        if config.scaling_strategy == ScalingStrategy.PROPORTIONAL:
            return current_workers + self._proportional_scale_up(metrics, config)
        # STEP_FUNCTION has no tiers yet and uses the fixed increment
        return current_workers + config.scale_up_increment

    def _scale_down_target(self, metrics, current_workers: int, config: AutoscalerConfig) -> int:
        if config.scaling_strategy == ScalingStrategy.PROPORTIONAL:
            if metrics.idle:
                return config.min_workers
            return current_workers - self._proportional_scale_down(metrics, config)
        return current_workers - config.scale_down_decrement

    def _proportional_scale_up(self, metrics: MetricsSnapshot, config: AutoscalerConfig) -> int:
        jobs_over = max(metrics.queue_depth - config.scale_up_queue_depth, 0)
        workers_for_depth = math.ceil(jobs_over / config.scale_up_jobs_per_worker)

        latency_over = max(metrics.oldest_job_age_seconds - config.scale_up_latency_seconds, 0.0)
        workers_for_latency = math.ceil(latency_over / config.scale_up_latency_per_worker)

        return max(config.scale_up_increment, workers_for_depth, workers_for_latency)

    def _proportional_scale_down(self, metrics: MetricsSnapshot, config: AutoscalerConfig) -> int:
        jobs_under = max(config.scale_down_queue_depth - metrics.queue_depth, 0)
        workers_to_remove = math.floor(jobs_under / config.scale_down_jobs_per_worker)
        return max(config.scale_down_decrement, workers_to_remove)

    # Reasons

    def _scale_up_reason(self, metrics, current_workers: int, target: int, config) -> str:
        reasons = []
        if self._depth_high(metrics, config):
            reasons.append(f"queue_depth={metrics.queue_depth} >= {config.scale_up_queue_depth}")
        if self._latency_high(metrics, config):
            reasons.append(
                f"latency={_seconds(metrics.oldest_job_age_seconds)}s >= "
                f"{_fmt(config.scale_up_latency_seconds)}s"
            )
        reason = ", ".join(reasons)

        if config.scaling_strategy == ScalingStrategy.PROPORTIONAL:
            reason = f"{reason} [proportional: +{target - current_workers} workers]"
        return reason

    def _scale_down_reason(self, metrics, current_workers: int, target: int, config) -> str:
        if metrics.idle:
            reason = IDLE_REASON
        else:
            reasons = []
            if metrics.queue_depth <= config.scale_down_queue_depth:
                reasons.append(
                    f"queue_depth={metrics.queue_depth} <= {config.scale_down_queue_depth}"
                )
            if metrics.oldest_job_age_seconds <= config.scale_down_latency_seconds:
                reasons.append(
                    f"latency={_seconds(metrics.oldest_job_age_seconds)}s <= "
                    f"{_fmt(config.scale_down_latency_seconds)}s"
                )
            reason = ", ".join(reasons)

        if config.scaling_strategy == ScalingStrategy.PROPORTIONAL:
            reason = f"{reason} [proportional: -{current_workers - target} workers]"
        return reason

    def _no_change_reason(self, metrics, current_workers: int, config: AutoscalerConfig) -> str:
        would_scale_up = self._depth_high(metrics, config) or self._latency_high(metrics, config)

        if current_workers >= config.max_workers and would_scale_up:
            return f"at max_workers ({config.max_workers})"
        if current_workers <= config.min_workers and self._load_low(metrics, config):
            return f"at min_workers ({config.min_workers})"
        return (
            f"metrics within normal range (depth={metrics.queue_depth}, "
            f"latency={_seconds(metrics.oldest_job_age_seconds)}s)"
        )

    def _no_change(self, current_workers: int, reason: str) -> Decision:
        return Decision(
            action=ScaleAction.NO_CHANGE,
            from_workers=current_workers,
            to_workers=current_workers,
            reason=reason,
        )
