# src/scaling/scaler.py
import asyncio
from typing import Optional

from src.config.models import AutoscalerConfig
from src.coordination.advisory_lock import AdvisoryLock
from src.events.models import EventAction, ScaleEvent
from src.events.store import ScaleEventStore
from src.log_handler.logging_config import get_logger
from src.metrics.collector import MetricsCollector
from src.metrics.models import MetricsSnapshot
from .cooldown import CooldownStore, CooldownTracker, DatabaseCooldownStore
from .decision_engine import DISABLED_REASON, DecisionEngine
from .models import Decision, ScaleResult

LOCK_CONTENDED_REASON = "Could not acquire advisory lock (another instance is running)"


class Scaler:
    """
    Runs one scaling pass for a worker group.

    lock -> metrics -> current workers -> decide -> cooldown -> re-verify ->
    clamp -> scale -> record cooldown -> audit -> unlock.

    ``run`` never raises: contention becomes a skipped result and failures an
    error result. ``run_blocking`` waits for the lock and raises LockError when
    it cannot get it within the lock timeout.
    """

    def __init__(
        self,
        config: AutoscalerConfig,
        lock: Optional[AdvisoryLock] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        decision_engine: Optional[DecisionEngine] = None,
        adapter=None,
        cooldown_tracker: Optional[CooldownTracker] = None,
        event_store: Optional[ScaleEventStore] = None,
        cooldown_store: Optional[CooldownStore] = None,
    ):
        self.config = config
        self.decision_engine = decision_engine or DecisionEngine(config)
        self._lock = lock
        self._metrics_collector = metrics_collector
        self._adapter = adapter
        self._cooldown_tracker = cooldown_tracker
        self._cooldown_store = cooldown_store
        self._event_store = event_store
        self.logger = get_logger(__name__, config.name)

    # Collaborators are built on first use so a Scaler can be created without a database

    @property
    def lock(self) -> AdvisoryLock:
        if self._lock is None:
            self._lock = AdvisoryLock(self.config)
        return self._lock

    @property
    def metrics_collector(self) -> MetricsCollector:
        if self._metrics_collector is None:
            self._metrics_collector = MetricsCollector(self.config)
        return self._metrics_collector

    @property
    def adapter(self):
        if self._adapter is None:
            self._adapter = self.config.get_adapter()
        return self._adapter

    @property
    def cooldown_tracker(self) -> CooldownTracker:
        if self._cooldown_tracker is None:
            persistent_store = None
            engine = self.config.get_engine()
            if self.config.persist_cooldowns and engine is not None:
                persistent_store = DatabaseCooldownStore(engine)
            self._cooldown_tracker = CooldownTracker(
                self.config, store=self._cooldown_store, persistent_store=persistent_store
            )
        return self._cooldown_tracker

    @property
    def event_store(self) -> Optional[ScaleEventStore]:
        if self._event_store is None:
            engine = self.config.get_engine()
            if engine is not None:
                self._event_store = ScaleEventStore(engine)
        return self._event_store

    async def run(self) -> ScaleResult:
        if not self.config.enabled:
            return self._skipped_result(DISABLED_REASON)

        try:
            acquired = await asyncio.to_thread(self.lock.try_lock)
        except Exception as e:
            # Building the lock can fail on a bad database_url or a missing driver
            return self._error_result(e)

        if not acquired:
            return self._skipped_result(LOCK_CONTENDED_REASON)

        try:
            return await self._execute_scaling()
        finally:
            self.lock.release()

    async def run_blocking(self, timeout: Optional[float] = None) -> ScaleResult:
        await self.lock.acquire_async(timeout)
        try:
            return await self._execute_scaling()
        finally:
            self.lock.release()

    async def _execute_scaling(self) -> ScaleResult:
        try:
            metrics = await asyncio.to_thread(self.metrics_collector.collect)
            current_workers = await self.adapter.current_workers()
            decision = self.decision_engine.decide(metrics, current_workers)

            self._log_decision(decision, metrics)

            if decision.no_change:
                return self._success_result(decision, metrics)

            if decision.scale_up and decision.from_workers == 0:
                self.logger.info("Scaling up from zero workers, bypassing cooldown")
            elif self.cooldown_tracker.cooldown_active_for(decision.action):
                remaining = self.cooldown_tracker.remaining(decision.action)
                return self._skipped_result(
                    f"Cooldown active ({round(remaining)}s remaining)",
                    decision=decision,
                    metrics=metrics,
                )

            return await self._apply_decision(decision, metrics)
        except Exception as e:
            return self._error_result(e)

    async def _apply_decision(self, decision: Decision, metrics: MetricsSnapshot) -> ScaleResult:
        # Another instance may have scaled between our read and now
        verified_current = await self.adapter.current_workers()

        if verified_current != decision.from_workers:
            self.logger.warning(
                f"Worker count changed during decision: expected={decision.from_workers}, "
                f"actual={verified_current}. Re-evaluating..."
            )
            if decision.scale_up and verified_current >= self.config.max_workers:
                return self._skipped_result(
                    f"Aborted scale_up: already at max_workers "
                    f"({verified_current} >= {self.config.max_workers})",
                    decision=decision,
                    metrics=metrics,
                )
            if decision.scale_down and verified_current <= self.config.min_workers:
                return self._skipped_result(
                    f"Aborted scale_down: already at min_workers "
                    f"({verified_current} <= {self.config.min_workers})",
                    decision=decision,
                    metrics=metrics,
                )

        target = max(self.config.min_workers, min(decision.to_workers, self.config.max_workers))
        if target != decision.to_workers:
            self.logger.warning(
                f"Clamping target from {decision.to_workers} to {target} "
                f"(limits: {self.config.min_workers}-{self.config.max_workers})"
            )
            decision = decision.with_target(target)

        await self.adapter.scale(target)
        self.cooldown_tracker.record(decision.action)
        self._record_event(
            EventAction(decision.action.value),
            decision.from_workers,
            decision.to_workers,
            decision.reason,
            metrics,
        )
        self._log_scale_action(decision)

        return ScaleResult(success=True, decision=decision, metrics=metrics)

    def _log_decision(self, decision: Decision, metrics: MetricsSnapshot) -> None:
        self.logger.info(
            f"Evaluated: action={decision.action.value} "
            f"workers={decision.from_workers}->{decision.to_workers} "
            f"queue_depth={metrics.queue_depth} "
            f"latency={round(metrics.oldest_job_age_seconds)}s "
            f'reason="{decision.reason}"'
        )

    def _log_scale_action(self, decision: Decision) -> None:
        prefix = "[DRY RUN] " if self.config.dry_run else ""
        self.logger.info(
            f"{prefix}Scaling {decision.action.value}: {decision.from_workers} -> "
            f"{decision.to_workers} workers ({decision.reason})"
        )

    def _record_event(
        self,
        action: EventAction,
        from_workers: int,
        to_workers: int,
        reason: str,
        metrics: Optional[MetricsSnapshot] = None,
    ) -> None:
        if not self.config.record_events:
            return
        try:
            store = self.event_store
            if store is None:
                return
            store.record(
                ScaleEvent(
                    worker_name=self.config.name,
                    action=action,
                    from_workers=from_workers,
                    to_workers=to_workers,
                    reason=reason,
                    queue_depth=metrics.queue_depth if metrics else 0,
                    latency_seconds=metrics.oldest_job_age_seconds if metrics else 0.0,
                    metrics_json=metrics.model_dump_json() if metrics else None,
                    dry_run=self.config.dry_run,
                )
            )
        except Exception as e:
            # The audit trail must never change the outcome of a run
            self.logger.warning(f"Failed to record {action.value} event: {str(e)}")

    def _success_result(self, decision: Decision, metrics: MetricsSnapshot) -> ScaleResult:
        if decision.no_change and self.config.record_all_events:
            self._record_event(
                EventAction.NO_CHANGE,
                decision.from_workers,
                decision.to_workers,
                decision.reason,
                metrics,
            )
        return ScaleResult(success=True, decision=decision, metrics=metrics)

    def _skipped_result(
        self,
        reason: str,
        decision: Optional[Decision] = None,
        metrics: Optional[MetricsSnapshot] = None,
    ) -> ScaleResult:
        self.logger.debug(f"Skipped: {reason}")
        self._record_event(
            EventAction.SKIPPED,
            decision.from_workers if decision else 0,
            decision.to_workers if decision else 0,
            reason,
            metrics,
        )
        return ScaleResult(
            success=True, decision=decision, metrics=metrics, skipped_reason=reason
        )

    def _error_result(self, error: Exception) -> ScaleResult:
        self.logger.error(f"Error: {type(error).__name__}: {str(error)}")
        self._record_event(EventAction.ERROR, 0, 0, f"{type(error).__name__}: {str(error)}")
        return ScaleResult(success=False, error=error)
