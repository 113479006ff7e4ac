# src/scaling/scheduler.py
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from src.log_handler.logging_config import get_logger
from .models import ScaleResult

logger = get_logger(__name__)

ScaleAll = Callable[[], Awaitable[Dict[str, ScaleResult]]]
ScaleOne = Callable[[str], Awaitable[ScaleResult]]


class AutoscaleScheduler:
    """Periodically runs the autoscaler for every (or a chosen set of) worker group(s)."""

    def __init__(
        self,
        scale_all: ScaleAll,
        scale_one: Optional[ScaleOne] = None,
        interval_seconds: float = 60.0,
        worker_names: Optional[List[str]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if worker_names and scale_one is None:
            raise ValueError("scale_one is required when worker_names are given")

        self.scale_all = scale_all
        self.scale_one = scale_one
        self.interval_seconds = interval_seconds
        self.worker_names = worker_names
        self.running = False
        self.last_results: Dict[str, ScaleResult] = {}
        self._task: Optional[asyncio.Task] = None
        logger.info(f"AutoscaleScheduler initialized (interval={interval_seconds}s)")

    async def start(self) -> None:
        """Start the autoscale loop as a background task."""
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._scale_loop())
        logger.info("Autoscale scheduler started")

    async def stop(self) -> None:
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Autoscale scheduler stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._task
        finally:
            await self.stop()

    async def _scale_loop(self) -> None:
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in autoscale loop: {str(e)}")
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> Dict[str, ScaleResult]:
        if self.worker_names:
            results = {}
            for name in list(self.worker_names):
                results[name] = await self.scale_one(name)
        else:
            results = await self.scale_all()

        for name, result in results.items():
            self._log_result(name, result)
        self.last_results = results
        return results

    def _log_result(self, name: str, result: ScaleResult) -> None:
        if not result.success:
            logger.error(f"[{name}] Autoscale failed: {result.error}")
        elif result.skipped:
            logger.info(f"[{name}] Autoscale skipped: {result.skipped_reason}")
        elif result.scaled:
            decision = result.decision
            logger.info(
                f"[{name}] Scaled {decision.action.value}: "
                f"{decision.from_workers} -> {decision.to_workers}"
            )
        else:
            logger.debug(f"[{name}] No change: {result.decision.reason if result.decision else ''}")
