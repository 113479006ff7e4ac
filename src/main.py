# src/main.py
import asyncio
import os
import threading
from typing import Any, Dict, List, Optional

from src.config import AutoscalerConfig, ConfigurationError
from src.metrics import MetricsCollector, MetricsSnapshot
from src.scaling import AutoscaleScheduler, InMemoryCooldownStore, ScaleResult, Scaler
from src.log_handler.logging_config import setup_logging, get_logger, shutdown_logging

logger = get_logger(__name__)


class AutoscalerRegistry:
    """
    Named worker-group configurations plus the in-memory cooldown state they share.

    Each worker group gets its own lock key and cooldown timestamps, so groups
    scale independently of one another.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._configurations: Dict[str, AutoscalerConfig] = {}
        self._scalers: Dict[str, Scaler] = {}
        self.cooldown_store = InMemoryCooldownStore()

    def configure(
        self, name: str = "default", config: Optional[AutoscalerConfig] = None, **settings: Any
    ) -> AutoscalerConfig:
        """Register (or replace) a worker group. Raises ConfigurationError listing every problem."""
        if config is None:
            config = AutoscalerConfig.build(name=name, **settings)
        elif settings:
            raise ConfigurationError("Pass either a config object or settings, not both")
        elif config.name != name and name != "default":
            update: Dict[str, Any] = {"name": name}
            if config.lock_key == f"queue_autoscaler_{config.name}":
                update["lock_key"] = f"queue_autoscaler_{name}"
            config = config.model_copy(update=update)

        config.validate_config()

        with self._lock:
            self._configurations[config.name] = config
            self._scalers.pop(config.name, None)

        logger.info(f"Configured worker group '{config.name}'")
        return config

    def config(self, name: str = "default") -> AutoscalerConfig:
        with self._lock:
            config = self._configurations.get(name)
        if config is None:
            config = self.configure(name)
        return config

    def scaler(self, name: str = "default") -> Scaler:
        config = self.config(name)
        with self._lock:
            scaler = self._scalers.get(name)
            if scaler is None:
                scaler = Scaler(config, cooldown_store=self.cooldown_store)
                self._scalers[name] = scaler
        return scaler

    async def scale(self, name: str = "default", blocking: bool = False) -> ScaleResult:
        scaler = self.scaler(name)
        if blocking:
            return await scaler.run_blocking()
        return await scaler.run()

    async def scale_all(self) -> Dict[str, ScaleResult]:
        results: Dict[str, ScaleResult] = {}
        # Copy names so configure() during a pass cannot disturb the iteration
        for name in self.registered_workers():
            results[name] = await self.scale(name)
        return results

    def metrics(self, name: str = "default") -> MetricsSnapshot:
        return MetricsCollector(self.config(name)).collect()

    async def current_workers(self, name: str = "default") -> int:
        return await self.config(name).get_adapter().current_workers()

    def registered_workers(self) -> List[str]:
        with self._lock:
            return list(self._configurations)

    def cooldown_state(self, name: str = "default") -> Dict[str, Any]:
        return self.scaler(name).cooldown_tracker.state()

    def reset_cooldowns(self, name: Optional[str] = None) -> None:
        if name is not None:
            self.scaler(name).cooldown_tracker.reset()
            return
        for worker_name in self.registered_workers():
            self.scaler(worker_name).cooldown_tracker.reset()
        self.cooldown_store.clear()

    def reset_configuration(self) -> None:
        with self._lock:
            self._configurations = {}
            self._scalers = {}
        self.cooldown_store.clear()


registry = AutoscalerRegistry()


def configure(name: str = "default", config: Optional[AutoscalerConfig] = None, **settings: Any) -> AutoscalerConfig:
    return registry.configure(name, config, **settings)


def config(name: str = "default") -> AutoscalerConfig:
    return registry.config(name)


async def scale(name: str = "default", blocking: bool = False) -> ScaleResult:
    return await registry.scale(name, blocking=blocking)


async def scale_all() -> Dict[str, ScaleResult]:
    return await registry.scale_all()


def metrics(name: str = "default") -> MetricsSnapshot:
    return registry.metrics(name)


async def current_workers(name: str = "default") -> int:
    return await registry.current_workers(name)


def registered_workers() -> List[str]:
    return registry.registered_workers()


def cooldown_state(name: str = "default") -> Dict[str, Any]:
    return registry.cooldown_state(name)


def reset_cooldowns(name: Optional[str] = None) -> None:
    registry.reset_cooldowns(name)


def reset_configuration() -> None:
    registry.reset_configuration()


async def _run_scheduler(interval_seconds: float) -> None:
    scheduler = AutoscaleScheduler(
        scale_all=registry.scale_all,
        scale_one=registry.scale,
        interval_seconds=interval_seconds,
    )
    await scheduler.run_forever()


def run_app() -> None:
    """Standalone runner: configure the default worker group from the environment and autoscale."""
    setup_logging(log_file=os.environ.get("AUTOSCALER_LOG_FILE"))
    interval = float(os.environ.get("AUTOSCALER_INTERVAL_SECONDS", "60"))

    try:
        registry.configure(config=AutoscalerConfig.from_env())
        logger.info(f"Starting autoscaler for worker groups: {', '.join(registry.registered_workers())}")
        asyncio.run(_run_scheduler(interval))
    except KeyboardInterrupt:
        logger.info("Autoscaler interrupted, shutting down")
    except ConfigurationError as e:
        logger.error(f"Invalid autoscaler configuration: {str(e)}")
        raise
    finally:
        shutdown_logging()


if __name__ == "__main__":
    run_app()
