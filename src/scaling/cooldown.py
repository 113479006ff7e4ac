# src/scaling/cooldown.py
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, select, update, insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from src.config.models import AutoscalerConfig
from src.database.engine import as_utc, table_exists, utcnow
from src.database.schema import STATE_TABLE, state_table
from src.log_handler.logging_config import get_logger
from .models import ScaleAction

logger = get_logger(__name__)

TABLE_EXISTS_CACHE_TTL = 300.0

_COLUMNS = {
    ScaleAction.SCALE_UP: "last_scale_up_at",
    ScaleAction.SCALE_DOWN: "last_scale_down_at",
}


class CooldownStore(ABC):
    """Where last-scale timestamps live, keyed by worker group."""

    @abstractmethod
    def available(self) -> bool:
        pass

    @abstractmethod
    def last_scaled_at(self, key: str, action: ScaleAction) -> Optional[datetime]:
        pass

    @abstractmethod
    def record(self, key: str, action: ScaleAction, at: datetime) -> None:
        pass

    @abstractmethod
    def clear(self, key: Optional[str] = None) -> None:
        pass


class InMemoryCooldownStore(CooldownStore):
    """Process-local timestamps; lost on restart."""

    def __init__(self):
        self._lock = threading.Lock()
        self._cooldowns: Dict[str, Dict[ScaleAction, datetime]] = {}

    def available(self) -> bool:
        return True

    def last_scaled_at(self, key: str, action: ScaleAction) -> Optional[datetime]:
        with self._lock:
            return self._cooldowns.get(key, {}).get(action)

    def record(self, key: str, action: ScaleAction, at: datetime) -> None:
        with self._lock:
            self._cooldowns.setdefault(key, {})[action] = at

    def clear(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._cooldowns = {}
            else:
                self._cooldowns.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._cooldowns)


class DatabaseCooldownStore(CooldownStore):
    """
    Timestamps in the ``queue_autoscaler_state`` table, shared by every
    process pointed at the same database.

    The table is optional. Whether it exists is cached for five minutes; when
    it is missing every read returns None and every write is a no-op.
    """

    def __init__(self, engine: Engine, cache_ttl: float = TABLE_EXISTS_CACHE_TTL):
        self.engine = engine
        self.cache_ttl = cache_ttl
        self._table_exists: Optional[bool] = None
        self._checked_at: Optional[float] = None

    def reset_table_exists_cache(self) -> None:
        self._table_exists = None
        self._checked_at = None

    def available(self) -> bool:
        now = time.monotonic()
        if self._table_exists is not None and now - self._checked_at < self.cache_ttl:
            return self._table_exists

        try:
            self._table_exists = table_exists(self.engine, STATE_TABLE)
        except SQLAlchemyError as e:
            logger.warning(f"Could not check for {STATE_TABLE}: {str(e)}")
            self._table_exists = False
        self._checked_at = now
        return self._table_exists

    def _row(self, key: str):
        with self.engine.connect() as conn:
            return conn.execute(select(state_table).where(state_table.c.key == key)).first()

    def last_scaled_at(self, key: str, action: ScaleAction) -> Optional[datetime]:
        if not self.available():
            return None
        row = self._row(key)
        if row is None:
            return None
        return as_utc(getattr(row, _COLUMNS[action]))

    def record(self, key: str, action: ScaleAction, at: datetime) -> None:
        if not self.available():
            return
        column = _COLUMNS[action]
        now = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(state_table)
                .where(state_table.c.key == key)
                .values({column: at, "updated_at": now})
            )
            if not result.rowcount:
                conn.execute(
                    insert(state_table).values(
                        {"key": key, column: at, "created_at": now, "updated_at": now}
                    )
                )

    def clear(self, key: Optional[str] = None) -> None:
        if not self.available():
            return
        stmt = delete(state_table)
        if key is not None:
            stmt = stmt.where(state_table.c.key == key)
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def state(self, key: str) -> Dict[str, Any]:
        if not self.available():
            return {}
        row = self._row(key)
        if row is None:
            return {}
        return {
            "last_scale_up_at": as_utc(row.last_scale_up_at),
            "last_scale_down_at": as_utc(row.last_scale_down_at),
            "updated_at": as_utc(row.updated_at),
        }


class CooldownTracker:
    """
    Cooldown checks for one worker group.

    Reads come from the persistent store when it is available and fall back to
    the in-memory store otherwise. Writes go to both.
    """

    def __init__(
        self,
        config: AutoscalerConfig,
        store: Optional[CooldownStore] = None,
        persistent_store: Optional[CooldownStore] = None,
        key: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.key = key or config.name
        self.store = store or InMemoryCooldownStore()
        self.persistent_store = persistent_store
        self.clock = clock

    def _persistent(self) -> Optional[CooldownStore]:
        if self.persistent_store is None or not self.config.persist_cooldowns:
            return None
        return self.persistent_store if self.persistent_store.available() else None

    def _effective_cooldown(self, action: ScaleAction) -> float:
        if action == ScaleAction.SCALE_UP:
            return self.config.effective_scale_up_cooldown
        return self.config.effective_scale_down_cooldown

    def last_scaled_at(self, action: ScaleAction) -> Optional[datetime]:
        persistent = self._persistent()
        if persistent is not None:
            try:
                return persistent.last_scaled_at(self.key, action)
            except SQLAlchemyError as e:
                logger.warning(f"Falling back to in-memory cooldowns: {str(e)}")
        return self.store.last_scaled_at(self.key, action)

    def remaining(self, action: ScaleAction) -> float:
        if action not in _COLUMNS:
            return 0.0
        last = self.last_scaled_at(action)
        if last is None:
            return 0.0
        elapsed = (self.clock() - last).total_seconds()
        return max(self._effective_cooldown(action) - elapsed, 0.0)

    def cooldown_active_for(self, action: ScaleAction) -> bool:
        return self.remaining(action) > 0.0

    def record(self, action: ScaleAction) -> None:
        if action not in _COLUMNS:
            return
        now = self.clock()
        persistent = self._persistent()
        if persistent is not None:
            try:
                persistent.record(self.key, action, now)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to persist cooldown for '{self.key}': {str(e)}")
        self.store.record(self.key, action, now)

    def reset(self) -> None:
        persistent = self._persistent()
        if persistent is not None:
            try:
                persistent.clear(self.key)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to clear persisted cooldown for '{self.key}': {str(e)}")
        self.store.clear(self.key)

    def state(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "last_scale_up_at": self.last_scaled_at(ScaleAction.SCALE_UP),
            "last_scale_down_at": self.last_scaled_at(ScaleAction.SCALE_DOWN),
            "scale_up_cooldown_remaining": self.remaining(ScaleAction.SCALE_UP),
            "scale_down_cooldown_remaining": self.remaining(ScaleAction.SCALE_DOWN),
            "persistent": self._persistent() is not None,
        }
