# src/events/store.py
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from src.database.engine import as_utc, table_exists, utcnow
from src.database.schema import EVENTS_TABLE, create_autoscaler_tables, events_table
from src.log_handler.logging_config import get_logger
from .models import EventAction, ScaleEvent

logger = get_logger(__name__)

TABLE_EXISTS_CACHE_TTL = 300.0


def _default_stats() -> Dict[str, Any]:
    stats: Dict[str, Any] = {"total": 0, "avg_queue_depth": 0.0, "avg_latency": 0.0}
    for action in EventAction:
        stats[f"{action.value}_count"] = 0
    return stats


class ScaleEventStore:
    """
    Append-only audit trail of scaling outcomes.

    Auditing is best effort: a missing table or a failing database never
    raises out of this class. Writes return None, reads return empty results.
    """

    def __init__(self, engine: Engine, cache_ttl: float = TABLE_EXISTS_CACHE_TTL):
        self.engine = engine
        self.cache_ttl = cache_ttl
        self._table_exists: Optional[bool] = None
        self._checked_at: Optional[float] = None

    def table_exists(self) -> bool:
        now = time.monotonic()
        if self._table_exists is not None and now - self._checked_at < self.cache_ttl:
            return self._table_exists
        try:
            self._table_exists = table_exists(self.engine, EVENTS_TABLE)
        except SQLAlchemyError as e:
            logger.warning(f"Could not check for {EVENTS_TABLE}: {str(e)}")
            self._table_exists = False
        self._checked_at = now
        return self._table_exists

    def create_table(self) -> None:
        create_autoscaler_tables(self.engine, tables=[events_table])
        self._table_exists = True
        self._checked_at = time.monotonic()

    def record(self, event: ScaleEvent) -> Optional[ScaleEvent]:
        if not self.table_exists():
            logger.debug(f"{EVENTS_TABLE} does not exist, not recording {event.action.value} event")
            return None
        try:
            with self.engine.begin() as conn:
                result = conn.execute(insert(events_table).values(**event.to_row()))
                event_id = result.inserted_primary_key[0] if result.inserted_primary_key else None
        except SQLAlchemyError as e:
            logger.warning(f"Failed to record scale event: {str(e)}")
            return None
        return event.model_copy(update={"id": event_id})

    def _rows_to_events(self, rows) -> List[ScaleEvent]:
        events = []
        for row in rows:
            data = dict(row._mapping)
            data["created_at"] = as_utc(data["created_at"])
            events.append(ScaleEvent(**data))
        return events

    def recent(self, limit: int = 50, worker_name: Optional[str] = None) -> List[ScaleEvent]:
        if not self.table_exists():
            return []
        stmt = select(events_table).order_by(events_table.c.created_at.desc(), events_table.c.id.desc())
        if worker_name is not None:
            stmt = stmt.where(events_table.c.worker_name == worker_name)
        try:
            with self.engine.connect() as conn:
                return self._rows_to_events(conn.execute(stmt.limit(limit)))
        except SQLAlchemyError as e:
            logger.warning(f"Failed to read scale events: {str(e)}")
            return []

    def by_action(self, action: EventAction, limit: int = 50) -> List[ScaleEvent]:
        if not self.table_exists():
            return []
        stmt = (
            select(events_table)
            .where(events_table.c.action == EventAction(action).value)
            .order_by(events_table.c.created_at.desc(), events_table.c.id.desc())
            .limit(limit)
        )
        try:
            with self.engine.connect() as conn:
                return self._rows_to_events(conn.execute(stmt))
        except SQLAlchemyError as e:
            logger.warning(f"Failed to read scale events: {str(e)}")
            return []

    def stats(
        self, since: Optional[datetime] = None, worker_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """Counts per action plus overall average depth and latency since ``since`` (24h default)."""
        stats = _default_stats()
        if not self.table_exists():
            return stats

        since = since or utcnow() - timedelta(hours=24)
        stmt = (
            select(
                events_table.c.action,
                func.count().label("event_count"),
                func.avg(events_table.c.queue_depth).label("avg_queue_depth"),
                func.avg(events_table.c.latency_seconds).label("avg_latency"),
            )
            .where(events_table.c.created_at >= since)
            .group_by(events_table.c.action)
        )
        if worker_name is not None:
            stmt = stmt.where(events_table.c.worker_name == worker_name)

        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to compute scale event stats: {str(e)}")
            return stats

        weighted_depth = 0.0
        weighted_latency = 0.0
        for row in rows:
            count = int(row.event_count)
            stats["total"] += count
            stats[f"{row.action}_count"] = count
            weighted_depth += float(row.avg_queue_depth or 0) * count
            weighted_latency += float(row.avg_latency or 0) * count

        if stats["total"]:
            stats["avg_queue_depth"] = weighted_depth / stats["total"]
            stats["avg_latency"] = weighted_latency / stats["total"]
        return stats

    def count(self, since: Optional[datetime] = None) -> int:
        if not self.table_exists():
            return 0
        stmt = select(func.count()).select_from(events_table)
        if since is not None:
            stmt = stmt.where(events_table.c.created_at >= since)
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(stmt).scalar() or 0)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to count scale events: {str(e)}")
            return 0

    def cleanup(self, keep_days: int = 30) -> int:
        """Delete events older than ``keep_days``; returns the number removed."""
        if not self.table_exists():
            return 0
        cutoff = utcnow() - timedelta(days=keep_days)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(delete(events_table).where(events_table.c.created_at < cutoff))
        except SQLAlchemyError as e:
            logger.warning(f"Failed to clean up scale events: {str(e)}")
            return 0
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Removed {deleted} scale events older than {keep_days} days")
        return deleted
