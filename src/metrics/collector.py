# src/metrics/collector.py
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from src.config.models import AutoscalerConfig
from src.database.engine import as_naive_utc, as_utc, utcnow
from src.database.schema import job_store_tables
from src.log_handler.logging_config import get_logger
from .exceptions import MetricsError
from .models import MetricsSnapshot

ACTIVE_WORKER_WINDOW = timedelta(minutes=5)
THROUGHPUT_WINDOW = timedelta(minutes=1)
WORKER_PROCESS_KIND = "Worker"


class MetricsCollector:
    """Reads backlog counters from the job store.

    The job store is never written to. Every query runs on one connection so
    the snapshot is as consistent as the database isolation level allows.
    """

    def __init__(self, config: AutoscalerConfig, engine: Optional[Engine] = None):
        self.config = config
        self._engine = engine
        self.tables = job_store_tables(config.table_prefix)
        self.logger = get_logger(__name__, config.name)

    @property
    def engine(self) -> Engine:
        engine = self._engine or self.config.get_engine()
        if engine is None:
            raise MetricsError(
                f"No database configured for worker group '{self.config.name}'"
            )
        return engine

    def collect(self) -> MetricsSnapshot:
        now = utcnow()
        try:
            with self.engine.connect() as conn:
                snapshot = MetricsSnapshot(
                    queue_depth=self._queue_depth(conn),
                    oldest_job_age_seconds=self._oldest_job_age_seconds(conn, now),
                    jobs_completed_per_minute=self._jobs_completed_per_minute(conn, now),
                    claimed_jobs=self._count(conn, self.tables.claimed_executions),
                    failed_jobs=self._count(conn, self.tables.failed_executions),
                    blocked_jobs=self._count(conn, self.tables.blocked_executions),
                    active_workers=self._active_workers(conn, now),
                    per_queue_breakdown=self._per_queue_breakdown(conn),
                    collected_at=now,
                )
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to collect metrics: {str(e)}")
            raise MetricsError(f"Failed to collect metrics: {str(e)}") from e

        self.logger.debug(
            f"Collected metrics: depth={snapshot.queue_depth} "
            f"latency={round(snapshot.oldest_job_age_seconds)}s "
            f"claimed={snapshot.claimed_jobs} workers={snapshot.active_workers}"
        )
        return snapshot

    def _filter(self, stmt, table):
        if self.config.queues:
            return stmt.where(table.c.queue_name.in_(self.config.queues))
        return stmt

    def _count(self, conn: Connection, table) -> int:
        return int(conn.execute(select(func.count()).select_from(table)).scalar() or 0)

    def _queue_depth(self, conn: Connection) -> int:
        ready = self.tables.ready_executions
        stmt = self._filter(select(func.count()).select_from(ready), ready)
        return int(conn.execute(stmt).scalar() or 0)

    def _oldest_job_age_seconds(self, conn: Connection, now) -> float:
        ready = self.tables.ready_executions
        stmt = self._filter(select(func.min(ready.c.created_at)), ready)
        oldest = as_utc(conn.execute(stmt).scalar())
        if oldest is None:
            return 0.0
        # Clock skew between app and database hosts can make this negative
        return max((now - oldest).total_seconds(), 0.0)

    def _jobs_completed_per_minute(self, conn: Connection, now) -> int:
        jobs = self.tables.jobs
        stmt = self._filter(
            select(func.count())
            .select_from(jobs)
            .where(jobs.c.finished_at.is_not(None))
            .where(jobs.c.finished_at > as_naive_utc(now - THROUGHPUT_WINDOW)),
            jobs,
        )
        return int(conn.execute(stmt).scalar() or 0)

    def _active_workers(self, conn: Connection, now) -> int:
        processes = self.tables.processes
        stmt = (
            select(func.count())
            .select_from(processes)
            .where(processes.c.kind == WORKER_PROCESS_KIND)
            .where(processes.c.last_heartbeat_at > as_naive_utc(now - ACTIVE_WORKER_WINDOW))
        )
        return int(conn.execute(stmt).scalar() or 0)

    def _per_queue_breakdown(self, conn: Connection) -> Dict[str, int]:
        ready = self.tables.ready_executions
        depth = func.count().label("depth")
        stmt = self._filter(
            select(ready.c.queue_name, depth).group_by(ready.c.queue_name), ready
        ).order_by(depth.desc())
        return {row.queue_name: int(row.depth) for row in conn.execute(stmt)}
