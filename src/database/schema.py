# src/database/schema.py
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    BigInteger,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.engine import Engine

LOCKS_TABLE = "queue_autoscaler_locks"
STATE_TABLE = "queue_autoscaler_state"
EVENTS_TABLE = "queue_autoscaler_events"

metadata = MetaData()

# One row per held lock; the primary key is what makes acquisition exclusive
locks_table = Table(
    LOCKS_TABLE,
    metadata,
    Column("lock_key", String(255), primary_key=True),
    Column("lock_id", BigInteger, nullable=False),
    Column("locked_at", DateTime(timezone=True), nullable=False),
    Column("locked_by", String(255), nullable=False),
)

state_table = Table(
    STATE_TABLE,
    metadata,
    Column("key", String(255), primary_key=True),
    Column("last_scale_up_at", DateTime(timezone=True), nullable=True),
    Column("last_scale_down_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

events_table = Table(
    EVENTS_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("worker_name", String(255), nullable=False, index=True),
    Column("action", String(32), nullable=False, index=True),
    Column("from_workers", Integer, nullable=False, default=0),
    Column("to_workers", Integer, nullable=False, default=0),
    Column("reason", Text, nullable=True),
    Column("queue_depth", Integer, nullable=False, default=0),
    Column("latency_seconds", Float, nullable=False, default=0.0),
    Column("metrics_json", Text, nullable=True),
    Column("dry_run", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
)


def create_autoscaler_tables(engine: Engine, tables: Optional[Iterable[Table]] = None) -> None:
    """Create the lock, cooldown-state and event tables if they are missing."""
    metadata.create_all(engine, tables=list(tables) if tables is not None else None, checkfirst=True)


@dataclass(frozen=True)
class JobStoreTables:
    """The job-backlog tables read by the metrics collector (read-only)."""

    metadata: MetaData
    ready_executions: Table
    jobs: Table
    claimed_executions: Table
    failed_executions: Table
    blocked_executions: Table
    processes: Table


@lru_cache(maxsize=None)
def job_store_tables(prefix: str = "solid_queue_") -> JobStoreTables:
    job_metadata = MetaData()

    ready_executions = Table(
        f"{prefix}ready_executions",
        job_metadata,
        Column("id", BigInteger, primary_key=True),
        Column("job_id", BigInteger, nullable=False),
        Column("queue_name", String(255), nullable=False),
        Column("priority", Integer, nullable=False, default=0),
        Column("created_at", DateTime, nullable=False),
    )
    jobs = Table(
        f"{prefix}jobs",
        job_metadata,
        Column("id", BigInteger, primary_key=True),
        Column("queue_name", String(255), nullable=False),
        Column("class_name", String(255), nullable=False),
        Column("finished_at", DateTime, nullable=True),
        Column("created_at", DateTime, nullable=False),
    )
    claimed_executions = Table(
        f"{prefix}claimed_executions",
        job_metadata,
        Column("id", BigInteger, primary_key=True),
        Column("job_id", BigInteger, nullable=False),
        Column("process_id", BigInteger, nullable=True),
        Column("created_at", DateTime, nullable=False),
    )
    failed_executions = Table(
        f"{prefix}failed_executions",
        job_metadata,
        Column("id", BigInteger, primary_key=True),
        Column("job_id", BigInteger, nullable=False),
        Column("error", Text, nullable=True),
        Column("created_at", DateTime, nullable=False),
    )
    blocked_executions = Table(
        f"{prefix}blocked_executions",
        job_metadata,
        Column("id", BigInteger, primary_key=True),
        Column("job_id", BigInteger, nullable=False),
        Column("queue_name", String(255), nullable=False),
        Column("concurrency_key", String(255), nullable=False),
        Column("created_at", DateTime, nullable=False),
    )
    processes = Table(
        f"{prefix}processes",
        job_metadata,
        Column("id", BigInteger, primary_key=True),
        Column("kind", String(255), nullable=False),
        Column("name", String(255), nullable=False),
        Column("pid", Integer, nullable=False),
        Column("hostname", String(255), nullable=True),
        Column("last_heartbeat_at", DateTime, nullable=False),
    )

    return JobStoreTables(
        metadata=job_metadata,
        ready_executions=ready_executions,
        jobs=jobs,
        claimed_executions=claimed_executions,
        failed_executions=failed_executions,
        blocked_executions=blocked_executions,
        processes=processes,
    )
