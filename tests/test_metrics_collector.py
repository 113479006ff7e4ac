from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import insert
from sqlalchemy.exc import OperationalError

from src.config import AutoscalerConfig
from src.database import as_naive_utc, job_store_tables, utcnow
from src.metrics import MetricsCollector, MetricsError, MetricsSnapshot


def ago(seconds):
    """Naive UTC timestamp, as the job store writes them"""
    return as_naive_utc(utcnow() - timedelta(seconds=seconds))


def add_ready(engine, tables, job_id, queue_name="default", age=0):
    with engine.begin() as conn:
        conn.execute(
            insert(tables.ready_executions).values(
                id=job_id, job_id=job_id, queue_name=queue_name, priority=0, created_at=ago(age)
            )
        )


def make_collector(engine, **settings):
    config = AutoscalerConfig(database_url=None, engine=engine, **settings)
    return MetricsCollector(config)


def test_empty_job_store_is_idle(sqlite_engine, job_store):
    snapshot = make_collector(sqlite_engine).collect()

    assert snapshot.queue_depth == 0
    assert snapshot.oldest_job_age_seconds == 0.0
    assert snapshot.claimed_jobs == 0
    assert snapshot.per_queue_breakdown == {}
    assert snapshot.idle


def test_queue_depth_and_oldest_job_age(sqlite_engine, job_store):
    add_ready(sqlite_engine, job_store, 1, age=120)
    add_ready(sqlite_engine, job_store, 2, age=5)
    add_ready(sqlite_engine, job_store, 3, queue_name="mailers", age=30)

    snapshot = make_collector(sqlite_engine).collect()

    assert snapshot.queue_depth == 3
    assert 119 <= snapshot.oldest_job_age_seconds < 180
    assert snapshot.latency_seconds == snapshot.oldest_job_age_seconds
    assert snapshot.per_queue_breakdown == {"default": 2, "mailers": 1}
    assert list(snapshot.per_queue_breakdown) == ["default", "mailers"]
    assert not snapshot.idle


def test_queue_filter_limits_depth_and_latency(sqlite_engine, job_store):
    add_ready(sqlite_engine, job_store, 1, queue_name="default", age=600)
    add_ready(sqlite_engine, job_store, 2, queue_name="critical", age=10)
    add_ready(sqlite_engine, job_store, 3, queue_name="critical", age=20)

    snapshot = make_collector(sqlite_engine, queues=["critical"]).collect()

    assert snapshot.queue_depth == 2
    assert snapshot.oldest_job_age_seconds < 60
    assert snapshot.per_queue_breakdown == {"critical": 2}


def test_counts_claimed_failed_and_blocked(sqlite_engine, job_store):
    now = ago(0)
    with sqlite_engine.begin() as conn:
        conn.execute(
            insert(job_store.claimed_executions),
            [{"id": i, "job_id": i, "process_id": 1, "created_at": now} for i in (1, 2)],
        )
        conn.execute(
            insert(job_store.failed_executions),
            [{"id": 1, "job_id": 10, "error": "boom", "created_at": now}],
        )
        conn.execute(
            insert(job_store.blocked_executions),
            [
                {"id": i, "job_id": i, "queue_name": "default", "concurrency_key": "k", "created_at": now}
                for i in (1, 2, 3)
            ],
        )

    snapshot = make_collector(sqlite_engine).collect()

    assert snapshot.claimed_jobs == 2
    assert snapshot.failed_jobs == 1
    assert snapshot.blocked_jobs == 3
    # Claimed work means the fleet is not idle even with an empty queue
    assert not snapshot.idle


def test_jobs_completed_in_last_minute(sqlite_engine, job_store):
    with sqlite_engine.begin() as conn:
        conn.execute(
            insert(job_store.jobs),
            [
                {"id": 1, "queue_name": "default", "class_name": "A", "finished_at": ago(10), "created_at": ago(20)},
                {"id": 2, "queue_name": "default", "class_name": "A", "finished_at": ago(30), "created_at": ago(40)},
                {"id": 3, "queue_name": "default", "class_name": "A", "finished_at": ago(300), "created_at": ago(400)},
                {"id": 4, "queue_name": "default", "class_name": "A", "finished_at": None, "created_at": ago(5)},
                {"id": 5, "queue_name": "other", "class_name": "B", "finished_at": ago(5), "created_at": ago(6)},
            ],
        )

    assert make_collector(sqlite_engine).collect().jobs_completed_per_minute == 3
    assert make_collector(sqlite_engine, queues=["default"]).collect().jobs_completed_per_minute == 2


def test_active_workers_require_recent_heartbeat(sqlite_engine, job_store):
    with sqlite_engine.begin() as conn:
        conn.execute(
            insert(job_store.processes),
            [
                {"id": 1, "kind": "Worker", "name": "w1", "pid": 10, "last_heartbeat_at": ago(30)},
                {"id": 2, "kind": "Worker", "name": "w2", "pid": 11, "last_heartbeat_at": ago(600)},
                {"id": 3, "kind": "Dispatcher", "name": "d1", "pid": 12, "last_heartbeat_at": ago(5)},
            ],
        )

    assert make_collector(sqlite_engine).collect().active_workers == 1


def test_custom_table_prefix(sqlite_engine):
    tables = job_store_tables("jobs_")
    tables.metadata.create_all(sqlite_engine)
    add_ready(sqlite_engine, tables, 1)

    snapshot = make_collector(sqlite_engine, table_prefix="jobs_").collect()

    assert snapshot.queue_depth == 1


def test_missing_tables_raise_metrics_error(sqlite_engine):
    with pytest.raises(MetricsError):
        make_collector(sqlite_engine).collect()


def test_database_errors_are_wrapped():
    engine = MagicMock()
    engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))

    with pytest.raises(MetricsError, match="connection refused"):
        make_collector(engine).collect()


def test_no_database_configured():
    collector = MetricsCollector(AutoscalerConfig(database_url=None))

    with pytest.raises(MetricsError, match="No database configured"):
        collector.collect()


def test_snapshot_to_dict_is_json_friendly():
    snapshot = MetricsSnapshot(queue_depth=4, oldest_job_age_seconds=1.5, per_queue_breakdown={"a": 4})

    data = snapshot.to_dict()

    assert data["queue_depth"] == 4
    assert data["per_queue_breakdown"] == {"a": 4}
    assert isinstance(data["collected_at"], str)


def test_snapshot_rejects_negative_values():
    with pytest.raises(Exception):
        MetricsSnapshot(queue_depth=-1)
