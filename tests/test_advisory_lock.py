import zlib
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import insert, select
from sqlalchemy.exc import OperationalError

from src.config import AutoscalerConfig, LockBackend
from src.coordination import (
    AdvisoryLock,
    LockError,
    MySQLNamedLockStrategy,
    PostgresAdvisoryLockStrategy,
    TableLockStrategy,
    lock_id_for,
)
from src.database import locks_table, utcnow


@pytest.fixture
def config():
    return AutoscalerConfig(name="default", database_url=None, lock_timeout_seconds=1)


def make_pg_engine(result=True):
    """Engine double whose connections answer advisory lock queries with ``result``"""
    engine = MagicMock()
    conn = engine.connect.return_value
    conn.execute.return_value.scalar.return_value = result
    return engine, conn


def test_lock_id_is_positive_31_bit_crc():
    lock_id = lock_id_for("queue_autoscaler_default")

    assert lock_id == zlib.crc32(b"queue_autoscaler_default") & 0x7FFFFFFF
    assert 0 <= lock_id < 2 ** 31
    assert lock_id == lock_id_for("queue_autoscaler_default")
    assert lock_id != lock_id_for("queue_autoscaler_critical")


def test_sqlite_engine_uses_table_strategy(config, sqlite_engine):
    lock = AdvisoryLock(config, engine=sqlite_engine)

    assert lock.backend == LockBackend.TABLE
    assert isinstance(lock.strategy, TableLockStrategy)
    assert lock.lock_key == "queue_autoscaler_default"


def test_table_lock_is_mutually_exclusive(config, sqlite_engine):
    first = AdvisoryLock(config, engine=sqlite_engine)
    second = AdvisoryLock(config, engine=sqlite_engine)

    assert first.try_lock() is True
    assert second.try_lock() is False
    assert first.locked()
    assert not second.locked()

    assert first.release() is True
    assert second.try_lock() is True
    second.release()


def test_different_keys_do_not_contend(config, sqlite_engine):
    default = AdvisoryLock(config, engine=sqlite_engine)
    critical = AdvisoryLock(config, lock_key="queue_autoscaler_critical", engine=sqlite_engine)

    assert default.try_lock()
    assert critical.try_lock()

    default.release()
    critical.release()


def test_try_lock_twice_on_same_instance_returns_false(config, sqlite_engine):
    lock = AdvisoryLock(config, engine=sqlite_engine)

    assert lock.try_lock()
    assert lock.try_lock() is False
    assert lock.locked()
    lock.release()


def test_release_without_lock_returns_false(config, sqlite_engine):
    lock = AdvisoryLock(config, engine=sqlite_engine)

    assert lock.release() is False


def test_release_only_removes_own_row(config, sqlite_engine):
    holder = AdvisoryLock(config, engine=sqlite_engine)
    other = AdvisoryLock(config, engine=sqlite_engine)
    assert holder.try_lock()

    assert other.strategy.release() is False

    with sqlite_engine.connect() as conn:
        owners = conn.execute(select(locks_table.c.locked_by)).scalars().all()
    assert owners == [holder.strategy.owner]
    holder.release()


def test_lock_table_is_created_on_first_use(config, sqlite_engine):
    from src.database import table_exists

    assert not table_exists(sqlite_engine, "queue_autoscaler_locks")
    AdvisoryLock(config, engine=sqlite_engine).try_lock()
    assert table_exists(sqlite_engine, "queue_autoscaler_locks")


def test_stale_lock_is_reaped(config, sqlite_engine):
    lock = AdvisoryLock(config, engine=sqlite_engine)
    lock.strategy._ensure_table()

    with sqlite_engine.begin() as conn:
        conn.execute(
            insert(locks_table).values(
                lock_key=lock.lock_key,
                lock_id=lock.lock_id,
                locked_at=utcnow() - timedelta(seconds=config.stale_lock_timeout_seconds + 60),
                locked_by="crashed-host:1:1:deadbeef",
            )
        )

    assert lock.try_lock() is True
    lock.release()


def test_fresh_lock_is_not_reaped(config, sqlite_engine):
    lock = AdvisoryLock(config, engine=sqlite_engine)
    lock.strategy._ensure_table()

    with sqlite_engine.begin() as conn:
        conn.execute(
            insert(locks_table).values(
                lock_key=lock.lock_key,
                lock_id=lock.lock_id,
                locked_at=utcnow() - timedelta(seconds=10),
                locked_by="other-host:1:1:cafebabe",
            )
        )

    assert lock.try_lock() is False


def test_acquire_raises_lock_error_when_held(config, sqlite_engine):
    holder = AdvisoryLock(config, engine=sqlite_engine)
    waiter = AdvisoryLock(config, engine=sqlite_engine)
    holder.acquire()

    with pytest.raises(LockError):
        waiter.acquire(timeout=0)

    holder.release()
    assert waiter.acquire(timeout=0) is True
    waiter.release()


@pytest.mark.asyncio
async def test_acquire_async_raises_lock_error_when_held(config, sqlite_engine):
    holder = AdvisoryLock(config, engine=sqlite_engine)
    waiter = AdvisoryLock(config, engine=sqlite_engine)
    assert holder.try_lock()

    with pytest.raises(LockError):
        await waiter.acquire_async(timeout=0)

    holder.release()
    assert await waiter.acquire_async(timeout=0)
    waiter.release()


def test_with_lock_releases_on_exception(config, sqlite_engine):
    lock = AdvisoryLock(config, engine=sqlite_engine)

    with pytest.raises(RuntimeError):
        with lock.with_lock():
            assert lock.locked()
            raise RuntimeError("boom")

    assert not lock.locked()
    other = AdvisoryLock(config, engine=sqlite_engine)
    assert other.try_lock()
    other.release()


def test_try_lock_swallows_database_errors(config):
    engine = MagicMock()
    engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("down"))
    lock = AdvisoryLock(config, engine=engine, backend=LockBackend.POSTGRES_ADVISORY)

    assert lock.try_lock() is False
    assert not lock.locked()


def test_postgres_strategy_holds_connection_until_release(config):
    engine, conn = make_pg_engine(result=True)
    lock = AdvisoryLock(config, engine=engine, backend=LockBackend.POSTGRES_ADVISORY)

    assert isinstance(lock.strategy, PostgresAdvisoryLockStrategy)
    assert lock.try_lock() is True

    statement, params = conn.execute.call_args[0]
    assert "pg_try_advisory_lock" in str(statement)
    assert params == {"lock_id": lock.lock_id}
    conn.close.assert_not_called()

    assert lock.release() is True
    statement, _ = conn.execute.call_args[0]
    assert "pg_advisory_unlock" in str(statement)
    conn.close.assert_called_once()


def test_postgres_contention_returns_false_and_frees_connection(config):
    engine, conn = make_pg_engine(result=False)
    lock = AdvisoryLock(config, engine=engine, backend=LockBackend.POSTGRES_ADVISORY)

    assert lock.try_lock() is False
    conn.close.assert_called_once()


def test_backend_comes_from_dialect(config):
    engine, _ = make_pg_engine()
    engine.dialect.name = "postgresql"

    assert AdvisoryLock(config, engine=engine).backend == LockBackend.POSTGRES_ADVISORY

    engine.dialect.name = "mysql"
    assert AdvisoryLock(config, engine=engine).backend == LockBackend.MYSQL_NAMED


def test_mysql_strategy_uses_named_locks(config):
    engine, conn = make_pg_engine(result=1)
    lock = AdvisoryLock(config, engine=engine, backend=LockBackend.MYSQL_NAMED)

    assert lock.try_lock() is True
    statement, params = conn.execute.call_args[0]
    assert "GET_LOCK" in str(statement)
    assert params == {"name": "queue_autoscaler_default"}

    lock.release()
    statement, _ = conn.execute.call_args[0]
    assert "RELEASE_LOCK" in str(statement)


def test_mysql_long_lock_names_are_shortened(config):
    engine, _ = make_pg_engine(result=1)
    lock = AdvisoryLock(
        config, lock_key="x" * 80, engine=engine, backend=LockBackend.MYSQL_NAMED
    )

    assert isinstance(lock.strategy, MySQLNamedLockStrategy)
    assert lock.strategy.lock_name == f"autoscaler_{lock.lock_id}"


def test_missing_database_is_a_configuration_error(config):
    from src.config import ConfigurationError

    with pytest.raises(ConfigurationError):
        AdvisoryLock(config)
