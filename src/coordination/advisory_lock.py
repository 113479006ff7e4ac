# src/coordination/advisory_lock.py
import asyncio
import os
import socket
import threading
import time
import uuid
import zlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import timedelta
from typing import Dict, Optional, Type

from sqlalchemy import delete, insert, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.config.models import AutoscalerConfig, LockBackend
from src.database.engine import table_exists, utcnow
from src.database.schema import LOCKS_TABLE, create_autoscaler_tables, locks_table
from src.log_handler.logging_config import get_logger
from .exceptions import LockError

LOCK_POLL_INTERVAL = 0.5
MYSQL_LOCK_NAME_LIMIT = 64


def lock_id_for(lock_key: str) -> int:
    """Map a lock key onto the positive 31-bit id space of native lock primitives."""
    return zlib.crc32(lock_key.encode("utf-8")) & 0x7FFFFFFF


class LockStrategy(ABC):
    """One way of holding a cross-process lock in the shared database."""

    def __init__(self, engine: Engine, lock_key: str, lock_id: int, config: AutoscalerConfig):
        self.engine = engine
        self.lock_key = lock_key
        self.lock_id = lock_id
        self.config = config
        self.logger = get_logger(__name__, config.name)

    @abstractmethod
    def try_acquire(self) -> bool:
        """Attempt to take the lock without waiting."""

    @abstractmethod
    def release(self) -> bool:
        """Give the lock back; returns False if it was not held by us."""


class _SessionLockStrategy(LockStrategy):
    """
    Base for session-scoped native locks.

    The lock belongs to the database session, so the connection that took it
    is kept checked out until release. If this process dies the session ends
    and the database frees the lock.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._conn: Optional[Connection] = None

    @abstractmethod
    def _try_acquire_on(self, conn: Connection) -> bool:
        pass

    @abstractmethod
    def _release_on(self, conn: Connection) -> bool:
        pass

    def try_acquire(self) -> bool:
        conn = self.engine.connect()
        try:
            acquired = self._try_acquire_on(conn)
        except SQLAlchemyError:
            conn.close()
            raise

        if acquired:
            self._conn = conn
        else:
            conn.close()
        return acquired

    def release(self) -> bool:
        conn, self._conn = self._conn, None
        if conn is None:
            return False
        try:
            return self._release_on(conn)
        except SQLAlchemyError:
            # Drop the session so the database frees the lock with it
            conn.invalidate()
            raise
        finally:
            conn.close()


class PostgresAdvisoryLockStrategy(_SessionLockStrategy):
    def _try_acquire_on(self, conn: Connection) -> bool:
        result = conn.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": self.lock_id}
        ).scalar()
        conn.commit()
        return result in (True, "t", 1)

    def _release_on(self, conn: Connection) -> bool:
        result = conn.execute(
            text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": self.lock_id}
        ).scalar()
        conn.commit()
        return result in (True, "t", 1)


class MySQLNamedLockStrategy(_SessionLockStrategy):
    @property
    def lock_name(self) -> str:
        # MySQL rejects lock names longer than 64 characters
        if len(self.lock_key) > MYSQL_LOCK_NAME_LIMIT:
            return f"autoscaler_{self.lock_id}"
        return self.lock_key

    def _try_acquire_on(self, conn: Connection) -> bool:
        result = conn.execute(
            text("SELECT GET_LOCK(:name, 0)"), {"name": self.lock_name}
        ).scalar()
        conn.commit()
        return result == 1

    def _release_on(self, conn: Connection) -> bool:
        result = conn.execute(
            text("SELECT RELEASE_LOCK(:name)"), {"name": self.lock_name}
        ).scalar()
        conn.commit()
        return result == 1


class TableLockStrategy(LockStrategy):
    """
    Lock emulation for databases without advisory locks (SQLite and friends).

    One row per held key; the primary key makes a second insert fail. Rows
    older than ``stale_lock_timeout_seconds`` are purged before every attempt
    so a crashed holder cannot block the group forever. A holder that runs
    longer than the stale timeout can lose its lock this way.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.owner = (
            f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}:"
            f"{uuid.uuid4().hex[:8]}"
        )
        self._table_ready = False

    def _ensure_table(self) -> None:
        if self._table_ready:
            return
        if not table_exists(self.engine, LOCKS_TABLE):
            self.logger.info(f"Creating lock table {LOCKS_TABLE}")
            create_autoscaler_tables(self.engine, tables=[locks_table])
        self._table_ready = True

    def purge_stale(self) -> int:
        cutoff = utcnow() - timedelta(seconds=self.config.stale_lock_timeout_seconds)
        with self.engine.begin() as conn:
            result = conn.execute(delete(locks_table).where(locks_table.c.locked_at < cutoff))
        if result.rowcount:
            self.logger.warning(f"Removed {result.rowcount} stale lock(s) older than {cutoff}")
        return result.rowcount or 0

    def try_acquire(self) -> bool:
        self._ensure_table()
        self.purge_stale()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(locks_table).values(
                        lock_key=self.lock_key,
                        lock_id=self.lock_id,
                        locked_at=utcnow(),
                        locked_by=self.owner,
                    )
                )
        except IntegrityError:
            return False
        return True

    def release(self) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(locks_table)
                .where(locks_table.c.lock_key == self.lock_key)
                .where(locks_table.c.locked_by == self.owner)
            )
        return (result.rowcount or 0) > 0


class AdvisoryLock:
    """
    Cross-process mutual exclusion for one worker group.

    The backend is chosen once, from the configured ``lock_backend`` or the
    engine's dialect: PostgreSQL advisory locks, MySQL named locks, or a lock
    table for everything else.
    """

    _strategies: Dict[LockBackend, Type[LockStrategy]] = {
        LockBackend.POSTGRES_ADVISORY: PostgresAdvisoryLockStrategy,
        LockBackend.MYSQL_NAMED: MySQLNamedLockStrategy,
        LockBackend.TABLE: TableLockStrategy,
    }

    def __init__(
        self,
        config: AutoscalerConfig,
        lock_key: Optional[str] = None,
        timeout: Optional[float] = None,
        engine: Optional[Engine] = None,
        backend: Optional[LockBackend] = None,
    ):
        self.config = config
        self.lock_key = lock_key or config.lock_key
        self.timeout = timeout if timeout is not None else config.lock_timeout_seconds
        self.lock_id = lock_id_for(self.lock_key)
        self.logger = get_logger(__name__, config.name)

        if engine is None:
            backend = backend or config.resolve_lock_backend()
            engine = config.get_engine()
        elif backend is None:
            backend = config.lock_backend or LockBackend.for_dialect(engine.dialect.name)

        self.backend = backend
        self.strategy = self._strategies[backend](engine, self.lock_key, self.lock_id, config)
        self._locked = False

    def locked(self) -> bool:
        return self._locked

    def try_lock(self) -> bool:
        """Take the lock if it is free. Never raises; contention returns False."""
        if self._locked:
            return False
        try:
            self._locked = self.strategy.try_acquire()
        except SQLAlchemyError as e:
            self.logger.warning(f"Lock attempt for '{self.lock_key}' failed: {str(e)}")
            self._locked = False

        if self._locked:
            self.logger.debug(f"Acquired lock '{self.lock_key}' (id: {self.lock_id})")
        return self._locked

    def _lock_error(self) -> LockError:
        return LockError(
            f"Could not acquire advisory lock '{self.lock_key}' (id: {self.lock_id}) "
            f"within {self.timeout}s"
        )

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Wait up to ``timeout`` seconds for the lock, then raise LockError."""
        if self._locked:
            return True
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while not self.try_lock():
            if time.monotonic() >= deadline:
                raise self._lock_error()
            time.sleep(LOCK_POLL_INTERVAL)
        return True

    async def acquire_async(self, timeout: Optional[float] = None) -> bool:
        """Same as :meth:`acquire` without blocking the event loop while waiting."""
        if self._locked:
            return True
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while not await asyncio.to_thread(self.try_lock):
            if time.monotonic() >= deadline:
                raise self._lock_error()
            await asyncio.sleep(LOCK_POLL_INTERVAL)
        return True

    def release(self) -> bool:
        if not self._locked:
            return False
        try:
            self.strategy.release()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to release lock '{self.lock_key}': {str(e)}")
        finally:
            self._locked = False
        self.logger.debug(f"Released lock '{self.lock_key}'")
        return True

    @contextmanager
    def with_lock(self, timeout: Optional[float] = None):
        self.acquire(timeout)
        try:
            yield self
        finally:
            self.release()
