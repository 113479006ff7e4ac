# src/coordination/__init__.py
from .advisory_lock import (
    AdvisoryLock,
    LockStrategy,
    PostgresAdvisoryLockStrategy,
    MySQLNamedLockStrategy,
    TableLockStrategy,
    lock_id_for,
)
from .exceptions import LockError

__all__ = [
    'AdvisoryLock',
    'LockStrategy',
    'PostgresAdvisoryLockStrategy',
    'MySQLNamedLockStrategy',
    'TableLockStrategy',
    'lock_id_for',
    'LockError'
]

__version__ = '1.0.0'
