# src/database/__init__.py
from .engine import create_db_engine, table_exists, utcnow, as_utc, as_naive_utc
from .schema import (
    LOCKS_TABLE,
    STATE_TABLE,
    EVENTS_TABLE,
    metadata,
    locks_table,
    state_table,
    events_table,
    create_autoscaler_tables,
    job_store_tables,
    JobStoreTables,
)

__all__ = [
    'create_db_engine',
    'table_exists',
    'utcnow',
    'as_utc',
    'as_naive_utc',
    'LOCKS_TABLE',
    'STATE_TABLE',
    'EVENTS_TABLE',
    'metadata',
    'locks_table',
    'state_table',
    'events_table',
    'create_autoscaler_tables',
    'job_store_tables',
    'JobStoreTables'
]

__version__ = '1.0.0'
