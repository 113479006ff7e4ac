# src/database/engine.py
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from src.log_handler.logging_config import get_logger

logger = get_logger(__name__)

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _sanitize_url(url: str) -> str:
    # Strip unicode spaces that sneak in from shells/copy-paste
    for ch in ("\u00a0", "\u2007", "\u202f"):
        url = url.replace(ch, "")
    return url.strip()


def create_db_engine(url: str, **kwargs: Any) -> Engine:
    """Create an engine for the job store / coordination database.

    In-memory SQLite uses StaticPool so every connection sees the same database.
    """
    url = _sanitize_url(url)

    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if url in _MEMORY_URLS:
            engine = create_engine(
                url, connect_args=connect_args, poolclass=StaticPool, **kwargs
            )
        else:
            engine = create_engine(url, connect_args=connect_args, **kwargs)
    else:
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_recycle", 3600)
        engine = create_engine(url, **kwargs)

    logger.info(f"Created database engine for dialect '{engine.dialect.name}'")
    return engine


def table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[Any]) -> Optional[datetime]:
    """Normalise a timestamp read back from the database to an aware UTC datetime.

    Naive values are treated as UTC (SQLite and most job stores store them that way).
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_naive_utc(value: datetime) -> datetime:
    """Convert to naive UTC for comparisons against naive timestamp columns."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
