import pytest
from unittest.mock import AsyncMock, MagicMock

from src.config import AutoscalerConfig
from src.database import create_db_engine, create_autoscaler_tables, job_store_tables


@pytest.fixture
def sqlite_engine(tmp_path):
    """File-backed SQLite engine, shared by every connection in the test"""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'autoscaler.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def job_store(sqlite_engine):
    """SQLite engine with the job-store tables created"""
    tables = job_store_tables("solid_queue_")
    tables.metadata.create_all(sqlite_engine)
    return tables


@pytest.fixture
def autoscaler_tables(sqlite_engine):
    """SQLite engine with the lock, state and event tables created"""
    create_autoscaler_tables(sqlite_engine)
    return sqlite_engine


@pytest.fixture
def fake_adapter():
    """Infrastructure adapter double with async current_workers/scale"""
    adapter = MagicMock()
    adapter.name = "Fake"
    adapter.configuration_errors.return_value = []
    adapter.current_workers = AsyncMock(return_value=2)
    adapter.scale = AsyncMock(side_effect=lambda quantity: quantity)
    return adapter


@pytest.fixture
def make_config(fake_adapter):
    """Factory for configurations that never touch real infrastructure"""

    def _make(**settings):
        settings.setdefault("adapter", fake_adapter)
        settings.setdefault("database_url", None)
        return AutoscalerConfig.build(**settings)

    return _make
