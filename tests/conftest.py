# tests/conftest.py
"""
Pytest configuration and fixtures.
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

# Set test environment before any settings are loaded
os.environ.setdefault("MAIN_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ARCHIVE_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEMA", "")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("LOCK_DIR", tempfile.gettempdir())
os.environ.setdefault("METRICS_DIR", os.path.join(tempfile.gettempdir(), "pgcleanup-test-no-metrics"))
os.environ.setdefault("ADMIN_API_KEY", "test-api-key")

# Fixed reference time for every window computation in tests
NOW = datetime(2024, 3, 15, 2, 0, 0)


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached process-wide; tests that change env need a fresh load."""
    from pgcleanup.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store_pair(tmp_path):
    """Main and archive StoreClients on two SQLite files with the tables created."""
    from pgcleanup.database import create_store_engine, init_db
    from pgcleanup.services.cleanup.store import StoreClient

    main_engine = create_store_engine(f"sqlite:///{tmp_path / 'main.db'}")
    archive_engine = create_store_engine(f"sqlite:///{tmp_path / 'archive.db'}")
    init_db(main_engine)
    init_db(archive_engine)

    yield StoreClient(main_engine, "main", batch_size=7), StoreClient(archive_engine, "archive", batch_size=7)

    main_engine.dispose()
    archive_engine.dispose()


@pytest.fixture
def seed():
    """
    Insert backtests into a store.

    Usage:
        seed(main, "backup", [8.5, 9, 12], now)

    Each age (days before now) yields one metadata row plus one signal and
    one fill with the same `created`. Returns the inserted hashes.
    """
    from sqlalchemy import insert

    from pgcleanup.models import TABLES

    def _seed(store, prefix, ages_days, now=NOW, children=True):
        metadata, signals, fills = [], [], []
        for i, age in enumerate(ages_days):
            created = now - timedelta(days=age)
            key = f"{prefix}_{i}_hash"
            metadata.append({"hash": key, "created": created, "data": {"type": prefix}})
            signals.append({"hash": key, "signal_type": "test_signal", "value": float(i), "created": created})
            fills.append({"hash": key, "quantity": i, "price": 1.5 * i, "created": created})

        if metadata:
            with store.engine.begin() as conn:
                conn.execute(insert(TABLES["metadata"]), metadata)
                if children:
                    conn.execute(insert(TABLES["signals"]), signals)
                    conn.execute(insert(TABLES["fills"]), fills)
        return [row["hash"] for row in metadata]

    return _seed
