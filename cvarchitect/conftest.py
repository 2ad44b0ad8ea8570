# cvarchitect/conftest.py
import os

# Settings are read at import time; pin the environment before any cvarchitect import
os.environ.setdefault("ENV", "test")
os.environ.pop("TEST_DATABASE_URL", None)

import pytest


@pytest.fixture(scope="function", autouse=True)
def ledger_db(tmp_path):
    """
    Give every test its own SQLite ledger.

    Tables are created fresh; the engine is disposed afterwards so the next
    test never sees this one's rows.
    """
    from cvarchitect.core.database import init_engine, create_all_tables, dispose_engine

    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    init_engine(url)
    create_all_tables()
    yield url
    dispose_engine()


@pytest.fixture
def client():
    """FastAPI TestClient bound to the app (lifespan not run; tables come from ledger_db)."""
    from fastapi.testclient import TestClient
    from cvarchitect.main import app

    return TestClient(app)


@pytest.fixture
def fixed_now():
    from datetime import datetime, timezone

    return datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)
