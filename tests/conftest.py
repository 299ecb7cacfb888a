"""
Pytest fixtures for Frida tests. Uses temporary SQLite databases.
"""

from __future__ import annotations

from typing import Iterator

import pytest

from backend_frida.analysis_engine.match_store import MatchNodeStore
from backend_frida.analysis_engine.matcher_registry import MatcherRegistry
from backend_frida.database.database import Database, SQLiteBackend
from backend_frida.database.models import MatchingField

# Registry used by the graph tests: email is stronger than device
TEST_MATCHERS = {
    "email": (90, 70),
    "device": (80, 60),
    "phone": (90, 80),
    "weak": (40, 10),
    "strong": (100, 100),
    "low": (60, 20),
}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Each test starts without Frida env overrides and with no cached settings."""
    for name in (
        "DATABASE_URL",
        "FRIDA_DB_PATH",
        "MATCHER_CONFIGS_PATH",
        "PROCESSOR_THREADS",
        "PROCESSOR_SLEEP_MS",
        "CONNECTION_MAX_DEPTH",
        "CONNECTION_LIMIT",
        "CONNECTION_MIN_CONFIDENCE",
        "CONNECTION_TIMEOUT_SEC",
    ):
        monkeypatch.delenv(name, raising=False)

    from backend_frida.config import reset_settings_for_test

    reset_settings_for_test()
    yield
    reset_settings_for_test()


@pytest.fixture
def db(tmp_path) -> Database:
    """Fresh SQLite-backed Database with schema."""
    database = Database(SQLiteBackend(tmp_path / "frida.db"))
    database.ensure_schema()
    return database


@pytest.fixture(params=["sqlite3", "sqlalchemy"])
def any_db(request, tmp_path) -> Iterator[Database]:
    """Same tests against the stdlib SQLite backend and the SQLAlchemy backend."""
    if request.param == "sqlite3":
        database = Database(SQLiteBackend(tmp_path / "frida.db"))
        database.ensure_schema()
        yield database
        return
    from backend_frida.database.sqlalchemy_backend import SQLAlchemyBackend

    backend = SQLAlchemyBackend(f"sqlite:///{tmp_path / 'frida_sa.db'}")
    database = Database(backend)
    database.ensure_schema()
    yield database
    backend.dispose()


@pytest.fixture
def registry() -> MatcherRegistry:
    return MatcherRegistry(TEST_MATCHERS)


@pytest.fixture
def store(db, registry) -> MatchNodeStore:
    return MatchNodeStore(db, registry)


@pytest.fixture
def any_store(any_db, registry) -> MatchNodeStore:
    return MatchNodeStore(any_db, registry)


def fields(*pairs: tuple[str, str]) -> list[MatchingField]:
    """fields(("email", "a@x"), ("device", "d1")) -> [MatchingField, ...]"""
    return [MatchingField(matcher=m, value=v) for m, v in pairs]


@pytest.fixture
def email_device_graph(store) -> MatchNodeStore:
    """
    A(1) --email e1-- B(2) --device d1-- C(3).
    From A: B at 90 via email, C at 72 via email then device.
    """
    store.upsert_and_link(1, fields(("email", "e1")), created_at=100)
    store.upsert_and_link(2, fields(("email", "e1"), ("device", "d1")), created_at=200)
    store.upsert_and_link(3, fields(("device", "d1")), created_at=300)
    return store
