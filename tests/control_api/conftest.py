# tests/control_api/conftest.py
"""Fixtures for control_api tests: a fresh in-memory database per test."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from control_api.db.engine import build_engine, set_engine


@pytest.fixture(autouse=True)
def db():
    """Point get_session() at an empty in-memory SQLite database."""
    engine = build_engine("sqlite://")
    set_engine(engine)
    yield engine
    set_engine(None)
    engine.dispose()


@pytest.fixture
def gateway():
    gateway = MagicMock()
    gateway.run_job = AsyncMock(return_value={"ok": True})
    gateway.stop_job = AsyncMock(return_value=None)
    gateway.stop_all_jobs = AsyncMock(return_value=None)
    gateway.restart_daq = AsyncMock(return_value=None)
    gateway.send_message = AsyncMock(return_value={"ok": True})
    gateway.get_daq_job_schemas = AsyncMock(return_value={})
    gateway.get_message_schemas = AsyncMock(return_value={})
    return gateway


@pytest.fixture
def dispatcher():
    """Records notifications instead of delivering them."""
    return MagicMock()
