# tests/conftest.py
"""Global test configuration and fixtures."""
import os

import pytest


@pytest.fixture(autouse=True)
def production_auth_defaults(monkeypatch):
    """Tests run as if APP_ENV were production unless they say otherwise."""
    if os.getenv("APP_ENV") == "development":
        monkeypatch.setenv("APP_ENV", "production")
    yield
