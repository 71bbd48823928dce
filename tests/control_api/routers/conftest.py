# tests/control_api/routers/conftest.py
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from control_api.auth import AuthSession, UserInfo, get_auth_session
from control_api.dependencies import get_dispatcher, get_gateway, get_poller
from control_api.main import app
from daq.gateway.models import ClientStatus, ClientStatusSnapshot


@pytest.fixture
def poller():
    snapshot = ClientStatusSnapshot(
        client_id="daq-1",
        online=True,
        status=ClientStatus.model_validate(
            {
                "daq_jobs": [{"daq_job_type": "DAQJobScope", "unique_id": "scope"}],
                "supervisor_info": {"supervisor_id": "daq-1", "supervisor_tags": ["caen"]},
            }
        ),
        updated_at=datetime.now(timezone.utc),
    )
    poller = MagicMock()
    poller.running = True
    poller.known_clients = ("daq-1", "daq-2")
    poller.get_status.side_effect = lambda client_id: snapshot if client_id == "daq-1" else None
    poller.get_logs.side_effect = lambda client_id: list(snapshot.logs)
    return poller


@pytest.fixture
def auth_session():
    """Authenticated admin by default; tests may swap it."""
    return AuthSession(is_admin=True, user_info=UserInfo(name="Alice", roles=["daq-control"]))


@pytest.fixture
def client(gateway, dispatcher, poller, auth_session):
    """TestClient with app state replaced by test doubles (lifespan not run)."""
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_poller] = lambda: poller
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_auth_session] = lambda: auth_session
    yield TestClient(app)
    app.dependency_overrides.clear()
