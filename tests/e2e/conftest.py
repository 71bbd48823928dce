# tests/e2e/conftest.py
"""E2E test configuration and fixtures."""

import os

import jwt
import pytest
import requests

from control_api.auth import ADMIN_ACCESS_HEADER


class APIClient:
    """API client wrapper for E2E tests."""

    def __init__(self, base_url: str, token: str | None = None):
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        if token:
            self.session.headers.update({ADMIN_ACCESS_HEADER: token})

    def get(self, path: str, **kwargs):
        """GET request."""
        return self.session.get(f"{self.base_url}{path}", **kwargs)

    def post(self, path: str, **kwargs):
        """POST request."""
        return self.session.post(f"{self.base_url}{path}", **kwargs)

    def put(self, path: str, **kwargs):
        """PUT request."""
        return self.session.put(f"{self.base_url}{path}", **kwargs)

    def delete(self, path: str, **kwargs):
        """DELETE request."""
        return self.session.delete(f"{self.base_url}{path}", **kwargs)


@pytest.fixture(scope="session")
def api_base_url() -> str:
    """Get API base URL from environment or default."""
    return os.getenv("API_BASE_URL", "http://localhost:8000")


@pytest.fixture(scope="session")
def admin_token() -> str | None:
    """Sign an admin token with the server's secret, if it is known."""
    secret = os.getenv("AUTH_JWT_SECRET_KEY")
    if not secret:
        return None
    roles = [os.getenv("AUTH_USER_ROLE", "daq-control"), os.getenv("AUTH_ADMIN_ROLE", "daq-control-superadmin")]
    return jwt.encode({"user_info": {"name": "e2e", "roles": roles}}, secret, algorithm="HS256")


@pytest.fixture(scope="session")
def api_client(api_base_url: str, admin_token: str | None) -> APIClient:
    """Create API client with authentication."""
    return APIClient(api_base_url, admin_token)


@pytest.fixture(scope="session")
def test_client_id(api_client: APIClient) -> str:
    """A DAQ client known to the server, from E2E_CLIENT_ID or the first discovered one."""
    client_id = os.getenv("E2E_CLIENT_ID")
    if client_id:
        return client_id
    clients = api_client.get("/api/v1/clients").json()["clients"]
    if not clients:
        pytest.skip("No DAQ clients discovered by the server")
    return clients[0]["client_id"]
