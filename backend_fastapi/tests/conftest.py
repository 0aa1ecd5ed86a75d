"""
Pytest fixtures for the Jira relay tests
"""

from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient

from src.api.main import JIRA_CLIENT_OPTIONS, app, get_jira_http_client

JIRA_DOMAIN = "example.atlassian.net"


class FakeJira:
    """Stand-in for the Jira Cloud REST API, keyed by method and path."""

    def __init__(self):
        self.routes: Dict[Tuple[str, Optional[str], str], Any] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, status_code: int = 200, json: Any = None,
            error: Optional[Exception] = None, headers: Optional[Dict[str, str]] = None,
            host: Optional[str] = None):
        """Register a canned answer; host=None matches any host."""
        self.routes[(method, host, f"/rest/api/3{path}")] = (status_code, json, error, headers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.host, request.url.path))
        if route is None:
            route = self.routes.get((request.method, None, request.url.path))
        if route is None:
            return httpx.Response(500, json={"errorMessages": [f"unexpected call {request.url.path}"]})
        status_code, body, error, headers = route
        if error is not None:
            raise error
        return httpx.Response(status_code, json=body, headers=headers)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def fake_jira() -> FakeJira:
    return FakeJira()


@pytest.fixture
def client(fake_jira):
    """TestClient whose outbound Jira calls go to fake_jira"""

    async def _jira_client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(fake_jira.handler), **JIRA_CLIENT_OPTIONS) as http_client:
            yield http_client

    app.dependency_overrides[get_jira_http_client] = _jira_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def jira_config() -> Dict[str, str]:
    return {
        "domain": JIRA_DOMAIN,
        "email": "dev@example.com",
        "apiToken": "secret-token",
        "projectKey": "PROJ",
    }
