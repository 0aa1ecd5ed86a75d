"""
Tests for the cross-origin allow-list
"""

import pytest

ALLOWED = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:5174",
    "http://localhost:8080",
    "https://make.figma.com",
    "https://www.figma.dev",
    "https://abc-123.preview.figma.site",
]

DISALLOWED = [
    "http://localhost:4000",
    "https://localhost:3000",
    "http://make.figma.com",
    "https://figma.com",
    "https://evil.com",
    "https://make.figma.com.evil.com",
    "https://notfigma.org",
    "https://.figma.com",
]


@pytest.mark.parametrize("origin", ALLOWED)
def test_allowed_origin_is_echoed(client, origin):
    response = client.get("/health", headers={"Origin": origin})
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == origin
    assert response.headers["access-control-allow-credentials"] == "true"


@pytest.mark.parametrize("origin", DISALLOWED)
def test_disallowed_origin_gets_no_cors_headers(client, origin):
    response = client.get("/health", headers={"Origin": origin})
    assert "access-control-allow-origin" not in response.headers


def test_preflight_allowed(client):
    response = client.options(
        "/api/jira/users",
        headers={
            "Origin": "https://make.figma.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "https://make.figma.com"
    assert response.headers["access-control-allow-credentials"] == "true"


def test_preflight_disallowed(client):
    response = client.options(
        "/api/jira/users",
        headers={
            "Origin": "https://evil.com",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert response.status_code == 400
    assert "access-control-allow-origin" not in response.headers
