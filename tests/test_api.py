"""Tests for the REST API."""
import json

import pytest
import yaml
from fastapi.testclient import TestClient

from cartographer.api.main import create_app


def payload(path, status=200, body=None, method="GET", seconds=0, headers=None):
    return {
        "method": method,
        "url": "https://api.example.com" + path,
        "status_code": status,
        "timestamp": f"2024-01-01T12:00:{seconds:02d}+00:00",
        "request_headers": headers or {},
        "response_headers": {"content-type": "application/json"},
        "response_body": json.dumps(body) if body is not None else None,
    }


TRAFFIC = [
    payload("/api/users/1", body={"id": 1, "name": "Ada"}, seconds=0),
    payload("/api/users/2", body={"id": 2, "name": "Bob"}, seconds=1),
    payload("/api/users?page=1", body=[{"id": 1}], seconds=2),
]


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as client:
        yield client


def create_session(client, target="shop"):
    response = client.post("/api/sessions/", json={"target": target})
    assert response.status_code == 200
    return response.json()["id"]


class TestSessionRoutes:
    """Test the session lifecycle over HTTP."""

    def test_health(self, client):
        assert client.get("/health").json()["database"] == "connected"

    def test_create_and_get(self, client):
        session_id = create_session(client)

        response = client.get(f"/api/sessions/{session_id}")

        assert response.status_code == 200
        assert response.json()["target"] == "shop"
        assert response.json()["templates"] == 0

    def test_unknown_session(self, client):
        assert client.get("/api/sessions/missing").status_code == 404

    def test_ingest_and_templates(self, client):
        session_id = create_session(client)

        response = client.post(f"/api/sessions/{session_id}/exchanges", json={"exchanges": TRAFFIC})

        assert response.status_code == 200
        assert response.json() == {"received": 3, "clustered": 3, "skipped": 0, "templates": 2}

        templates = client.get(f"/api/sessions/{session_id}/templates").json()
        assert [t["path"] for t in templates] == ["/api/users", "/api/users/{id}"]

    def test_malformed_exchange_is_skipped(self, client):
        session_id = create_session(client)
        bad = dict(TRAFFIC[0], url="ftp://example.com/x")

        response = client.post(f"/api/sessions/{session_id}/exchanges", json={"exchanges": [bad]})

        assert response.json()["skipped"] == 1
        warnings = client.get(f"/api/sessions/{session_id}/warnings").json()
        assert warnings[0]["kind"] == "malformed_exchange"

    def test_ingest_har(self, client):
        session_id = create_session(client)
        har = {"log": {"entries": [
            {
                "startedDateTime": "2024-01-01T12:00:00Z",
                "request": {"method": "GET", "url": "https://api.example.com/api/items", "headers": []},
                "response": {
                    "status": 200,
                    "headers": [{"name": "Content-Type", "value": "application/json"}],
                    "content": {"text": "[]"},
                },
            },
            {
                "startedDateTime": "2024-01-01T12:00:01Z",
                "request": {"method": "GET", "url": "https://cdn.example.com/app.js", "headers": []},
                "response": {"status": 200, "headers": [], "content": {}},
            },
        ]}}

        response = client.post(f"/api/sessions/{session_id}/har", json=har)

        assert response.json() == {"received": 2, "clustered": 1, "skipped": 1, "templates": 1}

    def test_synthesize_and_fetch(self, client):
        session_id = create_session(client)
        client.post(f"/api/sessions/{session_id}/exchanges", json={"exchanges": TRAFFIC})

        response = client.post(f"/api/sessions/{session_id}/synthesize")

        assert response.status_code == 200
        result = response.json()
        assert result["version"] == "1.0.0"
        assert result["changelog"]["baseline_missing"] is True
        assert "/api/users/{id}" in result["document"]["paths"]

        as_json = client.get("/api/specs/shop/latest", params={"format": "json"})
        assert as_json.headers["content-type"].startswith("application/json")
        assert as_json.json() == result["document"]

        as_yaml = client.get("/api/specs/shop/latest")
        assert as_yaml.headers["content-type"].startswith("application/yaml")
        assert yaml.safe_load(as_yaml.text) == result["document"]

        assert client.get("/api/specs/").json() == ["shop"]
        assert [v["version"] for v in client.get("/api/specs/shop/versions").json()] == ["1.0.0"]
        changelog = client.get("/api/specs/shop/1.0.0/changelog").json()
        assert changelog["baseline_missing"] is True
        assert client.get("/api/specs/shop/1.0.0", params={"format": "json"}).json() == result["document"]

    def test_second_session_diffs_against_first(self, client):
        first = create_session(client)
        client.post(f"/api/sessions/{first}/exchanges", json={"exchanges": TRAFFIC})
        client.post(f"/api/sessions/{first}/synthesize")

        second = create_session(client)
        more = TRAFFIC + [payload("/api/orders", body=[], seconds=9)]
        client.post(f"/api/sessions/{second}/exchanges", json={"exchanges": more})
        result = client.post(f"/api/sessions/{second}/synthesize").json()

        assert result["version"] == "1.1.0"
        assert result["changelog"]["added"] == [["/api/orders", "GET"]]

    def test_version_already_stored_is_conflict(self, client, monkeypatch):
        first = create_session(client)
        client.post(f"/api/sessions/{first}/exchanges", json={"exchanges": TRAFFIC})
        second = create_session(client)
        more = TRAFFIC + [payload("/api/orders", body=[], seconds=9)]
        client.post(f"/api/sessions/{second}/exchanges", json={"exchanges": more})
        assert client.post(f"/api/sessions/{first}/synthesize").status_code == 200

        async def no_baseline(target):
            return None

        # Second session read the baseline before the first one stored 1.0.0
        monkeypatch.setattr(client.app.state.store, "latest", no_baseline)
        response = client.post(f"/api/sessions/{second}/synthesize")

        assert response.status_code == 409
        assert "1.0.0" in response.json()["detail"]

    def test_abort(self, client):
        session_id = create_session(client)
        client.post(f"/api/sessions/{session_id}/exchanges", json={"exchanges": TRAFFIC})

        response = client.post(f"/api/sessions/{session_id}/abort")

        assert response.json()["aborted"] is True
        assert response.json()["templates"] == 0
        assert client.post(f"/api/sessions/{session_id}/synthesize").status_code == 409
        assert client.post(
            f"/api/sessions/{session_id}/exchanges", json={"exchanges": TRAFFIC}
        ).status_code == 409

    def test_missing_spec(self, client):
        assert client.get("/api/specs/nobody/latest").status_code == 404
        assert client.get("/api/specs/nobody/versions").status_code == 404
