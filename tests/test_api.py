"""
Tests for the HTTP and WebSocket API.
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from alertflow.api.main import create_app
from alertflow.incidents.store import InMemoryIncidentStore
from alertflow.notifications import NotificationHub
from alertflow.orchestrator import Orchestrator
from alertflow.pipeline.enrichment import EnrichmentCache, EnrichmentClient

from fakes import FakeIntelProvider, ScriptedActionProvider


def alert(value, severity="medium", minute=0):
    return {
        "timestamp": f"2026-05-04T12:{minute:02d}:00Z",
        "severity": severity,
        "indicators": {"ip": [value]},
    }


@pytest.fixture
def client(settings, registry):
    hub = NotificationHub()
    orchestrator = Orchestrator(
        settings,
        store=InMemoryIncidentStore(hub),
        enrichment=EnrichmentClient(settings, FakeIntelProvider(), EnrichmentCache()),
        registry=registry,
        provider=ScriptedActionProvider(),
        hub=hub,
    )
    with TestClient(create_app(settings, orchestrator=orchestrator)) as client:
        yield client


def ingest(client, payload, sensor="canonical"):
    response = client.post(f"/api/v1/events/{sensor}", params={"wait": "true"}, json=payload)
    assert response.status_code == 202
    return response.json()


class TestHealth:
    """Health endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, client):
        data = client.get("/health/detailed").json()
        assert data["status"] == "healthy"
        assert data["playbooks"] == ["contain-ip"]
        assert data["environment"] == "development"


class TestEvents:
    """Event ingestion."""

    def test_ingest_with_wait_returns_incident(self, client):
        accepted = ingest(client, alert("203.0.113.66"))
        assert accepted["incident_id"] is not None

        incident = client.get(f"/api/v1/incidents/{accepted['incident_id']}").json()
        assert {"kind": "ip", "value": "203.0.113.66"} in incident["indicators"]

    def test_ingest_without_wait(self, client):
        response = client.post("/api/v1/events/canonical", json=alert("203.0.113.66"))
        assert response.status_code == 202
        assert response.json()["incident_id"] is None

    def test_malformed_payload(self, client):
        response = client.post("/api/v1/events/suricata", json={"event_type": "alert"})
        assert response.status_code == 400
        assert response.json()["error"] == "MalformedPayload"

    def test_unknown_sensor(self, client):
        response = client.post("/api/v1/events/snort", json=alert("203.0.113.66"))
        assert response.status_code == 400
        assert response.json()["error"] == "UnsupportedSource"

    def test_odd_optional_fields_accepted(self, client):
        payload = alert("203.0.113.66")
        payload["message"] = {"text": "nested"}
        accepted = ingest(client, payload)
        assert accepted["incident_id"] is not None

        suricata = {
            "timestamp": "2026-05-04T12:00:00Z",
            "src_ip": "10.0.0.5",
            "alert": {"signature": "scan", "severity": [1]},
        }
        assert ingest(client, suricata, sensor="suricata")["incident_id"] is not None


class TestIncidents:
    """Incident queries and operator actions."""

    def test_list_with_filters(self, client):
        ingest(client, alert("10.0.0.5", severity="low"))
        ingest(client, alert("203.0.113.66", severity="critical", minute=1))

        everything = client.get("/api/v1/incidents").json()
        assert everything["total"] == 2

        severe = client.get("/api/v1/incidents", params={"min_severity": "high"}).json()
        assert severe["total"] == 1
        assert severe["incidents"][0]["severity"] == "critical"

    def test_unknown_incident(self, client):
        response = client.get(f"/api/v1/incidents/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"] == "IncidentNotFound"

    def test_close_and_reopen(self, client):
        incident_id = ingest(client, alert("10.0.0.5"))["incident_id"]

        closed = client.post(
            f"/api/v1/incidents/{incident_id}/close",
            json={"actor": "analyst", "reason": "benign scanner"},
        )
        assert closed.status_code == 200
        assert closed.json()["status"] == "closed"
        assert closed.json()["history"][-1]["actor"] == "analyst"

        reopened = client.post(f"/api/v1/incidents/{incident_id}/reopen", json={"actor": "analyst"})
        assert reopened.status_code == 200
        assert reopened.json()["status"] == "open"

    def test_reopen_open_incident_conflicts(self, client):
        incident_id = ingest(client, alert("10.0.0.5"))["incident_id"]

        response = client.post(f"/api/v1/incidents/{incident_id}/reopen")
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidStatusTransition"


class TestPlaybooks:
    """Manual playbook runs and run queries."""

    def test_trigger_and_query_run(self, client):
        incident_id = ingest(client, alert("203.0.113.66"))["incident_id"]

        response = client.post(
            f"/api/v1/incidents/{incident_id}/playbooks/contain-ip",
            json={"actor": "analyst"},
        )
        assert response.status_code == 202
        run = response.json()
        assert run["playbook"] == "contain-ip"
        assert run["incident_id"] == incident_id

        fetched = client.get(f"/api/v1/runs/{run['run_id']}")
        assert fetched.status_code == 200

        runs = client.get(f"/api/v1/incidents/{incident_id}/runs").json()
        assert run["run_id"] in [r["run_id"] for r in runs["runs"]]

    def test_unknown_playbook(self, client):
        incident_id = ingest(client, alert("203.0.113.66"))["incident_id"]

        response = client.post(f"/api/v1/incidents/{incident_id}/playbooks/no-such-playbook")
        assert response.status_code == 404
        assert response.json()["error"] == "UnknownPlaybook"

    def test_unknown_run(self, client):
        assert client.get(f"/api/v1/runs/{uuid4()}").status_code == 404
        assert client.post(f"/api/v1/runs/{uuid4()}/cancel").status_code == 404


class TestWebSocket:
    """Real-time notifications."""

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws/notifications") as websocket:
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

    def test_status_change_streamed(self, client):
        with client.websocket_connect("/ws/notifications") as websocket:
            accepted = ingest(client, alert("10.0.0.5"))

            message = websocket.receive_json()
            assert message["type"] == "notification"
            assert message["kind"] == "incident_status_changed"
            assert message["incident_id"] == accepted["incident_id"]
            assert message["to_status"] == "open"

    def test_disconnect_releases_connection(self, client):
        manager = client.app.state.ws_manager
        with client.websocket_connect("/ws/notifications") as websocket:
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}
            assert len(manager.active_connections) == 1

        assert manager.active_connections == []
