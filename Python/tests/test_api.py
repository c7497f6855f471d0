"""
API tests: session endpoints, SSE turns, audit log and monitoring routes.
"""
import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from app import build_service, create_app
from hot_config import ConfigWatcher
from world_event_log import WorldEventLog


def parse_sse(body):
    """Split an SSE body into (event, data) pairs."""
    events = []
    for frame in body.strip().split("\n\n"):
        kind, data = None, None
        for line in frame.splitlines():
            if line.startswith("event: "):
                kind = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        events.append((kind, data))
    return events


@pytest.fixture
def app_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"log_level": "WARNING", "json_logging": False, "hot_reload": False}))
    return ConfigWatcher(str(path))


@pytest.fixture
def build_client(make_service, app_config):
    def _build(model):
        service = make_service(model)
        return TestClient(create_app(service=service, config=app_config))
    return _build


class TestSessions:

    def test_create_and_get(self, build_client, scripted):
        with build_client(scripted(["x"])) as client:
            created = client.post("/api/story/sessions",
                                  json={"session_id": "s1", "arc_name": "Prologue"})
            assert created.status_code == 200
            assert created.json()["arc_name"] == "Prologue"
            assert created.json()["version"] == 0

            fetched = client.get("/api/story/sessions/s1")
            assert fetched.status_code == 200
            assert fetched.json()["session_id"] == "s1"

    def test_duplicate_session_conflicts(self, build_client, scripted):
        with build_client(scripted(["x"])) as client:
            client.post("/api/story/sessions", json={"session_id": "s1"})
            response = client.post("/api/story/sessions", json={"session_id": "s1"})
            assert response.status_code == 409

    def test_unknown_session(self, build_client, scripted):
        with build_client(scripted(["x"])) as client:
            assert client.get("/api/story/sessions/nope").status_code == 404
            assert client.get("/api/story/sessions/nope/events").status_code == 404
            assert client.get("/api/story/sessions/nope/convergence").status_code == 404
            turn = client.post("/api/story/sessions/nope/turn", json={"user_input": "hi"})
            assert turn.status_code == 404


class TestTurnStream:

    def test_turn_streams_and_reconciles(self, build_client, scripted, assessment_block):
        block = assessment_block(
            worldStateUpdates={"gate": "open"},
            convergenceStatusUpdates={"progress": 0.6},
        )
        with build_client(scripted(["The gate ", "creaks open. ", block])) as client:
            client.post("/api/story/sessions", json={"session_id": "s1"})

            response = client.post("/api/story/sessions/s1/turn", json={"user_input": "push the gate"})
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            assert response.headers["x-turn-id"]

            events = parse_sse(response.text)
            kinds = [k for k, _ in events]
            assert kinds[-1] == "complete"
            assert kinds.count("complete") == 1
            assert "error" not in kinds

            final = events[-1][1]
            assert final["status"] == "completed"
            assert final["narrative"] == "The gate creaks open."
            assert final["reconciliation"]["applied"] == ["worldStateUpdates", "convergenceStatusUpdates"]

            log = client.get("/api/story/sessions/s1/events").json()
            assert log["count"] == 2
            assert [e["sequence"] for e in log["events"]] == [1, 2]
            assert client.get("/api/story/sessions/s1/events?limit=1").json()["events"][0]["sequence"] == 2

            convergence = client.get("/api/story/sessions/s1/convergence").json()
            assert convergence["summary"].startswith("Convergence: 60%")

            session = client.get("/api/story/sessions/s1").json()
            assert session["world_state"] == {"gate": "open"}
            assert session["version"] == 1

    def test_empty_input_rejected(self, build_client, scripted):
        with build_client(scripted(["x"])) as client:
            client.post("/api/story/sessions", json={"session_id": "s1"})
            response = client.post("/api/story/sessions/s1/turn", json={"user_input": "   "})
            assert response.status_code == 400


class TestMonitoring:

    def test_health_and_status(self, build_client, scripted):
        with build_client(scripted(["x"])) as client:
            health = client.get("/api/health").json()
            assert health["status"] == "healthy"

            status = client.get("/api/status").json()
            assert status["version"]
            assert status["components"]["model_reachable"] is True
            assert status["components"]["active_turns"] == 0

    def test_metrics(self, build_client, scripted):
        with build_client(scripted(["Hello."])) as client:
            client.post("/api/story/sessions", json={"session_id": "s1"})
            client.post("/api/story/sessions/s1/turn", json={"user_input": "hi"})

            text = client.get("/metrics").text
            assert "# TYPE questline_turns_started_total counter" in text

            metrics = client.get("/metrics/json").json()
            assert metrics["questline_turns_started_total"]["value"] >= 1

    def test_request_id_header(self, build_client, scripted):
        with build_client(scripted(["x"])) as client:
            response = client.get("/api/health", headers={"X-Request-ID": "req-123"})
            assert response.headers["x-request-id"] == "req-123"


class TestMetricTypes:

    def test_histogram_exposition(self):
        from prometheus_metrics import Histogram

        histogram = Histogram("turn_seconds", "Turn duration", buckets=(1, 5))
        for value in (0.5, 3, 12):
            histogram.observe(value)
        text = histogram.to_prometheus()
        assert 'turn_seconds_bucket{le="1"} 1' in text
        assert 'turn_seconds_bucket{le="5"} 2' in text
        assert 'turn_seconds_bucket{le="+Inf"} 3' in text
        assert "turn_seconds_count 3" in text

    def test_counter_cannot_decrease(self):
        from prometheus_metrics import Counter

        with pytest.raises(ValueError):
            Counter("c", "help").inc(-1)


class TestSessionDeletion:

    def test_delete_session(self, build_client, scripted):
        with build_client(scripted(["x"])) as client:
            client.post("/api/story/sessions", json={"session_id": "s1"})
            response = client.delete("/api/story/sessions/s1")
            assert response.status_code == 200
            assert response.json() == {"deleted": "s1"}
            assert client.get("/api/story/sessions/s1").status_code == 404
            assert client.delete("/api/story/sessions/s1").status_code == 404


class TestRestart:

    def test_rebuilt_service_continues_event_sequence(self, tmp_path, make_assessment):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"event_log_dir": str(tmp_path / "events"), "hot_reload": False}))
        config = ConfigWatcher(str(path))

        first = build_service(config)
        first.create_session("s1")
        first.reconciler.reconcile("s1", make_assessment(worldStateUpdates={"gate": "open"}))

        # Same client-chosen id after a restart
        second = build_service(config)
        second.create_session("s1")
        second.reconciler.reconcile("s1", make_assessment(worldStateUpdates={"gate": "shut"}))

        assert [e.sequence for e in second.event_log.events("s1")] == [1, 2]
        assert WorldEventLog.load_from_directory(tmp_path / "events").count("s1") == 2
