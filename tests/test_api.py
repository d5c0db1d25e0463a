"""
Pytest tests for the FastAPI server: event intake, profile/history/confidence
reads, anomalies, analytics and error mapping.
"""

from __future__ import annotations

USER = "0x742d35cc6634c0532925a3b844bc454e4438f44e"
NOW = 1_700_000_000.0


def _event_body(**overrides):
    body = {
        "tx_hash": "0xapi0001",
        "user_address": USER,
        "impacts": {"defiReliability": 1.0},
        "risk_score": 0.2,
        "data_weight": 1.5,
        "protocol": "Aave V2",
        "timestamp": NOW,
        "value_eth": 0.1,
    }
    body.update(overrides)
    return body


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_post_event_scores_profile(client):
    """POST /events applies the update and returns old/new scores."""
    r = client.post("/events", json=_event_body())
    assert r.status_code == 200
    data = r.json()
    assert data["updated_dimensions"] == ["defiReliability"]
    assert data["old_scores"] == {"defiReliability": 500}
    assert data["new_scores"] == {"defiReliability": 519}
    assert data["priority"] == "normal"
    assert data["sla_class"] == "positive"
    assert data["update_id"]

    profile = client.get(f"/profile/{USER}").json()
    assert profile["dimensions"]["defiReliability"]["score"] == 519
    assert profile["dimensions"]["defiReliability"]["data_points"] == 1
    assert profile["dimensions"]["stakingCommitment"]["score"] == 500


def test_unknown_user_gets_default_profile(client):
    r = client.get("/profile/0xnobody")
    assert r.status_code == 200
    dims = r.json()["dimensions"]
    assert len(dims) == 5
    assert all(d["score"] == 500 and d["data_points"] == 0 for d in dims.values())


def test_invalid_event_rejected(client):
    """Out-of-range impact or unknown dimension: 422 and nothing applied."""
    r = client.post("/events", json=_event_body(impacts={"defiReliability": 1.5}))
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "invalid_event"

    r = client.post("/events", json=_event_body(impacts={"creditCardDebt": 0.5}))
    assert r.status_code == 422

    r = client.post("/events", json=_event_body(risk_score=2.0))
    assert r.status_code == 422

    assert client.get(f"/history/{USER}").json() == []


def test_high_risk_event_escalated(client):
    r = client.post("/events", json=_event_body(risk_score=0.9, priority="normal"))
    assert r.status_code == 200
    assert r.json()["priority"] == "immediate"
    assert r.json()["sla_class"] == "negative"


def test_history_endpoint_filters(client):
    client.post("/events", json=_event_body())
    client.post(
        "/events",
        json=_event_body(tx_hash="0xapi0002", impacts={"stakingCommitment": 0.8}, protocol="Lido"),
    )
    all_entries = client.get(f"/history/{USER}").json()
    assert len(all_entries) == 2
    defi = client.get(f"/history/{USER}", params={"dimension": "defi_reliability"}).json()
    assert len(defi) == 1
    assert defi[0]["score"] == 519
    assert defi[0]["trigger"].startswith("0xapi0001")
    assert client.get(f"/history/{USER}", params={"dimension": "nope"}).status_code == 404


def test_confidence_endpoint(client):
    client.post("/events", json=_event_body())
    r = client.get(f"/confidence/{USER}/defiReliability")
    assert r.status_code == 200
    data = r.json()
    assert data["dimension"] == "defiReliability"
    assert 0 <= data["confidence"] <= 100
    assert data["interval"]["lower"] <= 519 <= data["interval"]["upper"]
    assert client.get(f"/confidence/{USER}/creditCardDebt").status_code == 404


def test_anomalies_endpoint(client):
    """A burst of high-risk events shows up for review."""
    for i in range(4):
        client.post(
            "/events",
            json=_event_body(tx_hash=f"0xrisk{i}", risk_score=0.9, timestamp=NOW + i * 60),
        )
    r = client.get("/anomalies", params={"window_sec": 3600})
    assert r.status_code == 200
    reports = r.json()
    assert any(a["type"] == "potential_fraud" for a in reports)
    assert all(a["user_address"] == USER for a in reports)


def test_analytics_and_status(client):
    client.post("/events", json=_event_body())
    analytics = client.get(f"/analytics/{USER}").json()
    assert analytics["dimensions"]["defiReliability"]["score"] == 519
    assert "recommendations" in analytics

    status = client.get("/status").json()
    assert status["running"] is True
    assert status["events_processed"] == 1
    assert status["workers"]["worker_count"] == 2
    assert status["scheduler"]["queue_size"] == 1


def test_non_finite_numbers_rejected(client):
    """Infinity in the JSON body is a 422 before any worker sees the event."""
    import json

    body = json.dumps(_event_body()).replace('"data_weight": 1.5', '"data_weight": Infinity')
    r = client.post("/events", content=body, headers={"content-type": "application/json"})
    assert r.status_code == 422
    assert client.get(f"/history/{USER}").json() == []
    assert client.get("/status").json()["events_processed"] == 0


def test_slow_event_returns_504(clock):
    """A worker that does not answer within the event timeout gives 504, not 500."""
    import time

    from fastapi.testclient import TestClient

    from backend_credit.agent_worker.worker import WorkerConfig
    from backend_credit.api_server.server import create_app
    from backend_credit.database.store import InMemoryProfileStore
    from backend_credit.scoring_engine.service import ScoringEngineService

    class SlowStore(InMemoryProfileStore):
        def load_history(self, user_address, dimension=None, since=None, until=None):
            time.sleep(0.3)
            return super().load_history(user_address, dimension, since, until)

    app = create_app(
        engine_factory=lambda: ScoringEngineService(store=SlowStore(), clock=clock),
        worker_config=WorkerConfig(worker_count=1),
        event_timeout_sec=0.05,
    )
    with TestClient(app) as c:
        r = c.post("/events", json=_event_body())
        assert r.status_code == 504
        assert r.json()["detail"]["code"] == "event_timeout"
