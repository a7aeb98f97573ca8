import pytest
from fastapi.testclient import TestClient

from riskguard.api import endpoints
from riskguard.api.endpoints import get_services
from riskguard.main import app
from riskguard.models.ensemble import FixedWeightNetwork
from tests.conftest import AGENT_ID, BASE_TIME, DEVICE_ID, HOME, USER_ID

SECRET = "device-secret-7f3a"


@pytest.fixture()
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    endpoints.performance_metrics.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def api_user(client):
    response = client.post("/users", json={"id": USER_ID, "username": "ramesh", "phone_number": "+91-9876543210"})
    assert response.status_code == 201
    return response.json()


def transaction_body(**overrides):
    body = {
        "user_id": USER_ID,
        "device_id": DEVICE_ID,
        "type": "debit",
        "amount": 1000,
        "description": "Grocery store purchase",
        "location": HOME,
        "timestamp": BASE_TIME.isoformat(),
    }
    body.update(overrides)
    return body


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["components"]["storage"] == "MemoryStorage"
    assert health["timestamp"] == BASE_TIME.isoformat()


def test_create_and_predict_stored_transaction(client, api_user):
    created = client.post("/transactions", json=transaction_body())
    assert created.status_code == 201
    transaction_id = created.json()["id"]

    response = client.post("/predict", json={"transaction_id": transaction_id})

    assert response.status_code == 200
    data = response.json()
    assert data["transaction_id"] == transaction_id
    assert 0 <= data["fraud_score"] <= 100
    assert data["recommended_action"] in ("approve", "review", "additional_auth", "block")
    assert client.get("/metrics").json()["system_performance"]["total_predictions"] == 1


def test_predict_inline_transaction(client, api_user):
    response = client.post("/predict", json={"transaction": transaction_body(id="inline-1")})
    assert response.status_code == 200
    assert response.json()["transaction_id"] == "inline-1"


@pytest.mark.parametrize("body", [{}, {"transaction_id": "x", "transaction": transaction_body()}])
def test_predict_requires_exactly_one_reference(client, body):
    assert client.post("/predict", json=body).status_code == 422


def test_unknown_records_are_404(client, api_user):
    assert client.post("/predict", json={"transaction_id": "missing"}).status_code == 404
    assert client.post("/transactions", json=transaction_body(user_id="nobody")).status_code == 404
    assert client.post("/transactions/missing/feedback", json={"was_fraud": True}).status_code == 404
    assert client.get("/users/nobody/fraud-profile").status_code == 404
    assert client.get("/users/nobody/alerts").status_code == 404


def test_process_transaction(client, api_user):
    response = client.post("/transactions/process", json=transaction_body())

    assert response.status_code == 200
    data = response.json()
    assert data["decision"] in ("approved", "review", "blocked")
    assert data["combined_risk_score"] == max(data["fraud_score"], data["anomaly_score"])


def test_anomaly_and_ensemble(client, api_user):
    anomaly = client.post("/anomaly", json={"transaction": transaction_body()})
    assert anomaly.status_code == 200
    assert 0 <= anomaly.json()["overall_score"] <= 100

    ensemble = client.post("/ensemble", json={"amount": 50000, "time_of_day": 2, "location_risk": 90,
                                              "device_trust_score": 10, "vpn_detected": True})
    assert ensemble.status_code == 200
    assert ensemble.json()["decision"] in ("review", "block")


def test_device_fingerprint_and_sim_swap(client, api_user, raw_device):
    body = {"user_id": USER_ID, "device_id": DEVICE_ID, "device_info": raw_device.model_dump()}

    first = client.post("/devices/fingerprint", json=body).json()
    second = client.post("/devices/fingerprint", json=body).json()
    assert first["created"] is True
    assert second["created"] is False
    assert first["fingerprint_id"] == second["fingerprint_id"]
    assert first["processed"]["device_class"] == "mid-range"

    swap = client.post("/sim-swap/detect", json={
        "user_id": USER_ID,
        "device_id": DEVICE_ID,
        "old_network_info": {"carrier": "Jio", "imsi": "405857000000001"},
        "new_network_info": {"carrier": "Airtel", "imsi": "404100000000002"},
        "timestamp": BASE_TIME.replace(hour=2).isoformat(),
    })
    assert swap.status_code == 200
    assert swap.json()["detected"] is True
    events = client.get(f"/users/{USER_ID}/security-events").json()
    assert events[0]["event_type"] == "sim_swap"


def test_agent_analysis_defaults_to_last_day(client, services, make_transaction):
    client.post("/users", json={"id": AGENT_ID, "username": "sita", "is_agent": True})
    client.post("/users", json={"id": USER_ID, "username": "ramesh"})
    services.storage.create_transaction(make_transaction(agent_id=AGENT_ID, amount=2000))

    response = client.post(f"/agents/{AGENT_ID}/analyze")

    assert response.status_code == 200
    assert response.json()["recommended_action"] == "monitor"

    batch = {"transactions": [transaction_body(agent_id=AGENT_ID)]}
    assert client.post(f"/agents/{AGENT_ID}/analyze", json=batch).status_code == 200


def test_offline_requires_device_secret(client, api_user):
    body = {"user_id": USER_ID, "device_id": DEVICE_ID, "transaction": {"type": "debit", "amount": 1000}}

    assert client.post("/offline/queue", json=body).status_code == 400
    assert client.post("/offline/sync", json={"user_id": USER_ID}).status_code == 400


def test_offline_queue_status_and_sync(client, api_user):
    body = {"user_id": USER_ID, "device_id": DEVICE_ID,
            "transaction": {"type": "debit", "amount": 1000, "description": "Grocery store purchase"}}
    headers = {"X-Device-Secret": SECRET}

    queued = client.post("/offline/queue", json=body, headers=headers).json()
    assert queued["accepted"] is True

    status = client.get(f"/offline/status/{USER_ID}").json()
    assert status["queued_transactions"] == 1
    assert status["total_amount"] == 1000

    synced = client.post("/offline/sync", json={"user_id": USER_ID}, headers=headers).json()
    assert synced["succeeded"] == 1
    committed = client.post("/predict", json={"transaction_id": synced["committed_transaction_ids"][0]})
    assert committed.status_code == 200


def test_failed_logins_raise_alert(client, api_user):
    results = [client.post(f"/security/failed-login/{USER_ID}").json() for _ in range(5)]

    assert results[-1]["should_block"] is True
    alerts = client.get(f"/users/{USER_ID}/alerts", params={"active_only": True}).json()
    assert len(alerts) == 1
    assert alerts[0]["severity"] == "danger"


def test_blacklist_and_feedback(client, api_user):
    added = client.post("/security/blacklist", json={"identifier": DEVICE_ID, "kind": "device"})
    assert added.status_code == 201

    response = client.post("/predict", json={"transaction": transaction_body()})
    assert response.json()["recommended_action"] == "block"

    transaction_id = client.post("/transactions", json=transaction_body()).json()["id"]
    feedback = client.post(f"/transactions/{transaction_id}/feedback", json={"was_fraud": True})
    assert feedback.json()["status"] == "flagged"

    profile = client.get(f"/users/{USER_ID}/fraud-profile").json()
    assert profile["flagged_transactions"] == 1


class StubTrainer:
    model_metrics = {}

    def train_model(self):
        self.model_metrics = {"f1": 0.9}
        return FixedWeightNetwork(), self.model_metrics


def test_retrain_swaps_network_model(client, services, monkeypatch):
    monkeypatch.setattr(endpoints, "model_trainer", StubTrainer())
    services.ensemble.network_model = None

    response = client.post("/retrain")

    assert response.status_code == 200
    assert response.json()["metrics"] == {"f1": 0.9}
    assert isinstance(services.ensemble.network_model, FixedWeightNetwork)
    assert client.get("/metrics").json()["model_performance"] == {"f1": 0.9}
