import pytest

from riskguard.models.scoring import FraudPrediction, classify_score
from riskguard.pipeline import RiskPipeline
from tests.conftest import DEVICE_ID, USER_ID


class FixedScorer:
    """Scorer stand-in that returns a preset score"""

    def __init__(self, score, reasons=()):
        self.score = score
        self.reasons = list(reasons)

    def predict_fraud(self, transaction, user_id):
        risk_level, action = classify_score(self.score)
        return FraudPrediction(
            fraud_score=self.score, risk_level=risk_level,
            primary_reasons=self.reasons, recommended_action=action,
        )


def test_routine_transaction_is_approved(services, storage, history, make_transaction):
    decision = services.pipeline.process_transaction(make_transaction())

    assert decision.decision == "approved"
    assert decision.status == "verified"
    assert decision.combined_risk_score == max(decision.fraud_score, decision.anomaly_score)
    stored = storage.get_transaction(decision.transaction_id)
    assert stored.status == "verified"
    assert stored.fraud_score == decision.fraud_score
    assert storage.get_user_fraud_alerts(USER_ID) == []


def test_blacklisted_device_is_blocked_with_alert(services, storage, history, make_transaction):
    services.blacklist.add(DEVICE_ID, "device", reason="reported stolen")

    decision = services.pipeline.process_transaction(make_transaction(amount=4500))

    assert decision.decision == "blocked"
    assert decision.status == "flagged"
    assert "Transaction from blacklisted device" in decision.reasons
    assert storage.get_transaction(decision.transaction_id).status == "flagged"

    event = storage.get_user_security_events(USER_ID)[0]
    alert = storage.get_user_fraud_alerts(USER_ID)[0]
    assert event.id == decision.security_event_id
    assert event.event_type == "fraud_blocked"
    assert event.details["transaction_id"] == decision.transaction_id
    assert alert.id == decision.alert_id
    assert alert.transaction_id == decision.transaction_id
    assert alert.security_event_id == event.id
    assert "₹4,500.00" in alert.description


def test_blacklisted_user_is_blocked_whatever_the_score(services, storage, history, make_transaction):
    services.blacklist.add(USER_ID, "user")

    decision = services.pipeline.process_transaction(make_transaction())

    assert decision.combined_risk_score <= 80
    assert decision.recommended_action == "block"
    assert (decision.decision, decision.status) == ("blocked", "flagged")
    assert "Transaction from blacklisted user" in decision.reasons
    assert storage.get_transaction(decision.transaction_id).status == "flagged"
    assert decision.alert_id is not None


def test_locked_out_user_transaction_is_flagged(services, storage, history, make_transaction):
    for _ in range(5):
        services.login_tracker.track_failed_login(USER_ID)

    decision = services.pipeline.process_transaction(make_transaction())

    assert (decision.decision, decision.status) == ("blocked", "flagged")
    assert "User account temporarily locked due to failed login attempts" in decision.reasons
    event = storage.get_user_security_events(USER_ID)[0]
    assert event.id == decision.security_event_id


@pytest.mark.parametrize("score,decision,status", [
    (60, "approved", "verified"),
    (61, "review", "pending"),
    (80, "review", "pending"),
    (81, "blocked", "flagged"),
])
def test_decision_bands(services, storage, history, make_transaction, score, decision, status):
    pipeline = RiskPipeline(storage, FixedScorer(score), services.anomaly_engine, clock=services.clock)

    result = pipeline.process_transaction(make_transaction())

    assert (result.decision, result.status) == (decision, status)
    assert storage.get_transaction(result.transaction_id).status == status


def test_blocked_without_reasons_gets_a_generic_one(services, storage, history, make_transaction):
    pipeline = RiskPipeline(storage, FixedScorer(95), services.anomaly_engine, clock=services.clock)

    result = pipeline.process_transaction(make_transaction())

    assert result.reasons == ["Combined fraud and anomaly risk exceeds the blocking threshold"]


def test_anomaly_details_are_merged_without_duplicates(services, storage, history, make_transaction, clock):
    pipeline = RiskPipeline(
        storage, FixedScorer(10, reasons=["Late-night transaction"]), services.anomaly_engine, clock=clock,
    )

    result = pipeline.process_transaction(make_transaction(timestamp=clock().replace(hour=2)))

    assert result.reasons.count("Late-night transaction") == 1
    assert result.reasons[0] == "Late-night transaction"
    assert result.anomaly_score > 0
