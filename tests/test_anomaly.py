from datetime import timedelta

import pytest

from riskguard.security.anomaly import AnomalyEngine, _hour_distance
from tests.conftest import USER_ID

ALL_DIMENSIONS_FULL = {"behavioral": 1.0, "device": 1.0, "pattern": 1.0, "temporal": 1.0, "geographic": 1.0}


@pytest.fixture()
def engine(storage, clock):
    return AnomalyEngine(storage, clock=clock)


@pytest.fixture()
def unusual_transaction(make_transaction, clock):
    return make_transaction(
        amount=8000,
        device_id="unknown-handset-42",
        location="Mumbai, Maharashtra",
        description="Transfer to new payee",
        timestamp=clock().replace(hour=2),
    )


def test_routine_transaction_has_no_anomaly(engine, storage, history, make_transaction):
    transaction = storage.create_transaction(make_transaction())
    score = engine.analyze_transaction(transaction, transaction.user_id)

    assert score.overall_score == 0
    assert score.anomaly_type == "none"
    assert score.details == []
    assert score.transaction_id == transaction.id


def test_unusual_transaction_is_explained(engine, history, unusual_transaction):
    score = engine.analyze_transaction(unusual_transaction, unusual_transaction.user_id)

    assert score.user_behavior_score == 40
    assert score.device_behavior_score == 40
    assert score.temporal_score == 45
    assert score.geographic_score == 25
    assert score.overall_score > 0
    assert "Device never seen for this user" in score.details
    assert "Late-night transaction" in score.details
    assert "Amount is 8.0x the personal average" in score.details


def test_short_history_has_baseline_pattern_score(engine, user, make_transaction):
    assert engine.analyze_transaction_patterns(make_transaction(), [], []) == 20


def test_rescoring_a_past_transaction_ignores_later_ones(engine, storage, user, make_transaction, clock):
    stored = [
        storage.create_transaction(make_transaction(amount=100 * (i + 1), timestamp=clock() - timedelta(days=6 - i)))
        for i in range(6)
    ]
    increasing = "Steadily increasing amounts suggest limit testing"

    assert increasing not in engine.analyze_transaction(stored[0], USER_ID).details
    assert increasing in engine.analyze_transaction(stored[-1], USER_ID).details


def test_increasing_amounts():
    assert AnomalyEngine.detect_increasing_pattern([100, 200, 300, 400, 500])
    assert not AnomalyEngine.detect_increasing_pattern([500, 400, 300, 200, 100])
    assert not AnomalyEngine.detect_increasing_pattern([100, 200, 300])


def test_hour_distance_wraps_midnight():
    assert _hour_distance(23, 1) == 2
    assert _hour_distance(11, 2) == 9


def test_stream_records_each_critical_item_and_stops_when_asked(storage, clock, history, unusual_transaction):
    engine = AnomalyEngine(storage, clock=clock, weights=ALL_DIMENSIONS_FULL)
    batch = [unusual_transaction.model_copy(update={"id": f"tx-{i}"}) for i in range(3)]
    should_stop = iter([False, False, True]).__next__

    result = engine.score_transaction_stream(batch, should_stop=should_stop)

    assert result.processed == 2
    assert result.stopped_early
    assert [s.transaction_id for s in result.scores] == ["tx-0", "tx-1"]
    events = storage.get_user_security_events(unusual_transaction.user_id)
    assert sorted(e.details["transaction_id"] for e in events) == ["tx-0", "tx-1"]
    assert all(e.event_type == "anomaly_detected" for e in events)
    assert result.aggregate_risk == 100
    assert result.recommendations[0] == "Implement immediate additional authentication"


def test_stream_without_recording(storage, clock, history, unusual_transaction, spy):
    engine = AnomalyEngine(storage, clock=clock, weights=ALL_DIMENSIONS_FULL)
    spy.return_value = False

    result = engine.score_transaction_stream([unusual_transaction], should_stop=spy, record_critical=False)

    assert len(spy.calls) == 1
    assert result.processed == 1
    assert not result.stopped_early
    assert storage.get_user_security_events(unusual_transaction.user_id) == []


def test_empty_stream(engine):
    result = engine.score_transaction_stream([])
    assert result.processed == 0
    assert result.aggregate_risk == 0
    assert result.recommendations == []
