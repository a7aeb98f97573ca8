from datetime import datetime, timedelta, timezone

from riskguard.config import Config
from riskguard.features.engineering import FeatureEngine, categorize_merchant, is_benefit_window
from riskguard.features.profiles import AgentProfile, ProfileBuilder
from riskguard.storage.schemas import SimSwapDetection
from tests.conftest import AGENT_ID, HOME, USER_ID


def test_features_for_a_first_transaction_use_defaults(storage, user, clock, make_transaction):
    engine = FeatureEngine(storage, clock=clock)
    features = engine.extract_features(make_transaction(device_id="never-seen"), USER_ID)

    assert features.amount_zscore == 0
    assert features.location_risk == 50
    assert features.new_location is True
    assert features.device_trust_score == Config.UNKNOWN_DEVICE_TRUST
    assert features.new_device is True
    assert features.rural_device_likelihood == 50
    assert features.connection_type == "unknown"
    assert features.minutes_since_last_transaction == 1440
    assert features.network_stability == 100


def test_features_against_history(storage, history, registered_device, clock, make_transaction):
    engine = FeatureEngine(storage, clock=clock)
    transaction = storage.create_transaction(make_transaction(amount=1000))
    features = engine.extract_features(transaction, USER_ID)

    # The transaction itself is not part of its own baseline
    assert features.amount_zscore == 0
    assert features.location_risk == 10
    assert features.new_location is False
    assert features.new_device is False
    assert features.device_trust_score == registered_device.trust_score
    assert features.connection_type == "4G"
    assert features.minutes_since_last_transaction == 24 * 60
    assert features.merchant_category == "retail"


def test_location_risk_is_graduated(storage, history, clock):
    engine = FeatureEngine(storage, clock=clock)

    assert engine.assess_location_risk(None, history) == 30
    assert engine.assess_location_risk(HOME, history) == 10
    assert engine.assess_location_risk("Rampur Market, Uttar Pradesh", history) == 40
    assert engine.assess_location_risk("Mumbai, Maharashtra", history) == 70


def test_velocity_counts_the_trailing_hour(storage, user, clock, make_transaction):
    for minutes in (50, 30, 10, 90):
        storage.create_transaction(make_transaction(timestamp=clock() - timedelta(minutes=minutes), amount=500))

    features = FeatureEngine(storage, clock=clock).extract_features(make_transaction(), USER_ID)

    assert features.transaction_velocity == 3
    assert features.amount_velocity == 1500
    assert features.minutes_since_last_transaction == 10


def test_network_stability_drops_per_recent_sim_swap(storage, user, clock):
    for days_ago in (1, 5, 45):
        storage.create_sim_swap_detection(SimSwapDetection(
            user_id=USER_ID, detection_score=50, timestamp=clock() - timedelta(days=days_ago),
        ))

    assert FeatureEngine(storage, clock=clock).calculate_network_stability(USER_ID) == 60


def test_merchant_categories_and_benefit_window():
    assert categorize_merchant("PM Kisan benefit transfer", Config.MERCHANT_CATEGORIES) == "government"
    assert categorize_merchant("ATM withdrawal", Config.MERCHANT_CATEGORIES) == "cash"
    assert categorize_merchant("Bought seeds", Config.MERCHANT_CATEGORIES) == "unknown"
    assert categorize_merchant(None, Config.ANOMALY_MERCHANT_CATEGORIES, fallback="other") == "other"

    assert is_benefit_window(datetime(2024, 3, 3, tzinfo=timezone.utc))
    assert not is_benefit_window(datetime(2024, 3, 15, tzinfo=timezone.utc))


def test_user_profile_without_history_is_default(storage, user, clock):
    profile = ProfileBuilder(storage, clock=clock).build_user_profile(USER_ID)

    assert profile.average_transaction_amount == 0
    assert profile.risk_score == 50
    assert profile.profile_confidence == 10


def test_user_profile_from_history(storage, history, clock):
    profile = ProfileBuilder(storage, clock=clock).build_user_profile(USER_ID)

    assert profile.average_transaction_amount == 1000
    assert profile.typical_transaction_hours == [11]
    assert profile.preferred_merchants == ["retail"]
    assert profile.usual_locations == [HOME]
    assert profile.transaction_count == 10
    assert profile.credit_ratio == 0


def test_agent_profile_without_history_is_documented_default(storage, agent, clock):
    profile = ProfileBuilder(storage, clock=clock).build_agent_profile(AGENT_ID)

    assert profile == AgentProfile(agent_id=AGENT_ID)
    assert profile.average_transaction_amount == 2500
    assert profile.daily_transaction_limit == 100
    assert profile.experience_level == "new"
    assert profile.trust_score == 50
    assert profile.location_consistency == 50


def test_agent_experience_tiers_and_trust():
    assert ProfileBuilder.determine_experience_level(1001, 3001) == "experienced"
    assert ProfileBuilder.determine_experience_level(301, 1501) == "intermediate"
    assert ProfileBuilder.determine_experience_level(5000, 1000) == "new"

    assert ProfileBuilder.agent_trust_score(0, 50, 0) == 60
    assert ProfileBuilder.agent_trust_score(1000, 100, 0) == 95
    assert ProfileBuilder.agent_trust_score(0, 0, 10) == 0
