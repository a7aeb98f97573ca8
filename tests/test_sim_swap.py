from datetime import timedelta

import pytest

from riskguard.exceptions import RecordNotFoundError
from riskguard.security.fingerprint import DeviceFingerprinter
from riskguard.security.sim_swap import DeviceChangeEvent, NetworkInfo, SimSwapDetector
from riskguard.storage.memory import MemoryStorage
from riskguard.storage.schemas import SecurityEvent, User
from tests.conftest import BASE_TIME, DEVICE_ID, USER_ID

JIO = NetworkInfo(carrier="Jio", mcc="405", mnc="857", imsi="405857000000001")
AIRTEL = NetworkInfo(carrier="Airtel", mcc="404", mnc="10", imsi="404100000000002")


def make_event(clock, old=JIO, new=AIRTEL, hour=12, device_id=DEVICE_ID):
    return DeviceChangeEvent(
        user_id=USER_ID,
        device_id=device_id,
        old_network_info=old,
        new_network_info=new,
        timestamp=clock().replace(hour=hour),
    )


def fresh_setup(clock, raw_device, trust=None, recent_swap=False):
    storage = MemoryStorage()
    storage.create_user(User(id=USER_ID, username="ramesh"))
    record, _ = DeviceFingerprinter(storage, clock=clock).register_device(USER_ID, DEVICE_ID, raw_device)
    if trust is not None:
        storage.update_device_fingerprint(record.id, trust_score=trust, last_seen=clock())
    if recent_swap:
        storage.create_security_event(SecurityEvent(
            user_id=USER_ID, event_type="sim_swap", severity="high", timestamp=clock() - timedelta(days=2),
        ))
    return storage


def test_score_grows_with_matching_indicators(clock, raw_device):
    same_carrier_new_imsi = JIO.model_copy(update={"imsi": "405857999999999"})
    scenarios = [
        dict(old=JIO, new=JIO, hour=12),
        dict(old=JIO, new=JIO.model_copy(update={"carrier": "Jio Prepaid"}), hour=12),
        dict(old=JIO, new=same_carrier_new_imsi.model_copy(update={"carrier": "Jio Prepaid"}), hour=12),
        dict(old=JIO, new=same_carrier_new_imsi.model_copy(update={"carrier": "Jio Prepaid"}), hour=3),
    ]

    scores = []
    for scenario in scenarios:
        storage = fresh_setup(clock, raw_device)
        scores.append(SimSwapDetector(storage).detect_sim_swap(make_event(clock, **scenario)).suspicion_score)

    storage = fresh_setup(clock, raw_device, recent_swap=True)
    scores.append(SimSwapDetector(storage).detect_sim_swap(make_event(clock, **scenarios[-1])).suspicion_score)

    assert scores == sorted(scores)
    assert scores[0] < scores[-1]


def test_carrier_and_imsi_change_at_night_on_low_trust_device_is_detected(clock, raw_device):
    storage = fresh_setup(clock, raw_device, trust=20)
    result = SimSwapDetector(storage).detect_sim_swap(make_event(clock, hour=2))

    assert result.suspicion_score >= 70
    assert result.detected
    assert {"carrier_change", "imsi_change", "low_device_trust"} <= set(result.indicators)

    event = storage.get_user_security_events(USER_ID)[0]
    alert = storage.get_user_fraud_alerts(USER_ID)[0]
    assert event.id == result.security_event_id
    assert event.severity == "critical"
    assert alert.security_event_id == event.id
    assert alert.severity == "danger"


def test_moderate_detection_is_high_not_critical(clock, raw_device):
    storage = fresh_setup(clock, raw_device)
    new = AIRTEL.model_copy(update={"imsi": None})
    result = SimSwapDetector(storage).detect_sim_swap(make_event(clock, new=new))

    # carrier 40 + mcc/mnc 30 + business hours 14
    assert result.suspicion_score == 84
    assert storage.get_user_security_events(USER_ID)[0].severity == "high"
    assert storage.get_user_fraud_alerts(USER_ID)[0].severity == "warning"


def test_every_run_is_persisted_but_only_detections_alert(clock, raw_device):
    storage = fresh_setup(clock, raw_device)
    result = SimSwapDetector(storage).detect_sim_swap(
        make_event(clock, new=JIO.model_copy(update={"carrier": "Jio Prepaid"}))
    )

    assert result.suspicion_score == 54
    assert not result.detected
    assert [d.id for d in storage.get_user_sim_swap_events(USER_ID)] == [result.detection_id]
    assert storage.get_user_security_events(USER_ID) == []
    assert storage.get_user_fraud_alerts(USER_ID) == []


def test_unknown_and_stale_devices_add_risk(clock, raw_device):
    storage = fresh_setup(clock, raw_device)
    detector = SimSwapDetector(storage)

    unknown = detector.detect_sim_swap(make_event(clock, old=JIO, new=JIO, device_id="other-handset-77"))
    assert "unknown_device" in unknown.indicators

    clock.advance(days=45)
    stale = detector.detect_sim_swap(make_event(clock, old=JIO, new=JIO))
    assert "stale_device" in stale.indicators


def test_missing_previous_snapshot(clock, raw_device):
    storage = fresh_setup(clock, raw_device)
    result = SimSwapDetector(storage).detect_sim_swap(make_event(clock, old=None))
    assert result.indicators[0] == "no_previous_snapshot"
    assert result.suspicion_score == 30 + 14


@pytest.mark.parametrize("hour,risk", [(3, 20), (23, 20), (12, 14), (20, 6)])
def test_time_risk_bands(storage, hour, risk):
    assert SimSwapDetector(storage).assess_time_risk(BASE_TIME.replace(hour=hour)) == pytest.approx(risk)


def test_confirmed_fraudulent_swap_lowers_device_trust(clock, raw_device):
    storage = fresh_setup(clock, raw_device, trust=60)
    detector = SimSwapDetector(storage)
    result = detector.detect_sim_swap(make_event(clock))

    detection = detector.validate_sim_swap_event(result.detection_id, is_legitimate=False, user_id=USER_ID)

    assert detection.verified
    device = storage.get_device_fingerprint(DEVICE_ID, USER_ID)
    assert device.trust_score == 40
    assert device.last_seen == clock()

    with pytest.raises(RecordNotFoundError):
        detector.validate_sim_swap_event("missing", is_legitimate=True, user_id=USER_ID)


def test_historical_patterns(clock, raw_device):
    storage = fresh_setup(clock, raw_device)
    detector = SimSwapDetector(storage)
    assert detector.analyze_historical_patterns(USER_ID).risk_profile == "low"

    for _ in range(3):
        detector.detect_sim_swap(make_event(clock, new=JIO.model_copy(update={"carrier": "BSNL"})))

    patterns = detector.analyze_historical_patterns(USER_ID)
    assert patterns.risk_profile == "high"
    assert patterns.average_carrier_stability == 70
