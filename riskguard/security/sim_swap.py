import logging
from datetime import datetime, timedelta
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from riskguard.config import Config
from riskguard.exceptions import RecordNotFoundError
from riskguard.storage.base import Storage
from riskguard.storage.schemas import FraudAlert, SecurityEvent, SimSwapDetection
from riskguard.timeutils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class NetworkInfo(BaseModel):
    """Network identity snapshot reported by the handset"""
    carrier: Optional[str] = None
    mcc: Optional[str] = None
    mnc: Optional[str] = None
    imsi: Optional[str] = None
    cell_id: Optional[str] = None
    lac: Optional[str] = None
    signal_strength: Optional[float] = None
    network_type: Optional[str] = None


class DeviceChangeEvent(BaseModel):
    user_id: str
    device_id: str
    old_network_info: Optional[NetworkInfo] = None
    new_network_info: NetworkInfo
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalise_timestamp(cls, value):
        return parse_timestamp(value)


class SimSwapResult(BaseModel):
    suspicion_score: int = Field(ge=0, le=100)
    detected: bool
    indicators: List[str] = Field(default_factory=list)
    detection_id: str
    security_event_id: Optional[str] = None
    alert_id: Optional[str] = None


class HistoricalPatterns(BaseModel):
    average_carrier_stability: float
    carrier_diversity_stability: float
    risk_profile: Literal["low", "medium", "high"]


class SimSwapDetector:
    """
    Scores network-identity changes for a device.

    Every run is persisted as a SimSwapDetection. Scores at or above the
    threshold also raise a SecurityEvent and a linked FraudAlert.
    """

    def __init__(self, storage: Storage, config=Config, weights: Optional[Dict[str, float]] = None,
                 threshold: Optional[int] = None):
        self.storage = storage
        self.config = config
        self.weights = dict(weights or config.SIM_SWAP_WEIGHTS)
        self.threshold = config.SIM_SWAP_THRESHOLD if threshold is None else threshold

    def detect_sim_swap(self, event: DeviceChangeEvent) -> SimSwapResult:
        """
        Score a network-identity change and persist the outcome.

        Args:
            event: Old and new network snapshots for a (user, device)

        Returns:
            SimSwapResult with the 0-100 suspicion score and created record ids
        """
        indicators: List[str] = []
        suspicion_score = self._assess_network_change(event, indicators)
        suspicion_score += self.assess_time_risk(event.timestamp)
        suspicion_score += self._assess_device_risk(event, indicators)
        suspicion_score = int(round(min(max(suspicion_score, 0), 100)))

        detection = self.storage.create_sim_swap_detection(SimSwapDetection(
            user_id=event.user_id,
            device_id=event.device_id,
            old_carrier=event.old_network_info.carrier if event.old_network_info else None,
            new_carrier=event.new_network_info.carrier,
            old_imsi=event.old_network_info.imsi if event.old_network_info else None,
            new_imsi=event.new_network_info.imsi,
            detection_score=suspicion_score,
            timestamp=event.timestamp,
        ))

        result = SimSwapResult(
            suspicion_score=suspicion_score,
            detected=suspicion_score >= self.threshold,
            indicators=indicators,
            detection_id=detection.id,
        )
        if result.detected:
            event_record, alert = self._create_security_alerts(event, suspicion_score)
            result.security_event_id = event_record.id
            result.alert_id = alert.id
            logger.info(f"SIM swap detected for user {event.user_id} with score {suspicion_score}%")

        return result

    def _assess_network_change(self, event: DeviceChangeEvent, indicators: List[str]) -> float:
        old, new = event.old_network_info, event.new_network_info
        if old is None:
            indicators.append("no_previous_snapshot")
            return self.weights["new_device_snapshot"]

        score = 0.0
        if old.carrier != new.carrier:
            score += self.weights["carrier_change"]
            indicators.append("carrier_change")

        # IMSI only counts when both snapshots carry one
        if old.imsi and new.imsi and old.imsi != new.imsi:
            score += self.weights["imsi_change"]
            indicators.append("imsi_change")

        if old.mcc != new.mcc or old.mnc != new.mnc:
            score += self.weights["location_change"]
            indicators.append("mcc_mnc_change")

        return score

    def assess_time_risk(self, timestamp: datetime) -> float:
        """Late night carries full weight, telecom office hours 70%, evenings 30%"""
        hour = timestamp.hour
        weight = self.weights["time_factor"]

        if hour >= 23 or hour <= 6:
            return weight
        if 9 <= hour <= 17:
            return weight * 0.7
        return weight * 0.3

    def _assess_device_risk(self, event: DeviceChangeEvent, indicators: List[str]) -> float:
        risk_score = 0.0
        device = self.storage.get_device_fingerprint(event.device_id, event.user_id)

        if device is None:
            risk_score += self.weights["unknown_device"]
            indicators.append("unknown_device")
        else:
            if device.trust_score < 30:
                risk_score += self.weights["low_trust"]
                indicators.append("low_device_trust")

            if event.timestamp - device.last_seen > timedelta(days=self.config.STALE_DEVICE_DAYS):
                risk_score += self.weights["stale_device"]
                indicators.append("stale_device")

        cutoff = event.timestamp - timedelta(days=self.config.SIM_SWAP_RECENT_DAYS)
        recent_swaps = [
            e for e in self.storage.get_user_security_events(event.user_id, unresolved_only=True)
            if e.event_type == "sim_swap" and e.timestamp > cutoff
        ]
        if recent_swaps:
            risk_score += self.weights["recent_swap"]
            indicators.append("recent_sim_swap")

        return risk_score

    def _create_security_alerts(self, event: DeviceChangeEvent, score: int):
        critical = score > self.config.SIM_SWAP_CRITICAL
        security_event = self.storage.create_security_event(SecurityEvent(
            user_id=event.user_id,
            event_type="sim_swap",
            severity="critical" if critical else "high",
            details={
                "detection_score": score,
                "old_carrier": event.old_network_info.carrier if event.old_network_info else None,
                "new_carrier": event.new_network_info.carrier,
                "timestamp": event.timestamp.isoformat(),
            },
            device_id=event.device_id,
            timestamp=event.timestamp,
        ))

        alert = self.storage.create_fraud_alert(FraudAlert(
            user_id=event.user_id,
            alert_type="sim_swap",
            title="SIM Card Change Detected",
            description=(
                "We detected your SIM card was changed or replaced. If this was not done by you, "
                f"please secure your account immediately. Detection confidence: {score}%"
            ),
            severity="danger" if critical else "warning",
            action_required=True,
            security_event_id=security_event.id,
            timestamp=event.timestamp,
        ))
        return security_event, alert

    def analyze_historical_patterns(self, user_id: str) -> HistoricalPatterns:
        detections = self.storage.get_user_sim_swap_events(user_id)
        devices = self.storage.get_user_devices(user_id)

        carrier_changes = sum(1 for d in detections if d.old_carrier != d.new_carrier)
        unique_carriers = len({d.network_info.get("carrier") for d in devices} - {None, ""})

        risk_profile = "low"
        if carrier_changes > 2 or unique_carriers > 3:
            risk_profile = "high"
        elif carrier_changes > 0 or unique_carriers > 1:
            risk_profile = "medium"

        return HistoricalPatterns(
            average_carrier_stability=max(0, 100 - carrier_changes * 10),
            carrier_diversity_stability=max(0, 100 - unique_carriers * 15),
            risk_profile=risk_profile,
        )

    def validate_sim_swap_event(self, detection_id: str, is_legitimate: bool, user_id: str) -> SimSwapDetection:
        """Mark a detection as reviewed; a confirmed fraudulent swap lowers the device's trust"""
        detection = next(
            (d for d in self.storage.get_user_sim_swap_events(user_id) if d.id == detection_id),
            None,
        )
        if detection is None:
            raise RecordNotFoundError(f"SIM swap detection {detection_id} not found")

        detection = self.storage.verify_sim_swap_event(detection_id)
        if is_legitimate:
            logger.info(f"SIM swap event {detection_id} verified as legitimate")
            return detection

        logger.warning(f"SIM swap event {detection_id} confirmed as fraudulent")
        device = (
            self.storage.get_device_fingerprint(detection.device_id, user_id)
            if detection.device_id else None
        )
        if device is not None:
            self.storage.adjust_device_trust(device.id, -self.config.CONFIRMED_SWAP_TRUST_PENALTY)
        return detection
