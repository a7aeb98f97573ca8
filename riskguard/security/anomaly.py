import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from riskguard.config import Config
from riskguard.features.engineering import categorize_merchant
from riskguard.features.profiles import ProfileBuilder, UserProfile
from riskguard.storage.base import Storage
from riskguard.storage.schemas import DeviceFingerprint, SecurityEvent, Transaction
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)

AnomalyType = Literal["none", "behavioral", "device", "pattern", "temporal", "geographic"]


class AnomalyScore(BaseModel):
    overall_score: int = Field(ge=0, le=100)
    user_behavior_score: int = Field(ge=0, le=100)
    device_behavior_score: int = Field(ge=0, le=100)
    transaction_pattern_score: int = Field(ge=0, le=100)
    temporal_score: int = Field(ge=0, le=100)
    geographic_score: int = Field(ge=0, le=100)
    anomaly_type: AnomalyType
    details: List[str] = Field(default_factory=list)
    profile_confidence: int = Field(ge=0, le=100)
    user_risk_score: int = Field(ge=0, le=100)
    transaction_id: Optional[str] = None


class StreamScoringResult(BaseModel):
    scores: List[AnomalyScore] = Field(default_factory=list)
    aggregate_risk: float = 0.0
    recommendations: List[str] = Field(default_factory=list)
    processed: int = 0
    stopped_early: bool = False


def _hour_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


class AnomalyEngine:
    """
    User-centric anomaly scoring.

    Weighs five dimensions (behavioural, device, pattern, temporal,
    geographic) against the user's rolling profile. Runs alongside the
    rule scorer with its own weighting.
    """

    SUMMARY_TEXT = {
        "behavioral": "Unusual transaction amount or frequency for this user",
        "device": "Transaction from untrusted or new device",
        "pattern": "Transaction pattern differs from user's historical behavior",
        "temporal": "Transaction timing is unusual for this user",
        "geographic": "Transaction from unusual location",
    }

    def __init__(self, storage: Storage, config=Config, profiles: Optional[ProfileBuilder] = None,
                 weights: Optional[Dict[str, float]] = None, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.config = config
        self.clock = clock
        self.profiles = profiles or ProfileBuilder(storage, config, clock=clock)
        self.weights = dict(weights or config.ANOMALY_DIMENSION_WEIGHTS)
        self.threshold = config.ANOMALY_THRESHOLD
        self.critical_threshold = config.CRITICAL_ANOMALY_THRESHOLD

    def analyze_transaction(self, transaction: Transaction, user_id: str) -> AnomalyScore:
        """
        Score a transaction against the user's behavioural profile.

        Args:
            transaction: Transaction under analysis
            user_id: Owner of the profile

        Returns:
            AnomalyScore with the composite and per-dimension scores
        """
        profile = self.profiles.build_user_profile(user_id, exclude_transaction_id=transaction.id)
        history = [
            t for t in self.storage.get_user_transactions(user_id, limit=self.config.HISTORY_LIMIT + 1)
            if t.id != transaction.id and t.timestamp <= transaction.timestamp
        ][:self.config.HISTORY_LIMIT]
        devices = self.storage.get_user_devices(user_id)
        details: List[str] = []

        scores = {
            "behavioral": self.analyze_user_behavior(transaction, profile, history, details),
            "device": self.analyze_device_behavior(transaction, devices, details),
            "pattern": self.analyze_transaction_patterns(transaction, history, details),
            "temporal": self.analyze_temporal_patterns(transaction, profile, details),
            "geographic": self.analyze_geographic_patterns(transaction, profile, details),
        }

        overall_score = min(100, round(sum(scores[k] * self.weights[k] for k in scores)))

        max_dimension = max(scores, key=scores.get)
        anomaly_type = max_dimension if scores[max_dimension] > self.threshold else "none"
        summary = [self.SUMMARY_TEXT[k] for k, v in scores.items() if v > self.threshold]

        return AnomalyScore(
            overall_score=overall_score,
            user_behavior_score=scores["behavioral"],
            device_behavior_score=scores["device"],
            transaction_pattern_score=scores["pattern"],
            temporal_score=scores["temporal"],
            geographic_score=scores["geographic"],
            anomaly_type=anomaly_type,
            details=summary + details,
            profile_confidence=profile.profile_confidence,
            user_risk_score=profile.risk_score,
            transaction_id=transaction.id,
        )

    def analyze_user_behavior(self, transaction: Transaction, profile: UserProfile,
                              history: List[Transaction], details: List[str]) -> int:
        score = 0

        if profile.average_transaction_amount > 0:
            amount_ratio = transaction.amount / profile.average_transaction_amount
            if amount_ratio > 5:
                score += 30
                details.append(f"Amount is {amount_ratio:.1f}x the personal average")
            elif amount_ratio > 2:
                score += 15
                details.append(f"Amount is {amount_ratio:.1f}x the personal average")

        # Rural users transact infrequently
        day_start = transaction.timestamp - timedelta(hours=24)
        daily_count = sum(1 for t in history if day_start <= t.timestamp <= transaction.timestamp)
        if daily_count > 10:
            score += 25
            details.append(f"{daily_count} transactions in the last 24 hours")
        elif daily_count > 5:
            score += 10
            details.append(f"{daily_count} transactions in the last 24 hours")

        merchant = categorize_merchant(
            transaction.description, self.config.ANOMALY_MERCHANT_CATEGORIES, fallback="other"
        )
        if profile.preferred_merchants and merchant not in profile.preferred_merchants:
            score += 10
            details.append(f"Unfamiliar merchant category: {merchant}")

        return min(score, 100)

    def analyze_device_behavior(self, transaction: Transaction, devices: List[DeviceFingerprint],
                                details: List[str]) -> int:
        score = 0
        current = next((d for d in devices if d.device_id == transaction.device_id), None)

        if current is None:
            details.append("Device never seen for this user")
            return 40

        if current.trust_score < 30:
            score += 25
            details.append(f"Low device trust ({current.trust_score})")

        if transaction.timestamp - current.last_seen > timedelta(days=30):
            score += 20
            details.append("Device unused for over a month")

        primary_class = devices[0].fingerprint.processed.device_class
        if current.fingerprint.processed.device_class != primary_class:
            score += 15
            details.append(f"Device class {current.fingerprint.processed.device_class} differs from usual {primary_class}")

        return min(score, 100)

    def analyze_transaction_patterns(self, transaction: Transaction, history: List[Transaction],
                                     details: List[str]) -> int:
        if len(history) < 5:
            return 20

        score = 0
        credit_ratio = sum(1 for t in history if t.type == "credit") / len(history)
        if transaction.type == "debit" and credit_ratio > 0.7 and transaction.amount > 5000:
            score += 25
            details.append("Large debit from a mostly credit-receiving account")

        chronological = sorted(history + [transaction], key=lambda t: t.timestamp)
        if self.detect_increasing_pattern([t.amount for t in chronological]):
            score += 20
            details.append("Steadily increasing amounts suggest limit testing")

        return min(score, 100)

    @staticmethod
    def detect_increasing_pattern(amounts: List[float]) -> bool:
        """At least 3 increases across the last 5 amounts"""
        if len(amounts) < 5:
            return False
        recent = amounts[-5:]
        increases = sum(1 for prev, cur in zip(recent, recent[1:]) if cur > prev)
        return increases >= 3

    def analyze_temporal_patterns(self, transaction: Transaction, profile: UserProfile,
                                  details: List[str]) -> int:
        score = 0
        hour = transaction.timestamp.hour

        if profile.typical_transaction_hours:
            if not any(_hour_distance(h, hour) <= 2 for h in profile.typical_transaction_hours):
                score += 20
                details.append(f"{hour}:00 is outside the user's usual hours")

        if hour >= 23 or hour <= 5:
            score += 25
            details.append("Late-night transaction")

        if transaction.timestamp.weekday() >= 5 and transaction.amount > 10000:
            score += 15
            details.append("Large weekend transaction")

        return min(score, 100)

    def analyze_geographic_patterns(self, transaction: Transaction, profile: UserProfile,
                                    details: List[str]) -> int:
        if not transaction.location:
            details.append("Transaction has no location")
            return 10

        score = 0
        if profile.usual_locations:
            primary = transaction.location.split(",")[0]
            is_usual = any(
                location.split(",")[0] in transaction.location or primary in location
                for location in profile.usual_locations
            )
            if not is_usual:
                score += 25
                details.append(f"Unfamiliar location: {transaction.location}")
                if transaction.amount > 10000:
                    score += 15
                    details.append("Large amount in a new location")

        return min(score, 100)

    def score_transaction_stream(self, transactions: List[Transaction],
                                 should_stop: Optional[Callable[[], bool]] = None,
                                 record_critical: bool = True) -> StreamScoringResult:
        """
        Score transactions one by one.

        Each critical item's SecurityEvent is written as soon as it is scored,
        so stopping early leaves every processed item fully recorded and
        nothing half-written.
        """
        result = StreamScoringResult()

        for transaction in transactions:
            if should_stop is not None and should_stop():
                result.stopped_early = True
                break

            score = self.analyze_transaction(transaction, transaction.user_id)
            if record_critical and score.overall_score > self.critical_threshold:
                self.storage.create_security_event(SecurityEvent(
                    user_id=transaction.user_id,
                    event_type="anomaly_detected",
                    severity="critical",
                    details={"transaction_id": transaction.id, "anomaly_score": score.overall_score,
                             "anomaly_type": score.anomaly_type},
                    device_id=transaction.device_id,
                    timestamp=self.clock(),
                ))
            result.scores.append(score)
            result.processed += 1

        if result.scores:
            average = sum(s.overall_score for s in result.scores) / len(result.scores)
            high_risk = sum(1 for s in result.scores if s.overall_score > self.critical_threshold)
            result.aggregate_risk = min(100.0, average + high_risk * 10)

        if result.aggregate_risk > 80:
            result.recommendations = [
                "Implement immediate additional authentication",
                "Consider temporary transaction limits",
            ]
        elif result.aggregate_risk > 60:
            result.recommendations = [
                "Increase monitoring frequency",
                "Require additional verification for large amounts",
            ]

        logger.info(
            f"Scored {result.processed}/{len(transactions)} streamed transactions, "
            f"aggregate risk {result.aggregate_risk:.1f}"
        )
        return result
