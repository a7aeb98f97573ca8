import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field

from riskguard.concurrency import KeyedLock
from riskguard.config import Config
from riskguard.exceptions import RecordNotFoundError, UnknownUserError
from riskguard.features.engineering import FeatureEngine, TransactionFeatures
from riskguard.storage.base import Storage
from riskguard.storage.schemas import FraudAlert, Transaction
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)

RiskLevel = Literal["low", "medium", "high", "critical"]
RecommendedAction = Literal["approve", "review", "additional_auth", "block"]
BlacklistKind = Literal["user", "device", "phone"]


class FraudPrediction(BaseModel):
    fraud_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    primary_reasons: List[str] = Field(default_factory=list)
    secondary_factors: List[str] = Field(default_factory=list)
    recommended_action: RecommendedAction


class LoginAttemptResult(BaseModel):
    should_block: bool
    attempts_count: int
    time_to_unlock_seconds: Optional[int] = None


class UserFraudProfile(BaseModel):
    total_transactions: int
    flagged_transactions: int
    fraud_rate: float
    avg_fraud_score: float
    risk_profile: Literal["low", "medium", "high"]


def classify_score(score: float, config=Config):
    """Map a 0-100 score to (risk level, recommended action)"""
    if score >= config.CRITICAL_THRESHOLD:
        return "critical", "block"
    elif score >= config.HIGH_THRESHOLD:
        return "high", "additional_auth"
    elif score >= config.MEDIUM_THRESHOLD:
        return "medium", "review"
    return "low", "approve"


class Blacklist:
    """User, device and phone-number blocklists"""

    def __init__(self, phone_numbers=None):
        self._lock = threading.Lock()
        self._entries: Dict[str, Set[str]] = {
            "user": set(),
            "device": set(),
            "phone": set(Config.BLACKLISTED_NUMBERS if phone_numbers is None else phone_numbers),
        }

    def add(self, identifier: str, kind: BlacklistKind, reason: Optional[str] = None):
        with self._lock:
            self._entries[kind].add(identifier)
        logger.info(f"Added entry to {kind} blacklist. Reason: {reason or 'Not specified'}")

    def contains(self, identifier: Optional[str], kind: BlacklistKind) -> bool:
        if not identifier:
            return False
        with self._lock:
            return identifier in self._entries[kind]


class LoginAttemptTracker:
    """
    Failed-login counters used for temporary account lockout.
    Increment-and-check runs under a per-user lock.
    """

    def __init__(self, storage: Storage, config=Config, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.config = config
        self.clock = clock
        self._locks = KeyedLock()
        self._attempts: Dict[str, Dict] = {}

    def track_failed_login(self, user_id: str) -> LoginAttemptResult:
        now = self.clock()
        if self.storage.get_user(user_id) is None:
            raise UnknownUserError(f"Unknown user {user_id}", context={"user_id": user_id})

        with self._locks.hold(user_id):
            attempts = self._attempts.get(user_id, {"count": 0, "last_attempt": now})

            if now - attempts["last_attempt"] > timedelta(hours=self.config.FAILED_LOGIN_RESET_HOURS):
                attempts["count"] = 0

            attempts = {"count": attempts["count"] + 1, "last_attempt": now}
            self._attempts[user_id] = attempts

        should_block = attempts["count"] >= self.config.MAX_FAILED_LOGINS
        if should_block:
            self.storage.create_fraud_alert(FraudAlert(
                user_id=user_id,
                alert_type="unauthorized",
                title="Account Temporarily Locked",
                description=(
                    f"Your account has been temporarily locked due to {attempts['count']} failed login "
                    f"attempts. Please wait {self.config.LOCKOUT_MINUTES} minutes before trying again."
                ),
                severity="danger",
                action_required=True,
                timestamp=now,
            ))
            logger.warning(f"User {user_id} locked out after {attempts['count']} failed logins")

        return LoginAttemptResult(
            should_block=should_block,
            attempts_count=attempts["count"],
            time_to_unlock_seconds=self.config.LOCKOUT_MINUTES * 60 if should_block else None,
        )

    def reset(self, user_id: str):
        with self._locks.hold(user_id):
            self._attempts.pop(user_id, None)

    def is_locked(self, user_id: str) -> bool:
        with self._locks.hold(user_id):
            attempts = self._attempts.get(user_id)
        if not attempts or attempts["count"] < self.config.MAX_FAILED_LOGINS:
            return False
        return self.clock() - attempts["last_attempt"] < timedelta(minutes=self.config.LOCKOUT_MINUTES)


class FraudScorer:
    """
    Primary rule scorer tuned for rural banking patterns.

    Adds weighted contributions for anomalous features, dampens expected
    rural and benefit-transfer behaviour, then applies hard overrides for
    blacklisted identities and locked-out accounts.
    """

    def __init__(self, storage: Storage, config=Config, feature_engine: Optional[FeatureEngine] = None,
                 blacklist: Optional[Blacklist] = None, login_tracker: Optional[LoginAttemptTracker] = None,
                 weights: Optional[Dict[str, float]] = None, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.config = config
        self.feature_engine = feature_engine or FeatureEngine(storage, config, clock=clock)
        self.blacklist = blacklist or Blacklist()
        self.login_tracker = login_tracker or LoginAttemptTracker(storage, config, clock=clock)
        self.weights = dict(weights or config.SCORER_WEIGHTS)
        self.feedback_labels: Dict[str, bool] = {}

    def predict_fraud(self, transaction: Transaction, user_id: str) -> FraudPrediction:
        """
        Score a transaction and recommend an action.

        Args:
            transaction: Transaction to score
            user_id: Owner whose history forms the baseline

        Returns:
            FraudPrediction with score, risk level, reasons and action
        """
        features = self.feature_engine.extract_features(transaction, user_id)
        fraud_score, reasons, secondary_factors = self.score_features(features, transaction.type)

        override_score, override_reasons = self._apply_overrides(transaction, user_id)
        fraud_score = min(max(fraud_score + override_score, 0), 100)
        reasons.extend(override_reasons)

        risk_level, recommended_action = classify_score(fraud_score, self.config)
        if override_reasons:
            risk_level, recommended_action = "critical", "block"

        if recommended_action == "block" and not reasons:
            reasons.append("Overall risk score exceeds the critical threshold")

        prediction = FraudPrediction(
            fraud_score=round(fraud_score),
            risk_level=risk_level,
            primary_reasons=reasons,
            secondary_factors=secondary_factors,
            recommended_action=recommended_action,
        )
        logger.info(
            f"Transaction {transaction.id} scored {prediction.fraud_score} "
            f"({prediction.risk_level}, {prediction.recommended_action})"
        )
        return prediction

    def score_features(self, features: TransactionFeatures, transaction_type: str):
        """Weighted rule contributions; returns (score, primary reasons, secondary factors)"""
        w = self.weights
        fraud_score = 0.0
        reasons: List[str] = []
        secondary_factors: List[str] = []

        # Amount
        if features.amount_zscore > 3:
            fraud_score += w["amount_zscore"]
            reasons.append("Unusually large transaction amount")
        elif features.amount_zscore > 2:
            fraud_score += w["amount_zscore"] * 0.6
            secondary_factors.append("Above average transaction amount")

        if features.is_round_amount and features.amount > 10000:
            fraud_score += 10
            secondary_factors.append("Round amount transaction")

        # Timing
        if features.is_night_time and not features.is_benefit_window:
            fraud_score += w["time_pattern"]
            reasons.append("Transaction during suspicious hours")

        # Velocity
        if features.transaction_velocity > 3:
            fraud_score += w["velocity"]
            reasons.append("Multiple transactions in short time")
        elif features.transaction_velocity > 1:
            fraud_score += w["velocity"] * 0.5
            secondary_factors.append("Increased transaction frequency")

        if features.amount_velocity > features.amount * 2:
            fraud_score += w["velocity"] * 0.7
            reasons.append("High transaction value velocity")

        # Device
        if features.device_trust_score < 20:
            fraud_score += w["device_trust"]
            reasons.append("Low device trust score")
        elif features.device_trust_score < 40:
            fraud_score += w["device_trust"] * 0.5
            secondary_factors.append("Below average device trust")

        if features.new_device:
            fraud_score += 15
            reasons.append("Transaction from new device")

        # Location
        if features.location_risk > 70:
            fraud_score += w["location_risk"]
            reasons.append("Transaction from high-risk location")
        elif features.new_location and features.amount > 5000:
            fraud_score += w["location_risk"] * 0.6
            secondary_factors.append("Large transaction from new location")

        # Network
        if features.network_stability < 30:
            fraud_score += 10
            secondary_factors.append("Frequent network changes")

        # Rural context
        if features.rural_device_likelihood > 70:
            fraud_score *= 0.9
            if features.network_stability < 20:
                fraud_score += 15
                reasons.append("Suspicious network changes in rural area")

        if features.is_benefit_window and transaction_type == "credit":
            fraud_score *= 0.7

        if features.merchant_category in ("government", "utility"):
            fraud_score *= 0.8
        elif features.merchant_category in ("unknown", "cash"):
            fraud_score += w["rural_context"]
            secondary_factors.append("Transaction category requires attention")

        return min(max(fraud_score, 0.0), 100.0), reasons, secondary_factors

    def _apply_overrides(self, transaction: Transaction, user_id: str):
        penalty = 0
        reasons: List[str] = []

        if self.blacklist.contains(user_id, "user"):
            penalty += self.config.BLACKLISTED_USER_PENALTY
            reasons.append("Transaction from blacklisted user")

        if self.blacklist.contains(transaction.device_id, "device"):
            penalty += self.config.BLACKLISTED_DEVICE_PENALTY
            reasons.append("Transaction from blacklisted device")

        user = self.storage.get_user(user_id)
        if user is not None and self.blacklist.contains(user.phone_number, "phone"):
            penalty += self.config.BLACKLISTED_PHONE_PENALTY
            reasons.append("Transaction from blacklisted phone number")

        if self.login_tracker.is_locked(user_id):
            penalty += self.config.LOCKED_OUT_PENALTY
            reasons.append("User account temporarily locked due to failed login attempts")

        return penalty, reasons

    def update_model_with_feedback(self, transaction_id: str, was_fraud: bool,
                                   user_feedback: Optional[str] = None) -> Transaction:
        """Record a confirmed label and settle the transaction status accordingly"""
        if self.storage.get_transaction(transaction_id) is None:
            raise RecordNotFoundError(f"Transaction {transaction_id} not found")

        logger.info(f"Fraud feedback for transaction {transaction_id}: {'FRAUD' if was_fraud else 'LEGITIMATE'}")
        if user_feedback:
            logger.info(f"User feedback: {user_feedback}")

        self.feedback_labels[transaction_id] = was_fraud
        return self.storage.update_transaction_status(transaction_id, "flagged" if was_fraud else "verified")

    def get_user_fraud_profile(self, user_id: str) -> UserFraudProfile:
        transactions = self.storage.get_user_transactions(user_id, limit=self.config.PROFILE_HISTORY_LIMIT)
        total = len(transactions)
        flagged = sum(1 for t in transactions if t.status == "flagged")
        fraud_rate = flagged / total * 100 if total else 0.0
        avg_fraud_score = sum(t.fraud_score for t in transactions) / total if total else 0.0

        risk_profile = "low"
        if fraud_rate > 10 or avg_fraud_score > 50:
            risk_profile = "high"
        elif fraud_rate > 3 or avg_fraud_score > 25:
            risk_profile = "medium"

        return UserFraudProfile(
            total_transactions=total,
            flagged_transactions=flagged,
            fraud_rate=fraud_rate,
            avg_fraud_score=avg_fraud_score,
            risk_profile=risk_profile,
        )
