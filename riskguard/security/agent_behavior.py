import logging
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from riskguard.config import Config
from riskguard.features.profiles import AgentProfile, ProfileBuilder
from riskguard.storage.base import Storage
from riskguard.storage.schemas import FraudAlert, SecurityEvent, Transaction
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)

AgentAction = Literal["monitor", "review", "restrict", "suspend"]


class AgentAnomalyScore(BaseModel):
    overall_score: int = Field(ge=0, le=100)
    transaction_volume_score: int = Field(ge=0, le=100)
    amount_anomaly_score: int = Field(ge=0, le=100)
    timing_anomaly_score: int = Field(ge=0, le=100)
    location_anomaly_score: int = Field(ge=0, le=100)
    behavior_change_score: int = Field(ge=0, le=100)
    anomaly_type: Literal["none", "volume", "amount", "timing", "location", "behavior_change"]
    risk_factors: List[str] = Field(default_factory=list)
    recommended_action: AgentAction
    profile: AgentProfile
    security_event_id: Optional[str] = None


class AgentPerformanceMetrics(BaseModel):
    transaction_success: float
    customer_satisfaction: float
    error_rate: float
    efficiency_score: float
    risk_level: Literal["low", "medium", "high"]


class AgentBehaviorAnalyzer:
    """
    Scores a batch of an agent's recent transactions against the agent's
    rolling profile across five dimensions.
    """

    RISK_FACTOR_TEXT = {
        "volume": "Unusual transaction volume or frequency",
        "amount": "Suspicious transaction amounts or patterns",
        "timing": "Transactions outside normal working hours",
        "location": "Inconsistent or unusual transaction locations",
        "behavior_change": "Significant change in transaction behavior",
    }

    def __init__(self, storage: Storage, config=Config, profiles: Optional[ProfileBuilder] = None,
                 weights: Optional[Dict[str, float]] = None, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.config = config
        self.clock = clock
        self.profiles = profiles or ProfileBuilder(storage, config, clock=clock)
        self.weights = dict(weights or config.AGENT_DIMENSION_WEIGHTS)

    def analyze_agent_behavior(self, agent_id: str, recent_transactions: List[Transaction]) -> AgentAnomalyScore:
        """
        Analyze an agent's recent activity for anomalies.

        Args:
            agent_id: Agent under analysis
            recent_transactions: Batch of the agent's recent transactions (usually one day)

        Returns:
            AgentAnomalyScore with per-dimension scores and recommended action
        """
        profile = self.profiles.build_agent_profile(agent_id)

        scores = {
            "volume": self.analyze_transaction_volume(recent_transactions, profile),
            "amount": self.analyze_amount_patterns(recent_transactions, profile),
            "timing": self.analyze_timing_patterns(recent_transactions, profile),
            "location": self.analyze_location_consistency(recent_transactions, profile),
            "behavior_change": self.analyze_behavior_changes(agent_id, recent_transactions),
        }

        overall_score = min(100, round(sum(scores[k] * self.weights[k] for k in scores)))

        threshold = self.config.AGENT_ANOMALY_THRESHOLD
        max_dimension = max(scores, key=scores.get)
        anomaly_type = max_dimension if scores[max_dimension] > threshold else "none"
        risk_factors = [self.RISK_FACTOR_TEXT[k] for k, v in scores.items() if v > threshold]

        result = AgentAnomalyScore(
            overall_score=overall_score,
            transaction_volume_score=scores["volume"],
            amount_anomaly_score=scores["amount"],
            timing_anomaly_score=scores["timing"],
            location_anomaly_score=scores["location"],
            behavior_change_score=scores["behavior_change"],
            anomaly_type=anomaly_type,
            risk_factors=risk_factors,
            recommended_action=self.get_recommended_action(overall_score, profile),
            profile=profile,
        )

        if overall_score > self.config.AGENT_CRITICAL_THRESHOLD:
            result.security_event_id = self._create_agent_security_alert(agent_id, overall_score, risk_factors).id

        return result

    def analyze_transaction_volume(self, transactions: List[Transaction], profile: AgentProfile) -> int:
        if not transactions:
            return 0

        score = 0
        daily_count = len(transactions)
        if daily_count > profile.daily_transaction_limit:
            score += 40
        elif daily_count > profile.daily_transaction_limit * 0.8:
            score += 20

        max_hourly = max(Counter(t.timestamp.hour for t in transactions).values())
        if max_hourly > 30:
            score += 30
        elif max_hourly > 20:
            score += 15

        return min(score, 100)

    def analyze_amount_patterns(self, transactions: List[Transaction], profile: AgentProfile) -> int:
        if not transactions:
            return 0

        score = 0
        amounts = [t.amount for t in transactions]
        total_amount = sum(amounts)
        max_amount = max(amounts)

        if max_amount > self.config.AGENT_MAX_SINGLE_TRANSACTION:
            score += 50
        elif max_amount > profile.average_transaction_amount * 10:
            score += 30

        expected_daily_amount = profile.average_transaction_amount * profile.daily_transaction_limit * 0.7
        if total_amount > expected_daily_amount * 2:
            score += 25

        round_amounts = [a for a in amounts if a % 1000 == 0 and a > 5000]
        if len(round_amounts) > len(amounts) * 0.6:
            score += 20

        return min(score, 100)

    def analyze_timing_patterns(self, transactions: List[Transaction], profile: AgentProfile) -> int:
        if not transactions:
            return 0

        score = 0
        hours = [t.timestamp.hour for t in transactions]

        outside_hours = sum(1 for h in hours if h not in profile.typical_working_hours)
        if outside_hours > len(transactions) * 0.3:
            score += 30
        elif outside_hours > len(transactions) * 0.1:
            score += 15

        # Rural agents rarely work at night
        if any(h >= 22 or h <= 6 for h in hours):
            score += 25

        return min(score, 100)

    def analyze_location_consistency(self, transactions: List[Transaction], profile: AgentProfile) -> int:
        locations = {t.location for t in transactions if t.location}
        if not locations:
            return 20

        score = 0
        if len(locations) > 5:
            score += 40
        elif len(locations) > 3:
            score += 20

        # A historically consistent agent who is suddenly scattered
        if profile.location_consistency > 70 and len(locations) > 2:
            score += 25

        return min(score, 100)

    def analyze_behavior_changes(self, agent_id: str, recent_transactions: List[Transaction]) -> int:
        """Compare the batch with the agent's activity 30-60 days ago"""
        older = self.storage.get_agent_transactions(
            agent_id, self.config.AGENT_HISTORY_DAYS, offset_days=self.config.AGENT_HISTORY_DAYS,
            now=self.clock(),
        )
        if not older or not recent_transactions:
            return 0

        score = 0
        recent_avg = sum(t.amount for t in recent_transactions) / len(recent_transactions)
        older_avg = sum(t.amount for t in older) / len(older)

        if older_avg > 0:
            amount_ratio = recent_avg / older_avg
            if amount_ratio > 3 or amount_ratio < 0.33:
                score += 25

        frequency_ratio = len(recent_transactions) / len(older)
        if frequency_ratio > 2 or frequency_ratio < 0.5:
            score += 20

        return min(score, 100)

    def get_recommended_action(self, overall_score: int, profile: AgentProfile) -> AgentAction:
        if overall_score >= self.config.AGENT_CRITICAL_THRESHOLD:
            return "suspend" if profile.trust_score < 30 else "restrict"
        elif overall_score >= self.config.AGENT_ANOMALY_THRESHOLD:
            return "review"
        return "monitor"

    def _create_agent_security_alert(self, agent_id: str, risk_score: int, risk_factors: List[str]) -> SecurityEvent:
        now = self.clock()
        security_event = self.storage.create_security_event(SecurityEvent(
            user_id=agent_id,
            event_type="agent_anomaly",
            severity="critical" if risk_score > 90 else "high",
            details={"risk_score": risk_score, "risk_factors": risk_factors},
            timestamp=now,
        ))

        self.storage.create_fraud_alert(FraudAlert(
            user_id=agent_id,
            alert_type="unauthorized",
            title="Agent Behavior Anomaly Detected",
            description=(
                "Suspicious activity detected in agent transactions. "
                f"Risk factors: {', '.join(risk_factors) or 'combined anomaly score'}. Immediate review required."
            ),
            severity="danger",
            action_required=True,
            security_event_id=security_event.id,
            timestamp=now,
        ))

        logger.info(f"Agent behavior anomaly detected for {agent_id} with risk score {risk_score}%")
        return security_event

    def get_agent_performance_metrics(self, agent_id: str, days: int = 7) -> AgentPerformanceMetrics:
        transactions = self.storage.get_agent_transactions(agent_id, days, now=self.clock())
        total = len(transactions)

        verified = sum(1 for t in transactions if t.status == "verified")
        flagged = sum(1 for t in transactions if t.status == "flagged")
        transaction_success = verified / total * 100 if total else 0.0
        error_rate = flagged / total * 100 if total else 0.0

        risk_level = "low"
        if error_rate > 5 or transaction_success < 90:
            risk_level = "high"
        elif error_rate > 2 or transaction_success < 95:
            risk_level = "medium"

        return AgentPerformanceMetrics(
            transaction_success=transaction_success,
            customer_satisfaction=max(0.0, 100 - error_rate * 5),
            error_rate=error_rate,
            efficiency_score=min(100.0, transaction_success - error_rate),
            risk_level=risk_level,
        )
