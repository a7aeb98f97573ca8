import logging
from datetime import datetime
from typing import Callable, List, Literal, Optional

from pydantic import BaseModel, Field

from riskguard.config import Config
from riskguard.models.scoring import FraudPrediction, FraudScorer
from riskguard.security.anomaly import AnomalyEngine, AnomalyScore
from riskguard.storage.base import Storage
from riskguard.storage.schemas import FraudAlert, SecurityEvent, Transaction, TransactionStatus
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)


class PipelineDecision(BaseModel):
    transaction_id: str
    decision: Literal["approved", "review", "blocked"]
    status: TransactionStatus
    combined_risk_score: int = Field(ge=0, le=100)
    fraud_score: int = Field(ge=0, le=100)
    anomaly_score: int = Field(ge=0, le=100)
    risk_level: str
    recommended_action: str
    reasons: List[str] = Field(default_factory=list)
    security_event_id: Optional[str] = None
    alert_id: Optional[str] = None


class RiskPipeline:
    """
    End-to-end handling of an inbound transaction: store it, run the rule
    scorer and the anomaly engine, and settle its status on the higher of
    the two scores. A scorer override to block always flags.
    """

    def __init__(self, storage: Storage, scorer: FraudScorer, anomaly_engine: AnomalyEngine,
                 config=Config, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.scorer = scorer
        self.anomaly_engine = anomaly_engine
        self.config = config
        self.clock = clock

    def process_transaction(self, transaction: Transaction) -> PipelineDecision:
        transaction = self.storage.create_transaction(transaction)

        prediction = self.scorer.predict_fraud(transaction, transaction.user_id)
        self.storage.update_transaction_fraud_score(transaction.id, prediction.fraud_score)

        anomaly = self.anomaly_engine.analyze_transaction(transaction, transaction.user_id)
        combined = max(prediction.fraud_score, anomaly.overall_score)
        reasons = prediction.primary_reasons + [d for d in anomaly.details if d not in prediction.primary_reasons]

        decision = PipelineDecision(
            transaction_id=transaction.id,
            decision="approved",
            status="verified",
            combined_risk_score=combined,
            fraud_score=prediction.fraud_score,
            anomaly_score=anomaly.overall_score,
            risk_level=prediction.risk_level,
            recommended_action=prediction.recommended_action,
            reasons=reasons,
        )

        if combined > self.config.PIPELINE_FLAG_THRESHOLD or prediction.recommended_action == "block":
            decision.decision = "blocked"
            decision.status = "flagged"
            if not decision.reasons:
                decision.reasons = ["Combined fraud and anomaly risk exceeds the blocking threshold"]
            self._raise_alert(transaction, decision, prediction, anomaly)
        elif combined > self.config.PIPELINE_REVIEW_THRESHOLD:
            decision.decision = "review"
            decision.status = "pending"

        if decision.status != "pending":
            self.storage.update_transaction_status(transaction.id, decision.status)

        logger.info(
            f"Transaction {transaction.id} {decision.decision}: fraud {prediction.fraud_score}, "
            f"anomaly {anomaly.overall_score}"
        )
        return decision

    def _raise_alert(self, transaction: Transaction, decision: PipelineDecision,
                     prediction: FraudPrediction, anomaly: AnomalyScore):
        now = self.clock()
        event = self.storage.create_security_event(SecurityEvent(
            user_id=transaction.user_id,
            event_type="fraud_blocked",
            severity="critical",
            details={
                "transaction_id": transaction.id,
                "fraud_score": prediction.fraud_score,
                "anomaly_score": anomaly.overall_score,
                "anomaly_type": anomaly.anomaly_type,
                "reasons": decision.reasons,
            },
            device_id=transaction.device_id,
            timestamp=now,
        ))
        alert = self.storage.create_fraud_alert(FraudAlert(
            user_id=transaction.user_id,
            alert_type="fraud_blocked",
            title="Suspicious Transaction Blocked",
            description=(
                f"A transaction of ₹{transaction.amount:,.2f} was blocked for your protection. "
                f"Reasons: {'; '.join(decision.reasons[:3])}"
            ),
            severity="danger",
            action_required=True,
            transaction_id=transaction.id,
            security_event_id=event.id,
            timestamp=now,
        ))
        decision.security_event_id = event.id
        decision.alert_id = alert.id
