from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from riskguard.models.scoring import FraudPrediction
from riskguard.security.fingerprint import RawDeviceInfo
from riskguard.storage.schemas import ProcessedFingerprint, Transaction, TransactionType, new_id
from riskguard.timeutils import utcnow


class UserCreate(BaseModel):
    """User registration request"""
    id: Optional[str] = None
    username: str
    phone_number: Optional[str] = None
    is_agent: bool = False


class TransactionCreate(BaseModel):
    """Transaction data model for API requests"""
    id: Optional[str] = None
    user_id: str
    device_id: Optional[str] = None
    agent_id: Optional[str] = None
    type: TransactionType
    amount: float = Field(ge=0)
    description: str = ""
    location: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_transaction(self) -> Transaction:
        return Transaction(
            id=self.id or new_id(),
            user_id=self.user_id,
            device_id=self.device_id,
            agent_id=self.agent_id,
            type=self.type,
            amount=self.amount,
            description=self.description,
            location=self.location,
            timestamp=self.timestamp or utcnow(),
        )


class TransactionReference(BaseModel):
    """Either the id of a stored transaction or an inline one"""
    transaction_id: Optional[str] = None
    transaction: Optional[TransactionCreate] = None

    @model_validator(mode="after")
    def _exactly_one(self):
        if (self.transaction_id is None) == (self.transaction is None):
            raise ValueError("Provide exactly one of transaction_id or transaction")
        return self


class PredictionResponse(FraudPrediction):
    """Fraud prediction response model"""
    transaction_id: str
    processing_time_ms: int
    timestamp: str


class FingerprintRequest(BaseModel):
    user_id: str
    device_id: str
    device_info: RawDeviceInfo


class FingerprintResponse(BaseModel):
    fingerprint_id: str
    device_id: str
    created: bool
    trust_score: int
    processed: ProcessedFingerprint


class AgentAnalysisRequest(BaseModel):
    """Batch to analyze; defaults to the agent's last 24 hours when omitted"""
    transactions: Optional[List[TransactionCreate]] = None


class OfflineTransactionData(BaseModel):
    type: TransactionType
    amount: float = Field(ge=0)
    description: str = ""
    location: Optional[str] = None
    agent_id: Optional[str] = None


class OfflineQueueRequest(BaseModel):
    user_id: str
    device_id: str
    transaction: OfflineTransactionData


class OfflineSyncRequest(BaseModel):
    user_id: str


class BlacklistRequest(BaseModel):
    identifier: str
    kind: Literal["user", "device", "phone"]
    reason: Optional[str] = None


class FeedbackRequest(BaseModel):
    was_fraud: bool
    user_feedback: Optional[str] = None
