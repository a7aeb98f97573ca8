from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from riskguard.timeutils import parse_timestamp, utcnow

TransactionType = Literal["credit", "debit"]
TransactionStatus = Literal["pending", "verified", "flagged"]
DeviceClass = Literal["low-end", "mid-range", "high-end"]
EventSeverity = Literal["low", "medium", "high", "critical"]
AlertSeverity = Literal["warning", "danger"]


def new_id() -> str:
    return str(uuid4())


class _Timestamped(BaseModel):
    """Normalises every ``timestamp``-like field to aware UTC"""

    @field_validator("timestamp", "created_at", "first_seen", "last_seen",
                     mode="before", check_fields=False)
    @classmethod
    def _normalise_timestamp(cls, value):
        if value is None:
            return value
        return parse_timestamp(value)


class User(_Timestamped):
    """Minimal account record referenced by alerts and blacklists"""
    id: str = Field(default_factory=new_id)
    username: str
    phone_number: Optional[str] = None
    is_agent: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Transaction(_Timestamped):
    """Transaction record; only fraud_score and status change after creation"""
    id: str = Field(default_factory=new_id)
    user_id: str
    device_id: Optional[str] = None
    agent_id: Optional[str] = None
    type: TransactionType
    amount: float = Field(ge=0)
    description: str = ""
    location: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    fraud_score: int = Field(default=0, ge=0, le=100)
    status: TransactionStatus = "pending"
    is_offline: bool = False


class ProcessedFingerprint(BaseModel):
    device_class: DeviceClass
    rural_likelihood: int = Field(ge=0, le=100)
    uniqueness_score: int = Field(ge=0, le=100)
    stability_factors: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)


class FingerprintRecord(BaseModel):
    raw: Dict[str, Any]
    processed: ProcessedFingerprint
    hash: str


class DeviceFingerprint(_Timestamped):
    """One logical record per (user_id, device_id)"""
    id: str = Field(default_factory=new_id)
    user_id: str
    device_id: str
    fingerprint: FingerprintRecord
    network_info: Dict[str, Any] = Field(default_factory=dict)
    trust_score: int = Field(default=50, ge=0, le=100)
    first_seen: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    is_active: bool = True


class SimSwapDetection(_Timestamped):
    id: str = Field(default_factory=new_id)
    user_id: str
    device_id: Optional[str] = None
    old_carrier: Optional[str] = None
    new_carrier: Optional[str] = None
    old_imsi: Optional[str] = None
    new_imsi: Optional[str] = None
    detection_score: int = Field(ge=0, le=100)
    timestamp: datetime = Field(default_factory=utcnow)
    verified: bool = False


class SecurityEvent(_Timestamped):
    """Append-only audit record; only ``resolved`` is mutable"""
    id: str = Field(default_factory=new_id)
    user_id: str
    event_type: str
    severity: EventSeverity
    details: Dict[str, Any] = Field(default_factory=dict)
    device_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    resolved: bool = False


class FraudAlert(_Timestamped):
    """User-facing counterpart of a SecurityEvent; only ``dismissed`` is mutable"""
    id: str = Field(default_factory=new_id)
    user_id: str
    alert_type: str
    title: str
    description: str
    severity: AlertSeverity
    action_required: bool = False
    transaction_id: Optional[str] = None
    security_event_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    dismissed: bool = False


class OfflineTransaction(_Timestamped):
    """Queued while connectivity is down; consumed whole on sync"""
    id: str = Field(default_factory=new_id)
    user_id: str
    transaction_data: Dict[str, Any]
    device_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    security_hash: str
    validation_score: int
    queue_position: int
    encrypted_payload: Optional[str] = None

    @property
    def amount(self) -> float:
        return float(self.transaction_data.get("amount", 0))
