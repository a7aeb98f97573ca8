from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from riskguard.storage.schemas import (
    DeviceFingerprint,
    FraudAlert,
    SecurityEvent,
    SimSwapDetection,
    Transaction,
    User,
)


class Storage(ABC):
    """
    Persistence contract consumed by the risk pipeline.

    Implementations must raise ``StorageError`` subclasses when a write can
    not be applied; analyzers never swallow them.
    """

    # Users
    @abstractmethod
    def create_user(self, user: User) -> User: ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    # Transactions
    @abstractmethod
    def create_transaction(self, transaction: Transaction) -> Transaction: ...

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    def get_user_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """Newest first"""

    @abstractmethod
    def update_transaction_fraud_score(self, transaction_id: str, fraud_score: int) -> Transaction: ...

    @abstractmethod
    def update_transaction_status(self, transaction_id: str, status: str) -> Transaction: ...

    @abstractmethod
    def get_agent_transactions(self, agent_id: str, days: int, offset_days: int = 0,
                               now: Optional[datetime] = None) -> List[Transaction]: ...

    # Device fingerprints
    @abstractmethod
    def get_or_create_device_fingerprint(self, fingerprint: DeviceFingerprint) -> Tuple[DeviceFingerprint, bool]:
        """Return (record, created); at most one record per (user_id, device_id)"""

    @abstractmethod
    def get_device_fingerprint(self, device_id: str, user_id: str) -> Optional[DeviceFingerprint]: ...

    @abstractmethod
    def get_user_devices(self, user_id: str) -> List[DeviceFingerprint]: ...

    @abstractmethod
    def update_device_fingerprint(self, fingerprint_id: str, trust_score: Optional[int] = None,
                                  last_seen: Optional[datetime] = None) -> DeviceFingerprint: ...

    @abstractmethod
    def adjust_device_trust(self, fingerprint_id: str, delta: int) -> DeviceFingerprint: ...

    # Security events
    @abstractmethod
    def create_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    @abstractmethod
    def get_user_security_events(self, user_id: str, unresolved_only: bool = False) -> List[SecurityEvent]: ...

    @abstractmethod
    def resolve_security_event(self, event_id: str) -> SecurityEvent: ...

    # Fraud alerts
    @abstractmethod
    def create_fraud_alert(self, alert: FraudAlert) -> FraudAlert: ...

    @abstractmethod
    def get_user_fraud_alerts(self, user_id: str, active_only: bool = False) -> List[FraudAlert]: ...

    @abstractmethod
    def dismiss_fraud_alert(self, alert_id: str) -> FraudAlert: ...

    # SIM swap detections
    @abstractmethod
    def create_sim_swap_detection(self, detection: SimSwapDetection) -> SimSwapDetection: ...

    @abstractmethod
    def get_user_sim_swap_events(self, user_id: str) -> List[SimSwapDetection]: ...

    @abstractmethod
    def verify_sim_swap_event(self, detection_id: str) -> SimSwapDetection: ...
