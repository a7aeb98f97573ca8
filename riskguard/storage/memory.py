import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from riskguard.concurrency import KeyedLock
from riskguard.exceptions import RecordNotFoundError, UnknownUserError
from riskguard.storage.base import Storage
from riskguard.storage.schemas import (
    DeviceFingerprint,
    FraudAlert,
    SecurityEvent,
    SimSwapDetection,
    Transaction,
    User,
)
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)


class MemoryStorage(Storage):
    """
    In-memory store keyed by record id.

    Records are copied on the way in and out so callers can only change
    state through the storage methods. Device updates are serialised per
    device; everything else goes through one table lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._device_locks = KeyedLock()
        self.users: Dict[str, User] = {}
        self.transactions: Dict[str, Transaction] = {}
        self.device_fingerprints: Dict[str, DeviceFingerprint] = {}
        self.security_events: Dict[str, SecurityEvent] = {}
        self.fraud_alerts: Dict[str, FraudAlert] = {}
        self.sim_swap_detections: Dict[str, SimSwapDetection] = {}

    def _require_user(self, user_id: str):
        if user_id not in self.users:
            raise UnknownUserError(f"Unknown user {user_id}", context={"user_id": user_id})

    @staticmethod
    def _newest_first(records):
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    # Users
    def create_user(self, user: User) -> User:
        with self._lock:
            self.users[user.id] = user.model_copy(deep=True)
            return user.model_copy(deep=True)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            return user.model_copy(deep=True) if user else None

    # Transactions
    def create_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            self._require_user(transaction.user_id)
            self.transactions[transaction.id] = transaction.model_copy(deep=True)
            return transaction.model_copy(deep=True)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            transaction = self.transactions.get(transaction_id)
            return transaction.model_copy(deep=True) if transaction else None

    def get_user_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        with self._lock:
            user_transactions = self._newest_first(
                t for t in self.transactions.values() if t.user_id == user_id
            )
            if limit:
                user_transactions = user_transactions[:limit]
            return [t.model_copy(deep=True) for t in user_transactions]

    def _update_transaction(self, transaction_id: str, **updates) -> Transaction:
        with self._lock:
            transaction = self.transactions.get(transaction_id)
            if transaction is None:
                raise RecordNotFoundError(f"Transaction {transaction_id} not found")
            updated = transaction.model_copy(update=updates)
            # Re-validate so bounds on fraud_score and status still apply
            updated = Transaction.model_validate(updated.model_dump())
            self.transactions[transaction_id] = updated
            return updated.model_copy(deep=True)

    def update_transaction_fraud_score(self, transaction_id: str, fraud_score: int) -> Transaction:
        return self._update_transaction(transaction_id, fraud_score=int(fraud_score))

    def update_transaction_status(self, transaction_id: str, status: str) -> Transaction:
        return self._update_transaction(transaction_id, status=status)

    def get_agent_transactions(self, agent_id: str, days: int, offset_days: int = 0,
                               now: Optional[datetime] = None) -> List[Transaction]:
        now = now or utcnow()
        start_time = now - timedelta(days=days + offset_days)
        end_time = now - timedelta(days=offset_days)

        with self._lock:
            agent_transactions = self._newest_first(
                t for t in self.transactions.values()
                if (t.user_id == agent_id or t.agent_id == agent_id)
                and start_time <= t.timestamp <= end_time
            )
            return [t.model_copy(deep=True) for t in agent_transactions]

    # Device fingerprints
    def get_or_create_device_fingerprint(self, fingerprint: DeviceFingerprint) -> Tuple[DeviceFingerprint, bool]:
        with self._device_locks.hold((fingerprint.user_id, fingerprint.device_id)):
            existing = self.get_device_fingerprint(fingerprint.device_id, fingerprint.user_id)
            if existing is not None:
                return existing, False

            with self._lock:
                self._require_user(fingerprint.user_id)
                self.device_fingerprints[fingerprint.id] = fingerprint.model_copy(deep=True)
            return fingerprint.model_copy(deep=True), True

    def get_device_fingerprint(self, device_id: str, user_id: str) -> Optional[DeviceFingerprint]:
        with self._lock:
            for fp in self.device_fingerprints.values():
                if fp.device_id == device_id and fp.user_id == user_id:
                    return fp.model_copy(deep=True)
        return None

    def get_user_devices(self, user_id: str) -> List[DeviceFingerprint]:
        with self._lock:
            devices = [fp for fp in self.device_fingerprints.values() if fp.user_id == user_id]
            devices.sort(key=lambda fp: fp.first_seen)
            return [fp.model_copy(deep=True) for fp in devices]

    def _device_key(self, fingerprint_id: str):
        with self._lock:
            fp = self.device_fingerprints.get(fingerprint_id)
            if fp is None:
                raise RecordNotFoundError(f"Device fingerprint {fingerprint_id} not found")
            return (fp.user_id, fp.device_id)

    def update_device_fingerprint(self, fingerprint_id: str, trust_score: Optional[int] = None,
                                  last_seen: Optional[datetime] = None) -> DeviceFingerprint:
        with self._device_locks.hold(self._device_key(fingerprint_id)):
            with self._lock:
                fp = self.device_fingerprints[fingerprint_id]
                updates = {}
                if last_seen is not None:
                    updates["last_seen"] = last_seen
                if trust_score is not None:
                    updates["trust_score"] = max(0, min(100, int(trust_score)))
                updated = fp.model_copy(update=updates)
                self.device_fingerprints[fingerprint_id] = updated
                return updated.model_copy(deep=True)

    def adjust_device_trust(self, fingerprint_id: str, delta: int) -> DeviceFingerprint:
        with self._device_locks.hold(self._device_key(fingerprint_id)):
            with self._lock:
                current = self.device_fingerprints[fingerprint_id].trust_score
            return self.update_device_fingerprint(fingerprint_id, trust_score=current + delta)

    # Security events
    def create_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._lock:
            self._require_user(event.user_id)
            self.security_events[event.id] = event.model_copy(deep=True)
            return event.model_copy(deep=True)

    def get_user_security_events(self, user_id: str, unresolved_only: bool = False) -> List[SecurityEvent]:
        with self._lock:
            events = [e for e in self.security_events.values() if e.user_id == user_id]
            if unresolved_only:
                events = [e for e in events if not e.resolved]
            return [e.model_copy(deep=True) for e in self._newest_first(events)]

    def resolve_security_event(self, event_id: str) -> SecurityEvent:
        with self._lock:
            event = self.security_events.get(event_id)
            if event is None:
                raise RecordNotFoundError(f"Security event {event_id} not found")
            event = event.model_copy(update={"resolved": True})
            self.security_events[event_id] = event
            return event.model_copy(deep=True)

    # Fraud alerts
    def create_fraud_alert(self, alert: FraudAlert) -> FraudAlert:
        with self._lock:
            self._require_user(alert.user_id)
            if alert.security_event_id and alert.security_event_id not in self.security_events:
                raise RecordNotFoundError(f"Security event {alert.security_event_id} not found")
            self.fraud_alerts[alert.id] = alert.model_copy(deep=True)
            return alert.model_copy(deep=True)

    def get_user_fraud_alerts(self, user_id: str, active_only: bool = False) -> List[FraudAlert]:
        with self._lock:
            alerts = [a for a in self.fraud_alerts.values() if a.user_id == user_id]
            if active_only:
                alerts = [a for a in alerts if not a.dismissed]
            return [a.model_copy(deep=True) for a in self._newest_first(alerts)]

    def dismiss_fraud_alert(self, alert_id: str) -> FraudAlert:
        with self._lock:
            alert = self.fraud_alerts.get(alert_id)
            if alert is None:
                raise RecordNotFoundError(f"Fraud alert {alert_id} not found")
            alert = alert.model_copy(update={"dismissed": True})
            self.fraud_alerts[alert_id] = alert
            return alert.model_copy(deep=True)

    # SIM swap detections
    def create_sim_swap_detection(self, detection: SimSwapDetection) -> SimSwapDetection:
        with self._lock:
            self._require_user(detection.user_id)
            self.sim_swap_detections[detection.id] = detection.model_copy(deep=True)
            return detection.model_copy(deep=True)

    def get_user_sim_swap_events(self, user_id: str) -> List[SimSwapDetection]:
        with self._lock:
            detections = [d for d in self.sim_swap_detections.values() if d.user_id == user_id]
            return [d.model_copy(deep=True) for d in self._newest_first(detections)]

    def verify_sim_swap_event(self, detection_id: str) -> SimSwapDetection:
        with self._lock:
            detection = self.sim_swap_detections.get(detection_id)
            if detection is None:
                raise RecordNotFoundError(f"SIM swap detection {detection_id} not found")
            detection = detection.model_copy(update={"verified": True})
            self.sim_swap_detections[detection_id] = detection
            return detection.model_copy(deep=True)
