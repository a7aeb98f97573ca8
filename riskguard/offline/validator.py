import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from riskguard.concurrency import KeyedLock
from riskguard.config import Config
from riskguard.exceptions import RiskGuardError
from riskguard.models.scoring import FraudScorer
from riskguard.security.encryption import EncryptionFramework, canonical_json
from riskguard.storage.base import Storage
from riskguard.storage.schemas import OfflineTransaction, Transaction, new_id
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)

COMMITTED_FIELDS = ("type", "amount", "description", "location", "agent_id")


class OfflinePolicy(BaseModel):
    """Caps applied to a user's offline queue (rural defaults)"""
    max_transactions: int = Config.OFFLINE_MAX_TRANSACTIONS
    max_amount: float = Config.OFFLINE_MAX_AMOUNT
    max_total_amount: float = Config.OFFLINE_MAX_TOTAL_AMOUNT
    max_hours: float = Config.OFFLINE_MAX_HOURS
    min_validation_score: int = Config.OFFLINE_MIN_VALIDATION_SCORE
    fraud_threshold: int = Config.OFFLINE_FRAUD_THRESHOLD


class QueueResult(BaseModel):
    accepted: bool
    transaction_id: Optional[str] = None
    validation_score: int
    errors: List[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    fraud_detected: int = 0
    errors: List[str] = Field(default_factory=list)
    committed_transaction_ids: List[str] = Field(default_factory=list)


class OfflineStatus(BaseModel):
    queued_transactions: int
    total_amount: float
    oldest_transaction: Optional[datetime] = None
    can_add_more: bool


class OnlineCheck(BaseModel):
    is_fraud: bool
    risk_score: int
    reasons: List[str] = Field(default_factory=list)


class OfflineValidator:
    """
    Policy-gated admission of transactions recorded without connectivity,
    and their reconciliation once the device is back online.

    Each user's queue is only touched while holding that user's lock, so
    admission and sync for the same user never interleave.
    """

    def __init__(self, storage: Storage, scorer: Optional[FraudScorer] = None,
                 encryption: Optional[EncryptionFramework] = None, policy: Optional[OfflinePolicy] = None,
                 config=Config, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.config = config
        self.clock = clock
        self.scorer = scorer or FraudScorer(storage, config, clock=clock)
        self.encryption = encryption or EncryptionFramework()
        self.policy = policy or OfflinePolicy()
        self._locks = KeyedLock()
        self._queues: Dict[str, List[OfflineTransaction]] = {}

    def queue_offline(self, user_id: str, transaction_data: Dict[str, Any], device_id: str,
                      device_secret: str) -> QueueResult:
        """
        Validate a transaction and append it to the user's offline queue.

        Args:
            user_id: Queue owner
            transaction_data: Payload (type, amount, description, location)
            device_id: Device that recorded the transaction
            device_secret: Secret shared with the device, keys hash and encryption

        Returns:
            QueueResult; policy violations and low scores are rejections, not errors

        Raises:
            EncryptionError: if the record cannot be sealed
        """
        with self._locks.hold(user_id):
            queue = self._queues.get(user_id, [])
            now = self.clock()

            violations = self.validate_offline_policy(queue, transaction_data, now)
            if violations:
                logger.warning(f"Offline admission rejected for user {user_id}: {'; '.join(violations)}")
                return QueueResult(accepted=False, validation_score=0, errors=violations)

            errors: List[str] = []
            validation_score = 20

            if self.validate_device_fingerprint(device_id, user_id):
                validation_score += 25
            else:
                errors.append("Device validation failed")
                validation_score -= 10

            amount_score, amount_issues = self.validate_transaction_amount(transaction_data, queue, now)
            validation_score += amount_score
            errors.extend(amount_issues)

            timing_score, timing_issues = self.validate_transaction_timing(now)
            validation_score += timing_score
            errors.extend(timing_issues)

            if validation_score < self.policy.min_validation_score:
                errors.append("Transaction failed security validation")
                logger.warning(f"Offline admission rejected for user {user_id} with score {validation_score}")
                return QueueResult(accepted=False, validation_score=validation_score, errors=errors)

            record_id = new_id()
            record = OfflineTransaction(
                id=record_id,
                user_id=user_id,
                transaction_data=dict(transaction_data),
                device_id=device_id,
                timestamp=now,
                security_hash=self.generate_security_hash(transaction_data, device_id, now, device_secret),
                validation_score=validation_score,
                queue_position=len(queue),
            )
            # The record id doubles as the key-derivation salt
            record.encrypted_payload = self.encryption.encrypt_offline_data(
                record.model_dump(mode="json", exclude={"encrypted_payload"}), device_secret, record_id
            )

            queue.append(record)
            self._queues[user_id] = queue

        logger.info(f"Offline transaction queued for user {user_id}: {record.id} (score {validation_score})")
        return QueueResult(
            accepted=True,
            transaction_id=record.id,
            validation_score=validation_score,
            errors=errors,
        )

    def validate_offline_policy(self, queue: List[OfflineTransaction], transaction_data: Dict[str, Any],
                                now: datetime) -> List[str]:
        violations: List[str] = []
        amount = float(transaction_data.get("amount", 0))

        if len(queue) >= self.policy.max_transactions:
            violations.append(f"Maximum offline transactions exceeded ({self.policy.max_transactions})")

        if amount > self.policy.max_amount:
            violations.append(f"Transaction amount exceeds offline limit (₹{self.policy.max_amount:,.0f})")

        if sum(t.amount for t in queue) + amount > self.policy.max_total_amount:
            violations.append("Total offline amount limit exceeded")

        if queue and now - queue[0].timestamp > timedelta(hours=self.policy.max_hours):
            violations.append("Offline transaction window expired")

        return violations

    def validate_device_fingerprint(self, device_id: str, user_id: str) -> bool:
        """Stored trust decides when the device is known; otherwise a format check"""
        device = self.storage.get_device_fingerprint(device_id, user_id) if device_id else None
        if device is not None:
            return device.trust_score >= 30
        return bool(device_id) and len(device_id) > 10

    def validate_transaction_amount(self, transaction_data: Dict[str, Any], queue: List[OfflineTransaction],
                                    now: datetime):
        issues: List[str] = []
        score = 30
        amount = float(transaction_data.get("amount", 0))

        if amount > 25000:
            score -= 15
            issues.append("Large amount for offline transaction")
        elif amount > 10000:
            score -= 5

        recent = [t for t in queue if now - t.timestamp < timedelta(hours=1)]
        if len(recent) > 2:
            score -= 10
            issues.append("High transaction frequency")

        if amount % 1000 == 0 and amount > 5000:
            score -= 5
            issues.append("Round amount transaction")

        return max(0, score), issues

    @staticmethod
    def validate_transaction_timing(now: datetime):
        issues: List[str] = []
        score = 25
        hour = now.hour

        if hour >= 23 or hour <= 5:
            score -= 10
            issues.append("Late night transaction")
        elif 6 <= hour <= 7:
            score -= 5

        return max(0, score), issues

    def generate_security_hash(self, transaction_data: Dict[str, Any], device_id: str, timestamp: datetime,
                               device_secret: str) -> str:
        message = canonical_json({
            "transaction": transaction_data,
            "device_id": device_id,
            "timestamp": timestamp.isoformat(),
        })
        return self.encryption.generate_secure_hash(message, device_secret)

    def verify_security_hash(self, record: OfflineTransaction, device_secret: str) -> bool:
        message = canonical_json({
            "transaction": record.transaction_data,
            "device_id": record.device_id,
            "timestamp": record.timestamp.isoformat(),
        })
        return self.encryption.verify_data_integrity(message, record.security_hash, device_secret)

    def sync_offline(self, user_id: str, device_secret: str) -> SyncResult:
        """
        Reconcile the user's queue in order and clear it.

        Failed and fraud-flagged items are dropped along with committed ones;
        callers read the SyncResult to tell them apart. If a storage or crypto
        error aborts the pass, the item it hit and everything after it stay
        queued for the next sync.
        """
        with self._locks.hold(user_id):
            queue = self._queues.pop(user_id, [])
            result = SyncResult(processed=len(queue))
            if not queue:
                return result

            logger.info(f"Starting sync of {len(queue)} offline transactions for user {user_id}")
            now = self.clock()

            for position, record in enumerate(queue):
                try:
                    self._sync_record(record, device_secret, now, result)
                except RiskGuardError:
                    self._queues[user_id] = queue[position:]
                    logger.error(
                        f"Sync aborted for user {user_id}; {len(queue) - position} offline transactions kept"
                    )
                    raise

        logger.info(
            f"Sync completed for user {user_id}: {result.succeeded} success, "
            f"{result.failed} failed, {result.fraud_detected} fraud detected"
        )
        return result

    def _sync_record(self, record: OfflineTransaction, device_secret: str, now: datetime, result: SyncResult):
        if not self.verify_security_hash(record, device_secret):
            logger.warning(f"Integrity check failed for offline transaction {record.id}")
            result.errors.append(f"Security hash mismatch for transaction {record.id}")
            result.failed += 1
            return

        if now - record.timestamp > timedelta(hours=self.policy.max_hours):
            result.errors.append(f"Transaction {record.id} expired")
            result.failed += 1
            return

        check = self.perform_online_fraud_check(record)
        if check.is_fraud:
            result.errors.append(f"Fraud detected in transaction {record.id}: {'; '.join(check.reasons)}")
            result.fraud_detected += 1
            return

        try:
            committed = self._commit(record)
        except ValidationError:
            result.errors.append(f"Processing failed for transaction {record.id}: invalid transaction data")
            result.failed += 1
            return

        result.succeeded += 1
        result.committed_transaction_ids.append(committed.id)

    def perform_online_fraud_check(self, record: OfflineTransaction) -> OnlineCheck:
        risk_score = 0
        reasons: List[str] = []

        if record.amount > 20000:
            risk_score += 30
            reasons.append("Large offline amount")

        if record.queue_position > 2:
            risk_score += 20
            reasons.append("Multiple offline transactions")

        if record.validation_score < 50:
            risk_score += 25
            reasons.append("Low offline validation score")

        return OnlineCheck(
            is_fraud=risk_score > self.policy.fraud_threshold,
            risk_score=risk_score,
            reasons=reasons,
        )

    def _commit(self, record: OfflineTransaction) -> Transaction:
        fields = {k: record.transaction_data[k] for k in COMMITTED_FIELDS if record.transaction_data.get(k) is not None}
        transaction = self.storage.create_transaction(Transaction(
            user_id=record.user_id,
            device_id=record.device_id,
            timestamp=record.timestamp,
            is_offline=True,
            **fields,
        ))

        prediction = self.scorer.predict_fraud(transaction, record.user_id)
        transaction = self.storage.update_transaction_fraud_score(transaction.id, prediction.fraud_score)
        if prediction.recommended_action == "block":
            transaction = self.storage.update_transaction_status(transaction.id, "flagged")
        elif prediction.recommended_action == "approve":
            transaction = self.storage.update_transaction_status(transaction.id, "verified")

        logger.info(f"Committed offline transaction {record.id} as {transaction.id} (score {prediction.fraud_score})")
        return transaction

    def get_offline_status(self, user_id: str) -> OfflineStatus:
        with self._locks.hold(user_id):
            queue = list(self._queues.get(user_id, []))

        return OfflineStatus(
            queued_transactions=len(queue),
            total_amount=sum(t.amount for t in queue),
            oldest_transaction=queue[0].timestamp if queue else None,
            can_add_more=len(queue) < self.policy.max_transactions,
        )

    def get_queue(self, user_id: str) -> List[OfflineTransaction]:
        with self._locks.hold(user_id):
            return list(self._queues.get(user_id, []))

    def cleanup_expired_transactions(self) -> int:
        now = self.clock()
        max_age = timedelta(hours=self.policy.max_hours)
        removed = 0

        for user_id in list(self._queues):
            with self._locks.hold(user_id):
                queue = self._queues.get(user_id, [])
                valid = [t for t in queue if now - t.timestamp <= max_age]
                if len(valid) == len(queue):
                    continue

                removed += len(queue) - len(valid)
                logger.info(f"Cleaned up {len(queue) - len(valid)} expired transactions for user {user_id}")
                if valid:
                    self._queues[user_id] = valid
                else:
                    self._queues.pop(user_id, None)

        return removed

    def emergency_clear_queue(self, user_id: str, reason: str) -> int:
        with self._locks.hold(user_id):
            queue = self._queues.pop(user_id, [])
        if queue:
            logger.warning(f"Emergency queue clear for user {user_id}: {reason}. Cleared {len(queue)} transactions.")
        return len(queue)
