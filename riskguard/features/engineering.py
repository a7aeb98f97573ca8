import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel

from riskguard.config import Config
from riskguard.storage.base import Storage
from riskguard.storage.schemas import DeviceFingerprint, Transaction
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)


class TransactionFeatures(BaseModel):
    """Fixed-shape feature record consumed by the rule scorer"""

    # Amount features
    amount: float
    amount_zscore: float

    # Timing features
    hour_of_day: int
    day_of_week: int
    is_weekend: bool
    is_night_time: bool

    # Location features
    location_risk: int
    new_location: bool

    # Device features
    device_trust_score: int
    new_device: bool

    # Velocity features
    transaction_velocity: int
    amount_velocity: float
    minutes_since_last_transaction: float

    # Rural context
    rural_device_likelihood: int
    connection_type: str
    network_stability: int

    # Pattern features
    is_round_amount: bool
    is_benefit_window: bool
    merchant_category: str


def categorize_merchant(description: Optional[str], categories: Dict[str, List[str]],
                        fallback: str = "unknown") -> str:
    """First category whose keyword appears in the description, else fallback"""
    desc = (description or "").lower()
    for category, keywords in categories.items():
        if any(keyword in desc for keyword in keywords):
            return category
    return fallback


def is_benefit_window(timestamp: datetime, window=Config.BENEFIT_WINDOW_DAYS) -> bool:
    """Government transfers land in the first week of the month"""
    first_day, last_day = window
    return first_day <= timestamp.day <= last_day


def is_night_time(hour: int) -> bool:
    return hour >= 22 or hour <= 6


class FeatureEngine:
    """
    Feature engineering for the rule scorer.
    Reads a user's recent history, devices and SIM-swap records from storage
    and condenses them, with the transaction itself, into TransactionFeatures.
    """

    def __init__(self, storage: Storage, config=Config, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.config = config
        self.clock = clock

    def extract_features(self, transaction: Transaction, user_id: str) -> TransactionFeatures:
        """
        Extract the feature record for a single transaction.

        Args:
            transaction: Transaction being scored (stored or not)
            user_id: Owner of the history to compare against

        Returns:
            TransactionFeatures built only from reads; nothing is written
        """
        history = self._prior_history(transaction, user_id)
        devices = self.storage.get_user_devices(user_id)
        current_device = next(
            (d for d in devices if transaction.device_id and d.device_id == transaction.device_id),
            None,
        )

        features = {}
        features.update(self._extract_amount_features(transaction, history))
        features.update(self._extract_time_features(transaction.timestamp))
        features.update(self._extract_location_features(transaction, history))
        features.update(self._extract_device_features(current_device))
        features.update(self._extract_velocity_features(transaction, history))
        features["network_stability"] = self.calculate_network_stability(user_id)
        features.update(self._extract_pattern_features(transaction))

        return TransactionFeatures(**features)

    def _prior_history(self, transaction: Transaction, user_id: str) -> List[Transaction]:
        """History before this transaction, newest first, excluding the transaction itself"""
        history = self.storage.get_user_transactions(user_id, limit=self.config.HISTORY_LIMIT + 1)
        prior = [
            t for t in history
            if t.id != transaction.id and t.timestamp <= transaction.timestamp
        ]
        return prior[:self.config.HISTORY_LIMIT]

    def _extract_amount_features(self, transaction: Transaction, history: List[Transaction]) -> Dict:
        """Absolute z-score of the amount against the user's history"""
        if not history:
            return {"amount": transaction.amount, "amount_zscore": 0.0}

        amounts = np.array([t.amount for t in history], dtype=float)
        mean_amount = amounts.mean()
        std_amount = max(amounts.std(), 1.0)

        return {
            "amount": transaction.amount,
            "amount_zscore": float(abs(transaction.amount - mean_amount) / std_amount),
        }

    def _extract_time_features(self, timestamp: datetime) -> Dict:
        return {
            "hour_of_day": timestamp.hour,
            "day_of_week": timestamp.weekday(),
            "is_weekend": timestamp.weekday() >= 5,
            "is_night_time": is_night_time(timestamp.hour),
        }

    def _extract_location_features(self, transaction: Transaction, history: List[Transaction]) -> Dict:
        return {
            "location_risk": self.assess_location_risk(transaction.location, history),
            "new_location": not any(t.location == transaction.location for t in history),
        }

    def assess_location_risk(self, location: Optional[str], history: List[Transaction]) -> int:
        """
        Graduated location risk.

        Known locations are low risk; unseen locations are higher risk when
        their leading token (usually the village or town) differs from the
        user's most common location.
        """
        if not location:
            return 30

        location_history = [t.location for t in history if t.location]
        if not location_history:
            return 50

        if location in location_history:
            return 10

        most_common_location = Counter(location_history).most_common(1)[0][0]
        primary_token = most_common_location.split(",")[0]
        if primary_token not in location:
            return 70

        return 40

    def _extract_device_features(self, device: Optional[DeviceFingerprint]) -> Dict:
        if device is None:
            return {
                "device_trust_score": self.config.UNKNOWN_DEVICE_TRUST,
                "new_device": True,
                "rural_device_likelihood": self.config.DEFAULT_RURAL_LIKELIHOOD,
                "connection_type": "unknown",
            }

        return {
            "device_trust_score": device.trust_score,
            "new_device": False,
            "rural_device_likelihood": device.fingerprint.processed.rural_likelihood,
            "connection_type": device.network_info.get("connection_type", "unknown"),
        }

    def _extract_velocity_features(self, transaction: Transaction, history: List[Transaction]) -> Dict:
        """Counts and sums over the trailing hour, plus the gap to the previous transaction"""
        window_start = transaction.timestamp - timedelta(hours=1)
        recent = [t for t in history if t.timestamp >= window_start]

        if history:
            gap = transaction.timestamp - history[0].timestamp
            minutes_since_last = gap.total_seconds() / 60
        else:
            minutes_since_last = 1440.0

        return {
            "transaction_velocity": len(recent),
            "amount_velocity": float(sum(t.amount for t in recent)),
            "minutes_since_last_transaction": minutes_since_last,
        }

    def calculate_network_stability(self, user_id: str) -> int:
        """100 minus 20 per SIM-swap record in the trailing window, floored at 0"""
        cutoff = self.clock() - timedelta(days=self.config.NETWORK_STABILITY_DAYS)
        recent_events = [
            e for e in self.storage.get_user_sim_swap_events(user_id)
            if e.timestamp > cutoff
        ]
        return max(0, 100 - len(recent_events) * 20)

    def _extract_pattern_features(self, transaction: Transaction) -> Dict:
        return {
            "is_round_amount": transaction.amount % 1000 == 0,
            "is_benefit_window": is_benefit_window(transaction.timestamp, self.config.BENEFIT_WINDOW_DAYS),
            "merchant_category": categorize_merchant(
                transaction.description, self.config.MERCHANT_CATEGORIES
            ),
        }
