import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Hashable, List, Literal, Optional

import pandas as pd
from pydantic import BaseModel, Field

from riskguard.config import Config
from riskguard.features.engineering import categorize_merchant
from riskguard.storage.base import Storage
from riskguard.storage.schemas import DeviceFingerprint, Transaction
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)

ExperienceLevel = Literal["new", "intermediate", "experienced"]


class UserProfile(BaseModel):
    """Rolling behavioural baseline of a single account holder"""
    user_id: str
    average_transaction_amount: float = 0.0
    typical_transaction_hours: List[int] = Field(default_factory=list)
    preferred_merchants: List[str] = Field(default_factory=list)
    usual_locations: List[str] = Field(default_factory=list)
    primary_device_class: str = "unknown"
    network_usage: Dict[str, int] = Field(default_factory=dict)
    hourly_activity: List[int] = Field(default_factory=lambda: [0] * 24)
    credit_ratio: Optional[float] = None
    transaction_count: int = 0
    risk_score: int = 50
    profile_confidence: int = 10


class AgentProfile(BaseModel):
    """Rolling baseline of a banking agent over the trailing history window"""
    agent_id: str
    average_transaction_amount: float = 2500.0
    daily_transaction_limit: int = 100
    typical_working_hours: List[int] = Field(default_factory=lambda: list(range(9, 18)))
    preferred_transaction_types: List[str] = Field(default_factory=lambda: ["credit", "debit"])
    location_consistency: float = 50.0
    trust_score: float = 50.0
    experience_level: ExperienceLevel = "new"
    transaction_count: int = 0


class ProfileCache(ABC):
    """
    Storage for derived profiles.

    Profiles are cheap to rebuild over the bounded history windows, so the
    default cache keeps nothing. An incremental implementation can be
    plugged into ProfileBuilder without touching the analyzers.
    """

    @abstractmethod
    def get(self, key: Hashable) -> Optional[BaseModel]: ...

    @abstractmethod
    def put(self, key: Hashable, profile: BaseModel) -> None: ...

    @abstractmethod
    def invalidate(self, owner_id: str) -> None: ...


class NullProfileCache(ProfileCache):
    """Always misses; every analysis call rebuilds from raw history"""

    def get(self, key: Hashable) -> Optional[BaseModel]:
        return None

    def put(self, key: Hashable, profile: BaseModel) -> None:
        pass

    def invalidate(self, owner_id: str) -> None:
        pass


def transactions_frame(transactions: List[Transaction]) -> pd.DataFrame:
    """DataFrame view of transactions with derived hour and weekday columns"""
    df = pd.DataFrame([t.model_dump() for t in transactions])
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df["hour"] = df["timestamp"].dt.hour
    df["day_of_week"] = df["timestamp"].dt.dayofweek
    return df


def frequent_hours(df: pd.DataFrame, min_share: float) -> List[int]:
    """Hours of day holding at least ``min_share`` of the transactions"""
    hour_counts = df["hour"].value_counts()
    return sorted(int(h) for h, count in hour_counts.items() if count >= len(df) * min_share)


class ProfileBuilder:
    """
    Builds UserProfile and AgentProfile records from stored history.
    Both fall back to documented defaults when there is no history.
    """

    def __init__(self, storage: Storage, config=Config, cache: Optional[ProfileCache] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.config = config
        self.cache = cache or NullProfileCache()
        self.clock = clock

    def build_user_profile(self, user_id: str, exclude_transaction_id: Optional[str] = None) -> UserProfile:
        """
        Build behavioural profile from a user's transaction history.

        Args:
            user_id: Account holder
            exclude_transaction_id: Transaction under analysis, left out of its own baseline

        Returns:
            UserProfile over the most recent PROFILE_HISTORY_LIMIT transactions
        """
        cache_key = ("user", user_id, exclude_transaction_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        transactions = [
            t for t in self.storage.get_user_transactions(user_id, limit=self.config.PROFILE_HISTORY_LIMIT + 1)
            if t.id != exclude_transaction_id
        ][:self.config.PROFILE_HISTORY_LIMIT]
        devices = self.storage.get_user_devices(user_id)

        if not transactions:
            profile = UserProfile(user_id=user_id)
            self.cache.put(cache_key, profile)
            return profile

        df = transactions_frame(transactions)
        df["merchant"] = df["description"].apply(
            lambda d: categorize_merchant(d, self.config.ANOMALY_MERCHANT_CATEGORIES, fallback="other")
        )

        # Spending and timing
        hourly_activity = [0] * 24
        for hour, count in df["hour"].value_counts().items():
            hourly_activity[int(hour)] = int(count)

        # Merchants and locations
        preferred_merchants = df["merchant"].value_counts().head(5).index.tolist()
        usual_locations = df["location"].dropna().value_counts().head(3).index.tolist()

        credit_count = int((df["type"] == "credit").sum())

        profile = UserProfile(
            user_id=user_id,
            average_transaction_amount=float(df["amount"].mean()),
            typical_transaction_hours=frequent_hours(df, 0.1),
            preferred_merchants=preferred_merchants,
            usual_locations=usual_locations,
            primary_device_class=devices[0].fingerprint.processed.device_class if devices else "unknown",
            network_usage=self._network_usage(devices),
            hourly_activity=hourly_activity,
            credit_ratio=credit_count / len(df),
            transaction_count=len(df),
            risk_score=self._user_risk_score(len(df), devices),
            profile_confidence=min(100, round(
                len(df) / 50 * 50 + len(devices) / 3 * 30 + len(usual_locations) / 3 * 20
            )),
        )
        self.cache.put(cache_key, profile)
        return profile

    def _network_usage(self, devices: List[DeviceFingerprint]) -> Dict[str, int]:
        usage: Dict[str, int] = {}
        for device in devices:
            connection_type = device.network_info.get("connection_type", "unknown")
            usage[connection_type] = usage.get(connection_type, 0) + 1
        return usage

    def _user_risk_score(self, transaction_count: int, devices: List[DeviceFingerprint]) -> int:
        risk_score = 50

        # History window is treated as roughly a month of activity
        if transaction_count / 30 > 10:
            risk_score += 20

        if len(devices) > 3:
            risk_score += 15

        if devices:
            avg_device_trust = sum(d.trust_score for d in devices) / len(devices)
            if avg_device_trust < 40:
                risk_score += 20

        return min(max(risk_score, 0), 100)

    def build_agent_profile(self, agent_id: str) -> AgentProfile:
        """Agent baseline over the trailing AGENT_HISTORY_DAYS"""
        cache_key = ("agent", agent_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        historical = self.storage.get_agent_transactions(
            agent_id, self.config.AGENT_HISTORY_DAYS, now=self.clock()
        )
        if not historical:
            profile = AgentProfile(agent_id=agent_id)
            self.cache.put(cache_key, profile)
            return profile

        df = transactions_frame(historical)
        average_amount = float(df["amount"].mean())
        unique_locations = df["location"].dropna().nunique()
        location_consistency = float(max(0, 100 - unique_locations * 5))
        experience_level = self.determine_experience_level(len(df), average_amount)
        flagged_count = int((df["status"] == "flagged").sum())

        profile = AgentProfile(
            agent_id=agent_id,
            average_transaction_amount=average_amount,
            daily_transaction_limit={"experienced": 200, "intermediate": 150}.get(experience_level, 100),
            typical_working_hours=frequent_hours(df, 0.05),
            preferred_transaction_types=df["type"].value_counts().index.tolist(),
            location_consistency=location_consistency,
            trust_score=self.agent_trust_score(len(df), location_consistency, flagged_count),
            experience_level=experience_level,
            transaction_count=len(df),
        )
        self.cache.put(cache_key, profile)
        return profile

    @staticmethod
    def determine_experience_level(transaction_count: int, average_amount: float) -> ExperienceLevel:
        if transaction_count > 1000 and average_amount > 3000:
            return "experienced"
        if transaction_count > 300 and average_amount > 1500:
            return "intermediate"
        return "new"

    @staticmethod
    def agent_trust_score(transaction_count: int, location_consistency: float, flagged_count: int) -> float:
        trust_score = 50 + min(25, transaction_count / 20) + location_consistency * 0.2
        trust_score -= flagged_count * 10
        return min(max(trust_score, 0.0), 100.0)
