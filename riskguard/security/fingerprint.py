import hashlib
import logging
import re
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from riskguard.config import Config
from riskguard.storage.base import Storage
from riskguard.storage.schemas import DeviceFingerprint, FingerprintRecord, ProcessedFingerprint
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"\d+(?:\.\d+)+")


class RawDeviceInfo(BaseModel):
    """Signals collected from the handset or browser"""

    # Hardware
    user_agent: str = ""
    platform: str = ""
    cpu_cores: Optional[int] = None
    memory_gb: Optional[float] = None
    screen_resolution: str = "0x0"
    color_depth: int = 24
    pixel_ratio: float = 1.0
    timezone: str = ""
    language: str = ""

    # Network
    ip_address: str = ""
    carrier: Optional[str] = None
    connection_type: str = "unknown"

    # Browser fingerprints
    webgl_renderer: Optional[str] = None
    canvas_fingerprint: Optional[str] = None
    audio_fingerprint: Optional[str] = None

    # Volatile signals, never part of the identity hash
    touch_support: bool = False
    battery_level: Optional[float] = None
    is_charging: Optional[bool] = None

    # Rural indicators
    location_accuracy: Optional[float] = None
    network_speed: Optional[float] = None

    def screen_size(self):
        try:
            width, height = (int(part) for part in self.screen_resolution.lower().split("x", 1))
        except ValueError:
            return 0, 0
        return width, height


class FingerprintComparison(BaseModel):
    similarity: float = Field(ge=0, le=100)
    matching_factors: List[str] = Field(default_factory=list)
    different_factors: List[str] = Field(default_factory=list)


class DeviceFingerprinter:
    """
    Classifies devices from raw signals and bootstraps their trust score.
    One DeviceFingerprint record is kept per (user_id, device_id).
    """

    COMPARISON_FACTORS = ["user_agent", "screen_resolution", "timezone", "language", "webgl_renderer"]

    def __init__(self, storage: Storage, config=Config, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.config = config
        self.clock = clock
        self.indicators = dict(config.RURAL_INDICATORS)
        self.private_ip_patterns = [re.compile(p) for p in config.PRIVATE_IP_PATTERNS]

    def fingerprint_device(self, user_id: str, device_id: str, raw: RawDeviceInfo) -> ProcessedFingerprint:
        record, _ = self.register_device(user_id, device_id, raw)
        return record.fingerprint.processed

    def register_device(self, user_id: str, device_id: str, raw: RawDeviceInfo):
        """
        Process signals and persist the device on first sighting.

        Args:
            user_id: Device owner
            device_id: Client-provided device identifier
            raw: Raw hardware, network and browser signals

        Returns:
            (DeviceFingerprint, created). A repeat sighting only refreshes last_seen.
        """
        processed = self.process_device_info(raw)
        now = self.clock()

        candidate = DeviceFingerprint(
            user_id=user_id,
            device_id=device_id,
            fingerprint=FingerprintRecord(
                raw=raw.model_dump(),
                processed=processed,
                hash=self.generate_device_hash(raw),
            ),
            network_info={
                "ip_address": raw.ip_address,
                "carrier": raw.carrier,
                "connection_type": raw.connection_type,
                "network_speed": raw.network_speed,
            },
            trust_score=self.calculate_initial_trust_score(processed),
            first_seen=now,
            last_seen=now,
        )

        record, created = self.storage.get_or_create_device_fingerprint(candidate)
        if created:
            logger.info(
                f"Registered {processed.device_class} device for user {user_id} "
                f"(trust {record.trust_score}, rural {processed.rural_likelihood})"
            )
        else:
            record = self.touch_device(record.id)

        return record, created

    def touch_device(self, fingerprint_id: str) -> DeviceFingerprint:
        return self.storage.update_device_fingerprint(fingerprint_id, last_seen=self.clock())

    def process_device_info(self, raw: RawDeviceInfo) -> ProcessedFingerprint:
        stability_factors, risk_factors = self.analyze_security_factors(raw)
        return ProcessedFingerprint(
            device_class=self.classify_device(raw),
            rural_likelihood=self.assess_rural_likelihood(raw),
            uniqueness_score=self.calculate_uniqueness(raw),
            stability_factors=stability_factors,
            risk_factors=risk_factors,
        )

    def classify_device(self, raw: RawDeviceInfo) -> str:
        """Point system over memory, screen, CPU and connection"""
        score = 0

        if raw.memory_gb and raw.memory_gb <= 2:
            score += 0
        elif raw.memory_gb and raw.memory_gb <= 4:
            score += 1
        else:
            score += 2

        width, height = raw.screen_size()
        if width <= 720 or height <= 1280:
            score += 0
        elif width <= 1080 or height <= 1920:
            score += 1
        else:
            score += 2

        if raw.cpu_cores and raw.cpu_cores <= 4:
            score += 0
        elif raw.cpu_cores and raw.cpu_cores <= 8:
            score += 1
        else:
            score += 2

        if raw.connection_type in ("2G", "3G"):
            score += 0
        elif raw.connection_type == "4G":
            score += 1
        else:
            score += 2

        if score <= 2:
            return "low-end"
        if score <= 5:
            return "mid-range"
        return "high-end"

    def assess_rural_likelihood(self, raw: RawDeviceInfo) -> int:
        rural_score = 0

        if raw.memory_gb and raw.memory_gb <= 2:
            rural_score += self.indicators["LOW_MEMORY"]

        if raw.network_speed is not None and raw.network_speed < 1:
            rural_score += self.indicators["SLOW_CONNECTION"]

        if raw.connection_type in ("2G", "3G"):
            rural_score += self.indicators["SLOW_CONNECTION"]

        if raw.location_accuracy and raw.location_accuracy > 100:
            rural_score += self.indicators["POOR_GPS"]

        if self.is_old_android(raw.user_agent):
            rural_score += self.indicators["OLD_ANDROID"]

        if not raw.webgl_renderer or not raw.canvas_fingerprint:
            rural_score += self.indicators["BASIC_BROWSER"]

        width, _ = raw.screen_size()
        if width <= 720:
            rural_score += self.indicators["LOW_MEMORY"]

        return min(rural_score * self.config.RURAL_SCALE, 100)

    def calculate_uniqueness(self, raw: RawDeviceInfo) -> int:
        """
        Hash-derived uniqueness in the 20-100 band.

        Stands in for comparing the fingerprint against the observed
        population of fingerprints.
        """
        factors = [
            raw.user_agent,
            raw.screen_resolution,
            raw.timezone,
            raw.language,
            str(raw.color_depth),
            raw.webgl_renderer or "",
            raw.canvas_fingerprint or "",
            raw.audio_fingerprint or "",
        ]
        combined_hash = hashlib.sha256("|".join(factors).encode()).hexdigest()
        return min(int(combined_hash[:8], 16) % 100 + 20, 100)

    def analyze_security_factors(self, raw: RawDeviceInfo):
        stability_factors = []
        risk_factors = []

        if raw.screen_resolution:
            stability_factors.append("screen_resolution")
        if raw.timezone:
            stability_factors.append("timezone")
        if raw.language:
            stability_factors.append("language")
        if raw.webgl_renderer:
            stability_factors.append("webgl_renderer")

        if len(raw.user_agent) < 50:
            risk_factors.append("suspicious_user_agent")

        if raw.canvas_fingerprint == "blocked":
            risk_factors.append("fingerprinting_blocked")

        if not raw.touch_support and "Mobile" in raw.platform:
            risk_factors.append("inconsistent_touch_support")

        if self.is_potential_proxy(raw.ip_address):
            risk_factors.append("potential_proxy")

        return stability_factors, risk_factors

    def generate_device_hash(self, raw: RawDeviceInfo) -> str:
        """Identity hash over slowly-changing fields with version numbers stripped"""
        stable_factors = [
            VERSION_PATTERN.sub("X", raw.user_agent),
            raw.screen_resolution,
            raw.timezone,
            raw.language,
            str(raw.color_depth),
            VERSION_PATTERN.sub("X", raw.webgl_renderer or ""),
        ]
        return hashlib.sha256("|".join(stable_factors).encode()).hexdigest()[:32]

    def calculate_initial_trust_score(self, processed: ProcessedFingerprint) -> int:
        score = 50

        if processed.rural_likelihood > 70:
            score += 10

        if processed.device_class == "low-end":
            score += 5

        score -= len(processed.risk_factors) * 5
        score += len(processed.stability_factors) * 2

        # Too unique is mildly suspicious
        if processed.uniqueness_score > 90:
            score -= 5

        return max(self.config.MIN_DEVICE_TRUST, min(self.config.MAX_DEVICE_TRUST, score))

    @staticmethod
    def is_old_android(user_agent: str) -> bool:
        match = re.search(r"Android (\d+)", user_agent)
        return bool(match) and int(match.group(1)) < 8

    def is_potential_proxy(self, ip_address: str) -> bool:
        return any(pattern.match(ip_address) for pattern in self.private_ip_patterns)

    def compare_fingerprints(self, device_a: str, device_b: str, user_id: str) -> FingerprintComparison:
        first = self.storage.get_device_fingerprint(device_a, user_id)
        second = self.storage.get_device_fingerprint(device_b, user_id)
        if first is None or second is None:
            return FingerprintComparison(similarity=0)

        matching, different = [], []
        for factor in self.COMPARISON_FACTORS:
            if first.fingerprint.raw.get(factor) == second.fingerprint.raw.get(factor):
                matching.append(factor)
            else:
                different.append(factor)

        return FingerprintComparison(
            similarity=len(matching) / len(self.COMPARISON_FACTORS) * 100,
            matching_factors=matching,
            different_factors=different,
        )
