from datetime import datetime
from typing import Callable, Optional

from riskguard.config import Config
from riskguard.features.engineering import FeatureEngine
from riskguard.features.profiles import ProfileBuilder
from riskguard.models.ensemble import FraudDetectionEnsemble
from riskguard.models.scoring import Blacklist, FraudScorer, LoginAttemptTracker
from riskguard.offline.validator import OfflineValidator
from riskguard.pipeline import RiskPipeline
from riskguard.security.agent_behavior import AgentBehaviorAnalyzer
from riskguard.security.anomaly import AnomalyEngine
from riskguard.security.encryption import EncryptionFramework
from riskguard.security.fingerprint import DeviceFingerprinter
from riskguard.security.sim_swap import SimSwapDetector
from riskguard.storage.base import Storage
from riskguard.storage.memory import MemoryStorage
from riskguard.timeutils import utcnow


class RiskServices:
    """Wires every analyzer around one storage backend and one clock"""

    def __init__(self, storage: Optional[Storage] = None, config=Config,
                 clock: Callable[[], datetime] = utcnow, encryption: Optional[EncryptionFramework] = None,
                 ensemble: Optional[FraudDetectionEnsemble] = None):
        self.storage = storage or MemoryStorage()
        self.config = config
        self.clock = clock

        self.profiles = ProfileBuilder(self.storage, config, clock=clock)
        self.feature_engine = FeatureEngine(self.storage, config, clock=clock)
        self.blacklist = Blacklist()
        self.login_tracker = LoginAttemptTracker(self.storage, config, clock=clock)
        self.scorer = FraudScorer(
            self.storage, config,
            feature_engine=self.feature_engine,
            blacklist=self.blacklist,
            login_tracker=self.login_tracker,
            clock=clock,
        )
        self.ensemble = ensemble or FraudDetectionEnsemble(config=config)
        self.anomaly_engine = AnomalyEngine(self.storage, config, profiles=self.profiles, clock=clock)
        self.agent_analyzer = AgentBehaviorAnalyzer(self.storage, config, profiles=self.profiles, clock=clock)
        self.fingerprinter = DeviceFingerprinter(self.storage, config, clock=clock)
        self.sim_swap_detector = SimSwapDetector(self.storage, config)
        self.encryption = encryption or EncryptionFramework()
        self.offline_validator = OfflineValidator(
            self.storage, scorer=self.scorer, encryption=self.encryption, config=config, clock=clock
        )
        self.pipeline = RiskPipeline(self.storage, self.scorer, self.anomaly_engine, config, clock=clock)
