import os


class Config:
    """Configuration settings for the rural banking risk service"""

    # API Settings
    API_TITLE = "RiskGuard Fraud Decision API"
    API_DESCRIPTION = "Transaction risk scoring, device trust and offline admission for rural banking"
    API_VERSION = "1.0.0"
    API_HOST = "0.0.0.0"
    API_PORT = int(os.getenv("RISKGUARD_API_PORT", "8001"))

    # Decision thresholds (0-100 scale)
    MEDIUM_THRESHOLD = 35
    HIGH_THRESHOLD = 65
    CRITICAL_THRESHOLD = 85

    # Rule scorer weights (relative contribution caps)
    SCORER_WEIGHTS = {
        "amount_zscore": 25,
        "time_pattern": 15,
        "device_trust": 20,
        "location_risk": 15,
        "velocity": 20,
        "rural_context": 5,
    }

    # Hard-override penalties added to the score for explanation consistency
    BLACKLISTED_USER_PENALTY = 50
    BLACKLISTED_DEVICE_PENALTY = 45
    BLACKLISTED_PHONE_PENALTY = 40
    LOCKED_OUT_PENALTY = 30

    # Account lockout
    MAX_FAILED_LOGINS = 5
    FAILED_LOGIN_RESET_HOURS = 1
    LOCKOUT_MINUTES = 30

    # Blacklist seeds
    BLACKLISTED_NUMBERS = ["+91-XXXX-FRAUD", "+91-YYYY-SCAM"]

    # Feature extraction
    HISTORY_LIMIT = 100
    NETWORK_STABILITY_DAYS = 30
    UNKNOWN_DEVICE_TRUST = 30
    DEFAULT_RURAL_LIKELIHOOD = 50
    BENEFIT_WINDOW_DAYS = (1, 7)

    # Merchant keyword table used by the rule scorer (first match wins)
    MERCHANT_CATEGORIES = {
        "government": ["government", "benefit", "pension"],
        "retail": ["grocery", "store", "market"],
        "cash": ["atm", "withdrawal", "cash"],
        "telecom": ["mobile", "recharge", "phone"],
        "utility": ["electric", "water", "gas"],
        "healthcare": ["medical", "hospital", "pharmacy"],
    }

    # Merchant keyword table used by the anomaly engine
    ANOMALY_MERCHANT_CATEGORIES = {
        "cash": ["atm", "cash"],
        "retail": ["grocery", "store"],
        "fuel": ["fuel", "petrol"],
        "healthcare": ["medical", "pharmacy"],
        "telecom": ["mobile", "recharge"],
        "government": ["government", "benefit"],
    }

    # Secondary ensemble
    RULE_MODEL_WEIGHT = 0.6
    NETWORK_MODEL_WEIGHT = 0.4
    MODEL_REVIEW_THRESHOLD = 0.3
    MODEL_BLOCK_THRESHOLD = 0.7
    ENSEMBLE_BLOCK_THRESHOLD = 0.8
    ENSEMBLE_REVIEW_THRESHOLD = 0.4

    # Device fingerprinting
    RURAL_INDICATORS = {
        "LOW_MEMORY": 2,
        "SLOW_CONNECTION": 8,
        "POOR_GPS": 6,
        "OLD_ANDROID": 4,
        "BASIC_BROWSER": 3,
        "SINGLE_SIM": 2,
    }
    RURAL_SCALE = 3
    MIN_DEVICE_TRUST = 10
    MAX_DEVICE_TRUST = 90
    PRIVATE_IP_PATTERNS = [
        r"^10\.",
        r"^172\.(1[6-9]|2[0-9]|3[0-1])\.",
        r"^192\.168\.",
        r"^127\.",
    ]

    # SIM swap detection
    SIM_SWAP_THRESHOLD = 70
    SIM_SWAP_CRITICAL = 85
    SIM_SWAP_WEIGHTS = {
        "new_device_snapshot": 30,
        "carrier_change": 40,
        "imsi_change": 50,
        "location_change": 30,
        "time_factor": 20,
        "unknown_device": 25,
        "low_trust": 20,
        "stale_device": 15,
        "recent_swap": 30,
    }
    SIM_SWAP_RECENT_DAYS = 7
    STALE_DEVICE_DAYS = 30
    CONFIRMED_SWAP_TRUST_PENALTY = 20

    # Agent behavior
    AGENT_ANOMALY_THRESHOLD = 70
    AGENT_CRITICAL_THRESHOLD = 85
    AGENT_MAX_SINGLE_TRANSACTION = 100000
    AGENT_HISTORY_DAYS = 30
    AGENT_DIMENSION_WEIGHTS = {
        "volume": 0.25,
        "amount": 0.25,
        "timing": 0.20,
        "location": 0.15,
        "behavior_change": 0.15,
    }

    # Anomaly engine
    ANOMALY_THRESHOLD = 60
    CRITICAL_ANOMALY_THRESHOLD = 80
    PROFILE_HISTORY_LIMIT = 200
    ANOMALY_DIMENSION_WEIGHTS = {
        "behavioral": 0.25,
        "device": 0.20,
        "pattern": 0.25,
        "temporal": 0.15,
        "geographic": 0.15,
    }

    # Pipeline decision bands
    PIPELINE_FLAG_THRESHOLD = 80
    PIPELINE_REVIEW_THRESHOLD = 60

    # Offline policy (rural default)
    OFFLINE_MAX_TRANSACTIONS = 5
    OFFLINE_MAX_AMOUNT = 50000
    OFFLINE_MAX_TOTAL_AMOUNT = 100000
    OFFLINE_MAX_HOURS = 72
    OFFLINE_MIN_VALIDATION_SCORE = 30
    OFFLINE_FRAUD_THRESHOLD = 60

    # Crypto
    PBKDF2_ITERATIONS = int(os.getenv("RISKGUARD_PBKDF2_ITERATIONS", "100000"))
    KEY_LENGTH = 32
    ASSOCIATED_DATA = b"rural-banking-security"

    # Persistence
    SAVED_MODELS_PATH = os.getenv("RISKGUARD_MODEL_PATH", "saved_models")

    # Training Parameters
    TRAINING_SAMPLES = 5000
    TEST_SIZE = 0.2
    RANDOM_STATE = 42
    MLP_HIDDEN_LAYERS = (10, 5)
    MLP_MAX_ITER = 300
    FRAUD_RATE = 0.08

    # System Settings
    MAX_PERFORMANCE_METRICS = 100

    # Logging
    LOG_LEVEL = os.getenv("RISKGUARD_LOG_LEVEL", "INFO")
