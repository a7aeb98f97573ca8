import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, List, Literal, Optional

import joblib
import numpy as np
from pydantic import BaseModel, Field

from riskguard.config import Config
from riskguard.exceptions import ModelNotAvailableError
from riskguard.features.engineering import TransactionFeatures

logger = logging.getLogger(__name__)

ModelDecision = Literal["approve", "review", "block"]

NETWORK_INPUTS = [
    "amount", "location_risk", "device_trust_score", "velocity_score", "time_of_day",
    "distance_from_home", "ip_risk", "agent_trust_score", "is_new_device",
    "is_unusual_location", "vpn_detected", "is_weekend", "account_age",
]


class MLFeatureVector(BaseModel):
    """Input shared by every model behind the secondary ensemble"""

    # Transaction
    amount: float = Field(ge=0)
    time_of_day: int = Field(ge=0, le=23)
    day_of_week: int = Field(default=0, ge=0, le=6)
    is_weekend: bool = False
    transaction_type: str = "debit"

    # Location
    location_risk: float = Field(default=25, ge=0, le=100)
    distance_from_home: float = Field(default=0, ge=0)
    is_unusual_location: bool = False

    # Device
    device_trust_score: float = Field(default=75, ge=0, le=100)
    is_new_device: bool = False
    device_type: str = "unknown"

    # Behaviour
    velocity_score: float = Field(default=0, ge=0)
    account_age_days: float = Field(default=365, ge=0)
    avg_transaction_amount: float = Field(default=0, ge=0)

    # Network
    ip_risk: float = Field(default=0, ge=0, le=100)
    vpn_detected: bool = False
    carrier: Optional[str] = None

    # Agent
    agent_id: Optional[str] = None
    agent_trust_score: float = Field(default=75, ge=0, le=100)
    agent_location: Optional[str] = None

    @classmethod
    def from_features(cls, features: TransactionFeatures, transaction_type: str = "debit", **extra):
        """Build a vector from the rule scorer's feature record"""
        values = {
            "amount": features.amount,
            "time_of_day": features.hour_of_day,
            "day_of_week": features.day_of_week,
            "is_weekend": features.is_weekend,
            "transaction_type": transaction_type,
            "location_risk": features.location_risk,
            "is_unusual_location": features.new_location,
            "device_trust_score": features.device_trust_score,
            "is_new_device": features.new_device,
            "velocity_score": features.transaction_velocity,
        }
        values.update(extra)
        return cls(**values)

    def to_network_inputs(self) -> np.ndarray:
        """Thirteen inputs scaled to roughly [0, 1], ordered as NETWORK_INPUTS"""
        return np.array([
            self.amount / 100000,
            self.location_risk / 100,
            self.device_trust_score / 100,
            self.velocity_score / 20,
            self.time_of_day / 24,
            self.distance_from_home / 1000,
            self.ip_risk / 100,
            self.agent_trust_score / 100,
            float(self.is_new_device),
            float(self.is_unusual_location),
            float(self.vpn_detected),
            float(self.is_weekend),
            self.account_age_days / 365,
        ], dtype=float)


class ModelPrediction(BaseModel):
    fraud_probability: float = Field(ge=0, le=1)
    risk_score: int = Field(ge=0, le=100)
    decision: ModelDecision
    confidence: float = Field(ge=0, le=1)
    explanation: List[str] = Field(default_factory=list)
    feature_importance: Dict[str, float] = Field(default_factory=dict)
    model_version: str


class EnsemblePrediction(ModelPrediction):
    rule_prediction: ModelPrediction
    network_prediction: ModelPrediction
    model_agreement: str
    confidence_level: str


def decide(probability: float, review_threshold: float = Config.MODEL_REVIEW_THRESHOLD,
           block_threshold: float = Config.MODEL_BLOCK_THRESHOLD) -> ModelDecision:
    if probability >= block_threshold:
        return "block"
    elif probability >= review_threshold:
        return "review"
    return "approve"


def _sigmoid(x: float) -> float:
    return float(1 / (1 + np.exp(-x)))


class FraudModel(ABC):
    """Strategy interface for models combined by FraudDetectionEnsemble"""

    model_version = "unversioned"

    @abstractmethod
    def predict(self, vector: MLFeatureVector) -> ModelPrediction: ...

    def _prediction(self, probability: float, explanation: List[str],
                    feature_importance: Dict[str, float]) -> ModelPrediction:
        probability = min(max(float(probability), 0.0), 1.0)
        return ModelPrediction(
            fraud_probability=probability,
            risk_score=round(probability * 100),
            decision=decide(probability),
            confidence=abs(probability - 0.5) * 2,
            explanation=explanation,
            feature_importance=feature_importance,
            model_version=self.model_version,
        )


class RuleWeightedModel(FraudModel):
    """
    Weighted linear model over normalised features, squashed with a sigmoid.

    Continuous features with known population statistics are z-normalised;
    risk percentages are scaled to [0, 1]; trust scores contribute their
    distrust (100 - trust). INTERCEPT centres a typical transaction below
    the review threshold.
    """

    model_version = "RuleWeighted-v1"

    WEIGHTS = {
        "amount": 0.15,
        "location_risk": 0.12,
        "device_trust_score": 0.10,
        "velocity_score": 0.11,
        "time_of_day": 0.08,
        "distance_from_home": 0.09,
        "ip_risk": 0.08,
        "agent_trust_score": 0.07,
        "is_new_device": 0.06,
        "is_unusual_location": 0.05,
        "vpn_detected": 0.04,
        "is_weekend": 0.03,
        "account_age": 0.02,
    }

    FEATURE_STATS = {
        "amount": (2500, 5000),
        "location_risk": (25, 20),
        "device_trust_score": (75, 15),
        "velocity_score": (3, 4),
        "distance_from_home": (50, 200),
    }

    INTERCEPT = -1.0

    def __init__(self, weights: Optional[Dict[str, float]] = None, intercept: float = INTERCEPT):
        self.weights = dict(weights or self.WEIGHTS)
        self.intercept = intercept

    def _normalize(self, value: float, feature: str) -> float:
        mean, std = self.FEATURE_STATS[feature]
        return (value - mean) / std

    @staticmethod
    def time_pattern(hour: int, is_weekend: bool) -> float:
        """Business hours lower the risk, night hours raise it"""
        if 9 <= hour <= 17 and not is_weekend:
            return -0.2
        if hour >= 23 or hour <= 6:
            return 0.4
        return 0.0

    def predict(self, vector: MLFeatureVector) -> ModelPrediction:
        w = self.weights
        contributions = {
            "amount": self._normalize(vector.amount, "amount") * w["amount"],
            "location_risk": vector.location_risk / 100 * w["location_risk"],
            "device_trust_score": (100 - vector.device_trust_score) / 100 * w["device_trust_score"],
            "velocity_score": self._normalize(vector.velocity_score, "velocity_score") * w["velocity_score"],
            "time_of_day": self.time_pattern(vector.time_of_day, vector.is_weekend) * w["time_of_day"],
            "distance_from_home": self._normalize(vector.distance_from_home, "distance_from_home")
            * w["distance_from_home"],
            "ip_risk": vector.ip_risk / 100 * w["ip_risk"],
            "is_new_device": float(vector.is_new_device) * w["is_new_device"],
            "is_unusual_location": float(vector.is_unusual_location) * w["is_unusual_location"],
            "vpn_detected": float(vector.vpn_detected) * w["vpn_detected"],
            "is_weekend": float(vector.is_weekend) * w["is_weekend"],
            "account_age": max(0.0, 1 - vector.account_age_days / 365) * w["account_age"],
        }
        if vector.agent_id:
            contributions["agent_trust_score"] = (100 - vector.agent_trust_score) / 100 * w["agent_trust_score"]

        probability = _sigmoid(self.intercept + sum(contributions.values()))
        prediction = self._prediction(
            probability,
            self._explain(vector),
            {name: abs(value) for name, value in contributions.items()},
        )
        prediction.explanation.insert(0, {
            "block": "BLOCKED: High fraud probability detected",
            "review": "FLAGGED: Manual review recommended",
            "approve": "APPROVED: Low fraud risk",
        }[prediction.decision])
        return prediction

    def _explain(self, vector: MLFeatureVector) -> List[str]:
        explanations = []

        if vector.amount > 10000:
            explanations.append(f"High transaction amount: ₹{vector.amount:,.0f}")
        if vector.location_risk > 60:
            explanations.append(f"High-risk location detected ({vector.location_risk:.0f}% risk)")
        if vector.distance_from_home > 100:
            explanations.append(f"Transaction {vector.distance_from_home:.0f}km from usual location")
        if vector.is_new_device:
            explanations.append("Transaction from new/unrecognized device")
        if vector.device_trust_score < 50:
            explanations.append(f"Low device trust score: {vector.device_trust_score:.0f}%")
        if vector.velocity_score > 10:
            explanations.append(f"High transaction velocity: {vector.velocity_score:.0f} transactions/hour")
        if vector.time_of_day < 6 or vector.time_of_day >= 23:
            explanations.append(f"Unusual transaction time: {vector.time_of_day}:00")
        if vector.vpn_detected:
            explanations.append("VPN or proxy detected")
        if vector.ip_risk > 70:
            explanations.append(f"High-risk IP address ({vector.ip_risk:.0f}% risk)")
        if vector.agent_id and vector.agent_trust_score < 60:
            explanations.append(f"Low agent trust score: {vector.agent_trust_score:.0f}%")

        return explanations


class FixedWeightNetwork(FraudModel):
    """
    Deterministic 13 -> 10 -> 5 -> 1 feed-forward network (ReLU, ReLU, sigmoid).

    The weights are hand-set constants, not learned. Each first-layer unit
    detects one risk signal from the inputs listed in NETWORK_INPUTS:

        0 large amount          5 late night (23h)
        1 risky location        6 distance from home
        2 low device trust      7 risky network / VPN
        3 high velocity         8 low agent trust
        4 early morning         9 new device on a young account

    The second layer groups them into transaction, identity, context,
    timing and exposure risk. A trained model can replace this one through
    TrainedNetworkModel.
    """

    model_version = "FixedWeightNetwork-v1"

    W1 = np.array([
        # amt  loc   trust vel   tod   dist  ip    agent new   unus  vpn   wkend age
        [4.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0],
        [0.0,  1.5,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.5,  0.0,  0.0,  0.0],
        [0.0,  0.0, -1.5,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0],
        [0.0,  0.0,  0.0,  2.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0],
        [0.0,  0.0,  0.0,  0.0, -2.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0],
        [0.0,  0.0,  0.0,  0.0,  4.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0],
        [0.0,  0.0,  0.0,  0.0,  0.0,  2.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0],
        [0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  1.2,  0.0,  0.0,  0.0,  0.8,  0.0,  0.0],
        [0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0, -1.0,  0.0,  0.0,  0.0,  0.0,  0.0],
        [0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.0,  0.8,  0.0,  0.0,  0.2, -0.5],
    ])
    B1 = np.array([0.0, -0.3, 1.0, -0.2, 0.5, -3.6, -0.1, -0.2, 0.6, 0.0])

    W2 = np.array([
        # h0   h1   h2   h3   h4   h5   h6   h7   h8   h9
        [1.0, 0.0, 0.0, 0.5, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
        [0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.5, 1.0],
        [0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.5, 0.0, 0.0],
        [0.0, 0.0, 0.0, 0.3, 1.0, 1.0, 0.0, 0.0, 0.0, 0.0],
        [0.5, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.5, 0.0, 0.0],
    ])
    B2 = np.zeros(5)

    W3 = np.array([[1.2, 1.5, 1.2, 1.0, 0.8]])
    B3 = np.array([-2.5])

    GROUPS = ["transaction", "identity", "context", "timing", "exposure"]

    def _forward(self, inputs: np.ndarray):
        hidden_1 = np.maximum(0.0, self.W1 @ inputs + self.B1)
        hidden_2 = np.maximum(0.0, self.W2 @ hidden_1 + self.B2)
        output = self.W3 @ hidden_2 + self.B3
        return hidden_2, float(1 / (1 + np.exp(-output[0])))

    def predict(self, vector: MLFeatureVector) -> ModelPrediction:
        inputs = vector.to_network_inputs()
        hidden_2, probability = self._forward(inputs)

        group_contributions = self.W3[0] * hidden_2
        feature_importance = {
            f"{group}_risk": float(value) for group, value in zip(self.GROUPS, group_contributions)
        }

        explanation = [f"Neural network analysis: {probability * 100:.1f}% fraud probability"]
        dominant = int(np.argmax(group_contributions))
        if group_contributions[dominant] > 0:
            explanation.append(f"Strongest signal: {self.GROUPS[dominant]} risk")

        return self._prediction(probability, explanation, feature_importance)


class TrainedNetworkModel(FraudModel):
    """Wraps a fitted scikit-learn classifier taking the thirteen network inputs"""

    model_version = "TrainedNetwork-v1"
    MODEL_FILE = "network_model.pkl"

    def __init__(self, estimator, model_version: Optional[str] = None):
        self.estimator = estimator
        if model_version:
            self.model_version = model_version

    @classmethod
    def load(cls, base_path: str = Config.SAVED_MODELS_PATH) -> "TrainedNetworkModel":
        path = os.path.join(base_path, cls.MODEL_FILE)
        try:
            estimator = joblib.load(path)
        except FileNotFoundError as e:
            raise ModelNotAvailableError(f"No trained model at {path}") from e
        return cls(estimator)

    def save(self, base_path: str = Config.SAVED_MODELS_PATH):
        os.makedirs(base_path, exist_ok=True)
        joblib.dump(self.estimator, os.path.join(base_path, self.MODEL_FILE))

    def predict(self, vector: MLFeatureVector) -> ModelPrediction:
        inputs = vector.to_network_inputs().reshape(1, -1)
        probability = float(self.estimator.predict_proba(inputs)[0, 1])

        importances = getattr(self.estimator, "feature_importances_", None)
        feature_importance = (
            dict(zip(NETWORK_INPUTS, map(float, importances))) if importances is not None
            else {"network_output": probability}
        )
        return self._prediction(
            probability,
            [f"Trained network: {probability * 100:.1f}% fraud probability"],
            feature_importance,
        )


class FraudDetectionEnsemble:
    """
    Secondary ensemble blending a rule-weighted model with a feed-forward model.
    Either component can be swapped for any FraudModel implementation.
    """

    def __init__(self, rule_model: Optional[FraudModel] = None, network_model: Optional[FraudModel] = None,
                 config=Config):
        self.rule_model = rule_model or RuleWeightedModel()
        self.network_model = network_model or FixedWeightNetwork()

        self.rule_weight = config.RULE_MODEL_WEIGHT
        self.network_weight = config.NETWORK_MODEL_WEIGHT
        self.block_threshold = config.ENSEMBLE_BLOCK_THRESHOLD
        self.review_threshold = config.ENSEMBLE_REVIEW_THRESHOLD

    def predict(self, vector: MLFeatureVector) -> EnsemblePrediction:
        """
        Blend both models and decide.

        Args:
            vector: Feature vector for a single transaction

        Returns:
            EnsemblePrediction with per-model predictions and explanations
        """
        rule_prediction = self.rule_model.predict(vector)
        network_prediction = self.network_model.predict(vector)

        rule_p = rule_prediction.fraud_probability
        network_p = network_prediction.fraud_probability
        blended = self.rule_weight * rule_p + self.network_weight * network_p

        either_blocks = "block" in (rule_prediction.decision, network_prediction.decision)
        if blended > self.block_threshold and either_blocks:
            decision = "block"
        elif blended > self.review_threshold or either_blocks:
            decision = "review"
        else:
            decision = "approve"

        explanation = [
            f"Ensemble model (rule: {rule_p * 100:.1f}%, network: {network_p * 100:.1f}%)",
            *rule_prediction.explanation[1:3],
            f"Combined fraud probability: {blended * 100:.1f}%",
        ]
        if decision == "block" and len(rule_prediction.explanation) < 2:
            explanation.append("Both sub-models indicate high fraud probability")

        return EnsemblePrediction(
            fraud_probability=blended,
            risk_score=round(blended * 100),
            decision=decision,
            confidence=min(rule_prediction.confidence, network_prediction.confidence),
            explanation=explanation,
            feature_importance=rule_prediction.feature_importance,
            model_version=f"Ensemble({self.rule_model.model_version}+{self.network_model.model_version})",
            rule_prediction=rule_prediction,
            network_prediction=network_prediction,
            model_agreement=self._calculate_model_agreement(rule_prediction, network_prediction),
            confidence_level=self._calculate_prediction_confidence(blended, rule_p, network_p),
        )

    def _calculate_model_agreement(self, rule_prediction: ModelPrediction,
                                   network_prediction: ModelPrediction) -> str:
        """Check if both models reach the same decision"""
        if rule_prediction.decision == network_prediction.decision:
            return "high_agreement"
        return "disagreement"

    def _calculate_prediction_confidence(self, blended: float, rule_p: float, network_p: float) -> str:
        extreme_score = blended > 0.9 or blended < 0.1
        both_extreme = (rule_p > 0.8 and network_p > 0.8) or (rule_p < 0.2 and network_p < 0.2)

        if extreme_score and both_extreme:
            return "very_high"
        elif extreme_score or both_extreme:
            return "high"
        elif abs(rule_p - network_p) < 0.2:
            return "medium"
        return "low"

    def save_model(self, base_path: str = Config.SAVED_MODELS_PATH):
        """Persist blend configuration, and the trained network when there is one"""
        os.makedirs(base_path, exist_ok=True)

        if isinstance(self.network_model, TrainedNetworkModel):
            self.network_model.save(base_path)

        config = {
            "rule_weight": self.rule_weight,
            "network_weight": self.network_weight,
            "block_threshold": self.block_threshold,
            "review_threshold": self.review_threshold,
            "network_model": type(self.network_model).__name__,
        }
        with open(os.path.join(base_path, "ensemble_config.json"), "w") as f:
            json.dump(config, f, indent=2)

        logger.info("Ensemble saved successfully")

    def load_model(self, base_path: str = Config.SAVED_MODELS_PATH) -> bool:
        """Restore blend configuration; returns False when nothing is saved"""
        try:
            with open(os.path.join(base_path, "ensemble_config.json"), "r") as f:
                config = json.load(f)
        except FileNotFoundError:
            logger.warning("Ensemble configuration not found, keeping defaults")
            return False

        self.rule_weight = config["rule_weight"]
        self.network_weight = config["network_weight"]
        self.block_threshold = config["block_threshold"]
        self.review_threshold = config["review_threshold"]

        if config.get("network_model") == TrainedNetworkModel.__name__:
            try:
                self.network_model = TrainedNetworkModel.load(base_path)
            except ModelNotAvailableError:
                logger.warning("Trained network missing, using fixed-weight network")
                self.network_model = FixedWeightNetwork()

        logger.info("Ensemble loaded successfully")
        return True
