import logging
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics import f1_score, precision_score, recall_score, roc_auc_score
from sklearn.model_selection import train_test_split
from sklearn.neural_network import MLPClassifier

from riskguard.config import Config
from riskguard.data.generator import TransactionGenerator
from riskguard.models.ensemble import FraudDetectionEnsemble, MLFeatureVector, TrainedNetworkModel
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)


class ModelTrainer:
    """Fits the feed-forward network that can replace the fixed-weight one"""

    def __init__(self, config=Config, generator: Optional[TransactionGenerator] = None):
        self.config = config
        self.generator = generator or TransactionGenerator(config)
        self.model_metrics: Dict[str, Any] = {}

    def train_model(self, n_samples: Optional[int] = None, save: bool = True,
                    base_path: Optional[str] = None) -> Tuple[TrainedNetworkModel, Dict[str, Any]]:
        """
        Train on synthetic data and optionally persist the result.

        Args:
            n_samples: Number of synthetic rows (defaults to Config.TRAINING_SAMPLES)
            save: Write the model and ensemble configuration to disk
            base_path: Target directory (defaults to Config.SAVED_MODELS_PATH)

        Returns:
            (trained model, evaluation metrics)
        """
        logger.info("Starting model training process...")

        training_data = self.generator.generate_training_data(n_samples)
        X = self.prepare_training_features(training_data)
        y = training_data["is_fraud"].values

        X_train, X_test, y_train, y_test = train_test_split(
            X, y, test_size=self.config.TEST_SIZE, random_state=self.config.RANDOM_STATE, stratify=y
        )

        estimator = MLPClassifier(
            hidden_layer_sizes=self.config.MLP_HIDDEN_LAYERS,
            activation="relu",
            max_iter=self.config.MLP_MAX_ITER,
            random_state=self.config.RANDOM_STATE,
        )
        estimator.fit(X_train, y_train)

        metrics = self._evaluate(estimator, X_test, y_test)
        metrics["training_samples"] = int(len(X_train))
        metrics["last_trained"] = utcnow().isoformat()
        self.model_metrics = metrics

        model = TrainedNetworkModel(estimator)
        if save:
            path = base_path or self.config.SAVED_MODELS_PATH
            FraudDetectionEnsemble(network_model=model, config=self.config).save_model(path)

        logger.info(f"Training complete. Network F1: {metrics['f1']:.3f}")
        return model, metrics

    @staticmethod
    def prepare_training_features(df: pd.DataFrame) -> np.ndarray:
        """Scale each row the same way the ensemble scales live vectors"""
        logger.info("Extracting features from training data...")
        rows = [
            MLFeatureVector(**record).to_network_inputs()
            for record in df.drop(columns=["is_fraud"]).to_dict("records")
        ]
        return np.vstack(rows)

    @staticmethod
    def _evaluate(estimator: MLPClassifier, X_test: np.ndarray, y_test: np.ndarray) -> Dict[str, Any]:
        predictions = estimator.predict(X_test)
        probabilities = estimator.predict_proba(X_test)[:, 1]

        return {
            "precision": float(precision_score(y_test, predictions, zero_division=0)),
            "recall": float(recall_score(y_test, predictions, zero_division=0)),
            "f1": float(f1_score(y_test, predictions, zero_division=0)),
            "roc_auc": float(roc_auc_score(y_test, probabilities)),
            "test_samples": int(len(y_test)),
        }
