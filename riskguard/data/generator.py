import logging
import random
from typing import Optional

import numpy as np
import pandas as pd

from riskguard.config import Config

logger = logging.getLogger(__name__)


class TransactionGenerator:
    """Generate labelled synthetic feature rows for training the network model"""

    def __init__(self, config=Config, seed: Optional[int] = None):
        self.config = config
        self.seed = config.RANDOM_STATE if seed is None else seed

        # Rural account holders mostly receive transfers and withdraw small amounts
        self.segments = {
            "farmer": {"avg_amount": 1500, "hours": list(range(7, 19)), "share": 0.45},
            "beneficiary": {"avg_amount": 2500, "hours": list(range(9, 17)), "share": 0.35},
            "shopkeeper": {"avg_amount": 6000, "hours": list(range(8, 22)), "share": 0.20},
        }

    def generate_training_data(self, n_samples: Optional[int] = None) -> pd.DataFrame:
        """
        Build a frame with one column per MLFeatureVector field used by the
        network plus an ``is_fraud`` label.
        """
        if n_samples is None:
            n_samples = self.config.TRAINING_SAMPLES

        logger.info(f"Generating {n_samples} synthetic transactions...")

        rng = random.Random(self.seed)
        np_rng = np.random.RandomState(self.seed)
        names = list(self.segments)
        shares = [self.segments[n]["share"] for n in names]

        rows = []
        for _ in range(n_samples):
            segment = self.segments[rng.choices(names, weights=shares)[0]]
            is_fraud = rng.random() < self.config.FRAUD_RATE

            if is_fraud:
                row = self._generate_fraud_row(segment, rng, np_rng)
            else:
                row = self._generate_normal_row(segment, rng, np_rng)
            row["is_fraud"] = int(is_fraud)
            rows.append(row)

        df = pd.DataFrame(rows)
        fraud_count = int(df["is_fraud"].sum())
        logger.info(f"Generated {len(df)} transactions: {fraud_count} frauds ({fraud_count / len(df) * 100:.1f}%)")
        return df

    def _generate_normal_row(self, segment: dict, rng: random.Random, np_rng: np.random.RandomState) -> dict:
        avg = segment["avg_amount"]
        return {
            "amount": round(max(50.0, np_rng.normal(avg, avg * 0.3)), 2),
            "time_of_day": rng.choice(segment["hours"]) if rng.random() < 0.85 else rng.randint(0, 23),
            "is_weekend": rng.random() < 2 / 7,
            "location_risk": rng.choice([10, 10, 10, 40, 50]),
            "distance_from_home": abs(np_rng.normal(5, 5)),
            "is_unusual_location": rng.random() < 0.1,
            "device_trust_score": min(90.0, max(10.0, np_rng.normal(70, 10))),
            "is_new_device": rng.random() < 0.05,
            "velocity_score": float(np_rng.poisson(0.5)),
            "account_age_days": rng.uniform(90, 3000),
            "ip_risk": rng.uniform(0, 20),
            "vpn_detected": rng.random() < 0.01,
            "agent_trust_score": min(100.0, max(0.0, np_rng.normal(75, 10))),
        }

    def _generate_fraud_row(self, segment: dict, rng: random.Random, np_rng: np.random.RandomState) -> dict:
        if rng.random() < 0.7:  # Account takeover after SIM swap
            return {
                "amount": round(rng.uniform(15000, 50000), -3),
                "time_of_day": rng.choice([0, 1, 2, 3, 4, 23]),
                "is_weekend": rng.random() < 0.4,
                "location_risk": rng.choice([40, 70, 70]),
                "distance_from_home": rng.uniform(50, 800),
                "is_unusual_location": True,
                "device_trust_score": rng.uniform(10, 35),
                "is_new_device": rng.random() < 0.8,
                "velocity_score": float(rng.randint(3, 10)),
                "account_age_days": rng.uniform(0, 3000),
                "ip_risk": rng.uniform(40, 100),
                "vpn_detected": rng.random() < 0.3,
                "agent_trust_score": min(100.0, max(0.0, np_rng.normal(60, 15))),
            }

        # Agent-assisted fraud at normal hours and locations
        avg = segment["avg_amount"]
        return {
            "amount": round(rng.uniform(avg * 2, avg * 6), 2),
            "time_of_day": rng.choice(segment["hours"]),
            "is_weekend": rng.random() < 2 / 7,
            "location_risk": rng.choice([10, 40]),
            "distance_from_home": abs(np_rng.normal(10, 10)),
            "is_unusual_location": rng.random() < 0.3,
            "device_trust_score": min(90.0, max(10.0, np_rng.normal(55, 15))),
            "is_new_device": rng.random() < 0.3,
            "velocity_score": float(rng.randint(1, 5)),
            "account_age_days": rng.uniform(0, 365),
            "ip_risk": rng.uniform(0, 50),
            "vpn_detected": False,
            "agent_trust_score": rng.uniform(10, 45),
        }
