import pytest

from riskguard.data.generator import TransactionGenerator
from riskguard.models.ensemble import NETWORK_INPUTS, FraudDetectionEnsemble, TrainedNetworkModel
from riskguard.training.trainer import ModelTrainer


def test_generator_is_seeded_and_labelled():
    first = TransactionGenerator(seed=7).generate_training_data(200)
    second = TransactionGenerator(seed=7).generate_training_data(200)

    assert first.equals(second)
    assert len(first.columns) == len(NETWORK_INPUTS) + 1
    assert "account_age_days" in first.columns
    assert set(first["is_fraud"].unique()) <= {0, 1}
    assert first["is_fraud"].sum() > 0


def test_feature_matrix_matches_network_inputs():
    df = TransactionGenerator(seed=3).generate_training_data(50)
    X = ModelTrainer.prepare_training_features(df)
    assert X.shape == (50, len(NETWORK_INPUTS))


@pytest.mark.filterwarnings("ignore::sklearn.exceptions.ConvergenceWarning")
def test_train_save_and_reload(tmp_path):
    model, metrics = ModelTrainer().train_model(n_samples=600, base_path=str(tmp_path))

    assert {"precision", "recall", "f1", "roc_auc", "test_samples", "training_samples"} <= set(metrics)
    assert 0 <= metrics["roc_auc"] <= 1
    assert (tmp_path / "network_model.pkl").exists()

    ensemble = FraudDetectionEnsemble()
    assert ensemble.load_model(str(tmp_path)) is True
    assert isinstance(ensemble.network_model, TrainedNetworkModel)
    assert isinstance(TrainedNetworkModel.load(str(tmp_path)), TrainedNetworkModel)


def test_train_without_saving(tmp_path):
    trainer = ModelTrainer()
    trainer.train_model(n_samples=300, save=False, base_path=str(tmp_path))

    assert not any(tmp_path.iterdir())
    assert trainer.model_metrics["test_samples"] > 0
