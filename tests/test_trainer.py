"""Tests for local differentially-private training."""

import numpy as np
import pytest

from sentinel_fl.exceptions import BudgetExhausted, ShapeError
from sentinel_fl.model import forward, loss
from sentinel_fl.privacy import PrivacyAccountant, PrivacyBudget, SeededNoise
from sentinel_fl.trainer import Trainer, TrainingHyperparams, TrainingResult


def make_trainer(noise_multiplier=0.0, learning_rate=0.1, epsilon_total=1.0, max_rounds=100, **kwargs):
    accountant = PrivacyAccountant(
        PrivacyBudget(epsilon_total=epsilon_total),
        max_rounds=max_rounds,
        clip_norm=1.0,
        noise_multiplier=noise_multiplier,
        noise_source=SeededNoise(0),
    )
    hyperparams = TrainingHyperparams(learning_rate=learning_rate, **kwargs)
    return Trainer(accountant, hyperparams, rng=np.random.default_rng(0))


class TestTrainingHyperparams:
    """Test hyperparameter validation."""

    def test_defaults(self):
        """Test default values."""
        params = TrainingHyperparams()

        assert params.local_epochs == 10
        assert params.batch_size == 32
        assert params.learning_rate == 0.001
        assert params.min_samples == 10

    def test_invalid(self):
        """Test non-positive values are rejected."""
        with pytest.raises(ValueError):
            TrainingHyperparams(batch_size=0)
        with pytest.raises(ValueError):
            TrainingHyperparams(learning_rate=0.0)


class TestTrainer:
    """Test Trainer.train_local_epochs."""

    def test_training_reduces_loss(self, small_model, classification_data):
        """Test noise-free training fits separable data."""
        features, labels = classification_data
        before = loss(forward(small_model, features), labels)
        trainer = make_trainer(local_epochs=20, batch_size=8)

        result = trainer.train_local_epochs(small_model, features, labels)

        assert not result.skipped
        assert result.epochs == 20
        assert result.batches == 20 * 5
        assert loss(forward(small_model, features), labels) < before

    def test_update_is_parameter_delta(self, small_model, classification_data):
        """Test the update equals trained minus initial parameters."""
        features, labels = classification_data
        initial = small_model.parameters.copy()

        result = make_trainer(noise_multiplier=1.1).train_local_epochs(
            small_model, features, labels
        )

        expected = small_model.parameters.combine(initial, np.subtract)
        assert result.update.allclose(expected)
        assert result.update.matches(small_model.topology)

    def test_metrics(self, small_model, classification_data):
        """Test reported metrics."""
        features, labels = classification_data

        result = make_trainer(local_epochs=2).train_local_epochs(small_model, features, labels)

        assert result.metrics["num_samples"] == 40
        assert result.metrics["num_epochs"] == 2
        assert result.metrics["loss"] == pytest.approx(result.loss)

    def test_skips_small_datasets(self, small_model, classification_data):
        """Test fewer than min_samples leaves the model untouched."""
        features, labels = classification_data
        before = small_model.parameters.copy()

        result = make_trainer().train_local_epochs(small_model, features[:9], labels[:9])

        assert result.skipped
        assert result.update is None
        assert small_model.parameters.allclose(before, rtol=0, atol=0)
        assert "skipped" in result.summary()

    def test_wrong_feature_width(self, small_model):
        """Test feature width mismatch is a shape error."""
        with pytest.raises(ShapeError):
            make_trainer().train_local_epochs(small_model, np.ones((20, 5)), np.ones((20, 2)))

    def test_label_count_mismatch(self, small_model):
        """Test feature and label counts must agree."""
        with pytest.raises(ShapeError):
            make_trainer().train_local_epochs(small_model, np.ones((20, 4)), np.ones((19, 2)))

    def test_exhausted_budget_refuses(self, small_model, classification_data):
        """Test no training happens once the budget is spent."""
        features, labels = classification_data
        trainer = make_trainer(epsilon_total=0.1, max_rounds=1)
        trainer.accountant.account_round()
        before = small_model.parameters.copy()

        with pytest.raises(BudgetExhausted):
            trainer.train_local_epochs(small_model, features, labels)

        assert small_model.parameters.allclose(before, rtol=0, atol=0)

    def test_training_does_not_consume_budget(self, small_model, classification_data):
        """Test accounting is left to the round coordinator."""
        features, labels = classification_data
        trainer = make_trainer(local_epochs=1)

        trainer.train_local_epochs(small_model, features, labels)

        assert trainer.accountant.budget.epsilon_consumed == 0.0


class TestTrainingResult:
    """Test TrainingResult dataclass."""

    def test_summary(self):
        """Test summary generation."""
        result = TrainingResult(loss=0.5, epochs=3, batches=6, sample_count=64)

        summary = result.summary()
        assert "Epochs: 3" in summary
        assert "64" in summary
