"""Local differentially-private training.

This module provides the node-side training loop:
- Per-epoch shuffling and batching of local data
- Forward, loss, backward, clip, noise and update per batch, in that order
- The resulting parameter delta, ready to package as an update
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
import structlog

from sentinel_fl.exceptions import ShapeError
from sentinel_fl.model import (
    LocalModel,
    apply_gradients,
    backward,
    forward_with_activations,
    loss,
)
from sentinel_fl.privacy import PrivacyAccountant
from sentinel_fl.topology import ParameterTree

logger = structlog.get_logger(__name__)


@dataclass
class TrainingHyperparams:
    """Local training hyperparameters."""

    local_epochs: int = 10
    batch_size: int = 32
    learning_rate: float = 0.001
    min_samples: int = 10

    def __post_init__(self) -> None:
        if self.local_epochs <= 0 or self.batch_size <= 0:
            msg = "local_epochs and batch_size must be positive"
            raise ValueError(msg)
        if self.learning_rate <= 0:
            msg = f"learning_rate must be positive, got {self.learning_rate}"
            raise ValueError(msg)


@dataclass
class TrainingResult:
    """Outcome of one call to :meth:`Trainer.train_local_epochs`."""

    loss: float
    epochs: int
    batches: int
    sample_count: int
    skipped: bool = False
    update: Optional[ParameterTree] = None
    metrics: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        """Generate summary of the training run."""
        if self.skipped:
            return f"Training skipped ({self.sample_count} samples)"
        return (
            f"Training Result:\n"
            f"  Epochs: {self.epochs}\n"
            f"  Batches: {self.batches}\n"
            f"  Samples: {self.sample_count}\n"
            f"  Loss: {self.loss:.4f}"
        )


class Trainer:
    """Drives local epochs over a node's private data.

    Training is single-threaded and strictly sequential: each batch is fully
    applied before the next starts, which the privacy accounting relies on.
    """

    def __init__(
        self,
        accountant: PrivacyAccountant,
        hyperparams: Optional[TrainingHyperparams] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        """Initialize trainer.

        Args:
            accountant: Privacy accountant used to clip and noise gradients
            hyperparams: Training hyperparameters
            rng: Generator used for shuffling
        """
        self.accountant = accountant
        self.hyperparams = hyperparams or TrainingHyperparams()
        self._rng = rng if rng is not None else np.random.default_rng()
        self.logger = logger.bind(component="Trainer")
        self.training_history: list[dict[str, Any]] = []

    def train_local_epochs(
        self,
        model: LocalModel,
        features: np.ndarray,
        labels: np.ndarray,
    ) -> TrainingResult:
        """Train ``model`` in place on local data.

        Args:
            model: Node model (mutated by SGD steps)
            features: Array of shape (n_samples, input_size)
            labels: One-hot labels of shape (n_samples, output_size)

        Returns:
            Training result holding the parameter delta

        Raises:
            ShapeError: If feature or label widths do not match the model
            BudgetExhausted: If the node has no privacy budget left
        """
        features = np.asarray(features, dtype=np.float64)
        labels = np.asarray(labels, dtype=np.float64)
        num_samples = len(features)

        if num_samples and (features.ndim != 2 or features.shape[1] != model.topology.input_size):
            msg = (
                f"Feature vectors of length {features.shape[-1]} do not match "
                f"input layer size {model.topology.input_size}"
            )
            raise ShapeError(msg)
        if len(labels) != num_samples:
            msg = f"Got {num_samples} feature rows but {len(labels)} labels"
            raise ShapeError(msg)

        if num_samples < self.hyperparams.min_samples:
            self.logger.info(
                "training_skipped",
                num_samples=num_samples,
                min_samples=self.hyperparams.min_samples,
            )
            return TrainingResult(
                loss=0.0, epochs=0, batches=0, sample_count=num_samples, skipped=True
            )

        self.accountant.ensure_available()

        self.logger.info(
            "starting_local_training",
            num_samples=num_samples,
            epochs=self.hyperparams.local_epochs,
        )

        initial = model.parameters.copy()
        batch_size = min(self.hyperparams.batch_size, num_samples)
        num_batches = 0
        epoch_loss = 0.0

        for epoch in range(self.hyperparams.local_epochs):
            indices = self._rng.permutation(num_samples)
            epoch_loss = 0.0
            epoch_batches = 0

            for start in range(0, num_samples, batch_size):
                batch_idx = indices[start : start + batch_size]
                batch_x = features[batch_idx]
                batch_y = labels[batch_idx]

                activations = forward_with_activations(model, batch_x)
                epoch_loss += loss(activations[-1], batch_y)
                gradients = backward(model, batch_y, activations)
                clipped = self.accountant.clip(gradients)
                noisy = self.accountant.add_noise(clipped)
                apply_gradients(model, noisy, self.hyperparams.learning_rate)

                epoch_batches += 1
                num_batches += 1

            epoch_loss /= max(epoch_batches, 1)
            self.logger.debug("epoch_complete", epoch=epoch + 1, loss=epoch_loss)

        update = model.parameters.combine(initial, np.subtract)
        metrics = {
            "loss": float(epoch_loss),
            "num_samples": num_samples,
            "num_epochs": self.hyperparams.local_epochs,
        }
        self.training_history.append(metrics)

        self.logger.info(
            "local_training_complete",
            loss=epoch_loss,
            num_batches=num_batches,
        )

        return TrainingResult(
            loss=float(epoch_loss),
            epochs=self.hyperparams.local_epochs,
            batches=num_batches,
            sample_count=num_samples,
            update=update,
            metrics=metrics,
        )
