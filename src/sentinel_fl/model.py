"""Local feed-forward model.

This module provides:
- Xavier/Glorot initialization from a topology
- Forward pass (ReLU hidden layers, softmax output)
- Categorical cross-entropy loss
- Backpropagation producing gradients shaped like the model
"""

from dataclasses import dataclass
from typing import Any

import numpy as np
import structlog

from sentinel_fl.exceptions import ShapeError
from sentinel_fl.topology import ParameterTree, Topology

logger = structlog.get_logger(__name__)

LOG_EPSILON = 1e-15


@dataclass
class LocalModel:
    """A node's model: fixed topology plus its current parameters.

    The topology never changes after creation. Parameters are replaced
    wholesale by the merge step, never patched layer by layer.
    """

    topology: Topology
    parameters: ParameterTree

    def __post_init__(self) -> None:
        if not self.parameters.matches(self.topology):
            msg = (
                f"Parameters {self.parameters.shapes()} do not match topology "
                f"{self.topology.to_pairs()}"
            )
            raise ShapeError(msg)

    def replace_parameters(self, parameters: ParameterTree) -> None:
        """Swap in a complete new parameter tree."""
        if not parameters.matches(self.topology):
            msg = (
                f"Replacement parameters {parameters.shapes()} do not match "
                f"topology {self.topology.to_pairs()}"
            )
            raise ShapeError(msg)
        self.parameters = parameters

    def copy(self) -> "LocalModel":
        return LocalModel(topology=self.topology, parameters=self.parameters.copy())

    def snapshot(self) -> dict[str, Any]:
        """Serializable snapshot of topology and parameters."""
        return {
            "topology": self.topology.to_pairs(),
            "topology_version": self.topology.version,
            "layers": [
                {"weights": weights.tolist(), "biases": biases.tolist()}
                for weights, biases in self.parameters
            ],
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> "LocalModel":
        """Restore a model from :meth:`snapshot` output."""
        topology = Topology.from_pairs(
            snapshot["topology"], version=snapshot.get("topology_version", 1)
        )
        parameters = ParameterTree(
            [(layer["weights"], layer["biases"]) for layer in snapshot["layers"]]
        )
        return cls(topology=topology, parameters=parameters)


def initialize_model(topology: Topology, rng: np.random.Generator) -> LocalModel:
    """Create a model with Xavier/Glorot uniform weights and zero biases.

    Args:
        topology: Layer dimensions
        rng: Injected random generator

    Returns:
        Freshly initialized model
    """
    layers = []
    for layer in topology.layers:
        limit = np.sqrt(6.0 / (layer.in_dim + layer.out_dim))
        weights = rng.uniform(-limit, limit, size=(layer.in_dim, layer.out_dim))
        biases = np.zeros(layer.out_dim)
        layers.append((weights, biases))

    logger.debug(
        "model_initialized",
        layers=topology.layer_count,
        parameters=topology.parameter_count,
    )
    return LocalModel(topology=topology, parameters=ParameterTree(layers))


def _check_batch(model: LocalModel, batch: np.ndarray) -> np.ndarray:
    batch = np.asarray(batch, dtype=np.float64)
    if batch.ndim == 1:
        batch = batch.reshape(1, -1)
    if batch.ndim != 2 or batch.shape[1] != model.topology.input_size:
        msg = (
            f"Feature vectors of length {batch.shape[-1]} do not match input "
            f"layer size {model.topology.input_size}"
        )
        raise ShapeError(msg)
    return batch


def softmax(logits: np.ndarray) -> np.ndarray:
    """Row-wise softmax with max-shift for numerical stability."""
    shifted = logits - np.max(logits, axis=1, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=1, keepdims=True)


def forward_with_activations(
    model: LocalModel, batch: np.ndarray
) -> list[np.ndarray]:
    """Run the forward pass and keep every layer's activation.

    Args:
        model: Model to evaluate
        batch: Array of shape (n_samples, input_size)

    Returns:
        List whose first element is the input and last the output probabilities
    """
    activation = _check_batch(model, batch)
    activations = [activation]
    last = len(model.parameters) - 1

    for index, (weights, biases) in enumerate(model.parameters):
        z = activation @ weights + biases
        activation = softmax(z) if index == last else np.maximum(z, 0.0)
        activations.append(activation)

    return activations


def forward(model: LocalModel, batch: np.ndarray) -> np.ndarray:
    """Compute per-sample class probabilities.

    Args:
        model: Model to evaluate
        batch: Array of shape (n_samples, input_size)

    Returns:
        Array of shape (n_samples, output_size); each row sums to 1
    """
    return forward_with_activations(model, batch)[-1]


def loss(predictions: np.ndarray, labels: np.ndarray) -> float:
    """Average categorical cross-entropy.

    Args:
        predictions: Probabilities, shape (n_samples, n_classes)
        labels: One-hot labels of the same shape

    Returns:
        Mean of ``-sum(label * log(max(pred, 1e-15)))`` over samples
    """
    predictions = np.asarray(predictions, dtype=np.float64)
    labels = np.asarray(labels, dtype=np.float64)
    if predictions.shape != labels.shape:
        msg = f"Predictions {predictions.shape} and labels {labels.shape} differ"
        raise ShapeError(msg)
    if len(predictions) == 0:
        return 0.0
    per_sample = -np.sum(labels * np.log(np.maximum(predictions, LOG_EPSILON)), axis=1)
    return float(np.mean(per_sample))


def backward(
    model: LocalModel,
    labels: np.ndarray,
    activations: list[np.ndarray],
) -> ParameterTree:
    """Backpropagate softmax cross-entropy through the network.

    Args:
        model: Model the activations were produced by
        labels: One-hot labels, shape (n_samples, output_size)
        activations: Output of :func:`forward_with_activations`

    Returns:
        Batch-mean gradients with the same shape as the model
    """
    labels = np.asarray(labels, dtype=np.float64)
    predictions = activations[-1]
    if labels.shape != predictions.shape:
        msg = f"Labels {labels.shape} do not match predictions {predictions.shape}"
        raise ShapeError(msg)

    n_samples = predictions.shape[0]
    delta = (predictions - labels) / n_samples
    gradients: list[tuple[np.ndarray, np.ndarray]] = []

    for index in range(len(model.parameters) - 1, -1, -1):
        weights, _ = model.parameters.layers[index]
        layer_input = activations[index]
        gradients.append((layer_input.T @ delta, delta.sum(axis=0)))
        if index > 0:
            # ReLU derivative of the previous layer's output
            delta = (delta @ weights.T) * (layer_input > 0)

    gradients.reverse()
    return ParameterTree(gradients)


def apply_gradients(
    model: LocalModel, gradients: ParameterTree, learning_rate: float
) -> None:
    """Take one SGD step in place."""
    if not gradients.matches(model.topology):
        msg = "Gradient shape does not match model topology"
        raise ShapeError(msg)
    for (weights, biases), (grad_w, grad_b) in zip(model.parameters, gradients):
        weights -= learning_rate * grad_w
        biases -= learning_rate * grad_b


def accuracy(model: LocalModel, features: np.ndarray, labels: np.ndarray) -> float:
    """Fraction of samples whose argmax prediction matches the one-hot label."""
    features = np.asarray(features, dtype=np.float64)
    if len(features) == 0:
        return 0.0
    predictions = forward(model, features)
    return float(
        np.mean(np.argmax(predictions, axis=1) == np.argmax(np.asarray(labels), axis=1))
    )
