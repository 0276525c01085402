"""Tests for the local feed-forward model."""

import numpy as np
import pytest

from sentinel_fl.exceptions import ShapeError
from sentinel_fl.model import (
    LocalModel,
    accuracy,
    apply_gradients,
    backward,
    forward,
    forward_with_activations,
    initialize_model,
    loss,
)
from sentinel_fl.topology import ParameterTree, Topology


class TestInitialization:
    """Test Xavier initialization."""

    def test_xavier_bounds(self, rng):
        """Test weights lie within the Glorot uniform limit and biases are zero."""
        topology = Topology.from_pairs([[256, 512], [512, 12]])

        model = initialize_model(topology, rng)

        for layer, (weights, biases) in zip(topology.layers, model.parameters):
            limit = np.sqrt(6.0 / (layer.in_dim + layer.out_dim))
            assert np.all(np.abs(weights) <= limit)
            assert np.all(biases == 0.0)

    def test_deterministic_with_seed(self, small_topology):
        """Test the same seed gives the same parameters."""
        a = initialize_model(small_topology, np.random.default_rng(7))
        b = initialize_model(small_topology, np.random.default_rng(7))

        assert a.parameters.allclose(b.parameters, rtol=0, atol=0)

    def test_mismatched_parameters_rejected(self, small_topology):
        """Test the model refuses parameters of another topology."""
        wrong = ParameterTree.zeros(Topology.from_pairs([[4, 2]]))

        with pytest.raises(ShapeError):
            LocalModel(topology=small_topology, parameters=wrong)


class TestForward:
    """Test the forward pass."""

    def test_output_is_distribution(self, small_model, rng):
        """Test each output row is a probability distribution."""
        batch = rng.normal(size=(5, 4))

        probabilities = forward(small_model, batch)

        assert probabilities.shape == (5, 2)
        np.testing.assert_allclose(probabilities.sum(axis=1), 1.0)
        assert np.all(probabilities >= 0)

    def test_single_vector(self, small_model):
        """Test a 1-D feature vector is treated as a batch of one."""
        assert forward(small_model, np.ones(4)).shape == (1, 2)

    def test_wrong_width(self, small_model):
        """Test feature length must match the input layer."""
        with pytest.raises(ShapeError):
            forward(small_model, np.ones((3, 5)))

    def test_activations_per_layer(self, small_model, rng):
        """Test activations include input and every layer output."""
        activations = forward_with_activations(small_model, rng.normal(size=(2, 4)))

        assert [a.shape for a in activations] == [(2, 4), (2, 3), (2, 2)]
        assert np.all(activations[1] >= 0)  # ReLU


class TestLoss:
    """Test categorical cross-entropy."""

    def test_perfect_prediction(self):
        """Test loss is near zero for confident correct predictions."""
        labels = np.array([[1.0, 0.0], [0.0, 1.0]])

        assert loss(labels, labels) == pytest.approx(0.0, abs=1e-12)

    def test_uniform_prediction(self):
        """Test loss equals log(k) for uniform predictions."""
        predictions = np.full((3, 4), 0.25)
        labels = np.eye(4)[[0, 1, 2]]

        assert loss(predictions, labels) == pytest.approx(np.log(4))

    def test_zero_probability_floored(self):
        """Test zero probabilities are clamped before the log."""
        value = loss(np.array([[0.0, 1.0]]), np.array([[1.0, 0.0]]))

        assert np.isfinite(value)
        assert value == pytest.approx(-np.log(1e-15))

    def test_shape_mismatch(self):
        """Test mismatched shapes fail."""
        with pytest.raises(ShapeError):
            loss(np.ones((2, 2)), np.ones((2, 3)))


class TestBackward:
    """Test backpropagation."""

    def test_gradient_matches_model_shape(self, small_model, rng):
        """Test gradients have exactly the model's shape."""
        batch = rng.normal(size=(6, 4))
        labels = np.eye(2)[rng.integers(0, 2, size=6)]

        gradients = backward(small_model, labels, forward_with_activations(small_model, batch))

        assert gradients.matches(small_model.topology)

    def test_matches_finite_differences(self, small_topology, rng):
        """Test analytic gradients against central differences."""
        model = initialize_model(small_topology, rng)
        for _, biases in model.parameters:
            biases += 0.1  # keep ReLUs away from the kink
        batch = rng.normal(size=(3, 4))
        labels = np.eye(2)[[0, 1, 0]]

        analytic = backward(model, labels, forward_with_activations(model, batch)).flatten()

        base = model.parameters.flatten()
        numeric = np.zeros_like(base)
        h = 1e-6
        for i in range(base.size):
            for sign in (1, -1):
                shifted = base.copy()
                shifted[i] += sign * h
                model.replace_parameters(ParameterTree.unflatten(shifted, small_topology))
                numeric[i] += sign * loss(forward(model, batch), labels) / (2 * h)

        np.testing.assert_allclose(analytic, numeric, atol=1e-5)

    def test_sgd_step_reduces_loss(self, small_model, classification_data):
        """Test a plain gradient step lowers the loss."""
        features, labels = classification_data
        before = loss(forward(small_model, features), labels)

        gradients = backward(small_model, labels, forward_with_activations(small_model, features))
        apply_gradients(small_model, gradients, learning_rate=0.1)

        assert loss(forward(small_model, features), labels) < before


class TestSnapshot:
    """Test snapshot serialization and accuracy helper."""

    def test_snapshot_restores(self, small_model):
        """Test a snapshot restores identical parameters."""
        restored = LocalModel.from_snapshot(small_model.snapshot())

        assert restored.topology == small_model.topology
        assert restored.parameters.allclose(small_model.parameters, rtol=0, atol=0)

    def test_accuracy_empty(self, small_model):
        """Test accuracy of an empty set is zero."""
        assert accuracy(small_model, np.zeros((0, 4)), np.zeros((0, 2))) == 0.0
