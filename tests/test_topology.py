"""Tests for topology descriptors and parameter trees."""

import numpy as np
import pytest

from sentinel_fl.exceptions import ShapeError
from sentinel_fl.topology import LayerShape, ParameterTree, Topology


class TestTopology:
    """Test Topology descriptor."""

    def test_from_pairs(self):
        """Test building from (in, out) pairs."""
        topology = Topology.from_pairs([[256, 512], [512, 256], [256, 128], [128, 12]])

        assert topology.layer_count == 4
        assert topology.input_size == 256
        assert topology.output_size == 12
        assert topology.to_pairs() == [[256, 512], [512, 256], [256, 128], [128, 12]]

    def test_parameter_count(self, small_topology):
        """Test weight plus bias counting."""
        assert small_topology.parameter_count == 4 * 3 + 3 + 3 * 2 + 2

    def test_layer_shape_count(self):
        """Test per-layer parameter count."""
        assert LayerShape(5, 2).parameter_count == 12

    def test_rejects_broken_chain(self):
        """Test consecutive layers must connect."""
        with pytest.raises(ShapeError, match="does not match"):
            Topology.from_pairs([[4, 3], [2, 2]])

    def test_rejects_empty(self):
        """Test at least one layer is required."""
        with pytest.raises(ShapeError):
            Topology.from_pairs([])

    def test_rejects_non_positive(self):
        """Test dimensions must be positive."""
        with pytest.raises(ShapeError):
            Topology.from_pairs([[4, 0]])

    def test_rejects_malformed_pair(self):
        """Test descriptors must be pairs."""
        with pytest.raises(ShapeError):
            Topology.from_pairs([[4, 3, 2]])

    def test_shape_error_is_value_error(self):
        """Test ShapeError can be caught as ValueError."""
        with pytest.raises(ValueError):
            Topology.from_pairs([[4, 3], [5, 1]])


class TestParameterTree:
    """Test ParameterTree operations."""

    def test_zeros_matches_topology(self, small_topology):
        """Test zero allocation from a topology."""
        tree = ParameterTree.zeros(small_topology)

        assert tree.matches(small_topology)
        assert tree.shapes() == [(4, 3), (3, 2)]
        assert tree.l2_norm() == 0.0

    def test_flatten_order(self):
        """Test weights row-major then biases, layer by layer."""
        tree = ParameterTree(
            [
                (np.array([[1.0, 2.0], [3.0, 4.0]]), np.array([5.0, 6.0])),
                (np.array([[7.0], [8.0]]), np.array([9.0])),
            ]
        )

        np.testing.assert_array_equal(tree.flatten(), np.arange(1.0, 10.0))

    def test_unflatten_inverts_flatten(self, small_topology, rng):
        """Test unflatten rebuilds the same tree."""
        vector = rng.normal(size=small_topology.parameter_count)

        tree = ParameterTree.unflatten(vector, small_topology)

        np.testing.assert_array_equal(tree.flatten(), vector)

    def test_unflatten_wrong_size(self, small_topology):
        """Test size mismatch is a shape error."""
        with pytest.raises(ShapeError):
            ParameterTree.unflatten(np.zeros(5), small_topology)

    def test_matches_detects_mismatch(self, small_topology):
        """Test per-layer dimension checks."""
        other = Topology.from_pairs([[4, 3], [3, 3]])
        tree = ParameterTree.zeros(other)

        assert not tree.matches(small_topology)

    def test_rejects_bias_mismatch(self):
        """Test weights and biases must agree on output size."""
        with pytest.raises(ShapeError):
            ParameterTree([(np.zeros((2, 3)), np.zeros(2))])

    def test_l2_norm(self):
        """Test global norm across all layers."""
        tree = ParameterTree([(np.array([[3.0]]), np.array([4.0]))])

        assert tree.l2_norm() == pytest.approx(5.0)

    def test_scale_returns_new_tree(self, small_topology):
        """Test scale does not mutate the original."""
        tree = ParameterTree.zeros(small_topology).fill_(1.0)

        scaled = tree.scale(2.0)

        assert np.all(scaled.flatten() == 2.0)
        assert np.all(tree.flatten() == 1.0)

    def test_fill_in_place(self, small_topology):
        """Test fill_ keeps the allocation."""
        tree = ParameterTree.zeros(small_topology)
        weights = tree.layers[0][0]

        tree.fill_(3.0)

        assert weights[0, 0] == 3.0

    def test_combine(self, small_topology):
        """Test elementwise combination."""
        a = ParameterTree.zeros(small_topology).fill_(1.0)
        b = ParameterTree.zeros(small_topology).fill_(2.0)

        total = a.combine(b, np.add)

        assert np.all(total.flatten() == 3.0)

    def test_combine_shape_mismatch(self, small_topology):
        """Test combining different shapes fails."""
        a = ParameterTree.zeros(small_topology)
        b = ParameterTree.zeros(Topology.from_pairs([[4, 2]]))

        with pytest.raises(ShapeError):
            a.combine(b, np.add)

    def test_copy_is_independent(self, small_topology):
        """Test copies share no arrays."""
        tree = ParameterTree.zeros(small_topology)
        clone = tree.copy()

        clone.fill_(1.0)

        assert tree.l2_norm() == 0.0
        assert tree.allclose(ParameterTree.zeros(small_topology))
        assert not tree.allclose(clone)
