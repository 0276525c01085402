"""Model topology descriptor and parameter trees.

This module provides:
- A fixed, versioned topology descriptor (ordered ``(in, out)`` pairs)
- Parameter trees holding per-layer weights and biases
- Deterministic flattening used by validation and aggregation
"""

from dataclasses import dataclass
from typing import Iterator, Sequence

import numpy as np

from sentinel_fl.exceptions import ShapeError

TOPOLOGY_VERSION = 1


@dataclass(frozen=True)
class LayerShape:
    """Dimensions of one dense layer."""

    in_dim: int
    out_dim: int

    @property
    def parameter_count(self) -> int:
        """Number of scalars held by the layer (weights + biases)."""
        return self.in_dim * self.out_dim + self.out_dim


@dataclass(frozen=True)
class Topology:
    """Immutable feed-forward topology shared by trainers and aggregators."""

    layers: tuple[LayerShape, ...]
    version: int = TOPOLOGY_VERSION

    def __post_init__(self) -> None:
        """Validate that the layers form a chain of positive dimensions."""
        if not self.layers:
            msg = "Topology must contain at least one layer"
            raise ShapeError(msg)

        for index, layer in enumerate(self.layers):
            if layer.in_dim <= 0 or layer.out_dim <= 0:
                msg = f"Layer {index} has non-positive dimensions {layer}"
                raise ShapeError(msg)

        for index in range(len(self.layers) - 1):
            if self.layers[index].out_dim != self.layers[index + 1].in_dim:
                msg = (
                    f"Layer {index} output ({self.layers[index].out_dim}) does not "
                    f"match layer {index + 1} input ({self.layers[index + 1].in_dim})"
                )
                raise ShapeError(msg)

    @classmethod
    def from_pairs(
        cls, pairs: Sequence[Sequence[int]], version: int = TOPOLOGY_VERSION
    ) -> "Topology":
        """Build a topology from ``[[in, out], ...]`` pairs.

        Args:
            pairs: Ordered layer dimensions
            version: Descriptor version

        Returns:
            Validated topology
        """
        layers = []
        for pair in pairs:
            if len(pair) != 2:
                msg = f"Layer descriptor must be an (in, out) pair, got {pair!r}"
                raise ShapeError(msg)
            layers.append(LayerShape(int(pair[0]), int(pair[1])))
        return cls(layers=tuple(layers), version=version)

    def to_pairs(self) -> list[list[int]]:
        """Serialize as ``[[in, out], ...]``."""
        return [[layer.in_dim, layer.out_dim] for layer in self.layers]

    @property
    def layer_count(self) -> int:
        return len(self.layers)

    @property
    def input_size(self) -> int:
        return self.layers[0].in_dim

    @property
    def output_size(self) -> int:
        return self.layers[-1].out_dim

    @property
    def parameter_count(self) -> int:
        """Total weight and bias count across all layers."""
        return sum(layer.parameter_count for layer in self.layers)


class ParameterTree:
    """Per-layer ``(weights[in][out], biases[out])`` arrays.

    Used both for model parameters and for gradients/updates, so that a
    gradient always has exactly the shape of the model it applies to.
    """

    def __init__(self, layers: list[tuple[np.ndarray, np.ndarray]]) -> None:
        """Initialize from a list of (weights, biases) pairs.

        Args:
            layers: Ordered layer arrays; weights must be 2-D, biases 1-D
        """
        self.layers = [
            (np.asarray(weights, dtype=np.float64), np.asarray(biases, dtype=np.float64))
            for weights, biases in layers
        ]
        for index, (weights, biases) in enumerate(self.layers):
            if weights.ndim != 2 or biases.ndim != 1:
                msg = f"Layer {index} must have 2-D weights and 1-D biases"
                raise ShapeError(msg)
            if weights.shape[1] != biases.shape[0]:
                msg = (
                    f"Layer {index} weights have {weights.shape[1]} outputs but "
                    f"{biases.shape[0]} biases"
                )
                raise ShapeError(msg)

    @classmethod
    def zeros(cls, topology: Topology) -> "ParameterTree":
        """Allocate a zeroed tree directly from a topology."""
        return cls(
            [
                (np.zeros((layer.in_dim, layer.out_dim)), np.zeros(layer.out_dim))
                for layer in topology.layers
            ]
        )

    @classmethod
    def unflatten(cls, vector: np.ndarray, topology: Topology) -> "ParameterTree":
        """Rebuild a tree from a flat vector produced by :meth:`flatten`.

        Args:
            vector: 1-D array of length ``topology.parameter_count``
            topology: Target topology

        Returns:
            Parameter tree in topology order
        """
        vector = np.asarray(vector, dtype=np.float64)
        if vector.ndim != 1 or vector.size != topology.parameter_count:
            msg = (
                f"Flat vector of size {vector.size} does not match topology "
                f"parameter count {topology.parameter_count}"
            )
            raise ShapeError(msg)

        layers = []
        offset = 0
        for layer in topology.layers:
            n_weights = layer.in_dim * layer.out_dim
            weights = vector[offset : offset + n_weights].reshape(
                layer.in_dim, layer.out_dim
            )
            offset += n_weights
            biases = vector[offset : offset + layer.out_dim]
            offset += layer.out_dim
            layers.append((weights.copy(), biases.copy()))
        return cls(layers)

    def __iter__(self) -> Iterator[tuple[np.ndarray, np.ndarray]]:
        return iter(self.layers)

    def __len__(self) -> int:
        return len(self.layers)

    def shapes(self) -> list[tuple[int, int]]:
        """Per-layer ``(in, out)`` dimensions."""
        return [weights.shape for weights, _ in self.layers]

    def matches(self, topology: Topology) -> bool:
        """Check exact layer-count and per-layer dimension match."""
        if len(self.layers) != topology.layer_count:
            return False
        for (weights, biases), layer in zip(self.layers, topology.layers):
            if weights.shape != (layer.in_dim, layer.out_dim):
                return False
            if biases.shape != (layer.out_dim,):
                return False
        return True

    def flatten(self) -> np.ndarray:
        """Flatten to one vector: layers in order, weights row-major then biases."""
        if not self.layers:
            return np.zeros(0)
        parts = []
        for weights, biases in self.layers:
            parts.append(weights.ravel(order="C"))
            parts.append(biases)
        return np.concatenate(parts)

    def l2_norm(self) -> float:
        """Global L2 norm across every scalar in the tree."""
        return float(np.sqrt(sum(np.sum(w * w) + np.sum(b * b) for w, b in self.layers)))

    def copy(self) -> "ParameterTree":
        return ParameterTree([(w.copy(), b.copy()) for w, b in self.layers])

    def scale(self, factor: float) -> "ParameterTree":
        """Return a new tree with every parameter multiplied by ``factor``."""
        return ParameterTree([(w * factor, b * factor) for w, b in self.layers])

    def fill_(self, value: float = 0.0) -> "ParameterTree":
        """Overwrite every parameter in place, keeping the allocation."""
        for weights, biases in self.layers:
            weights.fill(value)
            biases.fill(value)
        return self

    def map(self, fn) -> "ParameterTree":
        """Apply ``fn`` to every weight and bias array."""
        return ParameterTree([(fn(w), fn(b)) for w, b in self.layers])

    def combine(self, other: "ParameterTree", fn) -> "ParameterTree":
        """Combine two same-shaped trees array by array with ``fn(a, b)``."""
        if self.shapes() != other.shapes():
            msg = f"Cannot combine trees of shapes {self.shapes()} and {other.shapes()}"
            raise ShapeError(msg)
        return ParameterTree(
            [
                (fn(w_a, w_b), fn(b_a, b_b))
                for (w_a, b_a), (w_b, b_b) in zip(self.layers, other.layers)
            ]
        )

    def allclose(self, other: "ParameterTree", **kwargs) -> bool:
        """Elementwise closeness check against another tree."""
        if self.shapes() != other.shapes():
            return False
        return bool(np.allclose(self.flatten(), other.flatten(), **kwargs))
