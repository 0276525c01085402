"""Adapters between the external training-data source and the model.

The data source supplies numeric feature vectors and labels from a finite
set. This module fits them to the model's input size, one-hot encodes the
labels and keeps a bounded, precision-reduced buffer of recent examples.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
import structlog

from sentinel_fl.privacy import NoiseSource, make_noise_source

logger = structlog.get_logger(__name__)

DEFAULT_LABELS = (
    "MINIMAL",
    "LOW",
    "MEDIUM",
    "HIGH",
    "CRITICAL",
    "keystroke_anomaly",
    "touch_anomaly",
    "network_anomaly",
    "system_anomaly",
    "process_anomaly",
    "unknown",
    "normal",
)
DEFAULT_FALLBACK_LABEL = "normal"


@dataclass
class TrainingExample:
    """One labelled sample from the data source."""

    features: np.ndarray
    label: str
    timestamp: float = field(default_factory=time.time)
    sensitive: bool = True


def fit_features(features: Sequence[float], input_size: int) -> np.ndarray:
    """Pad with zeros or truncate a feature vector to ``input_size``.

    Args:
        features: Raw feature values
        input_size: Model input width

    Returns:
        Float64 vector of length ``input_size``
    """
    vector = np.asarray(features, dtype=np.float64).ravel()
    if vector.size >= input_size:
        return vector[:input_size].copy()
    return np.pad(vector, (0, input_size - vector.size))


class LabelEncoder:
    """Maps a finite label set to one-hot vectors."""

    def __init__(
        self,
        labels: Sequence[str] = DEFAULT_LABELS,
        fallback: Optional[str] = DEFAULT_FALLBACK_LABEL,
    ) -> None:
        """Initialize encoder.

        Args:
            labels: Ordered label set; index is the class position
            fallback: Label used for values outside the set (None to reject)
        """
        if len(set(labels)) != len(labels):
            msg = "Label set contains duplicates"
            raise ValueError(msg)
        if fallback is not None and fallback not in labels:
            msg = f"Fallback label {fallback!r} is not in the label set"
            raise ValueError(msg)
        self.labels = tuple(labels)
        self.fallback = fallback
        self._index = {label: i for i, label in enumerate(self.labels)}

    @property
    def num_classes(self) -> int:
        return len(self.labels)

    def index(self, label: str) -> int:
        if label in self._index:
            return self._index[label]
        if self.fallback is None:
            msg = f"Unknown label {label!r}"
            raise ValueError(msg)
        return self._index[self.fallback]

    def encode(self, labels: Sequence[str]) -> np.ndarray:
        """One-hot encode a sequence of labels, shape (n, num_classes)."""
        encoded = np.zeros((len(labels), self.num_classes))
        for row, label in enumerate(labels):
            encoded[row, self.index(label)] = 1.0
        return encoded

    def decode(self, probabilities: np.ndarray) -> list[str]:
        """Map probability rows back to their argmax label."""
        return [self.labels[i] for i in np.argmax(np.asarray(probabilities), axis=1)]


def encoder_for(num_classes: int) -> LabelEncoder:
    """The default label set for a twelve-class output, ``class_<i>`` otherwise."""
    if num_classes == len(DEFAULT_LABELS):
        return LabelEncoder()
    return LabelEncoder([f"class_{i}" for i in range(num_classes)], fallback=None)


class TrainingBuffer:
    """Bounded buffer of recent training examples.

    Values are rounded to ``precision`` decimals on entry, and examples added
    as sensitive additionally get Gaussian noise of scale ``noise_scale``.
    Once ``capacity`` is exceeded, only the most recent ``retain`` examples
    are kept.
    """

    def __init__(
        self,
        capacity: int = 1000,
        retain: int = 800,
        precision: int = 3,
        noise_source: Optional[NoiseSource] = None,
        noise_scale: float = 0.0,
    ) -> None:
        """Initialize buffer.

        Args:
            capacity: Size at which the buffer is trimmed
            retain: Number of recent examples kept after trimming
            precision: Decimals kept for each feature value
            noise_source: Generator for input perturbation (OS entropy when omitted)
            noise_scale: Standard deviation of the noise on sensitive examples
        """
        if not 0 < retain <= capacity:
            msg = f"retain ({retain}) must be in (0, capacity={capacity}]"
            raise ValueError(msg)
        if noise_scale < 0:
            msg = f"noise_scale must be non-negative, got {noise_scale}"
            raise ValueError(msg)
        self.capacity = capacity
        self.retain = retain
        self.precision = precision
        self.noise_source = noise_source if noise_source is not None else make_noise_source()
        self.noise_scale = noise_scale
        self._examples: list[TrainingExample] = []

    def __len__(self) -> int:
        return len(self._examples)

    def add(self, features: Sequence[float], label: str, sensitive: bool = True) -> None:
        """Minimize and store one example.

        Args:
            features: Raw feature values
            label: Class label
            sensitive: Perturb the minimized features before storing them
        """
        minimized = np.round(np.asarray(features, dtype=np.float64), self.precision)
        if sensitive and self.noise_scale > 0:
            minimized = minimized + self.noise_source.normal(self.noise_scale, minimized.shape)
        self._examples.append(
            TrainingExample(features=minimized, label=label, sensitive=sensitive)
        )

        if len(self._examples) > self.capacity:
            dropped = len(self._examples) - self.retain
            self._examples = self._examples[-self.retain :]
            logger.debug("training_buffer_trimmed", dropped=dropped, kept=self.retain)

    def clear(self) -> None:
        self._examples.clear()

    def to_arrays(
        self, input_size: int, encoder: LabelEncoder
    ) -> tuple[np.ndarray, np.ndarray]:
        """Stack buffered examples into model-ready arrays.

        Args:
            input_size: Model input width
            encoder: Label encoder matching the model output size

        Returns:
            Tuple of (features (n, input_size), one-hot labels (n, num_classes))
        """
        if not self._examples:
            return np.zeros((0, input_size)), np.zeros((0, encoder.num_classes))
        features = np.stack([fit_features(e.features, input_size) for e in self._examples])
        labels = encoder.encode([e.label for e in self._examples])
        return features, labels
