"""Gradient updates and their wire format.

A gradient update has exactly the shape of the model plus provenance
fields. On the wire it is a JSON object::

    {participantId, round, layers: [{weights, biases}], sampleCount, timestamp}
"""

import time
from dataclasses import dataclass, field

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sentinel_fl.exceptions import ShapeError
from sentinel_fl.topology import ParameterTree


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class GradientUpdate:
    """One participant's update for one round."""

    participant_id: str
    round: int
    gradients: ParameterTree
    sample_count: int
    timestamp: int = field(default_factory=now_millis)

    def flatten(self) -> np.ndarray:
        return self.gradients.flatten()

    def summary(self) -> str:
        """Generate summary of the update."""
        return (
            f"Gradient Update ({self.participant_id}):\n"
            f"  Round: {self.round}\n"
            f"  Samples: {self.sample_count}\n"
            f"  Layers: {len(self.gradients)}"
        )

    def to_message(self) -> "GradientUpdateMessage":
        return GradientUpdateMessage(
            participant_id=self.participant_id,
            round=self.round,
            layers=[
                LayerPayload(weights=weights.tolist(), biases=biases.tolist())
                for weights, biases in self.gradients
            ],
            sample_count=self.sample_count,
            timestamp=self.timestamp,
        )

    def to_json(self) -> str:
        """Serialize to the camelCase wire format."""
        return self.to_message().model_dump_json(by_alias=True)

    @classmethod
    def from_message(cls, message: "GradientUpdateMessage") -> "GradientUpdate":
        layers = []
        for index, layer in enumerate(message.layers):
            row_lengths = {len(row) for row in layer.weights}
            if len(row_lengths) > 1:
                msg = f"Layer {index} has ragged weight rows"
                raise ShapeError(msg, participant_id=message.participant_id)
            weights = np.asarray(layer.weights, dtype=np.float64)
            if weights.ndim != 2:
                msg = f"Layer {index} weights are not a matrix"
                raise ShapeError(msg, participant_id=message.participant_id)
            layers.append((weights, np.asarray(layer.biases, dtype=np.float64)))
        try:
            gradients = ParameterTree(layers)
        except ShapeError as e:
            raise ShapeError(str(e), participant_id=message.participant_id) from e
        return cls(
            participant_id=message.participant_id,
            round=message.round,
            gradients=gradients,
            sample_count=message.sample_count,
            timestamp=message.timestamp,
        )

    @classmethod
    def from_json(cls, payload: str) -> "GradientUpdate":
        """Parse the wire format.

        Raises:
            ShapeError: If the payload is malformed or structurally inconsistent
        """
        try:
            message = GradientUpdateMessage.model_validate_json(payload)
        except ValidationError as e:
            msg = f"Malformed gradient update: {e.error_count()} validation error(s)"
            raise ShapeError(msg) from e
        return cls.from_message(message)


class LayerPayload(BaseModel):
    """One layer of a serialized update."""

    weights: list[list[float]]
    biases: list[float]


class GradientUpdateMessage(BaseModel):
    """Wire representation of a :class:`GradientUpdate`."""

    model_config = ConfigDict(populate_by_name=True)

    participant_id: str = Field(..., alias="participantId", min_length=1)
    round: int = Field(..., ge=0)
    layers: list[LayerPayload]
    sample_count: int = Field(..., alias="sampleCount", ge=0)
    timestamp: int

    @field_validator("layers")
    @classmethod
    def non_empty_layers(cls, v: list[LayerPayload]) -> list[LayerPayload]:
        """Reject updates without any layers."""
        if not v:
            msg = "update must contain at least one layer"
            raise ValueError(msg)
        return v
