"""Tests for gradient updates and the wire format."""

import json

import numpy as np
import pytest

from sentinel_fl.exceptions import ShapeError
from sentinel_fl.updates import GradientUpdate


class TestGradientUpdate:
    """Test GradientUpdate dataclass."""

    def test_flatten(self, make_update, small_topology):
        """Test flattening follows topology order."""
        vector = np.arange(small_topology.parameter_count, dtype=float)

        update = make_update("node-a", vector)

        np.testing.assert_array_equal(update.flatten(), vector)

    def test_summary(self, make_update, small_topology):
        """Test summary generation."""
        update = make_update("node-a", np.zeros(small_topology.parameter_count), round_number=4)

        summary = update.summary()
        assert "node-a" in summary
        assert "Round: 4" in summary


class TestWireFormat:
    """Test JSON serialization."""

    def test_camel_case_fields(self, make_update, small_topology):
        """Test the wire object uses camelCase keys."""
        update = make_update("node-a", np.ones(small_topology.parameter_count), sample_count=64)

        payload = json.loads(update.to_json())

        assert set(payload) == {"participantId", "round", "layers", "sampleCount", "timestamp"}
        assert payload["participantId"] == "node-a"
        assert payload["sampleCount"] == 64
        assert len(payload["layers"]) == 2
        assert payload["layers"][0]["weights"] == [[1.0] * 3] * 4
        assert payload["layers"][1]["biases"] == [1.0, 1.0]

    def test_parse_preserves_values(self, make_update, small_topology, rng):
        """Test parsing a serialized update restores every field."""
        update = make_update("node-b", rng.normal(size=small_topology.parameter_count), round_number=3)

        parsed = GradientUpdate.from_json(update.to_json())

        assert parsed.participant_id == "node-b"
        assert parsed.round == 3
        assert parsed.timestamp == update.timestamp
        assert parsed.gradients.allclose(update.gradients, rtol=0, atol=0)

    def test_parse_hand_written_payload(self):
        """Test parsing a payload produced by another implementation."""
        payload = json.dumps(
            {
                "participantId": "edge-7",
                "round": 1,
                "layers": [{"weights": [[0.5], [0.25]], "biases": [0.1]}],
                "sampleCount": 12,
                "timestamp": 1700000000000,
            }
        )

        update = GradientUpdate.from_json(payload)

        assert update.gradients.shapes() == [(2, 1)]
        assert update.sample_count == 12

    def test_ragged_rows_rejected(self):
        """Test ragged weight matrices are a shape error."""
        payload = json.dumps(
            {
                "participantId": "edge-7",
                "round": 1,
                "layers": [{"weights": [[0.5, 1.0], [0.25]], "biases": [0.1, 0.2]}],
                "sampleCount": 12,
                "timestamp": 0,
            }
        )

        with pytest.raises(ShapeError) as exc_info:
            GradientUpdate.from_json(payload)

        assert exc_info.value.participant_id == "edge-7"

    def test_bias_mismatch_rejected(self):
        """Test bias length must match the weight columns."""
        payload = json.dumps(
            {
                "participantId": "edge-7",
                "round": 1,
                "layers": [{"weights": [[0.5, 1.0]], "biases": [0.1]}],
                "sampleCount": 12,
                "timestamp": 0,
            }
        )

        with pytest.raises(ShapeError):
            GradientUpdate.from_json(payload)

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            json.dumps({"participantId": "x", "round": 0, "layers": [], "sampleCount": 1, "timestamp": 0}),
            json.dumps({"participantId": "x", "round": -1, "layers": [{"weights": [[1.0]], "biases": [1.0]}], "sampleCount": 1, "timestamp": 0}),
            json.dumps({"round": 0, "layers": [{"weights": [[1.0]], "biases": [1.0]}], "sampleCount": 1, "timestamp": 0}),
        ],
    )
    def test_malformed_payloads(self, payload):
        """Test malformed payloads are shape errors."""
        with pytest.raises(ShapeError):
            GradientUpdate.from_json(payload)
