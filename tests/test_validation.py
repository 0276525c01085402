"""Tests for gradient validation."""

import numpy as np
import pytest
from structlog.testing import capture_logs

from sentinel_fl.topology import ParameterTree, Topology
from sentinel_fl.updates import GradientUpdate
from sentinel_fl.validation import (
    REASON_NON_FINITE,
    REASON_SHAPE,
    REASON_TOO_LARGE,
    REASON_TOO_SMALL,
    GradientValidator,
    has_non_finite,
    is_valid_shape,
    magnitude,
)


class TestChecks:
    """Test the individual checks."""

    def test_shape(self, make_update, small_topology):
        """Test exact shape matching."""
        update = make_update("a", np.zeros(small_topology.parameter_count))
        other = GradientUpdate(
            participant_id="b",
            round=0,
            gradients=ParameterTree.zeros(Topology.from_pairs([[4, 3], [3, 3]])),
            sample_count=1,
        )

        assert is_valid_shape(update, small_topology)
        assert not is_valid_shape(other, small_topology)

    def test_non_finite(self, make_update, small_topology):
        """Test NaN and infinity detection."""
        vector = np.zeros(small_topology.parameter_count)
        assert not has_non_finite(make_update("a", vector))

        vector[-1] = np.inf
        assert has_non_finite(make_update("a", vector))

    def test_magnitude(self, make_update, small_topology):
        """Test L2 norm over the flattened update."""
        vector = np.zeros(small_topology.parameter_count)
        vector[:2] = [3.0, 4.0]

        assert magnitude(make_update("a", vector)) == pytest.approx(5.0)


class TestGradientValidator:
    """Test GradientValidator class."""

    @pytest.fixture
    def validator(self, small_topology):
        """Validator with default bounds."""
        return GradientValidator(small_topology)

    def test_accepts_normal_update(self, validator, make_update, small_topology):
        """Test a reasonable update passes."""
        result = validator.validate(make_update("a", np.full(small_topology.parameter_count, 0.1)))

        assert result.valid
        assert result.reason is None

    @pytest.mark.parametrize(
        "value,reason",
        [(1e-6, REASON_TOO_SMALL), (50.0, REASON_TOO_LARGE), (np.nan, REASON_NON_FINITE)],
    )
    def test_rejections(self, validator, make_update, small_topology, value, reason):
        """Test magnitude and finiteness rejections."""
        result = validator.validate(make_update("a", np.full(small_topology.parameter_count, value)))

        assert not result.valid
        assert result.reason == reason

    def test_shape_checked_first(self, validator):
        """Test a misshapen non-finite update reports the shape."""
        tree = ParameterTree.zeros(Topology.from_pairs([[4, 2]])).fill_(np.nan)
        update = GradientUpdate(participant_id="a", round=0, gradients=tree, sample_count=1)

        assert validator.validate(update).reason == REASON_SHAPE

    def test_partition_logs_rejections(self, validator, make_update, small_topology):
        """Test rejections are logged with participant id and reason."""
        good = make_update("good", np.full(small_topology.parameter_count, 0.1), round_number=2)
        bad = make_update("bad", np.full(small_topology.parameter_count, 1e3), round_number=2)

        with capture_logs() as logs:
            accepted, rejected = validator.partition([good, bad])

        assert [u.participant_id for u in accepted] == ["good"]
        assert rejected == {"bad": REASON_TOO_LARGE}
        events = [log for log in logs if log["event"] == "update_rejected"]
        assert len(events) == 1
        assert events[0]["participant_id"] == "bad"
        assert events[0]["round"] == 2
        assert events[0]["reason"] == REASON_TOO_LARGE

    def test_invalid_window(self, small_topology):
        """Test the magnitude window must be non-empty."""
        with pytest.raises(ValueError):
            GradientValidator(small_topology, min_magnitude=1.0, max_magnitude=0.5)
