"""Structural and numeric sanity checks on gradient updates.

An update failing any check is excluded from the round and logged with its
participant id and the reason. Updates are never coerced into a valid shape.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import structlog

from sentinel_fl.topology import Topology
from sentinel_fl.updates import GradientUpdate

logger = structlog.get_logger(__name__)

REASON_SHAPE = "shape_mismatch"
REASON_NON_FINITE = "non_finite"
REASON_TOO_SMALL = "magnitude_too_small"
REASON_TOO_LARGE = "magnitude_too_large"


def is_valid_shape(update: GradientUpdate, topology: Topology) -> bool:
    """Exact layer-count and per-layer dimension match."""
    return update.gradients.matches(topology)


def has_non_finite(update: GradientUpdate) -> bool:
    """True if any scalar is NaN or infinite."""
    return any(
        not (np.all(np.isfinite(weights)) and np.all(np.isfinite(biases)))
        for weights, biases in update.gradients
    )


def magnitude(update: GradientUpdate) -> float:
    """L2 norm of the flattened update."""
    return update.gradients.l2_norm()


@dataclass
class ValidationResult:
    """Outcome of validating a single update."""

    participant_id: str
    valid: bool
    reason: Optional[str] = None
    magnitude: Optional[float] = None


class GradientValidator:
    """Validates updates against a topology and magnitude bounds.

    The magnitude window guards against near-zero free-rider updates and
    against exploding updates.
    """

    def __init__(
        self,
        topology: Topology,
        min_magnitude: float = 0.001,
        max_magnitude: float = 100.0,
    ) -> None:
        """Initialize validator.

        Args:
            topology: Expected model topology
            min_magnitude: Smallest accepted L2 norm
            max_magnitude: Largest accepted L2 norm
        """
        if not 0 <= min_magnitude < max_magnitude:
            msg = f"Invalid magnitude window [{min_magnitude}, {max_magnitude}]"
            raise ValueError(msg)
        self.topology = topology
        self.min_magnitude = min_magnitude
        self.max_magnitude = max_magnitude
        self.logger = logger.bind(component="GradientValidator")

    def validate(self, update: GradientUpdate) -> ValidationResult:
        """Run shape, finiteness and magnitude checks in that order."""
        pid = update.participant_id

        if not is_valid_shape(update, self.topology):
            return ValidationResult(pid, valid=False, reason=REASON_SHAPE)

        if has_non_finite(update):
            return ValidationResult(pid, valid=False, reason=REASON_NON_FINITE)

        norm = magnitude(update)
        if norm < self.min_magnitude:
            return ValidationResult(pid, valid=False, reason=REASON_TOO_SMALL, magnitude=norm)
        if norm > self.max_magnitude:
            return ValidationResult(pid, valid=False, reason=REASON_TOO_LARGE, magnitude=norm)

        return ValidationResult(pid, valid=True, magnitude=norm)

    def partition(
        self, updates: list[GradientUpdate]
    ) -> tuple[list[GradientUpdate], dict[str, str]]:
        """Split updates into accepted ones and rejections.

        Args:
            updates: Submitted updates

        Returns:
            Tuple of (accepted updates, {participant_id: reason})
        """
        accepted: list[GradientUpdate] = []
        rejected: dict[str, str] = {}

        for update in updates:
            result = self.validate(update)
            if result.valid:
                accepted.append(update)
                continue

            rejected[update.participant_id] = result.reason or "invalid"
            self.logger.warning(
                "update_rejected",
                participant_id=update.participant_id,
                round=update.round,
                reason=result.reason,
                magnitude=result.magnitude,
            )

        return accepted, rejected
