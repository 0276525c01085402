"""Byzantine-robust aggregation of a round's gradient updates.

This module provides:
- Validation and distance-based anomaly screening of submitted updates
- KRUM selection of the single most consistent update
- Coordinate-wise trimmed mean and median aggregation

Aggregation is a pure function of one round's updates. It runs once over the
whole population of the round, never incrementally, and computes a full
pairwise distance matrix, so its cost is O(n^2 * d) for n updates of d
parameters.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import numpy as np
import structlog

from sentinel_fl.exceptions import AllParticipantsRejected, InsufficientParticipants
from sentinel_fl.topology import ParameterTree, Topology
from sentinel_fl.updates import GradientUpdate
from sentinel_fl.validation import GradientValidator

logger = structlog.get_logger(__name__)

REASON_ANOMALOUS = "anomalous_distance"
REASON_DUPLICATE = "duplicate_participant"
REASON_WRONG_ROUND = "wrong_round"


class AggregationMethod(Enum):
    """Available robust aggregation rules."""

    KRUM = "krum"
    TRIMMED_MEAN = "trimmed_mean"
    MEDIAN = "median"

    @classmethod
    def parse(cls, value: Union[str, "AggregationMethod"]) -> "AggregationMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            names = ", ".join(m.value for m in cls)
            msg = f"Unknown aggregation method: {value}. Use one of: {names}"
            raise ValueError(msg) from None


@dataclass
class AggregationResult:
    """Result of aggregating one round."""

    gradients: ParameterTree
    method: AggregationMethod
    round_number: int
    participants: list[str]
    survivors: list[str]
    total_samples: int
    rejected: dict[str, str] = field(default_factory=dict)
    anomalous: list[str] = field(default_factory=list)
    selected_participant: Optional[str] = None
    scores: dict[str, float] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        """Generate summary of aggregation result."""
        lines = [
            f"Aggregation Result (Round {self.round_number}):",
            f"  Method: {self.method.value}",
            f"  Submitted: {len(self.participants)}",
            f"  Survivors: {len(self.survivors)}",
            f"  Rejected: {len(self.rejected)}",
            f"  Total samples: {self.total_samples}",
        ]
        if self.selected_participant is not None:
            lines.append(f"  Selected: {self.selected_participant}")
        return "\n".join(lines)


def pairwise_distances(vectors: np.ndarray) -> np.ndarray:
    """Full n x n Euclidean distance matrix with a zero diagonal.

    Args:
        vectors: Array of shape (n, d)

    Returns:
        Symmetric array of shape (n, n)
    """
    vectors = np.asarray(vectors, dtype=np.float64)
    n = len(vectors)
    distances = np.zeros((n, n))
    for i in range(n):
        diff = vectors[i + 1 :] - vectors[i]
        row = np.sqrt(np.einsum("ij,ij->i", diff, diff))
        distances[i, i + 1 :] = row
        distances[i + 1 :, i] = row
    return distances


def detect_anomalies(distances: np.ndarray, std_threshold: float = 2.0) -> list[int]:
    """Indices whose mean distance exceeds ``std_threshold`` times its std.

    Each row of ``distances`` (self-distance included) is summarized by its
    mean and population standard deviation.
    """
    means = distances.mean(axis=1)
    stds = distances.std(axis=1)
    return [int(i) for i in np.flatnonzero(means > std_threshold * stds)]


def krum_scores(distances: np.ndarray, honest_fraction: float = 0.6) -> np.ndarray:
    """KRUM score per row: sum of the ``m - 1`` smallest distances to others.

    Args:
        distances: Pairwise distance matrix of the candidates
        honest_fraction: Assumed fraction of honest candidates

    Returns:
        Score per candidate, where ``m = floor(n * honest_fraction)``
    """
    n = len(distances)
    m = int(np.floor(n * honest_fraction))
    k = min(max(m - 1, 0), n - 1)

    scores = np.zeros(n)
    for i in range(n):
        others = np.sort(np.delete(distances[i], i))
        scores[i] = float(np.sum(others[:k]))
    return scores


def trimmed_mean(stacked: np.ndarray, trim_ratio: float = 0.2) -> np.ndarray:
    """Coordinate-wise trimmed mean along the first axis.

    Args:
        stacked: Array of shape (n, ...)
        trim_ratio: Fraction to drop from each end

    Returns:
        Trimmed mean
    """
    n = len(stacked)
    k = int(np.floor(trim_ratio * n))

    if k == 0:
        return np.mean(stacked, axis=0)

    sorted_vals = np.sort(stacked, axis=0)
    return np.mean(sorted_vals[k : n - k], axis=0)


def coordinate_median(stacked: np.ndarray) -> np.ndarray:
    """Coordinate-wise median (mean of the two middle values for even n)."""
    return np.median(stacked, axis=0)


class RobustAggregator:
    """Byzantine-robust aggregator for one round of updates.

    Screens out invalid and anomalous updates, then combines the survivors
    with KRUM, trimmed mean or coordinate-wise median. Holds no state between
    rounds.
    """

    def __init__(
        self,
        topology: Topology,
        method: Union[str, AggregationMethod] = AggregationMethod.KRUM,
        honest_fraction: float = 0.6,
        anomaly_std_threshold: float = 2.0,
        trim_ratio: float = 0.2,
        min_quorum: int = 3,
        validator: Optional[GradientValidator] = None,
    ) -> None:
        """Initialize robust aggregator.

        Args:
            topology: Model topology every update must match
            method: Aggregation rule
            honest_fraction: Assumed honest fraction for KRUM
            anomaly_std_threshold: Multiplier for the anomaly screen
            trim_ratio: Fraction trimmed from each end for trimmed mean
            min_quorum: Minimum valid updates required to aggregate
            validator: Update validator (defaults to standard magnitude bounds)
        """
        if not 0 < honest_fraction <= 1:
            msg = f"honest_fraction must be in (0, 1], got {honest_fraction}"
            raise ValueError(msg)
        if not 0 <= trim_ratio < 0.5:
            msg = f"trim_ratio must be in [0, 0.5), got {trim_ratio}"
            raise ValueError(msg)
        if min_quorum < 1:
            msg = f"min_quorum must be at least 1, got {min_quorum}"
            raise ValueError(msg)

        self.topology = topology
        self.method = AggregationMethod.parse(method)
        self.honest_fraction = honest_fraction
        self.anomaly_std_threshold = anomaly_std_threshold
        self.trim_ratio = trim_ratio
        self.min_quorum = min_quorum
        self.validator = validator or GradientValidator(topology)
        self.logger = logger.bind(component="RobustAggregator", method=self.method.value)

    def _screen_round(
        self, updates: list[GradientUpdate], round_number: int
    ) -> tuple[list[GradientUpdate], dict[str, str], int]:
        rejected: dict[str, str] = {}
        seen: set[str] = set()
        candidates: list[GradientUpdate] = []
        duplicates = 0

        for update in updates:
            pid = update.participant_id
            if pid in seen:
                duplicates += 1
                self.logger.warning(
                    "update_rejected", participant_id=pid, reason=REASON_DUPLICATE
                )
                continue
            seen.add(pid)
            if update.round != round_number:
                rejected[pid] = REASON_WRONG_ROUND
                self.logger.warning(
                    "update_rejected",
                    participant_id=pid,
                    reason=REASON_WRONG_ROUND,
                    update_round=update.round,
                    round=round_number,
                )
                continue
            candidates.append(update)

        accepted, invalid = self.validator.partition(candidates)
        rejected.update(invalid)
        return accepted, rejected, duplicates

    def aggregate(
        self,
        updates: list[GradientUpdate],
        round_number: int,
    ) -> AggregationResult:
        """Aggregate a round's updates.

        Args:
            updates: Every update submitted for the round
            round_number: Round being aggregated

        Returns:
            Aggregation result

        Raises:
            InsufficientParticipants: Fewer than ``min_quorum`` valid updates, or
                fewer than ``min_quorum`` survivors of the anomaly screen
            AllParticipantsRejected: Anomaly screening removed every update
        """
        participants = [u.participant_id for u in updates]
        self.logger.info(
            "aggregation_start", num_updates=len(updates), round=round_number
        )

        # Arrival order must not influence the result
        ordered = sorted(updates, key=lambda u: u.participant_id)
        valid, rejected, duplicates = self._screen_round(ordered, round_number)

        if len(valid) < self.min_quorum:
            self.logger.warning(
                "round_aborted",
                round=round_number,
                reason="insufficient_participants",
                valid=len(valid),
                required=self.min_quorum,
            )
            raise InsufficientParticipants(
                required=self.min_quorum, received=len(valid), round_number=round_number
            )

        vectors = np.stack([u.flatten() for u in valid])
        distances = pairwise_distances(vectors)

        anomalous_idx = set(detect_anomalies(distances, self.anomaly_std_threshold))
        anomalous = [valid[i].participant_id for i in sorted(anomalous_idx)]
        for pid in anomalous:
            rejected[pid] = REASON_ANOMALOUS
            self.logger.warning(
                "update_rejected", participant_id=pid, round=round_number, reason=REASON_ANOMALOUS
            )

        keep = [i for i in range(len(valid)) if i not in anomalous_idx]
        if not keep:
            self.logger.warning(
                "round_aborted", round=round_number, reason="all_participants_rejected"
            )
            msg = f"Anomaly screening rejected all {len(valid)} valid updates"
            raise AllParticipantsRejected(msg, round_number=round_number)
        if len(keep) < self.min_quorum:
            self.logger.warning(
                "round_aborted",
                round=round_number,
                reason="insufficient_survivors",
                survivors=len(keep),
                required=self.min_quorum,
            )
            raise InsufficientParticipants(
                required=self.min_quorum, received=len(keep), round_number=round_number
            )

        survivors = [valid[i] for i in keep]
        survivor_vectors = vectors[keep]
        selected: Optional[str] = None
        scores: dict[str, float] = {}

        if self.method == AggregationMethod.KRUM:
            survivor_distances = distances[np.ix_(keep, keep)]
            score_values = krum_scores(survivor_distances, self.honest_fraction)
            # argmin returns the first minimum, i.e. the lowest participant id
            winner = int(np.argmin(score_values))
            selected = survivors[winner].participant_id
            scores = {u.participant_id: float(s) for u, s in zip(survivors, score_values)}
            gradients = survivors[winner].gradients.copy()
            self.logger.info("krum_selected", participant_id=selected, score=scores[selected])
        elif self.method == AggregationMethod.TRIMMED_MEAN:
            gradients = ParameterTree.unflatten(
                trimmed_mean(survivor_vectors, self.trim_ratio), self.topology
            )
        else:
            gradients = ParameterTree.unflatten(
                coordinate_median(survivor_vectors), self.topology
            )

        result = AggregationResult(
            gradients=gradients,
            method=self.method,
            round_number=round_number,
            participants=participants,
            survivors=[u.participant_id for u in survivors],
            total_samples=int(sum(u.sample_count for u in survivors)),
            rejected=rejected,
            anomalous=anomalous,
            selected_participant=selected,
            scores=scores,
            metadata={
                "honest_fraction": self.honest_fraction,
                "anomaly_std_threshold": self.anomaly_std_threshold,
                "duplicates": duplicates,
                "trim_ratio": self.trim_ratio
                if self.method == AggregationMethod.TRIMMED_MEAN
                else None,
            },
        )

        self.logger.info(
            "aggregation_complete",
            round=round_number,
            survivors=len(survivors),
            rejected=len(rejected),
        )
        return result
