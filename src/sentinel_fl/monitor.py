"""Post-merge poisoning checks.

The monitor compares model quality before and after a merge on a local
validation set and scans parameters for extreme magnitudes. Its findings are
advisory: nothing is rolled back automatically.
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import structlog

from sentinel_fl.exceptions import SuspectedPoisoning
from sentinel_fl.model import LocalModel, accuracy

logger = structlog.get_logger(__name__)


@dataclass
class FlaggedParameter:
    """A parameter whose magnitude exceeds the configured cap."""

    layer: int
    kind: str  # "weight" or "bias"
    index: tuple[int, ...]
    value: float


@dataclass
class PoisoningReport:
    """Outcome of auditing one merge."""

    performance_drop: float
    flagged_parameters: list[FlaggedParameter] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    @property
    def suspected(self) -> bool:
        return bool(self.reasons)

    def as_signal(self) -> Optional[SuspectedPoisoning]:
        """The advisory signal for operators, or None when nothing was found."""
        if not self.suspected:
            return None
        return SuspectedPoisoning(
            "; ".join(self.reasons), performance_drop=self.performance_drop
        )


class PoisoningMonitor:
    """Detects likely model poisoning after a global update is merged."""

    def __init__(
        self,
        performance_drop_threshold: float = 0.1,
        weight_magnitude_cap: float = 1000.0,
        max_reported: int = 100,
    ) -> None:
        """Initialize monitor.

        Args:
            performance_drop_threshold: Drop above which poisoning is suspected
            weight_magnitude_cap: Absolute parameter value considered adversarial
            max_reported: Maximum flagged parameters kept per report
        """
        self.performance_drop_threshold = performance_drop_threshold
        self.weight_magnitude_cap = weight_magnitude_cap
        self.max_reported = max_reported
        self.logger = logger.bind(component="PoisoningMonitor")

    def compare_models(
        self,
        pre: LocalModel,
        post: LocalModel,
        features: np.ndarray,
        labels: np.ndarray,
    ) -> float:
        """Relative accuracy drop from ``pre`` to ``post``, clamped to [0, 1].

        Args:
            pre: Model before the merge
            post: Model after the merge
            features: Validation features
            labels: One-hot validation labels

        Returns:
            Performance drop; 0.0 when there is no validation data or no
            baseline accuracy
        """
        if len(features) == 0:
            return 0.0

        before = accuracy(pre, features, labels)
        after = accuracy(post, features, labels)
        if before <= 0:
            return 0.0
        return float(np.clip((before - after) / before, 0.0, 1.0))

    def detect_adversarial_patterns(self, model: LocalModel) -> list[FlaggedParameter]:
        """Parameters whose absolute value exceeds the magnitude cap."""
        flagged: list[FlaggedParameter] = []
        for layer_index, (weights, biases) in enumerate(model.parameters):
            for kind, array in (("weight", weights), ("bias", biases)):
                for index in np.argwhere(np.abs(array) > self.weight_magnitude_cap):
                    if len(flagged) >= self.max_reported:
                        return flagged
                    position = tuple(int(i) for i in index)
                    flagged.append(
                        FlaggedParameter(
                            layer=layer_index,
                            kind=kind,
                            index=position,
                            value=float(array[position]),
                        )
                    )
        return flagged

    def audit(
        self,
        pre: LocalModel,
        post: LocalModel,
        features: Optional[np.ndarray] = None,
        labels: Optional[np.ndarray] = None,
    ) -> PoisoningReport:
        """Run both checks and log a warning when poisoning is suspected."""
        drop = 0.0
        if features is not None and labels is not None:
            drop = self.compare_models(pre, post, features, labels)

        report = PoisoningReport(
            performance_drop=drop,
            flagged_parameters=self.detect_adversarial_patterns(post),
        )
        if drop > self.performance_drop_threshold:
            report.reasons.append(f"performance dropped by {drop:.2%}")
        if report.flagged_parameters:
            report.reasons.append(
                f"{len(report.flagged_parameters)} parameter(s) exceed "
                f"|{self.weight_magnitude_cap:g}|"
            )

        if report.suspected:
            self.logger.warning(
                "suspected_poisoning",
                performance_drop=drop,
                flagged=len(report.flagged_parameters),
                reasons=report.reasons,
            )
        return report
