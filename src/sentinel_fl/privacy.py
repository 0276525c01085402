"""Differential privacy mechanisms for local training.

This module provides privacy-preserving techniques:
- Global L2 gradient clipping for bounded sensitivity
- Gaussian noise injection (Gaussian mechanism)
- Per-round privacy budget tracking with a hard stop
"""

import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import numpy as np
import structlog

from sentinel_fl.exceptions import BudgetExhausted
from sentinel_fl.topology import ParameterTree

logger = structlog.get_logger(__name__)

# Absorbs float accumulation error when the last allocation lands exactly on the total
BUDGET_TOLERANCE = 1e-12


@dataclass
class PrivacyBudget:
    """Privacy budget for differential privacy.

    The privacy budget (epsilon) controls the privacy-utility tradeoff:
    - Lower epsilon = more privacy, more noise, less utility
    - Higher epsilon = less privacy, less noise, more utility

    ``epsilon_consumed`` only ever grows and never passes ``epsilon_total``.
    """

    epsilon_total: float
    delta: float = 1e-5
    epsilon_consumed: float = 0.0

    def __post_init__(self) -> None:
        if self.epsilon_total <= 0:
            msg = f"epsilon_total must be positive, got {self.epsilon_total}"
            raise ValueError(msg)
        if not 0 < self.delta < 1:
            msg = f"delta must be in (0, 1), got {self.delta}"
            raise ValueError(msg)

    @property
    def remaining_epsilon(self) -> float:
        """Get remaining privacy budget."""
        return max(0.0, self.epsilon_total - self.epsilon_consumed)

    @property
    def is_exhausted(self) -> bool:
        """Check if privacy budget is exhausted."""
        return self.epsilon_consumed >= self.epsilon_total - BUDGET_TOLERANCE

    def can_consume(self, epsilon: float) -> bool:
        return self.epsilon_consumed + epsilon <= self.epsilon_total + BUDGET_TOLERANCE

    def consume(self, epsilon: float) -> None:
        """Consume privacy budget.

        Args:
            epsilon: Amount of epsilon to consume

        Raises:
            BudgetExhausted: If the budget cannot cover ``epsilon``
        """
        if epsilon < 0:
            msg = f"Cannot consume negative epsilon {epsilon}"
            raise ValueError(msg)
        if not self.can_consume(epsilon):
            raise BudgetExhausted(
                consumed=self.epsilon_consumed,
                requested=epsilon,
                total=self.epsilon_total,
            )
        self.epsilon_consumed = min(self.epsilon_total, self.epsilon_consumed + epsilon)

    def reset(self) -> None:
        """Reset consumed budget (explicit operator action only)."""
        self.epsilon_consumed = 0.0


class NoiseSource(Protocol):
    """Draws i.i.d. Gaussian samples."""

    def normal(self, scale: float, size: tuple[int, ...]) -> np.ndarray: ...


class SeededNoise:
    """Deterministic noise from a seeded numpy generator, for tests."""

    def __init__(
        self,
        seed: Optional[Union[int, np.random.SeedSequence]] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self._rng = rng if rng is not None else np.random.default_rng(seed)

    def normal(self, scale: float, size: tuple[int, ...]) -> np.ndarray:
        return self._rng.normal(0.0, scale, size)


class SystemNoise:
    """Production noise: every draw is seeded with 128 bits of OS entropy.

    Samples come from numpy's float64 ziggurat sampler rather than a
    Box-Muller transform over low-precision uniforms.
    """

    def normal(self, scale: float, size: tuple[int, ...]) -> np.ndarray:
        rng = np.random.default_rng(secrets.randbits(128))
        return rng.normal(0.0, scale, size)


def make_noise_source(
    seed: Optional[Union[int, np.random.SeedSequence]] = None,
) -> NoiseSource:
    """Seeded noise when ``seed`` (an int or a spawned SeedSequence) is given,
    OS-entropy noise otherwise."""
    if seed is None:
        return SystemNoise()
    return SeededNoise(seed)


def clip(gradient: ParameterTree, clip_norm: float) -> ParameterTree:
    """Clip a gradient to a global L2 norm.

    Args:
        gradient: Gradient tree
        clip_norm: Maximum allowed L2 norm across all parameters

    Returns:
        New tree; unchanged copy when already within bound, otherwise every
        parameter scaled by ``clip_norm / norm``
    """
    if clip_norm <= 0:
        msg = f"clip_norm must be positive, got {clip_norm}"
        raise ValueError(msg)

    norm = gradient.l2_norm()
    if norm > clip_norm:
        logger.debug("gradient_clipped", original_norm=norm, clip_norm=clip_norm)
        return gradient.scale(clip_norm / norm)
    return gradient.copy()


def add_noise(
    gradient: ParameterTree,
    noise_multiplier: float,
    clip_norm: float,
    noise: NoiseSource,
) -> ParameterTree:
    """Add Gaussian noise with std ``noise_multiplier * clip_norm`` to every scalar.

    Args:
        gradient: Clipped gradient tree
        noise_multiplier: Noise scale relative to the clipping bound
        clip_norm: Clipping bound (L2 sensitivity)
        noise: Gaussian noise source

    Returns:
        Noisy gradient tree
    """
    sigma = noise_multiplier * clip_norm
    if sigma < 0:
        msg = f"Noise standard deviation must be non-negative, got {sigma}"
        raise ValueError(msg)
    if sigma == 0:
        return gradient.copy()
    return gradient.map(lambda array: array + noise.normal(sigma, array.shape))


class PrivacyAccountant:
    """Clips and noises gradients and tracks the node's privacy budget.

    The per-round allocation is ``epsilon_total / max_rounds``, derived from
    the configured horizon.
    """

    def __init__(
        self,
        budget: PrivacyBudget,
        max_rounds: int = 100,
        clip_norm: float = 1.0,
        noise_multiplier: float = 1.1,
        noise_source: Optional[NoiseSource] = None,
    ) -> None:
        """Initialize privacy accountant.

        Args:
            budget: Node privacy budget
            max_rounds: Number of rounds the budget must cover
            clip_norm: Gradient clipping bound
            noise_multiplier: Gaussian noise multiplier
            noise_source: Noise generator (OS entropy when omitted)
        """
        if max_rounds <= 0:
            msg = f"max_rounds must be positive, got {max_rounds}"
            raise ValueError(msg)
        self.budget = budget
        self.max_rounds = max_rounds
        self.clip_norm = clip_norm
        self.noise_multiplier = noise_multiplier
        self.noise = noise_source if noise_source is not None else SystemNoise()
        self.history: list[dict[str, Any]] = []
        self.logger = logger.bind(component="PrivacyAccountant")

        implied = self.gaussian_mechanism_epsilon()
        if implied > self.per_round_epsilon:
            self.logger.warning(
                "noise_below_allocation",
                implied_epsilon=implied,
                per_round_epsilon=self.per_round_epsilon,
                noise_multiplier=noise_multiplier,
            )

    @property
    def per_round_epsilon(self) -> float:
        return self.budget.epsilon_total / self.max_rounds

    @property
    def rounds_accounted(self) -> int:
        return len(self.history)

    def clip(self, gradient: ParameterTree) -> ParameterTree:
        return clip(gradient, self.clip_norm)

    def add_noise(self, gradient: ParameterTree) -> ParameterTree:
        return add_noise(gradient, self.noise_multiplier, self.clip_norm, self.noise)

    def privatize(self, gradient: ParameterTree) -> ParameterTree:
        """Clip then noise; noise is never added before clipping."""
        return self.add_noise(self.clip(gradient))

    def ensure_available(self) -> None:
        """Raise :class:`BudgetExhausted` if another round cannot be afforded."""
        if not self.budget.can_consume(self.per_round_epsilon):
            raise BudgetExhausted(
                consumed=self.budget.epsilon_consumed,
                requested=self.per_round_epsilon,
                total=self.budget.epsilon_total,
            )

    def account_round(self, description: str = "") -> float:
        """Charge one round's allocation against the budget.

        Args:
            description: Free-form note stored in the history

        Returns:
            Cumulative epsilon consumed after this round

        Raises:
            BudgetExhausted: Once consumption would exceed the total budget
        """
        epsilon = self.per_round_epsilon
        try:
            self.budget.consume(epsilon)
        except BudgetExhausted:
            self.logger.error(
                "privacy_budget_exhausted",
                consumed=self.budget.epsilon_consumed,
                requested=epsilon,
                total=self.budget.epsilon_total,
            )
            raise

        self.history.append(
            {
                "epsilon": epsilon,
                "description": description,
                "cumulative_epsilon": self.budget.epsilon_consumed,
                "timestamp": time.time(),
            }
        )
        self.logger.debug(
            "privacy_round_accounted",
            epsilon=epsilon,
            cumulative_epsilon=self.budget.epsilon_consumed,
        )
        return self.budget.epsilon_consumed

    def gaussian_mechanism_epsilon(self) -> float:
        """Epsilon implied by the noise multiplier for one release.

        Uses the classical Gaussian mechanism bound
        ``sigma = sensitivity * sqrt(2 * ln(1.25 / delta)) / epsilon`` with
        ``sigma / sensitivity = noise_multiplier``.
        """
        if self.noise_multiplier <= 0:
            return float("inf")
        return float(np.sqrt(2 * np.log(1.25 / self.budget.delta)) / self.noise_multiplier)

    def composition_bound(self, num_rounds: Optional[int] = None) -> float:
        """Total epsilon after ``num_rounds`` rounds at the per-round allocation.

        Uses the advanced composition theorem when it is tighter than the
        basic sum.

        Args:
            num_rounds: Number of rounds (defaults to ``max_rounds``)

        Returns:
            Total epsilon under composition
        """
        rounds = self.max_rounds if num_rounds is None else num_rounds
        per_round = self.per_round_epsilon
        basic = rounds * per_round

        # eps_total = sqrt(2*k*ln(1/delta'))*eps + k*eps*(e^eps - 1)
        delta_prime = self.budget.delta / 2
        advanced = np.sqrt(2 * rounds * np.log(1 / delta_prime)) * per_round + rounds * per_round * (
            np.exp(per_round) - 1
        )
        return float(min(basic, advanced))

    def status(self) -> dict[str, Any]:
        """Budget usage summary."""
        used = self.budget.epsilon_consumed
        total = self.budget.epsilon_total
        return {
            "epsilon_total": total,
            "delta": self.budget.delta,
            "used": used,
            "remaining": self.budget.remaining_epsilon,
            "percentage_used": round(used / total * 100, 2),
            "per_round_epsilon": self.per_round_epsilon,
            "rounds_accounted": self.rounds_accounted,
            "is_exhausted": self.budget.is_exhausted,
        }
