"""Node-side round coordination.

This module provides the node's round state machine::

    IDLE -> TRAINING -> SUBMITTED -> AWAITING_GLOBAL -> MERGING -> IDLE

Training runs on a working copy of the model; the node's model is replaced
only by the final merge, all at once. Any failure returns the node to IDLE
with its model untouched.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol

import numpy as np
import structlog

from sentinel_fl.exceptions import (
    BudgetExhausted,
    FederatedError,
    InvalidStateTransition,
    NetworkTimeout,
    ShapeError,
)
from sentinel_fl.model import LocalModel, initialize_model
from sentinel_fl.monitor import PoisoningMonitor, PoisoningReport
from sentinel_fl.privacy import (
    NoiseSource,
    PrivacyAccountant,
    PrivacyBudget,
    make_noise_source,
)
from sentinel_fl.storage import SnapshotStore, load_or_initialize
from sentinel_fl.topology import ParameterTree
from sentinel_fl.trainer import Trainer, TrainingHyperparams, TrainingResult
from sentinel_fl.updates import GradientUpdate, now_millis

if TYPE_CHECKING:
    from sentinel_fl.config import FederationConfig

logger = structlog.get_logger(__name__)


class RoundState(Enum):
    """States of the node round state machine."""

    IDLE = "idle"
    TRAINING = "training"
    SUBMITTED = "submitted"
    AWAITING_GLOBAL = "awaiting_global"
    MERGING = "merging"


_TRANSITIONS = {
    RoundState.IDLE: {RoundState.TRAINING},
    RoundState.TRAINING: {RoundState.SUBMITTED, RoundState.IDLE},
    RoundState.SUBMITTED: {RoundState.AWAITING_GLOBAL},
    RoundState.AWAITING_GLOBAL: {RoundState.MERGING},
    RoundState.MERGING: {RoundState.IDLE},
}


class Transport(Protocol):
    """Opaque reliable channel between a node and the aggregator."""

    async def submit(self, update: GradientUpdate) -> None: ...

    async def receive_global(self, round_number: int) -> ParameterTree: ...


@dataclass
class NodeContext:
    """Everything a node operation needs, passed explicitly."""

    node_id: str
    model: LocalModel
    accountant: PrivacyAccountant
    rng: np.random.Generator


@dataclass
class RoundOutcome:
    """Result of one :meth:`RoundCoordinator.run_round` call."""

    round_number: int
    status: str  # "merged" or "skipped"
    training: Optional[TrainingResult] = None
    report: Optional[PoisoningReport] = None
    epsilon_consumed: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        """Generate summary of the round outcome."""
        loss = f"{self.training.loss:.4f}" if self.training and not self.training.skipped else "n/a"
        suspected = self.report.suspected if self.report else False
        return (
            f"Round {self.round_number}: {self.status}\n"
            f"  Loss: {loss}\n"
            f"  Epsilon consumed: {self.epsilon_consumed:.4f}\n"
            f"  Suspected poisoning: {suspected}"
        )


def package_update(
    node_id: str,
    round_number: int,
    delta: ParameterTree,
    metrics: dict[str, Any],
) -> GradientUpdate:
    """Build a gradient update with provenance fields.

    Args:
        node_id: Participant identifier
        round_number: Round the update belongs to
        delta: Parameter change produced by local training
        metrics: Training metrics; ``num_samples`` is used as the sample count

    Returns:
        Gradient update stamped with the current time in milliseconds
    """
    return GradientUpdate(
        participant_id=node_id,
        round=round_number,
        gradients=delta.copy(),
        sample_count=int(metrics.get("num_samples", 0)),
        timestamp=now_millis(),
    )


def merge_global(
    local: ParameterTree, aggregated: ParameterTree, alpha: float = 0.7
) -> ParameterTree:
    """Blend global parameters into local ones.

    Computes ``alpha * aggregated + (1 - alpha) * local`` per parameter into
    a new tree; neither input is modified.

    Raises:
        ShapeError: If the trees do not have the same shape
    """
    if not 0 <= alpha <= 1:
        msg = f"alpha must be in [0, 1], got {alpha}"
        raise ValueError(msg)
    return aggregated.combine(local, lambda g, l: alpha * g + (1 - alpha) * l)


class RoundCoordinator:
    """Drives one node through federated rounds."""

    def __init__(
        self,
        context: NodeContext,
        transport: Transport,
        trainer: Trainer,
        monitor: Optional[PoisoningMonitor] = None,
        merge_alpha: float = 0.7,
        network_timeout: float = 30.0,
        round_number: int = 0,
        store: Optional[SnapshotStore] = None,
    ) -> None:
        """Initialize round coordinator.

        Args:
            context: Node context (model, privacy accountant, generator)
            transport: Channel to the aggregator
            trainer: Local trainer
            monitor: Optional poisoning monitor run after each merge
            merge_alpha: Weight of the global parameters in the merge
            network_timeout: Seconds allowed for each network round trip
            round_number: First round this node takes part in
            store: Optional snapshot store written after every merge
        """
        self.context = context
        self.transport = transport
        self.trainer = trainer
        self.monitor = monitor
        self.store = store
        self.merge_alpha = merge_alpha
        self.network_timeout = network_timeout
        self.round_number = round_number
        self._state = RoundState.IDLE
        self.last_error: Optional[str] = None
        self.last_outcome: Optional[RoundOutcome] = None
        self.logger = logger.bind(component="RoundCoordinator", node_id=context.node_id)

    @property
    def state(self) -> RoundState:
        return self._state

    def _transition(self, new_state: RoundState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            msg = f"Cannot move from {self._state.value} to {new_state.value}"
            raise InvalidStateTransition(msg)
        self.logger.debug("state_transition", old=self._state.value, new=new_state.value)
        self._state = new_state

    def _abort(self, round_number: int, error: BaseException) -> None:
        self.last_error = f"{type(error).__name__}: {error}"
        self.logger.warning(
            "round_failed",
            round=round_number,
            state=self._state.value,
            error=self.last_error,
        )
        self._state = RoundState.IDLE

    def _check_validation(
        self, validation: Optional[tuple[np.ndarray, np.ndarray]]
    ) -> None:
        if validation is None:
            return
        topology = self.context.model.topology
        features, labels = (np.asarray(a) for a in validation)
        if (
            features.ndim != 2
            or labels.ndim != 2
            or features.shape[1] != topology.input_size
            or labels.shape[1] != topology.output_size
            or len(features) != len(labels)
        ):
            msg = (
                f"Validation set of shape {features.shape}/{labels.shape} does not fit "
                f"input size {topology.input_size} and output size {topology.output_size}"
            )
            raise ShapeError(msg)

    def _save_snapshot(self, round_number: int) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.context.node_id, self.context.model)
        except OSError as e:
            self.logger.error("snapshot_save_failed", round=round_number, error=str(e))

    def _audit(
        self,
        round_number: int,
        pre_merge: LocalModel,
        validation: Optional[tuple[np.ndarray, np.ndarray]],
    ) -> Optional[PoisoningReport]:
        if self.monitor is None:
            return None
        vx, vy = validation if validation is not None else (None, None)
        try:
            return self.monitor.audit(pre_merge, self.context.model, vx, vy)
        except (FederatedError, ValueError) as e:
            self.logger.error("poisoning_audit_failed", round=round_number, error=str(e))
            return None

    async def _with_timeout(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.network_timeout)
        except asyncio.TimeoutError as e:
            raise NetworkTimeout(operation, self.network_timeout) from e

    async def run_round(
        self,
        features: np.ndarray,
        labels: np.ndarray,
        validation: Optional[tuple[np.ndarray, np.ndarray]] = None,
    ) -> RoundOutcome:
        """Train, submit, await the global update and merge it.

        Args:
            features: Local training features
            labels: One-hot local training labels
            validation: Optional (features, labels) for the poisoning audit

        Returns:
            Round outcome

        Raises:
            BudgetExhausted: The node may not participate any more
            NetworkTimeout: Submission or global update took too long
            RoundError: The aggregator aborted the round
            ShapeError: Local data or the global update had the wrong shape
        """
        round_number = self.round_number
        self._transition(RoundState.TRAINING)
        self.round_number += 1
        self.logger.info("round_started", round=round_number)

        try:
            self._check_validation(validation)
            model = self.context.model
            working = model.copy()
            training = self.trainer.train_local_epochs(working, features, labels)

            if training.skipped or training.update is None:
                self._transition(RoundState.IDLE)
                outcome = RoundOutcome(
                    round_number=round_number,
                    status="skipped",
                    training=training,
                    epsilon_consumed=self.context.accountant.budget.epsilon_consumed,
                )
                self.last_outcome = outcome
                return outcome

            epsilon = self.context.accountant.account_round(f"round {round_number}")
            update = package_update(
                self.context.node_id, round_number, training.update, training.metrics
            )

            self._transition(RoundState.SUBMITTED)
            await self._with_timeout("submit", self.transport.submit(update))

            self._transition(RoundState.AWAITING_GLOBAL)
            aggregated = await self._with_timeout(
                "receive_global", self.transport.receive_global(round_number)
            )

            self._transition(RoundState.MERGING)
            # The aggregate is a parameter change relative to the round's start
            global_parameters = model.parameters.combine(aggregated, np.add)
            merged = merge_global(working.parameters, global_parameters, self.merge_alpha)
            pre_merge = model.copy()
            model.replace_parameters(merged)
            self._transition(RoundState.IDLE)
        except BudgetExhausted as e:
            self._abort(round_number, e)
            self.logger.error("node_budget_exhausted", round=round_number)
            raise
        except (Exception, asyncio.CancelledError) as e:
            self._abort(round_number, e)
            raise

        # The merge is committed; persistence and auditing cannot undo it
        self._save_snapshot(round_number)
        report = self._audit(round_number, pre_merge, validation)

        self.last_error = None
        outcome = RoundOutcome(
            round_number=round_number,
            status="merged",
            training=training,
            report=report,
            epsilon_consumed=epsilon,
        )
        self.last_outcome = outcome
        self.logger.info(
            "round_complete",
            round=round_number,
            loss=training.loss,
            epsilon_consumed=epsilon,
        )
        return outcome

    def status(self) -> dict[str, Any]:
        """Node status for operators."""
        last_loss = None
        if self.last_outcome and self.last_outcome.training:
            last_loss = self.last_outcome.training.loss
        return {
            "node_id": self.context.node_id,
            "state": self._state.value,
            "round_number": self.round_number,
            "topology": self.context.model.topology.to_pairs(),
            "last_loss": last_loss,
            "last_error": self.last_error,
            "privacy": self.context.accountant.status(),
        }


def create_round_coordinator(
    config: "FederationConfig",
    transport: Transport,
    model: Optional[LocalModel] = None,
    noise_source: Optional[NoiseSource] = None,
    store: Optional[SnapshotStore] = None,
) -> RoundCoordinator:
    """Factory function to wire a node from configuration.

    Args:
        config: Federation configuration
        transport: Channel to the aggregator
        model: Existing model (restored from ``store`` or freshly
            initialized when omitted)
        noise_source: Noise generator (seeded from ``config.seed`` when omitted)
        store: Snapshot store the node's model is loaded from and saved to

    Returns:
        Configured RoundCoordinator instance
    """
    config.validate()
    model_seed, noise_seed = np.random.SeedSequence(config.seed).spawn(2)
    rng = np.random.default_rng(model_seed)
    if noise_source is None:
        noise_source = make_noise_source(None if config.seed is None else noise_seed)
    topology = config.build_topology()
    if model is None:
        if store is not None:
            model = load_or_initialize(store, config.node_id, topology, rng)
        else:
            model = initialize_model(topology, rng)

    p = config.privacy
    accountant = PrivacyAccountant(
        PrivacyBudget(epsilon_total=p.epsilon_total, delta=p.delta),
        max_rounds=p.max_rounds,
        clip_norm=p.clip_norm,
        noise_multiplier=p.noise_multiplier,
        noise_source=noise_source,
    )
    t = config.training
    trainer = Trainer(
        accountant,
        TrainingHyperparams(
            local_epochs=t.local_epochs,
            batch_size=t.batch_size,
            learning_rate=t.learning_rate,
            min_samples=t.min_samples,
        ),
        rng=rng,
    )
    monitor = PoisoningMonitor(
        performance_drop_threshold=config.monitor.performance_drop_threshold,
        weight_magnitude_cap=config.monitor.weight_magnitude_cap,
    )
    context = NodeContext(node_id=config.node_id, model=model, accountant=accountant, rng=rng)
    return RoundCoordinator(
        context,
        transport,
        trainer,
        monitor=monitor,
        merge_alpha=config.coordinator.merge_alpha,
        network_timeout=config.coordinator.network_timeout_seconds,
        store=store,
    )
