"""In-process federation simulation.

Runs honest nodes against an aggregation server over the in-memory
transport, with optional Byzantine participants submitting large random
updates, and reports what the aggregator did each round.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np
import structlog

from sentinel_fl.config import FederationConfig
from sentinel_fl.coordinator import RoundCoordinator, create_round_coordinator
from sentinel_fl.data import TrainingBuffer, encoder_for
from sentinel_fl.exceptions import BudgetExhausted, FederatedError
from sentinel_fl.logging_config import round_context
from sentinel_fl.privacy import make_noise_source
from sentinel_fl.server import InMemoryTransport, RoundRecord, create_aggregation_server
from sentinel_fl.storage import FileSnapshotStore
from sentinel_fl.topology import ParameterTree, Topology
from sentinel_fl.updates import GradientUpdate

logger = structlog.get_logger(__name__)


@dataclass
class SimulationReport:
    """Per-round server records plus node-side failures."""

    rounds: list[RoundRecord] = field(default_factory=list)
    node_errors: dict[int, dict[str, str]] = field(default_factory=dict)
    final_status: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        """Generate summary of the simulation."""
        aggregated = sum(1 for r in self.rounds if r.status == "aggregated")
        return (
            f"Simulation Report:\n"
            f"  Rounds: {len(self.rounds)}\n"
            f"  Aggregated: {aggregated}\n"
            f"  Aborted: {len(self.rounds) - aggregated}"
        )


def synthetic_node_data(
    topology: Topology,
    n_samples: int,
    rng: np.random.Generator,
    centers: np.ndarray,
    buffer: Optional[TrainingBuffer] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Gaussian blobs around shared class centers, fed through a training buffer.

    Args:
        topology: Model topology the arrays must fit
        n_samples: Number of samples to draw
        rng: Generator for class choice and blob noise
        centers: Class centers, shape (output_size, input_size)
        buffer: Buffer the samples are added to as sensitive examples
            (an unperturbed one sized to ``n_samples`` when omitted)

    Returns:
        Tuple of (features, one-hot labels)
    """
    encoder = encoder_for(topology.output_size)
    if buffer is None:
        size = max(n_samples, 1)
        buffer = TrainingBuffer(capacity=size, retain=size)
    classes = rng.integers(0, topology.output_size, size=n_samples)
    raw = centers[classes] + rng.normal(0.0, 1.0, size=(n_samples, topology.input_size))
    for row, cls in zip(raw, classes):
        buffer.add(row, encoder.labels[cls])
    return buffer.to_arrays(topology.input_size, encoder)


def byzantine_update(
    participant_id: str,
    round_number: int,
    topology: Topology,
    norm: float,
    rng: np.random.Generator,
) -> GradientUpdate:
    """A random update of the given L2 norm."""
    vector = rng.normal(size=topology.parameter_count)
    vector *= norm / np.linalg.norm(vector)
    return GradientUpdate(
        participant_id=participant_id,
        round=round_number,
        gradients=ParameterTree.unflatten(vector, topology),
        sample_count=1000,
    )


async def run_simulation(
    config: FederationConfig,
    honest: int = 8,
    byzantine: int = 2,
    rounds: int = 3,
    samples_per_node: int = 64,
    attack_norm: float = 50.0,
    snapshot_dir: Optional[Path] = None,
) -> SimulationReport:
    """Run a federation of ``honest`` + ``byzantine`` participants.

    Args:
        config: Shared configuration (node ids are assigned per node)
        honest: Number of honest training nodes
        byzantine: Number of adversarial participants
        rounds: Number of rounds
        samples_per_node: Local dataset size per honest node
        attack_norm: L2 norm of each adversarial update
        snapshot_dir: Directory for per-node model snapshots (none when omitted)

    Returns:
        Simulation report
    """
    topology = config.build_topology()
    agg = config.aggregation
    server = create_aggregation_server(
        topology,
        method=agg.method,
        honest_fraction=agg.honest_fraction,
        anomaly_std_threshold=agg.anomaly_std_threshold,
        trim_ratio=agg.trim_ratio,
        min_quorum=agg.min_quorum,
        min_magnitude=config.validation.min_magnitude,
        max_magnitude=config.validation.max_magnitude,
    )
    transport = InMemoryTransport(server)
    store = FileSnapshotStore(snapshot_dir) if snapshot_dir is not None else None
    rng = np.random.default_rng(config.seed)
    centers = rng.normal(0.0, 3.0, size=(topology.output_size, topology.input_size))

    nodes: list[RoundCoordinator] = []
    datasets = []
    for i in range(honest):
        node_config = FederationConfig.from_dict(config.to_dict())
        node_config.node_id = f"node-{i:03d}"
        if config.seed is not None:
            node_config.seed = config.seed + i + 1
        nodes.append(create_round_coordinator(node_config, transport, store=store))
        buffer = TrainingBuffer(
            capacity=max(samples_per_node, 1),
            retain=max(samples_per_node, 1),
            noise_source=make_noise_source(node_config.seed),
            noise_scale=config.privacy.input_noise_scale,
        )
        datasets.append(synthetic_node_data(topology, samples_per_node, rng, centers, buffer))

    report = SimulationReport()
    for round_number in range(rounds):
        transport.open_round(
            round_number,
            expected=honest + byzantine,
            deadline_seconds=agg.round_deadline_seconds,
        )
        for j in range(byzantine):
            await transport.submit(
                byzantine_update(f"byz-{j:03d}", round_number, topology, attack_norm, rng)
            )

        with round_context(round=round_number):
            outcomes = await asyncio.gather(
                *(node.run_round(x, y) for node, (x, y) in zip(nodes, datasets)),
                return_exceptions=True,
            )

        errors = {}
        for node, outcome in zip(nodes, outcomes):
            if isinstance(outcome, BudgetExhausted):
                errors[node.context.node_id] = "budget_exhausted"
            elif isinstance(outcome, FederatedError):
                errors[node.context.node_id] = type(outcome).__name__
            elif isinstance(outcome, BaseException):
                raise outcome
        if errors:
            report.node_errors[round_number] = errors

        # no-op unless some node never submitted
        transport.finish_round(round_number)
        record = server.history[-1]
        report.rounds.append(record)
        logger.info("simulation_round", round=round_number, status=record.status)

    report.final_status = server.get_summary()
    return report
