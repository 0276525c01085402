"""Byzantine-robust, differentially private federated learning.

This package provides:
- A fixed-topology neural network trained locally with DP-SGD
- A bounded, minimizing and optionally perturbing local training buffer
- Privacy budget accounting across rounds
- Gradient validation and robust aggregation (KRUM, trimmed mean, median)
- Post-merge poisoning detection
- Node-side round coordination and a server-side round collector
"""

from sentinel_fl.aggregation import (
    AggregationMethod,
    AggregationResult,
    RobustAggregator,
)
from sentinel_fl.config import FederationConfig
from sentinel_fl.coordinator import (
    RoundCoordinator,
    RoundOutcome,
    RoundState,
    create_round_coordinator,
)
from sentinel_fl.data import (
    LabelEncoder,
    TrainingBuffer,
    TrainingExample,
    encoder_for,
    fit_features,
)
from sentinel_fl.exceptions import (
    AllParticipantsRejected,
    BudgetExhausted,
    FederatedError,
    InsufficientParticipants,
    NetworkTimeout,
    RoundError,
    ShapeError,
    SuspectedPoisoning,
)
from sentinel_fl.model import LocalModel, initialize_model
from sentinel_fl.monitor import PoisoningMonitor, PoisoningReport
from sentinel_fl.privacy import (
    NoiseSource,
    PrivacyAccountant,
    PrivacyBudget,
    make_noise_source,
)
from sentinel_fl.server import (
    AggregationServer,
    InMemoryTransport,
    create_aggregation_server,
)
from sentinel_fl.topology import ParameterTree, Topology
from sentinel_fl.trainer import Trainer, TrainingHyperparams
from sentinel_fl.updates import GradientUpdate
from sentinel_fl.validation import GradientValidator

__version__ = "0.1.0"

__all__ = [
    # Model
    "Topology",
    "ParameterTree",
    "LocalModel",
    "initialize_model",
    "Trainer",
    "TrainingHyperparams",
    # Training data
    "TrainingExample",
    "TrainingBuffer",
    "LabelEncoder",
    "encoder_for",
    "fit_features",
    # Privacy
    "PrivacyBudget",
    "PrivacyAccountant",
    "NoiseSource",
    "make_noise_source",
    # Updates & aggregation
    "GradientUpdate",
    "GradientValidator",
    "RobustAggregator",
    "AggregationMethod",
    "AggregationResult",
    # Monitoring
    "PoisoningMonitor",
    "PoisoningReport",
    # Rounds
    "RoundCoordinator",
    "RoundOutcome",
    "RoundState",
    "create_round_coordinator",
    "AggregationServer",
    "InMemoryTransport",
    "create_aggregation_server",
    # Configuration
    "FederationConfig",
    # Errors
    "FederatedError",
    "ShapeError",
    "BudgetExhausted",
    "RoundError",
    "InsufficientParticipants",
    "AllParticipantsRejected",
    "SuspectedPoisoning",
    "NetworkTimeout",
]
