"""Root-level pytest configuration and shared fixtures."""

import numpy as np
import pytest
import structlog

from sentinel_fl.model import initialize_model
from sentinel_fl.topology import ParameterTree, Topology
from sentinel_fl.updates import GradientUpdate


def pytest_configure(config):
    """Register custom markers and configure test environment."""
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "integration: mark test as integration")
    config.addinivalue_line("markers", "cli: mark test as CLI test")

    _configure_test_logging()


def _configure_test_logging() -> None:
    """Configure structlog for test environment with compatible processors."""
    processors = [
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.BoundLogger,
        logger_factory=structlog.PrintLoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=False,  # capture_logs needs uncached loggers
    )


@pytest.fixture
def rng() -> np.random.Generator:
    """Deterministic generator."""
    return np.random.default_rng(42)


@pytest.fixture
def small_topology() -> Topology:
    """Two-layer topology small enough for exact checks."""
    return Topology.from_pairs([[4, 3], [3, 2]])


@pytest.fixture
def small_model(small_topology, rng):
    """Initialized model over the small topology."""
    return initialize_model(small_topology, rng)


@pytest.fixture
def make_update(small_topology):
    """Factory for updates over the small topology from a flat vector."""

    def _make(participant_id: str, vector, round_number: int = 0, sample_count: int = 10):
        tree = ParameterTree.unflatten(np.asarray(vector, dtype=float), small_topology)
        return GradientUpdate(
            participant_id=participant_id,
            round=round_number,
            gradients=tree,
            sample_count=sample_count,
            timestamp=1_700_000_000_000,
        )

    return _make


@pytest.fixture
def classification_data(small_topology, rng):
    """Separable two-class data for the small topology."""
    n = 40
    classes = rng.integers(0, small_topology.output_size, size=n)
    centers = np.array([[2.0, 2.0, 0.0, 0.0], [-2.0, -2.0, 0.0, 0.0]])
    features = centers[classes] + rng.normal(0.0, 0.3, size=(n, small_topology.input_size))
    labels = np.eye(small_topology.output_size)[classes]
    return features, labels
