"""Configuration management for federation nodes and aggregators.

Defaults can be overridden from environment variables or a JSON file.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

from sentinel_fl.aggregation import AggregationMethod
from sentinel_fl.topology import Topology

logger = structlog.get_logger(__name__)

DEFAULT_TOPOLOGY = [[256, 512], [512, 256], [256, 128], [128, 12]]
ENV_PREFIX = "SENTINEL_FL_"


@dataclass
class PrivacyConfig:
    """Differential privacy configuration."""

    epsilon_total: float = 1.0
    delta: float = 1e-5
    clip_norm: float = 1.0
    noise_multiplier: float = 1.1
    max_rounds: int = 100
    input_noise_scale: float = 0.0


@dataclass
class TrainingConfig:
    """Local training configuration."""

    local_epochs: int = 10
    batch_size: int = 32
    learning_rate: float = 0.001
    min_samples: int = 10


@dataclass
class ValidationConfig:
    """Gradient validation configuration."""

    min_magnitude: float = 0.001
    max_magnitude: float = 100.0


@dataclass
class AggregationConfig:
    """Robust aggregation configuration."""

    method: str = "krum"
    honest_fraction: float = 0.6
    anomaly_std_threshold: float = 2.0
    trim_ratio: float = 0.2
    min_quorum: int = 3
    round_deadline_seconds: float = 30.0


@dataclass
class MonitorConfig:
    """Poisoning monitor configuration."""

    performance_drop_threshold: float = 0.1
    weight_magnitude_cap: float = 1000.0


@dataclass
class CoordinatorConfig:
    """Node round coordinator configuration."""

    merge_alpha: float = 0.7
    network_timeout_seconds: float = 30.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    log_file: Optional[str] = None


_SECTIONS = {
    "privacy": PrivacyConfig,
    "training": TrainingConfig,
    "validation": ValidationConfig,
    "aggregation": AggregationConfig,
    "monitor": MonitorConfig,
    "coordinator": CoordinatorConfig,
    "logging": LoggingConfig,
}


@dataclass
class FederationConfig:
    """Main configuration class."""

    node_id: str = "node-0"
    seed: Optional[int] = None
    topology: list[list[int]] = field(default_factory=lambda: [list(p) for p in DEFAULT_TOPOLOGY])
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def build_topology(self) -> Topology:
        return Topology.from_pairs(self.topology)

    def validate(self) -> None:
        """Reject nonsensical values.

        Raises:
            ValueError: If any setting is out of range
        """
        errors = []
        p, a, v = self.privacy, self.aggregation, self.validation

        if p.epsilon_total <= 0:
            errors.append("privacy.epsilon_total must be positive")
        if not 0 < p.delta < 1:
            errors.append("privacy.delta must be in (0, 1)")
        if p.clip_norm <= 0:
            errors.append("privacy.clip_norm must be positive")
        if p.noise_multiplier < 0:
            errors.append("privacy.noise_multiplier must be non-negative")
        if p.max_rounds <= 0:
            errors.append("privacy.max_rounds must be positive")
        if p.input_noise_scale < 0:
            errors.append("privacy.input_noise_scale must be non-negative")
        if not 0 < a.honest_fraction <= 1:
            errors.append("aggregation.honest_fraction must be in (0, 1]")
        if not 0 <= a.trim_ratio < 0.5:
            errors.append("aggregation.trim_ratio must be in [0, 0.5)")
        if a.min_quorum < 1:
            errors.append("aggregation.min_quorum must be at least 1")
        if not 0 <= v.min_magnitude < v.max_magnitude:
            errors.append("validation magnitude window is empty")
        if not 0 <= self.coordinator.merge_alpha <= 1:
            errors.append("coordinator.merge_alpha must be in [0, 1]")
        if self.training.local_epochs <= 0 or self.training.batch_size <= 0:
            errors.append("training.local_epochs and batch_size must be positive")
        try:
            AggregationMethod.parse(a.method)
        except ValueError as e:
            errors.append(str(e))
        try:
            self.build_topology()
        except ValueError as e:
            errors.append(f"topology: {e}")

        if errors:
            msg = "Invalid configuration: " + "; ".join(errors)
            raise ValueError(msg)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FederationConfig":
        """Build from a (possibly partial) nested dictionary."""
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in _SECTIONS:
                section_cls = _SECTIONS[key]
                known = section_cls.__dataclass_fields__
                unknown = set(value) - set(known)
                if unknown:
                    msg = f"Unknown {key} settings: {sorted(unknown)}"
                    raise ValueError(msg)
                kwargs[key] = section_cls(**value)
            elif key in ("node_id", "seed", "topology"):
                kwargs[key] = value
            else:
                msg = f"Unknown configuration key: {key}"
                raise ValueError(msg)
        return cls(**kwargs)

    @classmethod
    def from_file(cls, filepath: Path) -> "FederationConfig":
        """Load configuration from a JSON file."""
        with open(filepath) as f:
            config = cls.from_dict(json.load(f))
        logger.info("config_loaded", path=str(filepath))
        return config

    def to_file(self, filepath: Path) -> None:
        """Save configuration to a JSON file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info("config_saved", path=str(filepath))

    @classmethod
    def from_env(
        cls,
        base: Optional["FederationConfig"] = None,
        prefix: str = ENV_PREFIX,
        environ: Optional[dict[str, str]] = None,
    ) -> "FederationConfig":
        """Apply ``<PREFIX><SECTION>_<FIELD>`` environment overrides.

        For example ``SENTINEL_FL_PRIVACY_EPSILON_TOTAL=2.0`` or
        ``SENTINEL_FL_NODE_ID=alpha``.

        Args:
            base: Configuration to override (defaults to built-in defaults)
            prefix: Environment variable prefix
            environ: Environment mapping (defaults to ``os.environ``)

        Returns:
            Configuration with overrides applied
        """
        env = os.environ if environ is None else environ
        config = base if base is not None else cls()

        if f"{prefix}NODE_ID" in env:
            config.node_id = env[f"{prefix}NODE_ID"]
        if f"{prefix}SEED" in env:
            config.seed = int(env[f"{prefix}SEED"])
        if f"{prefix}TOPOLOGY" in env:
            config.topology = json.loads(env[f"{prefix}TOPOLOGY"])

        for section_name in _SECTIONS:
            section = getattr(config, section_name)
            for field_name, field_def in section.__dataclass_fields__.items():
                key = f"{prefix}{section_name.upper()}_{field_name.upper()}"
                if key in env:
                    setattr(section, field_name, _coerce(env[key], field_def.type))

        return config


def _coerce(raw: str, annotation: Any) -> Any:
    if annotation in (bool, "bool"):
        return raw.lower() in ("1", "true", "yes")
    if annotation in (int, "int"):
        return int(raw)
    if annotation in (float, "float"):
        return float(raw)
    return raw
