"""Model snapshot persistence keyed by node id."""

import json
import re
from pathlib import Path
from typing import Optional, Protocol

import numpy as np
import structlog

from sentinel_fl.exceptions import ShapeError
from sentinel_fl.model import LocalModel, initialize_model
from sentinel_fl.topology import ParameterTree, Topology

logger = structlog.get_logger(__name__)

_SAFE_NODE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class SnapshotStore(Protocol):
    """Stores one model snapshot per node."""

    def save(self, node_id: str, model: LocalModel) -> None: ...

    def load(self, node_id: str) -> Optional[LocalModel]: ...


class FileSnapshotStore:
    """Snapshots stored as ``<directory>/<node_id>.npz``."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.logger = logger.bind(component="FileSnapshotStore")

    def _path(self, node_id: str) -> Path:
        if not _SAFE_NODE_ID.match(node_id):
            msg = f"Node id {node_id!r} is not usable as a file name"
            raise ValueError(msg)
        return self.directory / f"{node_id}.npz"

    def save(self, node_id: str, model: LocalModel) -> None:
        """Write the snapshot, replacing any previous one atomically."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(node_id)
        tmp_path = path.with_suffix(".tmp.npz")

        arrays = {}
        for index, (weights, biases) in enumerate(model.parameters):
            arrays[f"w{index}"] = weights
            arrays[f"b{index}"] = biases
        meta = {"topology": model.topology.to_pairs(), "version": model.topology.version}

        np.savez(tmp_path, meta=np.array(json.dumps(meta)), **arrays)
        tmp_path.replace(path)
        self.logger.info("snapshot_saved", node_id=node_id, path=str(path))

    def load(self, node_id: str) -> Optional[LocalModel]:
        """Read a snapshot, or None if the node has none."""
        path = self._path(node_id)
        if not path.exists():
            return None

        with np.load(path, allow_pickle=False) as data:
            meta = json.loads(str(data["meta"]))
            topology = Topology.from_pairs(meta["topology"], version=meta["version"])
            layers = [
                (data[f"w{i}"], data[f"b{i}"]) for i in range(topology.layer_count)
            ]
        model = LocalModel(topology=topology, parameters=ParameterTree(layers))
        self.logger.info("snapshot_loaded", node_id=node_id, path=str(path))
        return model


def load_or_initialize(
    store: SnapshotStore,
    node_id: str,
    topology: Topology,
    rng: np.random.Generator,
) -> LocalModel:
    """Restore the node's model or create and persist a fresh one.

    Raises:
        ShapeError: If the stored snapshot has a different topology
    """
    model = store.load(node_id)
    if model is not None:
        if model.topology.to_pairs() != topology.to_pairs():
            msg = (
                f"Snapshot for {node_id} has topology {model.topology.to_pairs()}, "
                f"expected {topology.to_pairs()}"
            )
            raise ShapeError(msg)
        return model

    model = initialize_model(topology, rng)
    store.save(node_id, model)
    logger.info("model_initialized_fresh", node_id=node_id)
    return model
