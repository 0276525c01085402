"""Tests for model snapshot persistence."""

import numpy as np
import pytest

from sentinel_fl.exceptions import ShapeError
from sentinel_fl.storage import FileSnapshotStore, load_or_initialize
from sentinel_fl.topology import Topology


class TestFileSnapshotStore:
    """Test FileSnapshotStore class."""

    def test_save_and_load(self, tmp_path, small_model):
        """Test a saved snapshot loads back identically."""
        store = FileSnapshotStore(tmp_path / "snapshots")

        store.save("node-a", small_model)
        loaded = store.load("node-a")

        assert loaded.topology == small_model.topology
        assert loaded.parameters.allclose(small_model.parameters, rtol=0, atol=0)
        assert (tmp_path / "snapshots" / "node-a.npz").exists()
        assert not list((tmp_path / "snapshots").glob("*.tmp.npz"))

    def test_missing_snapshot(self, tmp_path):
        """Test unknown nodes have no snapshot."""
        assert FileSnapshotStore(tmp_path).load("ghost") is None

    def test_overwrite(self, tmp_path, small_model):
        """Test saving again replaces the snapshot."""
        store = FileSnapshotStore(tmp_path)
        store.save("node-a", small_model)

        small_model.parameters.fill_(0.25)
        store.save("node-a", small_model)

        assert np.all(store.load("node-a").parameters.flatten() == 0.25)

    def test_unsafe_node_id(self, tmp_path, small_model):
        """Test node ids cannot escape the directory."""
        with pytest.raises(ValueError):
            FileSnapshotStore(tmp_path).save("../evil", small_model)


class TestLoadOrInitialize:
    """Test load_or_initialize."""

    def test_fresh_node(self, tmp_path, small_topology, rng):
        """Test a new node is initialized and persisted."""
        store = FileSnapshotStore(tmp_path)

        model = load_or_initialize(store, "node-a", small_topology, rng)

        assert model.parameters.matches(small_topology)
        assert store.load("node-a").parameters.allclose(model.parameters, rtol=0, atol=0)

    def test_existing_node(self, tmp_path, small_model, small_topology, rng):
        """Test a stored model is restored instead of re-initialized."""
        store = FileSnapshotStore(tmp_path)
        store.save("node-a", small_model)

        model = load_or_initialize(store, "node-a", small_topology, rng)

        assert model.parameters.allclose(small_model.parameters, rtol=0, atol=0)

    def test_topology_mismatch(self, tmp_path, small_model, rng):
        """Test a snapshot of another topology is refused."""
        store = FileSnapshotStore(tmp_path)
        store.save("node-a", small_model)

        with pytest.raises(ShapeError):
            load_or_initialize(store, "node-a", Topology.from_pairs([[4, 2]]), rng)
