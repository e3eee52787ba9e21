"""Tests for the state stores."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from vmstack.nodes import NodeId, NodeKind
from vmstack.state import FileStateStore, MemoryStateStore, StateRecord, StateStoreError

IP = NodeId(NodeKind.EXTERNAL_IP, "web-prod")
SA = NodeId(NodeKind.SERVICE_ACCOUNT, "web-prod")
INSTANCE = NodeId(NodeKind.COMPUTE_INSTANCE, "web-vm-prod")


class TestMemoryStateStore:
    """Tests for MemoryStateStore."""

    def test_put_and_get(self) -> None:
        """Test records round-trip by id."""
        store = MemoryStateStore()
        record = StateRecord(node_id=IP, payload={"name": "web-prod"}, outputs={"address": "x"})
        store.put(record, created=True)
        assert store.get(IP) == record
        assert store.get(SA) is None

    def test_creation_order(self) -> None:
        """Test creation order follows created puts, not updates."""
        store = MemoryStateStore()
        store.put(StateRecord(node_id=IP), created=True)
        store.put(StateRecord(node_id=SA), created=True)
        store.put(StateRecord(node_id=IP, payload={"updated": True}))
        assert store.creation_order() == [IP, SA]

    def test_recreate_moves_to_end(self) -> None:
        """Test a replaced node counts as created last."""
        store = MemoryStateStore()
        store.put(StateRecord(node_id=IP), created=True)
        store.put(StateRecord(node_id=SA), created=True)
        store.put(StateRecord(node_id=IP), created=True)
        assert store.creation_order() == [SA, IP]

    def test_remove(self) -> None:
        """Test removal forgets the record and its position."""
        store = MemoryStateStore()
        store.put(StateRecord(node_id=IP), created=True)
        store.remove(IP)
        assert store.get(IP) is None
        assert store.creation_order() == []


class TestFileStateStore:
    """Tests for FileStateStore persistence."""

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        """Test a missing file starts an empty store."""
        store = FileStateStore(tmp_path / "state.yaml")
        assert store.records() == []

    def test_persists_every_put(self, tmp_path: Path) -> None:
        """Test the file reflects each mutation immediately."""
        path = tmp_path / "nested" / "state.yaml"
        store = FileStateStore(path)
        store.put(
            StateRecord(
                node_id=INSTANCE,
                payload={"name": "web-vm-prod"},
                outputs={"network": "default"},
                depends_on=(IP, SA),
            ),
            created=True,
        )

        data = yaml.safe_load(path.read_text())
        assert data["creation_order"] == ["compute_instance/web-vm-prod"]
        assert data["resources"]["compute_instance/web-vm-prod"]["depends_on"] == [
            "external_ip/web-prod",
            "service_account/web-prod",
        ]

    def test_reload(self, tmp_path: Path) -> None:
        """Test a second store sees what the first wrote."""
        path = tmp_path / "state.yaml"
        first = FileStateStore(path)
        first.put(StateRecord(node_id=IP, outputs={"address": "203.0.113.10"}), created=True)
        first.put(StateRecord(node_id=INSTANCE, depends_on=(IP,)), created=True)

        second = FileStateStore(path)

        assert second.creation_order() == [IP, INSTANCE]
        assert second.get(IP).outputs == {"address": "203.0.113.10"}
        assert second.get(INSTANCE).depends_on == (IP,)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test unreadable state is an error, not an empty store."""
        path = tmp_path / "state.yaml"
        path.write_text("resources: [\n")
        with pytest.raises(StateStoreError, match="Invalid YAML"):
            FileStateStore(path)

    def test_not_utf8(self, tmp_path: Path) -> None:
        """Test undecodable bytes are reported as a read failure."""
        path = tmp_path / "state.yaml"
        path.write_bytes(b"version: 1\nresources: \xff\n")
        with pytest.raises(StateStoreError, match="Failed to read"):
            FileStateStore(path)

    def test_unknown_version(self, tmp_path: Path) -> None:
        """Test a future format version is rejected."""
        path = tmp_path / "state.yaml"
        path.write_text("version: 99\nresources: {}\n")
        with pytest.raises(StateStoreError, match="Unsupported state format"):
            FileStateStore(path)

    def test_malformed_node_id(self, tmp_path: Path) -> None:
        """Test an unknown kind in the file is reported."""
        path = tmp_path / "state.yaml"
        path.write_text("version: 1\nresources:\n  bogus/thing: {}\n")
        with pytest.raises(StateStoreError, match="Malformed"):
            FileStateStore(path)
