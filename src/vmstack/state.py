"""Persisted state: what was last provisioned, keyed by node identity.

The store remembers, per node, the payload last applied (with every
OutputRef already resolved), the provider-observed outputs, and the
prerequisites the node had. It also remembers the order in which nodes
were actually created, because teardown walks that order in reverse
rather than a freshly computed one.

SECURITY: State files are size-limited and parsed with yaml.safe_load.
"""

from __future__ import annotations

import copy
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from .config import MAX_STATE_FILE_SIZE_BYTES
from .nodes import NodeId

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStoreError(Exception):
    """Raised when the state store cannot be read or written."""

    pass


@dataclass(frozen=True)
class StateRecord:
    """Last-known state of one node."""

    node_id: NodeId
    payload: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[NodeId, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "payload": copy.deepcopy(self.payload),
            "outputs": copy.deepcopy(self.outputs),
            "depends_on": [str(dep) for dep in self.depends_on],
        }

    @classmethod
    def from_dict(cls, node_id: str, data: dict[str, Any]) -> StateRecord:
        return cls(
            node_id=NodeId.parse(node_id),
            payload=dict(data.get("payload") or {}),
            outputs=dict(data.get("outputs") or {}),
            depends_on=tuple(NodeId.parse(dep) for dep in data.get("depends_on") or []),
        )


class StateStore(Protocol):
    """Reader/writer for last-known state, keyed by node identity."""

    def get(self, node_id: NodeId) -> StateRecord | None:
        """Return the record for node_id, or None if absent."""
        ...

    def put(self, record: StateRecord, *, created: bool = False) -> None:
        """Store a record; created=True appends it to the creation order."""
        ...

    def remove(self, node_id: NodeId) -> None:
        """Forget a node (after it was destroyed)."""
        ...

    def records(self) -> list[StateRecord]:
        """All records, in creation order."""
        ...

    def creation_order(self) -> list[NodeId]:
        """Node ids in the order they were actually created."""
        ...


class MemoryStateStore:
    """In-process state store."""

    def __init__(self, records: list[StateRecord] | None = None) -> None:
        self._records: dict[NodeId, StateRecord] = {}
        self._order: list[NodeId] = []
        for record in records or []:
            self.put(record, created=True)

    def get(self, node_id: NodeId) -> StateRecord | None:
        return self._records.get(node_id)

    def put(self, record: StateRecord, *, created: bool = False) -> None:
        self._records[record.node_id] = record
        if created:
            # A recreated node moves to the end of the creation order
            if record.node_id in self._order:
                self._order.remove(record.node_id)
            self._order.append(record.node_id)
        elif record.node_id not in self._order:
            self._order.append(record.node_id)

    def remove(self, node_id: NodeId) -> None:
        self._records.pop(node_id, None)
        if node_id in self._order:
            self._order.remove(node_id)

    def records(self) -> list[StateRecord]:
        return [self._records[node_id] for node_id in self._order]

    def creation_order(self) -> list[NodeId]:
        return list(self._order)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_FORMAT_VERSION,
            "creation_order": [str(node_id) for node_id in self._order],
            "resources": {
                str(node_id): self._records[node_id].to_dict() for node_id in self._order
            },
        }


class FileStateStore(MemoryStateStore):
    """State store persisted as a YAML document.

    Every mutation is flushed immediately with an atomic replace, so an
    interrupted run leaves the file describing exactly what was built.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            logger.info("No state file, starting empty", extra={"path": str(self._path)})
            return

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            data = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except yaml.YAMLError as e:
            raise StateStoreError(f"Invalid YAML in state file {self._path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise StateStoreError(f"State file must contain a YAML mapping: {self._path}")

        version = data.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state format version {version} in {self._path}"
            )

        resources = data.get("resources") or {}
        order = data.get("creation_order") or list(resources)
        try:
            for node_id in order:
                if node_id in resources:
                    MemoryStateStore.put(
                        self, StateRecord.from_dict(node_id, resources[node_id]), created=True
                    )
        except (ValueError, AttributeError, TypeError) as e:
            raise StateStoreError(f"Malformed state file {self._path}: {e}") from e

        logger.info(
            "Loaded state",
            extra={"path": str(self._path), "resource_count": len(self._records)},
        )

    def _flush(self) -> None:
        content = yaml.safe_dump(self.to_dict(), sort_keys=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".state-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

    def put(self, record: StateRecord, *, created: bool = False) -> None:
        super().put(record, created=created)
        self._flush()

    def remove(self, node_id: NodeId) -> None:
        super().remove(node_id)
        self._flush()
