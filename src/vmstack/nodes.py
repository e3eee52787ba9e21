"""Resource nodes, grants, and per-kind update policies.

A node is one provisionable unit: an identity (kind + logical name), a
desired-state payload, the identities of the nodes it must wait for, and
an activation flag. Payload values that are only known once another node
has executed are expressed as OutputRef placeholders and resolved by the
reconciler.

DESIGN PHILOSOPHY:
- Nodes are plain data; ordering lives in dependency.py
- Activation is decided once (selector.py) and stored on the node
- Update policies are declarative per kind, not scattered through the reconciler
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class NodeKind(str, Enum):
    """Kinds of provisionable units in the stack."""

    API = "api"
    EXTERNAL_IP = "external_ip"
    SERVICE_ACCOUNT = "service_account"
    COMPUTE_INSTANCE = "compute_instance"
    FIREWALL = "firewall"
    IAM_GRANT = "iam_grant"


@dataclass(frozen=True, order=True)
class NodeId:
    """Identity of a node: kind plus logical name.

    The string form ``kind/name`` is used for deterministic tie-breaking,
    state store keys, and report rendering.
    """

    kind: NodeKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> NodeId:
        """Parse a ``kind/name`` string back into a NodeId.

        Raises:
            ValueError: If the string has no kind prefix or the kind is unknown.
        """
        kind, sep, name = value.partition("/")
        if not sep or not name:
            raise ValueError(f"Invalid node id: {value!r}")
        return cls(kind=NodeKind(kind), name=name)


@dataclass(frozen=True)
class OutputRef:
    """A payload value produced by another node at execution time."""

    node_id: NodeId
    field: str

    def __str__(self) -> str:
        return f"${{{self.node_id}.{self.field}}}"


# Rendered in dry-run plans wherever an OutputRef cannot be resolved yet
KNOWN_AFTER_APPLY = "(known after apply)"


@dataclass
class ResourceNode:
    """One provisionable unit in the reconciliation graph."""

    id: NodeId
    payload: dict[str, Any] = field(default_factory=dict)
    depends_on: list[NodeId] = field(default_factory=list)
    active: bool = True
    # API-enablement services this node calls (e.g. "compute.googleapis.com")
    apis: frozenset[str] = field(default_factory=frozenset)

    @property
    def kind(self) -> NodeKind:
        return self.id.kind

    @property
    def name(self) -> str:
        return self.id.name


# =============================================================================
# Grants
# =============================================================================


class PrincipalType(str, Enum):
    """Type tag distinguishing principal references."""

    GROUP = "group"
    SERVICE_ACCOUNT = "serviceAccount"


class GrantScope(str, Enum):
    """Target scope of an access binding."""

    INSTANCE = "instance"
    PROJECT = "project"
    SERVICE_ACCOUNT = "service_account"


@dataclass(frozen=True, order=True)
class Principal:
    """An identity that can be granted roles."""

    type: PrincipalType
    email: str

    @property
    def member(self) -> str:
        """IAM member string, e.g. ``group:ops@example.com``."""
        return f"{self.type.value}:{self.email}"


@dataclass(frozen=True, order=True)
class Grant:
    """One (principal, role, scope) access binding. Never mutated."""

    principal: Principal
    role: str
    scope: GrantScope

    @property
    def node_name(self) -> str:
        return f"{self.principal.member}/{self.role}@{self.scope.value}"


def member_of_grant(node_name: str) -> str:
    """Recover the IAM member from a grant node name."""
    return node_name.split("/", 1)[0]


# =============================================================================
# Update policies
# =============================================================================


@dataclass(frozen=True)
class UpdatePolicy:
    """How a kind reacts to a change at a given payload path.

    Attributes:
        in_place: Paths the provider can mutate without side effects.
        requires_stop: Paths mutable in place only while the resource is stopped.

    Entries are dotted path prefixes; the longest matching prefix wins.
    A changed path matching neither set forces destroy-and-recreate.
    """

    in_place: frozenset[str] = frozenset()
    requires_stop: frozenset[str] = frozenset()

    def classify(self, path: str) -> str:
        """Return "in_place", "requires_stop" or "replace" for a changed path."""
        parts = path.split(".")
        for end in range(len(parts), 0, -1):
            prefix = ".".join(parts[:end])
            if prefix in self.in_place:
                return "in_place"
            if prefix in self.requires_stop:
                return "requires_stop"
        return "replace"


UPDATE_POLICIES: dict[NodeKind, UpdatePolicy] = {
    NodeKind.API: UpdatePolicy(in_place=frozenset({"disable_on_destroy"})),
    NodeKind.EXTERNAL_IP: UpdatePolicy(),
    NodeKind.SERVICE_ACCOUNT: UpdatePolicy(
        in_place=frozenset({"display_name", "description", "roles"}),
    ),
    NodeKind.COMPUTE_INSTANCE: UpdatePolicy(
        in_place=frozenset({
            "tags",
            "labels",
            "metadata",
            "network_interface.access_config",
            "allow_stopping_for_update",
        }),
        requires_stop=frozenset({"machine_type", "service_account"}),
    ),
    NodeKind.FIREWALL: UpdatePolicy(
        in_place=frozenset({
            "allow",
            "source_ranges",
            "destination_ranges",
            "target_tags",
            "priority",
            "description",
        }),
    ),
    # Grants are generated, never mutated: any change replaces the binding
    NodeKind.IAM_GRANT: UpdatePolicy(),
}


def get_update_policy(kind: NodeKind) -> UpdatePolicy:
    return UPDATE_POLICIES.get(kind, UpdatePolicy())
