"""Resource dependency ordering and validation.

This module implements dependency management for one stack:
1. Prerequisite edges derived from a declared rules table
2. API-enablement edges from the services each node calls
3. Read-after-write edges from OutputRef placeholders in payloads
4. Topological sorting with deterministic tie-breaking
5. Cycle detection to fail fast on a structurally broken graph

DESIGN PHILOSOPHY:
- Only active nodes enter the graph; edges to inactive kinds are dropped
- A payload reference to a node that is not in the graph is an error,
  never a silently missing edge
- Ties are broken by the node id string so dry-run output is stable

EXAMPLE:
    compute_instance/web-vm-prod depends on
      api/compute.googleapis.com        (it calls the compute API)
      external_ip/web-prod              (its access config uses the address)
      service_account/web-prod          (its attached identity must exist)
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .nodes import NodeId, NodeKind, OutputRef, ResourceNode

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails or a prerequisite did not succeed."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


# Kinds that must complete before a node of the given kind may start,
# whenever a node of that kind is active in the same graph.
PREREQUISITE_KINDS: dict[NodeKind, tuple[NodeKind, ...]] = {
    NodeKind.API: (),
    NodeKind.EXTERNAL_IP: (),
    NodeKind.SERVICE_ACCOUNT: (),
    NodeKind.COMPUTE_INSTANCE: (NodeKind.EXTERNAL_IP, NodeKind.SERVICE_ACCOUNT),
    # Firewalls read the network back from the created instance
    NodeKind.FIREWALL: (NodeKind.COMPUTE_INSTANCE,),
    NodeKind.IAM_GRANT: (NodeKind.COMPUTE_INSTANCE, NodeKind.SERVICE_ACCOUNT),
}


def iter_output_refs(value: Any) -> Iterable[OutputRef]:
    """Yield every OutputRef nested anywhere in a payload value."""
    if isinstance(value, OutputRef):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_output_refs(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from iter_output_refs(item)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of active resource nodes."""

    nodes: dict[NodeId, ResourceNode] = field(default_factory=dict)

    def add_node(self, node: ResourceNode) -> None:
        """Add a node to the graph, replacing any node with the same id."""
        self.nodes[node.id] = node

    def validate(self) -> None:
        """Validate the dependency graph for unknown prerequisites and cycles.

        Raises:
            DependencyError: If a node depends on an id not in the graph.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise DependencyError(
                        f"Node '{node.id}' depends on '{dep}', which is not part of this plan"
                    )

        # Kahn's algorithm for topological sort / cycle detection
        in_degree: dict[NodeId, int] = {node_id: 0 for node_id in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                in_degree[dep] += 1

        queue = [node_id for node_id, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if processed != len(self.nodes):
            cycle_nodes = sorted(str(n) for n, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self) -> list[NodeId]:
        """Return node ids in dependency order (prerequisites first).

        Among nodes that are ready at the same time, the one with the
        smallest id string goes first.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents: dict[NodeId, list[NodeId]] = {node_id: [] for node_id in self.nodes}
        in_degree: dict[NodeId, int] = {node_id: 0 for node_id in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.id)
                in_degree[node.id] += 1

        result: list[NodeId] = []
        queue = [node_id for node_id, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort(key=str)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result


def build_graph(nodes: Iterable[ResourceNode]) -> DependencyGraph:
    """Assemble the dependency graph for the active nodes.

    Args:
        nodes: All composed nodes; inactive ones are excluded.

    Returns:
        A validated DependencyGraph whose nodes carry their prerequisite edges.

    Raises:
        DependencyError: If a payload references a node outside the graph,
            or a node calls an API with no enablement node.
        CyclicDependencyError: If the declared prerequisites form a cycle.
    """
    active = [node for node in nodes if node.active]
    active_ids = {node.id for node in active}
    by_kind: dict[NodeKind, list[NodeId]] = {}
    for node in active:
        by_kind.setdefault(node.kind, []).append(node.id)

    graph = DependencyGraph()
    for node in active:
        deps: set[NodeId] = set(node.depends_on)

        for service in node.apis:
            api_id = NodeId(NodeKind.API, service)
            if api_id not in active_ids:
                raise DependencyError(
                    f"Node '{node.id}' calls {service}, which has no enablement node"
                )
            deps.add(api_id)

        for kind in PREREQUISITE_KINDS.get(node.kind, ()):
            deps.update(by_kind.get(kind, []))

        for ref in iter_output_refs(node.payload):
            if ref.node_id not in active_ids:
                raise DependencyError(
                    f"Node '{node.id}' reads '{ref.field}' from '{ref.node_id}', "
                    "which is not active in this plan"
                )
            deps.add(ref.node_id)

        deps.discard(node.id)
        graph.add_node(dataclasses.replace(node, depends_on=sorted(deps, key=str)))

    graph.validate()

    logger.debug(
        "Dependency graph built",
        extra={
            "node_count": len(graph.nodes),
            "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph
