"""Dry-run planning: desired payloads versus last-applied state.

For every active node, in dependency order, the planner decides one
action and a human-readable reason:

    create    no record in the state store
    update    significant changes, all mutable in place
    replace   at least one change the provider cannot apply in place
    conflict  a change needs the instance stopped, and stopping is not allowed
    noop      nothing significant changed
    destroy   a state record with no active node behind it

Planning never calls the provider. Placeholders whose producer has not
run yet (or is about to be recreated) render as "(known after apply)".
The only error a dry run can raise for a well-formed stack is
StackValidationError, from compose_and_plan().
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .composer import Composition, compose
from .config import SessionContext
from .dependency import DependencyGraph, build_graph
from .diff_normalizer import FieldChange, PayloadDiffProcessor
from .models import StackInput, validate_stack
from .nodes import (
    KNOWN_AFTER_APPLY,
    NodeId,
    NodeKind,
    OutputRef,
    ResourceNode,
    get_update_policy,
)
from .state import StateStore

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Action the reconciler will take for one node."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    NOOP = "noop"
    CONFLICT = "conflict"
    DESTROY = "destroy"


# Outputs a replacement carries over, keyed by the payload path they derive from
REPLACEMENT_STABLE_OUTPUTS: dict[tuple[NodeKind, str], str] = {
    (NodeKind.COMPUTE_INSTANCE, "network"): "network_interface.subnetwork",
}


@dataclass(frozen=True)
class PlannedAction:
    """Decision for one node, with the evidence behind it."""

    node_id: NodeId
    action: ActionType
    reason: str
    changes: tuple[FieldChange, ...] = ()
    requires_stop: bool = False
    # Desired payload as far as it is known at plan time
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def changed_paths(self) -> list[str]:
        return [change.path for change in self.changes]


@dataclass
class Plan:
    """Ordered actions for one reconciliation run."""

    graph: DependencyGraph
    order: list[NodeId] = field(default_factory=list)
    actions: dict[NodeId, PlannedAction] = field(default_factory=dict)
    # State-only nodes, in reverse creation order
    destroy_order: list[NodeId] = field(default_factory=list)

    def action_for(self, node_id: NodeId) -> PlannedAction:
        return self.actions[node_id]

    @property
    def ordered_actions(self) -> list[PlannedAction]:
        return [self.actions[node_id] for node_id in [*self.order, *self.destroy_order]]

    def counts(self) -> dict[str, int]:
        counts = {action.value: 0 for action in ActionType}
        for planned in self.actions.values():
            counts[planned.action.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(a.action != ActionType.NOOP for a in self.actions.values())


# =============================================================================
# Placeholder resolution
# =============================================================================


def resolve_refs(value: Any, lookup: Callable[[OutputRef], Any]) -> Any:
    """Return a copy of value with every OutputRef replaced via lookup."""
    if isinstance(value, OutputRef):
        return lookup(value)
    if isinstance(value, dict):
        return {key: resolve_refs(item, lookup) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_refs(item, lookup) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve_refs(item, lookup) for item in value)
    return value


def format_value(value: Any) -> str:
    """Render a payload value for a reason string.

    Lists render as sorted sets ("{a,b}") since every list field the
    stack produces is semantically unordered.
    """
    if value is None:
        return "(absent)"
    if isinstance(value, list | tuple):
        return "{" + ",".join(sorted(str(item) for item in value)) + "}"
    return str(value)


def describe_change(change: FieldChange) -> str:
    return (
        f"{change.path} changed from {format_value(change.before)} "
        f"to {format_value(change.after)}"
    )


# =============================================================================
# Planner
# =============================================================================


class Planner:
    """Computes a Plan from a dependency graph and the state store."""

    def __init__(self, diff_processor: PayloadDiffProcessor | None = None) -> None:
        self._diff = diff_processor or PayloadDiffProcessor()

    def plan(self, composition: Composition, state: StateStore) -> Plan:
        """Plan every active node of a composition.

        Raises:
            DependencyError: If the composed graph is structurally broken.
        """
        return self.plan_graph(build_graph(composition.nodes), state)

    def plan_graph(self, graph: DependencyGraph, state: StateStore) -> Plan:
        plan = Plan(graph=graph, order=graph.topological_sort())

        for node_id in plan.order:
            plan.actions[node_id] = self._plan_node(graph.nodes[node_id], state, plan)

        orphans = [
            node_id for node_id in reversed(state.creation_order())
            if node_id not in graph.nodes
        ]
        for node_id in orphans:
            record = state.get(node_id)
            plan.actions[node_id] = PlannedAction(
                node_id=node_id,
                action=ActionType.DESTROY,
                reason="destroy: no longer part of the desired state",
                payload=dict(record.payload) if record else {},
            )
        plan.destroy_order = orphans

        logger.info("Plan computed", extra={"counts": plan.counts()})
        return plan

    def _planned_output(self, ref: OutputRef, state: StateStore, plan: Plan) -> Any:
        producer = plan.actions.get(ref.node_id)
        if producer is not None and producer.action == ActionType.CREATE:
            return KNOWN_AFTER_APPLY
        if producer is not None and producer.action == ActionType.REPLACE:
            source = REPLACEMENT_STABLE_OUTPUTS.get((ref.node_id.kind, ref.field))
            if source is None or any(
                path == source or path.startswith(source + ".")
                for path in producer.changed_paths
            ):
                return KNOWN_AFTER_APPLY
        record = state.get(ref.node_id)
        if record is None or ref.field not in record.outputs:
            return KNOWN_AFTER_APPLY
        return record.outputs[ref.field]

    def _plan_node(self, node: ResourceNode, state: StateStore, plan: Plan) -> PlannedAction:
        desired = resolve_refs(node.payload, lambda ref: self._planned_output(ref, state, plan))
        record = state.get(node.id)

        if record is None:
            return PlannedAction(
                node_id=node.id,
                action=ActionType.CREATE,
                reason="create: no observed state",
                payload=desired,
            )

        result = self._diff.diff(node.kind.value, record.payload, desired)
        if not result.has_changes:
            return PlannedAction(
                node_id=node.id,
                action=ActionType.NOOP,
                reason="unchanged",
                payload=desired,
            )

        policy = get_update_policy(node.kind)
        classified = [(change, policy.classify(change.path)) for change in result.changes]
        changes = tuple(result.changes)

        replacing = [change for change, kind in classified if kind == "replace"]
        if replacing:
            return PlannedAction(
                node_id=node.id,
                action=ActionType.REPLACE,
                reason="replace: " + "; ".join(describe_change(c) for c in replacing),
                changes=changes,
                payload=desired,
            )

        stopping = [change.path for change, kind in classified if kind == "requires_stop"]
        if stopping and not desired.get("allow_stopping_for_update", False):
            return PlannedAction(
                node_id=node.id,
                action=ActionType.CONFLICT,
                reason=(
                    f"conflict: {', '.join(stopping)} can only change while the instance "
                    "is stopped and allow_stopping_for_update is false"
                ),
                changes=changes,
                requires_stop=True,
                payload=desired,
            )

        return PlannedAction(
            node_id=node.id,
            action=ActionType.UPDATE,
            reason="update: " + "; ".join(describe_change(c) for c in result.changes),
            changes=changes,
            requires_stop=bool(stopping),
            payload=desired,
        )


def compose_and_plan(
    stack: StackInput,
    session: SessionContext,
    state: StateStore,
    planner: Planner | None = None,
) -> tuple[Composition, Plan]:
    """Validate, compose and plan a stack without touching the provider.

    Raises:
        StackValidationError: If the stack input is structurally invalid.
    """
    validate_stack(stack)
    composition = compose(stack, session)
    plan = (planner or Planner()).plan(composition, state)
    return composition, plan
