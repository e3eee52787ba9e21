"""Apply reports, the per-run result ledger, and text rendering.

Every node that was planned appears in the report exactly once, with an
outcome, the outputs it produced, and (for failed or skipped nodes) the
error that stopped it.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import yaml

from .nodes import NodeId, NodeKind, member_of_grant
from .planner import ActionType, Plan


class NodeOutcome(str, Enum):
    """Terminal state of one node in a run."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DESTROYED = "destroyed"
    FAILED = "failed"
    SKIPPED = "skipped"


SUCCESS_OUTCOMES = frozenset({
    NodeOutcome.CREATED,
    NodeOutcome.UPDATED,
    NodeOutcome.UNCHANGED,
    NodeOutcome.DESTROYED,
})


class RunStatus(str, Enum):
    """Overall status of an apply or destroy run."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    TOTAL_FAILURE = "total_failure"


class DuplicateResultError(Exception):
    """Raised when a node's result is recorded twice in one run."""

    pass


@dataclass(frozen=True)
class NodeResult:
    """Immutable outcome record for one node."""

    node_id: NodeId
    outcome: NodeOutcome
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    # "provider", "conflict", "dependency", "timeout" or "unexpected"
    error_kind: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in SUCCESS_OUTCOMES


class ResultLedger:
    """Per-run results, each written at most once.

    Node tasks record concurrently; writes are serialized by a lock.
    """

    def __init__(self) -> None:
        self._results: dict[NodeId, NodeResult] = {}
        self._lock = asyncio.Lock()

    async def record(self, result: NodeResult) -> None:
        """Record a node's result.

        Raises:
            DuplicateResultError: If the node already has a result.
        """
        async with self._lock:
            if result.node_id in self._results:
                raise DuplicateResultError(f"Result for '{result.node_id}' already recorded")
            self._results[result.node_id] = result

    def get(self, node_id: NodeId) -> NodeResult | None:
        return self._results.get(node_id)

    def succeeded(self, node_id: NodeId) -> bool:
        result = self._results.get(node_id)
        return result is not None and result.succeeded

    def results(self) -> dict[NodeId, NodeResult]:
        return dict(self._results)


def partial_principals(results: dict[NodeId, NodeResult]) -> list[str]:
    """Members whose grant bundle applied only in part."""
    by_member: dict[str, list[bool]] = defaultdict(list)
    for node_id, result in results.items():
        if node_id.kind == NodeKind.IAM_GRANT:
            by_member[member_of_grant(node_id.name)].append(result.succeeded)
    return sorted(
        member for member, outcomes in by_member.items()
        if any(outcomes) and not all(outcomes)
    )


@dataclass
class ApplyReport:
    """Result of one apply or destroy run."""

    operation: str
    results: dict[NodeId, NodeResult] = field(default_factory=dict)
    creation_order: list[NodeId] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def status(self) -> RunStatus:
        """success when every node succeeded; total_failure when none did."""
        outcomes = [result.succeeded for result in self.results.values()]
        if all(outcomes):
            return RunStatus.SUCCESS
        if not any(outcomes):
            return RunStatus.TOTAL_FAILURE
        return RunStatus.PARTIAL_FAILURE

    @property
    def partial_principals(self) -> list[str]:
        return partial_principals(self.results)

    def outcome_of(self, node_id: NodeId) -> NodeOutcome:
        return self.results[node_id].outcome

    def counts(self) -> dict[str, int]:
        counts = {outcome.value: 0 for outcome in NodeOutcome}
        for result in self.results.values():
            counts[result.outcome.value] += 1
        return counts

    def nodes_with(self, outcome: NodeOutcome) -> list[NodeId]:
        return [node_id for node_id, r in self.results.items() if r.outcome == outcome]

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "counts": self.counts(),
            "partial_principals": self.partial_principals,
            "creation_order": [str(node_id) for node_id in self.creation_order],
            "results": {
                str(node_id): {
                    "outcome": result.outcome.value,
                    "outputs": result.outputs,
                    "error": result.error,
                    "error_kind": result.error_kind,
                }
                for node_id, result in self.results.items()
            },
        }


# =============================================================================
# Rendering
# =============================================================================

_ACTION_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.REPLACE: "-/+",
    ActionType.NOOP: " ",
    ActionType.CONFLICT: "!",
    ActionType.DESTROY: "-",
}


def render_plan(plan: Plan, show_payloads: bool = False) -> str:
    """Render a plan as text, one line per node in execution order."""
    counts = plan.counts()
    lines = [
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['replace']} to replace, {counts['destroy']} to destroy, "
        f"{counts['conflict']} conflicts, {counts['noop']} unchanged",
        "",
    ]
    for planned in plan.ordered_actions:
        symbol = _ACTION_SYMBOLS[planned.action]
        lines.append(f"{symbol:>3} {planned.node_id}  ({planned.reason})")
        if show_payloads and planned.action != ActionType.NOOP:
            body = yaml.safe_dump(planned.payload, sort_keys=True, default_flow_style=False)
            lines.extend(f"        {line}" for line in body.rstrip().splitlines())
    return "\n".join(lines)


def render_report(report: ApplyReport) -> str:
    """Render an apply/destroy report as text."""
    counts = report.counts()
    summary = ", ".join(f"{count} {name}" for name, count in counts.items() if count)
    lines = [
        f"{report.operation.capitalize()} {report.status.value}: {summary or 'nothing to do'}",
        "",
    ]
    for node_id, result in report.results.items():
        line = f"  {result.outcome.value:<9} {node_id}"
        if result.error:
            line += f"  [{result.error_kind}] {result.error}"
        lines.append(line)
    if report.partial_principals:
        lines.append("")
        lines.append(
            "Principals with incomplete login access: " + ", ".join(report.partial_principals)
        )
    return "\n".join(lines)
