"""Plan execution: create, update, replace and destroy against the provider.

This module implements one reconciliation run:
1. Validate the stack, compose nodes, and plan against the state store
2. Run every API-enablement node; stop here if any of them failed
3. Run every other node as its own task, each waiting on its prerequisites
4. Destroy state-only nodes in reverse creation order
5. Record a result for every node and log a run summary

CONCURRENCY:
Independent branches run in parallel. A semaphore bounds the number of
provider calls in flight. A node whose prerequisite failed or was skipped
is itself skipped; nothing else is aborted.

READ-AFTER-WRITE:
A freshly created instance does not always expose its network at once.
The reconciler reads the instance, then its subnetwork, and retries
NotReadyError with the same bounded backoff used for throttling. A not-found
read right after a write counts as not ready. State is written as soon
as a create or update returns, so a failed read-back never hides a
resource that exists; the next run re-reads its missing outputs.
A replacement drops the old record once the delete succeeds.

SECURITY: Timeouts are enforced on every provider call to prevent
indefinite hangs. A timeout is terminal for the node.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from .composer import compose
from .config import Config
from .dependency import DependencyError
from .diff_normalizer import PayloadDiffProcessor
from .models import StackInput, validate_stack
from .nodes import NodeId, NodeKind, OutputRef, ResourceNode
from .planner import ActionType, Plan, PlannedAction, Planner, resolve_refs
from .provider import NotReadyError, ProviderError, ResourceNotFoundError, ResourceProvider
from .report import ApplyReport, NodeOutcome, NodeResult, ResultLedger, RunStatus
from .state import StateRecord, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Observed fields kept as outputs, per kind; the first one is mandatory
OUTPUT_FIELDS: dict[NodeKind, tuple[str, ...]] = {
    NodeKind.EXTERNAL_IP: ("address", "self_link"),
    NodeKind.SERVICE_ACCOUNT: ("email", "unique_id"),
    NodeKind.FIREWALL: ("self_link",),
}

# The instance's mandatory output comes from its subnetwork, not its own record
INSTANCE_REQUIRED_OUTPUT = "network"


def observed_outputs(node: ResourceNode, observed: dict[str, Any]) -> dict[str, Any]:
    """Outputs already present in a create or update response."""
    if node.kind == NodeKind.COMPUTE_INSTANCE:
        fields: tuple[str, ...] = ("self_link",)
    else:
        fields = OUTPUT_FIELDS.get(node.kind, ())
    return {name: observed[name] for name in fields if observed.get(name) is not None}


def has_required_outputs(kind: NodeKind, outputs: dict[str, Any]) -> bool:
    if kind == NodeKind.COMPUTE_INSTANCE:
        return bool(outputs.get(INSTANCE_REQUIRED_OUTPUT))
    fields = OUTPUT_FIELDS.get(kind, ())
    return not fields or bool(outputs.get(fields[0]))


class ConflictError(Exception):
    """Raised when a change cannot be applied without a forbidden stop.

    Reported against the node and never retried.
    """

    pass


class Reconciler:
    """Executes plans for one stack against a provider and a state store."""

    def __init__(
        self,
        config: Config,
        provider: ResourceProvider,
        state: StateStore,
        diff_processor: PayloadDiffProcessor | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._state = state
        self._planner = Planner(diff_processor)
        self._semaphore = asyncio.Semaphore(config.max_parallel_operations)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def planner(self) -> Planner:
        return self._planner

    def plan(self, stack: StackInput) -> Plan:
        """Validate, compose and plan without any provider call.

        Raises:
            StackValidationError: If the stack input is structurally invalid.
        """
        validate_stack(stack)
        return self._planner.plan(compose(stack, self._config.session), self._state)

    async def apply(self, stack: StackInput) -> ApplyReport:
        """Converge the provider to the stack's desired state.

        Raises:
            StackValidationError: If the stack input is structurally invalid.
            DependencyError: If the composed graph is structurally broken.
        """
        return await self.apply_plan(self.plan(stack))

    # =========================================================================
    # Apply
    # =========================================================================

    async def apply_plan(self, plan: Plan) -> ApplyReport:
        report = ApplyReport(operation="apply")
        ledger = ResultLedger()
        self._semaphore = asyncio.Semaphore(self._config.max_parallel_operations)
        events = {node_id: asyncio.Event() for node_id in plan.order}

        api_ids = [node_id for node_id in plan.order if node_id.kind == NodeKind.API]
        other_ids = [node_id for node_id in plan.order if node_id.kind != NodeKind.API]

        logger.info(
            "Apply started",
            extra={"node_count": len(plan.order), "destroy_count": len(plan.destroy_order)},
        )

        await asyncio.gather(
            *(self._run_node(plan, node_id, ledger, events) for node_id in api_ids)
        )

        failed_apis = [str(node_id) for node_id in api_ids if not ledger.succeeded(node_id)]
        if failed_apis:
            error = f"API enablement failed: {', '.join(failed_apis)}"
            logger.error("API enablement failed, skipping remaining nodes", extra={
                "failed": failed_apis,
            })
            for node_id in [*other_ids, *plan.destroy_order]:
                await ledger.record(NodeResult(
                    node_id=node_id,
                    outcome=NodeOutcome.SKIPPED,
                    error=error,
                    error_kind="dependency",
                ))
        else:
            await asyncio.gather(
                *(self._run_node(plan, node_id, ledger, events) for node_id in other_ids)
            )
            for node_id in plan.destroy_order:
                await ledger.record(await self._destroy_node(node_id))

        results = ledger.results()
        report.results = {
            node_id: results[node_id] for node_id in [*plan.order, *plan.destroy_order]
        }
        report.creation_order = self._state.creation_order()
        report.end_time = datetime.now(UTC)
        self._log_report(report)
        return report

    async def _run_node(
        self,
        plan: Plan,
        node_id: NodeId,
        ledger: ResultLedger,
        events: dict[NodeId, asyncio.Event],
    ) -> None:
        """Wait for prerequisites, execute one node, record its result."""
        node = plan.graph.nodes[node_id]
        try:
            for dep in node.depends_on:
                await events[dep].wait()

            blocked = [dep for dep in node.depends_on if not ledger.succeeded(dep)]
            if blocked:
                error = DependencyError(f"Prerequisite '{blocked[0]}' did not succeed")
                logger.warning(
                    "Skipping node",
                    extra={"node": str(node_id), "blocked_by": [str(b) for b in blocked]},
                )
                await ledger.record(NodeResult(
                    node_id=node_id,
                    outcome=NodeOutcome.SKIPPED,
                    error=str(error),
                    error_kind="dependency",
                ))
                return

            result = await self._execute_node(node, plan.action_for(node_id), ledger)
            await ledger.record(result)
        finally:
            events[node_id].set()

    async def _execute_node(
        self,
        node: ResourceNode,
        planned: PlannedAction,
        ledger: ResultLedger,
    ) -> NodeResult:
        """Execute one planned action, converting node-local errors to a result."""
        try:
            return await self._execute_action(node, planned, ledger)
        except ConflictError as e:
            error_kind = "conflict"
            error: Exception = e
        except ProviderError as e:
            error_kind = "provider"
            error = e
        except DependencyError as e:
            error_kind = "dependency"
            error = e
        except TimeoutError as e:
            error_kind = "timeout"
            error = e
        except Exception as e:
            logger.exception("Unexpected error executing node", extra={"node": str(node.id)})
            error_kind = "unexpected"
            error = e

        message = str(error) or type(error).__name__
        logger.error(
            "Node failed",
            extra={"node": str(node.id), "error_kind": error_kind, "error": message},
        )
        return NodeResult(
            node_id=node.id,
            outcome=NodeOutcome.FAILED,
            error=message,
            error_kind=error_kind,
        )

    async def _execute_action(
        self,
        node: ResourceNode,
        planned: PlannedAction,
        ledger: ResultLedger,
    ) -> NodeResult:
        kind, name = node.kind, node.name

        match planned.action:
            case ActionType.NOOP:
                record = self._state.get(node.id)
                outputs = dict(record.outputs) if record else {}
                if record is not None and not has_required_outputs(node.kind, outputs):
                    # An earlier read-back did not finish; the resource itself exists
                    logger.info("Re-reading outputs", extra={"node": str(node.id)})
                    outputs = await self._collect_outputs(node, outputs)
                if record is not None and (
                    outputs != record.outputs
                    or list(record.depends_on) != list(node.depends_on)
                ):
                    self._state.put(StateRecord(
                        node_id=node.id,
                        payload=record.payload,
                        outputs=outputs,
                        depends_on=tuple(node.depends_on),
                    ))
                logger.debug("Node unchanged", extra={"node": str(node.id)})
                return NodeResult(node_id=node.id, outcome=NodeOutcome.UNCHANGED, outputs=outputs)

            case ActionType.CONFLICT:
                raise ConflictError(planned.reason)

            case ActionType.CREATE:
                payload = self._resolve_payload(node, ledger)
                logger.info("Creating node", extra={"node": str(node.id)})
                observed = await self._call_provider(
                    node.id, "create", lambda: self._provider.create(kind, name, payload)
                )
                self._record_state(node, payload, observed_outputs(node, observed), created=True)
                outputs = await self._collect_outputs(node, observed)
                self._record_state(node, payload, outputs, created=False)
                return NodeResult(node_id=node.id, outcome=NodeOutcome.CREATED, outputs=outputs)

            case ActionType.UPDATE:
                payload = self._resolve_payload(node, ledger)
                record = self._state.get(node.id)
                previous_outputs = dict(record.outputs) if record else {}
                logger.info(
                    "Updating node",
                    extra={"node": str(node.id), "changed_paths": planned.changed_paths},
                )
                observed = await self._call_provider(
                    node.id,
                    "update",
                    lambda: self._provider.update(kind, name, payload, planned.changed_paths),
                )
                self._record_state(
                    node,
                    payload,
                    {**previous_outputs, **observed_outputs(node, observed)},
                    created=False,
                )
                outputs = await self._collect_outputs(node, observed)
                self._record_state(node, payload, outputs, created=False)
                return NodeResult(node_id=node.id, outcome=NodeOutcome.UPDATED, outputs=outputs)

            case ActionType.REPLACE:
                payload = self._resolve_payload(node, ledger)
                record = self._state.get(node.id)
                previous = record.payload if record else payload
                logger.info(
                    "Replacing node",
                    extra={"node": str(node.id), "changed_paths": planned.changed_paths},
                )
                await self._call_provider(
                    node.id, "delete", lambda: self._provider.delete(kind, name, previous)
                )
                self._state.remove(node.id)
                observed = await self._call_provider(
                    node.id, "create", lambda: self._provider.create(kind, name, payload)
                )
                self._record_state(node, payload, observed_outputs(node, observed), created=True)
                outputs = await self._collect_outputs(node, observed)
                self._record_state(node, payload, outputs, created=False)
                return NodeResult(node_id=node.id, outcome=NodeOutcome.CREATED, outputs=outputs)

        raise ValueError(f"Unsupported action for active node: {planned.action}")

    def _resolve_payload(self, node: ResourceNode, ledger: ResultLedger) -> dict[str, Any]:
        """Substitute every OutputRef with a value produced in this run or stored earlier."""

        def lookup(ref: OutputRef) -> Any:
            result = ledger.get(ref.node_id)
            if result is not None and ref.field in result.outputs:
                return result.outputs[ref.field]
            record = self._state.get(ref.node_id)
            if record is not None and ref.field in record.outputs:
                return record.outputs[ref.field]
            raise DependencyError(
                f"Node '{node.id}' needs '{ref.field}' from '{ref.node_id}', "
                "which has not been produced"
            )

        return resolve_refs(node.payload, lookup)

    def _record_state(
        self,
        node: ResourceNode,
        payload: dict[str, Any],
        outputs: dict[str, Any],
        *,
        created: bool,
    ) -> None:
        self._state.put(
            StateRecord(
                node_id=node.id,
                payload=payload,
                outputs=outputs,
                depends_on=tuple(node.depends_on),
            ),
            created=created,
        )

    async def _collect_outputs(
        self, node: ResourceNode, observed: dict[str, Any]
    ) -> dict[str, Any]:
        """Extract the outputs dependents may read from an observed record."""
        if node.kind == NodeKind.COMPUTE_INSTANCE:
            return await self._read_instance_network(node)

        fields = OUTPUT_FIELDS.get(node.kind, ())
        if fields and not observed.get(fields[0]):
            observed = await self._call_provider(
                node.id, "read", lambda: self._read_required(node, fields[0])
            )
        return {name: observed[name] for name in fields if observed.get(name) is not None}

    async def _read_back(self, node: ResourceNode) -> dict[str, Any]:
        """Read a node that was just written; a miss is eventual consistency."""
        try:
            return await self._provider.read(node.kind, node.name)
        except ResourceNotFoundError as e:
            raise NotReadyError(f"'{node.id}' is not readable yet: {e}") from e

    async def _read_required(self, node: ResourceNode, required: str) -> dict[str, Any]:
        observed = await self._read_back(node)
        if not observed.get(required):
            raise NotReadyError(f"'{required}' of '{node.id}' is not readable yet")
        return observed

    async def _read_instance_network(self, node: ResourceNode) -> dict[str, Any]:
        """Read the instance back, then its subnetwork, until the network is known."""

        async def read_network() -> dict[str, Any]:
            instance = await self._read_back(node)
            interface = instance.get("network_interface") or {}
            subnetwork = interface.get("subnetwork") or node.payload["network_interface"][
                "subnetwork"
            ]
            try:
                subnet = await self._provider.get_subnetwork(subnetwork)
            except ResourceNotFoundError as e:
                raise NotReadyError(f"Subnetwork {subnetwork} is not readable yet: {e}") from e
            network = subnet.get("network")
            if not network:
                raise NotReadyError(f"Network of subnetwork {subnetwork} is not readable yet")
            return {
                "network": network,
                "self_link": instance.get("self_link"),
                "subnetwork": subnetwork,
            }

        outputs = await self._call_provider(node.id, "read network", read_network)
        return {key: value for key, value in outputs.items() if value is not None}

    async def _call_provider(
        self,
        node_id: NodeId,
        operation: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run a provider call with timeout and exponential backoff retry.

        Only transient ProviderErrors are retried. A timeout is terminal.

        Raises:
            ProviderError: If the call fails permanently or retries run out.
            TimeoutError: If one attempt exceeds the operation timeout.
        """
        max_attempts = self._config.max_provider_attempts
        last_error: ProviderError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                async with self._semaphore:
                    return await asyncio.wait_for(
                        call(), timeout=self._config.operation_timeout_seconds
                    )
            except TimeoutError:
                logger.error(
                    f"Provider {operation} timed out",
                    extra={
                        "node": str(node_id),
                        "timeout_seconds": self._config.operation_timeout_seconds,
                    },
                )
                raise
            except ProviderError as e:
                if not e.transient:
                    raise
                last_error = e

                if attempt < max_attempts:
                    # Exponential backoff with jitter
                    backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        f"Provider {operation} failed, retrying",
                        extra={
                            "node": str(node_id),
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )

                    await asyncio.sleep(wait_time)

        # max_provider_attempts >= 1, so the loop always sets last_error first
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    # =========================================================================
    # Destroy
    # =========================================================================

    async def _destroy_node(self, node_id: NodeId) -> NodeResult:
        """Delete one state-tracked node unless something still depends on it."""
        record = self._state.get(node_id)
        if record is None:
            return NodeResult(node_id=node_id, outcome=NodeOutcome.DESTROYED)

        holders = sorted(
            (other.node_id for other in self._state.records() if node_id in other.depends_on),
            key=str,
        )
        if holders:
            error = DependencyError(f"Still required by '{holders[0]}'")
            logger.warning(
                "Skipping destroy",
                extra={"node": str(node_id), "required_by": [str(h) for h in holders]},
            )
            return NodeResult(
                node_id=node_id,
                outcome=NodeOutcome.SKIPPED,
                error=str(error),
                error_kind="dependency",
            )

        logger.info("Destroying node", extra={"node": str(node_id)})
        try:
            await self._call_provider(
                node_id,
                "delete",
                lambda: self._provider.delete(node_id.kind, node_id.name, record.payload),
            )
        except ProviderError as e:
            logger.error("Destroy failed", extra={"node": str(node_id), "error": str(e)})
            return NodeResult(
                node_id=node_id, outcome=NodeOutcome.FAILED, error=str(e), error_kind="provider"
            )
        except TimeoutError:
            return NodeResult(
                node_id=node_id,
                outcome=NodeOutcome.FAILED,
                error="delete timed out",
                error_kind="timeout",
            )

        self._state.remove(node_id)
        return NodeResult(node_id=node_id, outcome=NodeOutcome.DESTROYED)

    async def destroy(self) -> ApplyReport:
        """Tear down everything in the state store.

        Walks the reverse of the recorded creation order. A node that some
        surviving node still depends on is skipped, so a failed delete
        protects its prerequisites.
        """
        report = ApplyReport(operation="destroy")
        ledger = ResultLedger()
        self._semaphore = asyncio.Semaphore(self._config.max_parallel_operations)
        order = list(reversed(self._state.creation_order()))
        report.creation_order = list(self._state.creation_order())

        logger.info("Destroy started", extra={"node_count": len(order)})
        for node_id in order:
            await ledger.record(await self._destroy_node(node_id))

        report.results = ledger.results()
        report.end_time = datetime.now(UTC)
        self._log_report(report)
        return report

    def _log_report(self, report: ApplyReport) -> None:
        """Log the run summary with structured data."""
        extra: dict[str, Any] = {
            "operation": report.operation,
            "status": report.status.value,
            "duration_seconds": report.duration_seconds,
            "counts": report.counts(),
        }
        if report.partial_principals:
            extra["partial_principals"] = report.partial_principals

        match report.status:
            case RunStatus.SUCCESS:
                logger.info("Run summary", extra=extra)
            case RunStatus.PARTIAL_FAILURE:
                logger.warning("Run summary", extra=extra)
            case RunStatus.TOTAL_FAILURE:
                logger.error("Run summary", extra=extra)
