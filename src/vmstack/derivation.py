"""Derivation engine: sparse stack input to fully-resolved configuration.

Every function here is pure. Nothing reads the environment, the provider,
or the state store; the only ambient input is the explicit SessionContext.
Derivation is total over well-typed input. Conflicting combinations are
rejected earlier by models.validate_stack(), never here.
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import SessionContext
from .models import StackInput
from .nodes import NodeId, NodeKind, OutputRef

# Roles the instance identity needs to emit logs, metrics and metadata.
# Always granted, regardless of user input.
BASELINE_SA_ROLES: frozenset[str] = frozenset({
    "roles/logging.logWriter",
    "roles/monitoring.metricWriter",
    "roles/stackdriver.resourceMetadata.writer",
})

# GCP service account ids are limited to 30 characters
MAX_SERVICE_ACCOUNT_ID_LENGTH = 30


@dataclass(frozen=True)
class DerivedConfig:
    """Configuration computed once per reconciliation from StackInput."""

    instance_name: str
    zone: str
    tags: frozenset[str]
    external_ip_name: str
    sa_roles: frozenset[str]
    create_new_sa: bool
    service_account_id: str
    # Literal email, or a ref to the service-account node's "email" output
    service_account_email: str | OutputRef
    # Ref to the external-IP node, a literal address, or None (no access config)
    external_ip: str | OutputRef | None


def resolve_instance_name(stack: StackInput) -> str:
    return f"{stack.instance_name}-vm-{stack.name_suffix}"


def resolve_zone(stack: StackInput, session: SessionContext) -> str:
    return f"{session.region}-{stack.zone_suffix}"


def resolve_tags(stack: StackInput) -> frozenset[str]:
    """Network tags plus the name suffix, as an unordered set."""
    return frozenset(stack.network_tags) | {stack.name_suffix}


def resolve_external_ip_name(stack: StackInput) -> str:
    base = stack.external_ip_name or stack.instance_name
    return f"{base}-{stack.name_suffix}"


def resolve_sa_roles(stack: StackInput) -> frozenset[str]:
    return BASELINE_SA_ROLES | frozenset(stack.sa_roles)


def resolve_service_account_id(stack: StackInput) -> str:
    account_id = f"{stack.instance_name}-{stack.name_suffix}"
    return account_id[:MAX_SERVICE_ACCOUNT_ID_LENGTH].rstrip("-")


def external_ip_node_id(stack: StackInput) -> NodeId:
    return NodeId(NodeKind.EXTERNAL_IP, resolve_external_ip_name(stack))


def service_account_node_id(stack: StackInput) -> NodeId:
    return NodeId(NodeKind.SERVICE_ACCOUNT, resolve_service_account_id(stack))


def resolve_external_ip(stack: StackInput) -> str | OutputRef | None:
    """Resolve the instance's external address with three-way precedence.

    1. create_external_ip: the address the external-IP node reports. The
       literal source_external_ip is not read at all on this branch.
    2. a non-empty literal source_external_ip, verbatim.
    3. None: the instance gets no access config block.
    """
    if stack.create_external_ip:
        return OutputRef(external_ip_node_id(stack), "address")
    if stack.source_external_ip:
        return stack.source_external_ip
    return None


def resolve_service_account_email(stack: StackInput) -> str | OutputRef:
    if stack.sa_email == "":
        return OutputRef(service_account_node_id(stack), "email")
    return stack.sa_email


def derive(stack: StackInput, session: SessionContext) -> DerivedConfig:
    """Compute DerivedConfig from StackInput and the session context.

    Args:
        stack: Immutable stack input.
        session: Active provider session (supplies the region).

    Returns:
        Fully-resolved configuration. Values that depend on other nodes'
        execution are OutputRef placeholders.
    """
    return DerivedConfig(
        instance_name=resolve_instance_name(stack),
        zone=resolve_zone(stack, session),
        tags=resolve_tags(stack),
        external_ip_name=resolve_external_ip_name(stack),
        sa_roles=resolve_sa_roles(stack),
        create_new_sa=stack.sa_email == "",
        service_account_id=resolve_service_account_id(stack),
        service_account_email=resolve_service_account_email(stack),
        external_ip=resolve_external_ip(stack),
    )
