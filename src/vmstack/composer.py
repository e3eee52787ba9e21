"""Stack composition: derived configuration to concrete resource nodes.

Produces the full node list for one stack, active or not, with
desired-state payloads. Prerequisite edges are added afterwards by
dependency.build_graph() from the declared rules.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .bindings import expand_grants
from .config import SessionContext
from .derivation import DerivedConfig, derive, external_ip_node_id, service_account_node_id
from .models import StackInput
from .nodes import Grant, GrantScope, NodeId, NodeKind, OutputRef, ResourceNode
from .selector import Activation, activation_for

logger = logging.getLogger(__name__)

COMPUTE_API = "compute.googleapis.com"
IAM_API = "iam.googleapis.com"
IAP_API = "iap.googleapis.com"
RESOURCE_MANAGER_API = "cloudresourcemanager.googleapis.com"
REQUIRED_APIS: tuple[str, ...] = (COMPUTE_API, IAM_API, IAP_API, RESOURCE_MANAGER_API)

# Google's published IAP TCP-forwarding source range
IAP_SOURCE_RANGE = "35.235.240.0/20"
LOGIN_PORTS = ("22", "3389")

INSTANCE_SCOPES = ("https://www.googleapis.com/auth/cloud-platform",)

# Metadata key kept on the instance only so its presence never shows up as a diff
PLACEHOLDER_METADATA_KEY = "ssh-keys"


@dataclass
class Composition:
    """Everything composed for one reconciliation run."""

    stack: StackInput
    session: SessionContext
    derived: DerivedConfig
    activation: Activation
    nodes: list[ResourceNode] = field(default_factory=list)

    @property
    def active_nodes(self) -> list[ResourceNode]:
        return [node for node in self.nodes if node.active]

    @property
    def instance_id(self) -> NodeId:
        return NodeId(NodeKind.COMPUTE_INSTANCE, self.derived.instance_name)


def _api_nodes(session: SessionContext) -> list[ResourceNode]:
    return [
        ResourceNode(
            id=NodeId(NodeKind.API, service),
            payload={
                "project": session.project_id,
                "service": service,
                "disable_on_destroy": False,
            },
        )
        for service in REQUIRED_APIS
    ]


def _external_ip_node(
    stack: StackInput, session: SessionContext, derived: DerivedConfig, active: bool
) -> ResourceNode:
    return ResourceNode(
        id=external_ip_node_id(stack),
        payload={
            "name": derived.external_ip_name,
            "project": session.project_id,
            "region": session.region,
            "address_type": "EXTERNAL",
            "network_tier": "PREMIUM",
        },
        active=active,
        apis=frozenset({COMPUTE_API}),
    )


def _service_account_node(
    stack: StackInput, session: SessionContext, derived: DerivedConfig, active: bool
) -> ResourceNode:
    return ResourceNode(
        id=service_account_node_id(stack),
        payload={
            "account_id": derived.service_account_id,
            "project": session.project_id,
            "display_name": f"Service account for {derived.instance_name}",
            "roles": sorted(derived.sa_roles),
        },
        active=active,
        apis=frozenset({IAM_API, RESOURCE_MANAGER_API}),
    )


def build_instance_payload(
    stack: StackInput, session: SessionContext, derived: DerivedConfig
) -> dict[str, Any]:
    """Desired payload for the compute instance.

    The access_config block is present only when an external address
    resolves; omission and a null address mean different things to GCE.
    """
    network_interface: dict[str, Any] = {"subnetwork": stack.subnetwork}
    if derived.external_ip is not None:
        network_interface["access_config"] = {"nat_ip": derived.external_ip}

    return {
        "name": derived.instance_name,
        "project": session.project_id,
        "zone": derived.zone,
        "machine_type": stack.machine_type,
        "boot_disk": {
            "size_gb": stack.disk_size_gb,
            "type": stack.disk_type,
            "image": stack.disk_image,
        },
        "network_interface": network_interface,
        "service_account": {
            "email": derived.service_account_email,
            "scopes": list(INSTANCE_SCOPES),
        },
        "tags": sorted(derived.tags),
        "labels": dict(stack.labels),
        "metadata": {
            "enable-oslogin": "TRUE",
            PLACEHOLDER_METADATA_KEY: "",
        },
        "allow_stopping_for_update": stack.allow_stopping_for_update,
    }


def _firewall_nodes(
    session: SessionContext, derived: DerivedConfig, activation: Activation
) -> list[ResourceNode]:
    network = OutputRef(NodeId(NodeKind.COMPUTE_INSTANCE, derived.instance_name), "network")
    target_tags = sorted(derived.tags)
    login_name = f"{derived.instance_name}-allow-login"
    egress_name = f"{derived.instance_name}-allow-egress"

    return [
        ResourceNode(
            id=NodeId(NodeKind.FIREWALL, login_name),
            payload={
                "name": login_name,
                "project": session.project_id,
                "network": network,
                "direction": "INGRESS",
                "priority": 1000,
                "allow": [{"protocol": "tcp", "ports": list(LOGIN_PORTS)}],
                "source_ranges": [IAP_SOURCE_RANGE],
                "target_tags": target_tags,
                "description": "Allow SSH/RDP through IAP TCP forwarding",
            },
            active=activation.login_firewall,
            apis=frozenset({COMPUTE_API}),
        ),
        ResourceNode(
            id=NodeId(NodeKind.FIREWALL, egress_name),
            payload={
                "name": egress_name,
                "project": session.project_id,
                "network": network,
                "direction": "EGRESS",
                "priority": 1000,
                "allow": [{"protocol": "icmp"}, {"protocol": "tcp"}, {"protocol": "udp"}],
                "destination_ranges": ["0.0.0.0/0"],
                "target_tags": target_tags,
                "description": "Allow all egress from the instance",
            },
            active=activation.egress_firewall,
            apis=frozenset({COMPUTE_API}),
        ),
    ]


def _grant_target(
    grant: Grant, session: SessionContext, derived: DerivedConfig
) -> tuple[dict[str, Any], frozenset[str]]:
    match grant.scope:
        case GrantScope.INSTANCE:
            return (
                {
                    "project": session.project_id,
                    "zone": derived.zone,
                    "instance": derived.instance_name,
                },
                frozenset({COMPUTE_API}),
            )
        case GrantScope.PROJECT:
            return {"project": session.project_id}, frozenset({RESOURCE_MANAGER_API})
        case GrantScope.SERVICE_ACCOUNT:
            return (
                {
                    "project": session.project_id,
                    "service_account_email": derived.service_account_email,
                },
                frozenset({IAM_API}),
            )
    raise ValueError(f"Unsupported grant scope: {grant.scope}")


def _grant_nodes(
    session: SessionContext, derived: DerivedConfig, activation: Activation
) -> list[ResourceNode]:
    nodes: list[ResourceNode] = []
    for bundle in expand_grants(activation.login_principals):
        for grant in bundle.grants:
            target, apis = _grant_target(grant, session, derived)
            nodes.append(
                ResourceNode(
                    id=NodeId(NodeKind.IAM_GRANT, grant.node_name),
                    payload={
                        "member": grant.principal.member,
                        "role": grant.role,
                        "scope": grant.scope.value,
                        "target": target,
                    },
                    apis=apis,
                )
            )
    return nodes


def compose(stack: StackInput, session: SessionContext) -> Composition:
    """Compose every node for a stack.

    Args:
        stack: Validated stack input.
        session: Active provider session.

    Returns:
        Composition holding derived config, activation and all nodes.
        Inactive nodes are kept so reports can explain why they are absent.
    """
    derived = derive(stack, session)
    activation = activation_for(stack)

    nodes: list[ResourceNode] = [
        *_api_nodes(session),
        _external_ip_node(stack, session, derived, activation.external_ip),
        _service_account_node(stack, session, derived, activation.service_account),
        ResourceNode(
            id=NodeId(NodeKind.COMPUTE_INSTANCE, derived.instance_name),
            payload=build_instance_payload(stack, session, derived),
            apis=frozenset({COMPUTE_API}),
        ),
        *_firewall_nodes(session, derived, activation),
        *_grant_nodes(session, derived, activation),
    ]

    logger.info(
        "Stack composed",
        extra={
            "instance": derived.instance_name,
            "zone": derived.zone,
            "node_count": len(nodes),
            "active_count": sum(1 for n in nodes if n.active),
        },
    )
    return Composition(
        stack=stack,
        session=session,
        derived=derived,
        activation=activation,
        nodes=nodes,
    )
