"""Tests for stack composition and the concrete web/prod scenario."""

from __future__ import annotations

from vmstack.composer import (
    IAP_SOURCE_RANGE,
    PLACEHOLDER_METADATA_KEY,
    REQUIRED_APIS,
    build_instance_payload,
    compose,
)
from vmstack.config import SessionContext
from vmstack.derivation import derive
from vmstack.models import StackInput
from vmstack.nodes import NodeId, NodeKind, OutputRef

SUBNET = "projects/my-project-123/regions/us-central1/subnetworks/app"


def make_stack(**overrides: object) -> StackInput:
    values: dict[str, object] = {
        "instance_name": "web",
        "name_suffix": "prod",
        "subnetwork": SUBNET,
    }
    values.update(overrides)
    return StackInput(**values)


class TestWebProdScenario:
    """The web/prod stack composes exactly the expected nodes."""

    def test_nodes(self, web_stack: StackInput, session: SessionContext) -> None:
        """Test the active node set."""
        composition = compose(web_stack, session)
        active = {node.id for node in composition.active_nodes}

        assert composition.derived.instance_name == "web-vm-prod"
        assert NodeId(NodeKind.COMPUTE_INSTANCE, "web-vm-prod") in active
        assert NodeId(NodeKind.SERVICE_ACCOUNT, "web-prod") in active
        assert NodeId(NodeKind.EXTERNAL_IP, "web-prod") in active
        assert NodeId(NodeKind.FIREWALL, "web-vm-prod-allow-login") in active
        assert NodeId(NodeKind.FIREWALL, "web-vm-prod-allow-egress") in active
        for service in REQUIRED_APIS:
            assert NodeId(NodeKind.API, service) in active

    def test_login_firewall(self, web_stack: StackInput, session: SessionContext) -> None:
        """Test login is TCP 22/3389 from the IAP range only."""
        composition = compose(web_stack, session)
        node = next(
            n for n in composition.nodes
            if n.id == NodeId(NodeKind.FIREWALL, "web-vm-prod-allow-login")
        )
        assert node.payload["direction"] == "INGRESS"
        assert node.payload["allow"] == [{"protocol": "tcp", "ports": ["22", "3389"]}]
        assert node.payload["source_ranges"] == [IAP_SOURCE_RANGE] == ["35.235.240.0/20"]
        assert node.payload["network"] == OutputRef(composition.instance_id, "network")

    def test_egress_firewall(self, web_stack: StackInput, session: SessionContext) -> None:
        """Test egress allows ICMP, TCP and UDP."""
        composition = compose(web_stack, session)
        node = next(
            n for n in composition.nodes
            if n.id == NodeId(NodeKind.FIREWALL, "web-vm-prod-allow-egress")
        )
        assert node.payload["direction"] == "EGRESS"
        assert {a["protocol"] for a in node.payload["allow"]} == {"icmp", "tcp", "udp"}

    def test_four_grants_for_ops(self, web_stack: StackInput, session: SessionContext) -> None:
        """Test exactly four grants exist, all for ops@example.com."""
        composition = compose(web_stack, session)
        grants = [n for n in composition.active_nodes if n.kind == NodeKind.IAM_GRANT]
        assert len(grants) == 4
        assert {n.payload["member"] for n in grants} == {"group:ops@example.com"}
        assert {n.payload["scope"] for n in grants} == {"instance", "project", "service_account"}


class TestActivationInComposition:
    """Inactive nodes are kept but flagged."""

    def test_inactive_optional_nodes(self, session: SessionContext) -> None:
        """Test optional nodes exist with active=False when not selected."""
        composition = compose(make_stack(sa_email="robot@example.com"), session)
        by_id = {node.id: node for node in composition.nodes}
        assert by_id[NodeId(NodeKind.EXTERNAL_IP, "web-prod")].active is False
        assert by_id[NodeId(NodeKind.SERVICE_ACCOUNT, "web-prod")].active is False
        assert by_id[NodeId(NodeKind.FIREWALL, "web-vm-prod-allow-login")].active is False
        assert by_id[NodeId(NodeKind.FIREWALL, "web-vm-prod-allow-egress")].active is True

    def test_no_principals_no_grants(self, session: SessionContext) -> None:
        """Test an empty principal set yields zero grant nodes."""
        composition = compose(make_stack(allow_login=True), session)
        assert not [n for n in composition.nodes if n.kind == NodeKind.IAM_GRANT]

    def test_sa_roles_in_sa_payload(self, session: SessionContext) -> None:
        """Test the service account payload carries the full role set."""
        composition = compose(make_stack(sa_roles=["roles/storage.objectViewer"]), session)
        sa = next(n for n in composition.nodes if n.kind == NodeKind.SERVICE_ACCOUNT)
        assert sa.payload["roles"] == sorted(sa.payload["roles"])
        assert "roles/storage.objectViewer" in sa.payload["roles"]
        assert "roles/logging.logWriter" in sa.payload["roles"]


class TestInstancePayload:
    """Tests for the compute instance payload."""

    def test_access_config_omitted(self, session: SessionContext) -> None:
        """Test no address means the access config key is absent, not null."""
        stack = make_stack(create_external_ip=False, source_external_ip="")
        payload = build_instance_payload(stack, session, derive(stack, session))
        assert "access_config" not in payload["network_interface"]

    def test_access_config_literal(self, session: SessionContext) -> None:
        """Test a literal address is placed verbatim."""
        stack = make_stack(source_external_ip="198.51.100.7")
        payload = build_instance_payload(stack, session, derive(stack, session))
        assert payload["network_interface"]["access_config"] == {"nat_ip": "198.51.100.7"}

    def test_access_config_reference(self, session: SessionContext) -> None:
        """Test a created address is a reference to the IP node."""
        stack = make_stack(create_external_ip=True)
        payload = build_instance_payload(stack, session, derive(stack, session))
        assert payload["network_interface"]["access_config"]["nat_ip"] == OutputRef(
            NodeId(NodeKind.EXTERNAL_IP, "web-prod"), "address"
        )

    def test_metadata(self, session: SessionContext) -> None:
        """Test OS Login is on and the placeholder key is present."""
        stack = make_stack()
        payload = build_instance_payload(stack, session, derive(stack, session))
        assert payload["metadata"]["enable-oslogin"] == "TRUE"
        assert PLACEHOLDER_METADATA_KEY in payload["metadata"]

    def test_tags_sorted(self, session: SessionContext) -> None:
        """Test tags render in a stable order."""
        stack = make_stack(network_tags=["web", "https"])
        payload = build_instance_payload(stack, session, derive(stack, session))
        assert payload["tags"] == ["https", "prod", "web"]
