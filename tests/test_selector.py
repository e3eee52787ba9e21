"""Tests for conditional resource selection and grant expansion."""

from __future__ import annotations

from vmstack.bindings import LOGIN_GRANT_TEMPLATE, expand_grants, expand_principal
from vmstack.models import StackInput
from vmstack.nodes import GrantScope, Principal, PrincipalType
from vmstack.selector import activation_for, dedupe_principals

SUBNET = "projects/my-project-123/regions/us-central1/subnetworks/app"


def make_stack(**overrides: object) -> StackInput:
    values: dict[str, object] = {
        "instance_name": "web",
        "name_suffix": "prod",
        "subnetwork": SUBNET,
    }
    values.update(overrides)
    return StackInput(**values)


class TestActivation:
    """Tests for activation predicates."""

    def test_minimal_stack(self) -> None:
        """Test a bare stack activates only the always-on nodes."""
        activation = activation_for(make_stack(sa_email="robot@example.com"))
        assert activation.external_ip is False
        assert activation.service_account is False
        assert activation.login_firewall is False
        assert activation.egress_firewall is True
        assert activation.login_principals == ()

    def test_everything_on(self) -> None:
        """Test every optional node can be activated."""
        activation = activation_for(make_stack(
            create_external_ip=True,
            allow_login=True,
            login_user_groups=["ops@example.com"],
            login_service_accounts=["ci@my-project-123.iam.gserviceaccount.com"],
        ))
        assert activation.external_ip is True
        assert activation.service_account is True
        assert activation.login_firewall is True
        assert activation.grant_principal_count == 2

    def test_groups_before_service_accounts(self) -> None:
        """Test principal order is groups then service accounts."""
        activation = activation_for(make_stack(
            login_user_groups=["z@example.com"],
            login_service_accounts=["a@example.com"],
        ))
        assert [p.type for p in activation.login_principals] == [
            PrincipalType.GROUP,
            PrincipalType.SERVICE_ACCOUNT,
        ]


class TestDedupe:
    """Tests for principal deduplication."""

    def test_case_and_whitespace(self) -> None:
        """Test emails differing in case or padding are one principal."""
        principals = dedupe_principals(
            PrincipalType.GROUP, ["Ops@Example.com", " ops@example.com", "dev@example.com"]
        )
        assert [p.email for p in principals] == ["dev@example.com", "ops@example.com"]

    def test_empty(self) -> None:
        """Test an empty set yields no principals."""
        assert dedupe_principals(PrincipalType.GROUP, []) == []


class TestGrantExpansion:
    """Every principal gets exactly four grants with the right scopes."""

    def test_four_grants_per_principal(self) -> None:
        """Test the bundle shape."""
        bundle = expand_principal(Principal(PrincipalType.GROUP, "ops@example.com"))
        assert len(bundle.grants) == 4
        assert {(g.role, g.scope) for g in bundle.grants} == set(LOGIN_GRANT_TEMPLATE)

    def test_scopes(self) -> None:
        """Test each role lands at its scope."""
        bundle = expand_principal(Principal(PrincipalType.GROUP, "ops@example.com"))
        scopes = {g.role: g.scope for g in bundle.grants}
        assert scopes["roles/compute.osLogin"] == GrantScope.INSTANCE
        assert scopes["roles/compute.viewer"] == GrantScope.PROJECT
        assert scopes["roles/iap.tunnelResourceAccessor"] == GrantScope.PROJECT
        assert scopes["roles/iam.serviceAccountUser"] == GrantScope.SERVICE_ACCOUNT

    def test_duplicates_produce_no_duplicate_grants(self) -> None:
        """Test a repeated principal expands once."""
        ops = Principal(PrincipalType.GROUP, "ops@example.com")
        bundles = expand_grants([ops, ops])
        assert len(bundles) == 1
        grants = [g for b in bundles for g in b.grants]
        assert len(grants) == len(set(grants)) == 4

    def test_same_email_different_types(self) -> None:
        """Test a group and a service account with one email are distinct."""
        bundles = expand_grants([
            Principal(PrincipalType.GROUP, "x@example.com"),
            Principal(PrincipalType.SERVICE_ACCOUNT, "x@example.com"),
        ])
        assert len(bundles) == 2
        names = {g.node_name for b in bundles for g in b.grants}
        assert len(names) == 8

    def test_member_string(self) -> None:
        """Test IAM member formatting."""
        principal = Principal(PrincipalType.SERVICE_ACCOUNT, "a@b.com")
        assert principal.member == "serviceAccount:a@b.com"
