"""Conditional resource selection.

Decides, once per run, which optional nodes participate. Activation is an
explicit boolean per node, evaluated up front, rather than a repetition
count resolved while the graph is being walked.

| Node                          | Active when                         |
|-------------------------------|-------------------------------------|
| external IP                   | create_external_ip                  |
| service account (new)         | sa_email == ""                      |
| login firewall                | allow_login                         |
| egress firewall               | always                              |
| per-group grants              | once per element of login_user_groups |
| per-service-account grants    | once per element of login_service_accounts |
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .models import StackInput
from .nodes import Principal, PrincipalType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Activation:
    """Activation predicates for every optional node in the stack."""

    external_ip: bool
    service_account: bool
    login_firewall: bool
    egress_firewall: bool
    login_principals: tuple[Principal, ...]

    @property
    def grant_principal_count(self) -> int:
        return len(self.login_principals)


def dedupe_principals(
    principal_type: PrincipalType,
    emails: Iterable[str],
) -> list[Principal]:
    """Deduplicate a principal set and give it a stable order.

    Principal sets are semantically unordered; emails are compared
    case-insensitively since IAM treats them that way.
    """
    seen: dict[str, Principal] = {}
    for email in emails:
        key = email.strip().lower()
        if key and key not in seen:
            seen[key] = Principal(type=principal_type, email=key)
    return sorted(seen.values())


def activation_for(stack: StackInput) -> Activation:
    """Evaluate every activation predicate for a stack.

    An empty principal set yields no principals, and therefore zero grant
    nodes for that family.
    """
    principals = [
        *dedupe_principals(PrincipalType.GROUP, stack.login_user_groups),
        *dedupe_principals(PrincipalType.SERVICE_ACCOUNT, stack.login_service_accounts),
    ]

    activation = Activation(
        external_ip=stack.create_external_ip,
        service_account=stack.sa_email == "",
        login_firewall=stack.allow_login,
        egress_firewall=True,
        login_principals=tuple(principals),
    )

    logger.debug(
        "Activation evaluated",
        extra={
            "external_ip": activation.external_ip,
            "service_account": activation.service_account,
            "login_firewall": activation.login_firewall,
            "principals": activation.grant_principal_count,
        },
    )
    return activation
