"""Identity binding expansion for OS Login access.

Every login principal needs four independent bindings before an
end-to-end IAP + OS Login session works. None of the four is useful
alone, so the apply report tracks them per principal.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .nodes import Grant, GrantScope, Principal

# (role, scope) pairs granted to every login principal
LOGIN_GRANT_TEMPLATE: tuple[tuple[str, GrantScope], ...] = (
    ("roles/compute.osLogin", GrantScope.INSTANCE),
    ("roles/compute.viewer", GrantScope.PROJECT),
    ("roles/iap.tunnelResourceAccessor", GrantScope.PROJECT),
    ("roles/iam.serviceAccountUser", GrantScope.SERVICE_ACCOUNT),
)


@dataclass(frozen=True)
class GrantBundle:
    """The complete set of grants one principal needs to log in."""

    principal: Principal
    grants: tuple[Grant, ...]


def expand_principal(principal: Principal) -> GrantBundle:
    return GrantBundle(
        principal=principal,
        grants=tuple(
            Grant(principal=principal, role=role, scope=scope)
            for role, scope in LOGIN_GRANT_TEMPLATE
        ),
    )


def expand_grants(principals: Iterable[Principal]) -> list[GrantBundle]:
    """Expand principals into one bundle of four grants each.

    Duplicates are dropped before expansion so a principal listed twice
    never yields duplicate grants.

    Args:
        principals: Login principals (groups and service accounts).

    Returns:
        Bundles ordered by principal.
    """
    return [expand_principal(p) for p in sorted(set(principals))]
