"""Pydantic model for the stack input with boundary validation.

The model provides:
1. Type-safe YAML parsing (snake_case or camelCase keys)
2. Field-level validation at the boundary (fail fast, fail loudly)
3. Cross-field validation via validate_stack(), run before any provider call
"""

from __future__ import annotations

import ipaddress
import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

# GCE resource names: lowercase letter first, then letters, digits, hyphens
NAME_PART_PATTERN = r"^[a-z]([a-z0-9-]*[a-z0-9])?$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class StackValidationError(Exception):
    """Raised when a stack input combination is structurally invalid.

    Detected before any provider call; reconciliation does not start.
    """

    pass


class StackInput(BaseModel):
    """User-supplied configuration for one VM stack.

    Immutable for the duration of a reconciliation.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    # Naming
    instance_name: Annotated[str, Field(min_length=1, max_length=40, alias="instanceName")]
    name_suffix: Annotated[str, Field(min_length=1, max_length=16, alias="nameSuffix")]

    # Machine shape and boot disk
    machine_type: str = Field("e2-medium", alias="machineType")
    disk_size_gb: Annotated[int, Field(ge=10, le=65536, alias="diskSizeGb")] = 20
    disk_type: str = Field("pd-balanced", alias="diskType")
    disk_image: str = Field("debian-cloud/debian-12", alias="diskImage")

    # Placement
    subnetwork: Annotated[str, Field(min_length=1)]
    zone_suffix: str = Field("a", alias="zoneSuffix")

    # Flags
    create_external_ip: bool = Field(False, alias="createExternalIp")
    allow_login: bool = Field(False, alias="allowLogin")
    allow_stopping_for_update: bool = Field(False, alias="allowStoppingForUpdate")

    # Optional literals ("" means absent)
    source_external_ip: str = Field("", alias="sourceExternalIp")
    external_ip_name: str = Field("", alias="externalIpName")
    sa_email: str = Field("", alias="saEmail")

    # Sets (semantically unordered)
    sa_roles: list[str] = Field(default_factory=list, alias="saRoles")
    network_tags: list[str] = Field(default_factory=list, alias="networkTags")
    login_user_groups: list[str] = Field(default_factory=list, alias="loginUserGroups")
    login_service_accounts: list[str] = Field(
        default_factory=list, alias="loginServiceAccounts"
    )

    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator(
        "source_external_ip", "external_ip_name", "sa_email", "zone_suffix", mode="before"
    )
    @classmethod
    def none_as_empty(cls, v: str | None) -> str:
        return "" if v is None else v

    @field_validator("sa_roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        for role in v:
            if not role.startswith(("roles/", "projects/", "organizations/")):
                raise ValueError(f"role must be a full role name (roles/...): {role}")
        return v

    @field_validator("login_user_groups", "login_service_accounts")
    @classmethod
    def validate_principals(cls, v: list[str]) -> list[str]:
        for email in v:
            if not re.match(EMAIL_PATTERN, email):
                raise ValueError(f"principal must be an email address: {email}")
        return v


def validate_stack(stack: StackInput) -> None:
    """Check cross-field constraints that the per-field validators cannot.

    Args:
        stack: Parsed stack input.

    Raises:
        StackValidationError: With every violation listed.
    """
    errors: list[str] = []

    for field_name in ("instance_name", "name_suffix", "zone_suffix"):
        value = getattr(stack, field_name)
        if not re.match(NAME_PART_PATTERN, value):
            errors.append(f"{field_name} must match {NAME_PART_PATTERN}: {value!r}")

    if stack.external_ip_name and not re.match(NAME_PART_PATTERN, stack.external_ip_name):
        errors.append(
            f"external_ip_name must match {NAME_PART_PATTERN}: {stack.external_ip_name!r}"
        )

    if stack.create_external_ip and stack.source_external_ip:
        errors.append(
            "source_external_ip cannot be set while create_external_ip is true; "
            "the literal address is only honored when IP creation is disabled"
        )
    elif stack.source_external_ip:
        try:
            ipaddress.IPv4Address(stack.source_external_ip)
        except ValueError:
            errors.append(
                f"source_external_ip must be an IPv4 address: {stack.source_external_ip!r}"
            )

    if stack.sa_email and not re.match(EMAIL_PATTERN, stack.sa_email):
        errors.append(f"sa_email must be an email address: {stack.sa_email!r}")

    if errors:
        raise StackValidationError(
            "Stack validation failed:\n  - " + "\n  - ".join(errors)
        )
