"""Configuration management with validation.

Limits are enforced at configuration load time so that a misconfigured
run fails before any provider call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_PARALLEL_OPERATIONS = 4
MIN_PARALLEL_OPERATIONS = 1
MAX_PARALLEL_OPERATIONS = 32

DEFAULT_MAX_PROVIDER_ATTEMPTS = 5
MAX_PROVIDER_ATTEMPTS = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
MAX_RETRY_BACKOFF_SECONDS = 60.0

# Provider operations are long-running (instance creation can take minutes)
DEFAULT_OPERATION_TIMEOUT_SECONDS = 900
MAX_OPERATION_TIMEOUT_SECONDS = 3600

MAX_STACK_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max stack file
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max state file

# Input validation patterns
VALID_PROJECT_ID_PATTERN = r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$"
VALID_REGION_PATTERN = r"^[a-z]+-[a-z]+[0-9]+$"


@dataclass(frozen=True)
class SessionContext:
    """Ambient provider session: the project and region every call targets.

    Passed explicitly to derivation and providers; never read from globals.
    """

    project_id: str
    region: str


@dataclass(frozen=True)
class Config:
    """Run configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    project_id: str
    region: str

    # Paths
    stack_file: Path = field(default_factory=lambda: Path("stack.yaml"))
    state_file: Path = field(default_factory=lambda: Path(".vmstack/state.yaml"))

    # Scheduling
    max_parallel_operations: int = DEFAULT_MAX_PARALLEL_OPERATIONS

    # Retry and timing
    max_provider_attempts: int = DEFAULT_MAX_PROVIDER_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All inputs are validated at the boundary (fail-fast) and every
        problem is reported at once.
        """
        errors: list[str] = []

        if not self.project_id:
            errors.append("GCP_PROJECT is required")
        elif not re.match(VALID_PROJECT_ID_PATTERN, self.project_id):
            errors.append(f"GCP_PROJECT must be a valid project id: {self.project_id}")

        if not self.region:
            errors.append("GCP_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"GCP_REGION must be a valid GCP region: {self.region}")

        if not (
            MIN_PARALLEL_OPERATIONS <= self.max_parallel_operations <= MAX_PARALLEL_OPERATIONS
        ):
            errors.append(
                f"MAX_PARALLEL_OPERATIONS must be between {MIN_PARALLEL_OPERATIONS} "
                f"and {MAX_PARALLEL_OPERATIONS}"
            )

        if not (1 <= self.max_provider_attempts <= MAX_PROVIDER_ATTEMPTS):
            errors.append(f"MAX_PROVIDER_ATTEMPTS must be between 1 and {MAX_PROVIDER_ATTEMPTS}")

        if not (0 <= self.retry_backoff_base_seconds <= MAX_RETRY_BACKOFF_SECONDS):
            errors.append(
                f"RETRY_BACKOFF_BASE_SECONDS must be between 0 and {MAX_RETRY_BACKOFF_SECONDS}"
            )

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"OPERATION_TIMEOUT_SECONDS must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def session(self) -> SessionContext:
        """The provider session this configuration targets."""
        return SessionContext(project_id=self.project_id, region=self.region)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            GCP_PROJECT: Target project id
            GCP_REGION: Region used to resolve the instance zone
            STACK_FILE: Path to the stack YAML (default: stack.yaml)
            STATE_FILE: Path to the state YAML (default: .vmstack/state.yaml)
            MAX_PARALLEL_OPERATIONS: In-flight provider calls (default: 4)
            MAX_PROVIDER_ATTEMPTS: Attempts for transient errors (default: 5)
            RETRY_BACKOFF_BASE_SECONDS: First retry delay (default: 2)
            OPERATION_TIMEOUT_SECONDS: Per-operation timeout (default: 900)
            DRY_RUN: If "true", only compute the plan (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            project_id=os.environ.get("GCP_PROJECT", ""),
            region=os.environ.get("GCP_REGION", ""),
            stack_file=Path(os.environ.get("STACK_FILE", "stack.yaml")),
            state_file=Path(os.environ.get("STATE_FILE", ".vmstack/state.yaml")),
            max_parallel_operations=get_int(
                "MAX_PARALLEL_OPERATIONS", DEFAULT_MAX_PARALLEL_OPERATIONS
            ),
            max_provider_attempts=get_int("MAX_PROVIDER_ATTEMPTS", DEFAULT_MAX_PROVIDER_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT_SECONDS", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
        )
