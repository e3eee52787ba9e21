"""Stack file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_STACK_FILE_SIZE_BYTES
from .models import StackInput

logger = logging.getLogger(__name__)

STACK_KIND = "VmStack"


class SpecLoadError(Exception):
    """Raised when stack loading or validation fails."""

    pass


def parse_stack(raw_data: Any, source: str = "<string>") -> StackInput:
    """Validate already-parsed YAML data into a StackInput.

    Accepts either a flat mapping or a Kubernetes-style wrapper with
    apiVersion/kind/metadata/spec.

    Raises:
        SpecLoadError: If the data is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Stack file must contain a YAML mapping: {source}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        kind = raw_data.get("kind", STACK_KIND)
        if kind != STACK_KIND:
            raise SpecLoadError(f"Unsupported kind '{kind}' in {source}, expected {STACK_KIND}")
        stack_data = raw_data.get("spec", {})
        if not isinstance(stack_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        stack_data = raw_data

    try:
        return StackInput.model_validate(stack_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_stack(stack_path: Path) -> StackInput:
    """Load and validate a stack from YAML.

    Args:
        stack_path: Path to the stack file.

    Returns:
        Validated, immutable stack input.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    if not stack_path.exists():
        raise SpecLoadError(f"Stack file not found: {stack_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = stack_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat stack file {stack_path}: {e}") from e

    if file_size > MAX_STACK_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Stack file exceeds maximum size of {MAX_STACK_FILE_SIZE_BYTES} bytes: {stack_path}"
        )

    try:
        content = stack_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"Failed to read stack file {stack_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {stack_path}: {e}") from e

    stack = parse_stack(raw_data, source=str(stack_path))
    logger.info("Loaded stack '%s-%s' from %s", stack.instance_name, stack.name_suffix, stack_path)
    return stack
