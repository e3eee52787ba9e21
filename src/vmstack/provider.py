"""Provider contract consumed by the reconciler.

The cloud provider's resource APIs are an external collaborator. This
module fixes the shape of that collaboration: per-kind create, read,
update and delete coroutines returning observed-state records, a
subnetwork read used to discover an instance's network, and an error
family that tells the reconciler which failures are worth retrying.

Observed-state records are plain dicts. Provider-assigned fields the
reconciler relies on:
- external_ip:      "address", "self_link"
- service_account:  "email", "unique_id"
- compute_instance: "self_link", "network_interface.subnetwork", "instance_id"
- subnetwork:       "network"
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from .config import SessionContext
from .nodes import NodeKind


class ProviderError(Exception):
    """Raised when a provider call fails.

    Attributes:
        transient: Whether retrying the same call may succeed.
        status_code: Provider status code, when one is known.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class RateLimitedError(ProviderError):
    """The provider throttled the call (HTTP 429 / quota exceeded)."""

    def __init__(self, message: str, *, status_code: int | None = 429) -> None:
        super().__init__(message, transient=True, status_code=status_code)


class NotReadyError(ProviderError):
    """A just-written resource, or one of its attributes, is not readable yet."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, transient=True, status_code=status_code)


class ResourceNotFoundError(ProviderError):
    """The resource does not exist (HTTP 404)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False, status_code=404)


@runtime_checkable
class ResourceProvider(Protocol):
    """Per-kind CRUD against the cloud provider.

    Every coroutine may suspend for minutes while a long-running
    operation completes; implementations must not block the event loop.
    """

    async def create(self, kind: NodeKind, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a resource and return its observed state."""
        ...

    async def read(self, kind: NodeKind, name: str) -> dict[str, Any]:
        """Return observed state. Raises ResourceNotFoundError if absent."""
        ...

    async def update(
        self,
        kind: NodeKind,
        name: str,
        payload: dict[str, Any],
        changed_paths: list[str],
    ) -> dict[str, Any]:
        """Mutate a resource in place and return its observed state."""
        ...

    async def delete(self, kind: NodeKind, name: str, payload: dict[str, Any]) -> None:
        """Delete a resource. Deleting an absent resource is not an error."""
        ...

    async def get_subnetwork(self, self_link: str) -> dict[str, Any]:
        """Read a subnetwork; its "network" field names the parent VPC."""
        ...


ProviderFactory = Callable[[SessionContext], ResourceProvider]


def load_provider_factory(path: str) -> ProviderFactory:
    """Resolve a ``module.path:callable`` string to a provider factory.

    Args:
        path: Import path, e.g. ``mycompany.gcp:make_provider``.

    Returns:
        The callable found at that path.

    Raises:
        ValueError: If the path is malformed or does not resolve to a callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Provider must be given as 'module:callable', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import provider module {module_name!r}: {e}") from e

    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValueError(f"{path!r} does not name a callable")
    return factory
