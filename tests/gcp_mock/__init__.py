"""GCE API Mock for Integration Testing.

This module provides an in-memory implementation of the ResourceProvider
contract so reconciliation can be tested without GCP connectivity.

Key Features:
- In-memory observed state per node (addresses, emails, self links)
- Error injection: permanent per-node failures, transient rate limits
  for the first N calls, delayed subnetwork network visibility
- Call recording with a global sequence for ordering assertions

Usage:
    from gcp_mock import MockGcpProvider

    provider = MockGcpProvider()
    reconciler = Reconciler(config, provider, MemoryStateStore())
    report = await reconciler.apply(stack)

    assert provider.finished_at("create", "external_ip/web-prod") < provider.started_at(
        "create", "compute_instance/web-vm-prod"
    )
"""

from .provider import DEFAULT_NETWORK, CallRecord, MockGcpProvider, make_provider

__all__ = [
    "DEFAULT_NETWORK",
    "CallRecord",
    "MockGcpProvider",
    "make_provider",
]
