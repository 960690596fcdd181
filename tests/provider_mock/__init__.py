"""In-memory provider for integration testing.

This package provides a mock ProviderClient that keeps resources in memory
so that the executor and reconciler can be tested without any cloud API.

Key Features:
- In-memory resources with provider ids, ARNs and computed outputs
- Referential checks: creating a resource that points at a missing id, or
  destroying one that is still referenced, fails like a real API would
- Call recording, including peak concurrency
- Error injection (throttling, fatal errors, hangs) for failure scenarios

Usage:
    from provider_mock import MockProvider, throttled

    provider = MockProvider()
    provider.inject_error(throttled(), action="create", kind="vpc", times=2)

    executor = Executor(provider, store, backoff_base_seconds=0)
    result = await executor.apply(change_set)

    assert provider.count("vpc") == 1
"""

from .faults import FaultRule, fatal, not_found, throttled
from .provider import MockCall, MockProvider, MockResource, failing_routes

__all__ = [
    "FaultRule",
    "MockCall",
    "MockProvider",
    "MockResource",
    "failing_routes",
    "fatal",
    "not_found",
    "throttled",
]
