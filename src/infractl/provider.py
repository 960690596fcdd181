"""Provider client boundary and error classification.

The engine never talks to a cloud API directly. Everything goes through a
`ProviderClient`, which is an external collaborator. Provider failures are
classified into two buckets:

- RetryableProviderError: rate limiting, transient network faults, timeouts.
  Retried with exponential backoff up to the configured attempt cap.
- FatalProviderError: invalid parameters, quota exceeded, authorization
  failures. Halts the apply.

Providers built on the Azure SDK raise `azure.core.exceptions` errors; those
are mapped by HTTP status code in `classify_error`.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any, Protocol, runtime_checkable

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

from .models import InfractlError

logger = logging.getLogger(__name__)

# HTTP status codes that indicate a transient condition
RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class ProviderError(InfractlError):
    """Base class for provider failures."""

    retryable: bool = False

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class RetryableProviderError(ProviderError):
    """Transient failure, safe to retry."""

    retryable = True


class FatalProviderError(ProviderError):
    """Permanent failure, retrying will not help."""

    retryable = False


@runtime_checkable
class ProviderClient(Protocol):
    """Operations a provider must implement for every resource kind.

    Calls are synchronous. The executor runs them in worker threads and
    enforces timeouts around them.
    """

    def create(self, kind: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create a resource.

        Returns:
            Tuple of (provider_id, resolved_attributes).
        """
        ...

    def update(self, kind: str, provider_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Update a resource in place.

        Returns:
            Resolved attributes after the update.
        """
        ...

    def destroy(self, kind: str, provider_id: str) -> None:
        """Destroy a resource."""
        ...


def classify_error(error: BaseException) -> ProviderError:
    """Map an arbitrary exception raised by a provider onto the taxonomy.

    Args:
        error: Exception raised by a provider call.

    Returns:
        A RetryableProviderError or FatalProviderError wrapping the cause.
    """
    if isinstance(error, ProviderError):
        return error

    message = f"{type(error).__name__}: {error}"

    if isinstance(error, (TimeoutError, ConnectionError)):
        return RetryableProviderError(message, code="transient")

    # Azure SDK: connection-level failures never reached or left the service
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return RetryableProviderError(message, code="network")

    if isinstance(error, ClientAuthenticationError):
        return FatalProviderError(message, code="authentication")

    if isinstance(error, ResourceNotFoundError):
        return FatalProviderError(message, code="not_found")

    if isinstance(error, HttpResponseError):
        status = error.status_code
        code = str(status) if status is not None else None
        if status in RETRYABLE_STATUS_CODES:
            return RetryableProviderError(message, code=code)
        return FatalProviderError(message, code=code)

    return FatalProviderError(message, code="unexpected")


class ProviderLoadError(InfractlError):
    """Raised when a provider cannot be imported or does not fit the protocol."""

    pass


def load_provider(path: str) -> ProviderClient:
    """Import a provider from a "package.module:attribute" path.

    The attribute may be a ProviderClient instance, or a class or factory
    called without arguments to build one.

    Raises:
        ProviderLoadError: If the import fails or the result is not a provider.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ProviderLoadError(f"Invalid provider path '{path}', expected 'module:attribute'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ProviderLoadError(f"Cannot import provider module '{module_name}': {e}") from e

    try:
        target = getattr(module, attribute)
    except AttributeError as e:
        raise ProviderLoadError(f"Module '{module_name}' has no attribute '{attribute}'") from e

    if isinstance(target, type) or not isinstance(target, ProviderClient):
        try:
            provider = target()
        except TypeError as e:
            raise ProviderLoadError(f"Cannot build provider from '{path}': {e}") from e
    else:
        provider = target

    if not isinstance(provider, ProviderClient):
        raise ProviderLoadError(
            f"'{path}' does not provide create/update/destroy: {type(provider).__name__}"
        )

    logger.info("Loaded provider", extra={"provider": path})
    return provider
