"""Mock ProviderClient with in-memory resources."""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from infractl.provider import FatalProviderError
from infractl.schemas import KIND_SCHEMAS

from .faults import FaultRule, fatal

ID_PREFIX = "mock-"
ARN_PREFIX = "arn:mock:"


@dataclass
class MockResource:
    """A resource as the mock cloud sees it."""

    provider_id: str
    kind: str
    attributes: dict[str, Any]
    outputs: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class MockCall:
    """One recorded provider call."""

    action: str
    kind: str
    provider_id: str | None
    attributes: dict[str, Any]


def _referenced_ids(value: Any) -> set[str]:
    """Mock ids mentioned anywhere in a value (as id or inside an ARN)."""
    if isinstance(value, str):
        if value.startswith(ID_PREFIX):
            return {value}
        if value.startswith(ARN_PREFIX):
            return {value.rsplit(":", 1)[-1]}
        return set()
    if isinstance(value, dict):
        return set().union(*(_referenced_ids(v) for v in value.values())) if value else set()
    if isinstance(value, (list, tuple)):
        return set().union(*(_referenced_ids(v) for v in value)) if value else set()
    return set()


class MockProvider:
    """In-memory provider.

    Thread-safe: the executor calls it from worker threads.
    """

    def __init__(self, *, latency_seconds: float = 0.0, check_references: bool = True) -> None:
        self._lock = threading.Lock()
        self._resources: dict[str, MockResource] = {}
        self._counter = 0
        self._faults: list[FaultRule] = []
        self._latency = latency_seconds
        self._check_references = check_references
        self._active = 0
        self.max_active = 0
        self.calls: list[MockCall] = []

    # =========================================================================
    # Test Helpers
    # =========================================================================

    def inject_error(self, error: Any = None, **kwargs: Any) -> FaultRule:
        """Register a fault rule. See FaultRule for the arguments."""
        rule = FaultRule(error=error, **kwargs)
        with self._lock:
            self._faults.append(rule)
        return rule

    def clear_faults(self) -> None:
        with self._lock:
            self._faults.clear()

    def get(self, provider_id: str) -> MockResource | None:
        with self._lock:
            resource = self._resources.get(provider_id)
            return copy.deepcopy(resource) if resource else None

    def resources(self, kind: str | None = None) -> list[MockResource]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._resources.values()
                if kind is None or r.kind == kind
            ]

    def count(self, kind: str | None = None) -> int:
        return len(self.resources(kind))

    def calls_for(self, action: str | None = None, kind: str | None = None) -> list[MockCall]:
        return [
            call
            for call in self.calls
            if (action is None or call.action == action) and (kind is None or call.kind == kind)
        ]

    # =========================================================================
    # ProviderClient
    # =========================================================================

    def create(self, kind: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        self._enter("create", kind, None, attributes)
        try:
            with self._lock:
                self._check_targets_exist(attributes)
                self._counter += 1
                provider_id = f"{ID_PREFIX}{kind}-{self._counter:04d}"
                outputs = self._outputs(kind, provider_id, attributes)
                self._resources[provider_id] = MockResource(
                    provider_id=provider_id,
                    kind=kind,
                    attributes=copy.deepcopy(attributes),
                    outputs=outputs,
                )
                return provider_id, copy.deepcopy(outputs)
        finally:
            self._leave()

    def update(self, kind: str, provider_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        self._enter("update", kind, provider_id, attributes)
        try:
            with self._lock:
                resource = self._require(provider_id)
                self._check_targets_exist(attributes)
                resource.attributes = copy.deepcopy(attributes)
                resource.outputs = self._outputs(kind, provider_id, attributes)
                resource.updated_at = datetime.now(UTC)
                return copy.deepcopy(resource.outputs)
        finally:
            self._leave()

    def destroy(self, kind: str, provider_id: str) -> None:
        self._enter("destroy", kind, provider_id, {})
        try:
            with self._lock:
                self._require(provider_id)
                if self._check_references:
                    users = sorted(
                        other.provider_id
                        for other in self._resources.values()
                        if other.provider_id != provider_id
                        and provider_id in _referenced_ids(other.attributes)
                    )
                    if users:
                        raise FatalProviderError(
                            f"DependencyViolation: {provider_id} is still used by {users}",
                            code="dependency_violation",
                        )
                del self._resources[provider_id]
        finally:
            self._leave()

    # =========================================================================
    # Internals
    # =========================================================================

    def _enter(
        self, action: str, kind: str, provider_id: str | None, attributes: dict[str, Any]
    ) -> None:
        with self._lock:
            self.calls.append(MockCall(action, kind, provider_id, copy.deepcopy(attributes)))
            rule = next(
                (r for r in self._faults if r.matches(action, kind, attributes)),
                None,
            )
            if rule is not None:
                rule.hits += 1
            self._active += 1
            self.max_active = max(self.max_active, self._active)

        try:
            if self._latency:
                time.sleep(self._latency)
            if rule is not None:
                if rule.hang_seconds:
                    time.sleep(rule.hang_seconds)
                if rule.error is not None:
                    raise rule.error()
        except BaseException:
            self._leave()
            raise

    def _leave(self) -> None:
        with self._lock:
            self._active -= 1

    def _require(self, provider_id: str) -> MockResource:
        resource = self._resources.get(provider_id)
        if resource is None:
            raise FatalProviderError(f"NotFound: {provider_id}", code="not_found")
        return resource

    def _check_targets_exist(self, attributes: dict[str, Any]) -> None:
        if not self._check_references:
            return
        missing = sorted(i for i in _referenced_ids(attributes) if i not in self._resources)
        if missing:
            raise FatalProviderError(
                f"InvalidParameterValue: unknown ids {missing}", code="invalid"
            )

    @staticmethod
    def _outputs(kind: str, provider_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        outputs = copy.deepcopy(attributes)
        schema = KIND_SCHEMAS.get(kind)
        computed = schema.computed if schema else frozenset({"id"})
        for name in sorted(computed):
            if name == "id":
                outputs["id"] = provider_id
            elif name == "arn":
                outputs["arn"] = f"{ARN_PREFIX}{kind}:{provider_id}"
            elif name not in outputs:
                outputs[name] = f"{name}-{provider_id}"
        return outputs


def failing_routes() -> MockProvider:
    """Provider whose route creates always fail fatally.

    Loadable by import path ("provider_mock:failing_routes") for CLI tests.
    """
    provider = MockProvider()
    provider.inject_error(fatal("InvalidParameterValue: route target"), action="create", kind="route")
    return provider
