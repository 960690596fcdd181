"""ChangeSet execution against a provider.

The executor walks a ChangeSet in order and applies each operation through
the ProviderClient:

1. Operations start in ChangeSet order once every operation they wait for
   has succeeded (a per-operation countdown of unfinished prerequisites).
2. Up to `max_parallelism` independent operations run at once.
3. Each provider call runs in a worker thread under a per-operation timeout.
4. Retryable failures (rate limiting, transient network, timeout) are
   retried with exponential backoff and jitter up to `max_attempts`, then
   escalated to fatal.
5. After every successful operation the resource's state entry is saved
   immediately. A fatal failure halts scheduling; in-flight operations
   finish, committed operations stay committed, nothing is rolled back.

Cancellation (`cancel()`) stops scheduling new operations, lets in-flight
operations finish and reports the rest as pending.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_PARALLELISM,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    RETRY_BACKOFF_BASE_SECONDS,
    RETRY_BACKOFF_MAX_SECONDS,
)
from .models import InfractlError, UnresolvedReferenceError
from .planner import ChangeSet, Operation, OperationType
from .provider import FatalProviderError, ProviderClient, ProviderError, classify_error
from .references import resolve_attributes, state_lookup
from .state import ResourceState, StateError, StateStore

logger = logging.getLogger(__name__)


class OperationStatus(str, Enum):
    """Final status of an operation after an apply."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"  # Never attempted


@dataclass
class OperationResult:
    """Outcome of a single operation."""

    key: str
    address: str
    action: OperationType
    status: OperationStatus = OperationStatus.PENDING
    attempts: int = 0
    provider_id: str | None = None
    error: str | None = None
    error_type: str | None = None
    duration_seconds: float = 0.0


@dataclass
class ApplyResult:
    """Result of applying a ChangeSet, in ChangeSet order."""

    results: list[OperationResult] = field(default_factory=list)
    halted: bool = False
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    def _with_status(self, status: OperationStatus) -> list[OperationResult]:
        return [r for r in self.results if r.status == status]

    @property
    def succeeded(self) -> list[OperationResult]:
        return self._with_status(OperationStatus.SUCCEEDED)

    @property
    def failed(self) -> list[OperationResult]:
        return self._with_status(OperationStatus.FAILED)

    @property
    def not_attempted(self) -> list[OperationResult]:
        return self._with_status(OperationStatus.PENDING)

    @property
    def pending(self) -> list[OperationResult]:
        """Operations still outstanding: the failed one plus the never attempted."""
        return [r for r in self.results if r.status != OperationStatus.SUCCEEDED]

    @property
    def success(self) -> bool:
        return not self.pending

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def summary(self) -> dict[str, int]:
        return {status.value: len(self._with_status(status)) for status in OperationStatus}


class Executor:
    """Applies ChangeSets through a ProviderClient.

    Usage:
        executor = Executor(provider, store)
        result = await executor.apply(change_set)
    """

    def __init__(
        self,
        provider: ProviderClient,
        store: StateStore,
        *,
        max_parallelism: int = DEFAULT_MAX_PARALLELISM,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS,
        operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
    ) -> None:
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._provider = provider
        self._store = store
        self._max_parallelism = max_parallelism
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._timeout = operation_timeout_seconds
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        """Stop scheduling new operations. In-flight operations finish."""
        logger.warning("Apply cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def apply(self, change_set: ChangeSet) -> ApplyResult:
        """Apply every operation of the ChangeSet.

        Returns:
            ApplyResult with one entry per operation, in ChangeSet order.
        """
        apply_result = ApplyResult()
        results: dict[str, OperationResult] = {
            op.key: OperationResult(key=op.key, address=op.address, action=op.action)
            for op in change_set
        }
        apply_result.results = list(results.values())

        # Countdown of unfinished prerequisites per operation
        remaining = {op.key: sum(1 for k in op.wait_for if k in results) for op in change_set}
        dependents: dict[str, list[str]] = {op.key: [] for op in change_set}
        for op in change_set:
            for before in op.wait_for:
                if before in dependents:
                    dependents[before].append(op.key)

        queue: list[Operation] = list(change_set)
        running: dict[asyncio.Task[OperationStatus], Operation] = {}

        logger.info(
            "Starting apply",
            extra={
                "operation_count": len(change_set),
                "max_parallelism": self._max_parallelism,
            },
        )

        while queue or running:
            if not apply_result.halted and not self.cancelled:
                for op in list(queue):
                    if len(running) >= self._max_parallelism:
                        break
                    if remaining[op.key] > 0:
                        continue
                    queue.remove(op)
                    task = asyncio.create_task(self._run(op, results[op.key]))
                    running[task] = op

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                op = running.pop(task)
                if task.result() == OperationStatus.SUCCEEDED:
                    for key in dependents[op.key]:
                        remaining[key] -= 1
                elif not apply_result.halted:
                    apply_result.halted = True
                    logger.error(
                        "Fatal failure, halting apply",
                        extra={"operation": op.key, "error": results[op.key].error},
                    )

        apply_result.cancelled = self.cancelled
        apply_result.end_time = datetime.now(UTC)

        logger.info(
            "Apply finished",
            extra={
                "duration_seconds": apply_result.duration_seconds,
                "halted": apply_result.halted,
                "cancelled": apply_result.cancelled,
                **apply_result.summary(),
            },
        )
        return apply_result

    async def _run(self, op: Operation, result: OperationResult) -> OperationStatus:
        """Run one operation with retries and record its outcome."""
        started = datetime.now(UTC)
        try:
            result.provider_id = await self._execute_with_retry(op, result)
            result.status = OperationStatus.SUCCEEDED
            logger.info(
                "Operation succeeded",
                extra={
                    "operation": op.key,
                    "attempts": result.attempts,
                    "provider_id": result.provider_id,
                },
            )
        except InfractlError as e:
            result.status = OperationStatus.FAILED
            result.error = str(e)
            result.error_type = type(e).__name__
            logger.error(
                "Operation failed",
                extra={"operation": op.key, "attempts": result.attempts, "error": str(e)},
            )
        result.duration_seconds = (datetime.now(UTC) - started).total_seconds()
        return result.status

    async def _execute_with_retry(self, op: Operation, result: OperationResult) -> str | None:
        """Apply an operation, retrying transient provider failures.

        Raises:
            FatalProviderError: On a fatal failure or when retries are exhausted.
            UnresolvedReferenceError: If a reference cannot be resolved.
            StateError: If the state checkpoint cannot be written.
        """
        attributes = self._resolve(op)

        last_error: ProviderError | None = None
        for attempt in range(1, self._max_attempts + 1):
            result.attempts = attempt
            try:
                return await self._apply_operation(op, attributes)
            except (UnresolvedReferenceError, StateError):
                raise
            except Exception as e:
                error = classify_error(e)
                last_error = error
                if not error.retryable:
                    if error is e:
                        raise
                    raise error from e

                if attempt < self._max_attempts:
                    # Exponential backoff with jitter
                    backoff = min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)
                    wait_time = backoff + random.uniform(0, backoff * 0.2)
                    logger.warning(
                        "Operation failed, retrying",
                        extra={
                            "operation": op.key,
                            "attempt": attempt,
                            "max_attempts": self._max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(error),
                        },
                    )
                    await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise FatalProviderError(
            f"Retries exhausted after {self._max_attempts} attempts: {last_error}",
            code=last_error.code,
        ) from last_error

    def _resolve(self, op: Operation) -> dict[str, Any]:
        if op.action == OperationType.DESTROY or op.desired_attributes is None:
            return {}
        return resolve_attributes(op.desired_attributes, state_lookup(self._store.snapshot()))

    async def _apply_operation(self, op: Operation, attributes: dict[str, Any]) -> str | None:
        """Invoke the provider for one attempt, then checkpoint state."""
        kind = op.resource_id.kind

        match op.action:
            case OperationType.CREATE:
                provider_id, outputs = await self._call(
                    self._provider.create, kind, attributes, name=f"create {op.address}"
                )
                await self._checkpoint(op, provider_id, attributes, outputs)
                return provider_id

            case OperationType.UPDATE:
                assert op.provider_id is not None
                outputs = await self._call(
                    self._provider.update,
                    kind,
                    op.provider_id,
                    attributes,
                    name=f"update {op.address}",
                )
                await self._checkpoint(op, op.provider_id, attributes, outputs)
                return op.provider_id

            case OperationType.DESTROY:
                assert op.provider_id is not None
                await self._call(
                    self._provider.destroy, kind, op.provider_id, name=f"destroy {op.address}"
                )
                await self._run_blocking(self._store.remove, op.resource_id)
                return op.provider_id

            case _:
                raise ValueError(f"Unsupported operation: {op.action}")

    async def _checkpoint(
        self,
        op: Operation,
        provider_id: str,
        attributes: dict[str, Any],
        outputs: dict[str, Any] | None,
    ) -> None:
        record = ResourceState(
            kind=op.resource_id.kind,
            name=op.resource_id.name,
            provider_id=provider_id,
            attributes=attributes,
            outputs=dict(outputs or {}),
            dependencies=[dep.address for dep in op.dependencies],
        )
        await self._run_blocking(self._store.save, record)

    async def _call(self, fn: Callable[..., Any], *args: Any, name: str) -> Any:
        """Run a provider call in a worker thread with the operation timeout.

        Raises:
            TimeoutError: If the call exceeds the timeout.
        """
        try:
            return await asyncio.wait_for(self._run_blocking(fn, *args), timeout=self._timeout)
        except TimeoutError:
            logger.error(
                f"{name} timed out",
                extra={"timeout_seconds": self._timeout},
            )
            raise

    async def _run_blocking(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))
