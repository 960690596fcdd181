"""Reconciliation pipeline.

This module runs one reconciliation end to end:
1. Load desired state from the configuration directory
2. Validate every resource against its kind's schema
3. Check references and build the dependency graph (cycle detection)
4. Plan the ChangeSet against the applied state
5. Apply it through the provider, checkpointing state per resource

Steps 1-4 never call the provider. Any error there aborts the run before a
single resource is touched. Apply-time failures halt forward progress and
leave every completed operation committed.

The state lock is held from the moment applied state is read for planning
until the last checkpoint is written, so two runs can never plan against
the same state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import RETRY_BACKOFF_MAX_SECONDS, Config
from .dependency import CycleError, DependencyGraph, build_graph
from .executor import ApplyResult, Executor
from .loader import ConfigLoadError, load_desired_state
from .models import DesiredState, ResourceId, SchemaError, UnresolvedReferenceError
from .planner import ChangeSet, PlanError, plan
from .provider import FatalProviderError, ProviderClient
from .references import check_references
from .schemas import validate_all
from .state import AppliedState, StateError, StateLockError, StateStore

logger = logging.getLogger(__name__)

# Called with the planned ChangeSet; returns True to proceed
ConfirmCallback = Callable[[ChangeSet], bool]


@dataclass
class ReconcileResult:
    """Result of a single validate, plan or apply run."""

    action: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    desired: DesiredState | None = None
    graph: DependencyGraph | None = None
    change_set: ChangeSet | None = None
    apply_result: ApplyResult | None = None
    approved: bool = True
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True if the run raised nothing and every operation succeeded."""
        if self.error is not None:
            return False
        return self.apply_result is None or self.apply_result.success


@dataclass
class _Prepared:
    desired: DesiredState
    applied: AppliedState
    graph: DependencyGraph
    change_set: ChangeSet


class Reconciler:
    """Drives load, validate, plan and apply for one configuration.

    Usage:
        reconciler = Reconciler(config, provider)
        result = await reconciler.apply(confirm=ask_user)
    """

    def __init__(
        self,
        config: Config,
        provider: ProviderClient | None = None,
        *,
        overrides: Mapping[str, Any] | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._overrides = dict(overrides or {})
        self._store = StateStore(config.state_path, config.lock_timeout_seconds)
        self._executor: Executor | None = None

    @property
    def config(self) -> Config:
        """Get the run configuration."""
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    def cancel(self) -> None:
        """Cancel an apply in progress. Safe to call from a signal handler."""
        if self._executor is not None:
            self._executor.cancel()

    # =========================================================================
    # Pipeline
    # =========================================================================

    def load(self) -> DesiredState:
        return load_desired_state(
            self._config.config_dir,
            var_file=self._config.var_file,
            overrides=self._overrides,
        )

    def _prepare(
        self,
        applied: AppliedState,
        *,
        destroy: bool,
        targets: Iterable[ResourceId] | None,
    ) -> _Prepared:
        desired = self.load()
        validate_all(list(desired))
        check_references(desired, applied)
        graph = build_graph(desired)

        if targets is not None:
            targets = list(targets)
            known = set(desired.resources) | set(applied.ids())
            unknown = sorted(t.address for t in targets if t not in known)
            if unknown:
                raise UnresolvedReferenceError(f"Unknown target resources: {unknown}")

        change_set = plan(desired, applied, graph, destroy=destroy, targets=targets)
        return _Prepared(desired, applied, graph, change_set)

    # =========================================================================
    # Entry Points
    # =========================================================================

    def validate(self) -> ReconcileResult:
        """Load and schema-check the configuration. Builds no graph."""
        result = ReconcileResult(action="validate")
        try:
            result.desired = self.load()
            validate_all(list(result.desired))
            logger.info("Configuration valid", extra={"resource_count": len(result.desired)})
        except Exception as e:
            self._record_error(result, e)
        result.end_time = datetime.now(UTC)
        return result

    def graph(self) -> ReconcileResult:
        """Load, validate and build the dependency graph without planning."""
        result = ReconcileResult(action="graph")
        try:
            result.desired = self.load()
            validate_all(list(result.desired))
            check_references(result.desired, self._store.snapshot())
            result.graph = build_graph(result.desired)
        except Exception as e:
            self._record_error(result, e)
        result.end_time = datetime.now(UTC)
        return result

    def plan(
        self,
        *,
        destroy: bool = False,
        targets: Iterable[ResourceId] | None = None,
    ) -> ReconcileResult:
        """Compute the ChangeSet without applying it."""
        result = ReconcileResult(action="plan")
        try:
            prepared = self._prepare(self._store.snapshot(), destroy=destroy, targets=targets)
            result.desired = prepared.desired
            result.graph = prepared.graph
            result.change_set = prepared.change_set
        except Exception as e:
            self._record_error(result, e)
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def apply(
        self,
        *,
        destroy: bool = False,
        targets: Iterable[ResourceId] | None = None,
        confirm: ConfirmCallback | None = None,
    ) -> ReconcileResult:
        """Plan and apply under the state lock.

        Args:
            destroy: Destroy everything in applied state.
            targets: Restrict the run to these resources.
            confirm: Asked before applying a non-empty ChangeSet unless
                auto-approve is configured. None means approved.
        """
        result = ReconcileResult(action="apply")
        try:
            if self._provider is None:
                raise FatalProviderError("No provider configured", code="no_provider")

            with self._store.lock():
                prepared = self._prepare(self._store.load(), destroy=destroy, targets=targets)
                result.desired = prepared.desired
                result.graph = prepared.graph
                result.change_set = prepared.change_set

                if prepared.change_set.is_empty:
                    logger.info("No changes, infrastructure is up to date")
                elif not self._approved(prepared.change_set, confirm):
                    result.approved = False
                    logger.warning("Apply not approved, nothing changed")
                else:
                    self._executor = Executor(
                        self._provider,
                        self._store,
                        max_parallelism=self._config.max_parallelism,
                        max_attempts=self._config.max_attempts,
                        backoff_base_seconds=self._config.backoff_base_seconds,
                        backoff_max_seconds=RETRY_BACKOFF_MAX_SECONDS,
                        operation_timeout_seconds=self._config.operation_timeout_seconds,
                    )
                    try:
                        result.apply_result = await self._executor.apply(prepared.change_set)
                    finally:
                        self._executor = None
        except Exception as e:
            self._record_error(result, e)

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def applied_state(self) -> AppliedState:
        """Current applied state, read without taking the run lock."""
        return self._store.snapshot()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _approved(self, change_set: ChangeSet, confirm: ConfirmCallback | None) -> bool:
        if self._config.auto_approve or confirm is None:
            return True
        return confirm(change_set)

    def _record_error(self, result: ReconcileResult, error: Exception) -> None:
        result.error = error
        if isinstance(error, ConfigLoadError):
            logger.error("Failed to load configuration", extra={"error": str(error)})
        elif isinstance(error, SchemaError):
            logger.error("Schema validation failed", extra={"error": str(error)})
        elif isinstance(error, UnresolvedReferenceError):
            logger.error("Unresolved references", extra={"error": str(error)})
        elif isinstance(error, CycleError):
            logger.error(
                "Dependency cycle detected",
                extra={"cycle": [rid.address for rid in error.path]},
            )
        elif isinstance(error, PlanError):
            logger.error("Planning failed", extra={"stuck": error.stuck})
        elif isinstance(error, StateLockError):
            logger.warning("State locked by another run", extra={"error": str(error)})
        elif isinstance(error, StateError):
            logger.error("State store error", extra={"error": str(error)})
        elif isinstance(error, FatalProviderError):
            logger.error("Provider error", extra={"error": str(error), "code": error.code})
        else:
            logger.exception("Unexpected error during reconciliation", exc_info=error)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log the run result with structured data."""
        extra: dict[str, Any] = {
            "action": result.action,
            "duration_seconds": result.duration_seconds,
            "approved": result.approved,
        }
        if result.change_set is not None:
            extra.update(result.change_set.summary())
        if result.apply_result is not None:
            extra["succeeded"] = len(result.apply_result.succeeded)
            extra["failed"] = len(result.apply_result.failed)
            extra["not_attempted"] = len(result.apply_result.not_attempted)

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif not result.success:
            logger.warning("Reconciliation incomplete", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
