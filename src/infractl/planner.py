"""Change planning.

The planner is a pure function over immutable inputs. It diffs the desired
state against the applied state and produces an ordered ChangeSet:

- desired only -> create
- both, attributes differ -> update in place, or destroy + create when a
  force-new attribute changed (replacement)
- applied only -> destroy

ORDERING:
Operations form their own DAG. An operation must wait for another when:
- create/update X waits for create/update Y if X depends on Y (desired graph)
- destroy X waits for destroy Y if Y depended on X (applied graph), so
  dependents go first
- create of a replaced resource waits for its own destroy
- destroy Y waits for an in-place update of X if X depended on Y, so
  nothing still references Y when it goes away

Among operations without a constraint, destroys come first, then shallower
operations (shorter chain of prerequisites), then (kind, name)
lexicographic order.

REPLACEMENT PROPAGATION:
Replacing a resource changes its identity at the provider. Every desired
resource depending on it, directly or transitively, is tainted and
replaced as well: destroyed before it and recreated after it.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .dependency import DependencyGraph, graph_from_edges
from .diff import AttributeChange, diff_attributes, requires_replacement
from .models import DesiredState, InfractlError, ResourceId
from .references import planning_lookup, resolve_attributes
from .state import AppliedState

logger = logging.getLogger(__name__)


class PlanError(InfractlError):
    """Raised when planned operations cannot be put in a valid order."""

    def __init__(self, stuck: list[str]) -> None:
        self.stuck = stuck
        super().__init__(f"Operation ordering is cyclic: {stuck}")


class OperationType(str, Enum):
    """Kinds of planned operations."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"


# Unconstrained destroys are scheduled before creates and updates
_PHASE = {OperationType.DESTROY: 0, OperationType.CREATE: 1, OperationType.UPDATE: 1}


@dataclass(frozen=True)
class Operation:
    """A single planned change to one resource."""

    action: OperationType
    resource_id: ResourceId
    prior_attributes: dict[str, Any] | None = None
    desired_attributes: dict[str, Any] | None = None
    planned_attributes: dict[str, Any] | None = None
    changes: tuple[AttributeChange, ...] = ()
    replace: bool = False
    reasons: tuple[str, ...] = ()
    provider_id: str | None = None
    dependencies: tuple[ResourceId, ...] = ()
    wait_for: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.action.value}:{self.resource_id.address}"

    @property
    def address(self) -> str:
        return self.resource_id.address

    def _sort_key(self) -> tuple[int, str, str]:
        return (_PHASE[self.action], self.resource_id.kind, self.resource_id.name)


@dataclass(frozen=True)
class ChangeSet:
    """Ordered operations transforming applied state toward desired state."""

    operations: tuple[Operation, ...] = ()
    destroy_mode: bool = False

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def get(self, key: str) -> Operation | None:
        for operation in self.operations:
            if operation.key == key:
                return operation
        return None

    def keys(self) -> list[str]:
        return [operation.key for operation in self.operations]

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in OperationType}
        replaced: set[ResourceId] = set()
        for operation in self.operations:
            if operation.replace:
                replaced.add(operation.resource_id)
            else:
                counts[operation.action.value] += 1
        counts["replace"] = len(replaced)
        return counts


@dataclass
class _Draft:
    """Mutable operation under construction."""

    action: OperationType
    resource_id: ResourceId
    fields: dict[str, Any] = field(default_factory=dict)
    after: set[str] = field(default_factory=set)

    @property
    def key(self) -> str:
        return f"{self.action.value}:{self.resource_id.address}"


def plan(
    desired: DesiredState,
    applied: AppliedState,
    graph: DependencyGraph,
    *,
    destroy: bool = False,
    targets: Iterable[ResourceId] | None = None,
) -> ChangeSet:
    """Plan the changes needed to converge applied state to desired state.

    Args:
        desired: Desired state (references already checked).
        applied: Applied state snapshot.
        graph: Validated dependency graph of the desired state.
        destroy: Plan destruction of everything in applied state.
        targets: Restrict the plan to these identities, their dependencies
            and (for destroys) their dependents.

    Returns:
        The ordered ChangeSet. Identical inputs yield an identical ChangeSet.
    """
    applied_graph = graph_from_edges(applied.dependency_edges())
    drafts: dict[str, _Draft] = {}

    replaced: set[ResourceId] = set()
    created: set[ResourceId] = set()
    updated: set[ResourceId] = set()
    resolved: dict[ResourceId, dict[str, Any]] = {}

    desired_ids: set[ResourceId] = set() if destroy else set(desired.resources)

    # Create / update / replace, dependencies first so that references to
    # already-planned resources resolve against their planned values.
    for rid in graph.topological_sort():
        if rid not in desired_ids:
            continue
        resource = desired.resources[rid]
        lookup = planning_lookup(applied, resolved, created | replaced)
        planned = resolve_attributes(resource.attributes, lookup)
        resolved[rid] = planned
        deps = tuple(sorted(resource.dependencies()))

        record = applied.get(rid)
        if record is None:
            created.add(rid)
            drafts[f"create:{rid.address}"] = _Draft(
                OperationType.CREATE,
                rid,
                {
                    "desired_attributes": dict(resource.attributes),
                    "planned_attributes": planned,
                    "dependencies": deps,
                    "reasons": ("not in applied state",),
                },
            )
            continue

        changes = diff_attributes(rid.kind, record.attributes, planned)
        # Any replaced resource upstream, even through new resources in between
        tainted_by = sorted(graph.transitive_dependencies([rid]) & replaced)

        if tainted_by or requires_replacement(changes):
            replaced.add(rid)
            reasons = [f"{c.attribute} forces replacement" for c in changes if c.force_new]
            reasons += [f"depends on replaced {dep.address}" for dep in tainted_by]
            common = {
                "prior_attributes": dict(record.attributes),
                "changes": tuple(changes),
                "replace": True,
                "reasons": tuple(reasons),
            }
            drafts[f"destroy:{rid.address}"] = _Draft(
                OperationType.DESTROY,
                rid,
                {**common, "provider_id": record.provider_id},
            )
            drafts[f"create:{rid.address}"] = _Draft(
                OperationType.CREATE,
                rid,
                {
                    **common,
                    "desired_attributes": dict(resource.attributes),
                    "planned_attributes": planned,
                    "dependencies": deps,
                },
            )
        elif changes:
            updated.add(rid)
            drafts[f"update:{rid.address}"] = _Draft(
                OperationType.UPDATE,
                rid,
                {
                    "prior_attributes": dict(record.attributes),
                    "desired_attributes": dict(resource.attributes),
                    "planned_attributes": planned,
                    "changes": tuple(changes),
                    "provider_id": record.provider_id,
                    "dependencies": deps,
                    "reasons": tuple(f"{c.attribute} changed" for c in changes),
                },
            )

    # Destroy everything applied but no longer desired
    removed = [rid for rid in applied.ids() if rid not in desired_ids]
    for rid in removed:
        record = applied.get(rid)
        assert record is not None
        drafts[f"destroy:{rid.address}"] = _Draft(
            OperationType.DESTROY,
            rid,
            {
                "prior_attributes": dict(record.attributes),
                "provider_id": record.provider_id,
                "reasons": ("destroy requested" if destroy else "no longer declared",),
            },
        )

    if targets is not None:
        drafts = _restrict_to_targets(drafts, set(targets), graph, applied_graph, replaced)

    _link(drafts, graph, applied_graph, updated)
    change_set = ChangeSet(operations=_order(drafts), destroy_mode=destroy)

    logger.info(
        "Plan complete",
        extra={"operation_count": len(change_set), **change_set.summary()},
    )
    return change_set


def _restrict_to_targets(
    drafts: dict[str, _Draft],
    targets: set[ResourceId],
    graph: DependencyGraph,
    applied_graph: DependencyGraph,
    replaced: set[ResourceId],
) -> dict[str, _Draft]:
    # Creates and updates take what they depend on
    forward = set(targets) | graph.transitive_dependencies(targets)
    # A replaced resource drags its tainted dependents along
    forward |= {
        rid for rid in graph.transitive_dependents(forward & replaced) if rid in replaced
    }
    forward |= graph.transitive_dependencies(forward)

    # Destroys take what depends on them, including the destroy half of replacements
    backward = set(targets) | (forward & replaced)
    backward |= applied_graph.transitive_dependents(backward)

    return {
        key: draft
        for key, draft in drafts.items()
        if draft.resource_id in (backward if draft.action == OperationType.DESTROY else forward)
    }


def _link(
    drafts: dict[str, _Draft],
    graph: DependencyGraph,
    applied_graph: DependencyGraph,
    updated: set[ResourceId],
) -> None:
    """Compute the operation-level ordering constraints."""
    forward = {
        d.resource_id: d.key
        for d in drafts.values()
        if d.action in (OperationType.CREATE, OperationType.UPDATE)
    }
    destroys = {d.resource_id: d.key for d in drafts.values() if d.action == OperationType.DESTROY}

    for draft in drafts.values():
        rid = draft.resource_id
        if draft.action in (OperationType.CREATE, OperationType.UPDATE):
            for dep in graph.transitive_dependencies([rid]):
                if dep in forward:
                    draft.after.add(forward[dep])
            if draft.action == OperationType.CREATE and rid in destroys:
                draft.after.add(destroys[rid])
        else:
            for dependent in applied_graph.transitive_dependents([rid]):
                if dependent in destroys:
                    draft.after.add(destroys[dependent])
                elif dependent in updated and dependent in forward:
                    draft.after.add(forward[dependent])


def _order(drafts: dict[str, _Draft]) -> tuple[Operation, ...]:
    """Topologically order operations with deterministic tie-breaking."""
    successors: dict[str, list[str]] = {key: [] for key in drafts}
    in_degree = {key: len(draft.after) for key, draft in drafts.items()}
    for key, draft in drafts.items():
        for before in draft.after:
            successors[before].append(key)

    # Longest chain of prerequisites, so independent operations run in waves
    depth = {key: 0 for key in drafts}

    def heap_key(key: str) -> tuple[int, int, str, str, str]:
        draft = drafts[key]
        rid = draft.resource_id
        return (_PHASE[draft.action], depth[key], rid.kind, rid.name, key)

    ready = [heap_key(key) for key, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered: list[Operation] = []
    while ready:
        key = heapq.heappop(ready)[-1]
        draft = drafts[key]
        ordered.append(
            Operation(
                action=draft.action,
                resource_id=draft.resource_id,
                wait_for=tuple(sorted(draft.after)),
                **draft.fields,
            )
        )
        for nxt in successors[key]:
            depth[nxt] = max(depth[nxt], depth[key] + 1)
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                heapq.heappush(ready, heap_key(nxt))

    if len(ordered) != len(drafts):
        # Never drop operations silently
        stuck = sorted(key for key, degree in in_degree.items() if degree > 0)
        raise PlanError(stuck)

    return tuple(ordered)
