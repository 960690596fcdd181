"""Resource dependency graph construction and ordering.

This module implements dependency management between declared resources:
1. Graph construction from typed references and explicit `depends_on`
2. Cycle detection (depth-first, reports the full cycle path)
3. Topological sorting for create/update (dependencies first) and
   destroy (dependents first) ordering
4. Reachability queries used for replacement propagation and executor gating

An edge A -> B means "A depends on B": B must exist before A is created or
updated, and A must be gone before B is destroyed.

EXAMPLE:
```yaml
resources:
  - kind: subnet
    name: public
    attributes:
      vpc_id: {$ref: vpc.main.id}   # edge subnet.public -> vpc.main
  - kind: eip
    name: nat
    depends_on: [internet_gateway.main]  # implicit ordering, no attribute ref
```
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .models import InfractlError, Resource, ResourceId, UnresolvedReferenceError

logger = logging.getLogger(__name__)


class CycleError(InfractlError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, path: list[ResourceId]) -> None:
        self.path = path
        rendered = " -> ".join(node.address for node in path)
        super().__init__(f"Circular dependency detected: {rendered}")


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    resource_id: ResourceId
    depends_on: set[ResourceId] = field(default_factory=set)


@dataclass
class DependencyGraph:
    """Directed graph of resource dependencies."""

    nodes: dict[ResourceId, DependencyNode] = field(default_factory=dict)

    def add_node(
        self, resource_id: ResourceId, depends_on: Iterable[ResourceId] | None = None
    ) -> None:
        """Add a node (or extend an existing one) with its dependencies.

        Dependencies get their own nodes even if not yet declared.
        """
        node = self.nodes.setdefault(resource_id, DependencyNode(resource_id=resource_id))
        for dep in depends_on or ():
            node.depends_on.add(dep)
            self.nodes.setdefault(dep, DependencyNode(resource_id=dep))

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def edges(self) -> list[tuple[ResourceId, ResourceId]]:
        """All (dependent, dependency) edges in deterministic order."""
        return sorted(
            (node.resource_id, dep) for node in self.nodes.values() for dep in node.depends_on
        )

    def dependencies_of(self, resource_id: ResourceId) -> set[ResourceId]:
        node = self.nodes.get(resource_id)
        return set(node.depends_on) if node else set()

    def dependents_of(self, resource_id: ResourceId) -> set[ResourceId]:
        return {
            node.resource_id for node in self.nodes.values() if resource_id in node.depends_on
        }

    def validate(self) -> None:
        """Validate the graph for cycles.

        Depth-first traversal keeping the current recursion stack; reaching a
        node that is already on the stack closes a cycle.

        Raises:
            CycleError: If a cycle is detected, with the full cycle path.
        """
        visited: set[ResourceId] = set()
        on_stack: set[ResourceId] = set()
        stack: list[ResourceId] = []

        # Iterative DFS so deep graphs do not hit the recursion limit
        for root in sorted(self.nodes):
            if root in visited:
                continue
            work: list[tuple[ResourceId, list[ResourceId]]] = [
                (root, sorted(self.nodes[root].depends_on))
            ]
            visited.add(root)
            on_stack.add(root)
            stack.append(root)

            while work:
                current, pending = work[-1]
                if not pending:
                    work.pop()
                    on_stack.discard(current)
                    stack.pop()
                    continue

                dep = pending.pop(0)
                if dep in on_stack:
                    cycle = stack[stack.index(dep) :] + [dep]
                    raise CycleError(cycle)
                if dep in visited:
                    continue

                visited.add(dep)
                on_stack.add(dep)
                stack.append(dep)
                work.append((dep, sorted(self.nodes[dep].depends_on)))

    def topological_sort(self, reverse: bool = False) -> list[ResourceId]:
        """Return identities in dependency order.

        Args:
            reverse: If False, dependencies come first (create order).
                If True, dependents come first (destroy order).

        Returns:
            Identities ordered so every edge is respected. Among nodes with
            no ordering constraint, shallower nodes come first, then
            (kind, name) lexicographic order.

        Raises:
            CycleError: If a cycle is detected.
        """
        self.validate()

        # successors[x]: nodes that become ready once x is emitted
        successors: dict[ResourceId, list[ResourceId]] = {node: [] for node in self.nodes}
        in_degree: dict[ResourceId, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                if reverse:
                    successors[node.resource_id].append(dep)
                    in_degree[dep] += 1
                else:
                    successors[dep].append(node.resource_id)
                    in_degree[node.resource_id] += 1

        # Kahn's algorithm with a heap for deterministic tie-breaking.
        # Nodes are emitted in waves: shallower nodes first.
        result: list[ResourceId] = []
        depth: dict[ResourceId, int] = {node: 0 for node in self.nodes}
        ready = [(0, node) for node, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)

        while ready:
            _, current = heapq.heappop(ready)
            result.append(current)
            for nxt in successors[current]:
                depth[nxt] = max(depth[nxt], depth[current] + 1)
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    heapq.heappush(ready, (depth[nxt], nxt))

        return result

    def transitive_dependents(self, roots: Iterable[ResourceId]) -> set[ResourceId]:
        """Every node that depends, directly or transitively, on any root."""
        dependents: dict[ResourceId, set[ResourceId]] = {node: set() for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].add(node.resource_id)

        seen: set[ResourceId] = set()
        frontier = [r for r in roots if r in self.nodes]
        while frontier:
            current = frontier.pop()
            for dependent in dependents[current]:
                if dependent not in seen:
                    seen.add(dependent)
                    frontier.append(dependent)
        return seen

    def transitive_dependencies(self, roots: Iterable[ResourceId]) -> set[ResourceId]:
        """Every node that any root depends on, directly or transitively."""
        seen: set[ResourceId] = set()
        frontier = [r for r in roots if r in self.nodes]
        while frontier:
            current = frontier.pop()
            for dep in self.nodes[current].depends_on:
                if dep not in seen:
                    seen.add(dep)
                    frontier.append(dep)
        return seen

    def merged(self, other: DependencyGraph) -> DependencyGraph:
        """Union of two graphs' nodes and edges."""
        result = DependencyGraph()
        for graph in (self, other):
            for node in graph.nodes.values():
                result.add_node(node.resource_id, node.depends_on)
        return result


def build_graph(resources: Iterable[Resource]) -> DependencyGraph:
    """Build and validate the dependency graph for a set of resources.

    Edges come from every Reference in the attribute tree plus explicit
    `depends_on` declarations.

    Raises:
        UnresolvedReferenceError: If a resource depends on an undeclared identity.
        CycleError: If the graph contains a cycle.
    """
    resources = list(resources)
    declared = {resource.id for resource in resources}
    graph = DependencyGraph()

    missing: list[str] = []
    for resource in resources:
        deps = resource.dependencies()
        for dep in sorted(deps):
            if dep not in declared:
                missing.append(f"{resource.address} -> {dep.address}")
        graph.add_node(resource.id, deps)

    if missing:
        raise UnresolvedReferenceError(
            "Dependencies on undeclared resources: " + ", ".join(missing)
        )

    graph.validate()

    logger.debug(
        "Built dependency graph",
        extra={"node_count": len(graph), "edge_count": len(graph.edges())},
    )
    return graph


def graph_from_edges(edges: Mapping[ResourceId, Iterable[ResourceId]]) -> DependencyGraph:
    """Build a graph from recorded (e.g. persisted) dependency edges.

    Edges to nodes not in the mapping are dropped: persisted state may
    reference resources that were already destroyed.
    """
    graph = DependencyGraph()
    for resource_id in edges:
        graph.add_node(resource_id)
    for resource_id, deps in edges.items():
        graph.add_node(resource_id, [d for d in deps if d in edges])
    return graph
