"""Dependency graph with deterministic topological ordering."""

from __future__ import annotations

from collections import deque
from collections.abc import Hashable, Iterable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)


class DependencyGraph(Generic[K]):
    """Tracks node dependencies for evaluation ordering.

    Nodes keep insertion order, and every traversal visits them in that
    order, so the same model always yields the same evaluation order.
    Edges to unregistered nodes are ignored by the ordering (they are
    inputs that are available from the start).
    """

    __slots__ = ("dependencies", "dependents")

    def __init__(self) -> None:
        # node -> nodes it reads from
        self.dependencies: dict[K, dict[K, None]] = {}
        # node -> nodes that read from it (reverse edges)
        self.dependents: dict[K, dict[K, None]] = {}

    def add_node(self, node: K) -> None:
        self.dependencies.setdefault(node, {})
        self.dependents.setdefault(node, {})

    def add_edge(self, node: K, depends_on: K) -> None:
        """Record that *node* reads from *depends_on*."""
        self.add_node(node)
        self.add_node(depends_on)
        self.dependencies[node][depends_on] = None
        self.dependents[depends_on][node] = None

    @property
    def nodes(self) -> list[K]:
        return list(self.dependencies)

    def __contains__(self, node: object) -> bool:
        return node in self.dependencies

    def __len__(self) -> int:
        return len(self.dependencies)

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def partial_order(self) -> tuple[list[K], list[K]]:
        """Kahn's algorithm; returns ``(ordered, residual)``.

        *residual* is empty for an acyclic graph. Otherwise it holds every
        node on a cycle or downstream of one, in insertion order.
        """
        in_degree = {node: len(deps) for node, deps in self.dependencies.items()}
        queue: deque[K] = deque(node for node, d in in_degree.items() if d == 0)

        order: list[K] = []
        while queue:
            node = queue.popleft()
            order.append(node)
            for dep in self.dependents[node]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        placed = set(order)
        residual = [node for node in self.dependencies if node not in placed]
        return order, residual

    def topological_order(self) -> list[K]:
        """Return nodes in evaluation order.

        Raises ValueError if a cycle is detected.
        """
        order, residual = self.partial_order()
        if residual:
            raise ValueError(f"Cycle detected involving: {self.cycles(residual)}")
        return order

    def cycles(self, nodes: Iterable[K] | None = None) -> list[list[K]]:
        """Strongly connected components that form cycles (Tarjan, iterative).

        Restricted to *nodes* when given. Members of each cycle are listed in
        insertion order, and cycles are ordered by their first member.
        """
        scope = list(self.dependencies) if nodes is None else list(nodes)
        allowed = set(scope)
        position = {node: i for i, node in enumerate(self.dependencies)}

        index: dict[K, int] = {}
        lowlink: dict[K, int] = {}
        on_stack: set[K] = set()
        stack: list[K] = []
        components: list[list[K]] = []
        counter = 0

        for root in scope:
            if root in index:
                continue
            work: list[tuple[K, list[K]]] = []
            index[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            work.append((root, [d for d in self.dependencies[root] if d in allowed]))
            while work:
                node, pending = work[-1]
                if pending:
                    child = pending.pop(0)
                    if child not in index:
                        index[child] = lowlink[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append(
                            (child, [d for d in self.dependencies[child] if d in allowed])
                        )
                    elif child in on_stack:
                        lowlink[node] = min(lowlink[node], index[child])
                    continue
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] == index[node]:
                    component: list[K] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    is_cycle = len(component) > 1 or node in self.dependencies[node]
                    if is_cycle:
                        components.append(sorted(component, key=position.__getitem__))

        components.sort(key=lambda c: position[c[0]])
        return components

    # ------------------------------------------------------------------
    # Closures
    # ------------------------------------------------------------------

    def upstream(self, node: K) -> dict[K, int]:
        """Every transitive dependency of *node* mapped to its depth (1 = direct).

        Depth is the shortest distance; nodes are in breadth-first order.
        """
        depth: dict[K, int] = {}
        queue: deque[K] = deque([node])
        seen: set[K] = {node}
        level = {node: 0}
        while queue:
            current = queue.popleft()
            for dep in self.dependencies.get(current, {}):
                if dep not in seen:
                    seen.add(dep)
                    level[dep] = level[current] + 1
                    depth[dep] = level[dep]
                    queue.append(dep)
        return depth

    def downstream(self, changed: Iterable[K]) -> list[K]:
        """All nodes that transitively read from *changed*, in insertion order.

        The changed nodes themselves are not included.
        """
        changed = list(changed)
        visited: set[K] = set(changed)
        queue: deque[K] = deque(changed)
        affected: set[K] = set()
        while queue:
            node = queue.popleft()
            for dep in self.dependents.get(node, {}):
                if dep not in visited:
                    visited.add(dep)
                    affected.add(dep)
                    queue.append(dep)
        return [node for node in self.dependencies if node in affected]

    def max_depth(self, roots: Iterable[K]) -> int:
        """Longest dependency chain from root nodes (acyclic part only)."""
        order, _ = self.partial_order()
        depth: dict[K, int] = {r: 0 for r in roots}
        max_d = 0
        for node in order:
            if node not in depth:
                continue
            for dep in self.dependents[node]:
                new_depth = depth[node] + 1
                if new_depth > depth.get(dep, -1):
                    depth[dep] = new_depth
                    max_d = max(max_d, new_depth)
        return max_d
