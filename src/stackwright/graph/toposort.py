"""Deterministic topological ordering shared by the module and resource graphs."""

from __future__ import annotations

import heapq
from typing import Any, Callable, Hashable, Iterable, Mapping, TypeVar

from stackwright.core.errors import CycleError

N = TypeVar("N", bound=Hashable)


def topological_order(
    nodes: Iterable[N],
    successors: Mapping[N, Iterable[N]],
    key: Callable[[N], Any],
    scope: str = "resource",
) -> list[N]:
    """
    Kahn's algorithm; among ready nodes the smallest ``key`` goes first.

    Raises:
        CycleError: naming one full cycle (first node repeated at the end)
    """
    nodes = list(nodes)
    indegree: dict[N, int] = {node: 0 for node in nodes}
    for node in nodes:
        for succ in successors.get(node, ()):
            indegree[succ] += 1

    heap = [(key(node), index, node) for index, node in enumerate(nodes) if indegree[node] == 0]
    heapq.heapify(heap)
    position = {node: index for index, node in enumerate(nodes)}

    order: list[N] = []
    while heap:
        _, _, node = heapq.heappop(heap)
        order.append(node)
        for succ in successors.get(node, ()):
            indegree[succ] -= 1
            if indegree[succ] == 0:
                heapq.heappush(heap, (key(succ), position[succ], succ))

    if len(order) < len(nodes):
        remaining = {node for node in nodes if indegree[node] > 0}
        cycle = find_cycle(remaining, successors, key)
        raise CycleError([str(node) for node in cycle], scope=scope)
    return order


def find_cycle(
    nodes: set[N],
    successors: Mapping[N, Iterable[N]],
    key: Callable[[N], Any],
) -> list[N]:
    """Return one cycle among ``nodes`` as a path, or [] if there is none."""

    def ordered(node: N) -> Iterable[N]:
        return iter(sorted((s for s in successors.get(node, ()) if s in nodes), key=key))

    visiting, done = 1, 2
    state: dict[N, int] = {}
    for start in sorted(nodes, key=key):
        if start in state:
            continue
        path = [start]
        state[start] = visiting
        stack = [ordered(start)]
        while stack:
            advanced = False
            for succ in stack[-1]:
                if state.get(succ) == visiting:
                    return path[path.index(succ) :] + [succ]
                if succ not in state:
                    state[succ] = visiting
                    path.append(succ)
                    stack.append(ordered(succ))
                    advanced = True
                    break
            if not advanced:
                state[path.pop()] = done
                stack.pop()
    return []
