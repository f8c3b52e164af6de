"""Graph traversal helpers over (from, to) pairs."""

from collections import deque
from typing import Dict, Hashable, Iterable, List, Set, Tuple

Pair = Tuple[Hashable, Hashable]


def build_adjacency(pairs: Iterable[Pair], directed: bool = False) -> Dict[Hashable, Set[Hashable]]:
    adjacency: Dict[Hashable, Set[Hashable]] = {}
    for source, target in pairs:
        adjacency.setdefault(source, set()).add(target)
        adjacency.setdefault(target, set())
        if not directed:
            adjacency[target].add(source)
    return adjacency


def component_containing(node: Hashable, pairs: Iterable[Pair]) -> Set[Hashable]:
    """Nodes reachable from `node` ignoring edge direction; `{node}` if it has no edges."""
    adjacency = build_adjacency(pairs)
    seen = {node}
    queue = deque([node])
    while queue:
        current = queue.popleft()
        for neighbour in adjacency.get(current, ()):
            if neighbour not in seen:
                seen.add(neighbour)
                queue.append(neighbour)
    return seen


def connected_components(pairs: Iterable[Pair], nodes: Iterable[Hashable] = ()) -> List[Set[Hashable]]:
    """
    Weakly connected components.

    `nodes` adds isolated nodes, which come back as singleton components.
    Components are returned in first-seen order.
    """
    adjacency = build_adjacency(pairs)
    for node in nodes:
        adjacency.setdefault(node, set())

    seen: Set[Hashable] = set()
    components: List[Set[Hashable]] = []
    for start in adjacency:
        if start in seen:
            continue
        component = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for neighbour in adjacency[current]:
                if neighbour not in component:
                    component.add(neighbour)
                    queue.append(neighbour)
        seen |= component
        components.append(component)
    return components


def merge_overlapping_groups(groups: Iterable[Iterable[Hashable]]) -> List[List[Hashable]]:
    """Union groups that share a member; member order follows first appearance."""
    order: List[Hashable] = []
    pairs: List[Pair] = []
    for group in groups:
        members = list(group)
        for member in members:
            if member not in order:
                order.append(member)
        pairs.extend(zip(members, members[1:]))

    components = connected_components(pairs, nodes=order)
    position = {member: index for index, member in enumerate(order)}
    merged = [sorted(component, key=position.__getitem__) for component in components]
    return sorted(merged, key=lambda group: position[group[0]])
