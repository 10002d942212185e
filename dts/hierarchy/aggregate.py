"""Roll-up sums over parent/child trees (geographic divisions, HIP taxonomy).

The tree is kept as an arena: a flat list of nodes plus integer child lists,
so traversal is iterative and a cyclic ``parent_id`` chain is reported as
``CyclicHierarchy`` instead of recursing forever.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Hashable, Iterable

from dts.human_effects.errors import HEError, HEErrorKind, invalid_value

logger = logging.getLogger(__name__)

NodeId = Hashable


@dataclass
class AggregationNode:
    id: NodeId
    parent_id: NodeId | None
    name: str = ""
    own_value: float | None = 0.0


class Hierarchy:
    def __init__(self, nodes: list[AggregationNode], children: list[list[int]], roots: list[int]):
        self.nodes = nodes
        self.children = children
        self.roots = roots
        self._index = {node.id: i for i, node in enumerate(nodes)}

    @classmethod
    def from_nodes(cls, nodes: Iterable[AggregationNode]) -> "Hierarchy":
        """Build the arena. Nodes whose parent is not in the set are roots."""
        nodes = list(nodes)
        index: dict[NodeId, int] = {}
        for i, node in enumerate(nodes):
            if node.id in index:
                raise invalid_value(f"Duplicate node id in hierarchy: {node.id!r}")
            index[node.id] = i

        children: list[list[int]] = [[] for _ in nodes]
        roots: list[int] = []
        for i, node in enumerate(nodes):
            parent = index.get(node.parent_id) if node.parent_id is not None else None
            if parent is None:
                roots.append(i)
            else:
                children[parent].append(i)
        return cls(nodes, children, roots)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: NodeId) -> bool:
        return node_id in self._index

    def node(self, node_id: NodeId) -> AggregationNode:
        try:
            return self.nodes[self._index[node_id]]
        except KeyError:
            raise invalid_value(f"Unknown hierarchy node: {node_id!r}") from None

    def post_order(self) -> list[int]:
        """Arena indices with every child before its parent."""
        order: list[int] = []
        visited = [False] * len(self.nodes)
        for root in self.roots:
            stack = [(root, False)]
            while stack:
                i, expanded = stack.pop()
                if expanded:
                    order.append(i)
                    continue
                if visited[i]:
                    continue
                visited[i] = True
                stack.append((i, True))
                for child in reversed(self.children[i]):
                    stack.append((child, False))

        if len(order) != len(self.nodes):
            stuck = sorted(str(self.nodes[i].id) for i, seen in enumerate(visited) if not seen)
            raise HEError(
                HEErrorKind.CYCLIC_HIERARCHY,
                f"Hierarchy contains a cycle; unreachable nodes: {', '.join(stuck[:10])}",
            )
        return order

    def depths(self) -> dict[NodeId, int]:
        """Depth per node with roots at 1 (the division ``level``)."""
        depth = [0] * len(self.nodes)
        for i in reversed(self.post_order()):
            if depth[i] == 0:
                depth[i] = 1
            for child in self.children[i]:
                depth[child] = depth[i] + 1
        return {self.nodes[i].id: depth[i] for i in range(len(self.nodes))}

    def breadcrumb(self, node_id: NodeId) -> list[AggregationNode]:
        """Ancestors from the root down to ``node_id`` itself."""
        chain: list[AggregationNode] = []
        seen: set[NodeId] = set()
        current = self.node(node_id)
        while True:
            if current.id in seen:
                raise HEError(HEErrorKind.CYCLIC_HIERARCHY, f"Cycle above node {node_id!r}")
            seen.add(current.id)
            chain.append(current)
            if current.parent_id is None or current.parent_id not in self._index:
                break
            current = self.node(current.parent_id)
        chain.reverse()
        return chain

    def subtree_ids(self, node_id: NodeId) -> list[NodeId]:
        """The node and all of its descendants."""
        start = self._index.get(node_id)
        if start is None:
            raise invalid_value(f"Unknown hierarchy node: {node_id!r}")
        out: list[NodeId] = []
        seen: set[int] = set()
        stack = [start]
        while stack:
            i = stack.pop()
            if i in seen:
                raise HEError(HEErrorKind.CYCLIC_HIERARCHY, f"Cycle below node {node_id!r}")
            seen.add(i)
            out.append(self.nodes[i].id)
            stack.extend(reversed(self.children[i]))
        return out


def aggregate(
    tree: Hierarchy,
    own_value_of: Callable[[AggregationNode], float | None] | None = None,
) -> dict[NodeId, float]:
    """Rolled-up value per node: its own value plus its children's rolled-up values.

    Missing own values count as 0.
    """
    own_value_of = own_value_of or (lambda node: node.own_value)
    rolled = [0.0] * len(tree.nodes)
    for i in tree.post_order():
        total = own_value_of(tree.nodes[i]) or 0.0
        for child in tree.children[i]:
            total += rolled[child]
        rolled[i] = total
    logger.debug("Aggregated %d nodes over %d roots", len(tree.nodes), len(tree.roots))
    return {tree.nodes[i].id: rolled[i] for i in range(len(tree.nodes))}
