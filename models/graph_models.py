"""Story graph: an arena of nodes whose choices point at node indices."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from core.errors import StructureInvalidError

from .tool_models import NodeOutline, StructureResult


@dataclass
class Choice:
    id: str
    text: str
    target: int


@dataclass
class Node:
    id: str
    body: str = ""
    choices: list[Choice] = field(default_factory=list)
    is_convergence: bool = False
    educational_annotation: str | None = None

    @property
    def has_body(self) -> bool:
        return bool(self.body.strip())


@dataclass(frozen=True)
class Edge:
    from_id: str
    to_id: str
    choice_id: str


class StoryGraph:
    """Directed acyclic story graph stored as a node arena.

    Nodes live in one list and choices reference their targets by arena
    index, so the structure never holds node-to-node references.
    """

    def __init__(self, nodes: list[Node], start_id: str | None = None):
        self._nodes = nodes
        self._index: dict[str, int] = {}
        for position, node in enumerate(nodes):
            if node.id in self._index:
                raise StructureInvalidError(f"duplicate node id '{node.id}'")
            self._index[node.id] = position
        for node in nodes:
            for choice in node.choices:
                if not 0 <= choice.target < len(nodes):
                    raise StructureInvalidError(
                        f"choice '{choice.id}' of '{node.id}' targets no node"
                    )
        roots = self.roots()
        if start_id is None:
            if len(roots) != 1:
                raise StructureInvalidError(
                    f"expected exactly one start node, found {len(roots)}",
                    details={"roots": [self._nodes[i].id for i in roots]},
                )
            start_id = self._nodes[roots[0]].id
        if start_id not in self._index:
            raise StructureInvalidError(f"start node '{start_id}' does not exist")
        self.start_id = start_id
        self.refresh_convergence()

    @classmethod
    def from_skeleton(cls, skeleton: StructureResult | Mapping[str, Any]) -> StoryGraph:
        """Build a graph with empty bodies from a ``generate_structure`` reply.

        Choice targets come from the choice itself, then from an edge carrying
        the same choice id, then from the node's edges in order.
        """
        if not isinstance(skeleton, StructureResult):
            skeleton = StructureResult.model_validate(skeleton)
        raw_nodes = skeleton.nodes
        if isinstance(raw_nodes, Mapping):
            raw_nodes = [{"id": node_id, **data} for node_id, data in raw_nodes.items()]
        if not raw_nodes:
            raise StructureInvalidError("structure contains no nodes")

        ids: list[str] = []
        for raw in raw_nodes:
            node_id = raw.get("id") or raw.get("node_id")
            if not node_id:
                raise StructureInvalidError("structure node without an id")
            ids.append(str(node_id))
        index = {node_id: position for position, node_id in enumerate(ids)}
        if len(index) != len(ids):
            raise StructureInvalidError("structure contains duplicate node ids")

        edge_by_choice = {
            str(edge.get("choice_id")): str(edge.get("to_node_id"))
            for edge in skeleton.edges
            if edge.get("choice_id")
        }
        edges_by_source: dict[str, list[str]] = {}
        for edge in skeleton.edges:
            edges_by_source.setdefault(str(edge.get("from_node_id")), []).append(
                str(edge.get("to_node_id"))
            )

        nodes: list[Node] = []
        for node_id, raw in zip(ids, raw_nodes):
            content = raw.get("content") if isinstance(raw.get("content"), dict) else {}
            raw_choices = raw.get("choices") or content.get("choices") or []
            fallback_targets = edges_by_source.get(node_id, [])
            choices: list[Choice] = []
            for position, raw_choice in enumerate(raw_choices):
                choice_id = str(raw_choice.get("id") or f"{node_id}-c{position + 1}")
                target_id = (
                    raw_choice.get("target_node_id")
                    or raw_choice.get("next_node_id")
                    or edge_by_choice.get(choice_id)
                )
                if not target_id and position < len(fallback_targets):
                    target_id = fallback_targets[position]
                if target_id not in index:
                    raise StructureInvalidError(
                        f"choice '{choice_id}' of '{node_id}' targets unknown node "
                        f"'{target_id}'"
                    )
                choices.append(
                    Choice(
                        id=choice_id,
                        text=str(raw_choice.get("text", "")),
                        target=index[target_id],
                    )
                )
            nodes.append(
                Node(
                    id=node_id,
                    choices=choices,
                    educational_annotation=raw.get("educational_annotation")
                    or content.get("educational_content"),
                )
            )
        return cls(nodes, start_id=skeleton.start_node_id)

    # --- arena access -----------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def index_of(self, node_id: str) -> int:
        return self._index[node_id]

    def node(self, node_id: str) -> Node:
        return self._nodes[self._index[node_id]]

    def at(self, position: int) -> Node:
        return self._nodes[position]

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self._nodes]

    @property
    def start(self) -> Node:
        return self.node(self.start_id)

    def successors(self, position: int) -> list[int]:
        seen: list[int] = []
        for choice in self._nodes[position].choices:
            if choice.target not in seen:
                seen.append(choice.target)
        return seen

    def edges(self) -> list[Edge]:
        return [
            Edge(node.id, self._nodes[choice.target].id, choice.id)
            for node in self._nodes
            for choice in node.choices
        ]

    def indegrees(self) -> list[int]:
        degrees = [0] * len(self._nodes)
        for position in range(len(self._nodes)):
            for target in self.successors(position):
                degrees[target] += 1
        return degrees

    def roots(self) -> list[int]:
        return [i for i, degree in enumerate(self.indegrees()) if degree == 0]

    # --- derived fields ---------------------------------------------------

    def refresh_convergence(self) -> None:
        for node, degree in zip(self._nodes, self.indegrees()):
            node.is_convergence = degree >= 2

    @property
    def convergence_ids(self) -> set[str]:
        return {node.id for node in self._nodes if node.is_convergence}

    def topological_order(self) -> list[int]:
        """Kahn's algorithm; raises when the graph has a cycle."""
        degrees = self.indegrees()
        queue = deque(i for i, degree in enumerate(degrees) if degree == 0)
        order: list[int] = []
        while queue:
            position = queue.popleft()
            order.append(position)
            for target in self.successors(position):
                degrees[target] -= 1
                if degrees[target] == 0:
                    queue.append(target)
        if len(order) != len(self._nodes):
            cyclic = [self._nodes[i].id for i, d in enumerate(degrees) if d > 0]
            raise StructureInvalidError(
                "structure contains a cycle", details={"nodes": cyclic}
            )
        return order

    def reachable_from_start(self) -> set[int]:
        start = self.index_of(self.start_id)
        seen = {start}
        queue = deque([start])
        while queue:
            for target in self.successors(queue.popleft()):
                if target not in seen:
                    seen.add(target)
                    queue.append(target)
        return seen

    def depths(self) -> dict[str, int]:
        """BFS level of every reachable node; the start node is level 1."""
        start = self.index_of(self.start_id)
        levels = {start: 1}
        queue = deque([start])
        while queue:
            position = queue.popleft()
            for target in self.successors(position):
                if target not in levels:
                    levels[target] = levels[position] + 1
                    queue.append(target)
        return {self._nodes[i].id: level for i, level in levels.items()}

    def max_depth(self) -> int:
        """Number of nodes on the longest path from the start node."""
        longest = [0] * len(self._nodes)
        longest[self.index_of(self.start_id)] = 1
        for position in self.topological_order():
            if longest[position] == 0:
                continue
            for target in self.successors(position):
                longest[target] = max(longest[target], longest[position] + 1)
        return max(longest)

    def check_invariants(
        self,
        max_depth: int,
        convergence_ratio: float | None,
        tolerance: float,
        expected_count: int | None = None,
    ) -> None:
        """Raise ``StructureInvalidError`` unless the graph is well formed."""
        if expected_count is not None and len(self) != expected_count:
            raise StructureInvalidError(
                f"structure has {len(self)} nodes, expected {expected_count}"
            )
        roots = self.roots()
        if len(roots) != 1 or self._nodes[roots[0]].id != self.start_id:
            raise StructureInvalidError(
                "start node is not the unique node without predecessors",
                details={"roots": [self._nodes[i].id for i in roots]},
            )
        self.topological_order()
        unreachable = set(range(len(self))) - self.reachable_from_start()
        if unreachable:
            raise StructureInvalidError(
                "nodes unreachable from the start node",
                details={"nodes": sorted(self._nodes[i].id for i in unreachable)},
            )
        depth = self.max_depth()
        if depth > max_depth:
            raise StructureInvalidError(
                f"longest path spans {depth} nodes, bound is {max_depth}"
            )
        if convergence_ratio is not None:
            actual = len(self.convergence_ids) / len(self)
            if abs(actual - convergence_ratio) > tolerance:
                raise StructureInvalidError(
                    f"convergence ratio {actual:.2f} outside "
                    f"{convergence_ratio:.2f} +- {tolerance:.2f}"
                )

    # --- bodies -----------------------------------------------------------

    def empty_node_ids(self) -> list[str]:
        return [node.id for node in self._nodes if not node.has_body]

    def clear_bodies(self, node_ids: set[str] | list[str]) -> None:
        for node_id in node_ids:
            self.node(node_id).body = ""

    def outline(self, node_ids: list[str]) -> list[NodeOutline]:
        return [
            NodeOutline(
                id=node.id,
                is_convergence=node.is_convergence,
                choices=[
                    {
                        "id": choice.id,
                        "text": choice.text,
                        "target_node_id": self._nodes[choice.target].id,
                    }
                    for choice in node.choices
                ],
            )
            for node in (self.node(node_id) for node_id in node_ids)
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_node_id": self.start_id,
            "convergence_points": sorted(self.convergence_ids),
            "nodes": [
                {
                    "id": node.id,
                    "body": node.body,
                    "is_convergence": node.is_convergence,
                    "educational_annotation": node.educational_annotation,
                    "choices": [
                        {
                            "id": choice.id,
                            "text": choice.text,
                            "target_node_id": self._nodes[choice.target].id,
                        }
                        for choice in node.choices
                    ],
                }
                for node in self._nodes
            ],
            "edges": [
                {"from_node_id": e.from_id, "to_node_id": e.to_id, "choice_id": e.choice_id}
                for e in self.edges()
            ],
        }
