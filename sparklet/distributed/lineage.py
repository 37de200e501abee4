"""
Lineage graph: an arena of plan nodes addressed by integer id.

Nodes never reference each other directly; a node's parents are the ids of
the nodes it was derived from. Recovery of a lost partition replays the
chain of nodes back to the nearest source, checkpoint, or materialized
shuffle output.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .schema import Schema


class OpKind(Enum):
    """Kinds of plan nodes."""
    SOURCE = "source"
    CHECKPOINT = "checkpoint"
    MAP_PARTITIONS = "map_partitions"
    COALESCE = "coalesce"
    UNION = "union"
    ZIP_PARTITIONS = "zip_partitions"
    BROADCAST_JOIN = "broadcast_join"
    SHUFFLE = "shuffle"


class Dependency(Enum):
    """How a node depends on its parents."""
    NONE = "none"
    NARROW = "narrow"
    SHUFFLE = "shuffle"


@dataclass
class PlanNode:
    """One operation in the lineage graph."""
    id: int
    kind: OpKind
    label: str
    parents: Tuple[int, ...]
    schema: Schema
    num_partitions: int
    payload: Dict[str, Any] = field(default_factory=dict)
    storage_level: Optional[Any] = None
    broadcast: bool = False

    @property
    def dependency(self) -> Dependency:
        if not self.parents:
            return Dependency.NONE
        if self.kind == OpKind.SHUFFLE:
            return Dependency.SHUFFLE
        return Dependency.NARROW

    @property
    def stage_uid(self) -> str:
        return f"{self.label}#{self.id}"


class LineageGraph:
    """Append-only arena of PlanNodes."""

    def __init__(self):
        self._nodes: List[PlanNode] = []
        self._lock = threading.Lock()

    def add(self, kind: OpKind, label: str, parents: Tuple[int, ...], schema: Schema,
            num_partitions: int, payload: Optional[Dict[str, Any]] = None) -> PlanNode:
        with self._lock:
            for parent in parents:
                if parent < 0 or parent >= len(self._nodes):
                    raise ValueError(f"Unknown parent node id: {parent}")
            node = PlanNode(
                id=len(self._nodes),
                kind=kind,
                label=label,
                parents=tuple(parents),
                schema=schema,
                num_partitions=num_partitions,
                payload=payload or {}
            )
            self._nodes.append(node)
            return node

    def node(self, node_id: int) -> PlanNode:
        return self._nodes[node_id]

    def __len__(self) -> int:
        return len(self._nodes)

    def ancestors(self, node_id: int) -> List[int]:
        """All node ids reachable through parent links, nearest first."""
        seen: List[int] = []
        frontier = [node_id]
        while frontier:
            current = frontier.pop(0)
            for parent in self._nodes[current].parents:
                if parent not in seen:
                    seen.append(parent)
                    frontier.append(parent)
        return seen

    def source_of(self, node_id: int) -> PlanNode:
        """Follow first parents back to the node with no parents."""
        node = self._nodes[node_id]
        while node.parents:
            node = self._nodes[node.parents[0]]
        return node

    def shuffle_dependencies(self, node_id: int) -> List[int]:
        """Nearest SHUFFLE nodes reached without crossing another shuffle."""
        found: List[int] = []
        frontier = list(self._nodes[node_id].parents) if self._nodes[node_id].kind == OpKind.SHUFFLE \
            else [node_id]
        visited = set()
        while frontier:
            current = frontier.pop()
            if current in visited:
                continue
            visited.add(current)
            node = self._nodes[current]
            if node.kind == OpKind.SHUFFLE:
                found.append(current)
                continue
            # the broadcast side of a join is materialized by its own job
            frontier.extend(node.parents[:1] if node.kind == OpKind.BROADCAST_JOIN else node.parents)
        return sorted(found)

    def broadcast_dependencies(self, node_id: int) -> List[int]:
        """Broadcast inputs needed to compute ``node_id`` within its stage."""
        found: List[int] = []
        frontier = [node_id]
        visited = set()
        while frontier:
            current = frontier.pop()
            if current in visited:
                continue
            visited.add(current)
            node = self._nodes[current]
            if node.kind == OpKind.BROADCAST_JOIN:
                found.append(node.payload["broadcast_node"])
                frontier.append(node.parents[0])
                continue
            if node.kind == OpKind.SHUFFLE and current != node_id:
                continue
            frontier.extend(node.parents)
        return sorted(found)

    def lineage(self, node_id: int) -> List[PlanNode]:
        """The node followed by its ancestors, nearest first."""
        return [self._nodes[node_id]] + [self._nodes[i] for i in self.ancestors(node_id)]

    def _stage_members(self, starts: List[int]) -> Tuple[List[int], List[int]]:
        members: List[int] = []
        boundaries: List[int] = []
        frontier = list(starts)
        while frontier:
            current = frontier.pop(0)
            node = self._nodes[current]
            if node.kind == OpKind.SHUFFLE:
                if current not in boundaries:
                    boundaries.append(current)
                continue
            if current in members:
                continue
            members.append(current)
            frontier.extend(node.parents[:1] if node.kind == OpKind.BROADCAST_JOIN else node.parents)
        return members, boundaries

    def stage_plan(self, node_id: int) -> List[Tuple[str, List[int]]]:
        """
        Split the computation of ``node_id`` into stages at shuffle boundaries.

        Returns (description, node ids) pairs, parents first; the last entry is
        the result stage.
        """
        plan: List[Tuple[str, List[int]]] = []
        planned = set()

        def build(description: str, starts: List[int], reads: Optional[int] = None) -> None:
            members, boundaries = self._stage_members(starts)
            if reads is not None:
                boundaries = [b for b in boundaries if b != reads]
            for boundary in boundaries:
                if boundary not in planned:
                    planned.add(boundary)
                    shuffle = self._nodes[boundary]
                    build(f"shuffle map stage for {shuffle.stage_uid}", list(shuffle.parents))
            for member in members:
                node = self._nodes[member]
                if node.kind == OpKind.BROADCAST_JOIN:
                    side = node.payload["broadcast_node"]
                    if side not in planned:
                        planned.add(side)
                        build(f"broadcast of {self._nodes[side].stage_uid}", [side])
            stage_nodes = ([reads] if reads is not None else []) + members
            plan.append((description, stage_nodes))

        root = self._nodes[node_id]
        if root.kind == OpKind.SHUFFLE:
            planned.add(node_id)
            build(f"shuffle map stage for {root.stage_uid}", list(root.parents))
            plan.append((f"result stage for {root.stage_uid}", [node_id]))
        else:
            build(f"result stage for {root.stage_uid}", [node_id])
        return plan

    def describe(self, node_id: int, indent: int = 0) -> List[str]:
        """Indented lineage tree; shuffle boundaries are marked with '+-'."""
        node = self._nodes[node_id]
        marker = "+- " if node.kind == OpKind.SHUFFLE else "   "
        flags = []
        if node.storage_level is not None:
            flags.append(f"cached={getattr(node.storage_level, 'value', node.storage_level)}")
        if node.broadcast:
            flags.append("broadcast")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        lines = [f"{'  ' * indent}{marker}({node.num_partitions}) {node.stage_uid}{suffix}"]
        for parent in node.parents:
            lines.extend(self.describe(parent, indent + 1))
        return lines
