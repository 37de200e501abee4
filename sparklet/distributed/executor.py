"""
Computes single partitions of plan nodes.

Work is split between the driver and the workers. On the driver,
``PartitionExecutor.plan`` walks the lineage of a node and resolves
everything that lives in session state: cached blocks, shuffle reduce
partitions, broadcast values and in-memory source partitions. The result is
a small tree of plan objects that holds only DataFrames, file paths and the
user's partition functions. That tree is shipped to a worker, where
``evaluate`` runs the functions. Partitions of cached nodes computed along the
way are returned with the result, and the driver stores them in the cache
manager.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from ..core.errors import ErrorCategory, ErrorSeverity, PipelineError
from .broadcast import BroadcastRegistry
from .cache import CacheManager
from .lineage import LineageGraph, OpKind, PlanNode
from .schema import Schema
from .shuffle import ShuffleManager
from .storage import PartitionStorage

logger = logging.getLogger(__name__)

BlockKey = Tuple[int, int]


class PartitionPlan:
    """Base class of the picklable plan objects evaluated on workers."""


@dataclass
class FramePlan(PartitionPlan):
    """A partition already materialized on the driver."""
    frame: pd.DataFrame


@dataclass
class ReadPlan(PartitionPlan):
    """A partition stored in a file."""
    path: str
    format: str
    schema: Schema
    storage: PartitionStorage
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApplyPlan(PartitionPlan):
    """``fn(*inputs, index)`` for map, zip and broadcast join nodes."""
    fn: Callable[..., pd.DataFrame]
    inputs: List[PartitionPlan]
    index: int


@dataclass
class ConcatPlan(PartitionPlan):
    """Adjacent partitions merged by a coalesce."""
    inputs: List[PartitionPlan]


@dataclass
class ProjectPlan(PartitionPlan):
    """Columns reordered to the node's schema (right side of a union)."""
    input: PartitionPlan
    columns: List[str]


@dataclass
class CachePlan(PartitionPlan):
    """A partition of a cached node; the computed frame is handed back to the driver."""
    key: BlockKey
    input: PartitionPlan


def evaluate(plan: PartitionPlan, blocks: Dict[BlockKey, pd.DataFrame]) -> pd.DataFrame:
    """Run a partition plan, collecting partitions of cached nodes into ``blocks``."""
    if isinstance(plan, FramePlan):
        return plan.frame

    if isinstance(plan, ReadPlan):
        if plan.format == "csv":
            df = pd.read_csv(plan.path, **plan.options)
            return df[plan.schema.names] if len(plan.schema) else df
        return plan.storage.read_partition(plan.path, plan.schema)

    if isinstance(plan, ApplyPlan):
        inputs = [evaluate(child, blocks) for child in plan.inputs]
        return plan.fn(*inputs, plan.index)

    if isinstance(plan, ConcatPlan):
        frames = [evaluate(child, blocks) for child in plan.inputs]
        non_empty = [f for f in frames if len(f)]
        if not non_empty:
            return frames[0]
        return pd.concat(non_empty, ignore_index=True)

    if isinstance(plan, ProjectPlan):
        return evaluate(plan.input, blocks)[plan.columns]

    if isinstance(plan, CachePlan):
        df = evaluate(plan.input, blocks)
        blocks[plan.key] = df
        return df

    raise PipelineError(f"Unsupported partition plan: {type(plan).__name__}",
                        ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL)


class PartitionExecutor:
    """Plans partitions on the driver and stores what workers computed for cached nodes."""

    def __init__(self, lineage: LineageGraph, cache_manager: CacheManager,
                 shuffle_manager: ShuffleManager, storage: PartitionStorage,
                 broadcasts: BroadcastRegistry):
        self.lineage = lineage
        self.cache_manager = cache_manager
        self.shuffle_manager = shuffle_manager
        self.storage = storage
        self.broadcasts = broadcasts
        self.logger = logging.getLogger(self.__class__.__name__)

    def plan(self, node_id: int, index: int) -> PartitionPlan:
        """
        Plan partition ``index`` of node ``node_id``.

        Cached blocks that are still retained end the walk; cached nodes whose
        block is gone are recomputed from lineage.
        """
        node = self.lineage.node(node_id)
        if index < 0 or index >= node.num_partitions:
            raise IndexError(f"Partition {index} out of range for {node.stage_uid} "
                             f"with {node.num_partitions} partitions")

        if node.storage_level is not None:
            cached = self.cache_manager.get(node_id, index)
            if cached is not None:
                return FramePlan(cached)
            return CachePlan((node_id, index), self._plan(node, index))

        return self._plan(node, index)

    def _plan(self, node: PlanNode, index: int) -> PartitionPlan:
        kind = node.kind
        payload = node.payload

        if kind == OpKind.SOURCE:
            if "partitions" in payload:
                return FramePlan(payload["partitions"][index].copy())
            return ReadPlan(str(payload["files"][index]), payload.get("format", "parquet"), node.schema,
                            self.storage, dict(payload.get("options", {})))

        if kind == OpKind.CHECKPOINT:
            return ReadPlan(str(payload["files"][index]), "parquet", node.schema, self.storage)

        if kind == OpKind.MAP_PARTITIONS:
            return ApplyPlan(payload["fn"], [self.plan(node.parents[0], index)], index)

        if kind == OpKind.COALESCE:
            return ConcatPlan([self.plan(node.parents[0], i) for i in payload["groups"][index]])

        if kind == OpKind.UNION:
            left, right = node.parents
            left_count = self.lineage.node(left).num_partitions
            if index < left_count:
                return self.plan(left, index)
            return ProjectPlan(self.plan(right, index - left_count), node.schema.names)

        if kind == OpKind.ZIP_PARTITIONS:
            return ApplyPlan(payload["fn"], [self.plan(node.parents[0], index),
                                             self.plan(node.parents[1], index)], index)

        if kind == OpKind.BROADCAST_JOIN:
            value = self.broadcasts.get(payload["broadcast_node"])
            if value is None:
                raise PipelineError(f"Broadcast value for node {payload['broadcast_node']} is not available",
                                    ErrorCategory.SYSTEM, ErrorSeverity.HIGH)
            return ApplyPlan(payload["fn"], [self.plan(node.parents[0], index), FramePlan(value)], index)

        if kind == OpKind.SHUFFLE:
            fetched = FramePlan(self.shuffle_manager.fetch(payload["shuffle_id"], index))
            reducer = payload.get("reducer")
            return ApplyPlan(reducer, [fetched], index) if reducer is not None else fetched

        raise PipelineError(f"Unsupported plan node kind: {kind}", ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL)

    def store_blocks(self, blocks: Dict[BlockKey, pd.DataFrame], job: Optional[Any] = None) -> None:
        """Put partitions of cached nodes computed by a task into the cache."""
        for (node_id, index), df in blocks.items():
            node = self.lineage.node(node_id)
            if node.storage_level is None:
                continue
            retained = self.cache_manager.put(node_id, index, df, node.storage_level)
            if retained and job is not None:
                job.record_block((node_id, index))
