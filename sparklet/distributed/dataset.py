"""
Lazily evaluated, partitioned datasets.

A Dataset is an immutable handle to a node of its session's lineage graph.
Transformations add nodes and return new handles; nothing is computed until
an action (collect, count, partitions, tree_aggregate, write_parquet, ...)
submits a job to the session's scheduler.
"""

import copy
import logging
import shutil
from pathlib import Path
from typing import (TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple,
                    Union)

import numpy as np
import pandas as pd

from ..core.errors import ParameterError, SchemaError, SessionError
from .cache import StorageLevel
from .lineage import OpKind, PlanNode
from .partitioner import EvenPartitioner, HashPartitioner, RangePartitioner, coalesce_groups
from .schema import ColumnType, Schema

if TYPE_CHECKING:
    from ..core.session import Session

logger = logging.getLogger(__name__)

AGGREGATIONS = ("sum", "count", "mean", "min", "max")
JOIN_TYPES = ("inner", "left")


def _partition_count(requested: Optional[int], default: int) -> int:
    if requested is None:
        return default
    if requested < 1:
        raise ParameterError(f"Number of partitions must be positive, got {requested}")
    return requested


class Dataset:
    """Immutable lazy handle to a partitioned dataset."""

    def __init__(self, session: "Session", node_id: int):
        self.session = session
        self.node_id = node_id

    # Properties

    @property
    def node(self) -> PlanNode:
        return self.session.lineage.node(self.node_id)

    @property
    def schema(self) -> Schema:
        return self.node.schema

    @property
    def columns(self) -> List[str]:
        return self.schema.names

    @property
    def num_partitions(self) -> int:
        return self.node.num_partitions

    @property
    def is_cached(self) -> bool:
        return self.node.storage_level is not None

    @property
    def storage_level(self) -> Optional[StorageLevel]:
        return self.node.storage_level

    @property
    def is_broadcast(self) -> bool:
        return self.node.broadcast

    def __repr__(self) -> str:
        return f"Dataset(node={self.node_id}, partitions={self.num_partitions}, columns={self.columns})"

    def _derive(self, kind: OpKind, label: str, parents: Tuple[int, ...], schema: Schema,
                num_partitions: int, payload: Optional[Dict[str, Any]] = None) -> "Dataset":
        self.session._check_open()
        node = self.session.lineage.add(kind, label, parents, schema, num_partitions, payload)
        return Dataset(self.session, node.id)

    def _check_same_session(self, other: "Dataset") -> None:
        if other.session is not self.session:
            raise SessionError("Datasets belong to different sessions")

    # Narrow transformations

    def map_partitions(self, fn: Callable[[pd.DataFrame, int], pd.DataFrame],
                       schema: Optional[Schema] = None, label: str = "map_partitions") -> "Dataset":
        """
        Apply ``fn(partition, partition_index)`` to every partition.

        Without an explicit schema the output schema is inferred by applying
        ``fn`` to an empty partition.
        """
        if schema is None:
            try:
                schema = Schema.infer(fn(self.schema.empty_frame(), 0))
            except (KeyError, ValueError, TypeError, IndexError) as e:
                raise SchemaError(f"Could not infer the output schema of {label}; pass schema=. ({e})")
        return self._derive(OpKind.MAP_PARTITIONS, label, (self.node_id,), schema,
                            self.num_partitions, {"fn": fn})

    def with_column(self, name: str, fn: Callable[[pd.DataFrame], Any],
                    dtype: ColumnType = ColumnType.UNKNOWN) -> "Dataset":
        """Add or replace column ``name`` with ``fn(partition)``."""
        def add_column(df: pd.DataFrame, index: int) -> pd.DataFrame:
            out = df.copy()
            values = fn(df) if len(df) else []
            out[name] = pd.Series(list(values) if dtype == ColumnType.VECTOR else values,
                                  index=df.index, dtype=object if dtype == ColumnType.VECTOR else None)
            return out

        return self.map_partitions(add_column, self.schema.replace(name, dtype), label=f"with_column[{name}]")

    def select(self, *columns: str) -> "Dataset":
        schema = self.schema.select(columns)
        names = list(columns)
        return self.map_partitions(lambda df, i: df[names], schema, label="select")

    def drop(self, *columns: str) -> "Dataset":
        for column in columns:
            self.schema.require(column)
        schema = self.schema.drop(columns)
        names = list(columns)
        return self.map_partitions(lambda df, i: df.drop(columns=names), schema, label="drop")

    def filter(self, predicate: Union[str, Callable[[pd.DataFrame], Any]]) -> "Dataset":
        """Keep rows matching a boolean mask function or a pandas query string."""
        if isinstance(predicate, str):
            expression = predicate

            def keep(df: pd.DataFrame, index: int) -> pd.DataFrame:
                return df.query(expression).reset_index(drop=True)
        else:
            def keep(df: pd.DataFrame, index: int) -> pd.DataFrame:
                if len(df) == 0:
                    return df
                mask = np.asarray(predicate(df), dtype=bool)
                return df[mask].reset_index(drop=True)

        return self.map_partitions(keep, self.schema, label="filter")

    def union(self, other: "Dataset") -> "Dataset":
        """Concatenate the partitions of both datasets; columns must match by name."""
        self._check_same_session(other)
        if sorted(self.columns) != sorted(other.columns):
            raise SchemaError(f"Cannot union datasets with different columns: {self.columns} vs {other.columns}")
        return self._derive(OpKind.UNION, "union", (self.node_id, other.node_id), self.schema,
                            self.num_partitions + other.num_partitions)

    def coalesce(self, num_partitions: int) -> "Dataset":
        """Merge adjacent partitions without a shuffle; never increases the partition count."""
        if num_partitions < 1:
            raise ParameterError(f"Number of partitions must be positive, got {num_partitions}")
        if num_partitions >= self.num_partitions:
            return self
        groups = coalesce_groups(self.num_partitions, num_partitions)
        return self._derive(OpKind.COALESCE, "coalesce", (self.node_id,), self.schema,
                            num_partitions, {"groups": groups})

    # Wide transformations

    def _shuffle(self, label: str, partitioner, schema: Schema,
                 map_side: Optional[Callable] = None, reducer: Optional[Callable] = None) -> "Dataset":
        payload = {
            "shuffle_id": self.session.shuffle_manager.new_shuffle_id(),
            "partitioner": partitioner,
            "map_side": map_side,
            "reducer": reducer,
        }
        return self._derive(OpKind.SHUFFLE, label, (self.node_id,), schema,
                            partitioner.num_partitions, payload)

    def repartition(self, num_partitions: Optional[int] = None,
                    by: Optional[Union[str, Sequence[str]]] = None) -> "Dataset":
        """
        Redistribute rows with a shuffle.

        With ``by`` rows are hash partitioned on those columns. Otherwise rows
        are spread evenly in contiguous blocks: partition sizes differ by at
        most one and rows keep their relative order. Without a count, keyed
        repartitioning uses the session's shuffle partition count and the
        other form restores the implicit partitioning of the source.
        """
        if by is not None:
            keys = [by] if isinstance(by, str) else list(by)
            for key in keys:
                self.schema.require(key)
            count = _partition_count(num_partitions, self.session.shuffle_partitions)
            return self._shuffle("repartition_by", HashPartitioner(count, keys), self.schema)

        count = _partition_count(num_partitions, self.session.lineage.source_of(self.node_id).num_partitions)
        return self._shuffle("repartition", EvenPartitioner(count), self.schema)

    def sort(self, by: Union[str, Sequence[str]], ascending: bool = True) -> "Dataset":
        """Global sort: range partitioning on sampled bounds, then a stable local sort."""
        keys = [by] if isinstance(by, str) else list(by)
        if not keys:
            raise ParameterError("sort requires at least one column")
        for key in keys:
            self.schema.require(key)

        def local_sort(df: pd.DataFrame, index: int) -> pd.DataFrame:
            if len(df) == 0:
                return df
            return df.sort_values(keys, ascending=ascending, kind="mergesort",
                                  na_position="last").reset_index(drop=True)

        partitioner = RangePartitioner(self.num_partitions, keys[0], ascending)
        return self._shuffle("sort", partitioner, self.schema, reducer=local_sort)

    def group_agg(self, keys: Union[str, Sequence[str]],
                  aggregations: Dict[str, Tuple[str, str]],
                  num_partitions: Optional[int] = None) -> "Dataset":
        """
        Grouped aggregation with a partial aggregate before the shuffle.

        Args:
            keys: Grouping columns
            aggregations: Output column to (input column, function); functions
                are sum, count, mean, min, max. Use column "*" with count to
                count rows.
            num_partitions: Partition count of the result

        Returns:
            Dataset with the key columns followed by one column per aggregation
        """
        keys = [keys] if isinstance(keys, str) else list(keys)
        if not keys:
            raise ParameterError("group_agg requires at least one key column")
        if not aggregations:
            raise ParameterError("group_agg requires at least one aggregation")
        for key in keys:
            self.schema.require(key)
        for alias, (column, func) in aggregations.items():
            if func not in AGGREGATIONS:
                raise ParameterError(f"Unknown aggregation '{func}' for '{alias}'. Supported: {AGGREGATIONS}")
            if column == "*":
                if func != "count":
                    raise ParameterError(f"Column '*' is only valid with count (aggregation '{alias}')")
            elif func == "count":
                self.schema.require(column)
            else:
                self.schema.require(column, ColumnType.NUMERIC, ColumnType.BOOLEAN, stage="group_agg")
            if alias in keys:
                raise SchemaError(f"Aggregation output '{alias}' collides with a key column")

        specs = list(aggregations.items())
        out_schema = Schema([(k, self.schema[k]) for k in keys] + [(alias, ColumnType.NUMERIC) for alias, _ in specs])

        def partial(df: pd.DataFrame, index: int) -> pd.DataFrame:
            grouped = df.groupby(keys, dropna=False, sort=False)
            parts = {}
            for alias, (column, func) in specs:
                if func == "count":
                    parts[f"{alias}__count"] = grouped.size() if column == "*" else grouped[column].count()
                elif func == "mean":
                    parts[f"{alias}__sum"] = grouped[column].sum()
                    parts[f"{alias}__count"] = grouped[column].count()
                else:
                    parts[f"{alias}__{func}"] = getattr(grouped[column], func)()
            if len(df) == 0:
                columns = keys + list(parts)
                return pd.DataFrame({c: pd.Series([], dtype=df[c].dtype if c in df else "float64")
                                     for c in columns})
            return pd.DataFrame(parts).reset_index()

        def combine(df: pd.DataFrame, index: int) -> pd.DataFrame:
            if len(df) == 0:
                return out_schema.empty_frame()
            grouped = df.groupby(keys, dropna=False, sort=True)
            result = {}
            for alias, (column, func) in specs:
                if func == "count":
                    result[alias] = grouped[f"{alias}__count"].sum().astype("int64")
                elif func == "sum":
                    result[alias] = grouped[f"{alias}__sum"].sum()
                elif func == "mean":
                    result[alias] = grouped[f"{alias}__sum"].sum() / grouped[f"{alias}__count"].sum()
                else:
                    result[alias] = getattr(grouped[f"{alias}__{func}"], func)()
            return pd.DataFrame(result).reset_index()[out_schema.names]

        count = _partition_count(num_partitions, self.session.shuffle_partitions)
        return self._shuffle("group_agg", HashPartitioner(count, keys), out_schema,
                             map_side=partial, reducer=combine)

    def join(self, other: "Dataset", on: Union[str, Sequence[str]], how: str = "inner",
             num_partitions: Optional[int] = None) -> "Dataset":
        """
        Equi-join on key columns.

        If ``other`` carries a broadcast hint it is collected once on the
        driver and joined against every partition of this dataset without a
        shuffle; otherwise both sides are hash partitioned on the keys.
        Non-key columns of ``other`` that collide with this dataset's columns
        get a ``_right`` suffix.
        """
        self._check_same_session(other)
        keys = [on] if isinstance(on, str) else list(on)
        if not keys:
            raise ParameterError("join requires at least one key column")
        if how not in JOIN_TYPES:
            raise ParameterError(f"Unsupported join type '{how}'. Supported: {JOIN_TYPES}")
        for key in keys:
            self.schema.require(key)
            other.schema.require(key)

        columns = list(self.schema.items())
        for name, ctype in other.schema.items():
            if name in keys:
                continue
            columns.append((f"{name}_right" if name in self.schema else name, ctype))
        out_schema = Schema(columns)
        out_names = out_schema.names

        def merge(left: pd.DataFrame, right: pd.DataFrame, index: int) -> pd.DataFrame:
            joined = left.merge(right, on=keys, how=how, suffixes=("", "_right"), sort=False)
            return joined[out_names]

        if other.is_broadcast:
            return self._derive(OpKind.BROADCAST_JOIN, f"broadcast_join_{how}", (self.node_id, other.node_id),
                                out_schema, self.num_partitions,
                                {"broadcast_node": other.node_id, "fn": merge})

        count = _partition_count(num_partitions, self.session.shuffle_partitions)
        left = self.repartition(count, by=keys)
        right = other.repartition(count, by=keys)
        return self._derive(OpKind.ZIP_PARTITIONS, f"join_{how}", (left.node_id, right.node_id),
                            out_schema, count, {"fn": merge})

    # Persistence hints

    def persist(self, storage_level: Union[StorageLevel, str, None] = None) -> "Dataset":
        """Keep computed partitions in the session cache; returns this dataset."""
        self.session._check_open()
        if storage_level is None:
            level = self.session.default_storage_level
        else:
            level = StorageLevel(storage_level) if isinstance(storage_level, str) else storage_level
        self.node.storage_level = level
        return self

    def cache(self) -> "Dataset":
        return self.persist()

    def uncache(self) -> "Dataset":
        self.node.storage_level = None
        self.session.cache_manager.remove_node(self.node_id)
        return self

    def release_shuffles(self) -> int:
        """
        Drop the stored map outputs of the shuffles this dataset depends on.

        Outputs read by a running job are kept; later jobs recompute released
        shuffles. Returns the number of shuffles released.
        """
        return self.session.scheduler.release_shuffles(self.node_id)

    def broadcast(self) -> "Dataset":
        """Return a copy of this dataset hinted for broadcast joins."""
        hinted = self.map_partitions(lambda df, i: df, self.schema, label="broadcast")
        hinted.node.broadcast = True
        return hinted

    def checkpoint(self) -> "Dataset":
        """
        Write every partition to the checkpoint directory and return a dataset
        that reads them back, with its lineage truncated. A failed or cancelled
        checkpoint removes the files it wrote.
        """
        directory = self.session.checkpoint_directory() / f"node-{self.node_id}"
        storage = self.session.storage
        schema = self.schema
        existed = directory.exists()

        try:
            paths = self.session.run_job(
                self, lambda df, index: str(storage.write_partition(df, directory, index, schema)),
                description=f"checkpoint {self.node.stage_uid}")
        except Exception:
            # files of an earlier checkpoint of this node are still referenced
            if not existed:
                shutil.rmtree(directory, ignore_errors=True)
                logger.info(f"Removed incomplete checkpoint {directory}")
            raise
        logger.info(f"Checkpointed {self.node.stage_uid} to {directory} ({len(paths)} partitions)")
        return self._derive(OpKind.CHECKPOINT, "checkpoint", (), schema, len(paths),
                            {"files": paths, "directory": str(directory)})

    # Actions

    def partitions(self) -> List[pd.DataFrame]:
        """Every partition as a DataFrame, in partition index order."""
        return self.session.run_job(self, description=f"partitions of {self.node.stage_uid}")

    def collect(self) -> pd.DataFrame:
        """All rows, partitions concatenated in index order."""
        frames = self.session.run_job(self, description=f"collect {self.node.stage_uid}")
        non_empty = [f for f in frames if len(f)]
        if not non_empty:
            return frames[0].reset_index(drop=True) if frames else self.schema.empty_frame()
        return pd.concat(non_empty, ignore_index=True)

    def to_pandas(self) -> pd.DataFrame:
        return self.collect()

    def head(self, n: int = 5) -> pd.DataFrame:
        return self.collect().head(n)

    def count(self) -> int:
        return int(sum(self.partition_sizes()))

    def partition_sizes(self) -> List[int]:
        return self.session.run_job(self, lambda df, index: len(df),
                                    description=f"count {self.node.stage_uid}")

    def tree_aggregate(self, zero: Any, seq_op: Callable[[Any, pd.DataFrame], Any],
                       comb_op: Callable[[Any, Any], Any]) -> Any:
        """
        Aggregate without collecting rows: ``seq_op`` folds each partition into
        a copy of ``zero`` on the workers, then partial results are combined
        pairwise on the driver.
        """
        partials = self.session.run_job(self, lambda df, index: seq_op(copy.deepcopy(zero), df),
                                        description=f"aggregate {self.node.stage_uid}")
        if not partials:
            return copy.deepcopy(zero)
        while len(partials) > 1:
            partials = [comb_op(partials[i], partials[i + 1]) if i + 1 < len(partials) else partials[i]
                        for i in range(0, len(partials), 2)]
        return partials[0]

    def write_parquet(self, path: Union[str, Path]) -> List[str]:
        """Write one parquet file per partition under ``path``."""
        storage = self.session.storage
        schema = self.schema
        directory = Path(path)
        return self.session.run_job(
            self, lambda df, index: str(storage.write_partition(df, directory, index, schema)),
            description=f"write {directory}")

    # Debugging

    def lineage(self) -> List[PlanNode]:
        return self.session.lineage.lineage(self.node_id)

    def explain(self) -> str:
        """Lineage tree followed by the stage plan."""
        graph = self.session.lineage
        lines = graph.describe(self.node_id)
        lines.append("")
        for position, (description, node_ids) in enumerate(graph.stage_plan(self.node_id)):
            labels = ", ".join(graph.node(i).stage_uid for i in node_ids)
            lines.append(f"Stage {position}: {description} [{labels}]")
        return "\n".join(lines)
