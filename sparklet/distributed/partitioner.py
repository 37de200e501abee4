"""
Partitioners decide which reduce partition each row of a map output goes to.

Every partitioner is prepared once on the driver with the complete set of map
inputs (so it can learn offsets or range bounds), then applied to each map
partition independently.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from ..core.errors import ParameterError


class Partitioner(ABC):
    """Assigns each row of a frame to one of ``num_partitions`` buckets."""

    def __init__(self, num_partitions: int):
        if num_partitions < 1:
            raise ParameterError(f"Number of partitions must be positive, got {num_partitions}")
        self.num_partitions = num_partitions

    def prepare(self, frames: Sequence[pd.DataFrame]) -> None:
        """Learn whatever global information assignment needs."""

    @abstractmethod
    def assign(self, df: pd.DataFrame, map_index: int) -> np.ndarray:
        """Target partition index for every row of ``df``."""

    def split(self, df: pd.DataFrame, map_index: int) -> List[pd.DataFrame]:
        """Split a map partition into buckets, keeping row order inside each bucket."""
        if len(df) == 0:
            return [df.iloc[0:0] for _ in range(self.num_partitions)]
        targets = np.asarray(self.assign(df, map_index), dtype=np.int64)
        return [df[targets == i].reset_index(drop=True) for i in range(self.num_partitions)]

    def describe(self) -> str:
        return f"{self.__class__.__name__}({self.num_partitions})"


class HashPartitioner(Partitioner):
    """Rows with equal key values land in the same partition."""

    def __init__(self, num_partitions: int, keys: Sequence[str]):
        super().__init__(num_partitions)
        if not keys:
            raise ParameterError("HashPartitioner requires at least one key column")
        self.keys = list(keys)

    def assign(self, df: pd.DataFrame, map_index: int) -> np.ndarray:
        hashes = pd.util.hash_pandas_object(df[self.keys], index=False).to_numpy(dtype=np.uint64)
        return (hashes % np.uint64(self.num_partitions)).astype(np.int64)

    def describe(self) -> str:
        return f"HashPartitioner({self.num_partitions}, keys={self.keys})"


class EvenPartitioner(Partitioner):
    """
    Splits the global row sequence into ``num_partitions`` contiguous blocks.

    Block sizes differ by at most one row and the relative order of rows is
    unchanged, so collecting the result without a sort returns rows in the
    order of the input partitions.
    """

    def __init__(self, num_partitions: int):
        super().__init__(num_partitions)
        self._offsets: Optional[List[int]] = None
        self._total = 0

    def prepare(self, frames: Sequence[pd.DataFrame]) -> None:
        offsets = []
        total = 0
        for frame in frames:
            offsets.append(total)
            total += len(frame)
        self._offsets = offsets
        self._total = total

    def assign(self, df: pd.DataFrame, map_index: int) -> np.ndarray:
        if self._offsets is None:
            raise RuntimeError("EvenPartitioner used before prepare()")
        positions = self._offsets[map_index] + np.arange(len(df), dtype=np.int64)
        return (positions * self.num_partitions) // max(self._total, 1)


class RangePartitioner(Partitioner):
    """Orders partitions by key range, using bounds drawn from a sample of the keys."""

    def __init__(self, num_partitions: int, key: str, ascending: bool = True,
                 sample_per_partition: int = 100):
        super().__init__(num_partitions)
        self.key = key
        self.ascending = ascending
        self.sample_per_partition = sample_per_partition
        self.bounds: Optional[np.ndarray] = None

    def prepare(self, frames: Sequence[pd.DataFrame]) -> None:
        samples = []
        for frame in frames:
            values = frame[self.key].dropna()
            if len(values) == 0:
                continue
            step = max(1, len(values) // self.sample_per_partition)
            samples.append(values.iloc[::step].to_numpy())

        if not samples or self.num_partitions == 1:
            self.bounds = np.array([])
            return

        sample = np.sort(np.concatenate(samples), kind="mergesort")
        cut_points = [int(len(sample) * (i + 1) / self.num_partitions) for i in range(self.num_partitions - 1)]
        bounds = [sample[min(c, len(sample) - 1)] for c in cut_points]
        # equal bounds would leave partitions that can never receive rows
        unique_bounds = []
        for bound in bounds:
            if not unique_bounds or bound > unique_bounds[-1]:
                unique_bounds.append(bound)
        self.bounds = np.array(unique_bounds, dtype=sample.dtype)

    def assign(self, df: pd.DataFrame, map_index: int) -> np.ndarray:
        if self.bounds is None:
            raise RuntimeError("RangePartitioner used before prepare()")
        values = df[self.key]
        missing = values.isna().to_numpy()
        targets = np.zeros(len(df), dtype=np.int64)
        present = values[~missing].to_numpy()
        if self.ascending:
            targets[~missing] = np.searchsorted(self.bounds, present, side="right")
            targets[missing] = self.num_partitions - 1
        else:
            targets[~missing] = len(self.bounds) - np.searchsorted(self.bounds, present, side="left")
            targets[missing] = self.num_partitions - 1
        return np.minimum(targets, self.num_partitions - 1)

    def describe(self) -> str:
        order = "asc" if self.ascending else "desc"
        return f"RangePartitioner({self.num_partitions}, key={self.key}, {order})"


def coalesce_groups(current: int, target: int) -> List[List[int]]:
    """Group ``current`` parent partitions into ``target`` contiguous groups."""
    if target < 1:
        raise ParameterError(f"Number of partitions must be positive, got {target}")
    if target >= current:
        return [[i] for i in range(current)]
    return [[int(i) for i in chunk] for chunk in np.array_split(np.arange(current), target)]
