"""
Shuffle output registry.

Map tasks register one list of buckets per map partition; a reduce partition
is the concatenation of its bucket from every map output, in map index order.
A shuffle is complete, and downstream stages may start, only when every map
output is registered.

Completed outputs are kept so later jobs reuse them. They are dropped by:

* a failure or cancellation of the job that produced them
* ``Dataset.release_shuffles`` on a dataset depending on them
* closing the session
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class ShuffleStatus:
    """Map outputs of one shuffle."""
    shuffle_id: int
    num_maps: int
    num_reduces: int
    outputs: Dict[int, List[pd.DataFrame]] = field(default_factory=dict)
    rows_written: int = 0
    bytes_written: int = 0

    @property
    def complete(self) -> bool:
        return len(self.outputs) == self.num_maps


class MissingShuffleOutputError(RuntimeError):
    """A reduce task tried to read a shuffle whose map outputs are not all available."""


class ShuffleManager:
    """Keeps map outputs for every registered shuffle."""

    def __init__(self):
        self._shuffles: Dict[int, ShuffleStatus] = {}
        self._lock = threading.Lock()
        self._next_id = 0
        self.stats = {
            "shuffles_registered": 0,
            "map_outputs_written": 0,
            "rows_written": 0,
            "bytes_written": 0,
            "fetches": 0,
        }

    def new_shuffle_id(self) -> int:
        with self._lock:
            shuffle_id = self._next_id
            self._next_id += 1
            return shuffle_id

    def register_shuffle(self, shuffle_id: int, num_maps: int, num_reduces: int) -> None:
        with self._lock:
            self._shuffles[shuffle_id] = ShuffleStatus(shuffle_id, num_maps, num_reduces)
            self.stats["shuffles_registered"] += 1
        logger.debug(f"Registered shuffle {shuffle_id}: {num_maps} maps -> {num_reduces} reduces")

    def add_map_output(self, shuffle_id: int, map_index: int, buckets: List[pd.DataFrame]) -> None:
        with self._lock:
            status = self._shuffles.get(shuffle_id)
            if status is None:
                raise MissingShuffleOutputError(f"Shuffle {shuffle_id} is not registered")
            if len(buckets) != status.num_reduces:
                raise ValueError(f"Map output for shuffle {shuffle_id} has {len(buckets)} buckets, "
                                 f"expected {status.num_reduces}")
            rows = sum(len(b) for b in buckets)
            size = int(sum(b.memory_usage(deep=True).sum() for b in buckets))
            status.outputs[map_index] = buckets
            status.rows_written += rows
            status.bytes_written += size
            self.stats["map_outputs_written"] += 1
            self.stats["rows_written"] += rows
            self.stats["bytes_written"] += size

    def is_complete(self, shuffle_id: int) -> bool:
        with self._lock:
            status = self._shuffles.get(shuffle_id)
            return status is not None and status.complete

    def fetch(self, shuffle_id: int, reduce_index: int, empty: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """Concatenate one reduce partition from every map output."""
        with self._lock:
            status = self._shuffles.get(shuffle_id)
            if status is None or not status.complete:
                raise MissingShuffleOutputError(f"Shuffle {shuffle_id} has missing map outputs")
            pieces = [status.outputs[m][reduce_index] for m in range(status.num_maps)]
            self.stats["fetches"] += 1

        non_empty = [p for p in pieces if len(p)]
        if not non_empty:
            if pieces:
                return pieces[0].copy()
            return empty.copy() if empty is not None else pd.DataFrame()
        return pd.concat(non_empty, ignore_index=True)

    def unregister(self, shuffle_id: int) -> bool:
        with self._lock:
            removed = self._shuffles.pop(shuffle_id, None)
        if removed is not None:
            logger.debug(f"Unregistered shuffle {shuffle_id}")
        return removed is not None

    def clear(self) -> None:
        with self._lock:
            self._shuffles.clear()

    def get_statistics(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self.stats)
            stats["active_shuffles"] = len(self._shuffles)
        return stats
