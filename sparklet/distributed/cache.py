"""
Best-effort partition cache.

Blocks are keyed by (node id, partition index). When the memory budget is
exceeded the least recently used blocks are evicted: MEMORY_AND_DISK blocks
spill to local files, MEMORY_ONLY blocks are dropped and recomputed from
lineage on their next read. Readers always receive a copy, so a cached block
can be shared by concurrent consumers without being mutated.
"""

import logging
import shutil
import tempfile
import threading
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

BlockKey = Tuple[int, int]


class StorageLevel(Enum):
    """Where cached partitions are kept."""
    MEMORY_ONLY = "memory_only"
    MEMORY_AND_DISK = "memory_and_disk"
    DISK_ONLY = "disk_only"

    @property
    def use_memory(self) -> bool:
        return self != StorageLevel.DISK_ONLY

    @property
    def use_disk(self) -> bool:
        return self != StorageLevel.MEMORY_ONLY


def estimate_size(df: pd.DataFrame) -> int:
    """Approximate in-memory size of a partition in bytes."""
    return int(df.memory_usage(index=True, deep=True).sum())


class CacheManager:
    """Memory/disk block store for cached datasets."""

    def __init__(self, memory_limit_bytes: int, spill_directory: Optional[str] = None):
        self.memory_limit_bytes = memory_limit_bytes
        self._spill_directory = Path(spill_directory) if spill_directory else None
        self._owns_spill_directory = False
        self._memory: "OrderedDict[BlockKey, Tuple[pd.DataFrame, int, StorageLevel]]" = OrderedDict()
        self._disk: Dict[BlockKey, Path] = {}
        self._memory_used = 0
        self._lock = threading.RLock()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.stats = {
            "hits": 0,
            "misses": 0,
            "puts": 0,
            "rejected": 0,
            "evictions": 0,
            "spills": 0,
            "disk_reads": 0,
        }

    @property
    def memory_used_bytes(self) -> int:
        return self._memory_used

    def _spill_dir(self) -> Path:
        if self._spill_directory is None:
            self._spill_directory = Path(tempfile.mkdtemp(prefix="sparklet-spill-"))
            self._owns_spill_directory = True
        self._spill_directory.mkdir(parents=True, exist_ok=True)
        return self._spill_directory

    def _spill_path(self, key: BlockKey) -> Path:
        return self._spill_dir() / f"block-{key[0]}-{key[1]}.pkl"

    def get(self, node_id: int, index: int) -> Optional[pd.DataFrame]:
        """Return a copy of a cached block, or None if it is not retained."""
        key = (node_id, index)
        with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                self._memory.move_to_end(key)
                self.stats["hits"] += 1
                return entry[0].copy()

            path = self._disk.get(key)
            if path is not None and path.exists():
                self.stats["hits"] += 1
                self.stats["disk_reads"] += 1
                return pd.read_pickle(path)

            self.stats["misses"] += 1
            return None

    def contains(self, node_id: int, index: int) -> bool:
        key = (node_id, index)
        with self._lock:
            return key in self._memory or key in self._disk

    def put(self, node_id: int, index: int, df: pd.DataFrame, level: StorageLevel) -> bool:
        """Store a block; returns False when it could not be retained."""
        key = (node_id, index)
        size = estimate_size(df)
        with self._lock:
            self._discard(key)
            self.stats["puts"] += 1

            if level.use_memory and size <= self.memory_limit_bytes:
                self._make_room(size)
                self._memory[key] = (df.copy(), size, level)
                self._memory_used += size
                return True

            if level.use_disk:
                self._write_disk(key, df)
                return True

            self.stats["rejected"] += 1
            self.logger.debug(f"Block {key} ({size} bytes) exceeds cache budget; not retained")
            return False

    def _make_room(self, size: int) -> None:
        while self._memory and self._memory_used + size > self.memory_limit_bytes:
            old_key, (old_df, old_size, old_level) = self._memory.popitem(last=False)
            self._memory_used -= old_size
            self.stats["evictions"] += 1
            if old_level.use_disk:
                self._write_disk(old_key, old_df)
            else:
                self.logger.debug(f"Evicted block {old_key}; it will be recomputed from lineage")

    def _write_disk(self, key: BlockKey, df: pd.DataFrame) -> None:
        path = self._spill_path(key)
        df.to_pickle(path)
        self._disk[key] = path
        self.stats["spills"] += 1

    def _discard(self, key: BlockKey) -> None:
        entry = self._memory.pop(key, None)
        if entry is not None:
            self._memory_used -= entry[1]
        path = self._disk.pop(key, None)
        if path is not None and path.exists():
            path.unlink()

    def remove_blocks(self, keys: Iterable[BlockKey]) -> int:
        removed = 0
        with self._lock:
            for key in list(keys):
                if key in self._memory or key in self._disk:
                    self._discard(key)
                    removed += 1
        return removed

    def remove_node(self, node_id: int) -> int:
        """Drop every block of one dataset."""
        with self._lock:
            keys = [k for k in list(self._memory) + list(self._disk) if k[0] == node_id]
            return self.remove_blocks(set(keys))

    def cached_partitions(self, node_id: int) -> List[int]:
        with self._lock:
            indices = {k[1] for k in list(self._memory) + list(self._disk) if k[0] == node_id}
        return sorted(indices)

    def clear(self) -> None:
        with self._lock:
            self._memory.clear()
            self._memory_used = 0
            for path in self._disk.values():
                if path.exists():
                    path.unlink()
            self._disk.clear()
            if self._owns_spill_directory and self._spill_directory is not None:
                shutil.rmtree(self._spill_directory, ignore_errors=True)
                self._spill_directory = None
                self._owns_spill_directory = False

    def get_statistics(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self.stats)
            stats.update({
                "memory_blocks": len(self._memory),
                "disk_blocks": len(self._disk),
                "memory_used_bytes": self._memory_used,
                "memory_limit_bytes": self.memory_limit_bytes,
            })
        return stats
