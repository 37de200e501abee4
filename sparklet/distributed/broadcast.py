"""Driver-side store of materialized broadcast datasets."""

import logging
import threading
from typing import Dict, Optional

import pandas as pd

logger = logging.getLogger(__name__)


class BroadcastRegistry:
    """
    Holds the collected value of every broadcast-hinted dataset used in a join.

    Values are shared by all tasks that join against them and must be
    treated as read-only.
    """

    def __init__(self):
        self._values: Dict[int, pd.DataFrame] = {}
        self._lock = threading.Lock()

    def put(self, node_id: int, value: pd.DataFrame) -> None:
        with self._lock:
            self._values[node_id] = value
        logger.debug(f"Broadcast value for node {node_id} registered ({len(value)} rows)")

    def get(self, node_id: int) -> Optional[pd.DataFrame]:
        with self._lock:
            return self._values.get(node_id)

    def contains(self, node_id: int) -> bool:
        with self._lock:
            return node_id in self._values

    def remove(self, node_id: int) -> bool:
        with self._lock:
            return self._values.pop(node_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
