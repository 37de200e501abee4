"""
Partitioned execution engine.

Datasets are lazy handles into a lineage graph; the scheduler splits each
job into stages at shuffle boundaries and runs one task per partition on a
thread pool or a Dask cluster.
"""

from .cache import CacheManager, StorageLevel
from .dask_backend import DaskBackend
from .dataset import Dataset
from .lineage import LineageGraph, OpKind
from .resource_manager import ResourceManager
from .scheduler import DAGScheduler, JobHandle, JobStatus
from .schema import ColumnType, Schema

__all__ = [
    'CacheManager',
    'StorageLevel',
    'DaskBackend',
    'Dataset',
    'LineageGraph',
    'OpKind',
    'ResourceManager',
    'DAGScheduler',
    'JobHandle',
    'JobStatus',
    'ColumnType',
    'Schema',
]
