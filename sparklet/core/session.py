"""
Session: owns the lineage graph, worker pool, cache, shuffle and broadcast
stores, and every dataset created from it.
"""

import logging
import shutil
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from ..config.manager import ConfigManager
from ..config.schema import LoggingConfig, SessionConfig
from ..distributed.backends import create_backend
from ..distributed.broadcast import BroadcastRegistry
from ..distributed.cache import CacheManager, StorageLevel
from ..distributed.dataset import Dataset
from ..distributed.executor import PartitionExecutor
from ..distributed.lineage import LineageGraph, OpKind
from ..distributed.resource_manager import ResourceManager
from ..distributed.scheduler import DAGScheduler, JobHandle
from ..distributed.schema import Schema
from ..distributed.shuffle import ShuffleManager
from ..distributed.storage import PartitionStorage
from .errors import ErrorCategory, ErrorHandler, ErrorSeverity, ParameterError, PipelineError, SessionError


class CorrelationFormatter(logging.Formatter):
    """Adds the running job id of the current thread to every record."""

    def format(self, record):
        correlation_id = getattr(threading.current_thread(), 'correlation_id', None)
        record.correlation_id = correlation_id or 'N/A'
        return super().format(record)


def configure_logging(logging_config: LoggingConfig) -> None:
    """Install correlation-aware handlers on the root logger unless it is already configured."""
    root = logging.getLogger()
    if root.handlers:
        return

    formatter = CorrelationFormatter(logging_config.format)
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root.addHandler(handler)

    if logging_config.file_path:
        Path(logging_config.file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logging_config.file_path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, str(logging_config.level).upper(), logging.INFO))


class Session:
    """
    Entry point of the execution engine.

    There is no global default session: datasets keep a reference to the
    session that created them and all of their work goes through it.
    """

    def __init__(self, config: Optional[Union[SessionConfig, Mapping[str, Any]]] = None):
        if config is None:
            config = SessionConfig()
        elif not isinstance(config, SessionConfig):
            config = SessionConfig.model_validate(dict(config))
        self.config = config
        self.id = f"session-{uuid.uuid4().hex[:8]}"

        configure_logging(config.logging)
        self.logger = logging.getLogger(self.__class__.__name__)

        execution = config.execution
        self.resource_manager = ResourceManager()
        self.max_workers = self.resource_manager.recommended_workers(execution.max_workers)
        self.default_parallelism = execution.default_parallelism or self.max_workers
        self.shuffle_partitions = execution.shuffle_partitions or self.default_parallelism

        self.lineage = LineageGraph()
        self.storage = PartitionStorage()
        self.shuffle_manager = ShuffleManager()
        self.broadcasts = BroadcastRegistry()
        self.cache_manager = CacheManager(
            self.resource_manager.cache_budget_bytes(config.cache.memory_limit_mb, config.cache.memory_fraction),
            config.cache.spill_directory
        )
        self.default_storage_level = StorageLevel(config.cache.storage_level)
        self.error_handler = ErrorHandler(execution.retry_delay, execution.exponential_backoff)

        self.backend = create_backend(execution.model_dump(), self.max_workers)
        self.backend.initialize()

        self.executor = PartitionExecutor(self.lineage, self.cache_manager, self.shuffle_manager,
                                          self.storage, self.broadcasts)
        self.scheduler = DAGScheduler(
            lineage=self.lineage,
            executor=self.executor,
            backend=self.backend,
            shuffle_manager=self.shuffle_manager,
            cache_manager=self.cache_manager,
            broadcasts=self.broadcasts,
            error_handler=self.error_handler,
            max_task_retries=execution.max_task_retries
        )

        self._driver_pool: Optional[ThreadPoolExecutor] = None
        self._checkpoint_dir: Optional[Path] = None
        self._owns_checkpoint_dir = False
        self._lock = threading.Lock()
        self._closed = False

        self.logger.info(f"Session {self.id} ({config.app_name}) started: backend={self.backend.name}, "
                         f"workers={self.max_workers}, default_parallelism={self.default_parallelism}")

    @classmethod
    def open(cls, config: Optional[Union[SessionConfig, Mapping[str, Any]]] = None) -> "Session":
        return cls(config)

    @classmethod
    def from_config_file(cls, config_path: Union[str, Path]) -> "Session":
        """Open a session from a YAML or JSON configuration file."""
        return cls(ConfigManager().load_config(config_path))

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise SessionError(f"Session {self.id} is closed")

    # Dataset constructors

    def create_dataset(self, data: Union[pd.DataFrame, Iterable[Dict[str, Any]], Dict[str, List[Any]]],
                       num_partitions: Optional[int] = None) -> Dataset:
        """
        Create a dataset from in-memory data.

        Rows are split into ``num_partitions`` contiguous slices (the session's
        default parallelism when omitted).
        """
        self._check_open()
        df = data.copy() if isinstance(data, pd.DataFrame) else pd.DataFrame(data)
        df.columns = [str(c) for c in df.columns]
        count = self.default_parallelism if num_partitions is None else num_partitions
        if count < 1:
            raise ParameterError(f"Number of partitions must be positive, got {count}")

        partitions = [df.iloc[positions].reset_index(drop=True)
                      for positions in np.array_split(np.arange(len(df)), count)]
        node = self.lineage.add(OpKind.SOURCE, "create_dataset", (), Schema.infer(df), count,
                                {"partitions": partitions})
        return Dataset(self, node.id)

    def range(self, n: int, num_partitions: Optional[int] = None, start: int = 1) -> Dataset:
        """Dataset with a single integer column ``id`` running from ``start`` to ``start + n - 1``."""
        if n < 0:
            raise ParameterError(f"Row count must not be negative, got {n}")
        ids = np.arange(start, start + n, dtype=np.int64)
        return self.create_dataset(pd.DataFrame({"id": ids}), num_partitions)

    def read_parquet(self, path: Union[str, Path]) -> Dataset:
        """One partition per parquet file (a single file gives one partition)."""
        self._check_open()
        files = self.storage.list_parquet_files(path)
        if not files:
            raise PipelineError(f"No parquet files found at {path}", ErrorCategory.DATA, ErrorSeverity.HIGH)

        schema = self.storage.infer_parquet_schema(files[0])
        node = self.lineage.add(OpKind.SOURCE, "read_parquet", (), schema, len(files),
                                {"files": [str(f) for f in files], "format": "parquet"})
        return Dataset(self, node.id)

    def read_csv(self, path: Union[str, Path], **options) -> Dataset:
        """One partition per CSV file; ``options`` are passed to ``pandas.read_csv``."""
        self._check_open()
        path = Path(path)
        files = [path] if path.is_file() else sorted(path.glob("*.csv"))
        if not files:
            raise PipelineError(f"No CSV files found at {path}", ErrorCategory.DATA, ErrorSeverity.HIGH)

        sample = pd.read_csv(files[0], nrows=1000, **options)
        schema = Schema.infer(sample)
        node = self.lineage.add(OpKind.SOURCE, "read_csv", (), schema, len(files),
                                {"files": [str(f) for f in files], "format": "csv", "options": options})
        return Dataset(self, node.id)

    # Jobs

    def run_job(self, dataset: Dataset, result_fn: Optional[Callable[[pd.DataFrame, int], Any]] = None,
                description: str = "") -> List[Any]:
        """Compute every partition of ``dataset`` synchronously."""
        self._check_open()
        if dataset.session is not self:
            raise SessionError("Dataset belongs to a different session")
        job = self.scheduler.new_job(dataset.node_id, description)
        return self.scheduler.run_job(dataset.node_id, result_fn, job)

    def submit_job(self, dataset: Dataset, result_fn: Optional[Callable[[pd.DataFrame, int], Any]] = None,
                   description: str = "") -> JobHandle:
        """Start a job in the background; the handle's result() returns one value per partition."""
        self._check_open()
        if dataset.session is not self:
            raise SessionError("Dataset belongs to a different session")
        with self._lock:
            if self._driver_pool is None:
                self._driver_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="sparklet-driver")
        job = self.scheduler.new_job(dataset.node_id, description)
        future = self._driver_pool.submit(self.scheduler.run_job, dataset.node_id, result_fn, job)
        return JobHandle(job, future)

    def cancel_all_jobs(self) -> int:
        return self.scheduler.cancel_all_jobs()

    # Storage

    def checkpoint_directory(self) -> Path:
        """Directory for checkpoint files; a temporary one unless configured."""
        with self._lock:
            if self._checkpoint_dir is None:
                configured = self.config.checkpoint.directory
                if configured:
                    self._checkpoint_dir = Path(configured)
                    self._checkpoint_dir.mkdir(parents=True, exist_ok=True)
                else:
                    self._checkpoint_dir = Path(tempfile.mkdtemp(prefix="sparklet-checkpoint-"))
                    self._owns_checkpoint_dir = True
            return self._checkpoint_dir

    def statistics(self) -> Dict[str, Any]:
        """Scheduler, cache, shuffle, error and resource statistics."""
        return {
            "session_id": self.id,
            "closed": self._closed,
            "lineage_nodes": len(self.lineage),
            "broadcast_values": len(self.broadcasts),
            "backend": self.backend.get_cluster_info() if not self._closed else {"backend": self.backend.name},
            "scheduler": self.scheduler.get_statistics(),
            "cache": self.cache_manager.get_statistics(),
            "shuffle": self.shuffle_manager.get_statistics(),
            "errors": self.error_handler.get_error_statistics(),
            "resources": self.resource_manager.monitor_resources(),
        }

    def close(self) -> None:
        """Cancel running jobs and release every resource the session holds."""
        if self._closed:
            return

        cancelled = self.scheduler.cancel_all_jobs()
        if self._driver_pool is not None:
            self._driver_pool.shutdown(wait=True, cancel_futures=True)
            self._driver_pool = None

        self.backend.shutdown()
        self.cache_manager.clear()
        self.shuffle_manager.clear()
        self.broadcasts.clear()

        if self._checkpoint_dir is not None and self._owns_checkpoint_dir \
                and self.config.checkpoint.cleanup_on_close:
            shutil.rmtree(self._checkpoint_dir, ignore_errors=True)
            self._checkpoint_dir = None

        self._closed = True
        self.logger.info(f"Session {self.id} closed ({cancelled} running jobs cancelled)")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"Session({self.id}, {self.config.app_name}, {state})"

