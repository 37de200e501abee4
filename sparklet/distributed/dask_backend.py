"""
Dask backend: runs partition tasks on a Dask distributed cluster.

A local cluster is started with in-process workers unless a scheduler address
is configured. The scheduler only submits partition plans and the user's
partition functions, which Dask serializes with cloudpickle; functions that
capture unpicklable objects such as locks or sessions only run on the
thread backend.
"""

import logging
from typing import Any, Callable, Dict, Optional

try:
    from dask.distributed import Client, LocalCluster
    DASK_AVAILABLE = True
except ImportError:
    DASK_AVAILABLE = False

from ..core.errors import ErrorCategory, ErrorSeverity, PipelineError
from ..core.interfaces import ExecutionBackend

logger = logging.getLogger(__name__)


class DaskBackend(ExecutionBackend):
    """Dask-based execution backend."""

    name = "dask"

    def __init__(self,
                 scheduler_address: Optional[str] = None,
                 n_workers: int = 2,
                 threads_per_worker: int = 1,
                 memory_limit: str = "auto",
                 dashboard_address: Optional[str] = None):
        """
        Initialize Dask backend.

        Args:
            scheduler_address: Address of an existing Dask scheduler
            n_workers: Number of workers to start for a local cluster
            threads_per_worker: Threads per local worker
            memory_limit: Memory limit per local worker
            dashboard_address: Dashboard address for a local cluster (disabled if None)
        """
        if not DASK_AVAILABLE:
            raise PipelineError(
                "Dask is not available. Install with: pip install sparklet[distributed]",
                ErrorCategory.DEPENDENCY,
                ErrorSeverity.HIGH
            )

        self.scheduler_address = scheduler_address
        self.n_workers = n_workers
        self.threads_per_worker = threads_per_worker
        self.memory_limit = memory_limit
        self.dashboard_address = dashboard_address
        self.client: Optional["Client"] = None
        self.cluster: Optional["LocalCluster"] = None

    def initialize(self) -> None:
        """Initialize Dask client and cluster."""
        if self.client is not None:
            return
        try:
            if self.scheduler_address:
                self.client = Client(self.scheduler_address)
                logger.info(f"Connected to Dask cluster at {self.scheduler_address}")
            else:
                self.cluster = LocalCluster(
                    n_workers=self.n_workers,
                    threads_per_worker=self.threads_per_worker,
                    processes=False,
                    memory_limit=self.memory_limit,
                    dashboard_address=self.dashboard_address
                )
                self.client = Client(self.cluster)
                logger.info(f"Created local Dask cluster with {self.n_workers} workers")

        except (OSError, ValueError, TimeoutError) as e:
            raise PipelineError(f"Failed to initialize Dask backend: {e}", ErrorCategory.SYSTEM, ErrorSeverity.HIGH)

    def shutdown(self) -> None:
        """Shutdown Dask client and cluster."""
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("Dask client closed")
        if self.cluster is not None:
            self.cluster.close()
            self.cluster = None

    def submit(self, func: Callable, *args, **kwargs) -> Any:
        """Submit a task to the Dask cluster."""
        if self.client is None:
            raise PipelineError("Dask client not initialized", ErrorCategory.SYSTEM, ErrorSeverity.HIGH)

        # retries resubmit identical arguments, so tasks must not be deduplicated by key
        return self.client.submit(func, *args, pure=False, **kwargs)

    def is_available(self) -> bool:
        """Check if Dask backend is available."""
        return DASK_AVAILABLE and self.client is not None

    @property
    def max_workers(self) -> int:
        if self.client is None:
            return self.n_workers * self.threads_per_worker
        return max(1, sum(self.client.nthreads().values()))

    def get_cluster_info(self) -> Dict[str, Any]:
        """Get information about the Dask cluster."""
        if self.client is None:
            return {"backend": self.name}

        info = self.client.scheduler_info()
        workers = info.get("workers", {})
        return {
            "backend": self.name,
            "scheduler_address": info.get("address"),
            "dashboard_link": self.client.dashboard_link,
            "workers": len(workers),
            "total_threads": sum(w.get("nthreads", 0) for w in workers.values()),
            "total_memory": sum(w.get("memory_limit", 0) or 0 for w in workers.values()),
        }


def create_dask_backend(config: Dict[str, Any], n_workers: int = 2) -> DaskBackend:
    """Factory function to create Dask backend from execution configuration."""
    return DaskBackend(
        scheduler_address=config.get('scheduler_address'),
        n_workers=n_workers,
        threads_per_worker=config.get('threads_per_worker', 1),
    )
