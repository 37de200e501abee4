"""
Local execution backend and backend factory.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from ..core.errors import ErrorCategory, ErrorSeverity, PipelineError
from ..core.interfaces import ExecutionBackend

logger = logging.getLogger(__name__)


class ThreadBackend(ExecutionBackend):
    """Runs partition tasks on a thread pool inside the driver process."""

    name = "threads"

    def __init__(self, max_workers: int = 4, thread_name_prefix: str = "sparklet-worker"):
        if max_workers < 1:
            raise PipelineError(f"max_workers must be positive, got {max_workers}",
                                ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH)
        self._max_workers = max_workers
        self.thread_name_prefix = thread_name_prefix
        self.executor: Optional[ThreadPoolExecutor] = None

    def initialize(self) -> None:
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=self._max_workers,
                                               thread_name_prefix=self.thread_name_prefix)
            logger.info(f"Thread backend started with {self._max_workers} workers")

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=True, cancel_futures=True)
            self.executor = None
            logger.info("Thread backend stopped")

    def submit(self, func: Callable, *args, **kwargs) -> Future:
        if self.executor is None:
            raise PipelineError("Thread backend is not initialized", ErrorCategory.SYSTEM, ErrorSeverity.HIGH)
        return self.executor.submit(func, *args, **kwargs)

    def is_available(self) -> bool:
        return self.executor is not None

    @property
    def max_workers(self) -> int:
        return self._max_workers


def create_backend(execution_config: Dict[str, Any], max_workers: int) -> ExecutionBackend:
    """Factory function to create the backend named in the execution configuration."""
    backend = execution_config.get("backend", "threads")

    if backend == "threads":
        return ThreadBackend(max_workers=max_workers)

    if backend == "dask":
        from .dask_backend import create_dask_backend
        return create_dask_backend(execution_config, max_workers)

    raise PipelineError(f"Unknown execution backend: {backend}", ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH)
