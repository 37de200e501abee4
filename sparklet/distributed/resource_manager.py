"""
Resource detection for sizing the worker pool and the partition cache.
"""

import logging
import time
from typing import Dict, Any, Optional, List
from dataclasses import dataclass
import psutil

from ..core.errors import PipelineError, ErrorCategory, ErrorSeverity

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3
BYTES_PER_MB = 1024 ** 2


@dataclass
class ResourceUsage:
    """Current resource usage information."""
    cpu_count: int
    cpu_percent: float
    memory_percent: float
    memory_used_gb: float
    memory_total_gb: float
    memory_available_gb: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "cpu_count": self.cpu_count,
            "cpu_percent": self.cpu_percent,
            "memory_percent": self.memory_percent,
            "memory_used_gb": self.memory_used_gb,
            "memory_total_gb": self.memory_total_gb,
            "memory_available_gb": self.memory_available_gb,
        }


class ResourceManager:
    """Detects local CPU and memory capacity and derives execution defaults."""

    def __init__(self, history_size: int = 100):
        self.history_size = history_size
        self.resource_history: List[Dict[str, Any]] = []

    def cpu_count(self) -> int:
        """Logical CPUs available to this process."""
        count = psutil.cpu_count(logical=True)
        return max(1, count or 1)

    def get_system_resources(self, cpu_interval: Optional[float] = None) -> ResourceUsage:
        """Get current system resource usage."""
        try:
            cpu_percent = psutil.cpu_percent(interval=cpu_interval)
            memory = psutil.virtual_memory()

            return ResourceUsage(
                cpu_count=self.cpu_count(),
                cpu_percent=cpu_percent,
                memory_percent=memory.percent,
                memory_used_gb=memory.used / BYTES_PER_GB,
                memory_total_gb=memory.total / BYTES_PER_GB,
                memory_available_gb=memory.available / BYTES_PER_GB,
            )

        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to get system resources: {e}")
            raise PipelineError(f"Resource monitoring failed: {e}", ErrorCategory.SYSTEM, ErrorSeverity.HIGH)

    def recommended_workers(self, requested: Optional[int] = None) -> int:
        """Worker pool size: the requested size, else one worker per logical CPU."""
        if requested:
            return requested
        return self.cpu_count()

    def cache_budget_bytes(self, memory_limit_mb: Optional[float], memory_fraction: float) -> int:
        """Memory budget for cached partitions."""
        if memory_limit_mb is not None:
            return int(memory_limit_mb * BYTES_PER_MB)

        available = psutil.virtual_memory().available
        budget = int(available * memory_fraction)
        logger.info(f"Cache budget set to {budget / BYTES_PER_MB:.1f}MB "
                    f"({memory_fraction:.0%} of available memory)")
        return budget

    def monitor_resources(self) -> Dict[str, Any]:
        """Record a resource snapshot."""
        monitoring_data = {
            "timestamp": time.time(),
            "system": self.get_system_resources().to_dict(),
        }

        self.resource_history.append(monitoring_data)
        if len(self.resource_history) > self.history_size:
            self.resource_history = self.resource_history[-self.history_size:]

        return monitoring_data

    def get_resource_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Get recent resource usage history."""
        return self.resource_history[-limit:]
