"""Configuration schema definitions using Pydantic models."""

from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field, model_validator
from enum import Enum


class BackendType(str, Enum):
    """Supported execution backends."""
    THREADS = "threads"
    DASK = "dask"


class StorageLevelName(str, Enum):
    """Cache storage levels."""
    MEMORY_ONLY = "memory_only"
    MEMORY_AND_DISK = "memory_and_disk"
    DISK_ONLY = "disk_only"


class AggregationMethod(str, Enum):
    """How fold-level scores are combined per parameter combination."""
    MEAN = "mean"
    MEDIAN = "median"


class TieBreak(str, Enum):
    """Which combination wins when aggregated scores are equal."""
    FIRST = "first"
    LAST = "last"


class ExecutionConfig(BaseModel):
    """Execution engine configuration."""
    model_config = {"use_enum_values": True, "validate_default": True}

    backend: BackendType = Field(BackendType.THREADS, description="Backend that runs partition tasks")
    max_workers: Optional[int] = Field(None, ge=1, description="Worker pool size (defaults to CPU count)")
    default_parallelism: Optional[int] = Field(None, ge=1, description="Implicit partition count for in-memory sources")
    shuffle_partitions: Optional[int] = Field(None, ge=1, description="Partition count after a keyed shuffle")
    max_task_retries: int = Field(4, ge=1, description="Attempts per partition task before the stage fails")
    retry_delay: float = Field(0.0, ge=0.0, description="Delay in seconds between task attempts")
    exponential_backoff: bool = Field(False, description="Double the retry delay on every attempt")
    scheduler_address: Optional[str] = Field(None, description="Address of an existing Dask scheduler")
    threads_per_worker: int = Field(1, ge=1, description="Threads per Dask worker for local clusters")


class CacheConfig(BaseModel):
    """Partition cache configuration."""
    model_config = {"use_enum_values": True, "validate_default": True}

    storage_level: StorageLevelName = Field(StorageLevelName.MEMORY_ONLY, description="Default storage level for cache()")
    memory_limit_mb: Optional[float] = Field(None, gt=0, description="Cache memory budget in MB")
    memory_fraction: float = Field(0.25, gt=0.0, le=1.0, description="Fraction of available memory when no limit is set")
    spill_directory: Optional[str] = Field(None, description="Directory for blocks spilled to disk")


class CheckpointConfig(BaseModel):
    """Checkpoint storage configuration."""
    directory: Optional[str] = Field(None, description="Durable checkpoint directory (temporary if unset)")
    cleanup_on_close: bool = Field(True, description="Remove a temporary checkpoint directory on close")


class TuningConfig(BaseModel):
    """Cross validation defaults."""
    model_config = {"use_enum_values": True, "validate_default": True}

    num_folds: int = Field(3, ge=2, description="Number of cross validation folds")
    seed: int = Field(42, description="Seed for fold assignment")
    parallelism: int = Field(1, ge=1, description="Number of fits evaluated concurrently")
    aggregation: AggregationMethod = Field(AggregationMethod.MEAN, description="Fold score aggregation")
    tie_break: TieBreak = Field(TieBreak.FIRST, description="Winner among equal aggregated scores")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field("INFO", description="Logging level")
    format: str = Field("%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] - %(message)s",
                        description="Log format")
    file_path: Optional[str] = Field(None, description="Log file path")


class SessionConfig(BaseModel):
    """Main session configuration."""
    app_name: str = Field("sparklet", description="Application name used in logs")
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig, description="Execution configuration")
    cache: CacheConfig = Field(default_factory=CacheConfig, description="Cache configuration")
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig, description="Checkpoint configuration")
    tuning: TuningConfig = Field(default_factory=TuningConfig, description="Tuning configuration")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging configuration")

    model_config = {
        "extra": "forbid",
        "validate_assignment": True,
        "use_enum_values": True,
    }

    @model_validator(mode='after')
    def validate_config_consistency(self):
        """Validate cross-field consistency."""
        if self.execution.scheduler_address and self.execution.backend != BackendType.DASK.value:
            raise ValueError("scheduler_address is only valid with the dask backend")

        return self


class ValidationError(Exception):
    """Configuration validation error."""

    def __init__(self, message: str, errors: List[Any] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationResult(BaseModel):
    """Result of configuration validation."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    config: Optional[SessionConfig] = None
