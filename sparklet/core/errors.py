"""Error taxonomy and task-failure recovery policy."""

import time
import logging
import threading
import traceback
import uuid
from collections import deque
from typing import Deque, Dict, Any, Optional
from enum import Enum
from dataclasses import dataclass, field


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of pipeline and execution errors."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    DATA = "data"
    PERSISTENCE = "persistence"
    SYSTEM = "system"
    RESOURCE = "resource"
    DEPENDENCY = "dependency"
    CANCELLATION = "cancellation"


class RecoveryAction(Enum):
    """Available recovery actions for a failed task."""
    RETRY = "retry"
    ABORT = "abort"


@dataclass
class ErrorContext:
    """Context information for a task error."""
    error_id: str
    timestamp: float
    job_id: Optional[str]
    stage_id: Optional[int]
    stage_uid: Optional[str]
    partition_index: Optional[int]
    error_message: str
    exception_type: str
    stack_trace: str
    category: ErrorCategory
    severity: ErrorSeverity
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


@dataclass
class RecoveryStrategy:
    """Recovery strategy for one error category."""
    action: RecoveryAction
    retry_delay: float = 0.0
    exponential_backoff: bool = False


class PipelineError(Exception):
    """Base class for all sparklet errors."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.SYSTEM,
                 severity: ErrorSeverity = ErrorSeverity.HIGH,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or {}
        self.timestamp = time.time()


class SchemaError(PipelineError):
    """A required input column is missing or has the wrong semantic type."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.VALIDATION, ErrorSeverity.HIGH, context)


class InvalidDataError(PipelineError):
    """A row holds a value the stage cannot handle, such as an unseen label."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.VALIDATION, ErrorSeverity.HIGH, context)


class ParameterError(PipelineError):
    """A stage or tuner was given an invalid or unknown parameter."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH, context)


class PersistenceError(PipelineError):
    """A saved directory layout is malformed or incompatible."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.PERSISTENCE, ErrorSeverity.HIGH, context)


class SessionError(PipelineError):
    """Misuse of a session (closed, or datasets from another session)."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH, context)


class JobCancelledError(PipelineError):
    """The job was cancelled before it produced a result."""

    def __init__(self, job_id: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Job {job_id} was cancelled", ErrorCategory.CANCELLATION,
                         ErrorSeverity.MEDIUM, context)
        self.job_id = job_id


class StageFailure(PipelineError):
    """A partition task failed more times than the retry bound allows."""

    def __init__(self, stage_id: int, stage_uid: str, partition_index: int,
                 attempts: int, cause: Optional[BaseException] = None):
        message = (f"Stage {stage_id} ({stage_uid}) failed: partition {partition_index} "
                   f"failed {attempts} time(s)")
        if cause is not None:
            message += f"; most recent failure: {type(cause).__name__}: {cause}"
        super().__init__(message, ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL, {
            "stage_id": stage_id,
            "stage_uid": stage_uid,
            "partition_index": partition_index,
            "attempts": attempts,
        })
        self.stage_id = stage_id
        self.stage_uid = stage_uid
        self.partition_index = partition_index
        self.attempts = attempts
        self.cause = cause


class ErrorHandler:
    """
    Classifies task errors, records them, and decides whether to retry.

    Only the most recent ``history_size`` errors are kept.
    """

    def __init__(self, retry_delay: float = 0.0, exponential_backoff: bool = False, history_size: int = 1000):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.error_history: Deque[ErrorContext] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self.recovery_strategies: Dict[ErrorCategory, RecoveryStrategy] = \
            self._default_recovery_strategies(retry_delay, exponential_backoff)

    def _default_recovery_strategies(self, retry_delay: float,
                                     exponential_backoff: bool) -> Dict[ErrorCategory, RecoveryStrategy]:
        """Caller-misuse categories abort; runtime categories are replayed from lineage."""
        retry = RecoveryStrategy(
            action=RecoveryAction.RETRY,
            retry_delay=retry_delay,
            exponential_backoff=exponential_backoff
        )
        return {
            ErrorCategory.CONFIGURATION: RecoveryStrategy(action=RecoveryAction.ABORT),
            ErrorCategory.VALIDATION: RecoveryStrategy(action=RecoveryAction.ABORT),
            ErrorCategory.CANCELLATION: RecoveryStrategy(action=RecoveryAction.ABORT),
            ErrorCategory.DEPENDENCY: RecoveryStrategy(action=RecoveryAction.ABORT),
            ErrorCategory.PERSISTENCE: retry,
            ErrorCategory.DATA: retry,
            ErrorCategory.SYSTEM: retry,
            ErrorCategory.RESOURCE: retry,
        }

    def classify_error(self, exception: BaseException, context: Dict[str, Any]) -> ErrorContext:
        """Classify an error and record it in the history."""
        category, severity = self._categorize_error(exception)

        error_context = ErrorContext(
            error_id=str(uuid.uuid4()),
            timestamp=time.time(),
            job_id=context.get('job_id'),
            stage_id=context.get('stage_id'),
            stage_uid=context.get('stage_uid'),
            partition_index=context.get('partition_index'),
            error_message=str(exception),
            exception_type=type(exception).__name__,
            stack_trace=''.join(traceback.format_exception(
                type(exception), exception, exception.__traceback__)),
            category=category,
            severity=severity,
            metadata=dict(context),
            attempt=context.get('attempt', 1)
        )

        self._log_error(error_context)
        with self._lock:
            self.error_history.append(error_context)

        return error_context

    def _categorize_error(self, exception: BaseException) -> tuple:
        """Categorize an error based on its type."""
        if isinstance(exception, PipelineError):
            return exception.category, exception.severity

        if isinstance(exception, MemoryError):
            return ErrorCategory.RESOURCE, ErrorSeverity.HIGH

        if isinstance(exception, (KeyError, ValueError, TypeError)):
            return ErrorCategory.DATA, ErrorSeverity.MEDIUM

        if isinstance(exception, OSError):
            return ErrorCategory.SYSTEM, ErrorSeverity.HIGH

        return ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM

    def _log_error(self, error_context: ErrorContext) -> None:
        location = (f"stage {error_context.stage_id} ({error_context.stage_uid}), "
                    f"partition {error_context.partition_index}, attempt {error_context.attempt}")
        if error_context.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            self.logger.error(f"Task error [{error_context.error_id}] in {location}: "
                              f"{error_context.error_message}")
        else:
            self.logger.warning(f"Task warning [{error_context.error_id}] in {location}: "
                                f"{error_context.error_message}")

    def determine_recovery_action(self, error_context: ErrorContext, max_attempts: int) -> RecoveryAction:
        """Determine whether a failed task should be attempted again."""
        strategy = self.recovery_strategies.get(error_context.category)
        if not strategy or strategy.action == RecoveryAction.ABORT:
            return RecoveryAction.ABORT

        if error_context.attempt >= max_attempts:
            return RecoveryAction.ABORT

        return RecoveryAction.RETRY

    def is_retryable(self, error_context: ErrorContext) -> bool:
        strategy = self.recovery_strategies.get(error_context.category)
        return strategy is not None and strategy.action == RecoveryAction.RETRY

    def calculate_retry_delay(self, error_context: ErrorContext) -> float:
        """Delay before the next attempt, in seconds."""
        strategy = self.recovery_strategies.get(error_context.category)
        if not strategy:
            return 0.0

        if strategy.exponential_backoff:
            return strategy.retry_delay * (2 ** (error_context.attempt - 1))
        return strategy.retry_delay

    def register_recovery_strategy(self, category: ErrorCategory, strategy: RecoveryStrategy) -> None:
        """Register a custom recovery strategy for an error category."""
        self.recovery_strategies[category] = strategy
        self.logger.info(f"Registered recovery strategy for {category.value}: {strategy.action.value}")

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics from history."""
        with self._lock:
            history = list(self.error_history)

        if not history:
            return {"total_errors": 0}

        stats = {
            "total_errors": len(history),
            "by_category": {},
            "by_severity": {},
            "by_stage": {},
        }

        for error in history:
            category = error.category.value
            stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

            severity = error.severity.value
            stats["by_severity"][severity] = stats["by_severity"].get(severity, 0) + 1

            stage = error.stage_uid or 'unknown'
            stats["by_stage"][stage] = stats["by_stage"].get(stage, 0) + 1

        return stats

    def clear_error_history(self) -> None:
        """Clear the error history."""
        with self._lock:
            self.error_history.clear()
        self.logger.info("Error history cleared")
