"""
Stage-based job scheduler.

A job computes every partition of one plan node. Shuffle dependencies are
materialized first, parents before children, each as a map stage whose tasks
must all succeed before any downstream stage starts. Broadcast inputs are
collected on the driver before the stage that joins against them. The final
(result) stage runs one task per output partition.

Each task is planned on the driver (see ``executor``) and only the plan, the
job id and the function finishing the partition are handed to the backend,
so jobs run unchanged on backends that pickle their tasks. Job state,
including cancellation, never leaves the driver: cancellation is checked
before every submission and after every stage barrier.

Failed tasks are resubmitted, recomputing their partition from lineage, until
the configured number of attempts is exhausted; the job then fails with a
StageFailure naming the stage and partition.
"""

import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pandas as pd

from ..core.errors import ErrorHandler, JobCancelledError, RecoveryAction, StageFailure
from ..core.interfaces import ExecutionBackend
from .broadcast import BroadcastRegistry
from .cache import CacheManager
from .executor import BlockKey, FramePlan, PartitionExecutor, PartitionPlan, evaluate
from .lineage import LineageGraph, OpKind, PlanNode
from .shuffle import ShuffleManager

logger = logging.getLogger(__name__)

ResultFn = Callable[[pd.DataFrame, int], Any]
PlanFn = Callable[[int], PartitionPlan]


class TaskStatus(Enum):
    """Task execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(Enum):
    """Job execution status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Task:
    """One partition of one stage."""
    stage_id: int
    stage_uid: str
    partition_index: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    attempts: int = 0
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert task to dictionary."""
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "stage_uid": self.stage_uid,
            "partition_index": self.partition_index,
            "attempts": self.attempts,
            "status": self.status.name,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }


@dataclass
class Job:
    """A request to compute every partition of a plan node."""
    node_id: int
    description: str = ""
    id: str = field(default_factory=lambda: f"job-{uuid.uuid4().hex[:8]}")
    status: JobStatus = JobStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    stage_ids: List[int] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    cache_blocks: Set[Tuple[int, int]] = field(default_factory=set)
    shuffle_ids: List[int] = field(default_factory=list)
    broadcast_nodes: List[int] = field(default_factory=list)
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise JobCancelledError(self.id)

    def record_block(self, key: Tuple[int, int]) -> None:
        with self._lock:
            self.cache_blocks.add(key)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary."""
        return {
            "id": self.id,
            "node_id": self.node_id,
            "description": self.description,
            "status": self.status.name,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "stages": list(self.stage_ids),
            "tasks": len(self.tasks),
            "failed_attempts": sum(max(0, t.attempts - 1) for t in self.tasks),
        }


class JobHandle:
    """Handle to a job running asynchronously on the driver."""

    def __init__(self, job: Job, future):
        self.job = job
        self._future = future

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def status(self) -> JobStatus:
        return self.job.status

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> None:
        """Request cancellation; result() then raises JobCancelledError."""
        self.job.cancel()
        self._future.cancel()

    def result(self, timeout: Optional[float] = None) -> Any:
        if self._future.cancelled():
            raise JobCancelledError(self.job.id)
        return self._future.result(timeout=timeout)

    def __repr__(self) -> str:
        return f"JobHandle({self.job.id}, {self.job.status.value})"


def _set_correlation_id(value: Optional[str]) -> Optional[str]:
    thread = threading.current_thread()
    previous = getattr(thread, "correlation_id", None)
    thread.correlation_id = value
    return previous


class DAGScheduler:
    """Splits jobs into stages at shuffle boundaries and runs their tasks on a backend."""

    def __init__(self,
                 lineage: LineageGraph,
                 executor: PartitionExecutor,
                 backend: ExecutionBackend,
                 shuffle_manager: ShuffleManager,
                 cache_manager: CacheManager,
                 broadcasts: BroadcastRegistry,
                 error_handler: ErrorHandler,
                 max_task_retries: int = 4,
                 history_size: int = 1000):
        """
        Initialize the scheduler.

        Args:
            lineage: Lineage graph the jobs are planned from
            executor: Plans single partitions and stores cached blocks
            backend: Worker pool that runs tasks
            shuffle_manager: Store for shuffle map outputs
            cache_manager: Store for cached partitions
            broadcasts: Store for materialized broadcast values
            error_handler: Decides whether failed tasks are retried
            max_task_retries: Attempts per task before its stage fails
            history_size: Finished jobs kept for inspection
        """
        self.lineage = lineage
        self.executor = executor
        self.backend = backend
        self.shuffle_manager = shuffle_manager
        self.cache_manager = cache_manager
        self.broadcasts = broadcasts
        self.error_handler = error_handler
        self.max_task_retries = max_task_retries
        self.history_size = history_size

        self.active_jobs: Dict[str, Job] = {}
        self.completed_jobs: Dict[str, Job] = {}
        self._stage_ids = itertools.count()
        self._lock = threading.Lock()
        self._shuffle_locks: Dict[int, threading.Lock] = {}
        self._broadcast_locks: Dict[int, threading.Lock] = {}

        self.stats = {
            "jobs_submitted": 0,
            "jobs_succeeded": 0,
            "jobs_failed": 0,
            "jobs_cancelled": 0,
            "stages_run": 0,
            "tasks_submitted": 0,
            "tasks_succeeded": 0,
            "tasks_failed": 0,
            "tasks_retried": 0,
            "total_task_time": 0.0,
        }

        logger.info(f"DAG scheduler initialized (backend={backend.name}, "
                    f"max_task_retries={max_task_retries})")

    def new_job(self, node_id: int, description: str = "") -> Job:
        return Job(node_id=node_id, description=description or self.lineage.node(node_id).stage_uid)

    def run_job(self, node_id: int, result_fn: Optional[ResultFn] = None,
                job: Optional[Job] = None) -> List[Any]:
        """
        Compute every partition of ``node_id`` and return one result per partition.

        Args:
            node_id: Plan node to compute
            result_fn: Applied to each computed partition on the worker; the
                partition itself is returned when omitted
            job: Pre-created job, used when the caller needs a handle to cancel it

        Returns:
            Results in partition index order
        """
        job = job or self.new_job(node_id)
        previous = _set_correlation_id(job.id)
        with self._lock:
            self.active_jobs[job.id] = job
            self.stats["jobs_submitted"] += 1

        job.status = JobStatus.RUNNING
        job.started_at = time.time()
        logger.info(f"Job {job.id} started: {job.description}")

        try:
            results = self._run(node_id, result_fn, job)

        except JobCancelledError:
            job.status = JobStatus.CANCELLED
            self._release(job)
            self._bump("jobs_cancelled")
            logger.info(f"Job {job.id} cancelled")
            raise

        except BaseException as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            self._release(job)
            self._bump("jobs_failed")
            logger.error(f"Job {job.id} failed: {e}")
            raise

        else:
            job.status = JobStatus.SUCCEEDED
            self._bump("jobs_succeeded")
            logger.info(f"Job {job.id} finished in {time.time() - job.started_at:.3f}s "
                        f"({len(job.stage_ids)} stages, {len(job.tasks)} tasks)")
            return results

        finally:
            job.completed_at = time.time()
            self._finish(job)
            _set_correlation_id(previous)

    def _run(self, node_id: int, result_fn: Optional[ResultFn], job: Job) -> List[Any]:
        node = self.lineage.node(node_id)
        if node.kind == OpKind.SHUFFLE:
            self._ensure_shuffle(node_id, job)
        else:
            for dependency in self.lineage.shuffle_dependencies(node_id):
                self._ensure_shuffle(dependency, job)
            for broadcast_node in self.lineage.broadcast_dependencies(node_id):
                self._ensure_broadcast(broadcast_node, job)

        job.check_cancelled()
        stage_id = self._next_stage_id(job)
        executor = self.executor

        logger.debug(f"Running result stage {stage_id} ({node.stage_uid}) with {node.num_partitions} tasks")
        return self._run_stage(job, stage_id, node.stage_uid, node.num_partitions,
                               lambda index: executor.plan(node_id, index), result_fn)

    def _ensure_shuffle(self, shuffle_node_id: int, job: Job) -> None:
        """Materialize the map outputs of a shuffle unless they are already complete."""
        node = self.lineage.node(shuffle_node_id)
        shuffle_id = node.payload["shuffle_id"]
        with self._lock:
            lock = self._shuffle_locks.setdefault(shuffle_id, threading.Lock())

        with lock:
            if self.shuffle_manager.is_complete(shuffle_id):
                return
            for dependency in self.lineage.shuffle_dependencies(shuffle_node_id):
                self._ensure_shuffle(dependency, job)
            for broadcast_node in self.lineage.broadcast_dependencies(shuffle_node_id):
                self._ensure_broadcast(broadcast_node, job)
            job.check_cancelled()
            self._run_shuffle_map_stage(node, job)

    def _run_shuffle_map_stage(self, node: PlanNode, job: Job) -> None:
        parent_id = node.parents[0]
        parent = self.lineage.node(parent_id)
        partitioner = node.payload["partitioner"]
        map_side = node.payload.get("map_side")
        shuffle_id = node.payload["shuffle_id"]
        stage_id = self._next_stage_id(job)
        executor = self.executor

        logger.debug(f"Running shuffle map stage {stage_id} ({node.stage_uid}) with "
                     f"{parent.num_partitions} tasks, {partitioner.describe()}")

        frames = self._run_stage(job, stage_id, node.stage_uid, parent.num_partitions,
                                 lambda index: executor.plan(parent_id, index), map_side)

        # partitioners that need global information (offsets, range bounds) learn it here
        partitioner.prepare(frames)

        buckets = self._run_stage(job, stage_id, node.stage_uid, len(frames),
                                  lambda index: FramePlan(frames[index]), partitioner.split, count_stage=False)

        self.shuffle_manager.register_shuffle(shuffle_id, len(frames), partitioner.num_partitions)
        job.shuffle_ids.append(shuffle_id)
        for map_index, map_buckets in enumerate(buckets):
            self.shuffle_manager.add_map_output(shuffle_id, map_index, map_buckets)

    def _ensure_broadcast(self, broadcast_node_id: int, job: Job) -> None:
        """Collect a broadcast-hinted dataset on the driver once."""
        with self._lock:
            lock = self._broadcast_locks.setdefault(broadcast_node_id, threading.Lock())

        with lock:
            if self.broadcasts.contains(broadcast_node_id):
                return
            node = self.lineage.node(broadcast_node_id)
            logger.debug(f"Materializing broadcast input {node.stage_uid}")
            frames = self._run(broadcast_node_id, None, job)
            non_empty = [f for f in frames if len(f)]
            if non_empty:
                value = pd.concat(non_empty, ignore_index=True)
            else:
                value = frames[0] if frames else node.schema.empty_frame()
            self.broadcasts.put(broadcast_node_id, value)
            job.broadcast_nodes.append(broadcast_node_id)

    def _run_stage(self, job: Job, stage_id: int, stage_uid: str, num_tasks: int,
                   plan_fn: PlanFn, finish: Optional[ResultFn], count_stage: bool = True) -> List[Any]:
        """
        Run one task per partition and wait for all of them (stage barrier).

        ``plan_fn(index)`` plans the input partition on the driver, again for
        every attempt; ``finish(df, index)`` runs on the worker.
        """
        job.check_cancelled()
        if count_stage:
            self._bump("stages_run")

        tasks = [Task(stage_id=stage_id, stage_uid=stage_uid, partition_index=i) for i in range(num_tasks)]
        with job._lock:
            job.tasks.extend(tasks)

        futures: Dict[int, Any] = {}
        try:
            for task in tasks:
                futures[task.partition_index] = self._submit(job, task, plan_fn, finish)

            results = []
            for task in tasks:
                results.append(self._await(job, task, plan_fn, finish, futures))
            job.check_cancelled()
            return results

        except BaseException:
            for future in futures.values():
                future.cancel()
            for task in tasks:
                if task.status in (TaskStatus.PENDING, TaskStatus.RUNNING):
                    task.status = TaskStatus.CANCELLED
            raise

    def _submit(self, job: Job, task: Task, plan_fn: PlanFn, finish: Optional[ResultFn]) -> Any:
        job.check_cancelled()
        plan = plan_fn(task.partition_index)
        task.attempts += 1
        task.status = TaskStatus.RUNNING
        task.started_at = time.time()
        self._bump("tasks_submitted")
        return self.backend.submit(run_partition_task, job.id, plan, task.partition_index, finish)

    def _await(self, job: Job, task: Task, plan_fn: PlanFn, finish: Optional[ResultFn],
               futures: Dict[int, Any]) -> Any:
        """Wait for a task, resubmitting it while its failure is retryable."""
        while True:
            future = futures[task.partition_index]
            try:
                result, blocks = future.result()

            except JobCancelledError:
                task.status = TaskStatus.CANCELLED
                raise

            except Exception as e:
                task.error = str(e)
                self._bump("tasks_failed")
                job.check_cancelled()

                error_context = self.error_handler.classify_error(e, {
                    "job_id": job.id,
                    "stage_id": task.stage_id,
                    "stage_uid": task.stage_uid,
                    "partition_index": task.partition_index,
                    "attempt": task.attempts,
                })
                action = self.error_handler.determine_recovery_action(error_context, self.max_task_retries)

                if action == RecoveryAction.RETRY:
                    delay = self.error_handler.calculate_retry_delay(error_context)
                    logger.warning(f"Retrying task for partition {task.partition_index} of stage "
                                   f"{task.stage_id} ({task.stage_uid}), attempt {task.attempts + 1} "
                                   f"of {self.max_task_retries}")
                    if delay > 0:
                        time.sleep(delay)
                    self._bump("tasks_retried")
                    futures[task.partition_index] = self._submit(job, task, plan_fn, finish)
                    continue

                task.status = TaskStatus.FAILED
                task.completed_at = time.time()
                if not self.error_handler.is_retryable(error_context):
                    raise
                raise StageFailure(task.stage_id, task.stage_uid, task.partition_index,
                                   task.attempts, cause=e) from e

            self.executor.store_blocks(blocks, job)
            task.status = TaskStatus.COMPLETED
            task.completed_at = time.time()
            task.error = None
            with self._lock:
                self.stats["tasks_succeeded"] += 1
                self.stats["total_task_time"] += task.completed_at - task.started_at
            return result

    def _next_stage_id(self, job: Job) -> int:
        with self._lock:
            stage_id = next(self._stage_ids)
        job.stage_ids.append(stage_id)
        return stage_id

    def _release(self, job: Job) -> None:
        """Drop cache blocks, shuffle outputs and broadcast values produced by an unsuccessful job."""
        removed_blocks = self.cache_manager.remove_blocks(job.cache_blocks)
        for shuffle_id in job.shuffle_ids:
            self.shuffle_manager.unregister(shuffle_id)
        for node_id in job.broadcast_nodes:
            self.broadcasts.remove(node_id)
        if removed_blocks or job.shuffle_ids or job.broadcast_nodes:
            logger.debug(f"Job {job.id} released {removed_blocks} cache blocks, "
                         f"{len(job.shuffle_ids)} shuffles, {len(job.broadcast_nodes)} broadcasts")

    def _shuffles_in(self, node_id: int) -> Set[int]:
        return {node.payload["shuffle_id"] for node in self.lineage.lineage(node_id) if node.kind == OpKind.SHUFFLE}

    def release_shuffles(self, node_id: int) -> int:
        """
        Drop the map outputs of the shuffles in the lineage of ``node_id``.

        Shuffles read by a running job are kept. A released shuffle is
        recomputed by the next job that needs it.
        """
        released = 0
        with self._lock:
            in_use: Set[int] = set()
            for job in self.active_jobs.values():
                in_use |= self._shuffles_in(job.node_id)
            for shuffle_id in sorted(self._shuffles_in(node_id) - in_use):
                if self.shuffle_manager.unregister(shuffle_id):
                    released += 1
        if released:
            logger.info(f"Released {released} shuffles in the lineage of node {node_id}")
        return released

    def _finish(self, job: Job) -> None:
        with self._lock:
            self.active_jobs.pop(job.id, None)
            self.completed_jobs[job.id] = job
            if len(self.completed_jobs) > self.history_size:
                oldest = sorted(self.completed_jobs.values(), key=lambda j: j.completed_at or 0)
                for stale in oldest[:len(self.completed_jobs) - self.history_size]:
                    del self.completed_jobs[stale.id]

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self.stats[key] += amount

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self.active_jobs.get(job_id) or self.completed_jobs.get(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Request cancellation of a running job."""
        with self._lock:
            job = self.active_jobs.get(job_id)
        if job is None:
            return False
        job.cancel()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def cancel_all_jobs(self) -> int:
        with self._lock:
            jobs = list(self.active_jobs.values())
        for job in jobs:
            job.cancel()
        if jobs:
            logger.info(f"Cancellation requested for {len(jobs)} jobs")
        return len(jobs)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Dict[str, Any]]:
        """List jobs with optional status filter."""
        with self._lock:
            jobs = list(self.active_jobs.values()) + list(self.completed_jobs.values())
        selected = [job.to_dict() for job in jobs if status is None or job.status == status]
        return sorted(selected, key=lambda x: x["created_at"], reverse=True)

    def get_statistics(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        with self._lock:
            current_stats = self.stats.copy()
            current_stats.update({
                "active_jobs": len(self.active_jobs),
                "completed_jobs": len(self.completed_jobs),
            })
        current_stats["average_task_time"] = (
            current_stats["total_task_time"] / max(1, current_stats["tasks_succeeded"])
        )
        return current_stats


def run_partition_task(job_id: str, plan: PartitionPlan, partition_index: int,
                       finish: Optional[ResultFn]) -> Tuple[Any, Dict[BlockKey, pd.DataFrame]]:
    """
    Task body executed on a worker.

    Returns the task result and the partitions of cached nodes computed on
    the way, for the driver to store.
    """
    previous = _set_correlation_id(job_id)
    try:
        blocks: Dict[BlockKey, pd.DataFrame] = {}
        df = evaluate(plan, blocks)
        result = finish(df, partition_index) if finish is not None else df
        return result, blocks
    finally:
        _set_correlation_id(previous)
