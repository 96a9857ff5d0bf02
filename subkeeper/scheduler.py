"""
Task dispatch, cancellation and recovery sweeps.

The scheduler owns the in-process registry of task executions. A task id
is registered from the moment it is handed to the worker pool until its
attempt returns, and ``schedule`` refuses to register the same id twice,
which gives at most one execution per task in this process. Only one
process is expected to run a scheduler against a given database.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta

from subkeeper.broadcaster import TaskUpdateBroadcaster
from subkeeper.core.config import AppConfig
from subkeeper.core.exceptions import CancellationError, InvalidStateError
from subkeeper.core.logging import get_logger
from subkeeper.executor import CancellationToken, TaskExecutor
from subkeeper.models.task import TaskLogLevel, TaskStatus
from subkeeper.services.task_store import TaskSnapshot, TaskStore

logger = get_logger("scheduler")

_CANCELLABLE_IDLE = (TaskStatus.PENDING, TaskStatus.SCHEDULED, TaskStatus.PAUSED)
_PRUNABLE = (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class ExecutionHandle:
    """Registry entry for a task handed to the worker pool."""

    task_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    future: Future | None = None
    registered_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class CancelOutcome:
    task: TaskSnapshot
    interrupted: bool


class TaskScheduler:
    """Bounded worker pool plus registry, poll loop and sweeps."""

    def __init__(
        self,
        store: TaskStore,
        executor: TaskExecutor,
        broadcaster: TaskUpdateBroadcaster,
        config: AppConfig,
        dispatcher=None,
    ):
        self.store = store
        self.executor = executor
        self.broadcaster = broadcaster
        self.config = config
        self.max_workers = config.max_task_workers

        self._dispatcher = dispatcher or ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="task-worker"
        )
        self._registry: dict[str, ExecutionHandle] = {}
        self._lock = threading.Lock()

        self._shutdown = threading.Event()
        self._wake = threading.Event()
        self._poll_thread: threading.Thread | None = None

        logger.info("TaskScheduler initialised with %d workers", self.max_workers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background dispatch poll thread."""
        self._shutdown.clear()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, name="task-poll", daemon=True
        )
        self._poll_thread.start()
        logger.info("TaskScheduler started")

    def stop(self, wait: bool = True) -> None:
        """
        Stop polling and shut the worker pool down.

        Queued work that has not started is dropped; those tasks are still
        PENDING in the store and are picked up again on the next start.
        """
        logger.info("TaskScheduler stopping")
        self._shutdown.set()
        self._wake.set()
        if self._poll_thread:
            self._poll_thread.join(timeout=5.0)
        self._dispatcher.shutdown(wait=wait, cancel_futures=True)
        logger.info("TaskScheduler stopped")

    def notify(self) -> None:
        """Wake the poll loop early."""
        self._wake.set()

    def _poll_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                self.dispatch_pending()
            except Exception:
                logger.exception("Error in task poll loop")
            self._wake.wait(self.config.dispatch_poll_interval)
            self._wake.clear()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def is_registered(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._registry

    def registered_ids(self) -> set[str]:
        with self._lock:
            return set(self._registry)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._registry)

    def schedule(self, task: TaskSnapshot | str) -> bool:
        """
        Hand a task to the worker pool.

        Scheduling an id that is already registered is a no-op.

        Args:
            task: Snapshot or id of the task to run.

        Returns:
            False if the pool rejected the submission, True otherwise.
            Success says nothing about how the execution will end.
        """
        task_id = task if isinstance(task, str) else task.id

        with self._lock:
            if task_id in self._registry:
                logger.debug("Task %s already registered, not scheduling", task_id)
                return True
            handle = ExecutionHandle(task_id)
            self._registry[task_id] = handle

        try:
            handle.future = self._dispatcher.submit(self._run, handle)
        except RuntimeError as e:
            self._unregister(handle)
            logger.error("Failed to enqueue task %s: %s", task_id, e)
            return False

        logger.debug("Task %s scheduled", task_id)
        return True

    def _run(self, handle: ExecutionHandle) -> None:
        try:
            self.executor.execute(handle.task_id, handle.token)
        except Exception:
            logger.exception("Unhandled error executing task %s", handle.task_id)
        finally:
            self._unregister(handle)
            self.notify()

    def _unregister(self, handle: ExecutionHandle) -> None:
        with self._lock:
            if self._registry.get(handle.task_id) is handle:
                del self._registry[handle.task_id]

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, task_id: str) -> CancelOutcome:
        """
        Cancel a task.

        A registered task has its token signalled (which also kills any
        running tool process) and is marked CANCELLED. An idle task is
        marked CANCELLED directly.

        Returns:
            CancelOutcome with the updated task and whether a registered
            execution was signalled.

        Raises:
            NotFoundError: Unknown task id.
            InvalidStateError: The task is already terminal.
            CancellationError: The task is RUNNING but not owned by this
                process, so it cannot be interrupted.
        """
        task = self.store.require(task_id)
        if task.is_terminal:
            raise InvalidStateError(
                f"Task {task_id} is already {task.status.value}", task.status.value
            )

        with self._lock:
            handle = self._registry.get(task_id)

        if handle is None and task.status == TaskStatus.RUNNING:
            raise CancellationError(task_id)

        interrupted = handle is not None and handle.token.cancel()
        allowed = _CANCELLABLE_IDLE
        if handle is not None:
            allowed = (TaskStatus.RUNNING, *_CANCELLABLE_IDLE)
        snapshot = self.store.mark_cancelled(
            task_id, allowed, "Cancellation requested"
        )

        self.broadcaster.publish(snapshot)
        self.store.add_log(
            task_id, "Cancelled", TaskLogLevel.WARNING, snapshot.attempt
        )
        _record_cancel(snapshot)
        logger.info(
            "Task %s cancelled (was %s, interrupted=%s)",
            task_id,
            task.status.value,
            interrupted,
        )
        return CancelOutcome(snapshot, interrupted)

    # ------------------------------------------------------------------
    # Dispatch poll
    # ------------------------------------------------------------------

    def dispatch_pending(self) -> int:
        """
        Fill free worker slots from the store.

        Due SCHEDULED tasks go first, then PENDING tasks by priority and age.
        Tasks already in the registry are skipped.

        Returns:
            Number of tasks handed to the pool.
        """
        in_flight = self.registered_ids()
        available = self.max_workers - len(in_flight)
        if available <= 0:
            return 0

        due = self.store.find_due_scheduled(self.store.now(), available, in_flight)
        pending = self.store.find_pending_for_dispatch(
            available - len(due), in_flight
        )

        dispatched = 0
        for task in [*due, *pending]:
            if self.schedule(task):
                dispatched += 1

        if dispatched:
            logger.debug("Dispatched %d tasks", dispatched)
        return dispatched

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def recover_stuck_tasks(self, threshold_minutes: int | None = None) -> list[str]:
        """
        Re-dispatch RUNNING tasks whose heartbeat has gone stale.

        Each stale task is reset to PENDING with a fresh heartbeat and then
        scheduled again. Tasks still in this process's registry are left
        alone.

        Args:
            threshold_minutes: Heartbeat age that counts as stuck. Defaults
                to the configured threshold.

        Returns:
            Ids of the tasks that were reset and rescheduled.
        """
        if threshold_minutes is None:
            threshold_minutes = self.config.stuck_task_threshold_minutes
        cutoff = self.store.now() - timedelta(minutes=threshold_minutes)

        recovered = []
        for task in self.store.find_stuck(cutoff):
            if self.is_registered(task.id):
                logger.warning(
                    "Task %s has a stale heartbeat but is still executing here",
                    task.id,
                )
                continue

            snapshot = self.store.reset_stuck(task.id, cutoff)
            if snapshot is None:
                continue

            self.broadcaster.publish(snapshot)
            self.store.add_log(
                task.id,
                "Recovered from stale heartbeat",
                TaskLogLevel.WARNING,
                snapshot.attempt,
            )
            _record_recovery()
            logger.warning(
                "Recovered stuck task %s (last heartbeat %s)",
                task.id,
                task.last_heartbeat,
            )

            if self.schedule(snapshot):
                recovered.append(task.id)

        if recovered:
            logger.info("Stuck task sweep rescheduled %d tasks", len(recovered))
        return recovered

    def prune_old_tasks(self, retention_days: int) -> int:
        """
        Delete COMPLETED and FAILED tasks finished more than retention_days ago.

        Returns:
            Number of tasks deleted.
        """
        cutoff = self.store.now() - timedelta(days=retention_days)
        deleted = self.store.delete_terminal_older_than(cutoff, _PRUNABLE)
        logger.info(
            "Pruned %d completed or failed tasks older than %d days",
            deleted,
            retention_days,
        )
        return deleted

    def get_stats(self) -> dict:
        """Get current scheduler stats."""
        with self._lock:
            active = len(self._registry)
        return {
            "active_executions": active,
            "max_workers": self.max_workers,
            "available_workers": max(0, self.max_workers - active),
        }


def _record_cancel(task: TaskSnapshot) -> None:
    from subkeeper.metrics import record_task_outcome

    record_task_outcome(task.type.value, TaskStatus.CANCELLED.value, None)


def _record_recovery() -> None:
    from subkeeper.metrics import stuck_recoveries_total

    stuck_recoveries_total.inc()
