"""
Runs one task attempt.

The executor drives a task from PENDING/SCHEDULED through RUNNING to a
terminal status. Execution bodies are plain functions registered per task
type; they receive an ``ExecutionContext`` for progress, heartbeats,
cancellation checkpoints and external tool calls, plus their typed
parameters.
"""

import threading
import time
from collections.abc import Callable
from enum import Enum

from subkeeper.broadcaster import TaskUpdateBroadcaster
from subkeeper.core.config import AppConfig
from subkeeper.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    TaskCancelledError,
    TaskTimeoutError,
    ToolError,
    ValidationError,
)
from subkeeper.core.helpers import clamp_percentage
from subkeeper.core.logging import get_logger
from subkeeper.core.validators import validate_result_payload
from subkeeper.models.task import TaskLogLevel, TaskStatus, TaskType
from subkeeper.schemas.parameters import TaskParameters, parse_parameters
from subkeeper.services.task_store import TaskSnapshot, TaskStore
from subkeeper.services.tool_runner import ToolResult, ToolRunner

logger = get_logger("executor")

Handler = Callable[["ExecutionContext", TaskParameters], dict | None]


class CancelReason(str, Enum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class CancellationToken:
    """
    Cooperative cancellation flag for one execution attempt.

    Cancelling also terminates the external process currently attached to
    the token, which is how blocking tool calls are interrupted.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._process = None
        self.reason: CancelReason | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        return self.reason == CancelReason.TIMEOUT

    def cancel(self, reason: CancelReason = CancelReason.CANCELLED) -> bool:
        """
        Request cancellation.

        Returns:
            True if this call set the flag, False if it was already set.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            process = self._process
        if process is not None:
            _terminate(process)
        return True

    def raise_if_cancelled(self) -> None:
        if not self._event.is_set():
            return
        if self.reason == CancelReason.TIMEOUT:
            raise TaskTimeoutError("Task exceeded its execution timeout")
        raise TaskCancelledError("Task was cancelled")

    def attach_process(self, process) -> None:
        with self._lock:
            self._process = process
            cancelled = self._event.is_set()
        if cancelled:
            _terminate(process)

    def detach_process(self) -> None:
        with self._lock:
            self._process = None

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


def _terminate(process) -> None:
    try:
        if process.poll() is None:
            process.kill()
    except OSError:
        logger.debug("Process %s already gone", getattr(process, "pid", "?"))


class ExecutionContext:
    """Everything an execution body may use while it runs."""

    def __init__(
        self,
        task: TaskSnapshot,
        store: TaskStore,
        broadcaster: TaskUpdateBroadcaster,
        token: CancellationToken,
        config: AppConfig,
        tool_runner: ToolRunner,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.task = task
        self.store = store
        self.broadcaster = broadcaster
        self.token = token
        self.config = config
        self.tool_runner = tool_runner
        self._clock = clock
        self._progress = task.progress_percentage
        self._last_broadcast = 0.0

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def progress(self) -> int:
        return self._progress

    def report_progress(self, percentage: float, message: str | None = None) -> None:
        """
        Record progress for the running attempt.

        Progress never goes backwards within an attempt. The write also
        refreshes the heartbeat. Broadcasts are throttled, except for 100%.
        """
        percentage = max(clamp_percentage(percentage), self._progress)
        self._progress = percentage

        try:
            snapshot = self.store.update_progress(self.task_id, percentage, message)
        except Exception:
            logger.warning(
                "Failed to persist progress for task %s", self.task_id, exc_info=True
            )
            return

        if snapshot is None:
            return

        now = self._clock()
        interval = self.config.progress_broadcast_interval
        if percentage >= 100 or now - self._last_broadcast >= interval:
            self._last_broadcast = now
            self.broadcaster.publish(snapshot)

    def heartbeat(self) -> None:
        try:
            self.store.update_heartbeat(self.task_id)
        except Exception:
            logger.warning(
                "Failed to persist heartbeat for task %s", self.task_id, exc_info=True
            )

    def check_cancelled(self) -> None:
        """Checkpoint: raises TaskCancelledError or TaskTimeoutError if set."""
        self.token.raise_if_cancelled()

    def log(self, message: str, level: TaskLogLevel = TaskLogLevel.INFO) -> None:
        self.store.add_log(self.task_id, message, level, self.task.attempt)

    def run_tool(
        self,
        args: list[str],
        timeout: float | None = None,
        check: bool = True,
        cwd: str | None = None,
    ) -> ToolResult:
        """
        Run an external tool as part of this attempt.

        Cancellation is checked before the process starts and after it ends.
        While it runs, cancellation or timeout kills the process.

        Raises:
            TaskCancelledError: If the attempt was cancelled.
            ToolError: If check is set and the tool exits non-zero.
        """
        self.check_cancelled()
        try:
            result = self.tool_runner.run(
                args, timeout=timeout, on_start=self.token.attach_process, cwd=cwd
            )
        finally:
            self.token.detach_process()

        self.check_cancelled()
        if check:
            result.check()
        return result


class _HeartbeatTicker(threading.Thread):
    """Refreshes the heartbeat on a fixed interval and enforces the timeout."""

    def __init__(
        self,
        executor: "TaskExecutor",
        ctx: ExecutionContext,
        interval: float,
        deadline: float,
        clock: Callable[[], float],
    ):
        super().__init__(name=f"heartbeat-{ctx.task_id[:8]}", daemon=True)
        self._executor = executor
        self._ctx = ctx
        self._interval = max(interval, 0.01)
        self._deadline = deadline
        self._clock = clock
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while True:
            remaining = self._deadline - self._clock()
            if remaining <= 0:
                self._executor._expire(self._ctx)
                return
            if self._stop_event.wait(min(self._interval, remaining)):
                return
            if self._clock() < self._deadline:
                self._ctx.heartbeat()


class TaskExecutor:
    """Executes task attempts using registered per-type handlers."""

    def __init__(
        self,
        store: TaskStore,
        broadcaster: TaskUpdateBroadcaster,
        config: AppConfig,
        tool_runner: ToolRunner | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.config = config
        self.tool_runner = tool_runner or ToolRunner()
        self._clock = clock
        self._handlers: dict[TaskType, Handler] = {}

    def register_handler(self, task_type: TaskType, handler: Handler) -> None:
        """Register the execution body for a task type."""
        self._handlers[task_type] = handler
        logger.info("Registered handler for task type: %s", task_type.value)

    def has_handler(self, task_type: TaskType) -> bool:
        return task_type in self._handlers

    def execute(
        self, task_id: str, token: CancellationToken | None = None
    ) -> TaskSnapshot | None:
        """
        Run one attempt of a task.

        Never raises: every failure is recorded on the task.

        Args:
            task_id: Task to run. Must be PENDING or SCHEDULED.
            token: Cancellation token for this attempt.

        Returns:
            Snapshot after the terminal write, or None if the task was not
            started or its outcome could not be recorded.
        """
        token = token or CancellationToken()

        try:
            task = self.store.mark_running(task_id, threading.current_thread().name)
        except NotFoundError:
            logger.warning("Task %s not found, skipping", task_id)
            return None
        except InvalidStateError as e:
            logger.info(
                "Task %s is %s, not starting it", task_id, e.current_status
            )
            return None
        except Exception:
            logger.exception("Failed to start task %s", task_id)
            return None

        self.broadcaster.publish(task)
        attempt = task.attempt
        self.store.add_log(task_id, f"Starting attempt {attempt}", attempt=attempt)
        logger.info(
            "Starting task %s (%s), attempt %d", task_id, task.type.value, attempt
        )

        started = self._clock()
        ctx = ExecutionContext(
            task,
            self.store,
            self.broadcaster,
            token,
            self.config,
            self.tool_runner,
            clock=self._clock,
        )
        ticker = _HeartbeatTicker(
            self,
            ctx,
            self.config.heartbeat_interval_seconds,
            started + self.config.task_timeout_seconds,
            self._clock,
        )
        ticker.start()

        try:
            status, result, error = self._run_body(ctx, task)
            duration_ms = int((self._clock() - started) * 1000)
            snapshot = self._write_outcome(
                task, status, result, error, duration_ms
            )
        finally:
            ticker.stop()

        if snapshot is not None:
            _record_metrics(task.type, status, duration_ms / 1000)
        return snapshot

    def _run_body(
        self, ctx: ExecutionContext, task: TaskSnapshot
    ) -> tuple[TaskStatus, dict | None, str | None]:
        handler = self._handlers.get(task.type)
        if handler is None:
            return (
                TaskStatus.FAILED,
                None,
                f"No handler registered for task type: {task.type.value}",
            )

        try:
            params = parse_parameters(task.type, task.parameters)
            result = handler(ctx, params)
            validate_result_payload(result)
        except TaskTimeoutError:
            return TaskStatus.FAILED, None, self._timeout_message()
        except TaskCancelledError:
            return TaskStatus.CANCELLED, None, None
        except ValidationError as e:
            return TaskStatus.FAILED, None, e.message
        except ToolError as e:
            logger.warning("Task %s tool failure: %s", task.id, e)
            return TaskStatus.FAILED, None, str(e)
        except Exception as e:
            logger.exception("Task %s raised an exception", task.id)
            return TaskStatus.FAILED, None, str(e) or type(e).__name__

        if ctx.token.timed_out:
            return TaskStatus.FAILED, None, self._timeout_message()
        return TaskStatus.COMPLETED, result or {}, None

    def _write_outcome(
        self,
        task: TaskSnapshot,
        status: TaskStatus,
        result: dict | None,
        error: str | None,
        duration_ms: int,
    ) -> TaskSnapshot | None:
        """Persist the terminal status, retrying once on a storage error."""
        writes: dict[TaskStatus, Callable[[], TaskSnapshot]] = {
            TaskStatus.COMPLETED: lambda: self.store.mark_completed(
                task.id, result, duration_ms
            ),
            TaskStatus.FAILED: lambda: self.store.mark_failed(
                task.id, error or "Task failed", duration_ms
            ),
            TaskStatus.CANCELLED: lambda: self.store.mark_cancelled(
                task.id, (TaskStatus.RUNNING,), "Cancelled", duration_ms
            ),
        }

        snapshot = self._with_retry(task.id, writes[status])
        if snapshot is None:
            return None

        self.broadcaster.publish(snapshot)
        if status == TaskStatus.COMPLETED:
            self.store.add_log(task.id, "Completed", attempt=task.attempt)
            logger.info("Task %s completed in %dms", task.id, duration_ms)
        elif status == TaskStatus.FAILED:
            self.store.add_log(
                task.id, f"Failed: {error}", TaskLogLevel.ERROR, task.attempt
            )
            logger.error("Task %s failed: %s", task.id, error)
        else:
            self.store.add_log(
                task.id, "Cancelled", TaskLogLevel.WARNING, task.attempt
            )
            logger.info("Task %s cancelled", task.id)
        return snapshot

    def _with_retry(
        self, task_id: str, write: Callable[[], TaskSnapshot]
    ) -> TaskSnapshot | None:
        for attempt in (1, 2):
            try:
                return write()
            except (NotFoundError, InvalidStateError) as e:
                # Cancelled, timed out or deleted while the body was running
                logger.info(
                    "Task %s outcome not recorded, status is now %s",
                    task_id,
                    getattr(e, "current_status", None) or "missing",
                )
                return None
            except Exception:
                if attempt == 1:
                    logger.warning(
                        "Terminal write for task %s failed, retrying",
                        task_id,
                        exc_info=True,
                    )
                    continue
                logger.exception(
                    "Terminal write for task %s failed twice, giving up", task_id
                )
        return None

    def _expire(self, ctx: ExecutionContext) -> None:
        """Called by the ticker when the attempt passes its deadline."""
        if not ctx.token.cancel(CancelReason.TIMEOUT):
            return

        message = self._timeout_message()
        logger.error("Task %s timed out", ctx.task_id)
        snapshot = self._with_retry(
            ctx.task_id,
            lambda: self.store.mark_failed(
                ctx.task_id,
                message,
                int(self.config.task_timeout_seconds * 1000),
            ),
        )
        if snapshot is not None:
            self.broadcaster.publish(snapshot)
            self.store.add_log(
                ctx.task_id, f"Failed: {message}", TaskLogLevel.ERROR, ctx.task.attempt
            )
            _record_metrics(
                ctx.task.type, TaskStatus.FAILED, self.config.task_timeout_seconds
            )

    def _timeout_message(self) -> str:
        return f"Task timed out after {self.config.task_timeout_hours:g} hours"


def _record_metrics(task_type: TaskType, status: TaskStatus, seconds: float) -> None:
    from subkeeper.metrics import record_task_outcome

    record_task_outcome(task_type.value, status.value, seconds)

