"""
Durable task records.

All reads return immutable ``TaskSnapshot`` objects so that callers on
other threads never hold live ORM instances. Status changes are issued as
conditional updates (``WHERE id = ? AND status IN (...)``) so the database
serialises conflicting writers to the same row, and a zero row count is
resolved into either "not found" or "wrong state".
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session, sessionmaker

from subkeeper.core.exceptions import InvalidStateError, NotFoundError
from subkeeper.core.helpers import isoformat, utcnow
from subkeeper.core.logging import get_logger
from subkeeper.extensions import SessionLocal
from subkeeper.models.task import (
    TERMINAL_STATUSES,
    Task,
    TaskLog,
    TaskLogLevel,
    TaskPriority,
    TaskStatus,
    TaskType,
)

logger = get_logger("task_store")

_PRIORITY_ORDER = case(
    {priority.value: priority.rank for priority in TaskPriority},
    value=Task.priority,
    else_=0,
)


@dataclass(frozen=True)
class TaskSnapshot:
    """Point-in-time copy of a task row."""

    id: str
    type: TaskType
    status: TaskStatus
    priority: TaskPriority
    parameters: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    progress_percentage: int = 0
    progress_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    created_by: str = "system"
    executor_id: str | None = None
    video_id: str | None = None
    subtitle_id: str | None = None
    actual_duration_ms: int | None = None
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_heartbeat: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, task: Task) -> "TaskSnapshot":
        return cls(
            id=task.id,
            type=TaskType(task.task_type),
            status=TaskStatus(task.status),
            priority=TaskPriority(task.priority),
            parameters=dict(task.parameters or {}),
            result=task.result,
            error_message=task.error_message,
            progress_percentage=task.progress_percentage or 0,
            progress_message=task.progress_message,
            retry_count=task.retry_count or 0,
            max_retries=task.max_retries,
            created_by=task.created_by,
            executor_id=task.executor_id,
            video_id=task.video_id,
            subtitle_id=task.subtitle_id,
            actual_duration_ms=task.actual_duration_ms,
            scheduled_at=task.scheduled_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            last_heartbeat=task.last_heartbeat,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempt(self) -> int:
        return self.retry_count + 1

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "priority": self.priority.value,
            "parameters": self.parameters,
            "result": self.result,
            "error_message": self.error_message,
            "progress_percentage": self.progress_percentage,
            "progress_message": self.progress_message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_by": self.created_by,
            "executor_id": self.executor_id,
            "video_id": self.video_id,
            "subtitle_id": self.subtitle_id,
            "actual_duration_ms": self.actual_duration_ms,
            "scheduled_at": isoformat(self.scheduled_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "last_heartbeat": isoformat(self.last_heartbeat),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class TaskStore:
    """CRUD and indexed queries over task rows."""

    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(
        self,
        task_type: TaskType,
        parameters: dict[str, Any],
        priority: TaskPriority = TaskPriority.MEDIUM,
        status: TaskStatus = TaskStatus.PENDING,
        created_by: str = "system",
        video_id: str | None = None,
        subtitle_id: str | None = None,
        scheduled_at: datetime | None = None,
        max_retries: int = 3,
    ) -> TaskSnapshot:
        """
        Insert a new task.

        Args:
            task_type: Operation kind.
            parameters: Validated parameter payload.
            priority: Dispatch priority.
            status: PENDING or SCHEDULED.
            created_by: Free text owner, "system" for internal triggers.
            video_id: Optional associated video.
            subtitle_id: Optional associated subtitle.
            scheduled_at: Earliest start time for SCHEDULED tasks.
            max_retries: Manual retry limit.

        Returns:
            Snapshot of the created task.
        """
        if status not in (TaskStatus.PENDING, TaskStatus.SCHEDULED):
            raise InvalidStateError(
                f"Tasks cannot be created as {status.value}", status.value
            )

        now = self.now()
        with self._session_factory() as db:
            task = Task(
                task_type=task_type.value,
                status=status.value,
                priority=priority.value,
                parameters=parameters,
                created_by=created_by,
                video_id=video_id,
                subtitle_id=subtitle_id,
                scheduled_at=scheduled_at,
                max_retries=max_retries,
                created_at=now,
                updated_at=now,
            )
            db.add(task)
            db.commit()
            return TaskSnapshot.from_model(task)

    def get(self, task_id: str) -> TaskSnapshot | None:
        with self._session_factory() as db:
            task = db.get(Task, task_id)
            return TaskSnapshot.from_model(task) if task else None

    def require(self, task_id: str) -> TaskSnapshot:
        """Get a task or raise NotFoundError."""
        snapshot = self.get(task_id)
        if snapshot is None:
            raise NotFoundError("Task", task_id)
        return snapshot

    def list_tasks(
        self,
        status: TaskStatus | None = None,
        task_type: TaskType | None = None,
        video_id: str | None = None,
        subtitle_id: str | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[TaskSnapshot]:
        """Filtered tasks, newest first."""
        with self._session_factory() as db:
            query = db.query(Task)
            if status:
                query = query.filter(Task.status == status.value)
            if task_type:
                query = query.filter(Task.task_type == task_type.value)
            if video_id:
                query = query.filter(Task.video_id == video_id)
            if subtitle_id:
                query = query.filter(Task.subtitle_id == subtitle_id)

            query = query.order_by(Task.created_at.desc(), Task.id.desc())
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [TaskSnapshot.from_model(task) for task in query.all()]

    def find_by_resource(
        self, video_id: str | None = None, subtitle_id: str | None = None
    ) -> list[TaskSnapshot]:
        """Tasks associated with a video or subtitle, newest first."""
        if not video_id and not subtitle_id:
            return []
        return self.list_tasks(video_id=video_id, subtitle_id=subtitle_id, limit=None)

    def find_by_creator(self, created_by: str) -> list[TaskSnapshot]:
        with self._session_factory() as db:
            tasks = (
                db.query(Task)
                .filter(Task.created_by == created_by)
                .order_by(Task.created_at.desc())
                .all()
            )
            return [TaskSnapshot.from_model(task) for task in tasks]

    def find_pending_for_dispatch(
        self, limit: int, exclude: Iterable[str] = ()
    ) -> list[TaskSnapshot]:
        """PENDING tasks by priority (highest first), then oldest first."""
        if limit <= 0:
            return []
        with self._session_factory() as db:
            query = db.query(Task).filter(Task.status == TaskStatus.PENDING.value)
            excluded = list(exclude)
            if excluded:
                query = query.filter(Task.id.notin_(excluded))
            tasks = (
                query.order_by(_PRIORITY_ORDER.desc(), Task.created_at.asc())
                .limit(limit)
                .all()
            )
            return [TaskSnapshot.from_model(task) for task in tasks]

    def find_due_scheduled(
        self, now: datetime, limit: int, exclude: Iterable[str] = ()
    ) -> list[TaskSnapshot]:
        """SCHEDULED tasks whose start time has been reached, earliest first."""
        if limit <= 0:
            return []
        with self._session_factory() as db:
            query = db.query(Task).filter(
                Task.status == TaskStatus.SCHEDULED.value,
                or_(Task.scheduled_at.is_(None), Task.scheduled_at <= now),
            )
            excluded = list(exclude)
            if excluded:
                query = query.filter(Task.id.notin_(excluded))
            tasks = (
                query.order_by(Task.scheduled_at.asc(), _PRIORITY_ORDER.desc())
                .limit(limit)
                .all()
            )
            return [TaskSnapshot.from_model(task) for task in tasks]

    def find_stuck(self, cutoff: datetime) -> list[TaskSnapshot]:
        """RUNNING tasks whose heartbeat is missing or older than cutoff."""
        with self._session_factory() as db:
            tasks = (
                db.query(Task)
                .filter(
                    Task.status == TaskStatus.RUNNING.value,
                    or_(Task.last_heartbeat.is_(None), Task.last_heartbeat < cutoff),
                )
                .order_by(Task.created_at.desc())
                .all()
            )
            return [TaskSnapshot.from_model(task) for task in tasks]

    def find_terminal_older_than(
        self,
        cutoff: datetime,
        statuses: Iterable[TaskStatus] = TERMINAL_STATUSES,
    ) -> list[TaskSnapshot]:
        with self._session_factory() as db:
            tasks = (
                db.query(Task)
                .filter(
                    Task.status.in_([s.value for s in statuses]),
                    Task.completed_at < cutoff,
                )
                .order_by(Task.created_at.desc())
                .all()
            )
            return [TaskSnapshot.from_model(task) for task in tasks]

    def delete_terminal_older_than(
        self,
        cutoff: datetime,
        statuses: Iterable[TaskStatus] = TERMINAL_STATUSES,
    ) -> int:
        """
        Delete terminal tasks completed before cutoff, with their logs.

        Returns:
            Number of tasks deleted.
        """
        status_values = [s.value for s in statuses]
        with self._session_factory() as db:
            task_ids = [
                row[0]
                for row in db.query(Task.id)
                .filter(Task.status.in_(status_values), Task.completed_at < cutoff)
                .all()
            ]
            if not task_ids:
                return 0

            db.query(TaskLog).filter(TaskLog.task_id.in_(task_ids)).delete(
                synchronize_session=False
            )
            deleted = (
                db.query(Task)
                .filter(Task.id.in_(task_ids), Task.status.in_(status_values))
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted

    def count_by_status(self) -> dict[TaskStatus, int]:
        counts = {status: 0 for status in TaskStatus}
        with self._session_factory() as db:
            rows = db.query(Task.status, func.count(Task.id)).group_by(Task.status)
            for status, count in rows.all():
                counts[TaskStatus(status)] = count
        return counts

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        task_id: str,
        allowed_from: Iterable[TaskStatus],
        to: TaskStatus,
        **changes: Any,
    ) -> TaskSnapshot:
        """
        Move a task to a new status if it is currently in an allowed one.

        Args:
            task_id: The task to update.
            allowed_from: Statuses the task may currently be in.
            to: Target status.
            **changes: Extra column values to write alongside the status.

        Returns:
            Snapshot after the update.

        Raises:
            NotFoundError: If no task has this id.
            InvalidStateError: If the task is in a status not in allowed_from.
        """
        allowed = [s.value for s in allowed_from]
        values = {"status": to.value, "updated_at": self.now(), **changes}

        with self._session_factory() as db:
            updated = (
                db.query(Task)
                .filter(Task.id == task_id, Task.status.in_(allowed))
                .update(values, synchronize_session=False)
            )
            db.commit()

            task = db.get(Task, task_id)
            if task is None:
                raise NotFoundError("Task", task_id)
            if not updated:
                raise InvalidStateError(
                    f"Task {task_id} is {task.status}, expected one of: "
                    f"{', '.join(allowed)}",
                    task.status,
                )
            return TaskSnapshot.from_model(task)

    def mark_running(self, task_id: str, executor_id: str | None) -> TaskSnapshot:
        now = self.now()
        return self.transition(
            task_id,
            (TaskStatus.PENDING, TaskStatus.SCHEDULED),
            TaskStatus.RUNNING,
            started_at=now,
            last_heartbeat=now,
            executor_id=executor_id,
            progress_percentage=0,
            progress_message=None,
            error_message=None,
            result=None,
            completed_at=None,
            actual_duration_ms=None,
        )

    def mark_completed(
        self, task_id: str, result: dict | None, duration_ms: int | None
    ) -> TaskSnapshot:
        return self.transition(
            task_id,
            (TaskStatus.RUNNING,),
            TaskStatus.COMPLETED,
            result=result,
            progress_percentage=100,
            completed_at=self.now(),
            actual_duration_ms=duration_ms,
        )

    def mark_failed(
        self, task_id: str, error_message: str, duration_ms: int | None
    ) -> TaskSnapshot:
        return self.transition(
            task_id,
            (TaskStatus.RUNNING,),
            TaskStatus.FAILED,
            error_message=error_message,
            completed_at=self.now(),
            actual_duration_ms=duration_ms,
        )

    def mark_cancelled(
        self,
        task_id: str,
        allowed_from: Iterable[TaskStatus],
        message: str = "Cancelled",
        duration_ms: int | None = None,
    ) -> TaskSnapshot:
        return self.transition(
            task_id,
            allowed_from,
            TaskStatus.CANCELLED,
            progress_message=message,
            completed_at=self.now(),
            actual_duration_ms=duration_ms,
        )

    def reset_for_retry(self, task_id: str) -> TaskSnapshot:
        """FAILED -> PENDING, incrementing retry_count and clearing the outcome."""
        current = self.require(task_id)
        return self.transition(
            task_id,
            (TaskStatus.FAILED,),
            TaskStatus.PENDING,
            retry_count=current.retry_count + 1,
            error_message=None,
            result=None,
            completed_at=None,
            started_at=None,
            last_heartbeat=None,
            executor_id=None,
            progress_percentage=0,
            progress_message=None,
            actual_duration_ms=None,
        )

    def reset_stuck(self, task_id: str, cutoff: datetime) -> TaskSnapshot | None:
        """
        Return a stale RUNNING task to PENDING with a fresh heartbeat.

        The heartbeat condition is re-checked in the same statement so a task
        that heartbeated after it was selected is left alone.

        Returns:
            Snapshot after the reset, or None if the task no longer qualifies.
        """
        now = self.now()
        with self._session_factory() as db:
            updated = (
                db.query(Task)
                .filter(
                    Task.id == task_id,
                    Task.status == TaskStatus.RUNNING.value,
                    or_(Task.last_heartbeat.is_(None), Task.last_heartbeat < cutoff),
                )
                .update(
                    {
                        "status": TaskStatus.PENDING.value,
                        "last_heartbeat": now,
                        "executor_id": None,
                        "updated_at": now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if not updated:
                return None
            task = db.get(Task, task_id)
            return TaskSnapshot.from_model(task) if task else None

    # ------------------------------------------------------------------
    # Updates while RUNNING
    # ------------------------------------------------------------------

    def update_heartbeat(self, task_id: str) -> bool:
        """
        Refresh last_heartbeat on a RUNNING task.

        The write is skipped when the stored heartbeat is newer than the
        clock, which keeps the value non-decreasing.

        Returns:
            True if a row was updated.
        """
        now = self.now()
        with self._session_factory() as db:
            updated = (
                db.query(Task)
                .filter(
                    Task.id == task_id,
                    Task.status == TaskStatus.RUNNING.value,
                    or_(Task.last_heartbeat.is_(None), Task.last_heartbeat <= now),
                )
                .update(
                    {"last_heartbeat": now, "updated_at": now},
                    synchronize_session=False,
                )
            )
            db.commit()
            return bool(updated)

    def update_progress(
        self, task_id: str, percentage: int, message: str | None
    ) -> TaskSnapshot | None:
        """
        Persist progress on a RUNNING task and refresh its heartbeat.

        A stored heartbeat newer than the store clock is left unchanged.

        Returns:
            Snapshot after the update, or None if the task is not RUNNING.
        """
        now = self.now()
        with self._session_factory() as db:
            updated = (
                db.query(Task)
                .filter(Task.id == task_id, Task.status == TaskStatus.RUNNING.value)
                .update(
                    {
                        "progress_percentage": percentage,
                        "progress_message": message,
                        "last_heartbeat": case(
                            (Task.last_heartbeat > now, Task.last_heartbeat),
                            else_=now,
                        ),
                        "updated_at": now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if not updated:
                return None
            task = db.get(Task, task_id)
            return TaskSnapshot.from_model(task) if task else None

    # ------------------------------------------------------------------
    # Attempt logs
    # ------------------------------------------------------------------

    def add_log(
        self,
        task_id: str,
        message: str,
        level: TaskLogLevel = TaskLogLevel.INFO,
        attempt: int | None = None,
    ) -> None:
        """Append a log line; failures are logged and ignored."""
        try:
            with self._session_factory() as db:
                if attempt is None:
                    task = db.get(Task, task_id)
                    if task is None:
                        return
                    attempt = task.attempt
                db.add(
                    TaskLog(
                        task_id=task_id,
                        attempt=attempt,
                        level=level.value,
                        message=message,
                        created_at=self.now(),
                    )
                )
                db.commit()
        except Exception:
            logger.exception("Failed to write log entry for task %s", task_id)

    def get_logs(self, task_id: str) -> list[dict]:
        with self._session_factory() as db:
            if db.get(Task, task_id) is None:
                raise NotFoundError("Task", task_id)
            logs = (
                db.query(TaskLog)
                .filter(TaskLog.task_id == task_id)
                .order_by(TaskLog.created_at.asc(), TaskLog.id.asc())
                .all()
            )
            return [log.to_dict() for log in logs]
