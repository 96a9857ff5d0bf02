"""
Task service: the entry point for creating, querying and controlling tasks.

Composes the store, scheduler and broadcaster. Request handlers and
periodic jobs go through this class rather than touching the scheduler or
store directly.
"""

from datetime import UTC, datetime
from typing import Any

from subkeeper.broadcaster import TaskPredicate, TaskUpdateBroadcaster
from subkeeper.core.exceptions import InvalidStateError, ValidationError
from subkeeper.core.logging import get_logger
from subkeeper.core.validators import parse_enum
from subkeeper.models.settings import SETTING_TASK_RETENTION_DAYS, Settings
from subkeeper.models.task import TaskLogLevel, TaskPriority, TaskStatus, TaskType
from subkeeper.scheduler import CancelOutcome, TaskScheduler
from subkeeper.schemas.parameters import parse_parameters
from subkeeper.services.task_store import TaskSnapshot, TaskStore

logger = get_logger("task_service")

DEFAULT_CLEANUP_DAYS = 7


def build_task_filter(
    status: TaskStatus | None = None,
    task_type: TaskType | None = None,
    video_id: str | None = None,
    subtitle_id: str | None = None,
) -> TaskPredicate | None:
    """Predicate matching snapshots against optional field filters."""
    if not any((status, task_type, video_id, subtitle_id)):
        return None

    def matches(task: TaskSnapshot) -> bool:
        return (
            (status is None or task.status == status)
            and (task_type is None or task.type == task_type)
            and (video_id is None or task.video_id == video_id)
            and (subtitle_id is None or task.subtitle_id == subtitle_id)
        )

    return matches


def _to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class TaskService:
    """Facade over the task store, scheduler and broadcaster."""

    def __init__(
        self,
        store: TaskStore,
        scheduler: TaskScheduler,
        broadcaster: TaskUpdateBroadcaster,
        default_retention_days: int = 1,
    ):
        self.store = store
        self.scheduler = scheduler
        self.broadcaster = broadcaster
        self.default_retention_days = default_retention_days

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_task(
        self,
        task_type: TaskType | str,
        parameters: dict[str, Any] | None = None,
        priority: TaskPriority | str | None = None,
        video_id: str | None = None,
        subtitle_id: str | None = None,
        scheduled_at: datetime | None = None,
        created_by: str | None = None,
        max_retries: int | None = None,
    ) -> TaskSnapshot:
        """
        Validate, persist and schedule a new task.

        A task with a future scheduled_at is stored as SCHEDULED and picked
        up by the dispatch poll once due; otherwise it is stored as PENDING
        and handed to the scheduler straight away.

        Raises:
            ValidationError: Unknown type/priority or invalid parameters.
        """
        task_type = self._parse_type(task_type)
        priority = (
            parse_enum(TaskPriority, priority, "priority")
            if isinstance(priority, str)
            else priority
        ) or TaskPriority.MEDIUM
        params = parse_parameters(task_type, parameters)

        scheduled_at = _to_naive_utc(scheduled_at)
        status = (
            TaskStatus.SCHEDULED
            if scheduled_at is not None and scheduled_at > self.store.now()
            else TaskStatus.PENDING
        )

        task = self.store.create(
            task_type,
            params.to_payload(),
            priority=priority,
            status=status,
            created_by=created_by or "system",
            video_id=video_id,
            subtitle_id=subtitle_id,
            scheduled_at=scheduled_at,
            max_retries=3 if max_retries is None else max_retries,
        )
        logger.info(
            "Created task %s (%s, %s, %s)",
            task.id,
            task.type.value,
            task.priority.value,
            task.status.value,
        )
        self.broadcaster.publish(task)

        if status == TaskStatus.PENDING and not self.scheduler.schedule(task):
            logger.warning(
                "Task %s could not be enqueued, leaving it for the dispatch poll",
                task.id,
            )
        return task

    def create_scan_task(
        self,
        paths: list[str],
        recursive: bool = True,
        update_existing: bool = True,
        created_by: str | None = None,
    ) -> TaskSnapshot:
        return self.create_task(
            TaskType.SCAN_LIBRARY,
            {
                "paths": paths,
                "recursive": recursive,
                "update_existing": update_existing,
            },
            priority=TaskPriority.HIGH,
            created_by=created_by,
        )

    def create_sync_task(
        self,
        video_id: str,
        video_path: str,
        subtitle_paths: list[str] | None = None,
        created_by: str | None = None,
    ) -> TaskSnapshot:
        return self.create_task(
            TaskType.SYNC_SUBTITLES,
            {"video_path": video_path, "subtitle_paths": subtitle_paths or []},
            priority=TaskPriority.MEDIUM,
            video_id=video_id,
            created_by=created_by,
        )

    def create_translate_task(
        self,
        subtitle_id: str,
        subtitle_path: str,
        target_language: str = "el",
        provider: str = "openai",
        created_by: str | None = None,
    ) -> TaskSnapshot:
        return self.create_task(
            TaskType.TRANSLATE_SUBTITLES,
            {
                "subtitle_path": subtitle_path,
                "target_language": target_language,
                "provider": provider,
            },
            priority=TaskPriority.MEDIUM,
            subtitle_id=subtitle_id,
            created_by=created_by,
        )

    def create_batch_task(
        self,
        operation: str,
        file_paths: list[str],
        batch_size: int = 10,
        target_language: str = "el",
        created_by: str | None = None,
    ) -> TaskSnapshot:
        return self.create_task(
            TaskType.BATCH_PROCESS,
            {
                "operation": operation,
                "file_paths": file_paths,
                "batch_size": batch_size,
                "target_language": target_language,
            },
            priority=TaskPriority.LOW,
            created_by=created_by,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskSnapshot:
        return self.store.require(task_id)

    def list_tasks(
        self,
        status: TaskStatus | str | None = None,
        task_type: TaskType | str | None = None,
        video_id: str | None = None,
        subtitle_id: str | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[TaskSnapshot]:
        return self.store.list_tasks(
            status=self._parse_status(status),
            task_type=self._parse_type(task_type) if task_type else None,
            video_id=video_id,
            subtitle_id=subtitle_id,
            limit=limit,
            offset=offset,
        )

    def tasks_for_video(self, video_id: str) -> list[TaskSnapshot]:
        return self.store.find_by_resource(video_id=video_id)

    def tasks_for_subtitle(self, subtitle_id: str) -> list[TaskSnapshot]:
        return self.store.find_by_resource(subtitle_id=subtitle_id)

    def get_task_logs(self, task_id: str) -> list[dict]:
        return self.store.get_logs(task_id)

    def statistics(self) -> dict:
        """Counts per status plus scheduler capacity and subscriber count."""
        counts = self.store.count_by_status()
        scheduler_stats = self.scheduler.get_stats()
        stats: dict[str, Any] = {
            status.value: count for status, count in counts.items()
        }
        stats["by_status"] = {status.value: count for status, count in counts.items()}
        stats["active_executions"] = scheduler_stats["active_executions"]
        stats["max_workers"] = scheduler_stats["max_workers"]
        stats["subscribers"] = self.broadcaster.subscriber_count
        return stats

    def stream_updates(self, predicate: TaskPredicate | None = None):
        """
        Subscribe to task updates.

        Returns the broadcaster's async context manager, e.g.
        ``async with service.stream_updates(pred) as subscription: ...``
        """
        return self.broadcaster.subscribe(predicate)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel_task(self, task_id: str) -> CancelOutcome:
        return self.scheduler.cancel(task_id)

    def retry_task(self, task_id: str) -> TaskSnapshot:
        """
        Put a FAILED task back to PENDING and schedule it.

        Raises:
            NotFoundError: Unknown task id.
            InvalidStateError: Not FAILED, or retry limit reached.
        """
        task = self.store.require(task_id)
        if task.status != TaskStatus.FAILED:
            raise InvalidStateError(
                f"Task {task_id} is not in FAILED state", task.status.value
            )
        if task.retry_count >= task.max_retries:
            raise InvalidStateError(
                f"Task {task_id} has reached its retry limit ({task.max_retries})",
                task.status.value,
            )

        snapshot = self.store.reset_for_retry(task_id)
        self.store.add_log(
            task_id,
            f"Retry requested (retry {snapshot.retry_count}/{snapshot.max_retries})",
            TaskLogLevel.INFO,
            snapshot.attempt,
        )
        logger.info("Retrying task %s (retry %d)", task_id, snapshot.retry_count)
        self.broadcaster.publish(snapshot)
        self.scheduler.schedule(snapshot)
        return snapshot

    def pause_task(self, task_id: str) -> TaskSnapshot:
        snapshot = self.store.transition(
            task_id, (TaskStatus.PENDING,), TaskStatus.PAUSED
        )
        self.store.add_log(task_id, "Paused", TaskLogLevel.INFO, snapshot.attempt)
        logger.info("Paused task %s", task_id)
        self.broadcaster.publish(snapshot)
        return snapshot

    def resume_task(self, task_id: str) -> TaskSnapshot:
        snapshot = self.store.transition(
            task_id, (TaskStatus.PAUSED,), TaskStatus.PENDING
        )
        self.store.add_log(task_id, "Resumed", TaskLogLevel.INFO, snapshot.attempt)
        logger.info("Resumed task %s", task_id)
        self.broadcaster.publish(snapshot)
        self.scheduler.schedule(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup_old_tasks(self, older_than_days: int = DEFAULT_CLEANUP_DAYS) -> int:
        """Delete completed and failed tasks older than the given age on demand."""
        if older_than_days < 1:
            raise ValidationError("older_than_days must be at least 1")
        return self.scheduler.prune_old_tasks(older_than_days)

    def retention_days(self) -> int:
        with self.store.session_factory() as db:
            return Settings.get_int(
                db, SETTING_TASK_RETENTION_DAYS, self.default_retention_days
            )

    def run_retention_sweep(self) -> dict:
        """
        Periodic retention job.

        Returns:
            Dictionary with deleted count and the retention window used.
        """
        retention_days = self.retention_days()
        if retention_days <= 0:
            logger.info(
                "Task retention disabled (set to %d days), skipping prune",
                retention_days,
            )
            return {"deleted_tasks": 0, "retention_days": retention_days}

        deleted = self.scheduler.prune_old_tasks(retention_days)
        return {"deleted_tasks": deleted, "retention_days": retention_days}

    def run_stuck_sweep(self) -> list[str]:
        """Periodic stuck task job."""
        return self.scheduler.recover_stuck_tasks()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_type(value: TaskType | str | None) -> TaskType:
        if isinstance(value, TaskType):
            return value
        task_type = parse_enum(TaskType, value, "task type")
        if task_type is None:
            raise ValidationError("Task type is required")
        return task_type

    @staticmethod
    def _parse_status(value: TaskStatus | str | None) -> TaskStatus | None:
        if value is None or isinstance(value, TaskStatus):
            return value
        return parse_enum(TaskStatus, value, "status")
