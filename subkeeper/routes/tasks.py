"""Task routes."""

from fastapi import APIRouter, Depends, Query, Request, status
from starlette.concurrency import run_in_threadpool

from subkeeper.core.logging import get_logger
from subkeeper.core.validators import parse_enum
from subkeeper.models.task import TaskStatus, TaskType
from subkeeper.schemas.tasks import (
    BatchRequest,
    CancelResponse,
    CleanupResponse,
    CreateTaskRequest,
    ScanRequest,
    SyncRequest,
    TaskLogResponse,
    TaskQuery,
    TaskResponse,
    TaskStatisticsResponse,
    TranslateRequest,
)
from subkeeper.services.task_service import (
    DEFAULT_CLEANUP_DAYS,
    TaskService,
    build_task_filter,
)
from subkeeper.sse_stream import sse_response, wants_sse

logger = get_logger("routes.tasks")
router = APIRouter(prefix="/api/tasks", tags=["Tasks"])


def get_task_service(request: Request) -> TaskService:
    """FastAPI dependency returning the application's task service."""
    return request.app.state.task_service


def _parse_filters(query: TaskQuery) -> dict:
    return {
        "status": parse_enum(TaskStatus, query.status, "status"),
        "task_type": parse_enum(TaskType, query.type, "task type"),
        "video_id": query.video_id,
        "subtitle_id": query.subtitle_id,
    }


@router.get("/", response_model=list[TaskResponse])
async def list_tasks(
    request: Request,
    query: TaskQuery = Depends(),
    service: TaskService = Depends(get_task_service),
):
    """List tasks, newest first. Supports SSE streaming of matching updates."""
    filters = _parse_filters(query)

    def fetch():
        tasks = service.list_tasks(limit=query.limit, offset=query.offset, **filters)
        return [task.to_dict() for task in tasks]

    if wants_sse(request):
        return sse_response(
            request,
            service.broadcaster,
            build_task_filter(**filters),
            fetch_initial=fetch,
        )

    return await run_in_threadpool(fetch)


@router.get("/stream")
async def stream_tasks(
    request: Request,
    query: TaskQuery = Depends(),
    service: TaskService = Depends(get_task_service),
):
    """SSE stream of task updates matching the optional filters."""
    filters = _parse_filters(query)
    return sse_response(request, service.broadcaster, build_task_filter(**filters))


@router.get("/statistics", response_model=TaskStatisticsResponse)
def task_statistics(service: TaskService = Depends(get_task_service)):
    """Get task counts per status and scheduler capacity."""
    return service.statistics()


@router.get("/video/{video_id}", response_model=list[TaskResponse])
def get_video_tasks(video_id: str, service: TaskService = Depends(get_task_service)):
    """Get all tasks associated with a video."""
    return [task.to_dict() for task in service.tasks_for_video(video_id)]


@router.delete("/cleanup", response_model=CleanupResponse)
def cleanup_tasks(
    days: int = Query(DEFAULT_CLEANUP_DAYS),
    service: TaskService = Depends(get_task_service),
):
    """Delete finished tasks older than the given number of days."""
    deleted = service.cleanup_old_tasks(days)
    logger.info("Cleanup removed %d tasks older than %d days", deleted, days)
    return {"deleted": deleted, "older_than_days": days}


@router.post("/", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(
    body: CreateTaskRequest, service: TaskService = Depends(get_task_service)
):
    """Create a task of any type."""
    task = service.create_task(
        body.type,
        body.parameters,
        priority=body.priority,
        video_id=body.video_id,
        subtitle_id=body.subtitle_id,
        scheduled_at=body.scheduled_at,
        created_by=body.created_by,
        max_retries=body.max_retries,
    )
    return task.to_dict()


@router.post(
    "/scan", response_model=TaskResponse, status_code=status.HTTP_202_ACCEPTED
)
def trigger_scan(body: ScanRequest, service: TaskService = Depends(get_task_service)):
    """Trigger a library scan."""
    task = service.create_scan_task(
        body.paths, recursive=body.recursive, update_existing=body.update_existing
    )
    logger.info("Triggered library scan of %d path(s)", len(body.paths))
    return task.to_dict()


@router.post(
    "/sync/{video_id}",
    response_model=TaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_sync(
    video_id: str,
    body: SyncRequest,
    service: TaskService = Depends(get_task_service),
):
    """Trigger subtitle synchronisation for a video."""
    task = service.create_sync_task(video_id, body.video_path, body.subtitle_paths)
    logger.info("Triggered subtitle sync for video %s", video_id)
    return task.to_dict()


@router.post(
    "/translate/{subtitle_id}",
    response_model=TaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_translate(
    subtitle_id: str,
    body: TranslateRequest,
    service: TaskService = Depends(get_task_service),
):
    """Trigger translation of a subtitle file."""
    task = service.create_translate_task(
        subtitle_id,
        body.subtitle_path,
        target_language=body.target_language,
        provider=body.provider,
    )
    logger.info(
        "Triggered translation of subtitle %s to %s",
        subtitle_id,
        body.target_language,
    )
    return task.to_dict()


@router.post(
    "/batch", response_model=TaskResponse, status_code=status.HTTP_202_ACCEPTED
)
def trigger_batch(body: BatchRequest, service: TaskService = Depends(get_task_service)):
    """Trigger a batch operation over many files."""
    task = service.create_batch_task(
        body.operation,
        body.file_paths,
        batch_size=body.batch_size,
        target_language=body.target_language,
    )
    logger.info(
        "Triggered batch %s over %d files", body.operation, len(body.file_paths)
    )
    return task.to_dict()


@router.get("/{task_id}", response_model=TaskResponse)
def get_task(task_id: str, service: TaskService = Depends(get_task_service)):
    """Get a task by ID."""
    return service.get_task(task_id).to_dict()


@router.get("/{task_id}/logs", response_model=list[TaskLogResponse])
def get_task_logs(task_id: str, service: TaskService = Depends(get_task_service)):
    """Get logs for a specific task, oldest first."""
    return service.get_task_logs(task_id)


@router.post("/{task_id}/cancel", response_model=CancelResponse)
def cancel_task(task_id: str, service: TaskService = Depends(get_task_service)):
    """Cancel a pending, scheduled, paused or running task."""
    outcome = service.cancel_task(task_id)
    return {
        "success": True,
        "interrupted": outcome.interrupted,
        "task": outcome.task.to_dict(),
    }


@router.post("/{task_id}/retry", response_model=TaskResponse)
def retry_task(task_id: str, service: TaskService = Depends(get_task_service)):
    """Retry a failed task."""
    return service.retry_task(task_id).to_dict()


@router.post("/{task_id}/pause", response_model=TaskResponse)
def pause_task(task_id: str, service: TaskService = Depends(get_task_service)):
    """Pause a pending task."""
    return service.pause_task(task_id).to_dict()


@router.post("/{task_id}/resume", response_model=TaskResponse)
def resume_task(task_id: str, service: TaskService = Depends(get_task_service)):
    """Resume a paused task."""
    return service.resume_task(task_id).to_dict()

