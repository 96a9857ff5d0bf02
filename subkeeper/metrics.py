"""
Prometheus metrics for monitoring the application.

Exposes HTTP request metrics, task counts per status, scheduler capacity
and live subscriber counts at /metrics in Prometheus format.
"""

from fastapi import FastAPI
from prometheus_client import Counter, Gauge, Histogram, Info
from prometheus_fastapi_instrumentator import Instrumentator

from subkeeper.core.helpers import _get_pyproject_attr

app_info = Info(_get_pyproject_attr("name", "subkeeper"), "Application info")

# Task state
tasks_by_status = Gauge(
    "tasks_by_status",
    "Number of tasks in the store by status",
    ["status"],
)
executions_active = Gauge(
    "task_executions_active",
    "Tasks registered with the scheduler (queued or running)",
)
workers_max = Gauge(
    "task_workers_max",
    "Maximum number of concurrent task executions",
)
update_subscribers = Gauge(
    "task_update_subscribers",
    "Live task update stream subscribers",
)

# Task outcome metrics (counters - monotonically increasing)
tasks_completed_total = Counter(
    "tasks_completed_total",
    "Total number of completed tasks",
    ["task_type"],
)
tasks_failed_total = Counter(
    "tasks_failed_total",
    "Total number of failed tasks",
    ["task_type"],
)
tasks_cancelled_total = Counter(
    "tasks_cancelled_total",
    "Total number of cancelled tasks",
    ["task_type"],
)
stuck_recoveries_total = Counter(
    "task_stuck_recoveries_total",
    "Tasks reset by the stuck task sweep",
)

# Task duration histogram
task_duration_seconds = Histogram(
    "task_duration_seconds",
    "Task execution duration in seconds",
    ["task_type"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600, 14400),
)

_OUTCOME_COUNTERS = {
    "completed": tasks_completed_total,
    "failed": tasks_failed_total,
    "cancelled": tasks_cancelled_total,
}


def record_task_outcome(task_type: str, status: str, seconds: float | None) -> None:
    """Count a terminal outcome and observe its duration."""
    counter = _OUTCOME_COUNTERS.get(status)
    if counter is not None:
        counter.labels(task_type=task_type).inc()
    if seconds is not None:
        task_duration_seconds.labels(task_type=task_type).observe(seconds)


def init_metrics(app: FastAPI) -> Instrumentator:
    """
    Initialise Prometheus metrics.

    Args:
        app: The FastAPI application instance.

    Returns:
        The configured Instrumentator instance.
    """
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
    from starlette.responses import Response

    instrumentator = Instrumentator()
    instrumentator.instrument(app)

    @app.get("/metrics", include_in_schema=True, tags=["Metrics"])
    def metrics():
        collect_task_metrics(getattr(app.state, "task_service", None))
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app_info.info(
        {
            "version": _get_pyproject_attr("version"),
            "name": _get_pyproject_attr("name"),
            "description": _get_pyproject_attr("description"),
        }
    )
    return instrumentator


def collect_task_metrics(service) -> None:
    """
    Refresh gauges from the task service.

    Called on each /metrics request to ensure fresh data.
    """
    if service is None:
        # Not wired yet (e.g. during startup)
        executions_active.set(0)
        workers_max.set(0)
        update_subscribers.set(0)
        return

    stats = service.statistics()
    for status, count in stats["by_status"].items():
        tasks_by_status.labels(status=status).set(count)
    executions_active.set(stats["active_executions"])
    workers_max.set(stats["max_workers"])
    update_subscribers.set(stats["subscribers"])
