import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from subkeeper import extensions
from subkeeper.core.config import AppConfig
from subkeeper.core.helpers import _get_pyproject_attr
from subkeeper.core.logging import get_logger, setup_logging
from subkeeper.metrics import init_metrics

logger = get_logger("app")


def create_app(config: dict | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging(level=logging.INFO)
    overrides = config or {}

    app = FastAPI(
        title=_get_pyproject_attr("name"),
        version=_get_pyproject_attr("version"),
        description=_get_pyproject_attr("description"),
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=_lifespan,
    )
    app.state.testing = bool(overrides.get("TESTING"))
    app.state.config = AppConfig.from_env().with_overrides(overrides)

    _init_database(overrides.get("DATABASE_URL"))
    _init_extensions(app)
    _register_routers(app)
    _init_task_system(app)

    logger.info("Application initialised")
    return app


@asynccontextmanager
async def _lifespan(app: FastAPI):
    service = app.state.task_service
    if not app.state.testing:
        service.scheduler.start()
        _setup_scheduler(app)

    yield

    if extensions.scheduler.running:
        extensions.scheduler.shutdown(wait=False)
    service.scheduler.stop(wait=app.state.testing)
    service.broadcaster.stop()
    logger.info("Application shut down")


def _init_database(url: str | None) -> None:
    """Create the engine and the schema."""
    from subkeeper.models import Base

    engine = extensions.init_engine(url)
    Base.metadata.create_all(engine)
    logger.info("Database ready (%s)", extensions.DB_DIALECT)


def _init_extensions(app: FastAPI) -> None:
    from subkeeper.routes.errors import register_error_handlers

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )
    register_error_handlers(app)
    init_metrics(app)


def _register_routers(app: FastAPI) -> None:
    """Register all route modules."""
    from subkeeper.routes import health, settings, tasks

    app.include_router(tasks.router)
    app.include_router(settings.router)
    app.include_router(health.router)


def _init_task_system(app: FastAPI) -> None:
    """Wire store, broadcaster, executor, scheduler and service."""
    from subkeeper.broadcaster import TaskUpdateBroadcaster
    from subkeeper.executor import TaskExecutor
    from subkeeper.scheduler import TaskScheduler
    from subkeeper.services.task_service import TaskService
    from subkeeper.services.task_store import TaskStore
    from subkeeper.tasks import register_handlers

    config = app.state.config
    store = TaskStore(extensions.SessionLocal)

    broadcaster = TaskUpdateBroadcaster(queue_size=config.broadcast_queue_size)
    broadcaster.start()

    executor = TaskExecutor(store, broadcaster, config)
    register_handlers(executor)

    scheduler = TaskScheduler(store, executor, broadcaster, config)
    app.state.task_service = TaskService(
        store,
        scheduler,
        broadcaster,
        default_retention_days=config.task_retention_days,
    )


def _setup_scheduler(app: FastAPI) -> None:
    """Set up the periodic stuck task and retention sweeps."""
    from datetime import datetime, timedelta

    config = app.state.config
    service = app.state.task_service

    extensions.scheduler.add_job(
        func=service.run_stuck_sweep,
        trigger="interval",
        seconds=config.stuck_sweep_interval_seconds,
        next_run_time=datetime.now()
        + timedelta(seconds=config.stuck_sweep_start_delay_seconds),
        id="stuck_task_sweep",
        replace_existing=True,
    )
    extensions.scheduler.add_job(
        func=service.run_retention_sweep,
        trigger="cron",
        hour=config.retention_sweep_hour,
        minute=0,
        id="task_retention_sweep",
        replace_existing=True,
    )

    if not extensions.scheduler.running:
        extensions.scheduler.start()
        logger.info("Scheduler started")
