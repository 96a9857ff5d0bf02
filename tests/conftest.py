"""Pytest fixtures."""

import threading
from concurrent.futures import Future
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from subkeeper.broadcaster import TaskUpdateBroadcaster
from subkeeper.core.config import AppConfig
from subkeeper.executor import TaskExecutor
from subkeeper.extensions import make_engine
from subkeeper.models import Base
from subkeeper.models.task import TaskType
from subkeeper.scheduler import TaskScheduler
from subkeeper.services.task_service import TaskService
from subkeeper.services.task_store import TaskStore
from subkeeper.services.tool_runner import ToolResult


class ManualClock:
    """Wall clock for the store that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class InlineDispatcher:
    """
    Stand-in for the worker pool.

    With ``run_immediately`` submitted work runs synchronously inside
    ``submit``; otherwise it is held until ``run_pending`` is called.
    """

    def __init__(self, run_immediately: bool = True):
        self.run_immediately = run_immediately
        self.submitted: list[tuple] = []
        self.pending: list[tuple] = []
        self.shutdown_calls: list[dict] = []
        self.reject = False

    def submit(self, fn, *args, **kwargs):
        if self.reject:
            raise RuntimeError("cannot schedule new futures after shutdown")
        future = Future()
        self.submitted.append((fn, args, kwargs))
        if self.run_immediately:
            self._run(future, fn, args, kwargs)
        else:
            self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self) -> int:
        pending, self.pending = self.pending, []
        for future, fn, args, kwargs in pending:
            self._run(future, fn, args, kwargs)
        return len(pending)

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        self.shutdown_calls.append({"wait": wait, "cancel_futures": cancel_futures})

    @staticmethod
    def _run(future, fn, args, kwargs) -> None:
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)


class RecordingBroadcaster(TaskUpdateBroadcaster):
    """Broadcaster that also keeps every published snapshot."""

    def __init__(self, queue_size: int = 100):
        super().__init__(queue_size)
        self.published = []
        self._record_lock = threading.Lock()

    def publish(self, snapshot) -> None:
        with self._record_lock:
            self.published.append(snapshot)
        super().publish(snapshot)

    def statuses_for(self, task_id: str) -> list[str]:
        return [s.status.value for s in self.published if s.id == task_id]


class FakeToolRunner:
    """Tool runner returning canned results per executable."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.results: dict[str, ToolResult] = {}
        self.side_effects: dict[str, object] = {}

    def set_result(self, tool: str, exit_code: int = 0, stdout="", stderr="") -> None:
        self.results[tool] = ToolResult((tool,), exit_code, stdout, stderr)

    def run(self, args, timeout=None, on_start=None, cwd=None) -> ToolResult:
        args = [str(arg) for arg in args]
        self.calls.append(args)
        tool = args[0]

        effect = self.side_effects.get(tool)
        if isinstance(effect, Exception):
            raise effect
        if callable(effect):
            return effect(args)

        result = self.results.get(tool, ToolResult((tool,), 0, "", ""))
        return ToolResult(tuple(args), result.exit_code, result.stdout, result.stderr)

    def calls_for(self, tool: str) -> list[list[str]]:
        return [call for call in self.calls if call[0] == tool]


@pytest.fixture
def engine(tmp_path_factory):
    """File-backed SQLite engine with the schema created."""
    db_path = tmp_path_factory.mktemp("db") / "subkeeper.db"
    db_engine = make_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(session_factory):
    """Task store using the real clock."""
    return TaskStore(session_factory)


@pytest.fixture
def clocked_store(session_factory, clock):
    """Task store whose notion of now is controlled by the clock fixture."""
    return TaskStore(session_factory, clock=clock)


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        max_task_workers=2,
        dispatch_poll_interval=0.05,
        heartbeat_interval_seconds=60,
        progress_broadcast_interval=0,
        backup_dir=str(tmp_path / "backups"),
        export_dir=str(tmp_path / "exports"),
        temp_dirs=[str(tmp_path / "tmp")],
    )


@pytest.fixture
def broadcaster():
    recording = RecordingBroadcaster()
    recording.start()
    yield recording
    recording.stop()


@pytest.fixture
def tool_runner():
    return FakeToolRunner()


@pytest.fixture
def executor(store, broadcaster, config, tool_runner):
    return TaskExecutor(store, broadcaster, config, tool_runner=tool_runner)


@pytest.fixture
def dispatcher():
    return InlineDispatcher()


@pytest.fixture
def held_dispatcher():
    """Dispatcher that queues work until run_pending is called."""
    return InlineDispatcher(run_immediately=False)


@pytest.fixture
def scheduler(store, executor, broadcaster, config, dispatcher):
    return TaskScheduler(store, executor, broadcaster, config, dispatcher=dispatcher)


@pytest.fixture
def service(store, scheduler, broadcaster):
    return TaskService(store, scheduler, broadcaster)


@pytest.fixture
def sample_task(store):
    """A PENDING scan task that has not been handed to a scheduler."""
    return store.create(TaskType.SCAN_LIBRARY, {"paths": ["/media"]})


@pytest.fixture
def app(tmp_path):
    """Application in testing mode backed by a temporary SQLite file."""
    from subkeeper import create_app

    test_config = {
        "TESTING": True,
        "DATABASE_URL": f"sqlite:///{tmp_path / 'app.db'}",
        "BACKUP_DIR": str(tmp_path / "backups"),
        "EXPORT_DIR": str(tmp_path / "exports"),
    }
    return create_app(test_config)


@pytest.fixture
def client(app):
    """Test client with the application lifespan running."""
    from fastapi.testclient import TestClient

    with TestClient(app) as test_client:
        yield test_client
