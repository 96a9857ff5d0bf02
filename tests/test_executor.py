"""Tests for the task executor."""

import dataclasses
import threading
import time

import pytest

from subkeeper.core.exceptions import ValidationError
from subkeeper.executor import CancellationToken, CancelReason, TaskExecutor
from subkeeper.models.task import TaskStatus, TaskType

SHORT_TIMEOUT_HOURS = 0.2 / 3600


def log_messages(store, task_id):
    return [entry["message"] for entry in store.get_logs(task_id)]


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel_sets_flag_once(self):
        token = CancellationToken()

        assert token.cancel() is True
        assert token.cancel() is False
        assert token.cancelled
        assert token.reason == CancelReason.CANCELLED

    def test_timeout_reason(self):
        token = CancellationToken()
        token.cancel(CancelReason.TIMEOUT)

        assert token.timed_out

    def test_attach_after_cancel_kills_process(self):
        class FakeProcess:
            killed = False

            def poll(self):
                return None

            def kill(self):
                self.killed = True

        token = CancellationToken()
        token.cancel()
        process = FakeProcess()
        token.attach_process(process)

        assert process.killed

    def test_cancel_kills_attached_process(self):
        class FakeProcess:
            killed = False

            def poll(self):
                return None

            def kill(self):
                self.killed = True

        token = CancellationToken()
        process = FakeProcess()
        token.attach_process(process)
        token.cancel()

        assert process.killed


class TestExecuteOutcomes:
    """Terminal outcomes of one attempt."""

    def test_success_completes_task(self, executor, store, sample_task):
        """A body that returns should leave the task COMPLETED at 100%."""
        executor.register_handler(
            TaskType.SCAN_LIBRARY, lambda ctx, params: {"paths": params.paths}
        )

        snapshot = executor.execute(sample_task.id)

        assert snapshot.status == TaskStatus.COMPLETED
        assert snapshot.result == {"paths": ["/media"]}
        assert snapshot.progress_percentage == 100
        assert snapshot.completed_at is not None
        assert snapshot.actual_duration_ms is not None
        assert log_messages(store, sample_task.id) == [
            "Starting attempt 1",
            "Completed",
        ]

    def test_none_result_stored_as_empty_dict(self, executor, sample_task):
        executor.register_handler(TaskType.SCAN_LIBRARY, lambda ctx, params: None)

        snapshot = executor.execute(sample_task.id)

        assert snapshot.status == TaskStatus.COMPLETED
        assert snapshot.result == {}

    def test_exception_fails_task(self, executor, store, sample_task):
        def body(ctx, params):
            raise RuntimeError("disk on fire")

        executor.register_handler(TaskType.SCAN_LIBRARY, body)

        snapshot = executor.execute(sample_task.id)

        assert snapshot.status == TaskStatus.FAILED
        assert snapshot.error_message == "disk on fire"
        assert "Failed: disk on fire" in log_messages(store, sample_task.id)

    def test_missing_handler_fails_task(self, executor, sample_task):
        snapshot = executor.execute(sample_task.id)

        assert snapshot.status == TaskStatus.FAILED
        assert "No handler registered" in snapshot.error_message

    def test_invalid_stored_parameters_fail_task(self, executor, store):
        task = store.create(TaskType.SCAN_LIBRARY, {"paths": []})
        executor.register_handler(TaskType.SCAN_LIBRARY, lambda ctx, params: {})

        snapshot = executor.execute(task.id)

        assert snapshot.status == TaskStatus.FAILED
        assert snapshot.error_message == "Invalid parameters for scan_library"

    def test_non_serialisable_result_fails_task(self, executor, sample_task):
        executor.register_handler(
            TaskType.SCAN_LIBRARY, lambda ctx, params: {"when": object()}
        )

        snapshot = executor.execute(sample_task.id)

        assert snapshot.status == TaskStatus.FAILED
        assert "JSON serialisable" in snapshot.error_message

    def test_tool_failure_message(self, executor, tool_runner, sample_task):
        """A failing external tool should surface its exit code and stderr."""
        tool_runner.set_result("ffprobe", exit_code=1, stderr="line one\nno such file")
        executor.register_handler(
            TaskType.SCAN_LIBRARY,
            lambda ctx, params: ctx.run_tool(["ffprobe", "/missing.mkv"]) and {},
        )

        snapshot = executor.execute(sample_task.id)

        assert snapshot.status == TaskStatus.FAILED
        assert snapshot.error_message.startswith("ffprobe exited with code 1")
        assert "no such file" in snapshot.error_message

    def test_non_pending_task_is_not_started(self, executor, store, sample_task):
        store.mark_cancelled(sample_task.id, (TaskStatus.PENDING,))
        calls = []
        executor.register_handler(
            TaskType.SCAN_LIBRARY, lambda ctx, params: calls.append(1)
        )

        assert executor.execute(sample_task.id) is None
        assert calls == []
        assert store.get(sample_task.id).status == TaskStatus.CANCELLED

    def test_unknown_task_returns_none(self, executor):
        assert executor.execute("does-not-exist") is None

    def test_published_statuses(self, executor, broadcaster, sample_task):
        executor.register_handler(TaskType.SCAN_LIBRARY, lambda ctx, params: {})

        executor.execute(sample_task.id)

        assert broadcaster.statuses_for(sample_task.id) == ["running", "completed"]


def ticker_alive(task_id: str) -> bool:
    name = f"heartbeat-{task_id[:8]}"
    deadline = time.monotonic() + 2
    while time.monotonic() < deadline:
        if not any(t.name == name and t.is_alive() for t in threading.enumerate()):
            return False
        time.sleep(0.01)
    return True


class TestTerminalWrite:
    """Storage errors while recording the outcome."""

    def test_retried_once(self, executor, store, sample_task, monkeypatch):
        """A single failed terminal write is retried and the task completes."""
        executor.register_handler(TaskType.SCAN_LIBRARY, lambda ctx, params: {})
        original = store.mark_completed
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            return original(*args, **kwargs)

        monkeypatch.setattr(store, "mark_completed", flaky)

        snapshot = executor.execute(sample_task.id)

        assert len(calls) == 2
        assert snapshot.status == TaskStatus.COMPLETED
        assert store.get(sample_task.id).status == TaskStatus.COMPLETED

    def test_gives_up_after_second_failure(
        self, executor, store, sample_task, monkeypatch
    ):
        """Two failed writes are logged and swallowed, not raised."""
        executor.register_handler(TaskType.SCAN_LIBRARY, lambda ctx, params: {})
        calls = []

        def broken(*args, **kwargs):
            calls.append(args)
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(store, "mark_completed", broken)

        assert executor.execute(sample_task.id) is None

        assert len(calls) == 2
        assert store.get(sample_task.id).status == TaskStatus.RUNNING
        assert not ticker_alive(sample_task.id)


class TestCancellation:
    """Cooperative cancellation of a running body."""

    def test_cancelled_body_ends_cancelled(self, executor, store, sample_task):
        def body(ctx, params):
            ctx.token.cancel()
            ctx.check_cancelled()
            return {"unreachable": True}

        executor.register_handler(TaskType.SCAN_LIBRARY, body)

        snapshot = executor.execute(sample_task.id)

        assert snapshot.status == TaskStatus.CANCELLED
        assert snapshot.result is None
        assert log_messages(store, sample_task.id)[-1] == "Cancelled"

    def test_cancel_from_another_thread(self, executor, store, sample_task):
        """A body waiting at a checkpoint should stop once the token is set."""
        started = threading.Event()
        token = CancellationToken()

        def body(ctx, params):
            started.set()
            ctx.token.wait(5)
            ctx.check_cancelled()
            return {}

        executor.register_handler(TaskType.SCAN_LIBRARY, body)
        worker = threading.Thread(target=executor.execute, args=(sample_task.id, token))
        worker.start()
        assert started.wait(5)
        token.cancel()
        worker.join(5)

        assert store.get(sample_task.id).status == TaskStatus.CANCELLED

    def test_run_tool_checks_cancellation_first(
        self, executor, tool_runner, sample_task
    ):
        def body(ctx, params):
            ctx.token.cancel()
            ctx.run_tool(["ffmpeg", "-version"])
            return {}

        executor.register_handler(TaskType.SCAN_LIBRARY, body)

        snapshot = executor.execute(sample_task.id)

        assert snapshot.status == TaskStatus.CANCELLED
        assert tool_runner.calls == []


class TestTimeout:
    """Wall-clock timeout enforcement."""

    @pytest.fixture
    def short_executor(self, store, broadcaster, config, tool_runner):
        config = dataclasses.replace(
            config,
            task_timeout_hours=SHORT_TIMEOUT_HOURS,
            heartbeat_interval_seconds=0.05,
        )
        return TaskExecutor(store, broadcaster, config, tool_runner=tool_runner)

    def test_cooperative_body_times_out(self, short_executor, store, sample_task):
        def body(ctx, params):
            while True:
                ctx.check_cancelled()
                time.sleep(0.01)

        short_executor.register_handler(TaskType.SCAN_LIBRARY, body)

        short_executor.execute(sample_task.id)

        task = store.get(sample_task.id)
        assert task.status == TaskStatus.FAILED
        assert "timed out" in task.error_message

    def test_body_ignoring_cancellation_still_fails(
        self, short_executor, store, sample_task
    ):
        """The timeout is recorded even if the body returns normally afterwards."""

        def body(ctx, params):
            time.sleep(0.5)
            return {"late": True}

        short_executor.register_handler(TaskType.SCAN_LIBRARY, body)

        short_executor.execute(sample_task.id)

        task = store.get(sample_task.id)
        assert task.status == TaskStatus.FAILED
        assert "timed out" in task.error_message
        assert task.result is None


class TestProgress:
    """Progress reporting from inside a body."""

    def test_progress_never_decreases(self, executor, broadcaster, sample_task):
        seen = []

        def body(ctx, params):
            for value in (50, 20, 80):
                ctx.report_progress(value, f"at {value}")
                seen.append(ctx.progress)
            return {}

        executor.register_handler(TaskType.SCAN_LIBRARY, body)

        executor.execute(sample_task.id)

        assert seen == [50, 50, 80]
        running = [
            s.progress_percentage
            for s in broadcaster.published
            if s.id == sample_task.id and s.status == TaskStatus.RUNNING
        ]
        assert running == sorted(running)

    def test_progress_is_clamped(self, executor, store, sample_task):
        def body(ctx, params):
            ctx.report_progress(150)
            assert store.get(ctx.task_id).progress_percentage == 100
            return {}

        executor.register_handler(TaskType.SCAN_LIBRARY, body)

        assert executor.execute(sample_task.id).status == TaskStatus.COMPLETED

    def test_progress_refreshes_heartbeat(self, executor, store, sample_task):
        def body(ctx, params):
            before = store.get(ctx.task_id).last_heartbeat
            time.sleep(0.01)
            ctx.report_progress(10)
            assert store.get(ctx.task_id).last_heartbeat >= before
            return {}

        executor.register_handler(TaskType.SCAN_LIBRARY, body)

        assert executor.execute(sample_task.id).status == TaskStatus.COMPLETED

    def test_log_helper_records_attempt(self, executor, store, sample_task):
        def body(ctx, params):
            ctx.log("halfway")
            return {}

        executor.register_handler(TaskType.SCAN_LIBRARY, body)
        executor.execute(sample_task.id)

        logs = store.get_logs(sample_task.id)
        assert [log["message"] for log in logs] == [
            "Starting attempt 1",
            "halfway",
            "Completed",
        ]
        assert {log["attempt"] for log in logs} == {1}


class TestHandlerRegistry:
    def test_has_handler(self, executor):
        assert not executor.has_handler(TaskType.CLEANUP_FILES)

        executor.register_handler(TaskType.CLEANUP_FILES, lambda ctx, params: {})

        assert executor.has_handler(TaskType.CLEANUP_FILES)

    def test_validation_error_message_is_used(self, executor, sample_task):
        def body(ctx, params):
            raise ValidationError("paths must be absolute")

        executor.register_handler(TaskType.SCAN_LIBRARY, body)

        snapshot = executor.execute(sample_task.id)

        assert snapshot.error_message == "paths must be absolute"
