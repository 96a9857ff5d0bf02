"""Tests for the task API routes."""

from datetime import UTC, datetime, timedelta

import pytest

from subkeeper.models.task import TaskStatus, TaskType

MISSING_LIBRARY = {"paths": ["/nonexistent/library"]}


@pytest.fixture
def store(app):
    """The application's own task store, for seeding rows directly."""
    return app.state.task_service.store


@pytest.fixture
def pending_task(store):
    return store.create(TaskType.SCAN_LIBRARY, MISSING_LIBRARY)


@pytest.fixture
def failed_task(store):
    task = store.create(TaskType.SCAN_LIBRARY, MISSING_LIBRARY)
    store.mark_running(task.id, "worker")
    return store.mark_failed(task.id, "boom", 5)


class TestCreateTask:
    """Tests for POST /api/tasks/."""

    def test_create(self, client):
        response = client.post(
            "/api/tasks/",
            json={"type": "scan_library", "parameters": MISSING_LIBRARY},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["type"] == "scan_library"
        assert data["status"] == "pending"
        assert data["priority"] == "medium"
        assert data["parameters"]["paths"] == MISSING_LIBRARY["paths"]

    def test_create_accepts_camel_case(self, client):
        response = client.post(
            "/api/tasks/",
            json={
                "type": "scan_library",
                "parameters": MISSING_LIBRARY,
                "videoId": "v1",
                "createdBy": "alex",
            },
        )

        assert response.status_code == 201
        assert response.json()["video_id"] == "v1"
        assert response.json()["created_by"] == "alex"

    def test_create_scheduled(self, client):
        when = (datetime.now(UTC) + timedelta(hours=2)).isoformat()

        response = client.post(
            "/api/tasks/",
            json={"type": "health_check", "scheduledAt": when},
        )

        assert response.status_code == 201
        assert response.json()["status"] == "scheduled"

    def test_unknown_type(self, client):
        response = client.post("/api/tasks/", json={"type": "transcode"})

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid task type")

    def test_invalid_parameters(self, client):
        response = client.post(
            "/api/tasks/", json={"type": "scan_library", "parameters": {}}
        )

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Invalid parameters for scan_library"
        assert data["details"]["errors"][0]["field"] == "paths"

    def test_missing_type(self, client):
        response = client.post("/api/tasks/", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"


class TestTriggerEndpoints:
    """Tests for the typed trigger endpoints."""

    def test_scan(self, client):
        response = client.post("/api/tasks/scan", json=MISSING_LIBRARY)

        assert response.status_code == 202
        assert response.json()["type"] == "scan_library"
        assert response.json()["priority"] == "high"

    def test_scan_requires_paths(self, client):
        response = client.post("/api/tasks/scan", json={"paths": []})

        assert response.status_code == 400

    def test_sync(self, client):
        response = client.post(
            "/api/tasks/sync/v1", json={"videoPath": "/nonexistent/film.mkv"}
        )

        assert response.status_code == 202
        assert response.json()["video_id"] == "v1"
        assert response.json()["type"] == "sync_subtitles"

    def test_translate(self, client):
        response = client.post(
            "/api/tasks/translate/s1",
            json={"subtitlePath": "/nonexistent/film.srt", "targetLanguage": "fr"},
        )

        assert response.status_code == 202
        data = response.json()
        assert data["subtitle_id"] == "s1"
        assert data["parameters"]["target_language"] == "fr"

    def test_batch(self, client):
        response = client.post(
            "/api/tasks/batch",
            json={"operation": "sync_all", "filePaths": ["/nonexistent/a.mkv"]},
        )

        assert response.status_code == 202
        assert response.json()["priority"] == "low"

    def test_batch_unknown_operation(self, client):
        response = client.post(
            "/api/tasks/batch",
            json={"operation": "burn_all", "filePaths": ["/a.mkv"]},
        )

        assert response.status_code == 400


class TestQueries:
    """Tests for task lookups."""

    def test_get_task(self, client, pending_task):
        response = client.get(f"/api/tasks/{pending_task.id}")

        assert response.status_code == 200
        assert response.json()["id"] == pending_task.id

    def test_get_missing_task(self, client):
        response = client.get("/api/tasks/missing")

        assert response.status_code == 404
        assert response.json() == {
            "error": "Task not found: missing",
            "details": None,
        }

    def test_list_filters(self, client, pending_task, failed_task):
        response = client.get("/api/tasks/", params={"status": "failed"})

        assert response.status_code == 200
        assert [task["id"] for task in response.json()] == [failed_task.id]

    def test_list_pagination(self, client, pending_task, failed_task):
        response = client.get("/api/tasks/", params={"limit": 1, "offset": 1})

        assert len(response.json()) == 1

    def test_list_invalid_status(self, client):
        response = client.get("/api/tasks/", params={"status": "sleeping"})

        assert response.status_code == 400
        assert "Invalid status" in response.json()["error"]

    def test_list_invalid_limit(self, client):
        response = client.get("/api/tasks/", params={"limit": 0})

        assert response.status_code == 400

    def test_video_tasks(self, client, store):
        task = store.create(
            TaskType.SYNC_SUBTITLES, {"video_path": "/a.mkv"}, video_id="v9"
        )

        response = client.get("/api/tasks/video/v9")

        assert [item["id"] for item in response.json()] == [task.id]

    def test_logs(self, client, store, pending_task):
        store.add_log(pending_task.id, "queued")

        response = client.get(f"/api/tasks/{pending_task.id}/logs")

        assert response.status_code == 200
        (entry,) = response.json()
        assert entry["message"] == "queued"
        assert entry["attempt"] == 1

    def test_statistics(self, client, pending_task, failed_task):
        response = client.get("/api/tasks/statistics")

        assert response.status_code == 200
        data = response.json()
        assert data["pending"] == 1
        assert data["failed"] == 1
        assert data["max_workers"] >= 1


class TestControl:
    """Tests for cancel, retry, pause and resume."""

    def test_cancel_pending(self, client, pending_task):
        response = client.post(f"/api/tasks/{pending_task.id}/cancel")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["interrupted"] is False
        assert data["task"]["status"] == "cancelled"

    def test_cancel_terminal_conflicts(self, client, failed_task):
        response = client.post(f"/api/tasks/{failed_task.id}/cancel")

        assert response.status_code == 409
        assert response.json()["details"] == {"current_status": "failed"}

    def test_cancel_foreign_running_task(self, client, store, pending_task):
        store.mark_running(pending_task.id, "another-process")

        response = client.post(f"/api/tasks/{pending_task.id}/cancel")

        assert response.status_code == 409
        assert response.json()["details"] == {"reason": "could not interrupt"}

    def test_cancel_missing(self, client):
        assert client.post("/api/tasks/missing/cancel").status_code == 404

    def test_retry_failed(self, client, failed_task):
        response = client.post(f"/api/tasks/{failed_task.id}/retry")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["retry_count"] == 1

    def test_retry_pending_conflicts(self, client, pending_task):
        response = client.post(f"/api/tasks/{pending_task.id}/retry")

        assert response.status_code == 409
        assert "not in FAILED state" in response.json()["error"]

    def test_pause_and_resume(self, client, store, pending_task):
        paused = client.post(f"/api/tasks/{pending_task.id}/pause")
        assert paused.status_code == 200
        assert paused.json()["status"] == "paused"

        resumed = client.post(f"/api/tasks/{pending_task.id}/resume")
        assert resumed.status_code == 200
        assert resumed.json()["status"] == "pending"

    def test_resume_not_paused(self, client, pending_task):
        response = client.post(f"/api/tasks/{pending_task.id}/resume")

        assert response.status_code == 409


class TestCleanup:
    """Tests for DELETE /api/tasks/cleanup."""

    def test_default_window(self, client, failed_task, store):
        response = client.delete("/api/tasks/cleanup")

        assert response.status_code == 200
        assert response.json() == {"deleted": 0, "older_than_days": 7}
        assert store.get(failed_task.id).status == TaskStatus.FAILED

    def test_rejects_zero_days(self, client):
        response = client.delete("/api/tasks/cleanup", params={"days": 0})

        assert response.status_code == 400
