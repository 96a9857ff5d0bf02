"""Tests for the Settings model and settings routes."""

import pytest

from subkeeper.models.settings import SETTING_TASK_RETENTION_DAYS, Settings


@pytest.fixture
def db_session(session_factory):
    with session_factory() as session:
        yield session


class TestSettingsModel:
    """Test Settings model methods."""

    def test_get_returns_default_when_key_not_found(self, db_session):
        """Test get returns default value for missing key."""
        result = Settings.get(db_session, "nonexistent", "default_value")
        assert result == "default_value"

    def test_get_returns_empty_string_default(self, db_session):
        """Test get returns empty string when no default provided."""
        result = Settings.get(db_session, "nonexistent")
        assert result == ""

    def test_set_creates_new_setting(self, db_session):
        """Test set creates a new setting."""
        Settings.set(db_session, "test_key", "test_value")
        result = Settings.get(db_session, "test_key")
        assert result == "test_value"

    def test_set_updates_existing_setting(self, db_session):
        """Test set updates an existing setting."""
        Settings.set(db_session, "test_key", "initial_value")
        Settings.set(db_session, "test_key", "updated_value")
        result = Settings.get(db_session, "test_key")
        assert result == "updated_value"

    def test_get_int_round_trip(self, db_session):
        Settings.set_int(db_session, SETTING_TASK_RETENTION_DAYS, 14)
        assert Settings.get_int(db_session, SETTING_TASK_RETENTION_DAYS) == 14

    def test_get_int_falls_back_on_bad_value(self, db_session):
        """Test get_int returns the default when the stored value is not a number."""
        Settings.set(db_session, SETTING_TASK_RETENTION_DAYS, "forever")
        assert Settings.get_int(db_session, SETTING_TASK_RETENTION_DAYS, 3) == 3


class TestTaskRetentionRoutes:
    """Tests for /api/settings/task-retention."""

    def test_default_comes_from_config(self, client, app):
        response = client.get("/api/settings/task-retention")

        assert response.status_code == 200
        assert response.json() == {
            "retention_days": app.state.config.task_retention_days
        }

    def test_update(self, client):
        response = client.put(
            "/api/settings/task-retention", json={"retention_days": 5}
        )

        assert response.status_code == 200
        assert response.json() == {"retention_days": 5}
        assert client.get("/api/settings/task-retention").json() == {
            "retention_days": 5
        }

    def test_update_used_by_retention_sweep(self, client, app):
        client.put("/api/settings/task-retention", json={"retention_days": 0})

        result = app.state.task_service.run_retention_sweep()

        assert result == {"deleted_tasks": 0, "retention_days": 0}

    def test_update_rejects_negative(self, client):
        response = client.put(
            "/api/settings/task-retention", json={"retention_days": -1}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"
