"""
Process configuration.

Values are read from environment variables once at startup and may be
overridden by the dict passed to ``create_app``. Settings that should be
tunable at runtime live in the ``settings`` table instead.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from subkeeper.core.logging import get_logger

logger = get_logger("config")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer for %s: %r, using %d", name, value, default)
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid number for %s: %r, using %s", name, value, default)
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _default_temp_dirs() -> list[str]:
    import tempfile

    return [tempfile.gettempdir(), "/tmp/subkeeper"]


@dataclass(frozen=True)
class AppConfig:
    """Settings for the task system and the tools its bodies invoke."""

    max_task_workers: int = 4
    dispatch_poll_interval: float = 5.0
    heartbeat_interval_seconds: float = 60.0
    stuck_task_threshold_minutes: int = 30
    stuck_sweep_interval_seconds: int = 30
    stuck_sweep_start_delay_seconds: int = 10
    task_timeout_hours: float = 24.0
    task_retention_days: int = 1
    retention_sweep_hour: int = 2
    broadcast_queue_size: int = 100
    progress_broadcast_interval: float = 1.0

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    ffsubsync_path: str = "ffsubsync"
    whisper_path: str = "whisper"

    translation_api_url: str = "https://api.openai.com/v1/chat/completions"
    translation_api_key: str | None = None
    translation_model: str = "gpt-4o-mini"
    translation_timeout: int = 300

    backup_dir: str = "./backups"
    export_dir: str = "./exports"
    temp_dirs: list[str] = field(default_factory=_default_temp_dirs)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build a config from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            max_task_workers=_env_int("MAX_TASK_WORKERS", defaults.max_task_workers),
            dispatch_poll_interval=_env_float(
                "DISPATCH_POLL_INTERVAL", defaults.dispatch_poll_interval
            ),
            heartbeat_interval_seconds=_env_float(
                "HEARTBEAT_INTERVAL_SECONDS", defaults.heartbeat_interval_seconds
            ),
            stuck_task_threshold_minutes=_env_int(
                "STUCK_TASK_THRESHOLD_MINUTES", defaults.stuck_task_threshold_minutes
            ),
            stuck_sweep_interval_seconds=_env_int(
                "STUCK_SWEEP_INTERVAL_SECONDS", defaults.stuck_sweep_interval_seconds
            ),
            stuck_sweep_start_delay_seconds=_env_int(
                "STUCK_SWEEP_START_DELAY_SECONDS",
                defaults.stuck_sweep_start_delay_seconds,
            ),
            task_timeout_hours=_env_float(
                "TASK_TIMEOUT_HOURS", defaults.task_timeout_hours
            ),
            task_retention_days=_env_int(
                "TASK_RETENTION_DAYS", defaults.task_retention_days
            ),
            retention_sweep_hour=_env_int(
                "RETENTION_SWEEP_HOUR", defaults.retention_sweep_hour
            ),
            broadcast_queue_size=_env_int(
                "BROADCAST_QUEUE_SIZE", defaults.broadcast_queue_size
            ),
            progress_broadcast_interval=_env_float(
                "PROGRESS_BROADCAST_INTERVAL", defaults.progress_broadcast_interval
            ),
            ffmpeg_path=os.getenv("FFMPEG_PATH", defaults.ffmpeg_path),
            ffprobe_path=os.getenv("FFPROBE_PATH", defaults.ffprobe_path),
            ffsubsync_path=os.getenv("FFSUBSYNC_PATH", defaults.ffsubsync_path),
            whisper_path=os.getenv("WHISPER_PATH", defaults.whisper_path),
            translation_api_url=os.getenv(
                "TRANSLATION_API_URL", defaults.translation_api_url
            ),
            translation_api_key=os.getenv("TRANSLATION_API_KEY"),
            translation_model=os.getenv(
                "TRANSLATION_MODEL", defaults.translation_model
            ),
            translation_timeout=_env_int(
                "TRANSLATION_TIMEOUT", defaults.translation_timeout
            ),
            backup_dir=os.getenv("BACKUP_DIR", defaults.backup_dir),
            export_dir=os.getenv("EXPORT_DIR", defaults.export_dir),
            temp_dirs=_env_list("TEMP_DIRS", defaults.temp_dirs),
        ).normalised()

    def with_overrides(self, overrides: dict[str, Any] | None) -> "AppConfig":
        """
        Apply overrides from a create_app config dict.

        Keys are matched case-insensitively against field names so that
        ``{"MAX_TASK_WORKERS": 2}`` and ``{"max_task_workers": 2}`` both work.
        Unknown keys are ignored; they belong to the web layer.
        """
        if not overrides:
            return self

        names = {f.name for f in fields(self)}
        changes = {
            key.lower(): value
            for key, value in overrides.items()
            if key.lower() in names
        }
        if not changes:
            return self
        return replace(self, **changes).normalised()

    def normalised(self) -> "AppConfig":
        """Return a copy with inconsistent values corrected."""
        config = self
        if config.max_task_workers < 1:
            logger.warning(
                "max_task_workers=%d is invalid, using 1", config.max_task_workers
            )
            config = replace(config, max_task_workers=1)

        max_heartbeat = config.stuck_task_threshold_seconds / 3
        if config.heartbeat_interval_seconds > max_heartbeat:
            logger.warning(
                "Heartbeat interval %.0fs exceeds a third of the stuck threshold "
                "(%ds), clamping to %.0fs",
                config.heartbeat_interval_seconds,
                config.stuck_task_threshold_seconds,
                max_heartbeat,
            )
            config = replace(config, heartbeat_interval_seconds=max_heartbeat)
        return config

    @property
    def stuck_task_threshold_seconds(self) -> int:
        return self.stuck_task_threshold_minutes * 60

    @property
    def task_timeout_seconds(self) -> float:
        return self.task_timeout_hours * 3600

    @property
    def tool_paths(self) -> dict[str, str]:
        return {
            "ffmpeg": self.ffmpeg_path,
            "ffprobe": self.ffprobe_path,
            "ffsubsync": self.ffsubsync_path,
            "whisper": self.whisper_path,
        }

    @property
    def backup_path(self) -> Path:
        return Path(self.backup_dir)
