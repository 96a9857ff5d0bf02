"""
Per-type task parameter schemas.

Task parameters are stored as a JSON blob on the task row. They are
validated into one of these models when a task is created, and decoded
again before its execution body runs, so handlers always receive a typed
object for their task type.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from subkeeper.core.constants import (
    SUBTITLE_CODEC_EXTENSIONS,
    VIDEO_EXTENSIONS,
    WHISPER_MODELS,
)
from subkeeper.core.exceptions import ValidationError
from subkeeper.models.task import TaskType


class TaskParameters(BaseModel):
    """Base for parameter models: camelCase or snake_case keys, no extras."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_payload(self) -> dict[str, Any]:
        """Stored JSON form, using snake_case keys."""
        return self.model_dump(mode="json")


class ScanLibraryParameters(TaskParameters):
    paths: list[str] = Field(..., min_length=1)
    recursive: bool = True
    update_existing: bool = True
    extensions: list[str] = Field(default_factory=lambda: sorted(VIDEO_EXTENSIONS))


class ExtractSubtitlesParameters(TaskParameters):
    video_path: str
    output_dir: str | None = None
    languages: list[str] = Field(default_factory=list)
    format: str = "srt"


class GenerateSubtitlesParameters(TaskParameters):
    video_path: str
    language: str = "auto"
    model: str = "base"
    output_dir: str | None = None


class TranslateSubtitlesParameters(TaskParameters):
    subtitle_path: str
    target_language: str = "el"
    provider: str = "openai"
    preserve_formatting: bool = True


class SyncSubtitlesParameters(TaskParameters):
    video_path: str
    subtitle_paths: list[str] = Field(default_factory=list)
    output_suffix: str = ".synced"


class BatchProcessParameters(TaskParameters):
    operation: Literal["extract_all", "sync_all", "translate_all"]
    file_paths: list[str] = Field(..., min_length=1)
    batch_size: int = Field(10, ge=1, le=1000)
    target_language: str = "el"


class CleanupFilesParameters(TaskParameters):
    older_than_days: int = Field(30, ge=0)
    include_temp_files: bool = True
    include_subtitles: bool = False
    dry_run: bool = False


class BackupDatabaseParameters(TaskParameters):
    backup_type: Literal["full", "schema", "data"] = "full"
    compression_enabled: bool = True
    retention_days: int = Field(7, ge=0)
    backup_location: str | None = None


class OptimizeDatabaseParameters(TaskParameters):
    vacuum: bool = True
    analyze: bool = True


class HealthCheckParameters(TaskParameters):
    tools: list[str] | None = None


class UserExportParameters(TaskParameters):
    user_id: str
    include_tasks: bool = True
    output_dir: str | None = None


PARAMETER_MODELS: dict[TaskType, type[TaskParameters]] = {
    TaskType.SCAN_LIBRARY: ScanLibraryParameters,
    TaskType.EXTRACT_SUBTITLES: ExtractSubtitlesParameters,
    TaskType.GENERATE_SUBTITLES: GenerateSubtitlesParameters,
    TaskType.TRANSLATE_SUBTITLES: TranslateSubtitlesParameters,
    TaskType.SYNC_SUBTITLES: SyncSubtitlesParameters,
    TaskType.BATCH_PROCESS: BatchProcessParameters,
    TaskType.CLEANUP_FILES: CleanupFilesParameters,
    TaskType.BACKUP_DATABASE: BackupDatabaseParameters,
    TaskType.OPTIMIZE_DATABASE: OptimizeDatabaseParameters,
    TaskType.HEALTH_CHECK: HealthCheckParameters,
    TaskType.USER_EXPORT: UserExportParameters,
}

# Allowed values checked after model validation
_EXTRA_CHOICES: dict[type[TaskParameters], dict[str, frozenset[str]]] = {
    GenerateSubtitlesParameters: {"model": frozenset(WHISPER_MODELS)},
    ExtractSubtitlesParameters: {
        "format": frozenset(SUBTITLE_CODEC_EXTENSIONS.values())
    },
}


def _format_errors(exc: PydanticValidationError) -> list[dict[str, str]]:
    return [
        {
            "field": ".".join(str(part) for part in error["loc"]) or "parameters",
            "message": error["msg"],
        }
        for error in exc.errors()
    ]


def parse_parameters(
    task_type: TaskType, payload: dict[str, Any] | None
) -> TaskParameters:
    """
    Decode a parameter payload into the model for a task type.

    Args:
        task_type: The task type the payload belongs to.
        payload: Raw parameter mapping (camelCase or snake_case keys).

    Returns:
        The validated parameter model.

    Raises:
        ValidationError: If the payload does not match the type's schema.
    """
    model = PARAMETER_MODELS[task_type]
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError(
            "Task parameters must be an object",
            details={"type": task_type.value},
        )

    try:
        params = model.model_validate(payload or {})
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid parameters for {task_type.value}",
            details={"type": task_type.value, "errors": _format_errors(e)},
        ) from e

    for field, choices in _EXTRA_CHOICES.get(model, {}).items():
        value = getattr(params, field)
        if value not in choices:
            raise ValidationError(
                f"Invalid parameters for {task_type.value}",
                details={
                    "type": task_type.value,
                    "errors": [
                        {
                            "field": field,
                            "message": f"must be one of: {', '.join(sorted(choices))}",
                        }
                    ],
                },
            )
    return params
