from typing import Any


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, status_code: int = 500, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "details": self.details,
        }


class NotFoundError(AppError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=404,
        )


class ValidationError(AppError):
    """Invalid input data."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message=message, status_code=400, details=details)


class InvalidStateError(AppError):
    """Operation not allowed in the resource's current state."""

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(
            message=message,
            status_code=409,
            details={"current_status": current_status},
        )
        self.current_status = current_status


class CancellationError(AppError):
    """A running task could not be interrupted from this process."""

    def __init__(self, task_id: str):
        super().__init__(
            message=f"Could not interrupt task: {task_id}",
            status_code=409,
            details={"reason": "could not interrupt"},
        )


class TaskCancelledError(Exception):
    """Raised inside an execution body once cancellation has been requested."""


class TaskTimeoutError(TaskCancelledError):
    """Raised inside an execution body once the wall-clock timeout has passed."""


class ToolError(Exception):
    """External tool exited with a non-zero status."""

    def __init__(self, tool: str, exit_code: int, stderr: str = ""):
        tail = stderr.strip().splitlines()[-5:] if stderr else []
        message = f"{tool} exited with code {exit_code}"
        if tail:
            message = f"{message}: {' | '.join(tail)}"
        super().__init__(message)
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr
