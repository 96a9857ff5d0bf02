"""
Service layer exports.
"""

from subkeeper.services.task_store import TaskSnapshot, TaskStore
from subkeeper.services.tool_runner import ToolResult, ToolRunner
from subkeeper.services.translation import TranslationClient, TranslationError

__all__ = [
    "TaskSnapshot",
    "TaskStore",
    "ToolResult",
    "ToolRunner",
    "TranslationClient",
    "TranslationError",
]
