"""
External tool invocation.

A thin wrapper around ``subprocess.Popen`` that hands the child process to
a caller-supplied hook before waiting on it, so the executor can terminate
it when a task is cancelled or times out.
"""

import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from subkeeper.core.constants import TOOL_OUTPUT_TAIL_LINES
from subkeeper.core.exceptions import ToolError
from subkeeper.core.logging import get_logger

logger = get_logger("tool_runner")


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one external process run."""

    args: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def tool(self) -> str:
        return self.args[0] if self.args else ""

    def stderr_tail(self, lines: int = TOOL_OUTPUT_TAIL_LINES) -> str:
        return "\n".join(self.stderr.strip().splitlines()[-lines:])

    def check(self) -> "ToolResult":
        """Raise ToolError on a non-zero exit, otherwise return self."""
        if not self.ok:
            raise ToolError(self.tool, self.exit_code, self.stderr_tail())
        return self


class ToolRunner:
    """Runs external commands and captures their output."""

    def run(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        on_start: Callable[[subprocess.Popen], None] | None = None,
        cwd: str | None = None,
    ) -> ToolResult:
        """
        Run a command to completion.

        Args:
            args: Command and arguments.
            timeout: Seconds before the process is killed.
            on_start: Called with the Popen object once the process exists.
            cwd: Working directory for the process.

        Returns:
            ToolResult with exit code and captured output.

        Raises:
            ToolError: If the executable is missing or the timeout expires.
        """
        args = tuple(str(arg) for arg in args)
        logger.debug("Running: %s", " ".join(args))

        try:
            process = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
            )
        except FileNotFoundError as e:
            raise ToolError(args[0], 127, f"executable not found: {args[0]}") from e

        if on_start is not None:
            on_start(process)

        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            process.communicate()
            raise ToolError(args[0], -9, f"timed out after {timeout}s") from e

        return ToolResult(
            args=args, exit_code=process.returncode, stdout=stdout, stderr=stderr
        )
