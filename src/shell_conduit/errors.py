"""Exceptions raised by shell-conduit."""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from shell_conduit.stream import Result


class ConduitError(Exception):
    """Base class for every error raised by this package."""


class InvalidCompositionError(ConduitError, ValueError):
    """Raised when commands are combined in a way that cannot be executed.

    The classic case is passing a piped, multi-stage object as a plain
    argument to another command. Always raised before anything is spawned.
    """


class LaunchError(ConduitError):
    """Raised when a pipeline stage could not be started."""

    def __init__(self, position: int, argv: tuple, cause: Optional[BaseException] = None):
        self.position = position
        self.argv = argv
        self.cause = cause
        message = f"Stage {position} failed to start: {list(argv)}"
        if cause is not None:
            message += f" ({cause})"
        super().__init__(message)


class CommandError(ConduitError):
    """Raised when a pipeline's terminal stage exits non-zero."""

    def __init__(self, result: "Result"):
        self.result = result
        super().__init__(f"Command failed with code {result.returncode}")


class TimeoutExpired(ConduitError):
    """Raised when a pipeline run exceeds its timeout."""

    def __init__(self, args: list, timeout: float):
        self.args_list = args
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout}s: {args}")
