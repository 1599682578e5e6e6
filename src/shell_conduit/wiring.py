"""
Pipe wiring: decide which descriptor every stage gets on fds 0, 1 and 2.

Planning is pure. Pipes are referred to by index and opened later by the
launcher, so a plan can be inspected without touching the OS.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from shell_conduit.command import STDERR, STDIN, STDOUT, Command, Data, Pipeline
from shell_conduit.errors import InvalidCompositionError

logger = logging.getLogger(__name__)

READ = "r"
WRITE = "w"


@dataclass(frozen=True)
class PipeEnd:
    """One end of a planned pipe."""
    pipe: int
    end: str

    def __str__(self) -> str:
        return f"pipe[{self.pipe}].{'read' if self.end == READ else 'write'}"


@dataclass(frozen=True)
class StageWiring:
    """Resolved fd bindings for one stage. ``None`` means inherit."""
    position: int
    command: Command
    stdin: Any = None
    stdout: Any = None
    stderr: Any = None

    @property
    def argv(self) -> tuple:
        return self.command.argv

    def bindings(self) -> dict:
        return {STDIN: self.stdin, STDOUT: self.stdout, STDERR: self.stderr}


@dataclass(frozen=True)
class Feed:
    """In-memory stdin for the first stage, written through a pipe."""
    end: PipeEnd
    data: Data


@dataclass(frozen=True)
class WiringPlan:
    """Everything the launcher needs to start a pipeline."""
    stages: tuple
    pipe_count: int
    output: Optional[PipeEnd] = None
    feed: Optional[Feed] = None

    @property
    def handles(self) -> tuple:
        """Every pipe end the plan creates, each listed once."""
        return tuple(
            PipeEnd(index, end)
            for index in range(self.pipe_count)
            for end in (READ, WRITE)
        )

    @property
    def terminal(self) -> StageWiring:
        return self.stages[-1]


def plan_wiring(pipeline: Pipeline, capture: bool = True) -> WiringPlan:
    """
    Compute the per-stage bindings for ``pipeline``.

    Stage ``i`` reads from pipe ``i - 1`` and writes to pipe ``i``. The
    first stage keeps its own stdin redirect and the last stage keeps its
    own stdout redirect; every other fd 0 / fd 1 redirect is superseded by
    the pipe between the stages. When ``capture`` is set and the last
    stage's stdout is not redirected, an output pipe is added whose read
    end is handed to the consumer.

    Raises:
        InvalidCompositionError: if the pipeline is empty or a stage has no
            command to run.
    """
    stages = pipeline.stages
    if not stages:
        raise InvalidCompositionError("cannot run an empty pipeline")
    for position, command in enumerate(stages):
        if not command.argv:
            raise InvalidCompositionError(f"stage {position} has no command to run")

    count = len(stages)
    pipe_count = count - 1

    output = None
    if capture and STDOUT not in stages[-1].redirects:
        output = PipeEnd(pipe_count, READ)
        pipe_count += 1

    feed = None
    first_stdin = stages[0].redirects.get(STDIN)
    if isinstance(first_stdin, Data):
        feed = Feed(PipeEnd(pipe_count, WRITE), first_stdin)
        pipe_count += 1

    wired = []
    for position, command in enumerate(stages):
        redirects = command.redirects
        is_first = position == 0
        is_last = position == count - 1

        if is_first:
            stdin = PipeEnd(feed.end.pipe, READ) if feed else redirects.get(STDIN)
        else:
            stdin = PipeEnd(position - 1, READ)
            _superseded(position, STDIN, redirects)

        if is_last:
            stdout = PipeEnd(output.pipe, WRITE) if output else redirects.get(STDOUT)
        else:
            stdout = PipeEnd(position, WRITE)
            _superseded(position, STDOUT, redirects)

        wired.append(
            StageWiring(
                position=position,
                command=command,
                stdin=stdin,
                stdout=stdout,
                stderr=redirects.get(STDERR),
            )
        )

    return WiringPlan(
        stages=tuple(wired),
        pipe_count=pipe_count,
        output=output,
        feed=feed,
    )


def _superseded(position: int, fd: int, redirects) -> None:
    if fd in redirects:
        logger.debug("stage %d: fd %d redirect %s replaced by pipe", position, fd, redirects[fd])
