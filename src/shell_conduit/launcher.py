"""Start every stage of a wiring plan as a child process."""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Any, Optional

from shell_conduit.command import STDERR, STDIN, STDOUT, File
from shell_conduit.errors import LaunchError
from shell_conduit.lifecycle import DEFAULT_TEARDOWN, Descriptors, Execution, TeardownPolicy
from shell_conduit.wiring import READ, WRITE, PipeEnd, StageWiring, WiringPlan

logger = logging.getLogger(__name__)

_FILE_FLAGS = {
    "r": os.O_RDONLY,
    "w": os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
    "a": os.O_WRONLY | os.O_CREAT | os.O_APPEND,
}


def launch(plan: WiringPlan, teardown: TeardownPolicy = DEFAULT_TEARDOWN) -> Execution:
    """
    Open the plan's pipes and spawn its stages, terminal stage first.

    Every pipe already exists before the first spawn, so the order does not
    matter for correctness. After each spawn the parent closes the
    descriptors it handed to that child, leaving only the consumer's output
    read end (and the stdin feed) open.

    Raises:
        LaunchError: if a pipe, a redirect file or a process could not be
            created. Everything opened or spawned so far is torn down first.
    """
    execution = Execution(plan, teardown)
    descriptors = execution.descriptors
    try:
        try:
            for index in range(plan.pipe_count):
                read_fd, write_fd = os.pipe()
                descriptors.add(PipeEnd(index, READ), read_fd)
                descriptors.add(PipeEnd(index, WRITE), write_fd)
        except OSError as exc:
            first = plan.stages[0]
            raise LaunchError(first.position, first.argv, exc) from exc

        for stage in reversed(plan.stages):
            execution.spawned(stage.position, _spawn(stage, descriptors))
    except BaseException:
        execution.kill()
        execution.finish(abandoned=True)
        raise

    execution.start_feeder()
    return execution


def _spawn(stage: StageWiring, descriptors: Descriptors) -> subprocess.Popen:
    handed: list = []
    try:
        fds = {
            fd: _resolve(stage.position, fd, binding, descriptors, handed)
            for fd, binding in stage.bindings().items()
        }
        process = subprocess.Popen(
            stage.argv,
            stdin=fds[STDIN],
            stdout=fds[STDOUT],
            stderr=fds[STDERR],
            env=stage.command.environment(),
            cwd=stage.command.cwd,
            close_fds=True,
            restore_signals=True,
        )
    except OSError as exc:
        logger.debug("stage %d failed to start: %s", stage.position, exc)
        raise LaunchError(stage.position, stage.argv, exc) from exc
    finally:
        # The child holds its own copies now.
        for key in handed:
            descriptors.close(key)

    logger.debug("spawned stage %d pid %d: %s", stage.position, process.pid, stage.command)
    return process


def _resolve(
    position: int,
    fd: int,
    binding: Any,
    descriptors: Descriptors,
    handed: list,
) -> Optional[int]:
    if binding is None:
        return None
    if isinstance(binding, PipeEnd):
        handed.append(binding)
        return descriptors.fd(binding)
    if isinstance(binding, File):
        key = (position, fd)
        handed.append(key)
        return descriptors.add(key, os.open(binding.path, _FILE_FLAGS[binding.mode], 0o666))
    if isinstance(binding, int):
        return binding
    if callable(getattr(binding, "fileno", None)):
        return binding.fileno()
    raise TypeError(f"cannot bind fd {fd} of stage {position} to {binding!r}")
