"""
Ownership and teardown of everything one pipeline execution opens.

An ``Execution`` moves RUNNING -> DRAINING -> REAPED exactly once. The
drain always closes every descriptor, waits for the terminal stage,
signals the remaining stages and reaps them, no matter whether the
consumer read to the end, stopped early, or the launch failed halfway.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Hashable, Iterable, Optional

from shell_conduit.wiring import WiringPlan

logger = logging.getLogger(__name__)


class State(str, Enum):
    """Lifecycle states of a pipeline execution."""

    RUNNING = "running"
    DRAINING = "draining"
    REAPED = "reaped"


@dataclass(frozen=True)
class TeardownPolicy:
    """Process signaling behavior when an execution is torn down."""

    terminate_grace_seconds: float = 1.0
    feeder_join_seconds: float = 5.0


DEFAULT_TEARDOWN = TeardownPolicy()


class Descriptors:
    """
    Registry of the raw fds opened for one execution.

    Keys are ``PipeEnd`` objects for pipes and ``(position, fd)`` tuples
    for redirect files. Closing is idempotent and thread-safe.
    """

    def __init__(self):
        self._fds: dict = {}
        self._lock = threading.Lock()
        self.opened = 0
        self.closed = 0

    def add(self, key: Hashable, fd: int) -> int:
        with self._lock:
            self._fds[key] = fd
            self.opened += 1
        return fd

    def fd(self, key: Hashable) -> int:
        return self._fds[key]

    def close(self, key: Hashable) -> None:
        with self._lock:
            fd = self._fds.pop(key, None)
            if fd is None:
                return
            self.closed += 1
        try:
            os.close(fd)
        except OSError as exc:
            logger.debug("close of %s (fd %d) failed: %s", key, fd, exc)

    def close_all(self, keep: Iterable[Hashable] = ()) -> None:
        keep = set(keep)
        for key in list(self._fds):
            if key not in keep:
                self.close(key)

    def __len__(self) -> int:
        return len(self._fds)


class Execution:
    """
    One run of a wiring plan: its descriptors, processes and teardown.

    Processes are registered by the launcher as they are spawned. The
    terminal stage's exit status becomes ``returncode``; the other stages'
    statuses are not reported.
    """

    def __init__(self, plan: WiringPlan, teardown: TeardownPolicy = DEFAULT_TEARDOWN):
        self.plan = plan
        self.teardown = teardown
        self.descriptors = Descriptors()
        self.processes: dict[int, subprocess.Popen] = {}
        self.returncode: Optional[int] = None
        self.state = State.RUNNING
        self._feeder: Optional[threading.Thread] = None
        self._lock = threading.RLock()

    @property
    def terminal(self) -> Optional[subprocess.Popen]:
        return self.processes.get(self.plan.terminal.position)

    @property
    def pids(self) -> list[int]:
        return [self.processes[p].pid for p in sorted(self.processes)]

    def output_fd(self) -> Optional[int]:
        if self.plan.output is None:
            return None
        return self.descriptors.fd(self.plan.output)

    def spawned(self, position: int, process: subprocess.Popen) -> None:
        self.processes[position] = process

    def start_feeder(self) -> None:
        """Write the plan's in-memory stdin from a daemon thread."""
        feed = self.plan.feed
        if feed is None:
            return
        fd = self.descriptors.fd(feed.end)
        data = feed.data.to_bytes()

        def feed_stdin():
            try:
                with open(fd, "wb", closefd=False) as pipe:
                    pipe.write(data)
            except BrokenPipeError:
                pass  # reader went away; nothing left to feed
            except OSError as exc:
                logger.debug("stdin feeder stopped: %s", exc)
            finally:
                self.descriptors.close(feed.end)

        self._feeder = threading.Thread(target=feed_stdin, daemon=True)
        self._feeder.start()

    def kill(self) -> None:
        """Send SIGTERM then SIGKILL to every stage. Safe from any thread."""
        for position in sorted(self.processes):
            _signal(self.processes[position], position)

    def terminate(self) -> None:
        """Send SIGTERM to every stage."""
        for position in sorted(self.processes):
            _signal(self.processes[position], position, signals=(signal.SIGTERM,))

    def finish(self, abandoned: bool = False) -> Optional[int]:
        """
        Drain and reap the execution; later calls return the recorded status.

        Args:
            abandoned: True when the consumer stopped before end of stream.
                       The terminal stage then gets a bounded wait before
                       it is terminated too.

        Returns:
            The terminal stage's exit status, or None if it is unknown.
        """
        with self._lock:
            if self.state is not State.RUNNING:
                return self.returncode
            self.state = State.DRAINING
            logger.debug("draining pipeline pids=%s abandoned=%s", self.pids, abandoned)
            try:
                feed_end = self.plan.feed.end if self._feeder is not None else None
                self.descriptors.close_all(keep=[feed_end] if feed_end else ())
                self.returncode = self._wait_terminal(abandoned)
                self._stop_others()
                self._reap()
                self._join_feeder()
            finally:
                self.descriptors.close_all()
                self.state = State.REAPED
            logger.debug("pipeline reaped returncode=%s", self.returncode)
        return self.returncode

    def _wait_terminal(self, abandoned: bool) -> Optional[int]:
        process = self.terminal
        if process is None:
            return None
        position = self.plan.terminal.position
        grace = self.teardown.terminate_grace_seconds
        try:
            if abandoned:
                try:
                    return _wait_status(process, grace)
                except subprocess.TimeoutExpired:
                    logger.debug("terminal stage %d still running, terminating", position)
                    _signal(process, position, signals=(signal.SIGTERM,))
                    try:
                        return _wait_status(process, grace)
                    except subprocess.TimeoutExpired:
                        _signal(process, position, signals=(signal.SIGKILL,))
            return _wait_status(process)
        except OSError as exc:
            logger.warning("could not wait on terminal stage %d (pid %d): %s", position, process.pid, exc)
            return None

    def _stop_others(self) -> None:
        terminal = self.plan.terminal.position
        for position in sorted(self.processes):
            if position != terminal:
                _signal(self.processes[position], position)

    def _reap(self) -> None:
        for position in sorted(self.processes):
            process = self.processes[position]
            try:
                process.wait(timeout=self.teardown.terminate_grace_seconds)
            except subprocess.TimeoutExpired:
                logger.warning("stage %d (pid %d) did not exit after SIGKILL", position, process.pid)
            except OSError as exc:
                logger.debug("reaping stage %d failed: %s", position, exc)

    def _join_feeder(self) -> None:
        if self._feeder is None:
            return
        self._feeder.join(timeout=self.teardown.feeder_join_seconds)
        if self._feeder.is_alive():
            logger.warning("stdin feeder did not finish")


def _signal(
    process: subprocess.Popen,
    position: int,
    signals: tuple = (signal.SIGTERM, signal.SIGKILL),
) -> None:
    for sig in signals:
        try:
            # Popen.send_signal is a no-op once the child has been reaped.
            process.send_signal(sig)
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.debug("signal %s to stage %d failed: %s", sig, position, exc)
            return


def _wait_status(process: subprocess.Popen, timeout: Optional[float] = None) -> int:
    """
    Reap ``process`` and return its exit status.

    ``Popen.wait`` reports 0 for a child that was already reaped elsewhere
    (for example with SIGCHLD ignored). Waiting on the pid directly lets a
    lost status surface as ``ChildProcessError`` instead.

    Raises:
        ChildProcessError: if the status can no longer be collected.
        subprocess.TimeoutExpired: if ``timeout`` elapses first.
    """
    if process.returncode is not None:
        return process.returncode
    deadline = None if timeout is None else time.monotonic() + timeout
    delay = 0.0005
    while True:
        try:
            pid, status = os.waitpid(process.pid, 0 if deadline is None else os.WNOHANG)
        except ChildProcessError:
            # A concurrent Popen.poll() may have collected it first.
            if process.returncode is not None:
                return process.returncode
            raise
        if pid == process.pid:
            process.returncode = os.waitstatus_to_exitcode(status)
            return process.returncode
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise subprocess.TimeoutExpired(process.args, timeout)
        delay = min(delay * 2, remaining, 0.05)
        time.sleep(delay)
