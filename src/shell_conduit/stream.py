"""Lazy, pull-based consumption of a pipeline's output."""

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterator, Optional, TYPE_CHECKING

from shell_conduit.command import DEFAULT_ENCODING, DEFAULT_ERRORS
from shell_conduit.errors import CommandError, TimeoutExpired
from shell_conduit.launcher import launch
from shell_conduit.lifecycle import DEFAULT_TEARDOWN, Execution, State, TeardownPolicy
from shell_conduit.wiring import plan_wiring

if TYPE_CHECKING:
    from shell_conduit.command import Pipeline

logger = logging.getLogger(__name__)

UNITS = ("line", "char", "byte", "chunk")


@dataclass
class Result:
    """Result of running a pipeline to completion."""
    stdout: str
    returncode: Optional[int]  # terminal stage only; None if unknown

    @property
    def ok(self) -> bool:
        """True if the terminal stage exited with code 0."""
        return self.returncode == 0

    def __bool__(self) -> bool:
        return self.ok

    def __str__(self) -> str:
        return self.stdout

    def raise_on_error(self) -> "Result":
        """Raise an exception if the command failed."""
        if not self.ok:
            raise CommandError(self)
        return self


class Stream:
    """
    Iterator over a pipeline's output, one unit at a time.

    The pipeline is started on the first ``next()`` (or when the stream is
    entered as a context manager) and every ``next()`` blocks only until
    the next unit is available. Reaching the end reaps the pipeline
    normally. Closing the stream early, leaving its ``with`` block, a read
    error, or dropping the last reference tears the pipeline down and
    terminates stages that would otherwise keep running.

    A stream runs its pipeline once; ask the pipeline for a new stream to
    run it again. Streams are single-consumer.

    Example:
        with cmd("tail", "-f", "app.log").stream() as lines:
            for line in lines:
                if "ready" in line:
                    break  # tail is terminated
    """

    def __init__(
        self,
        pipeline: "Pipeline",
        unit: str = "line",
        encoding: str = DEFAULT_ENCODING,
        errors: str = DEFAULT_ERRORS,
        chunk_size: int = 8192,
        capture: bool = True,
        teardown: TeardownPolicy = DEFAULT_TEARDOWN,
    ):
        if unit not in UNITS:
            raise ValueError(f"unknown unit {unit!r}, expected one of {UNITS}")
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._pipeline = pipeline
        self._unit = unit
        self._encoding = encoding
        self._errors = errors
        self._chunk_size = chunk_size
        self._teardown = teardown
        # Planning validates the pipeline before anything is spawned.
        self._plan = plan_wiring(pipeline, capture=capture)
        self._execution: Optional[Execution] = None
        self._reader: Optional[io.BufferedReader] = None
        self._units: Optional[Iterator[Any]] = None
        self._exhausted = False
        self._closed = False

    @property
    def pipeline(self) -> "Pipeline":
        return self._pipeline

    @property
    def execution(self) -> Optional[Execution]:
        """The running execution, or None before the stream starts."""
        return self._execution

    @property
    def state(self) -> Optional[State]:
        return self._execution.state if self._execution else None

    @property
    def pid(self) -> Optional[int]:
        """PID of the last process in the pipeline."""
        if self._execution is None or self._execution.terminal is None:
            return None
        return self._execution.terminal.pid

    @property
    def returncode(self) -> Optional[int]:
        """Exit status of the terminal stage once the stream is closed."""
        return self._execution.returncode if self._execution else None

    def start(self) -> "Stream":
        """Launch the pipeline if it is not running yet."""
        if self._closed:
            raise ValueError("stream is closed")
        if self._execution is None:
            self._execution = launch(self._plan, self._teardown)
            fd = self._execution.output_fd()
            if fd is None:
                self._units = iter(())
            else:
                self._reader = open(fd, "rb", closefd=False)
                self._units = self._produce(self._reader)
        return self

    def __iter__(self) -> "Stream":
        return self

    def __next__(self) -> Any:
        if self._closed:
            raise StopIteration
        self.start()
        try:
            return next(self._units)
        except StopIteration:
            self._exhausted = True
            self._finish(abandoned=False)
            raise
        except BaseException:
            self._finish(abandoned=True)
            raise

    def _produce(self, reader: io.BufferedReader) -> Iterator[Any]:
        if self._unit == "line":
            for raw in reader:
                yield _chomp(raw).decode(self._encoding, self._errors)
        elif self._unit == "char":
            text = io.TextIOWrapper(reader, encoding=self._encoding, errors=self._errors, newline="")
            while True:
                char = text.read(1)
                if not char:
                    return
                yield char
        elif self._unit == "byte":
            while True:
                byte = reader.read(1)
                if not byte:
                    return
                yield byte[0]
        else:
            while True:
                chunk = reader.read1(self._chunk_size)
                if not chunk:
                    return
                yield chunk

    def kill(self) -> None:
        """Send SIGTERM then SIGKILL to every process in the pipeline."""
        if self._execution is not None:
            self._execution.kill()

    def terminate(self) -> None:
        """Send SIGTERM to every process in the pipeline."""
        if self._execution is not None:
            self._execution.terminate()

    def close(self) -> None:
        """Stop reading and clean up. Safe to call more than once."""
        self._finish(abandoned=not self._exhausted)

    def _finish(self, abandoned: bool) -> None:
        if self._closed:
            return
        self._closed = True
        if self._units is not None and hasattr(self._units, "close"):
            self._units.close()
        if self._reader is not None:
            self._reader.close()
        if self._execution is not None:
            self._execution.finish(abandoned=abandoned)

    def __enter__(self) -> "Stream":
        return self.start()

    def __exit__(self, *args):
        self.close()

    def __del__(self):
        if not getattr(self, "_closed", True):
            self.close()

    def __repr__(self) -> str:
        state = self.state.value if self.state else "pending"
        return f"<Stream {self._unit} {state} {self._pipeline!r}>"


def _chomp(line: bytes) -> bytes:
    if line.endswith(b"\r\n"):
        return line[:-2]
    if line.endswith(b"\n"):
        return line[:-1]
    return line


def run_pipeline(
    pipeline: "Pipeline",
    check: bool = False,
    timeout: Optional[float] = None,
    capture: bool = True,
    encoding: str = DEFAULT_ENCODING,
    errors: str = DEFAULT_ERRORS,
) -> Result:
    """Run ``pipeline`` to completion and collect its decoded output."""
    stream = Stream(pipeline, unit="chunk", capture=capture)
    expired = threading.Event()
    chunks = []

    with stream:
        timer = None
        if timeout is not None:
            def expire():
                expired.set()
                stream.kill()

            timer = threading.Timer(timeout, expire)
            timer.daemon = True
            timer.start()
        try:
            for chunk in stream:
                chunks.append(chunk)
        finally:
            if timer is not None:
                timer.cancel()

    if expired.is_set():
        logger.debug("pipeline timed out after %ss: %r", timeout, pipeline)
        stages = [list(c.argv) for c in pipeline.stages]
        raise TimeoutExpired(stages[0] if len(stages) == 1 else stages, timeout)

    result = Result(
        stdout=b"".join(chunks).decode(encoding, errors),
        returncode=stream.returncode,
    )

    if check and not result.ok:
        raise CommandError(result)

    return result
