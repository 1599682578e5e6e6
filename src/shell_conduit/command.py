"""
Command descriptors, pipelines and argument translation.

A ``Command`` describes one stage: its argument vector, its redirects and
the environment it runs in. A ``Pipeline`` is an ordered chain of stages
joined with ``|``. Both are immutable, so every operator and ``with_*``
call returns a new value and a pipeline can be stored and reused.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union, TYPE_CHECKING

from shell_conduit.errors import InvalidCompositionError

if TYPE_CHECKING:
    from shell_conduit.stream import Result, Stream

STDIN = 0
STDOUT = 1
STDERR = 2

DEFAULT_ENCODING = "utf-8"
DEFAULT_ERRORS = "replace"

_FILE_MODES = ("r", "w", "a")

# File | Data | int | file-like object with fileno()
Target = Any


@dataclass(frozen=True)
class Flag:
    """
    A command-line switch.

    ``Flag("l")`` renders as ``-l`` and ``Flag("all")`` as ``--all``.
    """
    name: str

    def __str__(self) -> str:
        prefix = "--" if len(self.name) > 1 else "-"
        return prefix + self.name


@dataclass(frozen=True)
class File:
    """A file path used as a redirect target, opened when the stage starts."""
    path: str
    mode: str = "w"

    def __post_init__(self):
        if self.mode not in _FILE_MODES:
            raise ValueError(f"invalid mode {self.mode!r}, expected 'r', 'w' or 'a'")

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class Data:
    """In-memory input written to the first stage's stdin."""
    content: Union[str, bytes]
    encoding: str = DEFAULT_ENCODING

    def to_bytes(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode(self.encoding)


def normalize_target(fd: int, target: Target) -> Target:
    """
    Validate a redirect target for ``fd`` and convert paths to ``File``.

    Paths open read-only for stdin and truncate-for-writing otherwise.
    ``None`` means "inherit from the parent".

    Raises:
        ValueError: for fds other than 0, 1 and 2, or a target that
            cannot serve the fd's direction.
        TypeError: for objects that are neither paths nor handles.
    """
    if isinstance(fd, bool) or fd not in (STDIN, STDOUT, STDERR):
        raise ValueError(f"only fds 0, 1 and 2 can be redirected, got {fd!r}")
    if target is None:
        return None
    if isinstance(target, File):
        if (fd == STDIN) != (target.mode == "r"):
            raise ValueError(f"file mode {target.mode!r} cannot be used for fd {fd}")
        return target
    if isinstance(target, Data):
        if fd != STDIN:
            raise ValueError("in-memory data can only be redirected to stdin")
        return target
    if isinstance(target, (str, os.PathLike)):
        return File(os.fspath(target), "r" if fd == STDIN else "w")
    if isinstance(target, bool):
        raise TypeError(f"invalid redirect target: {target!r}")
    if isinstance(target, int) or callable(getattr(target, "fileno", None)):
        return target
    raise TypeError(f"invalid redirect target: {target!r}")


@dataclass(frozen=True)
class Command:
    """
    Immutable description of a single pipeline stage.

    An empty ``argv`` is allowed for fragments that only carry redirects
    (for example ``cmd() > "out.txt"`` passed as a token to another
    command), but a pipeline containing one cannot be executed.
    """
    argv: tuple = ()
    redirects: Mapping[int, Target] = field(default_factory=dict)
    env: Optional[Mapping[str, str]] = None
    cwd: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "argv", tuple(str(arg) for arg in self.argv))
        resolved = {}
        for fd, target in dict(self.redirects).items():
            target = normalize_target(fd, target)
            if target is not None:
                resolved[fd] = target
        object.__setattr__(self, "redirects", MappingProxyType(resolved))
        if self.env is not None:
            object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        if self.cwd is not None:
            object.__setattr__(self, "cwd", os.fspath(self.cwd))

    def extend(self, argv: Iterable[str] = (), redirects: Optional[Mapping[int, Target]] = None) -> "Command":
        """Return a copy with extra arguments and redirects."""
        merged = {**self.redirects, **(redirects or {})}
        return replace(self, argv=self.argv + tuple(argv), redirects=merged)

    def redirect(self, fd: int, target: Target) -> "Command":
        """Return a copy with ``fd`` bound to ``target`` (``None`` unbinds)."""
        merged = dict(self.redirects)
        merged[fd] = target
        return replace(self, redirects=merged)

    def environment(self) -> Optional[dict]:
        """Environment for the child: ``os.environ`` overlaid with ``env``."""
        if not self.env:
            return None
        return {**os.environ, **self.env}

    def __str__(self) -> str:
        parts = [shlex.join(self.argv)] if self.argv else []
        for fd, target in sorted(self.redirects.items()):
            if isinstance(target, File):
                op = {"r": "<", "w": ">", "a": ">>"}[target.mode]
                prefix = "" if fd in (STDIN, STDOUT) else str(fd)
                parts.append(f"{prefix}{op} {shlex.quote(target.path)}")
            elif isinstance(target, Data):
                parts.append("<<<data")
            else:
                parts.append(f"{fd}>&{target!r}")
        return " ".join(parts)


class Pipeline:
    """
    An ordered chain of commands connected by pipes.

    Examples:
        cmd("cat", "notes.txt") | cmd("grep", "todo")
        (cmd("cat") < "in.txt") | cmd("sort") > "out.txt"
        for line in cmd("tail", Flag("f"), "/var/log/syslog"):
            ...

    Redirect operators are comparisons, and Python chains comparisons:
    write ``(p < "in.txt") > "out.txt"``, never ``p < "in.txt" > "out.txt"``.
    A pipeline has no truth value, so the unparenthesized form raises
    TypeError instead of silently evaluating to a bool.
    """

    __slots__ = ("_stages",)

    def __init__(self, stages: Iterable[Command] = ()):
        self._stages = tuple(stages)

    @property
    def stages(self) -> tuple:
        return self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Pipeline):
            return NotImplemented
        return [_key(c) for c in self._stages] == [_key(c) for c in other._stages]

    __hash__ = None

    def __bool__(self) -> bool:
        raise TypeError(
            "a Pipeline has no truth value; parenthesize chained redirects, "
            "e.g. (p < 'in.txt') > 'out.txt'"
        )

    def __or__(self, other: "Pipeline") -> "Pipeline":
        """
        Pipe this pipeline's stdout into ``other``'s stdin.

        Usage: cmd("ls") | cmd("grep foo")
        """
        if not isinstance(other, Pipeline):
            return NotImplemented
        return Pipeline(self._stages + other._stages)

    def __call__(self, *tokens: Any) -> "Pipeline":
        """Append arguments (and redirect fragments) to the last stage."""
        argv, redirects = translate_tokens(tokens)
        last = self._stages[-1] if self._stages else Command()
        return self._with_stage(-1, last.extend(argv, redirects))

    def __lt__(self, target: Target) -> "Pipeline":
        return self.redirect(STDIN, target)

    def __gt__(self, target: Target) -> "Pipeline":
        return self.redirect(STDOUT, target)

    def __rshift__(self, target: Target) -> "Pipeline":
        return self.redirect(STDOUT, target, append=True)

    def redirect(self, fd: int, target: Target, append: bool = False) -> "Pipeline":
        """
        Bind ``fd`` of the stage where it is externally visible.

        stdin belongs to the first stage; stdout and stderr to the last.
        """
        if append and isinstance(target, (str, os.PathLike)):
            target = File(os.fspath(target), "a")
        index = 0 if fd == STDIN else -1
        stage = self._stages[index] if self._stages else Command()
        return self._with_stage(index, stage.redirect(fd, target))

    def with_stdin(self, data: Union[str, bytes]) -> "Pipeline":
        """Return a new pipeline whose first stage reads ``data`` from stdin."""
        return self.redirect(STDIN, Data(data))

    def with_env(self, **env: str) -> "Pipeline":
        """Return a new pipeline with additional environment variables for ALL commands."""
        return Pipeline(
            replace(c, env={**(c.env or {}), **env}) for c in self._stages
        )

    def with_cwd(self, cwd: Union[str, os.PathLike]) -> "Pipeline":
        """Return a new pipeline with a different working directory for ALL commands."""
        return Pipeline(replace(c, cwd=cwd) for c in self._stages)

    def _with_stage(self, index: int, stage: Command) -> "Pipeline":
        stages = list(self._stages) or [stage]
        stages[index] = stage
        return Pipeline(stages)

    def stream(self, unit: str = "line", **options: Any) -> "Stream":
        """
        Return a lazy Stream over this pipeline's output.

        Nothing runs until the stream is iterated or entered; each new
        stream runs the pipeline again from scratch.

        Args:
            unit: "line", "char", "byte" or "chunk".
            **options: encoding, errors, chunk_size, capture, teardown.
        """
        from shell_conduit.stream import Stream

        return Stream(self, unit=unit, **options)

    def iter_lines(self, encoding: str = DEFAULT_ENCODING, errors: str = DEFAULT_ERRORS) -> "Stream":
        """Lines of output without their terminators."""
        return self.stream("line", encoding=encoding, errors=errors)

    def iter_chars(self, encoding: str = DEFAULT_ENCODING, errors: str = DEFAULT_ERRORS) -> "Stream":
        """Decoded characters of output, one at a time."""
        return self.stream("char", encoding=encoding, errors=errors)

    def iter_bytes(self) -> "Stream":
        """Raw output bytes as ints, one at a time."""
        return self.stream("byte")

    def iter_chunks(self, chunk_size: int = 8192) -> "Stream":
        """Raw output in blocks of at most ``chunk_size`` bytes."""
        return self.stream("chunk", chunk_size=chunk_size)

    def __iter__(self) -> "Stream":
        return self.iter_lines()

    def read(self, sep: str = "\n", encoding: str = DEFAULT_ENCODING, errors: str = DEFAULT_ERRORS) -> str:
        """Run to completion and return the output lines joined by ``sep``."""
        with self.iter_lines(encoding=encoding, errors=errors) as lines:
            return sep.join(lines)

    def run(
        self,
        check: bool = False,
        timeout: Optional[float] = None,
        capture: bool = True,
        encoding: str = DEFAULT_ENCODING,
        errors: str = DEFAULT_ERRORS,
    ) -> "Result":
        """
        Execute the pipeline and collect its output.

        Args:
            check: If True, raise CommandError on non-zero exit.
            timeout: Maximum seconds to wait. None means no timeout.
                     Raises TimeoutExpired if exceeded.
            capture: If False, the last stage writes to the inherited
                     stdout and ``Result.stdout`` is empty.

        Returns:
            Result with the terminal stage's output and exit status.
        """
        from shell_conduit.stream import run_pipeline

        return run_pipeline(
            self,
            check=check,
            timeout=timeout,
            capture=capture,
            encoding=encoding,
            errors=errors,
        )

    def __repr__(self) -> str:
        return f"Pipeline({' | '.join(str(c) for c in self._stages)})"


def _key(command: Command) -> tuple:
    env = tuple(sorted(command.env.items())) if command.env else None
    return (command.argv, sorted(command.redirects.items(), key=lambda kv: kv[0]), env, command.cwd)


def translate_token(token: Any) -> tuple[list[str], dict[int, Target]]:
    """
    Turn one argument token into an argv fragment and a redirect fragment.

    Supported tokens:
        str           -> used as-is
        Flag          -> "-x" / "--long"
        Mapping       -> str keys become options, int keys become redirects
        Pipeline      -> a single stage contributes its argv and redirects
        Command       -> its argv and redirects
        list / tuple  -> each element, in order
        None          -> nothing
    Anything else is converted with ``str()``.

    Raises:
        InvalidCompositionError: if a multi-stage pipeline is used as a token.
    """
    if token is None:
        return [], {}
    if isinstance(token, str):
        return [token], {}
    if isinstance(token, Flag):
        return [str(token)], {}
    if isinstance(token, Pipeline):
        if len(token.stages) > 1:
            raise InvalidCompositionError(
                f"{token!r} contains pipes and cannot be used as an argument"
            )
        if not token.stages:
            return [], {}
        token = token.stages[0]
    if isinstance(token, Command):
        return list(token.argv), dict(token.redirects)
    if isinstance(token, Mapping):
        return _translate_mapping(token)
    if isinstance(token, (list, tuple)):
        return translate_tokens(token)
    if isinstance(token, os.PathLike):
        return [os.fspath(token)], {}
    return [str(token)], {}


def translate_tokens(tokens: Iterable[Any]) -> tuple[list[str], dict[int, Target]]:
    """Translate tokens in order, concatenating argv and merging redirects."""
    argv: list[str] = []
    redirects: dict[int, Target] = {}
    for token in tokens:
        fragment, fds = translate_token(token)
        argv.extend(fragment)
        redirects.update(fds)
    return argv, redirects


def _translate_mapping(options: Mapping) -> tuple[list[str], dict[int, Target]]:
    argv: list[str] = []
    redirects: dict[int, Target] = {}
    for key, value in options.items():
        if isinstance(key, int) and not isinstance(key, bool):
            redirects[key] = value
            continue
        name = str(key)
        if value is None or value is False:
            continue
        if value is True:
            argv.append(str(Flag(name)))
        elif len(name) > 1:
            argv.append(f"--{name}={value}")
        else:
            argv.extend([f"-{name}", str(value)])
    return argv, redirects


def cmd(
    *tokens: Any,
    stdin: Optional[Union[str, bytes]] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Union[str, os.PathLike]] = None,
    shell: bool = False,
) -> Pipeline:
    """
    Create a single-stage pipeline.

    Args:
        *tokens: Command and arguments. If a single string containing a
                 space is passed, it is parsed using shell lexing rules.
        stdin: Optional str or bytes to feed to the command's stdin.
        env: Optional environment variables (added to current env).
        cwd: Optional working directory.
        shell: If True, run the text through /bin/sh (enables globs,
               variable expansion, etc). Use with caution for security.

    Examples:
        cmd("ls -la")
        cmd("ls", Flag("l"), {"color": "always"}, "/bin")
        cmd("echo", "hello", {1: "/tmp/out"})
    """
    if len(tokens) == 1 and isinstance(tokens[0], str) and " " in tokens[0] and not shell:
        # Parse shell-style string: "ls -la" -> ["ls", "-la"]
        tokens = tuple(shlex.split(tokens[0]))

    argv, redirects = translate_tokens(tokens)
    if shell and argv:
        script = argv[0] if len(argv) == 1 else shlex.join(argv)
        argv = ["/bin/sh", "-c", script]
    if stdin is not None:
        redirects[STDIN] = Data(stdin)

    return Pipeline([Command(tuple(argv), redirects, env=env, cwd=cwd)])
