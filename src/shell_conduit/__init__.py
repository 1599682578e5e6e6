"""
Unix pipelines of external commands, with lazily streamed output.

Usage:
    from shell_conduit import cmd, Flag

    # Simple command
    result = cmd("ls -la").run()
    print(result.stdout)

    # Piping with | operator (just like bash!)
    result = (cmd("ls -la") | cmd("grep .py") | cmd("wc -l")).run()

    # Flags and options
    cmd("ls", Flag("l"), {"color": "always"}, "/bin")   # ls -l --color=always /bin
    cmd("tail", {"n": 3}, "app.log")                    # tail -n 3 app.log

    # Redirects
    (cmd("cat") < "/tmp/in") | cmd("sort") > "/tmp/out"

    # Lazy streaming: stops `tail -f` as soon as the loop breaks
    with cmd("tail", Flag("f"), "/var/log/syslog").stream() as lines:
        for line in lines:
            if "error" in line:
                break

    # Check success
    if result.ok:
        print(result.stdout)
"""

from __future__ import annotations

from shell_conduit.command import (
    Command,
    Data,
    File,
    Flag,
    Pipeline,
    cmd,
    translate_token,
    translate_tokens,
)
from shell_conduit.errors import (
    CommandError,
    ConduitError,
    InvalidCompositionError,
    LaunchError,
    TimeoutExpired,
)
from shell_conduit.lifecycle import DEFAULT_TEARDOWN, Execution, State, TeardownPolicy
from shell_conduit.stream import Result, Stream
from shell_conduit.wiring import WiringPlan, plan_wiring

__version__ = "0.1.0"

__all__ = [
    "Command",
    "Pipeline",
    "Flag",
    "File",
    "Data",
    "cmd",
    "sh",
    "run",
    "translate_token",
    "translate_tokens",
    "plan_wiring",
    "WiringPlan",
    "Execution",
    "State",
    "TeardownPolicy",
    "DEFAULT_TEARDOWN",
    "Stream",
    "Result",
    "ConduitError",
    "CommandError",
    "InvalidCompositionError",
    "LaunchError",
    "TimeoutExpired",
    "__version__",
]

# Convenient alias
sh = cmd


def run(command: str, **kwargs) -> Result:
    """
    Convenience function to run a command string directly.

    Usage:
        result = run("ls -la")
        result = run("echo hello", check=True)
    """
    return cmd(command).run(**kwargs)
