"""Shared fixtures for shell-conduit tests."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Callable, ContextManager, Iterator

import pytest

from shell_conduit import cmd


def open_fd_count() -> int:
    return len(os.listdir("/proc/self/fd"))


@pytest.fixture
def fds_conserved() -> Callable[[], ContextManager[None]]:
    """Context manager asserting the process has the same fds on exit."""
    if not os.path.isdir("/proc/self/fd"):
        pytest.skip("needs /proc/self/fd")
    cmd("true").run()  # warm up lazily opened interpreter resources

    @contextmanager
    def check() -> Iterator[None]:
        before = open_fd_count()
        yield
        assert open_fd_count() == before

    return check
