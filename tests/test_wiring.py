"""Tests for pipe wiring plans."""

import logging
from collections import Counter

import pytest

from shell_conduit import Command, Data, File, InvalidCompositionError, Pipeline, cmd, plan_wiring
from shell_conduit.wiring import READ, WRITE, PipeEnd


def chain(count: int) -> Pipeline:
    p = cmd("cat")
    for _ in range(count - 1):
        p = p | cmd("cat")
    return p


def used_ends(plan) -> list:
    ends = []
    for stage in plan.stages:
        ends.extend(b for b in stage.bindings().values() if isinstance(b, PipeEnd))
    if plan.output is not None:
        ends.append(plan.output)
    if plan.feed is not None:
        ends.append(plan.feed.end)
    return ends


class TestBasicWiring:
    """Test bindings for plain chains."""

    def test_single_stage(self):
        plan = plan_wiring(cmd("echo hi"))
        stage = plan.stages[0]
        assert plan.pipe_count == 1
        assert stage.stdin is None
        assert stage.stdout == PipeEnd(0, WRITE)
        assert stage.stderr is None
        assert plan.output == PipeEnd(0, READ)

    def test_three_stages(self):
        plan = plan_wiring(chain(3))
        assert plan.pipe_count == 3
        assert [s.stdin for s in plan.stages] == [None, PipeEnd(0, READ), PipeEnd(1, READ)]
        assert [s.stdout for s in plan.stages] == [
            PipeEnd(0, WRITE),
            PipeEnd(1, WRITE),
            PipeEnd(2, WRITE),
        ]
        assert plan.output == PipeEnd(2, READ)

    def test_positions_follow_stage_order(self):
        p = cmd("a") | cmd("b") | cmd("c")
        plan = plan_wiring(p)
        assert [s.position for s in plan.stages] == [0, 1, 2]
        assert [s.argv for s in plan.stages] == [("a",), ("b",), ("c",)]
        assert plan.terminal.argv == ("c",)

    @pytest.mark.parametrize("count", [1, 2, 3, 5, 10])
    def test_every_handle_listed_and_used_once(self, count):
        plan = plan_wiring(chain(count))
        assert len(plan.handles) == 2 * plan.pipe_count
        assert len(set(plan.handles)) == len(plan.handles)
        usage = Counter(used_ends(plan))
        assert set(usage) == set(plan.handles)
        assert all(n == 1 for n in usage.values())


class TestRedirectOverrides:
    """Only the outer stdin and stdout can be overridden."""

    def test_internal_redirects_are_superseded(self):
        p = Pipeline([
            Command(("a",), {0: "in.txt", 1: "lost.txt"}),
            Command(("b",), {0: "lost-too.txt", 1: "lost-three.txt"}),
            Command(("c",), {0: "lost-four.txt", 1: "out.txt"}),
        ])
        plan = plan_wiring(p)
        first, middle, last = plan.stages
        assert first.stdin == File("in.txt", "r")
        assert first.stdout == PipeEnd(0, WRITE)
        assert middle.stdin == PipeEnd(0, READ)
        assert middle.stdout == PipeEnd(1, WRITE)
        assert last.stdin == PipeEnd(1, READ)
        assert last.stdout == File("out.txt", "w")
        assert plan.output is None
        assert plan.pipe_count == 2

    @pytest.mark.parametrize("count", [1, 2, 4])
    def test_only_outer_fds_are_overridable(self, count):
        stages = [Command(("cat",), {0: f"in{i}", 1: f"out{i}"}) for i in range(count)]
        plan = plan_wiring(Pipeline(stages))
        for stage in plan.stages:
            if stage.position == 0:
                assert stage.stdin == File("in0", "r")
            else:
                assert isinstance(stage.stdin, PipeEnd)
            if stage.position == count - 1:
                assert stage.stdout == File(f"out{count - 1}", "w")
            else:
                assert isinstance(stage.stdout, PipeEnd)

    def test_composition_moves_outer_redirects(self):
        left = cmd("cat") > "left.txt"
        right = (cmd("sort") < "right.txt") > "final.txt"
        plan = plan_wiring(left | right)
        assert plan.stages[0].stdout == PipeEnd(0, WRITE)
        assert plan.stages[1].stdin == PipeEnd(0, READ)
        assert plan.stages[1].stdout == File("final.txt", "w")

    def test_stderr_passes_through(self):
        p = cmd("a", {2: "a.err"}) | cmd("b", {2: "b.err"})
        plan = plan_wiring(p)
        assert plan.stages[0].stderr == File("a.err", "w")
        assert plan.stages[1].stderr == File("b.err", "w")

    def test_superseded_redirect_is_logged(self, caplog):
        caplog.set_level(logging.DEBUG, logger="shell_conduit.wiring")
        plan_wiring((cmd("a") > "x.txt") | cmd("b"))
        assert "replaced by pipe" in caplog.text


class TestCaptureAndFeed:
    """Test output pipe and stdin feed allocation."""

    def test_no_capture_inherits_stdout(self):
        plan = plan_wiring(cmd("a") | cmd("b"), capture=False)
        assert plan.pipe_count == 1
        assert plan.output is None
        assert plan.terminal.stdout is None

    def test_data_stdin_gets_feed_pipe(self):
        plan = plan_wiring(cmd("cat").with_stdin("hello") | cmd("wc"))
        assert plan.feed is not None
        assert plan.feed.data == Data("hello")
        assert plan.feed.end == PipeEnd(2, WRITE)
        assert plan.stages[0].stdin == PipeEnd(2, READ)
        assert plan.output == PipeEnd(1, READ)
        assert plan.pipe_count == 3

    def test_pre_opened_handles_pass_through(self):
        plan = plan_wiring(cmd("cat", {0: 7}) | cmd("cat", {1: 9}))
        assert plan.stages[0].stdin == 7
        assert plan.terminal.stdout == 9
        assert plan.output is None


class TestInvalidPlans:
    """Test pipelines that cannot be planned."""

    def test_empty_pipeline(self):
        with pytest.raises(InvalidCompositionError):
            plan_wiring(Pipeline())

    def test_stage_without_command(self):
        with pytest.raises(InvalidCompositionError) as exc_info:
            plan_wiring(cmd("cat") | (cmd() > "out.txt"))
        assert "stage 1" in str(exc_info.value)
