"""
Tests for dependency-aware parallel execution.
"""

import threading
import time

from stepflow.engine import TestEngine
from stepflow.models import ConditionalBlock, ParallelConfig, Step, StepStatus, TestCase
from stepflow.workflow.scheduler import group_steps, is_unsafe, step_references


def names(groups):
    return [[step.name for step in group] for group in groups]


class TestGrouping:
    """Test group_steps partitioning."""

    def test_independent_steps_share_a_group(self):
        steps = [
            Step(name="a", action="http", result="a"),
            Step(name="b", action="http", result="b"),
            Step(name="c", action="http"),
        ]
        assert names(group_steps(steps)) == [["a", "b", "c"]]

    def test_dependent_step_starts_new_group(self):
        steps = [
            Step(name="login", action="http", result="session"),
            Step(name="profile", action="http", args=["${session.token}"]),
            Step(name="orders", action="http", args=["${session.token}"]),
        ]
        assert names(group_steps(steps)) == [["login"], ["profile", "orders"]]

    def test_available_names_do_not_split(self):
        steps = [
            Step(name="a", action="http", args=["${base_url}"]),
            Step(name="b", action="http", args=["${base_url}"]),
        ]
        assert names(group_steps(steps, available={"base_url"})) == [["a", "b"]]

    def test_unknown_reference_splits(self):
        """A name nobody has produced yet forces sequential placement."""
        steps = [
            Step(name="a", action="http"),
            Step(name="b", action="http", args=["${not_yet}"]),
        ]
        assert names(group_steps(steps)) == [["a"], ["b"]]

    def test_rebinding_available_name_is_not_available(self):
        steps = [
            Step(name="reader", action="http", args=["${token}"]),
            Step(name="writer", action="http", result="token"),
        ]
        groups = group_steps(steps, available={"token"})
        assert names(groups) == [["reader"], ["writer"]]

    def test_write_after_read_in_group_splits(self):
        steps = [
            Step(name="first", action="http", result="x"),
            Step(name="reader", action="http", args=["${y}"]),
            Step(name="rebind", action="http", result="y"),
        ]
        groups = group_steps(steps, available={"y"})
        # y is rebound in this list, so reader already waits for a group of its own
        assert names(groups) == [["first"], ["reader"], ["rebind"]]

    def test_duplicate_result_name_splits(self):
        steps = [
            Step(name="a", action="http", result="out"),
            Step(name="b", action="http", result="out"),
        ]
        assert names(group_steps(steps)) == [["a"], ["b"]]

    def test_unsafe_actions_run_alone(self):
        steps = [
            Step(name="a", action="http"),
            Step(name="db", action="postgres"),
            Step(name="b", action="http"),
            Step(name="c", action="http"),
        ]
        assert names(group_steps(steps)) == [["a"], ["db"], ["b", "c"]]

    def test_custom_unsafe_actions(self):
        steps = [Step(name="a", action="http"), Step(name="b", action="http")]
        assert names(group_steps(steps, unsafe_actions=frozenset({"http"}))) == [["a"], ["b"]]

    def test_control_blocks_run_alone(self):
        block = Step(name="guard", if_block=ConditionalBlock(condition="true"))
        assert is_unsafe(block)
        steps = [Step(name="a", action="http"), block, Step(name="b", action="http")]
        assert names(group_steps(steps)) == [["a"], ["guard"], ["b"]]

    def test_step_history_never_available(self):
        steps = [
            Step(name="a", action="http"),
            Step(name="b", action="http", args=["${__steps[-1].output}"]),
        ]
        assert names(group_steps(steps, available={"__steps"})) == [["a"], ["b"]]

    def test_step_references_scans_everything(self):
        step = Step(
            name="s", action="http", args=["${a}"], options={"h": "${b.c}"}, skip="${d}",
        )
        assert step_references(step) == {"a", "b", "d"}
        cond = Step(name="c", if_block=ConditionalBlock(condition="${e} == 1"))
        assert step_references(cond) == {"e"}


class TestParallelExecution:
    """Running groups through the engine."""

    def setup_method(self):
        self.engine = TestEngine()
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()
        self.engine.action_executor.register("work", self.work)

    def work(self, token, args, options, silent):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(float(options.get("seconds", 0.05)))
        with self.lock:
            self.active -= 1
        return args[0] if args else "done"

    def _case(self, steps, **parallel):
        return TestCase(name="parallel", steps=steps, parallel=ParallelConfig(enabled=True, **parallel))

    def test_group_runs_concurrently(self):
        steps = [Step(name=f"s{i}", action="work", result=f"r{i}") for i in range(4)]
        result = self.engine.execute_test_case(self._case(steps, max_concurrency=4))
        assert result.status == StepStatus.PASSED
        assert self.peak > 1

    def test_max_concurrency_respected(self):
        steps = [Step(name=f"s{i}", action="work") for i in range(6)]
        result = self.engine.execute_test_case(self._case(steps, max_concurrency=2))
        assert result.status == StepStatus.PASSED
        assert self.peak <= 2

    def test_results_in_step_order(self):
        steps = [
            Step(name="slow", action="work", args=["slow"], options={"seconds": 0.2}),
            Step(name="fast", action="work", args=["fast"], options={"seconds": 0}),
        ]
        result = self.engine.execute_test_case(self._case(steps))
        assert [r.step.name for r in result.step_results] == ["slow", "fast"]

    def test_dependent_step_sees_result(self):
        steps = [
            Step(name="produce", action="work", args=["token-1"], result="token"),
            Step(name="other", action="work", args=["x"]),
            Step(name="consume", action="echo", args=["got ${token}"]),
        ]
        result = self.engine.execute_test_case(self._case(steps))
        assert result.status == StepStatus.PASSED
        assert result.step_results[-1].output == "got token-1"

    def test_failure_stops_later_groups(self):
        calls = []
        self.engine.action_executor.register(
            "track", lambda token, args, options, silent: calls.append(args[0])
        )
        steps = [
            Step(name="boom", action="fail", args=["broken"], result="a"),
            Step(name="ok", action="work", result="b"),
            Step(name="later", action="track", args=["${a}"]),
        ]
        result = self.engine.execute_test_case(self._case(steps))
        assert result.status == StepStatus.FAILED
        assert calls == []
        assert result.error == "step 'boom' failed: broken"

    def test_unstarted_steps_reported_skipped(self):
        steps = [
            Step(name="boom", action="fail", args=["broken"]),
            Step(name="queued", action="work"),
        ]
        result = self.engine.execute_test_case(self._case(steps, max_concurrency=1))
        statuses = {r.step.name: r.status for r in result.step_results}
        assert statuses["boom"] == StepStatus.FAILED
        assert statuses["queued"] == StepStatus.SKIPPED
        assert result.status == StepStatus.FAILED

    def test_continue_on_failure_keeps_going(self):
        steps = [
            Step(name="soft", action="fail", continue_on_failure=True),
            Step(name="ok", action="work"),
            Step(name="next", action="echo", args=["${missing}"]),
        ]
        result = self.engine.execute_test_case(self._case(steps, max_concurrency=1))
        assert [r.status for r in result.step_results] == [
            StepStatus.FAILED, StepStatus.PASSED, StepStatus.PASSED
        ]
        assert result.status == StepStatus.PASSED

    def test_group_timeout(self):
        steps = [
            Step(name="slow", action="sleep", args=["5s"]),
            Step(name="quick", action="work", options={"seconds": 0}),
        ]
        start = time.time()
        result = self.engine.execute_test_case(self._case(steps, max_concurrency=2, group_timeout=0.2))
        assert time.time() - start < 3
        by_name = {r.step.name: r for r in result.step_results}
        assert by_name["quick"].status == StepStatus.PASSED
        assert by_name["slow"].status == StepStatus.FAILED
        assert result.status == StepStatus.FAILED

    def test_test_case_timeout_bounds_group(self):
        """An action that ignores its token cannot hold the run past the test case deadline."""
        self.engine.action_executor.register(
            "hang", lambda token, args, options, silent: time.sleep(3)
        )
        test_case = TestCase(
            name="deadline",
            timeout=0.3,
            parallel=ParallelConfig(enabled=True, max_concurrency=2),
            steps=[Step(name="h1", action="hang"), Step(name="h2", action="hang")],
        )
        start = time.time()
        result = self.engine.execute_test_case(test_case)
        assert time.time() - start < 1.5
        assert result.status == StepStatus.FAILED
        assert [r.status for r in result.step_results] == [StepStatus.FAILED, StepStatus.FAILED]
        assert all(r.error.startswith("timed out after") for r in result.step_results)

    def test_timed_out_step_does_not_bind_result(self):
        steps = [
            Step(name="slow", action="work", options={"seconds": 0.5}, result="late",
                 continue_on_failure=True),
            Step(name="quick", action="work", options={"seconds": 0}, result="n"),
            # Outlasts the abandoned worker
            Step(name="pause", action="work", args=["${n}"], options={"seconds": 0.6}, result="p"),
            Step(name="read", action="echo", args=["${late}|${p}"]),
        ]
        result = self.engine.execute_test_case(self._case(steps, max_concurrency=2, group_timeout=0.2))
        by_name = {r.step.name: r for r in result.step_results}
        assert by_name["slow"].status == StepStatus.FAILED
        assert by_name["quick"].status == StepStatus.PASSED
        assert by_name["read"].output == "${late}|done"

    def test_history_complete_after_parallel_run(self):
        steps = [Step(name=f"s{i}", action="work", args=[str(i)]) for i in range(3)]
        steps.append(Step(name="count", action="echo", args=["${__steps[2].output}"]))
        result = self.engine.execute_test_case(self._case(steps))
        assert result.step_results[-1].output == "2"
